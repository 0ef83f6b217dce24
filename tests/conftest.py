"""Shared test fixtures: a recording mount backend and a simulated build host."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from liveiso_builder.assemble import boot_image
from liveiso_builder.build_config import BuildConfig
from liveiso_builder.lib.mounts import MountSpec

KERNEL_VERSION = "6.14.0-15-generic"

DEFAULT_PACKAGES: List[Tuple[str, str]] = [
    ("base-files", "13.6ubuntu1"),
    ("bash", "5.2.37-1ubuntu1"),
    ("casper", "1.508"),
    ("linux-image-generic", "6.14.0.15.15"),
    ("ubiquity", "25.04.1"),
]


class FakeMountBackend:
    """Records mount/unmount calls instead of touching the host."""

    def __init__(self, *, fail_unmount: Optional[Callable[[MountSpec], bool]] = None) -> None:
        self.events: List[Tuple[str, Path]] = []
        self.fail_unmount = fail_unmount

    def mount(self, spec: MountSpec) -> None:
        self.events.append(("mount", spec.target))

    def unmount(self, spec: MountSpec) -> None:
        self.events.append(("unmount", spec.target))
        if self.fail_unmount is not None and self.fail_unmount(spec):
            raise RuntimeError(f"target is busy: {spec.target}")

    @property
    def mounted(self) -> List[Path]:
        return [t for kind, t in self.events if kind == "mount"]

    @property
    def unmounted(self) -> List[Path]:
        return [t for kind, t in self.events if kind == "unmount"]


class FakeHost:
    """Stands in for subprocess.run and fakes the external tools' effects."""

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.envs: List[Dict[str, str]] = []
        self.inputs: List[Optional[str]] = []
        self.packages: List[Tuple[str, str]] = list(DEFAULT_PACKAGES)
        self.deb_names: Dict[str, str] = {}
        self.loader_size = 4096
        self.fail_when: List[Callable[[List[str]], bool]] = []

    def fail_if(self, predicate: Callable[[List[str]], bool]) -> None:
        self.fail_when.append(predicate)

    def commands(self, tool: str) -> List[List[str]]:
        return [c for c in self.calls if Path(c[0]).name == tool]

    def chrooted(self) -> List[List[str]]:
        return [c[2:] for c in self.commands("chroot")]

    def __call__(self, argv, *, input=None, text=True, stdout=None, stderr=None, cwd=None, env=None):
        argv = list(argv)
        self.calls.append(argv)
        self.envs.append(dict(env or {}))
        self.inputs.append(input)
        if any(pred(argv) for pred in self.fail_when):
            return subprocess.CompletedProcess(argv, 1, "", "simulated failure")
        out = self._simulate(argv)
        return subprocess.CompletedProcess(argv, 0, out, "")

    def _simulate(self, argv: List[str]) -> str:
        tool = Path(argv[0]).name
        if tool == "debootstrap":
            self._bootstrap(Path(argv[-2]))
        elif tool == "chroot" and argv[2] == "dpkg-query":
            return "".join(f"{name} {version}\n" for name, version in self.packages)
        elif tool == "mksquashfs":
            Path(argv[2]).write_bytes(b"hsqs")
        elif tool == "grub-mkstandalone":
            out = next(a.split("=", 1)[1] for a in argv if a.startswith("--output="))
            Path(out).write_bytes(b"\0" * self.loader_size)
        elif tool == "xorriso":
            Path(argv[argv.index("-output") + 1]).write_bytes(b"CD001")
        elif tool == "dpkg-deb":
            deb = argv[2]
            return self.deb_names.get(deb, Path(deb).name.split("_")[0]) + "\n"
        return ""

    @staticmethod
    def _bootstrap(root: Path) -> None:
        for d in (
            "boot",
            "etc",
            "home",
            "root",
            "tmp",
            "var/tmp",
            "var/cache/apt/archives",
            "var/lib/apt/lists",
            "usr/sbin",
            "usr/lib/grub/x86_64-efi",
            "usr/lib/grub/arm64-efi",
        ):
            (root / d).mkdir(parents=True, exist_ok=True)
        (root / f"boot/vmlinuz-{KERNEL_VERSION}").write_bytes(b"kernel")
        (root / f"boot/initrd.img-{KERNEL_VERSION}").write_bytes(b"initrd")
        (root / "etc/machine-id").write_text("0123456789abcdef\n", encoding="utf-8")
        (root / "var/cache/apt/archives/bash_5.2.deb").write_bytes(b"deb")
        (root / "var/lib/apt/lists/archive_Packages").write_text("Package: bash\n", encoding="utf-8")
        (root / "tmp/leftover").write_text("x", encoding="utf-8")


@pytest.fixture
def fake_host(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> FakeHost:
    """Route every run_cmd call to a FakeHost and pretend to be a capable root host."""

    host = FakeHost()
    monkeypatch.setattr("liveiso_builder.lib.command.subprocess.run", host)
    monkeypatch.setattr("shutil.which", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr(os, "geteuid", lambda: 0, raising=False)
    # Use the GRUB modules from the built tree, never the test machine's.
    monkeypatch.setattr(boot_image, "HOST_GRUB_LIB", tmp_path / "no-host-grub")
    monkeypatch.setattr(boot_image, "HOST_GRUB_FONT", tmp_path / "no-host-font.pf2")
    return host


@pytest.fixture
def mount_backend() -> FakeMountBackend:
    return FakeMountBackend()


@pytest.fixture
def build_cfg(tmp_path: Path) -> BuildConfig:
    return BuildConfig(
        release="plucky",
        arch="amd64",
        work_dir=tmp_path / "work",
        output_dir=tmp_path / "output",
    )
