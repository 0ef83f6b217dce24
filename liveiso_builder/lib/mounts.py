from __future__ import annotations

import contextlib
import itertools
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional, Protocol, Tuple

from ..errors import ResourceReleaseWarning
from .command import run_cmd

logger = logging.getLogger(__name__)

PROC_MOUNTS = Path("/proc/self/mounts")

# (fstype, source, target relative to the chroot). Acquire order matters:
# process info, kernel info, device nodes, pseudo-terminals.
VIRTUAL_FILESYSTEMS: Tuple[Tuple[str, str, str], ...] = (
    ("proc", "proc", "proc"),
    ("sysfs", "sysfs", "sys"),
    ("devtmpfs", "devtmpfs", "dev"),
    ("devpts", "devpts", "dev/pts"),
)


@dataclass(frozen=True)
class MountSpec:
    source: str
    target: Path
    fstype: Optional[str] = None
    options: Tuple[str, ...] = ()

    @classmethod
    def loop(cls, image: Path, target: Path) -> "MountSpec":
        return cls(source=str(image), target=target, options=("loop",))

    def describe(self) -> str:
        kind = self.fstype or ",".join(self.options) or "bind"
        return f"{self.source} on {self.target} ({kind})"


@dataclass(frozen=True)
class MountHandle:
    seq: int
    spec: MountSpec


def virtual_filesystem_specs(chroot_dir: Path) -> List[MountSpec]:
    return [
        MountSpec(source=src, target=chroot_dir / rel, fstype=fstype)
        for fstype, src, rel in VIRTUAL_FILESYSTEMS
    ]


class MountBackend(Protocol):
    def mount(self, spec: MountSpec) -> None:
        ...

    def unmount(self, spec: MountSpec) -> None:
        ...


class CommandMountBackend:
    """Drives the host mount/umount binaries."""

    def mount(self, spec: MountSpec) -> None:
        argv = ["mount"]
        if spec.fstype:
            argv += ["-t", spec.fstype]
        if spec.options:
            argv += ["-o", ",".join(spec.options)]
        argv += [spec.source, str(spec.target)]
        run_cmd(argv)

    def unmount(self, spec: MountSpec) -> None:
        # Lazy + forced: the directory hosting the mount may already be gone.
        run_cmd(["umount", "-lf", str(spec.target)])


@dataclass
class ResourceGuard:
    """Tracks OS attachments and guarantees LIFO release.

    release() and release_all() never raise: backend failures are logged as
    ResourceReleaseWarning and kept in ``warnings`` for diagnostics.
    """

    backend: MountBackend = field(default_factory=CommandMountBackend)
    warnings: List[str] = field(default_factory=list)
    _held: List[MountHandle] = field(default_factory=list)
    _seq: Iterator[int] = field(default_factory=itertools.count)

    @property
    def held(self) -> List[MountHandle]:
        return list(self._held)

    def acquire(self, spec: MountSpec) -> MountHandle:
        spec.target.mkdir(parents=True, exist_ok=True)
        self.backend.mount(spec)
        handle = MountHandle(seq=next(self._seq), spec=spec)
        self._held.append(handle)
        logger.info("Mounted %s", spec.describe())
        return handle

    def release(self, handle: MountHandle) -> None:
        if handle not in self._held:
            return
        self._held.remove(handle)
        try:
            self.backend.unmount(handle.spec)
        except Exception as e:
            warning = ResourceReleaseWarning(f"Failed to release {handle.spec.describe()}: {e}")
            self.warnings.append(str(warning))
            logger.warning("%s", warning)
            return
        logger.info("Released %s", handle.spec.describe())

    def release_all(self) -> None:
        while self._held:
            self.release(self._held[-1])

    @contextlib.contextmanager
    def holding(self, spec: MountSpec) -> Iterator[MountHandle]:
        handle = self.acquire(spec)
        try:
            yield handle
        finally:
            self.release(handle)

    def __enter__(self) -> "ResourceGuard":
        return self

    def __exit__(self, *exc) -> None:
        self.release_all()


def _unescape_mount_field(value: str) -> str:
    # /proc/mounts encodes space, tab, newline and backslash as octal.
    for code, ch in (("\\040", " "), ("\\011", "\t"), ("\\012", "\n"), ("\\134", "\\")):
        value = value.replace(code, ch)
    return value


def stale_mounts_under(path: Path, *, mounts_file: Path = PROC_MOUNTS) -> List[Path]:
    """Return mount points at or below ``path``, deepest first."""

    if not mounts_file.exists():
        return []
    base = Path(path).resolve()
    found: List[Path] = []
    for line in mounts_file.read_text(encoding="utf-8").splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        target = Path(_unescape_mount_field(parts[1]))
        if target == base or base in target.parents:
            found.append(target)
    return sorted(set(found), key=lambda p: len(p.parts), reverse=True)
