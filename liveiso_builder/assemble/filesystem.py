from __future__ import annotations

import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..build_config import BuildConfig
from ..errors import AssemblyError
from ..lib.chroot import ChrootExecutor
from ..lib.command import run_cmd
from ..lib.pkg import installed_manifest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FilesystemArtifact:
    squashfs: Path
    size_file: Path
    size_bytes: int
    manifest: Path
    manifest_desktop: Path
    package_count: int
    kernel: Path
    initrd: Path


def tree_size_bytes(root: Path) -> int:
    """Apparent size of a tree, staying on one filesystem, hard links once."""

    root_dev = os.lstat(root).st_dev
    seen: set[tuple[int, int]] = set()
    total = 0
    for dirpath, dirnames, filenames in os.walk(root):
        # Do not descend into anything mounted beneath the tree.
        dirnames[:] = [d for d in dirnames if os.lstat(os.path.join(dirpath, d)).st_dev == root_dev]
        for name in [*filenames, *dirnames]:
            st = os.lstat(os.path.join(dirpath, name))
            key = (st.st_dev, st.st_ino)
            if key in seen:
                continue
            seen.add(key)
            total += st.st_size
    return total


def _version_key(version: str) -> List[Tuple[int, Any]]:
    # Numeric parts compare as integers so 6.14 sorts after 6.8.
    return [(0, int(part)) if part.isdigit() else (1, part) for part in re.split(r"[.-]", version)]


def newest_kernel(boot: Path) -> Optional[Tuple[Path, Path]]:
    """Highest-versioned ``vmlinuz-<ver>`` that has a matching ``initrd.img-<ver>``."""

    pairs: Dict[str, Tuple[Path, Path]] = {}
    for kernel in boot.glob("vmlinuz-*"):
        version = kernel.name[len("vmlinuz-"):]
        initrd = boot / f"initrd.img-{version}"
        if not kernel.is_file():
            continue
        if not initrd.is_file():
            logger.warning("Ignoring kernel %s: no %s", kernel.name, initrd.name)
            continue
        pairs[version] = (kernel, initrd)
    if not pairs:
        return None
    return pairs[max(pairs, key=_version_key)]


class FilesystemAssembler:
    """Produce the squashfs image and its size/manifest companions."""

    def __init__(self, cfg: BuildConfig, executor: ChrootExecutor) -> None:
        self.cfg = cfg
        self.executor = executor

    def squashfs_argv(self, root: Path, out: Path) -> List[str]:
        sq = self.cfg.squashfs
        argv = [
            "mksquashfs",
            str(root),
            str(out),
            "-noappend",
            # Kernel and initrd are staged next to the image, not inside it.
            "-e",
            "boot",
            "-comp",
            sq.codec,
        ]
        if sq.codec == "xz" and self.cfg.squashfs_bcj:
            argv += ["-Xbcj", self.cfg.squashfs_bcj]
        argv += ["-b", str(sq.block_size), "-processors", str(sq.processors)]
        return argv

    def stage_kernel(self, root: Path, casper: Path) -> tuple[Path, Path]:
        boot = root / "boot"
        found = newest_kernel(boot)
        if found is None:
            raise AssemblyError("stage_kernel", f"No kernel with a matching initrd found under {boot}")
        vmlinuz, initrd = found
        kernel_out = casper / "vmlinuz"
        initrd_out = casper / "initrd"
        shutil.copyfile(vmlinuz, kernel_out)
        shutil.copyfile(initrd, initrd_out)
        logger.info("Staged kernel %s and initrd %s", vmlinuz.name, initrd.name)
        return kernel_out, initrd_out

    def write_manifests(self, root: Path, casper: Path) -> tuple[Path, Path, int]:
        lines = installed_manifest(self.executor, root)
        data = ("\n".join(lines) + "\n").encode("utf-8") if lines else b""
        manifest = casper / "filesystem.manifest"
        desktop = casper / "filesystem.manifest-desktop"
        manifest.write_bytes(data)
        desktop.write_bytes(data)
        return manifest, desktop, len(lines)

    def assemble(self, root: Path, staging: Path) -> FilesystemArtifact:
        casper = staging / "casper"
        try:
            casper.mkdir(parents=True, exist_ok=True)
            kernel, initrd = self.stage_kernel(root, casper)

            size = tree_size_bytes(root)
            size_file = casper / "filesystem.size"
            size_file.write_text(str(size), encoding="utf-8")
            logger.info("Uncompressed tree size: %d bytes", size)

            manifest, desktop, count = self.write_manifests(root, casper)
            logger.info("Manifest lists %d packages", count)

            squashfs = casper / "filesystem.squashfs"
            logger.info("Creating squashfs filesystem (this may take a while)")
            run_cmd(self.squashfs_argv(root, squashfs))
            if not squashfs.is_file():
                raise AssemblyError("mksquashfs", f"compressor produced no image at {squashfs}")
        except AssemblyError:
            raise
        except Exception as e:
            raise AssemblyError("assemble_filesystem", str(e), cause=e) from e

        return FilesystemArtifact(
            squashfs=squashfs,
            size_file=size_file,
            size_bytes=size,
            manifest=manifest,
            manifest_desktop=desktop,
            package_count=count,
            kernel=kernel,
            initrd=initrd,
        )


def write_disk_metadata(staging: Path, cfg: BuildConfig) -> None:
    """.disk/ release and label files plus README.diskdefines."""

    disk = staging / ".disk"
    disk.mkdir(parents=True, exist_ok=True)
    (disk / "info").write_text(f"{cfg.volume_label} {cfg.release} {cfg.arch}\n", encoding="utf-8")
    (disk / "release").write_text(cfg.release + "\n", encoding="utf-8")
    (disk / "casper-uuid-generic").write_text(cfg.volume_label + "\n", encoding="utf-8")
    (disk / "base_installable").write_text(cfg.flavour + "\n", encoding="utf-8")
    (staging / "README.diskdefines").write_text(
        f"#define DISKNAME  {cfg.volume_label} {cfg.release}\n"
        "#define TYPE  binary\n"
        "#define TYPEbinary  1\n"
        f"#define ARCH  {cfg.arch}\n"
        f"#define ARCH{cfg.arch}  1\n"
        "#define DISKNUM  1\n"
        "#define DISKNUM1  1\n"
        "#define TOTALNUM  0\n"
        "#define TOTALNUM0  1\n",
        encoding="utf-8",
    )
