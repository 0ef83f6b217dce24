from __future__ import annotations

import contextlib
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence

from ..build_config import BuildConfig
from ..errors import AssemblyError
from ..lib.command import run_cmd
from ..lib.mounts import MountSpec, ResourceGuard

logger = logging.getLogger(__name__)

MIB = 1024 * 1024
# Room left for the FAT tables, root directory and cluster slack.
FAT_OVERHEAD_BYTES = 1 * MIB
HOST_GRUB_FONT = Path("/usr/share/grub/unicode.pf2")
HOST_GRUB_LIB = Path("/usr/lib/grub")
EFI_IMAGE_REL = "boot/grub/efiboot.img"


@dataclass(frozen=True)
class MenuEntry:
    title: str
    cmdline: str
    kernel: str = "/casper/vmlinuz"
    initrd: str = "/casper/initrd"


@dataclass(frozen=True)
class BootArtifact:
    iso_path: Path
    efi_image: Path
    boot_loader: Path
    grub_cfg: Path
    xorriso_argv: List[str]


def default_menu(flavour: str) -> List[MenuEntry]:
    return [
        MenuEntry(f"Try {flavour} without installing", "boot=casper maybe-ubiquity quiet splash ---"),
        MenuEntry(f"Install {flavour}", "boot=casper only-ubiquity quiet splash ---"),
        MenuEntry(
            "OEM install (for manufacturers)",
            "boot=casper only-ubiquity quiet splash oem-config/enable=true ---",
        ),
        MenuEntry("Check disc for defects", "boot=casper integrity-check quiet splash ---"),
    ]


def render_grub_cfg(volume_label: str, entries: Sequence[MenuEntry], *, timeout: int = 30) -> str:
    out = [
        f"search --no-floppy --set=root -l '{volume_label}'",
        "",
        "insmod all_video",
        "",
        'set default="0"',
        f"set timeout={timeout}",
    ]
    for e in entries:
        out += [
            "",
            f'menuentry "{e.title}" {{',
            f"   linux {e.kernel} {e.cmdline}",
            f"   initrd {e.initrd}",
            "}",
        ]
    return "\n".join(out) + "\n"


def render_loopback_cfg(flavour: str) -> str:
    return (
        f'menuentry "Try {flavour} without installing" {{\n'
        "    linux /casper/vmlinuz boot=casper iso-scan/filename=${iso_path} maybe-ubiquity quiet splash ---\n"
        "    initrd /casper/initrd\n"
        "}\n"
    )


def xorriso_argv(*, volume_label: str, output: Path, efi_image: Path, staging: Path) -> List[str]:
    """El Torito alternate (EFI) boot entry plus an appended GPT ESP.

    Both address the same FAT image, so the ISO boots as a CD and when
    written raw to a USB device.
    """

    return [
        "xorriso",
        "-as",
        "mkisofs",
        "-iso-level",
        "3",
        "-full-iso9660-filenames",
        "-volid",
        volume_label,
        "-output",
        str(output),
        "-eltorito-alt-boot",
        "-e",
        EFI_IMAGE_REL,
        "-no-emul-boot",
        "-append_partition",
        "2",
        "0xef",
        str(efi_image),
        "-m",
        EFI_IMAGE_REL,
        str(staging),
    ]


class BootImageBuilder:
    def __init__(self, cfg: BuildConfig, guard: ResourceGuard) -> None:
        self.cfg = cfg
        self.guard = guard

    def write_menus(self, staging: Path) -> Path:
        grub_dir = staging / "boot/grub"
        grub_dir.mkdir(parents=True, exist_ok=True)
        grub_cfg = grub_dir / "grub.cfg"
        grub_cfg.write_text(
            render_grub_cfg(self.cfg.volume_label, default_menu(self.cfg.flavour)), encoding="utf-8"
        )
        (grub_dir / "loopback.cfg").write_text(render_loopback_cfg(self.cfg.flavour), encoding="utf-8")
        if HOST_GRUB_FONT.is_file():
            shutil.copyfile(HOST_GRUB_FONT, grub_dir / "font.pf2")
        return grub_cfg

    def locate_grub_modules(self, root: Path) -> Path:
        """GRUB EFI module directory: the host's first, then the built tree's."""

        fmt = self.cfg.profile.grub_format
        for candidate in (HOST_GRUB_LIB / fmt, root / "usr/lib/grub" / fmt):
            if candidate.is_dir():
                return candidate
        raise AssemblyError(
            "boot_loader",
            f"no GRUB {fmt} modules on the host or in the image; install grub-efi-{self.cfg.arch}-bin",
        )

    def make_boot_loader(self, root: Path, staging: Path, grub_cfg: Path) -> Path:
        profile = self.cfg.profile
        tool = shutil.which("grub-mkstandalone")
        if tool is None:
            raise AssemblyError("boot_loader", "grub-mkstandalone not found; cannot produce an EFI boot loader")
        modules = self.locate_grub_modules(root)
        out = staging / "boot/grub" / profile.grub_standalone
        try:
            run_cmd(
                [
                    tool,
                    f"--format={profile.grub_format}",
                    f"--directory={modules}",
                    f"--output={out}",
                    "--locales=",
                    "--fonts=",
                    f"boot/grub/grub.cfg={grub_cfg}",
                ]
            )
        except Exception as e:
            raise AssemblyError("boot_loader", str(e), cause=e) from e
        if not out.is_file():
            raise AssemblyError("boot_loader", f"boot loader binary not found at {out}")
        return out

    def make_efi_image(self, staging: Path, loader: Path, grub_cfg: Path) -> Path:
        """Fixed-size FAT image holding EFI/BOOT/<loader> and the menu."""

        size = self.cfg.efi_image_size_mib * MIB
        payload = loader.stat().st_size + grub_cfg.stat().st_size
        if payload > size - FAT_OVERHEAD_BYTES:
            raise AssemblyError(
                "efi_image",
                f"boot loader and menu ({payload} bytes) do not fit a {self.cfg.efi_image_size_mib} MiB EFI image",
            )

        image = staging / EFI_IMAGE_REL
        with open(image, "wb") as f:
            f.truncate(size)
        mount_point = self.cfg.work_dir / "efi-mount"
        try:
            run_cmd(["mkfs.fat", "-F", "16", str(image)])
            with self.guard.holding(MountSpec.loop(image, mount_point)):
                boot_dir = mount_point / "EFI/BOOT"
                boot_dir.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(loader, boot_dir / self.cfg.profile.efi_loader)
                grub_dir = mount_point / "boot/grub"
                grub_dir.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(grub_cfg, grub_dir / "grub.cfg")
        except AssemblyError:
            raise
        except Exception as e:
            raise AssemblyError("efi_image", str(e), cause=e) from e
        finally:
            with contextlib.suppress(OSError):
                mount_point.rmdir()

        if image.stat().st_size != size:
            raise AssemblyError("efi_image", f"{image} is {image.stat().st_size} bytes, expected {size}")
        return image

    def write_iso(self, staging: Path, efi_image: Path) -> tuple[Path, List[str]]:
        final = self.cfg.iso_path
        final.parent.mkdir(parents=True, exist_ok=True)
        partial = final.with_name(final.name + ".partial")
        argv = xorriso_argv(
            volume_label=self.cfg.volume_label,
            output=partial,
            efi_image=efi_image,
            staging=staging,
        )
        try:
            run_cmd(argv)
            if not partial.is_file():
                raise AssemblyError("iso", f"xorriso produced no output at {partial}")
            os.replace(partial, final)
        except AssemblyError:
            partial.unlink(missing_ok=True)
            raise
        except Exception as e:
            partial.unlink(missing_ok=True)
            raise AssemblyError("iso", str(e), cause=e) from e
        logger.info("ISO written: %s (%d bytes)", final, final.stat().st_size)
        return final, argv

    def build(self, root: Path, staging: Path) -> BootArtifact:
        grub_cfg = self.write_menus(staging)
        loader = self.make_boot_loader(root, staging, grub_cfg)
        efi_image = self.make_efi_image(staging, loader, grub_cfg)
        iso, argv = self.write_iso(staging, efi_image)
        return BootArtifact(
            iso_path=iso,
            efi_image=efi_image,
            boot_loader=loader,
            grub_cfg=grub_cfg,
            xorriso_argv=argv,
        )
