from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import ConfigValidationError
from .lib.manifests import load_yaml_file
from .lib.pkg import is_package_pattern
from .package_sets import PackageSets, load_package_sets

SUPPORTED_RELEASES = frozenset({"focal", "jammy", "noble", "oracular", "plucky", "questing"})

DEFAULT_VOLUME_LABEL = "Ubuntu Minimal Desktop"
MAX_VOLUME_LABEL = 32


@dataclass(frozen=True)
class ArchProfile:
    arch: str
    default_mirror: str
    grub_format: str
    grub_standalone: str
    efi_loader: str
    squashfs_bcj: str


ARCH_PROFILES: Dict[str, ArchProfile] = {
    "amd64": ArchProfile(
        arch="amd64",
        default_mirror="http://archive.ubuntu.com/ubuntu",
        grub_format="x86_64-efi",
        grub_standalone="grubx64.efi",
        efi_loader="bootx64.efi",
        squashfs_bcj="x86",
    ),
    "arm64": ArchProfile(
        arch="arm64",
        default_mirror="http://ports.ubuntu.com/ubuntu-ports",
        grub_format="arm64-efi",
        grub_standalone="grubaa64.efi",
        efi_loader="bootaa64.efi",
        squashfs_bcj="arm",
    ),
}

SUPPORTED_ARCHES = frozenset(ARCH_PROFILES)


@dataclass(frozen=True)
class LiveUser:
    name: str = "ubuntu"
    password: str = "ubuntu"
    full_name: str = "Ubuntu Live User"
    groups: Tuple[str, ...] = (
        "sudo", "adm", "dialout", "cdrom", "floppy", "audio",
        "dip", "video", "plugdev", "netdev",
    )


@dataclass(frozen=True)
class SquashfsOptions:
    codec: str = "xz"
    block_size: int = 1048576
    bcj_filter: Optional[str] = None
    processors: int = field(default_factory=lambda: os.cpu_count() or 1)


@dataclass(frozen=True)
class BuildConfig:
    release: str = "plucky"
    arch: str = "amd64"
    mirror: str = ""
    work_dir: Path = Path("/tmp/ubuntu-build")
    output_dir: Path = Path("output")
    logs_dir: Path = Path("logs")
    iso_name: str = ""
    volume_label: str = DEFAULT_VOLUME_LABEL
    flavour: str = "Ubuntu"
    hostname: str = "ubuntu-minimal"
    locale: str = "en_US.UTF-8"
    timezone: str = "UTC"
    nameservers: Tuple[str, ...] = ("8.8.8.8", "1.1.1.1")
    live_user: LiveUser = field(default_factory=LiveUser)
    custom_debs: Tuple[Path, ...] = ()
    install_sets: Tuple[str, ...] = ("base", "desktop", "installer")
    purge_packages: Tuple[str, ...] = ()
    repositories: Tuple[str, ...] = ("google-chrome",)
    squashfs: SquashfsOptions = field(default_factory=SquashfsOptions)
    efi_image_size_mib: int = 20
    force_clean: bool = False

    def __post_init__(self) -> None:
        if self.release not in SUPPORTED_RELEASES:
            raise ConfigValidationError(
                f"Unsupported release {self.release!r} (supported: {', '.join(sorted(SUPPORTED_RELEASES))})"
            )
        if self.arch not in SUPPORTED_ARCHES:
            raise ConfigValidationError(
                f"Unsupported architecture {self.arch!r} (supported: {', '.join(sorted(SUPPORTED_ARCHES))})"
            )
        if not self.volume_label or len(self.volume_label) > MAX_VOLUME_LABEL:
            raise ConfigValidationError(f"volume_label must be 1-{MAX_VOLUME_LABEL} characters")
        if self.efi_image_size_mib < 2:
            raise ConfigValidationError("efi_image_size_mib must be at least 2")
        if self.squashfs.block_size <= 0 or self.squashfs.processors <= 0:
            raise ConfigValidationError("squashfs block_size and processors must be positive")
        for deb in self.custom_debs:
            if deb.suffix != ".deb" or not deb.is_file():
                raise ConfigValidationError(f"Custom package archive missing or not a .deb: {deb}")
        # Derived defaults; object.__setattr__ because the dataclass is frozen.
        if not self.mirror:
            object.__setattr__(self, "mirror", self.profile.default_mirror)
        if not self.iso_name:
            object.__setattr__(self, "iso_name", f"ubuntu-minimal-desktop-{self.release}-{self.arch}.iso")

    @property
    def profile(self) -> ArchProfile:
        return ARCH_PROFILES[self.arch]

    @property
    def chroot_dir(self) -> Path:
        return self.work_dir / "chroot"

    @property
    def iso_dir(self) -> Path:
        return self.work_dir / "iso"

    @property
    def iso_path(self) -> Path:
        return self.output_dir / self.iso_name

    @property
    def squashfs_bcj(self) -> Optional[str]:
        return self.squashfs.bcj_filter or self.profile.squashfs_bcj

    def with_overrides(self, **changes: Any) -> "BuildConfig":
        """Copy with CLI overrides applied; derived defaults are recomputed."""
        changes = {k: v for k, v in changes.items() if v is not None}
        if self.iso_name == self._default_iso_name():
            changes.setdefault("iso_name", "")
        if self.mirror == self.profile.default_mirror:
            changes.setdefault("mirror", "")
        return replace(self, **changes)

    def _default_iso_name(self) -> str:
        return f"ubuntu-minimal-desktop-{self.release}-{self.arch}.iso"


def _section(raw: Mapping[str, Any], key: str) -> Dict[str, Any]:
    val = raw.get(key) or {}
    if not isinstance(val, dict):
        raise ConfigValidationError(f"{key} must be a mapping")
    return val


def _int(sec: Mapping[str, Any], key: str, default: int, where: str) -> int:
    val = sec.get(key)
    if val is None:
        return default
    if isinstance(val, bool):
        raise ConfigValidationError(f"{where} must be an integer")
    try:
        return int(val)
    except (TypeError, ValueError):
        raise ConfigValidationError(f"{where} must be an integer, got {val!r}") from None


def _custom_debs(raw: Mapping[str, Any], base_dir: Path) -> Tuple[Path, ...]:
    sec = _section(raw, "custom_debs")
    debs: list[Path] = []
    if sec.get("dir"):
        d = (base_dir / str(sec["dir"])).resolve()
        if not d.is_dir():
            raise ConfigValidationError(f"custom_debs.dir is not a directory: {d}")
        debs.extend(sorted(d.glob("*.deb")))
    for f in sec.get("files") or []:
        debs.append((base_dir / str(f)).resolve())
    seen: list[Path] = []
    for p in debs:
        if p not in seen:
            seen.append(p)
    return tuple(seen)


def build_config_from_raw(
    raw: Mapping[str, Any],
    *,
    package_sets: Optional[PackageSets] = None,
    base_dir: Path = Path("."),
) -> BuildConfig:
    """Validate a raw mapping (e.g. parsed YAML) into a BuildConfig."""

    sets = package_sets or load_package_sets()

    ubuntu = _section(raw, "ubuntu")
    paths = _section(raw, "paths")
    iso = _section(raw, "iso")
    system = _section(raw, "system")
    user = _section(raw, "live_user")
    packages = _section(raw, "packages")
    squash = _section(raw, "squashfs")

    install_sets = tuple(packages.get("install_sets") or ("base", "desktop", "installer"))
    for tag in install_sets:
        sets.install_packages(tag)

    if packages.get("purge") is not None:
        purge = tuple(str(p) for p in packages["purge"])
    else:
        purge = sets.resolve_purge(packages.get("purge_sets") or ("bloat",))
    purge += tuple(str(p) for p in packages.get("extra_purge") or () if str(p) not in purge)
    bad = [p for p in purge if not is_package_pattern(p)]
    if bad:
        raise ConfigValidationError(f"Invalid package names in purge list: {', '.join(map(repr, bad))}")

    repositories = tuple(packages.get("repositories", ["google-chrome"]) or ())
    for name in repositories:
        sets.repository(name)

    defaults = LiveUser()
    live_user = LiveUser(
        name=str(user.get("name") or defaults.name),
        password=str(user.get("password") or defaults.password),
        full_name=str(user.get("full_name") or defaults.full_name),
        groups=tuple(user.get("groups") or defaults.groups),
    )

    sq_defaults = SquashfsOptions()
    squashfs = SquashfsOptions(
        codec=str(squash.get("codec") or sq_defaults.codec),
        block_size=_int(squash, "block_size", sq_defaults.block_size, "squashfs.block_size"),
        bcj_filter=squash.get("bcj_filter"),
        processors=_int(squash, "processors", sq_defaults.processors, "squashfs.processors"),
    )

    return BuildConfig(
        release=str(ubuntu.get("release") or "plucky"),
        arch=str(raw.get("arch") or "amd64"),
        mirror=str(ubuntu.get("mirror") or ""),
        work_dir=Path(str(paths.get("work_dir") or "/tmp/ubuntu-build")),
        output_dir=Path(str(paths.get("output_dir") or "output")),
        logs_dir=Path(str(paths.get("logs_dir") or "logs")),
        iso_name=str(iso.get("name") or ""),
        volume_label=str(iso.get("volume_label") or DEFAULT_VOLUME_LABEL),
        flavour=str(iso.get("flavour") or "Ubuntu"),
        hostname=str(system.get("hostname") or "ubuntu-minimal"),
        locale=str(system.get("locale") or "en_US.UTF-8"),
        timezone=str(system.get("timezone") or "UTC"),
        nameservers=tuple(system.get("nameservers") or ("8.8.8.8", "1.1.1.1")),
        live_user=live_user,
        custom_debs=_custom_debs(raw, base_dir),
        install_sets=install_sets,
        purge_packages=purge,
        repositories=repositories,
        squashfs=squashfs,
        efi_image_size_mib=_int(raw, "efi_image_size_mib", 20, "efi_image_size_mib"),
        force_clean=bool(raw.get("force_clean", False)),
    )


def load_build_config(path: str, *, package_sets: Optional[PackageSets] = None) -> BuildConfig:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(path)

    if p.suffix.lower() not in {".yaml", ".yml"}:
        raise ConfigValidationError("build config must be YAML")

    try:
        raw = load_yaml_file(p)
    except ValueError as e:
        raise ConfigValidationError(str(e)) from e
    return build_config_from_raw(raw, package_sets=package_sets, base_dir=p.parent)
