from pathlib import Path

import pytest

from liveiso_builder.build_config import BuildConfig, build_config_from_raw, load_build_config
from liveiso_builder.errors import ConfigValidationError
from liveiso_builder.package_sets import load_package_sets


def test_defaults() -> None:
    cfg = BuildConfig()

    assert cfg.release == "plucky"
    assert cfg.mirror == "http://archive.ubuntu.com/ubuntu"
    assert cfg.iso_name == "ubuntu-minimal-desktop-plucky-amd64.iso"
    assert cfg.volume_label == "Ubuntu Minimal Desktop"
    assert cfg.squashfs_bcj == "x86"
    assert cfg.efi_image_size_mib == 20
    assert cfg.chroot_dir == Path("/tmp/ubuntu-build/chroot")


def test_arm64_uses_ports_mirror_and_arm_profile() -> None:
    cfg = BuildConfig(arch="arm64")

    assert cfg.mirror == "http://ports.ubuntu.com/ubuntu-ports"
    assert cfg.profile.efi_loader == "bootaa64.efi"
    assert cfg.squashfs_bcj == "arm"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"release": "warty"},
        {"arch": "riscv64"},
        {"volume_label": "x" * 33},
        {"efi_image_size_mib": 1},
    ],
)
def test_invalid_values_are_rejected(kwargs) -> None:
    with pytest.raises(ConfigValidationError):
        BuildConfig(**kwargs)


def test_missing_custom_deb_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigValidationError, match="Custom package"):
        BuildConfig(custom_debs=(tmp_path / "nope.deb",))


def test_overrides_recompute_derived_defaults(tmp_path: Path) -> None:
    cfg = BuildConfig().with_overrides(arch="arm64", release="noble", work_dir=tmp_path, output_dir=None)

    assert cfg.mirror == "http://ports.ubuntu.com/ubuntu-ports"
    assert cfg.iso_name == "ubuntu-minimal-desktop-noble-arm64.iso"
    assert cfg.work_dir == tmp_path
    assert cfg.output_dir == Path("output")


def test_overrides_keep_explicit_values() -> None:
    cfg = BuildConfig(mirror="http://mirror.local/ubuntu", iso_name="custom.iso").with_overrides(release="noble")

    assert cfg.mirror == "http://mirror.local/ubuntu"
    assert cfg.iso_name == "custom.iso"


def test_from_raw_defaults_purge_to_bloat_set() -> None:
    sets = load_package_sets()
    cfg = build_config_from_raw({}, package_sets=sets)

    assert cfg.install_sets == ("base", "desktop", "installer")
    assert cfg.purge_packages == sets.resolve_purge(["bloat"])
    assert "printer-driver-*" in cfg.purge_packages
    assert cfg.repositories == ("google-chrome",)


def test_from_raw_rejects_unknown_install_set() -> None:
    with pytest.raises(ConfigValidationError, match="Unknown install set"):
        build_config_from_raw({"packages": {"install_sets": ["base", "kde"]}})


def test_from_raw_rejects_non_mapping_section() -> None:
    with pytest.raises(ConfigValidationError, match="system must be a mapping"):
        build_config_from_raw({"system": ["hostname"]})


@pytest.mark.parametrize(
    "raw",
    [
        {"squashfs": {"block_size": "big"}},
        {"squashfs": {"processors": True}},
        {"efi_image_size_mib": "twenty"},
    ],
)
def test_from_raw_rejects_non_integer_sizes(raw) -> None:
    with pytest.raises(ConfigValidationError, match="must be an integer"):
        build_config_from_raw(raw)


def test_from_raw_accepts_numeric_strings() -> None:
    cfg = build_config_from_raw({"squashfs": {"block_size": "131072"}, "efi_image_size_mib": 32})

    assert cfg.squashfs.block_size == 131072
    assert cfg.efi_image_size_mib == 32


@pytest.mark.parametrize("name", ["foo; rm -rf /", "$(reboot)", "a b", "Orca", "-y"])
def test_from_raw_rejects_unsafe_purge_names(name: str) -> None:
    with pytest.raises(ConfigValidationError, match="Invalid package names"):
        build_config_from_raw({"packages": {"extra_purge": [name]}})


def test_from_raw_accepts_purge_globs() -> None:
    cfg = build_config_from_raw({"packages": {"purge": ["libreoffice-*", "fonts-noto-cjk?", "g++-14"]}})

    assert cfg.purge_packages == ("libreoffice-*", "fonts-noto-cjk?", "g++-14")


def test_load_rejects_malformed_yaml(tmp_path: Path) -> None:
    p = tmp_path / "build_config.yaml"
    p.write_text("ubuntu: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigValidationError, match="Invalid YAML"):
        load_build_config(str(p))


def test_load_yaml_with_custom_debs(tmp_path: Path) -> None:
    debs = tmp_path / "debs"
    debs.mkdir()
    (debs / "b-tool_1.0_amd64.deb").write_bytes(b"!<arch>")
    (debs / "a-tool_1.0_amd64.deb").write_bytes(b"!<arch>")
    (debs / "README").write_text("not a package", encoding="utf-8")
    extra = tmp_path / "extra_2.0_amd64.deb"
    extra.write_bytes(b"!<arch>")
    cfg_path = tmp_path / "build_config.yaml"
    cfg_path.write_text(
        "ubuntu:\n"
        "  release: noble\n"
        "arch: amd64\n"
        "iso:\n"
        "  volume_label: My Live\n"
        "system:\n"
        "  hostname: live-box\n"
        "  nameservers: [9.9.9.9]\n"
        "packages:\n"
        "  purge: [whoopsie]\n"
        "  extra_purge: [orca]\n"
        "  repositories: []\n"
        "custom_debs:\n"
        "  dir: debs\n"
        "  files: [extra_2.0_amd64.deb]\n"
        "squashfs:\n"
        "  processors: 2\n",
        encoding="utf-8",
    )

    cfg = load_build_config(str(cfg_path))

    assert cfg.release == "noble"
    assert cfg.volume_label == "My Live"
    assert cfg.hostname == "live-box"
    assert cfg.nameservers == ("9.9.9.9",)
    assert cfg.purge_packages == ("whoopsie", "orca")
    assert cfg.repositories == ()
    assert [p.name for p in cfg.custom_debs] == [
        "a-tool_1.0_amd64.deb",
        "b-tool_1.0_amd64.deb",
        "extra_2.0_amd64.deb",
    ]
    assert cfg.squashfs.processors == 2


def test_load_rejects_non_yaml(tmp_path: Path) -> None:
    p = tmp_path / "build.json"
    p.write_text("{}", encoding="utf-8")
    with pytest.raises(ConfigValidationError, match="YAML"):
        load_build_config(str(p))


def test_load_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_build_config(str(tmp_path / "absent.yaml"))


def test_package_sets_debconf_substitution_and_repository_arches() -> None:
    sets = load_package_sets()

    selections = sets.debconf_selections(locale="de_DE.UTF-8", hostname="kiosk")

    assert "locales locales/default_environment_locale select de_DE.UTF-8\n" in selections
    assert "postfix postfix/mailname string kiosk.local\n" in selections
    chrome = sets.repository("google-chrome")
    assert chrome.supports("amd64")
    assert not chrome.supports("arm64")
