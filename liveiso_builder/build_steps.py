from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List

import yaml

from .build_config import BuildConfig
from .lib.chroot import ChrootExecutor
from .lib.mounts import MountHandle, ResourceGuard, virtual_filesystem_specs
from .lib import pkg
from .package_sets import PackageSets, Repository
from .pipeline import PipelinePhase, Stage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuildCtx:
    cfg: BuildConfig
    package_sets: PackageSets
    executor: ChrootExecutor
    guard: ResourceGuard
    mounts: List[MountHandle] = field(default_factory=list)
    # Names of locally supplied packages, in install order.
    custom_packages: List[str] = field(default_factory=list)

    @property
    def root(self) -> Path:
        return self.cfg.chroot_dir

    def chroot(self, *argv: str, **kwargs):
        return self.executor.run(self.root, list(argv), **kwargs)


def _write_file(root: Path, rel: str, contents: str, *, mode: int | None = None) -> Path:
    p = root / rel.lstrip("/")
    p.parent.mkdir(parents=True, exist_ok=True)
    if p.is_symlink():
        p.unlink()
    p.write_text(contents, encoding="utf-8")
    if mode is not None:
        p.chmod(mode)
    return p


def _clear_dir(path: Path, pattern: str = "*") -> None:
    if not path.is_dir():
        return
    for child in path.glob(pattern):
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


# -- bootstrap / mounts ------------------------------------------------------


def bootstrap(ctx: BuildCtx) -> None:
    ctx.root.mkdir(parents=True, exist_ok=True)
    pkg.debootstrap_rootfs(
        target_root=ctx.root,
        release=ctx.cfg.release,
        mirror=ctx.cfg.mirror,
        arch=ctx.cfg.arch,
    )


def mount_virtual_filesystems(ctx: BuildCtx) -> None:
    for spec in virtual_filesystem_specs(ctx.root):
        ctx.mounts.append(ctx.guard.acquire(spec))


def unmount_virtual_filesystems(ctx: BuildCtx) -> None:
    while ctx.mounts:
        ctx.guard.release(ctx.mounts.pop())


# -- system configuration -----------------------------------------------------


def write_resolv_conf(ctx: BuildCtx) -> None:
    lines = "".join(f"nameserver {ns}\n" for ns in ctx.cfg.nameservers)
    _write_file(ctx.root, "/etc/resolv.conf", lines)


def write_apt_sources(ctx: BuildCtx) -> None:
    cfg = ctx.cfg
    components = " ".join(pkg.UBUNTU_COMPONENTS)
    suites = [cfg.release, f"{cfg.release}-updates", f"{cfg.release}-security", f"{cfg.release}-backports"]
    _write_file(
        ctx.root,
        "/etc/apt/sources.list",
        "".join(f"deb {cfg.mirror} {suite} {components}\n" for suite in suites),
    )


def configure_noninteractive_apt(ctx: BuildCtx) -> None:
    _write_file(
        ctx.root,
        "/etc/apt/apt.conf.d/99noninteractive",
        'APT::Get::Assume-Yes "true";\n'
        'Dpkg::Options "--force-confdef";\n'
        'Dpkg::Options "--force-confold";\n',
    )
    # Keep maintainer scripts from starting services inside the chroot.
    _write_file(ctx.root, "/usr/sbin/policy-rc.d", "#!/bin/sh\nexit 101\n", mode=0o755)


def preseed_debconf(ctx: BuildCtx) -> None:
    selections = ctx.package_sets.debconf_selections(locale=ctx.cfg.locale, hostname=ctx.cfg.hostname)
    ctx.chroot("debconf-set-selections", input_text=selections)


def apt_update(ctx: BuildCtx) -> None:
    pkg.apt_update(ctx.executor, ctx.root)


def configure_hostname(ctx: BuildCtx) -> None:
    hostname = ctx.cfg.hostname
    _write_file(ctx.root, "/etc/hostname", hostname + "\n")
    _write_file(
        ctx.root,
        "/etc/hosts",
        "\n".join(
            [
                "127.0.0.1\tlocalhost",
                f"127.0.1.1\t{hostname}",
                "",
                "# The following lines are desirable for IPv6 capable hosts",
                "::1\tip6-localhost ip6-loopback",
                "fe00::0\tip6-localnet",
                "ff00::0\tip6-mcastprefix",
                "ff02::1\tip6-allnodes",
                "ff02::2\tip6-allrouters",
                "",
            ]
        ),
    )


def configure_network(ctx: BuildCtx) -> None:
    netplan = {
        "network": {
            "version": 2,
            "ethernets": {"eth0": {"dhcp4": True}},
            "renderer": "NetworkManager",
        }
    }
    _write_file(ctx.root, "/etc/netplan/01-netcfg.yaml", yaml.safe_dump(netplan, sort_keys=False), mode=0o600)


# -- package installation -----------------------------------------------------


def _install_set(tag: str) -> Callable[[BuildCtx], None]:
    def action(ctx: BuildCtx) -> None:
        pkg.apt_install(ctx.executor, ctx.root, ctx.package_sets.install_packages(tag))

    return action


def _add_repository(repo: Repository) -> Callable[[BuildCtx], None]:
    def action(ctx: BuildCtx) -> None:
        pkg.add_signed_repository(
            ctx.executor, ctx.root, name=repo.name, key_url=repo.key_url, source_line=repo.source
        )
        pkg.apt_update(ctx.executor, ctx.root)
        pkg.apt_install(ctx.executor, ctx.root, repo.packages)

    return action


def install_custom_debs(ctx: BuildCtx) -> None:
    staging = ctx.root / "tmp/custom-debs"
    staging.mkdir(parents=True, exist_ok=True)
    try:
        for deb in ctx.cfg.custom_debs:
            name = pkg.deb_package_name(deb)
            logger.info("Installing custom package %s (%s)", name, deb.name)
            shutil.copy2(deb, staging / deb.name)
            pkg.dpkg_install_local(ctx.executor, ctx.root, f"/tmp/custom-debs/{deb.name}")
            ctx.custom_packages.append(name)
        pkg.apt_mark_manual(ctx.executor, ctx.root, ctx.custom_packages)
    finally:
        shutil.rmtree(staging, ignore_errors=True)
    logger.info("Custom packages installed: %s", ", ".join(ctx.custom_packages) or "(none)")


def configure_locale(ctx: BuildCtx) -> None:
    cfg = ctx.cfg
    ctx.chroot("locale-gen", cfg.locale)
    ctx.chroot("update-locale", f"LANG={cfg.locale}")
    _write_file(ctx.root, "/etc/default/locale", f"LANG={cfg.locale}\n")
    localtime = ctx.root / "etc/localtime"
    if localtime.exists() or localtime.is_symlink():
        localtime.unlink()
    localtime.symlink_to(f"/usr/share/zoneinfo/{cfg.timezone}")


def _reconfigure(package: str) -> Callable[[BuildCtx], None]:
    def action(ctx: BuildCtx) -> None:
        ctx.chroot("dpkg-reconfigure", "-f", "noninteractive", package)

    return action


def create_live_user(ctx: BuildCtx) -> None:
    user = ctx.cfg.live_user
    ctx.chroot("useradd", "-m", "-s", "/bin/bash", "-c", user.full_name, "-G", ",".join(user.groups), user.name)
    ctx.chroot("chpasswd", input_text=f"{user.name}:{user.password}\nroot:{user.password}\n")
    _write_file(ctx.root, f"/etc/sudoers.d/{user.name}", f"{user.name} ALL=(ALL) NOPASSWD:ALL\n", mode=0o440)


def configure_display_manager(ctx: BuildCtx) -> None:
    name = ctx.cfg.live_user.name
    _write_file(
        ctx.root,
        "/etc/gdm3/custom.conf",
        "[daemon]\n"
        "AutomaticLoginEnable=true\n"
        f"AutomaticLogin={name}\n"
        "TimedLoginEnable=true\n"
        f"TimedLogin={name}\n"
        "TimedLoginDelay=0\n"
        "\n[security]\n\n[xdmcp]\n\n[chooser]\n\n[debug]\n",
    )


def tune_sysctl(ctx: BuildCtx) -> None:
    _write_file(
        ctx.root,
        "/etc/sysctl.d/99-live-tuning.conf",
        "vm.swappiness=1\n"
        "vm.vfs_cache_pressure=50\n"
        "vm.dirty_background_ratio=1\n"
        "vm.dirty_ratio=50\n"
        "kernel.nmi_watchdog=0\n"
        "net.ipv4.tcp_congestion_control=bbr\n",
    )


def _systemctl(*argv: str) -> Callable[[BuildCtx], None]:
    def action(ctx: BuildCtx) -> None:
        ctx.chroot("systemctl", *argv)

    return action


def configure_live_session(ctx: BuildCtx) -> None:
    cfg = ctx.cfg
    user = cfg.live_user
    _write_file(
        ctx.root,
        "/etc/casper/casper.conf",
        f'export USERNAME="{user.name}"\n'
        f'export USERFULLNAME="{user.full_name}"\n'
        f'export HOST="{cfg.hostname}"\n'
        f'export BUILD_SYSTEM="{cfg.flavour}"\n'
        f'export FLAVOUR="{cfg.flavour}"\n',
    )
    _write_file(
        ctx.root,
        f"/home/{user.name}/Desktop/ubiquity.desktop",
        "[Desktop Entry]\n"
        f"Name=Install {cfg.flavour}\n"
        f"Comment=Install {cfg.flavour} to your computer\n"
        "Exec=ubiquity gtk_ui\n"
        "Icon=ubiquity\n"
        "Terminal=false\n"
        "Type=Application\n"
        "Categories=System;Settings;\n"
        "StartupNotify=true\n",
        mode=0o755,
    )
    ctx.chroot("chown", "-R", f"{user.name}:{user.name}", f"/home/{user.name}")
    _write_file(
        ctx.root,
        "/etc/ubiquity/ubiquity.conf",
        "[ubiquity]\n"
        "default_keyboard_layout=us\n"
        "default_keyboard_variant=\n"
        "migrate=true\n"
        "automatic=false\n",
    )


def update_initramfs(ctx: BuildCtx) -> None:
    ctx.chroot("update-initramfs", "-u")


# -- cleanup ---------------------------------------------------------------------


def _purge(package: str) -> Callable[[BuildCtx], None]:
    def action(ctx: BuildCtx) -> None:
        if package in ctx.custom_packages:
            logger.info("Not purging %s: installed from a local archive", package)
            return
        pkg.apt_purge(ctx.executor, ctx.root, package)

    return action


def autoremove(ctx: BuildCtx) -> None:
    pkg.apt_autoremove(ctx.executor, ctx.root)


def autoclean(ctx: BuildCtx) -> None:
    pkg.apt_clean(ctx.executor, ctx.root, auto=True)


def apt_clean(ctx: BuildCtx) -> None:
    pkg.apt_clean(ctx.executor, ctx.root)


def remove_policy_rc_d(ctx: BuildCtx) -> None:
    (ctx.root / "usr/sbin/policy-rc.d").unlink(missing_ok=True)


def final_cleanup(ctx: BuildCtx) -> None:
    root = ctx.root
    resolv = root / "etc/resolv.conf"
    if resolv.exists() or resolv.is_symlink():
        resolv.unlink()
    _clear_dir(root / "tmp")
    _clear_dir(root / "var/tmp")
    _clear_dir(root / "var/cache/apt/archives", "*.deb")
    _clear_dir(root / "var/lib/apt/lists")
    (root / "root/.bash_history").unlink(missing_ok=True)
    (root / f"home/{ctx.cfg.live_user.name}/.bash_history").unlink(missing_ok=True)
    # Regenerated on first boot.
    _write_file(root, "/etc/machine-id", "")


# -- stage list -------------------------------------------------------------------


def build_stages(ctx: BuildCtx) -> List[Stage]:
    """The canonical ordered stage list, generated from config and package data."""

    cfg = ctx.cfg
    sets = ctx.package_sets
    BOOT = PipelinePhase.BOOTSTRAPPING
    CONF = PipelinePhase.CONFIGURING
    INST = PipelinePhase.PACKAGE_INSTALLING
    CLEAN = PipelinePhase.CLEANING

    stages: List[Stage] = [
        Stage("bootstrap", BOOT, bootstrap),
        Stage("mount_virtual_filesystems", BOOT, mount_virtual_filesystems),
        Stage("write_resolv_conf", CONF, write_resolv_conf),
        Stage("write_apt_sources", CONF, write_apt_sources),
        Stage("configure_noninteractive_apt", CONF, configure_noninteractive_apt),
        Stage("preseed_debconf", CONF, preseed_debconf),
        Stage("apt_update", CONF, apt_update),
        Stage("configure_hostname", CONF, configure_hostname),
        Stage("configure_network", CONF, configure_network),
    ]

    stages += [Stage(f"install:{tag}", INST, _install_set(tag)) for tag in cfg.install_sets]
    for name in cfg.repositories:
        repo = sets.repository(name)
        if not repo.supports(cfg.arch):
            logger.info("Repository %s not available for %s; skipping", name, cfg.arch)
            continue
        stages.append(Stage(f"repository:{name}", INST, _add_repository(repo)))
    if cfg.custom_debs:
        stages.append(Stage("install_custom_debs", INST, install_custom_debs))

    # Post-install customization depends on the packages above.
    stages += [
        Stage("configure_locale", INST, configure_locale),
        Stage("reconfigure:locales", INST, _reconfigure("locales"), ignorable_failure=True),
        Stage("reconfigure:tzdata", INST, _reconfigure("tzdata"), ignorable_failure=True),
        Stage("create_live_user", INST, create_live_user),
        Stage("configure_display_manager", INST, configure_display_manager),
        Stage("tune_sysctl", INST, tune_sysctl),
    ]
    stages += [Stage(f"enable_service:{svc}", INST, _systemctl("enable", svc)) for svc in sets.services_enable]
    stages += [
        Stage(f"disable_service:{svc}", INST, _systemctl("disable", svc), ignorable_failure=True)
        for svc in sets.services_disable
    ]
    stages += [
        Stage("set_default_target", INST, _systemctl("set-default", "graphical.target"), ignorable_failure=True),
        Stage("configure_live_session", INST, configure_live_session),
        Stage("update_initramfs", INST, update_initramfs),
    ]

    stages += [Stage(f"purge:{p}", CLEAN, _purge(p), ignorable_failure=True) for p in cfg.purge_packages]
    stages += [
        Stage("autoremove", CLEAN, autoremove, ignorable_failure=True),
        Stage("autoclean", CLEAN, autoclean, ignorable_failure=True),
        Stage("remove_policy_rc_d", CLEAN, remove_policy_rc_d),
        Stage("apt_clean", CLEAN, apt_clean, ignorable_failure=True),
        Stage("final_cleanup", CLEAN, final_cleanup),
        Stage("unmount_virtual_filesystems", PipelinePhase.UNMOUNTED, unmount_virtual_filesystems),
    ]
    return stages
