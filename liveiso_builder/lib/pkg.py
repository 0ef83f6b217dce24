from __future__ import annotations

import logging
import re
import shlex
from pathlib import Path
from typing import Sequence

from .chroot import ChrootExecutor
from .command import run_cmd

logger = logging.getLogger(__name__)

UBUNTU_COMPONENTS = ("main", "restricted", "universe", "multiverse")

# Debian package names plus the glob characters apt purges accept. Nothing
# else may reach the shell.
PACKAGE_PATTERN = re.compile(r"^[a-z0-9*?\[][a-z0-9.+*?\[\]-]*$")


def is_package_pattern(name: str) -> bool:
    return bool(PACKAGE_PATTERN.match(name))


def debootstrap_rootfs(
    *,
    target_root: Path,
    release: str,
    mirror: str,
    arch: str,
    variant: str = "minbase",
    components: Sequence[str] = UBUNTU_COMPONENTS,
) -> None:
    run_cmd(
        [
            "debootstrap",
            f"--arch={arch}",
            f"--variant={variant}",
            f"--components={','.join(components)}",
            release,
            str(target_root),
            mirror,
        ]
    )


def apt_update(executor: ChrootExecutor, root: Path) -> None:
    executor.run(root, ["apt-get", "update"])


def apt_install(
    executor: ChrootExecutor,
    root: Path,
    packages: Sequence[str],
    *,
    with_recommends: bool = True,
) -> None:
    if not packages:
        return
    argv = ["apt-get", "install", "-y"]
    if not with_recommends:
        argv.append("--no-install-recommends")
    executor.run(root, [*argv, *packages])


def apt_purge(executor: ChrootExecutor, root: Path, package: str) -> None:
    """Purge one package; globs like ``printer-driver-*`` go through the shell."""

    if not is_package_pattern(package):
        raise ValueError(f"Refusing to purge {package!r}: not a package name or glob")
    if any(ch in package for ch in "*?["):
        executor.shell(root, f"apt-get purge -y {package}")
    else:
        executor.run(root, ["apt-get", "purge", "-y", package])


def apt_autoremove(executor: ChrootExecutor, root: Path) -> None:
    executor.run(root, ["apt-get", "autoremove", "-y"])


def apt_clean(executor: ChrootExecutor, root: Path, *, auto: bool = False) -> None:
    executor.run(root, ["apt-get", "autoclean" if auto else "clean"])


def dpkg_install_local(executor: ChrootExecutor, root: Path, deb_in_root: str) -> None:
    """dpkg -i then let apt resolve missing dependencies.

    dpkg reports unmet dependencies as failure; that is expected here and
    ``apt-get install -f`` is what decides.
    """

    r = executor.run(root, ["dpkg", "-i", deb_in_root], check=False)
    if r.returncode != 0:
        logger.info("dpkg -i %s left unmet dependencies; resolving with apt", deb_in_root)
    executor.run(root, ["apt-get", "install", "-f", "-y"])


def apt_mark_manual(executor: ChrootExecutor, root: Path, packages: Sequence[str]) -> None:
    if packages:
        executor.run(root, ["apt-mark", "manual", *packages])


def deb_package_name(deb_path: Path) -> str:
    r = run_cmd(["dpkg-deb", "-f", str(deb_path), "Package"])
    name = r.stdout.strip()
    if not name:
        raise RuntimeError(f"Could not read package name from {deb_path}")
    return name


def installed_manifest(executor: ChrootExecutor, root: Path) -> list[str]:
    """``name version`` per installed package, in package-database order."""

    r = executor.run(root, ["dpkg-query", "-W", "--showformat=${Package} ${Version}\\n"])
    return [line.strip() for line in r.stdout.splitlines() if line.strip()]


def add_signed_repository(
    executor: ChrootExecutor,
    root: Path,
    *,
    name: str,
    key_url: str,
    source_line: str,
) -> None:
    keyring = f"/usr/share/keyrings/{name}-keyring.gpg"
    executor.shell(
        root,
        f"curl -fsSL {shlex.quote(key_url)} | gpg --batch --yes --dearmor -o {shlex.quote(keyring)}",
    )
    list_path = Path(root) / f"etc/apt/sources.list.d/{name}.list"
    list_path.parent.mkdir(parents=True, exist_ok=True)
    list_path.write_text(source_line.format(keyring=keyring).rstrip("\n") + "\n", encoding="utf-8")
    logger.info("Configured apt repository %s", name)
