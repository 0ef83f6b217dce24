from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import ConfigValidationError
from .lib.manifests import load_data_file, load_yaml_file

DEFAULT_PACKAGE_SETS = "package_sets.yaml"


@dataclass(frozen=True)
class Repository:
    name: str
    key_url: str
    source: str
    packages: Tuple[str, ...]
    arches: Tuple[str, ...] = ()

    def supports(self, arch: str) -> bool:
        return not self.arches or arch in self.arches


@dataclass(frozen=True)
class PackageSets:
    """Tagged package data: what to install, what to purge, and friends."""

    install: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    purge: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    repositories: Mapping[str, Repository] = field(default_factory=dict)
    services_enable: Tuple[str, ...] = ()
    services_disable: Tuple[str, ...] = ()
    debconf: Tuple[str, ...] = ()

    def install_packages(self, tag: str) -> Tuple[str, ...]:
        if tag not in self.install:
            raise ConfigValidationError(f"Unknown install set: {tag} (known: {', '.join(self.install)})")
        return self.install[tag]

    def resolve_purge(self, tags: Iterable[str]) -> Tuple[str, ...]:
        out: List[str] = []
        for tag in tags:
            if tag not in self.purge:
                raise ConfigValidationError(f"Unknown purge set: {tag} (known: {', '.join(self.purge)})")
            for pkg in self.purge[tag]:
                if pkg not in out:
                    out.append(pkg)
        return tuple(out)

    def repository(self, name: str) -> Repository:
        if name not in self.repositories:
            raise ConfigValidationError(f"Unknown repository: {name}")
        return self.repositories[name]

    def debconf_selections(self, **values: str) -> str:
        return "".join(line.format(**values) + "\n" for line in self.debconf)


def _str_list(raw: Any, where: str) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ConfigValidationError(f"{where} must be a list")
    return tuple(str(p).strip() for p in raw if str(p).strip())


def _tagged(raw: Any, where: str) -> Dict[str, Tuple[str, ...]]:
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ConfigValidationError(f"{where} must be a mapping of tag -> package list")
    return {str(tag): _str_list(pkgs, f"{where}.{tag}") for tag, pkgs in raw.items()}


def package_sets_from_raw(raw: Mapping[str, Any]) -> PackageSets:
    repos: Dict[str, Repository] = {}
    for name, obj in (raw.get("repositories") or {}).items():
        obj = obj or {}
        if not obj.get("key_url") or not obj.get("source"):
            raise ConfigValidationError(f"repositories.{name} needs key_url and source")
        repos[str(name)] = Repository(
            name=str(name),
            key_url=str(obj["key_url"]),
            source=str(obj["source"]),
            packages=_str_list(obj.get("packages"), f"repositories.{name}.packages"),
            arches=_str_list(obj.get("arches"), f"repositories.{name}.arches"),
        )

    services = raw.get("services") or {}
    return PackageSets(
        install=_tagged(raw.get("install"), "install"),
        purge=_tagged(raw.get("purge"), "purge"),
        repositories=repos,
        services_enable=_str_list(services.get("enable"), "services.enable"),
        services_disable=_str_list(services.get("disable"), "services.disable"),
        debconf=_str_list(raw.get("debconf"), "debconf"),
    )


def load_package_sets(path: Optional[Path | str] = None) -> PackageSets:
    raw = load_yaml_file(path) if path else load_data_file(DEFAULT_PACKAGE_SETS)
    return package_sets_from_raw(raw)
