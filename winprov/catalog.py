"""Static version catalog: canonical keys, aliases and resolver vocabulary."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from winprov.constants import DEFAULT_CATALOG_PATH
from winprov.exceptions import CatalogError
from winprov.models import Architecture, EditionClass

MODIFIER_KINDS = ("edition", "arch", "license", "class", "language")
_REQUIRED_VERSION_FIELDS = ("name", "release", "edition", "class", "arch")


@dataclass(frozen=True)
class CatalogEntry:
    key: str
    name: str
    release: str
    edition: str
    edition_class: EditionClass
    family: str
    architecture: Architecture
    evaluation: bool
    license_key: bool
    setup_key: Optional[str]
    image_name: Optional[str]
    template: Optional[str]
    min_memory_mb: int
    min_disk_gb: int
    max_memory_mb: Optional[int]
    aliases: Tuple[str, ...]


@dataclass(frozen=True)
class Modifier:
    kind: str
    value: str


def validate_catalog_data(data) -> List[str]:
    """Return a list of schema problems; an empty list means the catalog is usable."""
    errors: List[str] = []
    if not isinstance(data, dict):
        return ["catalog must be a mapping"]

    versions = data.get("versions")
    if not isinstance(versions, dict) or not versions:
        errors.append("Top-level 'versions' mapping is missing or empty")
        versions = {}
    releases = data.get("releases")
    if not isinstance(releases, dict) or not releases:
        errors.append("Top-level 'releases' mapping is missing or empty")
        releases = {}
    modifiers = data.get("modifiers") or {}
    if not isinstance(modifiers, dict):
        errors.append("'modifiers' must be a mapping")
        modifiers = {}

    classes = {item.value for item in EditionClass}
    arches = {item.value for item in Architecture}
    for key, entry in versions.items():
        if not isinstance(entry, dict):
            errors.append(f"[{key}] entry is not a mapping")
            continue
        for name in _REQUIRED_VERSION_FIELDS:
            if name not in entry:
                errors.append(f"[{key}] missing required field '{name}'")
        if "class" in entry and entry["class"] not in classes:
            errors.append(f"[{key}] 'class' must be one of {sorted(classes)}, got '{entry['class']}'")
        if "arch" in entry and entry["arch"] not in arches:
            errors.append(f"[{key}] 'arch' must be one of {sorted(arches)}, got '{entry['arch']}'")
        if "release" in entry and str(entry["release"]) not in releases:
            errors.append(f"[{key}] release '{entry['release']}' is not declared under 'releases'")

    for release, info in releases.items():
        if not isinstance(info, dict):
            errors.append(f"[release {release}] entry is not a mapping")
            continue
        default = info.get("default")
        if default not in versions:
            errors.append(f"[release {release}] default '{default}' is not a known version")
        elif str(versions[default].get("release")) != str(release):
            errors.append(f"[release {release}] default '{default}' belongs to another release")

    for kind in modifiers:
        if kind not in MODIFIER_KINDS:
            errors.append(f"Unknown modifier kind '{kind}'")

    seen: Dict[str, str] = {}
    for key, entry in versions.items():
        if not isinstance(entry, dict):
            continue
        for alias in [key] + [str(a) for a in entry.get("aliases", [])]:
            alias_norm = " ".join(alias.lower().split())
            if alias_norm in seen and seen[alias_norm] != key:
                errors.append(f"Alias '{alias_norm}' maps to both '{seen[alias_norm]}' and '{key}'")
            seen[alias_norm] = key
    return errors


class Catalog:
    """In-memory view of the version catalog."""

    def __init__(self, data: dict) -> None:
        errors = validate_catalog_data(data)
        if errors:
            raise CatalogError("Invalid version catalog:\n  " + "\n  ".join(errors))

        self.noise: Tuple[str, ...] = tuple(str(item).lower() for item in data.get("noise", []))
        self.entries: Dict[str, CatalogEntry] = {}
        for key, raw in data["versions"].items():
            self.entries[key] = CatalogEntry(
                key=key,
                name=raw["name"],
                release=str(raw["release"]),
                edition=str(raw["edition"]),
                edition_class=EditionClass(raw["class"]),
                family=str(raw.get("family", raw["class"])),
                architecture=Architecture(raw["arch"]),
                evaluation=bool(raw.get("evaluation", False)),
                license_key=bool(raw.get("license_key", not raw.get("evaluation", False))),
                setup_key=raw.get("setup_key"),
                image_name=raw.get("image"),
                template=raw.get("template"),
                min_memory_mb=int(raw.get("min_memory_mb", 0)),
                min_disk_gb=int(raw.get("min_disk_gb", 0)),
                max_memory_mb=raw.get("max_memory_mb"),
                aliases=tuple(str(alias) for alias in raw.get("aliases", [])),
            )

        self.aliases: Dict[str, str] = {}
        for entry in self.entries.values():
            for alias in (entry.key,) + entry.aliases:
                self.aliases[" ".join(alias.lower().split())] = entry.key

        self.release_defaults: Dict[str, str] = {}
        self.release_aliases: Dict[str, str] = {}
        for release, info in data["releases"].items():
            release = str(release)
            self.release_defaults[release] = info["default"]
            for alias in [release] + [str(a) for a in info.get("aliases", [])]:
                self.release_aliases[alias.lower()] = release

        self.modifiers: Dict[str, Modifier] = {}
        for kind, values in (data.get("modifiers") or {}).items():
            for value, tokens in (values or {}).items():
                for token in tokens or []:
                    self.modifiers[str(token).lower()] = Modifier(kind=kind, value=str(value))

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Catalog":
        if path is None:
            path = DEFAULT_CATALOG_PATH
        if not path.exists():
            raise CatalogError(f"Version catalog missing: {path}")
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise CatalogError(f"Version catalog {path} contains invalid YAML: {exc}")
        return cls(data or {})

    def get(self, key: str) -> CatalogEntry:
        try:
            return self.entries[key]
        except KeyError:
            raise CatalogError(f"Unknown canonical version key '{key}'") from None

    def release_entries(self, release: str) -> List[CatalogEntry]:
        """Entries of one release, in declaration order."""
        return [entry for entry in self.entries.values() if entry.release == release]

    def by_class(self, edition_class: Optional[EditionClass] = None) -> List[CatalogEntry]:
        return [
            entry
            for entry in self.entries.values()
            if edition_class is None or entry.edition_class == edition_class
        ]
