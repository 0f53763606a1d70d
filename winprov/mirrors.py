"""Mirror registry: ranked download sources per canonical version key."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from winprov.constants import DEFAULT_MIRRORS_PATH
from winprov.exceptions import CatalogError
from winprov.models import MirrorEntry, VersionDescriptor

_CHECKSUM_ALGORITHMS = {"sha256", "sha1", "md5"}


def _parse_entry(key: str, index: int, raw) -> MirrorEntry:
    if not isinstance(raw, dict):
        raise CatalogError(f"[{key}] mirror #{index} is not a mapping")
    url = raw.get("url")
    if not isinstance(url, str) or not url.startswith(("http://", "https://")):
        raise CatalogError(f"[{key}] mirror #{index} needs an http(s) 'url'")
    try:
        priority = int(raw.get("priority", 100))
    except (TypeError, ValueError):
        raise CatalogError(f"[{key}] mirror #{index} 'priority' must be an integer")
    checksum = raw.get("checksum")
    if checksum is not None:
        algorithm, _, digest = str(checksum).partition(":")
        if algorithm.lower() not in _CHECKSUM_ALGORITHMS or not digest:
            raise CatalogError(
                f"[{key}] mirror #{index} checksum must look like 'sha256:<hex>' (got '{checksum}')"
            )
        checksum = f"{algorithm.lower()}:{digest.lower()}"
    headers = raw.get("headers") or {}
    if not isinstance(headers, dict):
        raise CatalogError(f"[{key}] mirror #{index} 'headers' must be a mapping")
    size = raw.get("size")
    return MirrorEntry(
        url=url,
        priority=priority,
        supports_resume=bool(raw.get("resume", True)),
        required_headers={str(k): str(v) for k, v in headers.items()},
        size_bytes=int(size) if size is not None else None,
        checksum=checksum,
        language=raw.get("language"),
        name=str(raw.get("name", "")),
    )


class MirrorRegistry:
    def __init__(self, mirrors: Dict[str, List[MirrorEntry]]) -> None:
        self._mirrors = mirrors

    @classmethod
    def from_data(cls, data) -> "MirrorRegistry":
        if not isinstance(data, dict) or not isinstance(data.get("mirrors", {}), dict):
            raise CatalogError("Mirror table must contain a 'mirrors' mapping")
        mirrors: Dict[str, List[MirrorEntry]] = {}
        for key, entries in (data.get("mirrors") or {}).items():
            if not isinstance(entries, list):
                raise CatalogError(f"[{key}] mirrors must be a list")
            mirrors[key] = [_parse_entry(key, idx, raw) for idx, raw in enumerate(entries, start=1)]
        return cls(mirrors)

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "MirrorRegistry":
        if path is None:
            path = DEFAULT_MIRRORS_PATH
        if not path.exists():
            raise CatalogError(f"Mirror table missing: {path}")
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise CatalogError(f"Mirror table {path} contains invalid YAML: {exc}")
        return cls.from_data(data or {})

    def keys(self) -> List[str]:
        return sorted(self._mirrors)

    def with_override(self, url: str) -> "MirrorRegistry":
        """Return a registry where ``url`` is tried first for every version."""
        override = MirrorEntry(url=url, priority=0, supports_resume=True, name="ISO_URL")
        merged = {key: [override] + list(entries) for key, entries in self._mirrors.items()}
        merged["*"] = [override]
        return MirrorRegistry(merged)

    def candidates(self, descriptor: VersionDescriptor) -> List[MirrorEntry]:
        """Mirrors for ``descriptor`` in the order they should be tried."""
        entries = self._mirrors.get(descriptor.canonical_key)
        if entries is None:
            entries = self._mirrors.get("*", [])
        wanted = descriptor.language.lower()
        usable = [
            entry
            for entry in entries
            if entry.language is None or entry.language.lower() == wanted
        ]
        # sorted() is stable, so equal priorities keep declaration order
        return sorted(usable, key=lambda entry: entry.priority)
