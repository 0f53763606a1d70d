"""Turn a loose version string into a canonical ``VersionDescriptor``.

Resolution is a pure function of the raw string and the loaded catalog:

1. normalize (strip, case-fold, collapse whitespace);
2. exact alias lookup;
3. otherwise split into tokens, find exactly one base release (``11``,
   ``2022``, ``win11``, ``11e``...) and validate every other token against the
   modifier vocabulary (edition, arch, license, class, language);
4. pick the release entry satisfying the modifiers.

Unknown tokens raise ``UnresolvableVersionError`` naming the token; nothing
falls back to a default silently.
"""

from __future__ import annotations

import re
from typing import Collection, Dict, List, Optional, Tuple

from winprov.catalog import Catalog, CatalogEntry, Modifier
from winprov.constants import DEFAULT_LANGUAGE
from winprov.exceptions import UnresolvableVersionError
from winprov.models import VersionDescriptor

_CHUNK_SEPARATORS_RE = re.compile(r"[\s,/]+")
_PART_SEPARATORS_RE = re.compile(r"[-_]+")
_CHUNK_RE = re.compile(r"^[a-z0-9._-]+$")
_LANGUAGE_TAG_RE = re.compile(r"^[a-z]{2}-[a-z]{2}$")


def normalize(raw: str) -> str:
    value = raw.strip().strip("\"'").strip().lower()
    return " ".join(value.split())


def split_chunks(
    normalized: str, vocabulary: Collection[str] = (), raw: str = ""
) -> List[Tuple[str, List[str]]]:
    """Split into ``(chunk, tokens)`` pairs.

    Chunks are delimited by whitespace, ``,`` and ``/``; a chunk is split
    further on ``-`` and ``_`` unless it is a vocabulary word (``x86_64``) or a
    language tag (``de-de``). Characters outside ``[a-z0-9._-]`` are rejected.
    """
    pairs: List[Tuple[str, List[str]]] = []
    for chunk in _CHUNK_SEPARATORS_RE.split(normalized):
        if not chunk:
            continue
        if not _CHUNK_RE.match(chunk):
            raise UnresolvableVersionError(chunk, raw or normalized, "unsupported characters")
        if chunk in vocabulary or _LANGUAGE_TAG_RE.match(chunk):
            pairs.append((chunk, [chunk]))
        else:
            pairs.append((chunk, [part for part in _PART_SEPARATORS_RE.split(chunk) if part]))
    return pairs


def tokenize(normalized: str, vocabulary: Collection[str] = ()) -> List[str]:
    return [token for _, tokens in split_chunks(normalized, vocabulary) for token in tokens]


def _strip_noise(token: str, catalog: Catalog) -> Optional[str]:
    """Drop a noise prefix glued to a release token ("win11" -> "11")."""
    for noise in sorted(catalog.noise, key=len, reverse=True):
        if token.startswith(noise) and len(token) > len(noise):
            return token[len(noise):]
    return None


def _split_release(token: str, catalog: Catalog) -> Optional[Tuple[str, Optional[Modifier], str]]:
    """Return ``(release, compact modifier, suffix)`` when ``token`` names a release."""
    candidates = [token]
    stripped = _strip_noise(token, catalog)
    if stripped:
        candidates.append(stripped)
    for candidate in candidates:
        if candidate in catalog.release_aliases:
            return catalog.release_aliases[candidate], None, ""
        for alias in sorted(catalog.release_aliases, key=len, reverse=True):
            if not candidate.startswith(alias) or len(candidate) == len(alias):
                continue
            suffix = candidate[len(alias):]
            modifier = catalog.modifiers.get(suffix)
            if modifier is not None and modifier.kind != "language":
                return catalog.release_aliases[alias], modifier, suffix
    return None


def _to_descriptor(entry: CatalogEntry, language: str) -> VersionDescriptor:
    return VersionDescriptor(
        canonical_key=entry.key,
        display_name=entry.name,
        edition_class=entry.edition_class,
        architecture=entry.architecture,
        is_evaluation=entry.evaluation,
        requires_license_key=entry.license_key,
        release=entry.release,
        edition=entry.edition,
        language=language,
        image_name=entry.image_name,
        template=entry.template,
        setup_key=entry.setup_key,
        min_memory_mb=entry.min_memory_mb,
        min_disk_gb=entry.min_disk_gb,
        max_memory_mb=entry.max_memory_mb,
    )


def _matches(entry: CatalogEntry, kind: str, value: str) -> bool:
    if kind == "edition":
        return entry.edition == value
    if kind == "arch":
        return entry.architecture.value == value
    if kind == "license":
        return entry.evaluation
    if kind == "class":
        return entry.family == value
    return True


def _select(
    catalog: Catalog,
    release: str,
    requested: Dict[str, Tuple[str, str]],
    raw: str,
) -> CatalogEntry:
    candidates = catalog.release_entries(release)
    for kind in ("edition", "arch", "license", "class"):
        if kind not in requested:
            continue
        value, token = requested[kind]
        remaining = [entry for entry in candidates if _matches(entry, kind, value)]
        if not remaining:
            raise UnresolvableVersionError(
                token, raw, f"no {kind} '{value}' is available for release {release}"
            )
        candidates = remaining

    default = catalog.get(catalog.release_defaults[release])
    order = {entry.key: index for index, entry in enumerate(catalog.release_entries(release))}

    def rank(entry: CatalogEntry):
        return (
            entry.key != default.key,
            entry.edition != default.edition,
            entry.architecture != default.architecture,
            entry.evaluation and "license" not in requested,
            order[entry.key],
        )

    return sorted(candidates, key=rank)[0]


def resolve(raw: str, catalog: Catalog, default_language: str = DEFAULT_LANGUAGE) -> VersionDescriptor:
    """Resolve ``raw`` against ``catalog`` or raise ``UnresolvableVersionError``."""
    normalized = normalize(raw)
    if not normalized:
        raise UnresolvableVersionError("", raw, "empty version string")

    language = default_language
    key = catalog.aliases.get(normalized)
    if key is not None:
        return _to_descriptor(catalog.get(key), language)

    vocabulary = set(catalog.modifiers) | set(catalog.noise)
    chunks = split_chunks(normalized, vocabulary, raw)
    release: Optional[str] = None
    requested: Dict[str, Tuple[str, str]] = {}
    unknown: List[str] = []

    def request(modifier: Modifier, token: str) -> None:
        previous = requested.get(modifier.kind)
        if previous is not None and previous[0] != modifier.value:
            raise UnresolvableVersionError(
                token, raw, f"conflicts with {modifier.kind} '{previous[0]}' from '{previous[1]}'"
            )
        requested[modifier.kind] = (modifier.value, token)

    for chunk, tokens in chunks:
        for token in tokens:
            if token in catalog.noise:
                continue
            modifier = catalog.modifiers.get(token)
            if modifier is not None:
                request(modifier, token)
                continue
            split = _split_release(token, catalog)
            if split is not None:
                found, compact, suffix = split
                if release is not None and release != found:
                    raise UnresolvableVersionError(token, raw, f"second release after '{release}'")
                release = found
                if compact is not None:
                    request(compact, suffix)
                continue
            # Report what the operator typed, not a fragment of it.
            unknown.append(chunk)

    if release is None:
        raise UnresolvableVersionError(normalized, raw, "no known release in version string")
    if unknown:
        raise UnresolvableVersionError(unknown[0], raw)

    if "language" in requested:
        language = requested["language"][0]
    entry = _select(catalog, release, requested, raw)
    return _to_descriptor(entry, language)
