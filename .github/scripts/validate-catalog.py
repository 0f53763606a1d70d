#!/usr/bin/env python3
"""Validate catalog.yaml and mirrors.yaml: schema correctness and URL reachability."""

from __future__ import annotations

import sys
from pathlib import Path

import requests
import yaml

from winprov.catalog import validate_catalog_data
from winprov.exceptions import CatalogError
from winprov.mirrors import MirrorRegistry

DATA_DIR = Path(__file__).resolve().parents[2] / "winprov" / "data"
CATALOG_PATH = DATA_DIR / "catalog.yaml"
MIRRORS_PATH = DATA_DIR / "mirrors.yaml"
REQUEST_TIMEOUT = 30
USER_AGENT = "winprov/catalog-validator (GitHub Actions)"


def load_yaml(path: Path) -> dict:
    with open(path) as f:
        return yaml.safe_load(f) or {}


# ── Phase 1: Schema validation (fail-fast) ──────────────────────────


def validate_schema(catalog: dict, mirrors: dict) -> list[str]:
    errors = validate_catalog_data(catalog)
    try:
        registry = MirrorRegistry.from_data(mirrors)
    except CatalogError as exc:
        errors.append(str(exc))
        return errors

    versions = catalog.get("versions") or {}
    for key in registry.keys():
        if key != "*" and key not in versions:
            errors.append(f"[{key}] mirrors listed for a key the catalog does not define")
    return errors


def missing_mirrors(catalog: dict, mirrors: dict) -> list[str]:
    listed = (mirrors.get("mirrors") or {}).keys()
    return sorted(key for key in (catalog.get("versions") or {}) if key not in listed)


# ── Phase 2: URL reachability (collect-all) ──────────────────────────


def check_url(key: str, url: str, headers: dict | None = None) -> str | None:
    """Return an error string if the URL is unreachable, else None."""
    session = requests.Session()
    session.headers["User-Agent"] = USER_AGENT
    if headers:
        session.headers.update(headers)

    try:
        resp = session.head(url, timeout=REQUEST_TIMEOUT, allow_redirects=True)
        if resp.status_code < 400:
            return None
        # Some servers reject HEAD; fall back to GET with streaming
        if resp.status_code in (403, 405):
            resp = session.get(
                url, timeout=REQUEST_TIMEOUT, allow_redirects=True, stream=True
            )
            resp.close()
            if resp.status_code < 400:
                return None
        return f"[{key}] HTTP {resp.status_code} for {url}"
    except requests.RequestException as exc:
        return f"[{key}] {exc.__class__.__name__}: {exc} for {url}"


def validate_urls(mirrors: dict) -> tuple[list[str], int]:
    errors: list[str] = []
    checked = 0
    for key, entries in (mirrors.get("mirrors") or {}).items():
        for entry in entries:
            checked += 1
            err = check_url(key, entry["url"], entry.get("headers"))
            if err:
                errors.append(err)
    return errors, checked


# ── Main ─────────────────────────────────────────────────────────────


def main() -> int:
    print(f"Loading {CATALOG_PATH} and {MIRRORS_PATH}")
    catalog = load_yaml(CATALOG_PATH)
    mirrors = load_yaml(MIRRORS_PATH)

    # Phase 1
    print("\n=== Phase 1: Schema validation ===")
    schema_errors = validate_schema(catalog, mirrors)
    if schema_errors:
        for e in schema_errors:
            print(f"  ERROR: {e}")
        print(f"\nSchema validation failed with {len(schema_errors)} error(s)")
        return 1
    version_count = len(catalog["versions"])
    print(f"  OK: {version_count} versions, all schemas valid")
    for key in missing_mirrors(catalog, mirrors):
        print(f"  WARN: [{key}] has no mirrors; it can only be installed from CUSTOM_ISO")

    # Phase 2
    print("\n=== Phase 2: URL reachability ===")
    url_errors, checked = validate_urls(mirrors)
    if url_errors:
        for e in url_errors:
            print(f"  ERROR: {e}")
        print(f"\nURL validation failed: {len(url_errors)}/{checked} unreachable")
        return 1
    print(f"  OK: all {checked} URLs reachable")

    print("\nAll checks passed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
