"""CLI entry points for winprov."""

from __future__ import annotations

import argparse
import dataclasses
from enum import Enum
from pathlib import Path
from typing import List, Optional

from winprov.catalog import Catalog
from winprov.config import parse_env
from winprov.constants import _SENSITIVE_FIELDS, DEFAULT_LANGUAGE
from winprov.exceptions import ManagerError
from winprov.installer import Installer
from winprov.models import EditionClass, InstallState, ProvisionConfig, ProvisionResult, VersionDescriptor
from winprov.resolver import resolve
from winprov.utils import get_env, get_env_path, log, set_log_verbose

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_MANUAL = 2


def list_versions(catalog_path: Optional[Path] = None, class_filter: Optional[str] = None) -> int:
    """Print the catalog, optionally filtered by edition class."""
    catalog = Catalog.load(catalog_path)
    edition_class = None
    if class_filter:
        try:
            edition_class = EditionClass(class_filter.strip().lower())
        except ValueError:
            choices = ", ".join(c.value for c in EditionClass)
            log("ERROR", f"Unknown edition class '{class_filter}' (choose from: {choices})")
            return EXIT_FAILURE
        log("INFO", f"Showing {edition_class.value} versions")
    entries = catalog.by_class(edition_class)
    if not entries:
        log("WARN", "No versions found")
        return EXIT_OK

    max_key = max(len(entry.key) for entry in entries)
    for entry in entries:
        flags = [entry.edition_class.value, entry.architecture.value]
        if entry.evaluation:
            flags.append("eval")
        if entry.license_key:
            flags.append("key")
        aliases = ", ".join(entry.aliases)
        line = f"  {entry.key:<{max_key}}  {entry.name}  ({', '.join(flags)})"
        if aliases:
            line += f"  aliases: {aliases}"
        print(line)
    return EXIT_OK


def show_descriptor(descriptor: VersionDescriptor) -> None:
    for field in dataclasses.fields(descriptor):
        value = getattr(descriptor, field.name)
        if isinstance(value, Enum):
            value = value.value
        print(f"  {field.name}: {value}")


def _print_fields(obj, indent: str = "  ") -> None:
    for field in dataclasses.fields(obj):
        value = getattr(obj, field.name)
        if field.name in _SENSITIVE_FIELDS:
            print(f"{indent}{field.name}: {'********' if value else None}")
        elif dataclasses.is_dataclass(value):
            print(f"{indent}{field.name}:")
            _print_fields(value, indent + "  ")
        else:
            print(f"{indent}{field.name}: {value}")


def show_config(cfg: ProvisionConfig) -> None:
    """Print the resolved configuration with secrets masked."""
    _print_fields(cfg)


def print_startup_banner(result: ProvisionResult) -> None:
    """Print the paths the launch step needs."""
    descriptor = result.descriptor
    lines: List[str] = [f"  Windows: {descriptor.display_name} ({descriptor.canonical_key})"]
    lines.append(f"  State: {result.state.value}")
    lines.append(f"  Disk: {result.disk_image}")
    if result.boot_image is not None:
        lines.append(f"  Boot: {result.boot_image}")
    if result.backup is not None:
        lines.append(f"  Backup: {result.backup.path}")
    if result.manual is not None:
        lines.append(f"  Manual: place the image at {result.manual.expected_path}")

    max_len = max(len(line) for line in lines)
    border_len = max_len + 2
    banner_colour = "\033[0;36m"
    reset = "\033[0m"
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)
    for line in lines:
        print(f"{banner_colour}{line}{reset}", flush=True)
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)


def dry_run(cfg: ProvisionConfig) -> int:
    log("INFO", "=== Configuration ===")
    show_config(cfg)
    installer = Installer.from_config(cfg)
    plan = installer.plan()
    descriptor = plan.descriptor
    log("INFO", "=== Plan ===")
    log("INFO", f"Version:     {descriptor.canonical_key} ({descriptor.display_name})")
    if plan.marker is not None:
        log("INFO", f"Installed:   {plan.marker.installed_key or 'unknown'} ({plan.marker.installed_at.isoformat()})")
    else:
        log("INFO", "Installed:   nothing")
    log("INFO", f"Action:      {plan.action}")
    if plan.custom_iso is not None:
        log("SUCCESS", f"Image:       {plan.custom_iso} (operator-supplied)")
    elif plan.candidates:
        for rank, mirror in enumerate(plan.candidates, start=1):
            log("INFO", f"Mirror #{rank}:   {mirror.label} {mirror.url}")
    else:
        log("WARN", "Mirrors:     none; manual intervention will be required")
    installer.check_resources(descriptor)
    log("INFO", "=== Dry-run complete (nothing downloaded or written) ===")
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Unattended Windows guest provisioning")
    parser.add_argument(
        "--list-versions",
        nargs="?",
        const="",
        default=None,
        metavar="CLASS",
        help="List known versions and exit (optionally filter by class: desktop, server, legacy)",
    )
    parser.add_argument("--resolve", metavar="RAW", help="Resolve a version string and exit")
    parser.add_argument("--show-config", action="store_true", help="Show resolved configuration and exit")
    parser.add_argument("--dry-run", action="store_true", help="Validate configuration and print the plan, then exit")
    args = parser.parse_args(argv)

    try:
        if args.list_versions is not None:
            return list_versions(get_env_path("CATALOG_FILE"), args.list_versions or None)

        if args.resolve is not None:
            catalog = Catalog.load(get_env_path("CATALOG_FILE"))
            language = (get_env("LANGUAGE") or "").strip() or DEFAULT_LANGUAGE
            show_descriptor(resolve(args.resolve, catalog, language))
            return EXIT_OK

        cfg = parse_env()
        set_log_verbose(cfg.verbose)
        if args.show_config:
            show_config(cfg)
            return EXIT_OK
        if args.dry_run:
            return dry_run(cfg)

        result = Installer.from_config(cfg).run()
    except ManagerError as exc:
        log("ERROR", f"[{exc.stage}] {exc}")
        return EXIT_FAILURE
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return EXIT_FAILURE

    print_startup_banner(result)
    if result.state == InstallState.MANUAL_REQUIRED:
        return EXIT_MANUAL
    return EXIT_OK
