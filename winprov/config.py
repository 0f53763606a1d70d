"""Configuration loading and environment variable parsing for winprov."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from winprov.constants import (
    CUSTOM_ISO_NAME,
    DEFAULT_CATALOG_PATH,
    DEFAULT_LANGUAGE,
    DEFAULT_MIRRORS_PATH,
    DEFAULT_STORAGE_DIR,
    DISK_FORMATS,
    LANGUAGE_TAG_RE,
)
from winprov.exceptions import ConfigError
from winprov.models import AcquisitionPolicy, ProvisionConfig, TemplateVariables
from winprov.utils import get_env, get_env_bool, get_env_path, log, parse_int_env, validate_disk_size


def _language_tag(name: str, default: str) -> str:
    raw = (get_env(name) or "").strip() or default
    if not LANGUAGE_TAG_RE.match(raw):
        raise ConfigError(f"{name} must be a language tag like 'en-US' (got '{raw}')")
    language, _, region = raw.partition("-")
    return f"{language.lower()}-{region.upper()}"


def _optional(name: str) -> Optional[str]:
    raw = get_env(name)
    if raw is None or not raw.strip():
        return None
    return raw.strip()


def _existing_file(name: str) -> Optional[Path]:
    path = get_env_path(name)
    if path is not None and not path.exists():
        raise ConfigError(f"{name} points to a missing path: {path}")
    return path


def parse_env() -> ProvisionConfig:
    version = (get_env("VERSION") or "").strip() or "11"

    language = _language_tag("LANGUAGE", DEFAULT_LANGUAGE)
    region = _language_tag("REGION", language)
    keyboard = _language_tag("KEYBOARD", language)

    username = (get_env("USERNAME") or "").strip() or "Docker"
    password = get_env("PASSWORD", "admin") or "admin"
    computer_name = (get_env("COMPUTER_NAME") or "").strip() or "*"
    if computer_name != "*" and len(computer_name) > 15:
        raise ConfigError(f"COMPUTER_NAME must be at most 15 characters (got '{computer_name}')")
    variables = TemplateVariables(
        username=username,
        password=password,
        language=language,
        region=region,
        keyboard=keyboard,
        computer_name=computer_name,
        product_key=_optional("KEY"),
    )

    storage_dir = get_env_path("STORAGE") or DEFAULT_STORAGE_DIR
    custom_iso = get_env_path("CUSTOM_ISO") or storage_dir / CUSTOM_ISO_NAME

    iso_url = _optional("ISO_URL")
    if iso_url is not None and not iso_url.startswith(("http://", "https://")):
        raise ConfigError(f"ISO_URL must be an http(s) URL (got '{iso_url}')")

    disk_size = validate_disk_size((get_env("DISK_SIZE") or "").strip() or "64G")
    disk_format = (get_env("DISK_FORMAT") or "").strip().lower() or "qcow2"
    if disk_format not in DISK_FORMATS:
        raise ConfigError(f"DISK_FORMAT must be one of: {', '.join(sorted(DISK_FORMATS))} (got '{disk_format}')")
    memory_mb = parse_int_env("MEMORY", "4096", min_val=256)

    retry_delay = parse_int_env("RETRY_DELAY", "5", min_val=0)
    retry_delay_max = parse_int_env("RETRY_DELAY_MAX", "60", min_val=0)
    if retry_delay_max < retry_delay:
        log("WARN", f"RETRY_DELAY_MAX ({retry_delay_max}) is below RETRY_DELAY ({retry_delay}); using {retry_delay}")
        retry_delay_max = retry_delay
    policy = AcquisitionPolicy(
        retries=parse_int_env("DOWNLOAD_RETRIES", "3", min_val=1, max_val=50),
        retry_delay=float(retry_delay),
        retry_delay_max=float(retry_delay_max),
        timeout=float(parse_int_env("DOWNLOAD_TIMEOUT", "60", min_val=1)),
    )

    return ProvisionConfig(
        version=version,
        storage_dir=storage_dir,
        variables=variables,
        policy=policy,
        catalog_path=get_env_path("CATALOG_FILE") or DEFAULT_CATALOG_PATH,
        mirrors_path=get_env_path("MIRRORS_FILE") or DEFAULT_MIRRORS_PATH,
        disk_size=disk_size,
        disk_format=disk_format,
        memory_mb=memory_mb,
        unattend_template=_existing_file("UNATTEND_TEMPLATE"),
        driver_bundle=_existing_file("DRIVER_BUNDLE"),
        custom_iso=custom_iso,
        iso_url=iso_url,
        force_reinstall=get_env_bool("FORCE_REINSTALL", False),
        manual=get_env_bool("MANUAL", False),
        keep_source_iso=get_env_bool("KEEP_SOURCE_ISO", False),
        verbose=get_env_bool("LOG_VERBOSE", False),
    )
