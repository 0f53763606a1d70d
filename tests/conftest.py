"""Shared test fixtures for winprov."""

from __future__ import annotations

import struct
from pathlib import Path

import pytest

from winprov.catalog import Catalog
from winprov.constants import DEFAULT_CATALOG_PATH, DEFAULT_MIRRORS_PATH, EL_TORITO_ID, ISO_MAGIC, ISO_SECTOR_SIZE
from winprov.models import AcquisitionPolicy, ProvisionConfig, TemplateVariables, VersionDescriptor
from winprov.resolver import resolve


@pytest.fixture(scope="session")
def catalog() -> Catalog:
    """The packaged version catalog."""
    return Catalog.load()


@pytest.fixture
def win11(catalog) -> VersionDescriptor:
    return resolve("11", catalog)


@pytest.fixture
def storage_dir(tmp_path) -> Path:
    path = tmp_path / "storage"
    path.mkdir()
    return path


@pytest.fixture
def fast_policy() -> AcquisitionPolicy:
    return AcquisitionPolicy(
        retries=2,
        retry_delay=1.0,
        retry_delay_max=4.0,
        timeout=5.0,
        user_agents=("agent-a", "agent-b"),
    )


@pytest.fixture
def provision_config(storage_dir, fast_policy) -> ProvisionConfig:
    """Return a ProvisionConfig pointing at a temporary storage root."""
    return ProvisionConfig(
        version="11",
        storage_dir=storage_dir,
        variables=TemplateVariables(),
        policy=fast_policy,
        catalog_path=DEFAULT_CATALOG_PATH,
        mirrors_path=DEFAULT_MIRRORS_PATH,
        custom_iso=storage_dir / "custom.iso",
    )


def build_iso(label: str = "CCCOMA_X64FRE_EN-US_DV9", el_torito: bool = True, blocks: int = 20) -> bytes:
    """Minimal ISO 9660 volume descriptor set: PVD, optional boot record, terminator."""

    def descriptor(kind: int, body: bytes = b"") -> bytes:
        sector = bytes([kind]) + ISO_MAGIC + b"\x01" + body
        return sector.ljust(ISO_SECTOR_SIZE, b"\x00")

    pvd = bytearray(descriptor(1))
    pvd[40:72] = label.encode("ascii").ljust(32, b" ")
    struct.pack_into("<I", pvd, 80, blocks)
    sectors = [bytes(pvd)]
    if el_torito:
        sectors.append(descriptor(0, EL_TORITO_ID.ljust(32, b"\x00")))
    sectors.append(descriptor(255))
    return b"\x00" * (16 * ISO_SECTOR_SIZE) + b"".join(sectors)


@pytest.fixture
def iso_factory():
    """Write a fake installation image and return its path."""

    def _make(path: Path, **kwargs) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(build_iso(**kwargs))
        return path

    return _make


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


# All environment variables that parse_env() reads, used to ensure a clean slate.
_PARSE_ENV_VARS = [
    "VERSION",
    "LANGUAGE",
    "REGION",
    "KEYBOARD",
    "USERNAME",
    "PASSWORD",
    "COMPUTER_NAME",
    "KEY",
    "UNATTEND_TEMPLATE",
    "DRIVER_BUNDLE",
    "FORCE_REINSTALL",
    "MANUAL",
    "STORAGE",
    "CUSTOM_ISO",
    "ISO_URL",
    "KEEP_SOURCE_ISO",
    "DISK_SIZE",
    "DISK_FORMAT",
    "MEMORY",
    "DOWNLOAD_RETRIES",
    "RETRY_DELAY",
    "RETRY_DELAY_MAX",
    "DOWNLOAD_TIMEOUT",
    "CATALOG_FILE",
    "MIRRORS_FILE",
    "LOG_VERBOSE",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Clear all environment variables that parse_env() reads and point STORAGE at tmp_path."""
    for key in _PARSE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("STORAGE", str(tmp_path / "storage"))


@pytest.fixture
def iso_bytes():
    return build_iso
