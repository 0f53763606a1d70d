"""Data models for winprov."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Tuple


class EditionClass(str, Enum):
    DESKTOP = "desktop"
    SERVER = "server"
    LEGACY = "legacy"


class Architecture(str, Enum):
    X86 = "x86"
    X64 = "x64"
    ARM64 = "arm64"

    @property
    def processor_architecture(self) -> str:
        """Value used by the ``processorArchitecture`` attribute of answer files."""
        return {"x86": "x86", "x64": "amd64", "arm64": "arm64"}[self.value]


class InstallState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INSTALL_PENDING = "install-pending"
    INSTALLING = "installing"
    INSTALLED = "installed"
    MANUAL_REQUIRED = "manual-required"
    FAILED = "failed"


@dataclass(frozen=True)
class VersionDescriptor:
    canonical_key: str
    display_name: str
    edition_class: EditionClass
    architecture: Architecture
    is_evaluation: bool
    requires_license_key: bool
    release: str = ""
    edition: str = ""
    language: str = "en-US"
    image_name: Optional[str] = None
    template: Optional[str] = None
    setup_key: Optional[str] = None
    min_memory_mb: int = 0
    min_disk_gb: int = 0
    max_memory_mb: Optional[int] = None


@dataclass(frozen=True)
class MirrorEntry:
    url: str
    priority: int
    supports_resume: bool = True
    required_headers: Dict[str, str] = field(default_factory=dict, hash=False)
    size_bytes: Optional[int] = None
    checksum: Optional[str] = None  # "<algorithm>:<hex digest>"
    language: Optional[str] = None
    name: str = ""

    @property
    def label(self) -> str:
        return self.name or self.url


@dataclass(frozen=True)
class AcquisitionResult:
    local_path: Optional[Path]
    size_bytes: int
    checksum: str
    source_mirror: Optional[MirrorEntry]
    fell_back_to_manual: bool = False
    failure_reason: Optional[str] = None
    last_mirror: Optional[MirrorEntry] = None
    from_cache: bool = False


@dataclass(frozen=True)
class InstallationMarker:
    installed_key: str
    installed_at: datetime
    source_mirror: str
    boot_image: Optional[str] = None


@dataclass(frozen=True)
class BackupRecord:
    path: Path
    previous_key: str
    created_at: datetime
    moved: Tuple[Path, ...] = ()


@dataclass(frozen=True)
class ManualIntervention:
    canonical_key: str
    last_mirror: Optional[str]
    reason: str
    expected_path: Path

    def describe(self) -> str:
        mirror = self.last_mirror or "<none>"
        return (
            f"Manual intervention required for {self.canonical_key}: automatic download failed "
            f"(last mirror: {mirror}; reason: {self.reason}). "
            f"Place the installation image at {self.expected_path} and restart."
        )


@dataclass
class ProvisionResult:
    state: InstallState
    descriptor: VersionDescriptor
    disk_image: Path
    boot_image: Optional[Path] = None
    backup: Optional[BackupRecord] = None
    acquisition: Optional[AcquisitionResult] = None
    manual: Optional[ManualIntervention] = None


@dataclass(frozen=True)
class TemplateVariables:
    username: str = "Docker"
    password: str = "admin"
    language: str = "en-US"
    region: str = "en-US"
    keyboard: str = "en-US"
    computer_name: str = "*"
    product_key: Optional[str] = None


@dataclass(frozen=True)
class AcquisitionPolicy:
    retries: int = 3
    retry_delay: float = 5.0
    retry_delay_max: float = 60.0
    timeout: float = 60.0
    user_agents: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ProvisionConfig:
    version: str
    storage_dir: Path
    variables: TemplateVariables
    policy: AcquisitionPolicy
    catalog_path: Path
    mirrors_path: Path
    disk_size: str = "64G"
    disk_format: str = "qcow2"
    memory_mb: int = 4096
    unattend_template: Optional[Path] = None
    driver_bundle: Optional[Path] = None
    custom_iso: Optional[Path] = None
    iso_url: Optional[str] = None
    force_reinstall: bool = False
    manual: bool = False
    keep_source_iso: bool = False
    verbose: bool = False


@dataclass(frozen=True)
class IsoMetadata:
    volume_label: str
    el_torito: bool
    volume_size: int = 0  # logical blocks


@dataclass(frozen=True)
class InstallPlan:
    descriptor: VersionDescriptor
    action: str  # "skip", "install" or "reinstall"
    marker: Optional[InstallationMarker]
    disk_image: Path
    candidates: Tuple[MirrorEntry, ...] = ()
    custom_iso: Optional[Path] = None
