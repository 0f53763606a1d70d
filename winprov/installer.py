"""Installation state machine: decide, acquire, customize, commit."""

from __future__ import annotations

import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

from winprov.acquisition import Acquirer
from winprov.answer import load_template, render_answer
from winprov.catalog import Catalog
from winprov.exceptions import DiskImageError
from winprov.image import ImageCustomizer
from winprov.mirrors import MirrorRegistry
from winprov.models import (
    AcquisitionResult,
    InstallationMarker,
    InstallPlan,
    InstallState,
    ManualIntervention,
    ProvisionConfig,
    ProvisionResult,
    VersionDescriptor,
)
from winprov.resolver import resolve
from winprov.state import StateStore
from winprov.status import StatusBroadcaster
from winprov.utils import log, parse_size_to_bytes, run


class Installer:
    """Drive one provisioning run for the configured version."""

    def __init__(
        self,
        config: ProvisionConfig,
        catalog: Catalog,
        registry: MirrorRegistry,
        acquirer: Acquirer,
        customizer: ImageCustomizer,
        store: StateStore,
        status: StatusBroadcaster,
    ) -> None:
        self.cfg = config
        self.catalog = catalog
        self.registry = registry
        self.acquirer = acquirer
        self.customizer = customizer
        self.store = store
        self.status = status
        self.state = InstallState.UNINITIALIZED
        self.transitions: List[InstallState] = [self.state]

    @classmethod
    def from_config(cls, config: ProvisionConfig) -> "Installer":
        catalog = Catalog.load(config.catalog_path)
        registry = MirrorRegistry.load(config.mirrors_path)
        if config.iso_url:
            registry = registry.with_override(config.iso_url)
        store = StateStore(config.storage_dir, config.disk_format)
        return cls(
            config,
            catalog,
            registry,
            Acquirer(config.policy, registry),
            ImageCustomizer(config.storage_dir),
            store,
            StatusBroadcaster(store.status_path),
        )

    # -- helpers --------------------------------------------------------

    def _transition(self, state: InstallState) -> None:
        log("DEBUG", f"State: {self.state.value} -> {state.value}")
        self.state = state
        self.transitions.append(state)

    @property
    def custom_iso(self) -> Path:
        return self.cfg.custom_iso or self.store.custom_iso_path

    def resolve(self) -> VersionDescriptor:
        return resolve(self.cfg.version, self.catalog, self.cfg.variables.language)

    def decide(self, descriptor: VersionDescriptor, marker: Optional[InstallationMarker]) -> str:
        """Return ``skip``, ``install`` or ``reinstall`` for the current storage state."""
        disk_present = self.store.disk_image_path.exists()
        if (
            marker is not None
            and marker.installed_key == descriptor.canonical_key
            and disk_present
            and not self.cfg.force_reinstall
        ):
            return "skip"
        # A marker for another (or an unreadable) key is moved aside, never overwritten.
        stale_marker = marker is not None and marker.installed_key != descriptor.canonical_key
        return "reinstall" if disk_present or stale_marker else "install"

    def check_resources(self, descriptor: VersionDescriptor) -> None:
        memory = self.cfg.memory_mb
        if descriptor.min_memory_mb and memory < descriptor.min_memory_mb:
            log(
                "WARN",
                f"{descriptor.display_name} needs at least {descriptor.min_memory_mb} MiB RAM "
                f"(MEMORY={memory}); setup may refuse to continue",
            )
        if descriptor.max_memory_mb and memory > descriptor.max_memory_mb:
            log(
                "WARN",
                f"{descriptor.display_name} supports at most {descriptor.max_memory_mb} MiB RAM "
                f"(MEMORY={memory})",
            )
        disk_gb = parse_size_to_bytes(self.cfg.disk_size) / (1024 ** 3)
        if descriptor.min_disk_gb and disk_gb < descriptor.min_disk_gb:
            log(
                "WARN",
                f"{descriptor.display_name} needs at least {descriptor.min_disk_gb}G of disk "
                f"(DISK_SIZE={self.cfg.disk_size})",
            )

    def plan(self) -> InstallPlan:
        """Describe what ``run`` would do without touching storage or the network."""
        descriptor = self.resolve()
        marker = self.store.read_marker()
        custom = self.custom_iso if self.custom_iso.is_file() else None
        return InstallPlan(
            descriptor=descriptor,
            action=self.decide(descriptor, marker),
            marker=marker,
            disk_image=self.store.disk_image_path,
            candidates=tuple(self.registry.candidates(descriptor)),
            custom_iso=custom,
        )

    # -- run ------------------------------------------------------------

    def run(self) -> ProvisionResult:
        descriptor = self.resolve()
        log("INFO", f"Resolved '{self.cfg.version}' to {descriptor.canonical_key} ({descriptor.display_name})")
        if descriptor.is_evaluation:
            log("INFO", f"{descriptor.display_name} is an evaluation edition and will expire")
        if descriptor.requires_license_key and not self.cfg.variables.product_key:
            log("INFO", f"{descriptor.display_name} needs a license key to activate; set KEY to supply one")
        self.check_resources(descriptor)

        with self.store.lock():
            return self._run_locked(descriptor)

    def _run_locked(self, descriptor: VersionDescriptor) -> ProvisionResult:
        disk = self.store.disk_image_path
        marker = self.store.read_marker()
        action = self.decide(descriptor, marker)

        if action == "skip":
            assert marker is not None
            log("INFO", f"{descriptor.canonical_key} already installed on {marker.installed_at.isoformat()}; skipping setup")
            boot = self.store.resolve_path(marker.boot_image)
            if boot is not None and not boot.exists():
                log("WARN", f"Recorded boot image {boot} is missing; the installed disk boots without it")
                boot = None
            self._transition(InstallState.INSTALLED)
            self.status.ready()
            return ProvisionResult(
                state=self.state,
                descriptor=descriptor,
                disk_image=disk,
                boot_image=boot,
            )

        backup = None
        if marker is None:
            log("INFO", "No installation marker found; starting a fresh installation")
        elif marker.installed_key != descriptor.canonical_key:
            log("INFO", f"Version changed from {marker.installed_key or 'unknown'} to {descriptor.canonical_key}")
        elif self.cfg.force_reinstall:
            log("INFO", "FORCE_REINSTALL set; reinstalling")
        else:
            log("WARN", f"Marker says {marker.installed_key} but {disk} is missing; reinstalling")
        if action == "reinstall":
            backup = self.store.backup(marker)

        self._transition(InstallState.INSTALL_PENDING)
        self.status.update(f"Preparing {descriptor.display_name}")
        self._transition(InstallState.INSTALLING)
        try:
            source, acquisition, downloaded = self._obtain_image(descriptor)
            if source is None:
                assert acquisition is not None
                return self._manual_required(descriptor, acquisition, backup)

            boot = self._prepare_boot_image(descriptor, source)
            self._create_disk(disk)
            self.store.write_marker(
                InstallationMarker(
                    installed_key=descriptor.canonical_key,
                    installed_at=datetime.now(timezone.utc),
                    source_mirror=self._describe_source(source, acquisition),
                    boot_image=self.store.relative_name(boot),
                )
            )
            if downloaded and boot != source and not self.cfg.keep_source_iso:
                source.unlink(missing_ok=True)
                log("INFO", f"Removed downloaded image {source.name} (set KEEP_SOURCE_ISO=1 to keep it)")
        except Exception as exc:
            self._transition(InstallState.FAILED)
            self.status.update(f"Installation failed: {exc}")
            raise

        self._transition(InstallState.INSTALLED)
        self.status.ready()
        log("SUCCESS", f"{descriptor.display_name} is ready to install from {boot}")
        return ProvisionResult(
            state=self.state,
            descriptor=descriptor,
            disk_image=disk,
            boot_image=boot,
            backup=backup,
            acquisition=acquisition,
        )

    def _obtain_image(
        self, descriptor: VersionDescriptor
    ) -> Tuple[Optional[Path], Optional[AcquisitionResult], bool]:
        if self.custom_iso.is_file():
            log("INFO", f"Using operator-supplied image {self.custom_iso}")
            return self.custom_iso, None, False
        self.status.update(f"Downloading {descriptor.display_name}")
        result = self.acquirer.acquire(descriptor, self.store.download_path(descriptor))
        if result.fell_back_to_manual:
            return None, result, False
        return result.local_path, result, True

    def _manual_required(
        self, descriptor: VersionDescriptor, acquisition: AcquisitionResult, backup
    ) -> ProvisionResult:
        manual = ManualIntervention(
            canonical_key=descriptor.canonical_key,
            last_mirror=acquisition.last_mirror.url if acquisition.last_mirror else None,
            reason=acquisition.failure_reason or "no mirror succeeded",
            expected_path=self.custom_iso,
        )
        log("WARN", manual.describe())
        self.status.require_manual(manual)
        self._transition(InstallState.MANUAL_REQUIRED)
        return ProvisionResult(
            state=self.state,
            descriptor=descriptor,
            disk_image=self.store.disk_image_path,
            backup=backup,
            acquisition=acquisition,
            manual=manual,
        )

    def _prepare_boot_image(self, descriptor: VersionDescriptor, source: Path) -> Path:
        if self.cfg.manual:
            log("INFO", "MANUAL mode: booting the unmodified installation image")
            return source
        template = load_template(descriptor, self.cfg.unattend_template)
        if template is None:
            log("WARN", f"No answer template for {descriptor.display_name}; setup will ask for input")
            if self.cfg.driver_bundle is None:
                return source
        answer = render_answer(template, descriptor, self.cfg.variables) if template is not None else None
        self.status.update("Customizing installation image")
        return self.customizer.customize(
            source, answer, self.cfg.driver_bundle, self.store.customized_path(descriptor)
        )

    def _create_disk(self, disk: Path) -> None:
        self.status.update(f"Creating {self.cfg.disk_size} disk image")
        cmd = ["qemu-img", "create", "-f", self.cfg.disk_format, str(disk), self.cfg.disk_size]
        try:
            run(cmd, capture_output=True)
        except FileNotFoundError:
            raise DiskImageError("qemu-img is required to create the disk image")
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or "").strip() or f"exit code {exc.returncode}"
            raise DiskImageError(f"qemu-img create failed: {detail}")
        log("INFO", f"Created {self.cfg.disk_format} disk image {disk} ({self.cfg.disk_size})")

    def _describe_source(self, source: Path, acquisition: Optional[AcquisitionResult]) -> str:
        if acquisition is None:
            return f"operator:{source}"
        if acquisition.source_mirror is not None:
            return acquisition.source_mirror.url
        return f"cache:{source}"
