"""Durable installation state: marker file, backups and the run lock."""

from __future__ import annotations

import fcntl
import json
import os
import shutil
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

from winprov.constants import (
    BACKUP_DIR_NAME,
    CUSTOM_ISO_NAME,
    DISK_IMAGE_STEM,
    INSTALLED_MARKER_NAME,
    LOCK_FILE_NAME,
    STATUS_FILE_NAME,
)
from winprov.exceptions import StateConflictError
from winprov.models import BackupRecord, InstallationMarker, VersionDescriptor
from winprov.utils import ensure_directory, log

# Installed key reported for a marker that exists but cannot be parsed.
UNKNOWN_KEY = ""


class StateStore:
    """Files under the storage root that survive container restarts."""

    def __init__(self, storage_dir: Path, disk_format: str = "qcow2") -> None:
        self.storage_dir = storage_dir
        self.disk_format = disk_format

    @property
    def marker_path(self) -> Path:
        return self.storage_dir / INSTALLED_MARKER_NAME

    @property
    def lock_path(self) -> Path:
        return self.storage_dir / LOCK_FILE_NAME

    @property
    def backup_root(self) -> Path:
        return self.storage_dir / BACKUP_DIR_NAME

    @property
    def status_path(self) -> Path:
        return self.storage_dir / STATUS_FILE_NAME

    @property
    def custom_iso_path(self) -> Path:
        return self.storage_dir / CUSTOM_ISO_NAME

    @property
    def disk_image_path(self) -> Path:
        return self.storage_dir / f"{DISK_IMAGE_STEM}.{self.disk_format}"

    def download_path(self, descriptor: VersionDescriptor) -> Path:
        return self.storage_dir / f"{descriptor.canonical_key}.iso"

    def customized_path(self, descriptor: VersionDescriptor) -> Path:
        return self.storage_dir / f"{descriptor.canonical_key}-unattended.iso"

    def resolve_path(self, name: Optional[str]) -> Optional[Path]:
        """Turn a path recorded in the marker back into an absolute path."""
        if not name:
            return None
        path = Path(name)
        return path if path.is_absolute() else self.storage_dir / path

    def relative_name(self, path: Path) -> str:
        try:
            return path.relative_to(self.storage_dir).as_posix()
        except ValueError:
            return str(path)

    # -- marker ---------------------------------------------------------

    def read_marker(self) -> Optional[InstallationMarker]:
        if not self.marker_path.exists():
            return None
        try:
            data = json.loads(self.marker_path.read_text(encoding="utf-8"))
            return InstallationMarker(
                installed_key=str(data["installed_key"]),
                installed_at=datetime.fromisoformat(data["installed_at"]),
                source_mirror=str(data.get("source_mirror", "")),
                boot_image=data.get("boot_image"),
            )
        except (OSError, ValueError, KeyError, TypeError) as exc:
            log("WARN", f"Installation marker {self.marker_path} is unreadable ({exc}); treating it as unknown")
            mtime = self.marker_path.stat().st_mtime
            return InstallationMarker(
                installed_key=UNKNOWN_KEY,
                installed_at=datetime.fromtimestamp(mtime, tz=timezone.utc),
                source_mirror="",
            )

    def write_marker(self, marker: InstallationMarker) -> None:
        """Replace the marker atomically; readers see the old or the new file."""
        ensure_directory(self.storage_dir)
        payload = {
            "installed_key": marker.installed_key,
            "installed_at": marker.installed_at.isoformat(),
            "source_mirror": marker.source_mirror,
            "boot_image": marker.boot_image,
        }
        staged = self.marker_path.with_name(self.marker_path.name + ".tmp")
        with open(staged, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(staged, self.marker_path)
        log("INFO", f"Marked {marker.installed_key} as installed ({self.marker_path})")

    # -- backups --------------------------------------------------------

    def backup(self, marker: Optional[InstallationMarker]) -> BackupRecord:
        """Move the previous installation out of the way before reinstalling."""
        previous_key = marker.installed_key if marker is not None else UNKNOWN_KEY
        created_at = datetime.now(timezone.utc)
        stamp = created_at.strftime("%Y%m%dT%H%M%SZ")
        folder = self.backup_root / f"{stamp}-{previous_key or 'unknown'}"
        suffix = 1
        while folder.exists():
            suffix += 1
            folder = self.backup_root / f"{stamp}-{previous_key or 'unknown'}-{suffix}"
        ensure_directory(folder)

        candidates: List[Path] = [self.disk_image_path]
        boot = self.resolve_path(marker.boot_image) if marker is not None else None
        # Operator-supplied images belong to the operator, not to the installation.
        if boot is not None and boot != self.custom_iso_path and boot.parent == self.storage_dir:
            candidates.append(boot)
        candidates.append(self.marker_path)

        moved: List[Path] = []
        for path in candidates:
            if not path.exists():
                continue
            target = folder / path.name
            shutil.move(str(path), str(target))
            moved.append(target)
            log("DEBUG", f"Backed up {path.name} -> {target}")

        log("INFO", f"Previous installation ({previous_key or 'unknown'}) moved to {folder}")
        return BackupRecord(path=folder, previous_key=previous_key, created_at=created_at, moved=tuple(moved))

    # -- lock -----------------------------------------------------------

    @contextmanager
    def lock(self) -> Iterator[None]:
        """Hold an exclusive, non-blocking lock on the storage root."""
        ensure_directory(self.storage_dir)
        handle = open(self.lock_path, "a+", encoding="utf-8")
        try:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError:
                raise StateConflictError(
                    f"Another provisioning run holds {self.lock_path}; refusing to run concurrently"
                )
            handle.seek(0)
            handle.truncate()
            handle.write(f"{os.getpid()}\n")
            handle.flush()
            yield
        finally:
            handle.close()
