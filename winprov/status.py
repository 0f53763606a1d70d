"""Provisioning status broadcasting for winprov."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from winprov.models import ManualIntervention
from winprov.utils import log

MANUAL_PREFIX = "MANUAL_REQUIRED: "


class StatusBroadcaster:
    """Write provisioning progress to a file the surrounding system polls."""

    def __init__(self, status_file: Path) -> None:
        self.status_file = status_file
        self.manual: Optional[ManualIntervention] = None
        self._ready = False

    def update(self, msg: str) -> None:
        """Append a status message to the status file."""
        if self._ready:
            return
        try:
            self.status_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.status_file, "a", encoding="utf-8") as f:
                f.write(msg + "\n")
                f.flush()
        except OSError as exc:
            log("DEBUG", f"Cannot write status file {self.status_file}: {exc}")
        log("DEBUG", f"Status: {msg}")

    def require_manual(self, intervention: ManualIntervention) -> None:
        """Replace the status file with the manual-intervention signal."""
        self.manual = intervention
        try:
            self.status_file.parent.mkdir(parents=True, exist_ok=True)
            self.status_file.write_text(MANUAL_PREFIX + intervention.describe() + "\n", encoding="utf-8")
        except OSError as exc:
            log("DEBUG", f"Cannot write status file {self.status_file}: {exc}")
        log("DEBUG", "Status: manual intervention required")

    def ready(self) -> None:
        """Signal completion: remove the status file so polling detects it."""
        self._ready = True
        try:
            self.status_file.unlink(missing_ok=True)
        except OSError as exc:
            log("DEBUG", f"Cannot remove status file {self.status_file}: {exc}")
        log("DEBUG", "Status: installation ready")
