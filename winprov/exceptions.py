"""Custom exceptions for winprov."""

from __future__ import annotations


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""

    stage = "run"


class ConfigError(ManagerError):
    stage = "config"


class CatalogError(ManagerError):
    """The version catalog or mirror table is missing or malformed."""

    stage = "catalog"


class UnresolvableVersionError(ManagerError):
    """A raw version string could not be mapped to a catalog entry."""

    stage = "resolve"

    def __init__(self, token: str, raw: str, detail: str = "") -> None:
        self.token = token
        self.raw = raw
        message = f"Cannot resolve version '{raw}': unrecognized token '{token}'"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class TransientFetchError(ManagerError):
    """A download attempt failed in a way worth retrying."""

    stage = "acquire"


class IntegrityError(TransientFetchError):
    """Downloaded data does not match the published length or checksum."""


class MirrorRejectedError(ManagerError):
    """The mirror answered with a client error; retrying it is pointless."""

    stage = "acquire"

    def __init__(self, url: str, status: int, reason: str = "") -> None:
        self.url = url
        self.status = status
        super().__init__(f"HTTP {status} {reason} from {url}".replace("  ", " ").strip())


class ImageCustomizationError(ManagerError):
    """A step of the image customization failed; nothing was committed."""

    def __init__(self, step: str, message: str) -> None:
        self.step = step
        self.stage = f"customize:{step}"
        super().__init__(f"Image customization failed at step '{step}': {message}")


class StateConflictError(ManagerError):
    stage = "state"


class DiskImageError(ManagerError):
    stage = "disk"
