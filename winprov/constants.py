"""Global constants and path defaults for winprov."""

from __future__ import annotations

import re
from pathlib import Path

_PACKAGE_DATA = Path(__file__).resolve().parent / "data"

DEFAULT_CATALOG_PATH = _PACKAGE_DATA / "catalog.yaml"
DEFAULT_MIRRORS_PATH = _PACKAGE_DATA / "mirrors.yaml"
UNATTEND_TEMPLATE_DIR = _PACKAGE_DATA / "unattend"

DEFAULT_STORAGE_DIR = Path("/storage")
INSTALLED_MARKER_NAME = ".installed"
LOCK_FILE_NAME = ".lock"
BACKUP_DIR_NAME = "backups"
STATUS_FILE_NAME = "status.txt"
CUSTOM_ISO_NAME = "custom.iso"
DISK_IMAGE_STEM = "disk"
ANSWER_FILE_NAME = "autounattend.xml"
DRIVER_STAGING_DIR = "$WinPEDriver$"

TRUTHY = {"1", "true", "yes", "on", "y"}

DISK_SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")
DISK_FORMATS = {"qcow2", "raw"}

DEFAULT_LANGUAGE = "en-US"
LANGUAGE_TAG_RE = re.compile(r"^[a-z]{2}-[a-z]{2}$", re.IGNORECASE)

DEFAULT_USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/126.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64; rv:127.0) Gecko/20100101 Firefox/127.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_5) AppleWebKit/605.1.15 (KHTML, like Gecko) "
    "Version/17.5 Safari/605.1.15",
    "Wget/1.21.4",
)

# ISO 9660 layout: 2 KiB sectors, volume descriptors start at sector 16.
ISO_SECTOR_SIZE = 2048
ISO_DESCRIPTOR_START = 16
ISO_MAGIC = b"CD001"
EL_TORITO_ID = b"EL TORITO SPECIFICATION"

BIOS_BOOT_IMAGES = ("boot/etfsboot.com",)
EFI_BOOT_IMAGES = (
    "efi/microsoft/boot/efisys_noprompt.bin",
    "efi/microsoft/boot/efisys.bin",
)

_SENSITIVE_FIELDS = {"password", "product_key"}
