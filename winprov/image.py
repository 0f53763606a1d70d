"""Unpack, patch and repack Windows installation images.

The source image is extracted with ``7z``, the answer document and an
optional driver bundle are dropped into the tree, and ``genisoimage``
authors a new ISO 9660 + UDF image with the original El Torito boot
entries. Everything happens in a scratch directory; the result is written
next to ``output`` and renamed into place only after it verified.
"""

from __future__ import annotations

import os
import shutil
import struct
import subprocess
import tarfile
import tempfile
import zipfile
from pathlib import Path
from typing import Optional, Tuple

from winprov.constants import (
    ANSWER_FILE_NAME,
    BIOS_BOOT_IMAGES,
    DRIVER_STAGING_DIR,
    EFI_BOOT_IMAGES,
    EL_TORITO_ID,
    ISO_DESCRIPTOR_START,
    ISO_MAGIC,
    ISO_SECTOR_SIZE,
)
from winprov.exceptions import ImageCustomizationError
from winprov.models import IsoMetadata
from winprov.utils import ensure_directory, format_mib, log, run

_TAR_SUFFIXES = (".tar", ".tar.gz", ".tgz", ".tar.xz", ".txz", ".tar.bz2", ".tbz2")
_MAX_DESCRIPTORS = 64
_DEFAULT_LABEL = "WINPROV"


def read_iso_metadata(path: Path, step: str = "inspect") -> IsoMetadata:
    """Read the volume descriptor set of an ISO 9660 image."""
    label: Optional[str] = None
    volume_size = 0
    el_torito = False
    try:
        with open(path, "rb") as handle:
            for index in range(_MAX_DESCRIPTORS):
                handle.seek((ISO_DESCRIPTOR_START + index) * ISO_SECTOR_SIZE)
                sector = handle.read(ISO_SECTOR_SIZE)
                if len(sector) < ISO_SECTOR_SIZE or sector[1:6] != ISO_MAGIC:
                    break
                kind = sector[0]
                if kind == 0 and sector[7:39].startswith(EL_TORITO_ID):
                    el_torito = True
                elif kind == 1 and label is None:
                    label = sector[40:72].decode("ascii", errors="replace").strip()
                    volume_size = struct.unpack_from("<I", sector, 80)[0]
                elif kind == 255:
                    break
    except OSError as exc:
        raise ImageCustomizationError(step, f"cannot read {path}: {exc}")
    if label is None:
        raise ImageCustomizationError(step, f"{path} has no ISO 9660 primary volume descriptor")
    return IsoMetadata(volume_label=label, el_torito=el_torito, volume_size=volume_size)


def read_answer_document(image: Path) -> str:
    """Return the answer document stored at the root of ``image``."""
    try:
        result = run(["7z", "x", "-so", str(image), ANSWER_FILE_NAME], capture_output=True)
    except (OSError, subprocess.CalledProcessError) as exc:
        raise ImageCustomizationError("inspect", f"cannot read {ANSWER_FILE_NAME} from {image}: {exc}")
    return result.stdout


def _inside(base: Path, name: str) -> bool:
    target = (base / name).resolve()
    return target == base or base in target.parents


def _extract_zip(bundle: Path, target: Path) -> None:
    with zipfile.ZipFile(bundle) as archive:
        for name in archive.namelist():
            if not _inside(target, name):
                raise ImageCustomizationError("drivers", f"archive member escapes the driver directory: {name}")
        archive.extractall(target)


def _extract_tar(bundle: Path, target: Path) -> None:
    with tarfile.open(bundle, "r:*") as archive:
        for member in archive.getmembers():
            if not _inside(target, member.name):
                raise ImageCustomizationError("drivers", f"archive member escapes the driver directory: {member.name}")
            if member.issym() or member.islnk():
                raise ImageCustomizationError("drivers", f"links are not allowed in driver bundles: {member.name}")
            if not (member.isfile() or member.isdir()):
                raise ImageCustomizationError("drivers", f"unsupported archive member type: {member.name}")
        archive.extractall(target)


def merge_driver_bundle(bundle: Path, target: Path) -> None:
    """Merge a directory or archive of drivers into ``target``."""
    if not bundle.exists():
        raise ImageCustomizationError("drivers", f"driver bundle not found: {bundle}")
    ensure_directory(target)
    target = target.resolve()
    name = bundle.name.lower()
    try:
        if bundle.is_dir():
            shutil.copytree(bundle, target, dirs_exist_ok=True)
        elif name.endswith(".zip"):
            _extract_zip(bundle, target)
        elif name.endswith(_TAR_SUFFIXES):
            _extract_tar(bundle, target)
        else:
            raise ImageCustomizationError(
                "drivers", f"unsupported driver bundle format: {bundle.name} (use a directory, zip or tar archive)"
            )
    except (OSError, zipfile.BadZipFile, tarfile.TarError) as exc:
        raise ImageCustomizationError("drivers", f"cannot unpack {bundle}: {exc}")
    log("INFO", f"Merged driver bundle {bundle.name} into {DRIVER_STAGING_DIR}")


def find_boot_images(tree: Path) -> Tuple[Optional[str], Optional[str]]:
    """Locate the BIOS and EFI boot images (relative paths, original case)."""
    found = {}
    for path in tree.rglob("*"):
        if path.is_file():
            found.setdefault(path.relative_to(tree).as_posix().lower(), path.relative_to(tree).as_posix())
    bios = next((found[c] for c in BIOS_BOOT_IMAGES if c in found), None)
    efi = next((found[c] for c in EFI_BOOT_IMAGES if c in found), None)
    return bios, efi


class ImageCustomizer:
    """Produce an unattended installation image from a stock one."""

    def __init__(self, scratch_root: Path) -> None:
        self.scratch_root = scratch_root

    def customize(
        self,
        raw_image: Path,
        answer_document: Optional[bytes],
        driver_bundle: Optional[Path],
        output: Path,
    ) -> Path:
        if not raw_image.is_file():
            raise ImageCustomizationError("inspect", f"installation image not found: {raw_image}")
        metadata = read_iso_metadata(raw_image, "inspect")
        if not metadata.el_torito:
            log("WARN", f"{raw_image.name} carries no El Torito boot record")
        label = metadata.volume_label or _DEFAULT_LABEL
        log("INFO", f"Customizing {raw_image.name} (volume '{label}')")

        ensure_directory(self.scratch_root)
        ensure_directory(output.parent)
        staged = output.with_name(output.name + ".tmp")
        staged.unlink(missing_ok=True)

        with tempfile.TemporaryDirectory(prefix="winprov-", dir=self.scratch_root) as tmpdir:
            tree = Path(tmpdir) / "tree"
            self._extract(raw_image, tree)
            bios, efi = find_boot_images(tree)
            if bios is None and efi is None:
                raise ImageCustomizationError("extract", f"no BIOS or EFI boot image found in {raw_image.name}")
            log("DEBUG", f"Boot images: bios={bios or '-'} efi={efi or '-'}")

            if answer_document is not None:
                self._write_answer(tree, answer_document)
            if driver_bundle is not None:
                merge_driver_bundle(driver_bundle, tree / DRIVER_STAGING_DIR)

            try:
                self._repack(tree, staged, label, bios, efi)
                self._verify(staged)
            except BaseException:
                staged.unlink(missing_ok=True)
                raise

        os.replace(staged, output)
        log("SUCCESS", f"Customized image ready: {output} ({format_mib(output.stat().st_size)})")
        return output

    def _extract(self, raw_image: Path, tree: Path) -> None:
        ensure_directory(tree)
        try:
            run(["7z", "x", "-y", f"-o{tree}", str(raw_image)], capture_output=True)
        except FileNotFoundError:
            raise ImageCustomizationError("extract", "7z is required to unpack installation images")
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or "").strip() or f"exit code {exc.returncode}"
            raise ImageCustomizationError("extract", f"7z failed: {detail}")

    def _write_answer(self, tree: Path, document: bytes) -> None:
        try:
            # Windows Setup matches the name case-insensitively; keep exactly one copy.
            for existing in tree.iterdir():
                if existing.is_file() and existing.name.lower() == ANSWER_FILE_NAME:
                    existing.unlink()
            (tree / ANSWER_FILE_NAME).write_bytes(document)
        except OSError as exc:
            raise ImageCustomizationError("answer", f"cannot write {ANSWER_FILE_NAME}: {exc}")

    def _repack(self, tree: Path, staged: Path, label: str, bios: Optional[str], efi: Optional[str]) -> None:
        cmd = [
            "genisoimage",
            "-o",
            str(staged),
            "-c",
            "BOOT.CAT",
            "-iso-level",
            "4",
            "-J",
            "-l",
            "-D",
            "-N",
            "-joliet-long",
            "-relaxed-filenames",
            "-V",
            label,
            "-udf",
            "-allow-limited-size",
            "-quiet",
        ]
        if bios:
            cmd += ["-b", bios, "-no-emul-boot", "-boot-load-size", "8", "-boot-info-table"]
            if efi:
                cmd.append("-eltorito-alt-boot")
        if efi:
            cmd += ["-eltorito-boot", efi, "-no-emul-boot"]
        cmd.append(str(tree))
        try:
            run(cmd, capture_output=True)
        except FileNotFoundError:
            raise ImageCustomizationError("repack", "genisoimage is required to build installation images")
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or "").strip() or f"exit code {exc.returncode}"
            raise ImageCustomizationError("repack", f"genisoimage failed: {detail}")

    def _verify(self, staged: Path) -> None:
        if not staged.is_file() or staged.stat().st_size == 0:
            raise ImageCustomizationError("verify", f"genisoimage produced no output at {staged}")
        metadata = read_iso_metadata(staged, "verify")
        if not metadata.el_torito:
            raise ImageCustomizationError("verify", "repacked image has no El Torito boot record")
