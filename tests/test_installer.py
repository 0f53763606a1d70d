"""Tests for winprov.installer module."""

from __future__ import annotations

import subprocess
from dataclasses import replace
from pathlib import Path
from unittest.mock import patch

import pytest

from winprov.exceptions import DiskImageError, ImageCustomizationError, StateConflictError
from winprov.installer import Installer
from winprov.mirrors import MirrorRegistry
from winprov.models import AcquisitionResult, InstallState, MirrorEntry
from winprov.state import StateStore
from winprov.status import MANUAL_PREFIX, StatusBroadcaster

MIRROR = MirrorEntry(url="https://a.example/win.iso", priority=10, name="a")


class _FakeAcquirer:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls = []

    def acquire(self, descriptor, destination: Path) -> AcquisitionResult:
        self.calls.append((descriptor.canonical_key, destination))
        if self.fail:
            return AcquisitionResult(
                local_path=None,
                size_bytes=0,
                checksum="",
                source_mirror=None,
                fell_back_to_manual=True,
                failure_reason="HTTP 403 Forbidden",
                last_mirror=MIRROR,
            )
        destination.write_bytes(b"raw image")
        return AcquisitionResult(local_path=destination, size_bytes=9, checksum="abc", source_mirror=MIRROR)


class _FakeCustomizer:
    def __init__(self, error: Exception = None) -> None:
        self.error = error
        self.calls = []

    def customize(self, raw_image, answer_document, driver_bundle, output):
        self.calls.append((raw_image, answer_document, driver_bundle, output))
        if self.error is not None:
            raise self.error
        output.write_bytes(b"customized image")
        return output


def _fake_qemu_img(cmd, check=True, **kwargs):
    Path(cmd[4]).write_bytes(b"qcow2")
    return subprocess.CompletedProcess(cmd, 0, "", "")


def _installer(cfg, catalog, acquirer=None, customizer=None) -> Installer:
    store = StateStore(cfg.storage_dir, cfg.disk_format)
    return Installer(
        cfg,
        catalog,
        MirrorRegistry.load(cfg.mirrors_path),
        acquirer or _FakeAcquirer(),
        customizer or _FakeCustomizer(),
        store,
        StatusBroadcaster(store.status_path),
    )


@pytest.fixture(autouse=True)
def qemu_img():
    with patch("winprov.installer.run", side_effect=_fake_qemu_img) as mock_run:
        yield mock_run


class TestFreshInstall:
    def test_installs_and_marks(self, provision_config, catalog, storage_dir):
        acquirer, customizer = _FakeAcquirer(), _FakeCustomizer()
        installer = _installer(provision_config, catalog, acquirer, customizer)
        result = installer.run()

        assert result.state == InstallState.INSTALLED
        assert installer.transitions == [
            InstallState.UNINITIALIZED,
            InstallState.INSTALL_PENDING,
            InstallState.INSTALLING,
            InstallState.INSTALLED,
        ]
        assert result.disk_image == storage_dir / "disk.qcow2"
        assert result.disk_image.exists()
        assert result.boot_image == storage_dir / "win11x64-unattended.iso"
        marker = installer.store.read_marker()
        assert marker.installed_key == "win11x64"
        assert marker.source_mirror == MIRROR.url
        assert marker.boot_image == "win11x64-unattended.iso"
        assert not installer.store.status_path.exists()

    def test_answer_rendered_from_variables(self, provision_config, catalog):
        cfg = replace(provision_config, variables=replace(provision_config.variables, username="builder"))
        customizer = _FakeCustomizer()
        _installer(cfg, catalog, customizer=customizer).run()
        raw_image, answer, drivers, output = customizer.calls[0]
        assert raw_image.name == "win11x64.iso"
        assert b"<Name>builder</Name>" in answer
        assert drivers is None

    def test_downloaded_source_removed(self, provision_config, catalog, storage_dir):
        _installer(provision_config, catalog).run()
        assert not (storage_dir / "win11x64.iso").exists()

    def test_keep_source_iso(self, provision_config, catalog, storage_dir):
        _installer(replace(provision_config, keep_source_iso=True), catalog).run()
        assert (storage_dir / "win11x64.iso").exists()

    def test_disk_creation_command(self, provision_config, catalog, storage_dir, qemu_img):
        _installer(replace(provision_config, disk_size="80G", disk_format="raw"), catalog).run()
        cmd = qemu_img.call_args[0][0]
        assert cmd == ["qemu-img", "create", "-f", "raw", str(storage_dir / "disk.raw"), "80G"]


class TestIdempotence:
    def test_second_run_skips(self, provision_config, catalog):
        _installer(provision_config, catalog).run()
        (provision_config.storage_dir / "disk.qcow2").write_bytes(b"guest state")
        marker_bytes = (provision_config.storage_dir / ".installed").read_bytes()
        disk_bytes = (provision_config.storage_dir / "disk.qcow2").read_bytes()
        acquirer, customizer = _FakeAcquirer(), _FakeCustomizer()
        installer = _installer(provision_config, catalog, acquirer, customizer)
        result = installer.run()

        assert result.state == InstallState.INSTALLED
        assert installer.transitions == [InstallState.UNINITIALIZED, InstallState.INSTALLED]
        assert acquirer.calls == []
        assert customizer.calls == []
        assert result.boot_image == provision_config.storage_dir / "win11x64-unattended.iso"
        assert result.backup is None
        assert (provision_config.storage_dir / ".installed").read_bytes() == marker_bytes
        assert (provision_config.storage_dir / "disk.qcow2").read_bytes() == disk_bytes
        assert not list((provision_config.storage_dir / "backups").glob("*"))

    def test_missing_boot_image_is_not_reported(self, provision_config, catalog, storage_dir, capsys):
        _installer(provision_config, catalog).run()
        (storage_dir / "win11x64-unattended.iso").unlink()
        capsys.readouterr()
        acquirer = _FakeAcquirer()
        result = _installer(provision_config, catalog, acquirer).run()

        assert result.state == InstallState.INSTALLED
        assert result.boot_image is None
        assert acquirer.calls == []
        assert "Recorded boot image" in capsys.readouterr().out

    def test_alias_of_installed_version_skips(self, provision_config, catalog):
        _installer(provision_config, catalog).run()
        acquirer = _FakeAcquirer()
        _installer(replace(provision_config, version="win11x64"), catalog, acquirer).run()
        assert acquirer.calls == []

    def test_force_reinstall(self, provision_config, catalog):
        _installer(provision_config, catalog).run()
        acquirer = _FakeAcquirer()
        result = _installer(replace(provision_config, force_reinstall=True), catalog, acquirer).run()
        assert len(acquirer.calls) == 1
        assert result.backup is not None
        assert result.backup.previous_key == "win11x64"

    def test_missing_disk_reinstalls(self, provision_config, catalog, storage_dir):
        _installer(provision_config, catalog).run()
        (storage_dir / "disk.qcow2").unlink()
        acquirer = _FakeAcquirer()
        result = _installer(provision_config, catalog, acquirer).run()
        assert len(acquirer.calls) == 1
        assert result.backup is None


class TestVersionChange:
    def test_backs_up_previous_installation(self, provision_config, catalog, storage_dir):
        _installer(replace(provision_config, version="10"), catalog).run()
        assert StateStore(storage_dir).read_marker().installed_key == "win10x64"
        (storage_dir / "disk.qcow2").write_bytes(b"windows 10 guest")
        previous_disk = (storage_dir / "disk.qcow2").read_bytes()
        previous_marker = (storage_dir / ".installed").read_bytes()
        previous_boot = (storage_dir / "win10x64-unattended.iso").read_bytes()

        result = _installer(provision_config, catalog).run()

        assert result.state == InstallState.INSTALLED
        assert result.backup is not None
        assert result.backup.previous_key == "win10x64"
        assert (result.backup.path / "disk.qcow2").read_bytes() == previous_disk
        assert (result.backup.path / "win10x64-unattended.iso").read_bytes() == previous_boot
        assert (result.backup.path / ".installed").read_bytes() == previous_marker
        assert StateStore(storage_dir).read_marker().installed_key == "win11x64"

    def test_disk_without_marker_is_backed_up(self, provision_config, catalog, storage_dir):
        (storage_dir / "disk.qcow2").write_bytes(b"orphan")
        result = _installer(provision_config, catalog).run()
        assert result.backup.previous_key == ""
        assert (result.backup.path / "disk.qcow2").read_bytes() == b"orphan"

    def test_unreadable_marker_is_backed_up(self, provision_config, catalog, storage_dir):
        (storage_dir / ".installed").write_text("garbage")
        result = _installer(provision_config, catalog).run()
        assert (result.backup.path / ".installed").read_text() == "garbage"
        assert StateStore(storage_dir).read_marker().installed_key == "win11x64"


class TestManualFallback:
    def test_all_mirrors_failed(self, provision_config, catalog, storage_dir):
        installer = _installer(provision_config, catalog, _FakeAcquirer(fail=True))
        result = installer.run()

        assert result.state == InstallState.MANUAL_REQUIRED
        assert installer.transitions[-1] == InstallState.MANUAL_REQUIRED
        assert result.manual.last_mirror == MIRROR.url
        assert result.manual.expected_path == storage_dir / "custom.iso"
        status = installer.store.status_path.read_text()
        assert status.startswith(MANUAL_PREFIX)
        assert "HTTP 403 Forbidden" in status
        assert installer.store.read_marker() is None
        assert not (storage_dir / "disk.qcow2").exists()

    def test_operator_image_resolves_manual_state(self, provision_config, catalog, storage_dir, iso_factory):
        _installer(provision_config, catalog, _FakeAcquirer(fail=True)).run()
        iso_factory(storage_dir / "custom.iso")
        acquirer, customizer = _FakeAcquirer(), _FakeCustomizer()
        result = _installer(provision_config, catalog, acquirer, customizer).run()

        assert result.state == InstallState.INSTALLED
        assert acquirer.calls == []
        assert customizer.calls[0][0] == storage_dir / "custom.iso"
        assert (storage_dir / "custom.iso").exists()
        marker = StateStore(storage_dir).read_marker()
        assert marker.source_mirror == f"operator:{storage_dir / 'custom.iso'}"


class TestModes:
    def test_manual_mode_boots_unmodified_image(self, provision_config, catalog, storage_dir):
        customizer = _FakeCustomizer()
        result = _installer(replace(provision_config, manual=True), catalog, customizer=customizer).run()
        assert customizer.calls == []
        assert result.boot_image == storage_dir / "win11x64.iso"
        assert result.boot_image.exists()

    def test_version_without_template(self, provision_config, catalog, storage_dir, capsys):
        customizer = _FakeCustomizer()
        result = _installer(replace(provision_config, version="xp"), catalog, customizer=customizer).run()
        assert customizer.calls == []
        assert result.boot_image == storage_dir / "winxpx86.iso"
        assert "No answer template" in capsys.readouterr().out

    def test_driver_bundle_without_template(self, provision_config, catalog, tmp_path):
        bundle = tmp_path / "drivers"
        bundle.mkdir()
        customizer = _FakeCustomizer()
        cfg = replace(provision_config, version="xp", driver_bundle=bundle)
        _installer(cfg, catalog, customizer=customizer).run()
        raw_image, answer, drivers, output = customizer.calls[0]
        assert answer is None
        assert drivers == bundle

    def test_operator_template(self, provision_config, catalog, tmp_path):
        template = tmp_path / "unattend.xml"
        template.write_text('<unattend xmlns="urn:schemas-microsoft-com:unattend"/>')
        customizer = _FakeCustomizer()
        _installer(replace(provision_config, unattend_template=template), catalog, customizer=customizer).run()
        assert b"<unattend" in customizer.calls[0][1]


class TestFailures:
    def test_customization_failure(self, provision_config, catalog, storage_dir):
        error = ImageCustomizationError("repack", "genisoimage failed")
        installer = _installer(provision_config, catalog, customizer=_FakeCustomizer(error))
        with pytest.raises(ImageCustomizationError):
            installer.run()

        assert installer.state == InstallState.FAILED
        assert installer.store.read_marker() is None
        assert not (storage_dir / "disk.qcow2").exists()
        assert "Installation failed" in installer.store.status_path.read_text()

    def test_qemu_img_missing(self, provision_config, catalog, qemu_img):
        qemu_img.side_effect = FileNotFoundError("qemu-img")
        installer = _installer(provision_config, catalog)
        with pytest.raises(DiskImageError, match="qemu-img is required"):
            installer.run()
        assert installer.state == InstallState.FAILED
        assert installer.store.read_marker() is None

    def test_qemu_img_error(self, provision_config, catalog, qemu_img):
        qemu_img.side_effect = subprocess.CalledProcessError(1, ["qemu-img"], stderr="no space left")
        with pytest.raises(DiskImageError, match="no space left"):
            _installer(provision_config, catalog).run()

    def test_concurrent_run_refused(self, provision_config, catalog):
        installer = _installer(provision_config, catalog)
        with StateStore(provision_config.storage_dir).lock():
            with pytest.raises(StateConflictError):
                installer.run()


class TestPlanning:
    def test_plan_for_fresh_storage(self, provision_config, catalog):
        acquirer = _FakeAcquirer()
        plan = _installer(provision_config, catalog, acquirer).plan()
        assert plan.action == "install"
        assert plan.descriptor.canonical_key == "win11x64"
        assert plan.marker is None
        assert plan.candidates
        assert plan.custom_iso is None
        assert acquirer.calls == []

    def test_plan_after_install(self, provision_config, catalog):
        _installer(provision_config, catalog).run()
        assert _installer(provision_config, catalog).plan().action == "skip"
        assert _installer(replace(provision_config, version="10"), catalog).plan().action == "reinstall"

    def test_resource_warnings(self, provision_config, catalog, capsys):
        installer = _installer(replace(provision_config, memory_mb=1024, disk_size="20G"), catalog)
        installer.check_resources(installer.resolve())
        out = capsys.readouterr().out
        assert "at least 4096 MiB" in out
        assert "at least 64G" in out

    def test_memory_ceiling_warning(self, provision_config, catalog, capsys):
        installer = _installer(replace(provision_config, version="xp", memory_mb=8192), catalog)
        installer.check_resources(installer.resolve())
        assert "at most 3584 MiB" in capsys.readouterr().out

    def test_from_config_applies_iso_url(self, provision_config):
        cfg = replace(provision_config, iso_url="https://operator.example/win.iso")
        installer = Installer.from_config(cfg)
        assert installer.plan().candidates[0].url == "https://operator.example/win.iso"
        assert installer.store.status_path == cfg.storage_dir / "status.txt"
