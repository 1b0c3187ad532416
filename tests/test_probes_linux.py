"""Tests for the Linux health probe chain."""
from __future__ import annotations

from pathlib import Path

import pytest

from conftest import FakeRunner, make_volume, ok
from diskmon.models import HealthMethod, HealthStatus
from diskmon.probes import LinuxHealthProber, mmc_brand

SMARTCTL = "/usr/sbin/smartctl"

ATA_PASSED = """\
Device Model:     ST2000DM008-2FR102
Serial Number:    ZFL0ABCD
SMART overall-health self-assessment test result: PASSED
  5 Reallocated_Sector_Ct   0x0033   100   100   010    Pre-fail  Always       -       8
"""

ATA_FAILED = """\
Device Model:     WDC WD10EZEX-08WN4A0
Serial Number:    WD-WCC6Y1234567
SMART overall-health self-assessment test result: FAILED!
"""

# CID with serial 0x1A2B3C4D at hex offset 18.
MMC_CID = "0353445343333247801a2b3c4d0112ab"


class FakeHost:
    """Throwaway /proc/mounts, /proc/diskstats and /sys/block tree."""

    def __init__(self, root: Path):
        self.root = root
        self.sysfs = root / "sys" / "block"
        self.sysfs.mkdir(parents=True)
        self.mounts = root / "mounts"
        self.mounts.write_text("")
        self.diskstats = root / "diskstats"

    def mount(self, device: str, mount_point: str) -> None:
        with self.mounts.open("a") as handle:
            handle.write(f"{device} {mount_point} ext4 rw 0 0\n")

    def device_file(self, name: str, filename: str, content: str) -> None:
        device_dir = self.sysfs / name / "device"
        device_dir.mkdir(parents=True, exist_ok=True)
        (device_dir / filename).write_text(content + "\n")

    def prober(self, config, runner, smartctl_path=None) -> LinuxHealthProber:
        return LinuxHealthProber(
            config,
            runner=runner,
            smartctl_path=smartctl_path,
            sysfs_root=self.sysfs,
            mount_table_path=str(self.mounts),
            diskstats_path=str(self.diskstats),
        )


@pytest.fixture
def host(tmp_path):
    return FakeHost(tmp_path)


@pytest.mark.linux
class TestVendorTool:
    def test_first_variant_wins(self, host, monitor_config):
        host.mount("/dev/sda1", "/")
        runner = FakeRunner({(SMARTCTL,): ok(ATA_PASSED)})

        result = host.prober(monitor_config, runner, SMARTCTL).probe(make_volume("/", "/dev/sda1"))

        assert result.status is HealthStatus.OK
        assert result.method is HealthMethod.NATIVE_TOOL
        assert result.model == "ST2000DM008-2FR102"
        assert result.serial == "ZFL0ABCD"
        assert result.reallocated_sectors == 8
        assert result.is_raid is False
        assert runner.calls == [[SMARTCTL, "-H", "-i", "-A", "/dev/sda"]]

    def test_partial_data_exit_code_accepted(self, host, monitor_config):
        host.mount("/dev/nvme0n1p2", "/")
        runner = FakeRunner({(SMARTCTL,): ok("Model Number: WD Blue SN570\n", returncode=4)})

        result = host.prober(monitor_config, runner, SMARTCTL).probe(make_volume("/", "/dev/nvme0n1p2"))

        assert result.status is HealthStatus.OK
        assert result.method is HealthMethod.NATIVE_TOOL
        assert result.model == "WD Blue SN570"
        assert runner.calls[0][-1] == "/dev/nvme0n1"

    def test_failing_verdict_exit_code_kept(self, host, monitor_config):
        host.mount("/dev/sda1", "/")
        host.device_file("sda", "ioerr_cnt", "0x0")
        runner = FakeRunner({(SMARTCTL,): ok(ATA_FAILED, returncode=8)})

        result = host.prober(monitor_config, runner, SMARTCTL).probe(make_volume("/", "/dev/sda1"))

        assert result.status is HealthStatus.FAILING
        assert result.method is HealthMethod.NATIVE_TOOL
        assert result.serial == "WD-WCC6Y1234567"
        assert len(runner.calls) == 1

    def test_error_log_exit_code_stays_native(self, host, monitor_config):
        host.mount("/dev/sda1", "/")
        runner = FakeRunner({(SMARTCTL,): ok(ATA_PASSED, returncode=64)})

        result = host.prober(monitor_config, runner, SMARTCTL).probe(make_volume("/", "/dev/sda1"))

        assert result.status is HealthStatus.OK
        assert result.method is HealthMethod.NATIVE_TOOL

    def test_rejected_exit_codes_fall_through(self, host, monitor_config):
        host.mount("/dev/sda1", "/")
        host.device_file("sda", "model", "Virtual Disk")
        host.device_file("sda", "ioerr_cnt", "0x0")
        runner = FakeRunner({(SMARTCTL,): ok(ATA_PASSED, returncode=2)})

        result = host.prober(monitor_config, runner, SMARTCTL).probe(make_volume("/", "/dev/sda1"))

        assert result.status is HealthStatus.OK
        assert result.method is HealthMethod.KERNEL_FALLBACK
        assert result.model == "Virtual Disk"
        smartctl_calls = [call for call in runner.calls if call[0] == SMARTCTL]
        assert [call[-3:-1] for call in smartctl_calls] == [["-i", "-A"], ["-d", "auto"], ["-d", "sat"]]

    def test_raid_flag_carried(self, host, monitor_config):
        host.mount("/dev/md0", "/srv")
        runner = FakeRunner({(SMARTCTL,): ok(ATA_PASSED)})

        result = host.prober(monitor_config, runner, SMARTCTL).probe(make_volume("/srv", "/dev/md0"))

        assert result.is_raid is True
        assert result.status is HealthStatus.OK


@pytest.mark.linux
class TestMmcProbe:
    def test_kernel_log_errors_warn(self, host, monitor_config):
        host.mount("/dev/mmcblk0p2", "/")
        host.device_file("mmcblk0", "name", "SC32G")
        host.device_file("mmcblk0", "cid", MMC_CID)
        host.device_file("mmcblk0", "manfid", "0x000003")
        dmesg = "[    1.0] mmcblk0: mmc0:aaaa SC32G 29.7 GiB\n[  200.1] mmcblk0: error -110 sending status command\n"
        runner = FakeRunner({("dmesg",): ok(dmesg)})

        result = host.prober(monitor_config, runner).probe(make_volume("/", "/dev/mmcblk0p2"))

        assert result.status is HealthStatus.WARNING
        assert result.method is HealthMethod.KERNEL_FALLBACK
        assert result.model == "SC32G"
        assert result.serial == "1A2B3C4D"
        assert result.brand == "SanDisk"

    def test_clean_kernel_log_is_ok(self, host, monitor_config):
        host.mount("/dev/mmcblk0p1", "/")
        runner = FakeRunner({("dmesg",): ok("[    1.0] mmcblk0: mmc0:aaaa SC32G 29.7 GiB\n")})

        result = host.prober(monitor_config, runner).probe(make_volume("/", "/dev/mmcblk0p1"))

        assert result.status is HealthStatus.OK
        assert result.method is HealthMethod.KERNEL_FALLBACK

    def test_unreadable_kernel_log_falls_through(self, host, monitor_config):
        host.mount("/dev/mmcblk0p1", "/")
        runner = FakeRunner({("dmesg",): ok("", returncode=1, stderr="Operation not permitted")})

        result = host.prober(monitor_config, runner).probe(make_volume("/", "/dev/mmcblk0p1"))

        # No sysfs entry either, so the chain ends without a verdict.
        assert result.status is HealthStatus.UNKNOWN
        assert result.method is HealthMethod.KERNEL_FALLBACK

    def test_brand_table(self):
        assert mmc_brand(0x15) == "Samsung"
        assert mmc_brand(0x99) == "Unknown (0x99)"


@pytest.mark.linux
class TestGenericFallback:
    def test_smart_attributes_failing(self, host, monitor_config):
        host.mount("/dev/sdb1", "/data")
        host.device_file("sdb", "smart_attributes", "5 Reallocated_Sector_Ct FAILING_NOW")
        host.device_file("sdb", "ioerr_cnt", "0x0")

        result = host.prober(monitor_config, FakeRunner()).probe(make_volume("/data", "/dev/sdb1"))

        assert result.status is HealthStatus.FAILING
        assert result.method is HealthMethod.KERNEL_FALLBACK

    def test_io_error_counter(self, host, monitor_config):
        host.mount("/dev/sdb1", "/data")
        host.device_file("sdb", "ioerr_cnt", "0x1f")
        host.device_file("sdb", "vendor", "ATA")
        host.device_file("sdb", "serial", "WD-123")

        result = host.prober(monitor_config, FakeRunner()).probe(make_volume("/data", "/dev/sdb1"))

        assert result.status is HealthStatus.WARNING
        assert result.brand == "ATA"
        assert result.serial == "WD-123"

    def test_diskstats_row_used_without_counter(self, host, monitor_config):
        host.mount("/dev/sdb1", "/data")
        host.device_file("sdb", "model", "HDD")
        host.diskstats.write_text(
            "   8      16 sdb 100 0 200 10 50 0 60 5 3 40 70\n"
            "   8      17 sdb1 90 0 180 9 45 0 55 4 0 35 60\n"
        )

        result = host.prober(monitor_config, FakeRunner()).probe(make_volume("/data", "/dev/sdb1"))

        assert result.status is HealthStatus.WARNING

    def test_kernel_log_errors(self, host, monitor_config):
        host.mount("/dev/sdb1", "/data")
        host.device_file("sdb", "model", "HDD")
        runner = FakeRunner({("dmesg",): ok("[ 12.3] blk_update_request: I/O error, dev sdb, sector 2048\n")})

        result = host.prober(monitor_config, runner).probe(make_volume("/data", "/dev/sdb1"))

        assert result.status is HealthStatus.WARNING

    def test_fsck_corruption(self, host, monitor_config):
        host.mount("/dev/sdb1", "/data")
        host.device_file("sdb", "model", "HDD")
        runner = FakeRunner(
            {
                ("dmesg",): ok("[ 1.0] sd 0:0:0:0: [sdb] Attached SCSI disk\n"),
                ("fsck",): ok("", returncode=4, stderr="/dev/sdb1: Filesystem has errors"),
            }
        )

        result = host.prober(monitor_config, runner).probe(make_volume("/data", "/dev/sdb1"))

        assert result.status is HealthStatus.WARNING
        assert ["fsck", "-n", "/dev/sdb1"] in runner.calls

    def test_no_signal_is_ok(self, host, monitor_config):
        host.mount("/dev/sdb1", "/data")
        host.device_file("sdb", "model", "HDD")
        runner = FakeRunner({("dmesg",): ok(""), ("fsck",): ok("clean")})

        result = host.prober(monitor_config, runner).probe(make_volume("/data", "/dev/sdb1"))

        assert result.status is HealthStatus.OK
        assert result.method is HealthMethod.KERNEL_FALLBACK
        assert result.model == "HDD"

    def test_missing_sysfs_entry_is_unknown(self, host, monitor_config):
        host.mount("/dev/sdb1", "/data")

        result = host.prober(monitor_config, FakeRunner()).probe(make_volume("/data", "/dev/sdb1"))

        assert result.status is HealthStatus.UNKNOWN
        assert result.method is HealthMethod.KERNEL_FALLBACK


@pytest.mark.linux
class TestResolution:
    def test_unresolvable_mount_is_error(self, host, monitor_config):
        host.mount("tmpfs", "/run")

        prober = host.prober(monitor_config, FakeRunner(), SMARTCTL)

        for mount_point in ("/run", "/not-mounted"):
            result = prober.probe(make_volume(mount_point, "tmpfs"))
            assert result.status is HealthStatus.UNKNOWN
            assert result.method is HealthMethod.ERROR

    def test_chain_is_deterministic(self, host, monitor_config):
        host.mount("/dev/sdb1", "/data")
        host.device_file("sdb", "ioerr_cnt", "0x2")
        prober = host.prober(monitor_config, FakeRunner({(SMARTCTL,): ok("", returncode=1)}), SMARTCTL)
        volume = make_volume("/data", "/dev/sdb1")

        assert prober.probe(volume) == prober.probe(volume)
