"""Per-platform health probe chains.

Each prober owns an ordered list of probes. A probe returns a HealthResult
when it has a confident answer and None when it is inconclusive; the first
confident answer wins and the remaining probes are skipped.
"""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, replace
import json
import logging
from pathlib import Path
import platform
from typing import Any

from diskmon.commands import CommandResult, read_text, run_command
from diskmon.config import MonitorConfig
from diskmon.devices import (
    DeviceFamily,
    MOUNT_TABLE_PATH,
    base_device,
    device_family,
    device_name,
    drive_letter,
    is_raid_device,
    read_mount_table,
    resolve_mount_device,
    resolve_windows_disk_index,
)
from diskmon.models import HealthMethod, HealthResult, HealthStatus, Volume
from diskmon.smartctl import (
    SMARTCTL_BASE_ARGS,
    WINDOWS_SMARTCTL_PATHS,
    SmartctlReport,
    find_smartctl,
    parse_smartctl_output,
    smartctl_argument_variants,
    usable_exit_code,
)

SYSFS_BLOCK_ROOT = Path("/sys/block")
DISKSTATS_PATH = "/proc/diskstats"
KERNEL_LOG_TAIL = 1000

MMC_ERROR_TOKENS = ("error", "fail", "timeout", "crc")
DISK_ERROR_TOKENS = ("error", "fail", "warning", "i/o error")
SMART_ATTRIBUTE_FAILURE_MARKERS = ("FAILING_NOW", "Pre-fail")
FSCK_CORRUPTION_TOKENS = ("error", "corruption")

# SD/MMC card manufacturer IDs (CID MID field).
MMC_MANUFACTURERS = {
    0x01: "Panasonic",
    0x02: "Toshiba",
    0x03: "SanDisk",
    0x13: "Micron",
    0x15: "Samsung",
    0x27: "Phison",
    0x28: "Lexar",
    0x41: "Kingston",
    0x6F: "STMicroelectronics",
    0x74: "Transcend",
    0x76: "Patriot",
}

PHYSICAL_DISK_HEALTH_SCRIPT = r"""
try {{
    $disk = Get-PhysicalDisk | Where-Object {{ $_.DeviceId -eq '{index}' }} | Select-Object -First 1
    if (-not $disk) {{ Write-Output "PHYSICAL_DISK_HEALTH_NOT_FOUND"; exit 1 }}
    [PSCustomObject]@{{
        DeviceID = $disk.DeviceId
        FriendlyName = $disk.FriendlyName
        Model = $disk.Model
        SerialNumber = $disk.SerialNumber
        HealthStatus = [string]$disk.HealthStatus
        OperationalStatus = [string]($disk.OperationalStatus | Select-Object -First 1)
    }} | ConvertTo-Json -Compress
}}
catch {{
    Write-Output "ERROR: $($_.Exception.Message)"
    exit 1
}}
"""

# Numeric forms some PowerShell versions emit for the storage enums.
WINDOWS_HEALTH_CODES = {"0": "Healthy", "1": "Warning", "2": "Unhealthy", "5": "Unknown"}
WINDOWS_OPERATIONAL_CODES = {
    "0": "Unknown",
    "2": "OK",
    "3": "Degraded",
    "5": "Predictive Failure",
    "6": "Error",
    "10": "Stopped",
    "13": "Lost Communication",
}

Runner = Callable[[list[str]], "CommandResult | None"]


@dataclass(frozen=True)
class LinuxTarget:
    device_path: str
    base_path: str
    family: DeviceFamily
    is_raid: bool

    @property
    def short_name(self) -> str:
        return device_name(self.base_path)


@dataclass
class Identity:
    model: str | None = None
    serial: str | None = None
    brand: str | None = None


def mmc_brand(manfid: int) -> str:
    return MMC_MANUFACTURERS.get(manfid, f"Unknown (0x{manfid:02X})")


def _result_from_smartctl(report: SmartctlReport, status: HealthStatus) -> HealthResult:
    return HealthResult(
        status=status,
        method=HealthMethod.NATIVE_TOOL,
        serial=report.serial,
        brand=report.brand,
        model=report.model,
        power_on_hours=report.power_on_hours,
        reallocated_sectors=report.reallocated_sectors,
        pending_sectors=report.pending_sectors,
        uncorrectable_sectors=report.uncorrectable_sectors,
        temperature_c=report.temperature_c,
    )


class HealthProber:
    """Resolve a volume to its device and run the probe chain."""

    def __init__(
        self,
        config: MonitorConfig,
        runner: Runner | None = None,
        smartctl_path: str | None = None,
    ) -> None:
        self.config = config
        self.logger = logging.getLogger(self.__class__.__name__)
        self._runner = runner
        self.smartctl_path = smartctl_path

    @property
    def smartctl_available(self) -> bool:
        return self.smartctl_path is not None

    def run(self, command: list[str]) -> CommandResult | None:
        if self._runner is not None:
            return self._runner(command)
        return run_command(command, timeout=self.config.command_timeout_s)

    def probe(self, volume: Volume) -> HealthResult:
        raise NotImplementedError

    def _run_smartctl(self, command: list[str]) -> SmartctlReport | None:
        result = self.run(command)
        if result is None:
            return None
        if not usable_exit_code(result.returncode):
            self.logger.debug(
                "smartctl exited with %s for %s.", result.returncode, command[-1]
            )
            return None
        report = parse_smartctl_output(result.stdout)
        if not report.useful:
            self.logger.debug("smartctl output for %s had no usable data.", command[-1])
            return None
        return report


class LinuxHealthProber(HealthProber):
    def __init__(
        self,
        config: MonitorConfig,
        runner: Runner | None = None,
        smartctl_path: str | None = None,
        sysfs_root: Path = SYSFS_BLOCK_ROOT,
        mount_table_path: str = MOUNT_TABLE_PATH,
        diskstats_path: str = DISKSTATS_PATH,
    ) -> None:
        super().__init__(config, runner, smartctl_path)
        self.sysfs_root = Path(sysfs_root)
        self.mount_table_path = mount_table_path
        self.diskstats_path = diskstats_path
        self.probes: list[Callable[[LinuxTarget], HealthResult | None]] = [
            self._probe_smartctl,
            self._probe_mmc_kernel_log,
            self._probe_kernel_fallback,
        ]

    def resolve(self, volume: Volume) -> LinuxTarget | None:
        device = resolve_mount_device(
            volume.mount_point, read_mount_table(self.mount_table_path)
        )
        if device is None:
            return None
        target = LinuxTarget(
            device_path=device,
            base_path=base_device(device),
            family=device_family(device),
            is_raid=is_raid_device(device),
        )
        self.logger.debug(
            "Resolved %s to %s (base %s, family %s).",
            volume.mount_point,
            target.device_path,
            target.base_path,
            target.family.value,
        )
        if target.is_raid:
            self.logger.debug("RAID device detected: %s", target.device_path)
        return target

    def probe(self, volume: Volume) -> HealthResult:
        target = self.resolve(volume)
        if target is None:
            return HealthResult.degraded(HealthMethod.ERROR)
        for probe in self.probes:
            result = probe(target)
            if result is not None:
                self.logger.debug(
                    "%s: %s via %s", volume.mount_point, result.status.value, result.method.value
                )
                return replace(result, is_raid=target.is_raid)
        return HealthResult.degraded(HealthMethod.KERNEL_FALLBACK, is_raid=target.is_raid)

    def _probe_smartctl(self, target: LinuxTarget) -> HealthResult | None:
        if self.smartctl_path is None:
            return None
        for args in smartctl_argument_variants(target.base_path, target.family):
            self.logger.debug("Trying smartctl with args: %s", args)
            report = self._run_smartctl([self.smartctl_path, *args])
            status = report.resolved_status if report else None
            if report is not None and status is not None:
                return _result_from_smartctl(report, status)
        self.logger.debug(
            "smartctl gave no usable data for %s, falling back to kernel methods.",
            target.base_path,
        )
        return None

    def _kernel_log(self) -> list[str] | None:
        result = self.run(["dmesg"])
        if result is None or not result.ok:
            return None
        return result.stdout.splitlines()

    def _mmc_identity(self, short_name: str) -> Identity:
        identity = Identity()
        device_dir = self.sysfs_root / short_name / "device"
        identity.model = read_text(device_dir / "name") or None
        cid = read_text(device_dir / "cid")
        if cid and len(cid) >= 32:
            try:
                identity.serial = f"{int(cid[18:26], 16):08X}"
            except ValueError:
                self.logger.debug("Unparseable CID for %s: %s", short_name, cid)
        manfid = read_text(device_dir / "manfid")
        if manfid:
            try:
                identity.brand = mmc_brand(int(manfid, 16))
            except ValueError:
                self.logger.debug("Unparseable manfid for %s: %s", short_name, manfid)
        return identity

    def _probe_mmc_kernel_log(self, target: LinuxTarget) -> HealthResult | None:
        if target.family is not DeviceFamily.MMC:
            return None
        lines = self._kernel_log()
        if lines is None:
            self.logger.debug("Kernel log unavailable for %s.", target.short_name)
            return None
        short = target.short_name.lower()
        errors = [
            line
            for line in lines[-KERNEL_LOG_TAIL:]
            if short in line.lower()
            and any(token in line.lower() for token in MMC_ERROR_TOKENS)
        ]
        for line in errors:
            self.logger.debug("MMC error in kernel log: %s", line)
        identity = self._mmc_identity(target.short_name)
        return HealthResult(
            status=HealthStatus.WARNING if errors else HealthStatus.OK,
            method=HealthMethod.KERNEL_FALLBACK,
            serial=identity.serial,
            brand=identity.brand,
            model=identity.model,
        )

    def _smart_attributes_failing(self, device_dir: Path) -> bool:
        content = read_text(device_dir / "smart_attributes")
        if not content:
            return False
        return any(
            marker in line
            for line in content.splitlines()
            for marker in SMART_ATTRIBUTE_FAILURE_MARKERS
        )

    def _io_error_count(self, short_name: str) -> int | None:
        counter = read_text(self.sysfs_root / short_name / "device" / "ioerr_cnt")
        if counter:
            try:
                return int(counter, 16)
            except ValueError:
                self.logger.debug("Unparseable ioerr_cnt for %s: %s", short_name, counter)
        diskstats = read_text(self.diskstats_path)
        if not diskstats:
            return None
        for line in diskstats.splitlines():
            parts = line.split()
            if len(parts) >= 14 and parts[2] == short_name:
                try:
                    return int(parts[11])
                except ValueError:
                    return None
        return None

    def _kernel_log_reports_errors(self, short_name: str) -> bool:
        lines = self._kernel_log()
        if not lines:
            return False
        short = short_name.lower()
        for line in lines:
            lowered = line.lower()
            if short in lowered and any(token in lowered for token in DISK_ERROR_TOKENS):
                self.logger.debug("Disk error in kernel log: %s", line)
                return True
        return False

    def _fsck_reports_corruption(self, device_path: str) -> bool:
        result = self.run(["fsck", "-n", device_path])
        if result is None or result.ok:
            return False
        stderr = result.stderr.lower()
        return any(token in stderr for token in FSCK_CORRUPTION_TOKENS)

    def _probe_kernel_fallback(self, target: LinuxTarget) -> HealthResult | None:
        short = target.short_name
        device_dir = self.sysfs_root / short / "device"
        if not device_dir.is_dir():
            self.logger.debug("No sysfs entry for %s.", short)
            return None
        identity = Identity(
            model=read_text(device_dir / "model") or None,
            serial=read_text(device_dir / "serial") or None,
            brand=read_text(device_dir / "vendor") or None,
        )
        rotational = read_text(self.sysfs_root / short / "queue" / "rotational")
        if rotational is not None:
            self.logger.debug(
                "Device type for %s: %s", short, "SSD" if rotational == "0" else "HDD"
            )

        status: HealthStatus
        if self._smart_attributes_failing(device_dir):
            status = HealthStatus.FAILING
        else:
            io_errors = self._io_error_count(short)
            if io_errors is not None:
                status = HealthStatus.WARNING if io_errors > 0 else HealthStatus.OK
            elif self._kernel_log_reports_errors(short):
                status = HealthStatus.WARNING
            elif self._fsck_reports_corruption(target.device_path):
                self.logger.debug("Filesystem errors reported for %s.", target.device_path)
                status = HealthStatus.WARNING
            else:
                status = HealthStatus.OK
        return HealthResult(
            status=status,
            method=HealthMethod.KERNEL_FALLBACK,
            serial=identity.serial,
            brand=identity.brand,
            model=identity.model,
        )


class WindowsHealthProber(HealthProber):
    def __init__(
        self,
        config: MonitorConfig,
        runner: Runner | None = None,
        smartctl_path: str | None = None,
    ) -> None:
        super().__init__(config, runner, smartctl_path)
        self.probes: list[Callable[[int], HealthResult | None]] = [
            self._probe_smartctl,
            self._probe_physical_disk,
        ]

    def _smartctl_commands(self, device: str) -> list[list[str]]:
        binaries: list[str] = []
        for candidate in (self.config.smartctl_path, WINDOWS_SMARTCTL_PATHS[0]):
            if candidate not in binaries:
                binaries.append(candidate)
        arg_sets = [[*SMARTCTL_BASE_ARGS, device], [*SMARTCTL_BASE_ARGS, "-d", "auto", device]]
        return [[binary, *args] for args in arg_sets for binary in binaries]

    def probe(self, volume: Volume) -> HealthResult:
        letter = drive_letter(volume.mount_point)
        if letter is None:
            self.logger.debug("Invalid drive format: %s", volume.mount_point)
            return HealthResult.degraded(HealthMethod.ERROR)
        index = resolve_windows_disk_index(letter, self.run)
        if index is None:
            return HealthResult.degraded(HealthMethod.ERROR)
        self.logger.debug("Drive %s: is physical disk %d.", letter, index)
        for probe in self.probes:
            result = probe(index)
            if result is not None:
                return result
        return HealthResult.degraded(HealthMethod.OS_NATIVE_API)

    def _probe_smartctl(self, index: int) -> HealthResult | None:
        for command in self._smartctl_commands(f"/dev/pd{index}"):
            self.logger.debug("Trying smartctl command: %s", command)
            report = self._run_smartctl(command)
            status = report.resolved_status if report else None
            if report is not None and status is not None:
                return _result_from_smartctl(report, status)
        self.logger.debug(
            "smartctl gave no usable data for disk %d, falling back to Get-PhysicalDisk.",
            index,
        )
        return None

    def _physical_disk_info(self, index: int) -> dict[str, Any] | None:
        script = PHYSICAL_DISK_HEALTH_SCRIPT.format(index=index)
        result = self.run(["powershell", "-NoProfile", "-Command", script])
        if result is None or not result.ok:
            return None
        output = result.stdout.strip()
        if not output or output.startswith("ERROR") or "NOT_FOUND" in output:
            self.logger.debug("Get-PhysicalDisk returned %s for disk %d.", output, index)
            return None
        try:
            data = json.loads(output)
        except json.JSONDecodeError:
            self.logger.debug("Failed to parse Get-PhysicalDisk JSON for disk %d.", index)
            return None
        if isinstance(data, list):
            data = data[0] if data else None
        return data if isinstance(data, dict) else None

    def _probe_physical_disk(self, index: int) -> HealthResult | None:
        data = self._physical_disk_info(index)
        if data is None:
            return None
        health = str(data.get("HealthStatus") or "Unknown")
        health = WINDOWS_HEALTH_CODES.get(health, health)
        operational = str(data.get("OperationalStatus") or "Unknown")
        operational = WINDOWS_OPERATIONAL_CODES.get(operational, operational)
        status = classify_physical_disk(health, operational)
        self.logger.debug(
            "Disk %d: HealthStatus=%s OperationalStatus=%s -> %s",
            index,
            health,
            operational,
            status.value,
        )
        return HealthResult(
            status=status,
            method=HealthMethod.OS_NATIVE_API,
            serial=(str(data.get("SerialNumber") or "").strip() or None),
            model=(str(data.get("Model") or data.get("FriendlyName") or "").strip() or None),
        )


class UnsupportedHealthProber(HealthProber):
    def probe(self, volume: Volume) -> HealthResult:
        self.logger.debug("No health probes for %s on this platform.", volume.mount_point)
        return HealthResult.degraded(HealthMethod.ERROR)


def classify_physical_disk(health: str, operational: str) -> HealthStatus:
    if health == "Healthy" and operational == "OK":
        return HealthStatus.OK
    if health == "Unhealthy" or operational != "OK":
        return HealthStatus.FAILING
    return HealthStatus.WARNING


def select_prober(config: MonitorConfig, system: str | None = None) -> HealthProber:
    """Pick the prober for the running OS once, at startup."""
    system = (system or platform.system()).lower()
    smartctl_path = find_smartctl(config.smartctl_path)
    if system == "linux":
        return LinuxHealthProber(config, smartctl_path=smartctl_path)
    if system == "windows":
        return WindowsHealthProber(config, smartctl_path=smartctl_path)
    return UnsupportedHealthProber(config, smartctl_path=smartctl_path)
