"""smartctl discovery, invocation variants and text output parsing."""
from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import platform
import re
from shutil import which

from diskmon.devices import DeviceFamily
from diskmon.models import HealthStatus

# Bit 0: bad command line. Bit 1: device open failed. The other bits describe
# the disk itself (bit 3 is a failing verdict) and leave the output usable.
SMARTCTL_FATAL_BITS = 0b11

SMARTCTL_BASE_ARGS = ("-H", "-i", "-A")

WINDOWS_SMARTCTL_PATHS = (
    r"C:\Program Files\smartmontools\bin\smartctl.exe",
    r"C:\Program Files\smartmontools\smartctl.exe",
    r"C:\Program Files (x86)\smartmontools\bin\smartctl.exe",
)

_LEADING_INT = re.compile(r"^-?\d[\d,]*")

logger = logging.getLogger(__name__)


@dataclass
class SmartctlReport:
    status: HealthStatus | None = None
    model: str | None = None
    serial: str | None = None
    brand: str | None = None
    power_on_hours: int | None = None
    reallocated_sectors: int | None = None
    pending_sectors: int | None = None
    uncorrectable_sectors: int | None = None
    temperature_c: int | None = None

    @property
    def has_attributes(self) -> bool:
        return any(
            value is not None
            for value in (
                self.model,
                self.serial,
                self.brand,
                self.power_on_hours,
                self.reallocated_sectors,
                self.pending_sectors,
                self.uncorrectable_sectors,
                self.temperature_c,
            )
        )

    @property
    def useful(self) -> bool:
        return self.status is not None or self.has_attributes

    @property
    def resolved_status(self) -> HealthStatus | None:
        """Explicit health verdict, or OK when only readable data was found."""
        if self.status is not None:
            return self.status
        if self.has_attributes:
            return HealthStatus.OK
        return None


def find_smartctl(configured: str = "smartctl") -> str | None:
    path = which(configured)
    if path:
        return path
    if Path(configured).is_file():
        return configured
    if platform.system().lower() == "windows":
        for candidate in WINDOWS_SMARTCTL_PATHS:
            if Path(candidate).is_file():
                return candidate
    return None


def smartctl_argument_variants(device: str, family: DeviceFamily) -> list[list[str]]:
    """Argument lists to try in order: auto-detect first, then forced types."""
    if family is DeviceFamily.NVME:
        forced = [["-d", "nvme"]]
    else:
        forced = [["-d", "auto"], ["-d", "sat"]]
    variants = [[*SMARTCTL_BASE_ARGS, device]]
    variants.extend([*SMARTCTL_BASE_ARGS, *extra, device] for extra in forced)
    return variants


def usable_exit_code(returncode: int) -> bool:
    return returncode >= 0 and returncode & SMARTCTL_FATAL_BITS == 0


def _label_value(line: str) -> str:
    return line.split(":", 1)[1].strip() if ":" in line else ""


def _parse_int(text: str) -> int | None:
    match = _LEADING_INT.match(text.strip())
    if not match:
        return None
    try:
        return int(match.group(0).replace(",", ""))
    except ValueError:
        return None


def _attribute_value(line: str, name: str) -> int | None:
    """Raw value of a named attribute from either output layout.

    ATA attribute tables put the raw value in the tenth column
    ("194 Temperature_Celsius 0x0022 064 052 000 Old_age Always - 36 (Min/Max 18/48)");
    other layouts print "Name: value".
    """
    parts = line.split()
    if len(parts) >= 10 and parts[1] == name and parts[0].isdigit():
        return _parse_int(parts[9])
    if ":" in line:
        return _parse_int(_label_value(line))
    return None


def _health_from_self_assessment(line: str) -> HealthStatus:
    if "PASSED" in line:
        return HealthStatus.OK
    if "FAILED" in line:
        return HealthStatus.FAILING
    return HealthStatus.WARNING


ATTRIBUTE_FIELDS = {
    "Power_On_Hours": "power_on_hours",
    "Reallocated_Sector_Ct": "reallocated_sectors",
    "Current_Pending_Sector": "pending_sectors",
    "Offline_Uncorrectable": "uncorrectable_sectors",
    "Temperature_Celsius": "temperature_c",
}

LABEL_FIELDS = {
    "Device Model:": "model",
    "Model Number:": "model",
    "Product:": "model",
    "Device:": "model",
    "Serial Number:": "serial",
    "Serial number:": "serial",
    "Vendor:": "brand",
    "Model Family:": "brand",
    "Power On Hours:": "power_on_hours",
    "Temperature:": "temperature_c",
    "Current Drive Temperature:": "temperature_c",
}

_NUMERIC_FIELDS = frozenset(ATTRIBUTE_FIELDS.values())


def parse_smartctl_output(text: str) -> SmartctlReport:
    report = SmartctlReport()
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if "SMART overall-health self-assessment test result:" in line:
            report.status = _health_from_self_assessment(_label_value(line))
            continue
        if "SMART Health Status:" in line:
            report.status = (
                HealthStatus.OK if "OK" in _label_value(line) else HealthStatus.WARNING
            )
            continue

        handled = False
        for label, attr in LABEL_FIELDS.items():
            if line.startswith(label):
                value = _label_value(line)
                if attr in _NUMERIC_FIELDS:
                    parsed = _parse_int(value)
                    if parsed is not None:
                        setattr(report, attr, parsed)
                elif value and getattr(report, attr) is None:
                    setattr(report, attr, value)
                handled = True
                break
        if handled:
            continue

        for name, attr in ATTRIBUTE_FIELDS.items():
            if name in line:
                value = _attribute_value(line, name)
                if value is not None:
                    setattr(report, attr, value)
                break
    return report
