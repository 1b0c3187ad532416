from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class HealthStatus(str, Enum):
    OK = "OK"
    WARNING = "WARNING"
    FAILING = "FAILING"
    UNKNOWN = "UNKNOWN"


class HealthMethod(str, Enum):
    NATIVE_TOOL = "native-tool"
    KERNEL_FALLBACK = "kernel-fallback"
    OS_NATIVE_API = "os-native-api"
    DISABLED = "disabled"
    ERROR = "error"
    TIMEOUT = "timeout"


NATIVE_METHODS = frozenset({HealthMethod.NATIVE_TOOL, HealthMethod.OS_NATIVE_API})

# Drives hotter than this are flagged even when SMART reports OK.
TEMPERATURE_WARNING_C = 55


@dataclass(frozen=True)
class Volume:
    mount_point: str
    device: str
    display_name: str
    file_system: str
    total_bytes: int
    available_bytes: int

    @property
    def free_space_percent(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        pct = (self.available_bytes / self.total_bytes) * 100
        return min(100.0, max(0.0, pct))


@dataclass(frozen=True)
class HealthResult:
    status: HealthStatus
    method: HealthMethod
    serial: str | None = None
    brand: str | None = None
    model: str | None = None
    is_raid: bool = False
    power_on_hours: int | None = None
    reallocated_sectors: int | None = None
    pending_sectors: int | None = None
    uncorrectable_sectors: int | None = None
    temperature_c: int | None = None

    @classmethod
    def degraded(cls, method: HealthMethod, is_raid: bool = False) -> HealthResult:
        """Result for a volume whose health could not be determined."""
        return cls(status=HealthStatus.UNKNOWN, method=method, is_raid=is_raid)

    @property
    def has_attribute_warning(self) -> bool:
        counts = (
            self.reallocated_sectors,
            self.pending_sectors,
            self.uncorrectable_sectors,
        )
        if any((count or 0) > 0 for count in counts):
            return True
        return (self.temperature_c or 0) > TEMPERATURE_WARNING_C


@dataclass(frozen=True)
class DiskReport:
    volume: Volume
    health: HealthResult


@dataclass(frozen=True)
class MonitoringSummary:
    total: int
    low_space: int
    smart_failing: int
    smart_unknown: int
    any_raid: bool
    virtualized: bool


@dataclass(frozen=True)
class SystemInfo:
    os_name: str
    os_version: str
    architecture: str
    hostname: str
    is_virtualized: bool


@dataclass(frozen=True)
class AlertDecision:
    send: bool
    forced: bool = False
    reasons: dict[str, list[str]] = field(default_factory=dict)
