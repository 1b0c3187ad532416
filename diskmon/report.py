"""Fold per-volume health into a report and decide whether to alert.

Everything here is a pure function of its inputs: the same DiskReports and
settings always give the same summary, decision and payload.
"""
from __future__ import annotations

from datetime import datetime
from html import escape
from typing import Any

from diskmon.config import MonitorConfig
from diskmon.models import (
    NATIVE_METHODS,
    TEMPERATURE_WARNING_C,
    AlertDecision,
    DiskReport,
    HealthMethod,
    HealthResult,
    HealthStatus,
    MonitoringSummary,
    SystemInfo,
    Volume,
)

GIB = 1024**3
REPORT_TIME_FORMAT = "%d-%m-%Y %H:%M:%S"

LOW_SPACE = "LOW SPACE"
SMART_FAILING = "SMART FAILING"
SMART_WARNING = "SMART WARNING"
STATUS_OK = "OK"

FALLBACK_ADVISORY = "Health info from fallback method; may be incomplete or unreliable."
RAID_ADVISORY = "RAID device detected; health info may be unreliable."
VIRTUALIZED_ADVISORY = "Running in virtualized environment; health info may be unreliable."
NO_HEALTH_WARNING = (
    "No health information available for one or more disks. This tool should "
    "NOT be used for health monitoring tasks on these systems."
)
RAID_WARNING = (
    "RAID device(s) detected. Health information may be unavailable or "
    "unreliable. This tool should NOT be used for health monitoring tasks on "
    "RAID systems."
)

SMART_PROBLEM_STATUSES = frozenset({HealthStatus.WARNING, HealthStatus.FAILING})


def build_disk_reports(
    volumes: list[Volume], results: list[HealthResult]
) -> list[DiskReport]:
    if len(volumes) != len(results):
        raise ValueError(
            f"Got {len(results)} health results for {len(volumes)} volumes"
        )
    return [DiskReport(volume=v, health=r) for v, r in zip(volumes, results)]


def is_low_space(report: DiskReport, threshold: float) -> bool:
    return report.volume.free_space_percent < threshold


def is_smart_problem(report: DiskReport) -> bool:
    return report.health.status in SMART_PROBLEM_STATUSES


def status_indicator(report: DiskReport, threshold: float) -> str:
    if is_low_space(report, threshold):
        return LOW_SPACE
    if is_smart_problem(report):
        return SMART_FAILING
    if report.health.has_attribute_warning:
        return SMART_WARNING
    return STATUS_OK


def summarize(
    reports: list[DiskReport], threshold: float, virtualized: bool
) -> MonitoringSummary:
    return MonitoringSummary(
        total=len(reports),
        low_space=sum(1 for r in reports if is_low_space(r, threshold)),
        smart_failing=sum(1 for r in reports if is_smart_problem(r)),
        smart_unknown=sum(1 for r in reports if r.health.status is HealthStatus.UNKNOWN),
        any_raid=any(r.health.is_raid for r in reports),
        virtualized=virtualized,
    )


def _unknown_triggers(report: DiskReport) -> bool:
    return (
        report.health.status is HealthStatus.UNKNOWN
        and report.health.method is not HealthMethod.DISABLED
    )


def decide_alert(
    reports: list[DiskReport], settings: MonitorConfig, forced: bool = False
) -> AlertDecision:
    """Decide whether a report goes out, and why, per volume."""
    threshold = settings.threshold_percent
    reasons: dict[str, list[str]] = {}
    for report in reports:
        volume_reasons: list[str] = []
        if is_low_space(report, threshold):
            volume_reasons.append(
                f"low space ({report.volume.free_space_percent:.2f}%)"
            )
        if settings.smart_enabled:
            if is_smart_problem(report):
                volume_reasons.append(f"SMART status: {report.health.status.value}")
            elif settings.send_mail_on_unknown_status and _unknown_triggers(report):
                volume_reasons.append("SMART status: Unknown")
        if settings.debug:
            volume_reasons.append("debug mode enabled")
        if volume_reasons:
            reasons[report.volume.display_name] = volume_reasons
    return AlertDecision(send=forced or bool(reasons), forced=forced, reasons=reasons)


def advisories(report: DiskReport, virtualized: bool) -> list[str]:
    """Reliability annotations; they never influence the alert decision."""
    notes: list[str] = []
    method = report.health.method
    if method not in NATIVE_METHODS:
        notes.append(FALLBACK_ADVISORY)
    if report.health.is_raid:
        notes.append(RAID_ADVISORY)
    if virtualized:
        notes.append(VIRTUALIZED_ADVISORY)
    return notes


def alert_messages(reports: list[DiskReport], threshold: float) -> list[str]:
    alerts: list[str] = []
    for report in reports:
        name = report.volume.display_name
        if is_low_space(report, threshold):
            alerts.append(f"{name}: Low space ({report.volume.free_space_percent:.2f}%)")
        if is_smart_problem(report):
            alerts.append(f"{name}: SMART failure ({report.health.status.value})")
    return alerts


def attribute_warnings(health: HealthResult) -> list[str]:
    warnings: list[str] = []
    if (health.reallocated_sectors or 0) > 0:
        warnings.append("Reallocated sectors detected!")
    if (health.pending_sectors or 0) > 0:
        warnings.append("Pending sectors detected!")
    if (health.uncorrectable_sectors or 0) > 0:
        warnings.append("Uncorrectable sectors detected!")
    if (health.temperature_c or 0) > TEMPERATURE_WARNING_C:
        warnings.append("High temperature!")
    return warnings


def _health_payload(health: HealthResult) -> dict[str, Any]:
    return {
        "status": health.status.value,
        "method": health.method.value,
        "serial": health.serial,
        "brand": health.brand,
        "model": health.model,
        "is_raid": health.is_raid,
        "power_on_hours": health.power_on_hours,
        "reallocated_sectors": health.reallocated_sectors,
        "pending_sectors": health.pending_sectors,
        "uncorrectable_sectors": health.uncorrectable_sectors,
        "temperature_c": health.temperature_c,
    }


def build_report_payload(
    reports: list[DiskReport],
    system_info: SystemInfo,
    threshold: float,
    smartctl_available: bool,
    generated_at: datetime | None = None,
) -> dict[str, Any]:
    summary = summarize(reports, threshold, system_info.is_virtualized)
    disks = []
    for report in reports:
        volume = report.volume
        disks.append(
            {
                "display_name": volume.display_name,
                "mount_point": volume.mount_point,
                "device": volume.device,
                "file_system": volume.file_system,
                "total_bytes": volume.total_bytes,
                "available_bytes": volume.available_bytes,
                "free_space_percent": round(volume.free_space_percent, 2),
                "status_indicator": status_indicator(report, threshold),
                "health": _health_payload(report.health),
                "advisories": advisories(report, system_info.is_virtualized),
            }
        )
    payload: dict[str, Any] = {
        "system_info": {
            "os_name": system_info.os_name,
            "os_version": system_info.os_version,
            "architecture": system_info.architecture,
            "hostname": system_info.hostname,
            "is_virtualized": system_info.is_virtualized,
        },
        "disks": disks,
        "threshold_percent": threshold,
        "smartctl_available": smartctl_available,
        "summary": {
            "total": summary.total,
            "low_space": summary.low_space,
            "smart_failing": summary.smart_failing,
            "smart_unknown": summary.smart_unknown,
            "any_raid": summary.any_raid,
            "virtualized": summary.virtualized,
        },
        "alerts": alert_messages(reports, threshold),
    }
    if generated_at is not None:
        payload["generated_at"] = generated_at.isoformat()
    return payload


def _os_label(system_info: SystemInfo) -> str:
    return f"{system_info.os_name} {system_info.os_version} {system_info.architecture}"


def render_subject(display_name: str, system_info: SystemInfo, forced: bool = False) -> str:
    subject = f"System Disk Report - {display_name} ({_os_label(system_info)})"
    return f"[FORCED] {subject}" if forced else subject


def report_mode(forced: bool, debug: bool) -> str:
    if forced:
        return "Forced Report"
    if debug:
        return "Debug Mode"
    return "Normal Scan"


def _disk_block(index: int, report: DiskReport, threshold: float, virtualized: bool) -> list[str]:
    volume = report.volume
    health = report.health
    total_gb = volume.total_bytes / GIB
    available_gb = volume.available_bytes / GIB
    lines = [
        f"<b>Disk {index}: [{status_indicator(report, threshold)}] {escape(volume.display_name)}</b>",
        f"<b> - Mount Point:</b> {escape(volume.mount_point)}",
        f"<b> - File System:</b> {escape(volume.file_system)}",
        f"<b> - Total Space:</b> {total_gb:.2f} GB",
        f"<b> - Used Space:</b> {total_gb - available_gb:.2f} GB",
        f"<b> - Available Space:</b> {available_gb:.2f} GB",
        f"<b> - Free Space:</b> {volume.free_space_percent:.2f}%",
        f"<b> - Health Check Method:</b> {health.method.value}",
    ]
    if health.status is HealthStatus.UNKNOWN:
        lines.append(" - SMART Status: Unknown/N/A")
    else:
        lines.append(f" - SMART Status: {health.status.value}")

    attributes = (
        ("Power On Hours", health.power_on_hours, None),
        ("Reallocated Sectors", health.reallocated_sectors, "Reallocated sectors detected!"),
        ("Pending Sectors", health.pending_sectors, "Pending sectors detected!"),
        ("Uncorrectable Sectors", health.uncorrectable_sectors, "Uncorrectable sectors detected!"),
    )
    for label, value, warning in attributes:
        if value is None:
            continue
        lines.append(f" - {label}: {value}")
        if warning and value > 0:
            lines.append(f"   * WARNING: {warning}")
    if health.temperature_c is not None:
        lines.append(f" - Temperature: {health.temperature_c} C")
        if health.temperature_c > TEMPERATURE_WARNING_C:
            lines.append("   * WARNING: High temperature!")

    for label, value in (
        ("Serial Number", health.serial),
        ("Brand", health.brand),
        ("Model", health.model),
    ):
        if value:
            lines.append(f" - {label}: {escape(value)}")
    if health.is_raid:
        lines.append(" - RAID: Yes (SMART status may not be accurate)")
    lines.extend(f"   * WARNING: {note}" for note in advisories(report, virtualized))
    lines.append("")
    return lines


def render_html_body(
    reports: list[DiskReport],
    system_info: SystemInfo,
    display_name: str,
    threshold: float,
    smartctl_available: bool,
    mode: str,
    report_time: datetime,
) -> str:
    summary = summarize(reports, threshold, system_info.is_virtualized)
    virtualized = system_info.is_virtualized
    lines = [
        '<html><body><pre style="font-family: monospace;">',
        "System Disk Report",
        "",
        f"Device: {escape(display_name)} ({escape(system_info.hostname)})",
        f"System: {escape(_os_label(system_info))}" + (" (Virtualized)" if virtualized else ""),
        f"Hostname: {escape(system_info.hostname)}",
        f"Report Time: {report_time.strftime(REPORT_TIME_FORMAT)}",
        f"Mode: {mode}",
        "SMART Tools: "
        + (
            "smartmontools detected - enhanced disk health monitoring"
            if smartctl_available
            else "smartmontools not detected - using fallback methods"
        ),
        "Virtualization: "
        + (
            "Yes - Running in virtualized environment"
            if virtualized
            else "No - Running on physical hardware"
        ),
        "",
        "Disk Summary:",
        f"- Total Disks: {summary.total}",
        f"- Low Space (&lt;{threshold:g}%): {summary.low_space}",
        f"- SMART Failing: {summary.smart_failing}",
        f"- SMART Unknown: {summary.smart_unknown}",
        "",
    ]
    if summary.smart_unknown:
        lines.extend([f"WARNING: {NO_HEALTH_WARNING}", ""])
    if summary.any_raid:
        lines.extend([f"WARNING: {RAID_WARNING}", ""])
    for index, report in enumerate(reports, start=1):
        lines.extend(_disk_block(index, report, threshold, virtualized))
    lines.append("</pre></body></html>")
    return "\n".join(lines)
