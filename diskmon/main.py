from __future__ import annotations

import argparse
from dataclasses import replace
from datetime import datetime
import json
import logging
import sys

from colorlog.escape_codes import escape_codes, parse_colors

from diskmon.collector import HealthCollector, disabled_results
from diskmon.config import DEFAULT_CONFIG_PATH, ConfigError, load_config
from diskmon.delivery import DeliveryError, ReportMessage, RetryPolicy, build_sinks, deliver_with_retry
from diskmon.logging_utils import configure_logging, enable_debug_logging, resolve_log_level
from diskmon.models import AlertDecision, DiskReport, HealthMethod, HealthStatus, SystemInfo
from diskmon.probes import select_prober
from diskmon.report import (
    NO_HEALTH_WARNING,
    RAID_WARNING,
    advisories,
    attribute_warnings,
    build_disk_reports,
    build_report_payload,
    decide_alert,
    render_html_body,
    render_subject,
    report_mode,
)
from diskmon.schema import validate_payload
from diskmon.system import get_system_info
from diskmon.volumes import enumerate_volumes

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_OR_DELIVERY = 2

GIB = 1024**3

METHOD_LABELS = {
    HealthMethod.NATIVE_TOOL: ("[smartmontools]", "green"),
    HealthMethod.OS_NATIVE_API: ("[Get-PhysicalDisk]", "green"),
    HealthMethod.KERNEL_FALLBACK: ("[kernel fallback]", "yellow"),
    HealthMethod.DISABLED: ("[health check disabled]", "thin_white"),
    HealthMethod.TIMEOUT: ("[timed out]", "red"),
    HealthMethod.ERROR: ("[unknown method]", "red"),
}

logger = logging.getLogger("diskmon")


def _positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not a number: {value}") from exc
    if number <= 0:
        raise argparse.ArgumentTypeError("must be positive")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Disk space and health monitor")
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Path to CFG configuration file",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (TRACE, DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable debug logging (-v) or trace logging (-vv)",
    )
    parser.add_argument(
        "--force-mail",
        action="store_true",
        help="Send the full report even when nothing is wrong",
    )
    parser.add_argument(
        "--smart",
        action="store_true",
        help="Print per-disk SMART details and exit without alerting",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the report as JSON and exit without alerting",
    )
    parser.add_argument(
        "--smart-timeout",
        type=_positive_float,
        metavar="SECONDS",
        help="Per-volume health check timeout (overrides smart_timeout_s)",
    )
    parser.add_argument(
        "--dump-json",
        help="Also write the JSON report to this file",
    )
    return parser


def _paint(text: str, color: str, enabled: bool) -> str:
    if not enabled:
        return text
    return f"{parse_colors(color)}{text}{escape_codes['reset']}"


def _usage_color(free_percent: float) -> tuple[str, str]:
    if free_percent < 20.0:
        return "!", "bold_red"
    if free_percent < 50.0:
        return "*", "bold_yellow"
    return "OK", "bold_green"


def print_volume_listing(
    reports: list[DiskReport], system_info: SystemInfo, color: bool
) -> None:
    print(_paint("Disk space report:", "bold_blue", color))
    for report in reports:
        volume = report.volume
        health = report.health
        icon, usage_color = _usage_color(volume.free_space_percent)
        if health.status is HealthStatus.UNKNOWN:
            smart = _paint("(SMART: N/A)", "thin_white", color)
        elif health.status is HealthStatus.OK:
            smart = f"(SMART: {_paint('OK', 'green', color)})"
        else:
            smart = f"(SMART: {_paint(health.status.value, 'bold_red', color)})"
        raid = _paint(" (RAID)", "thin_white", color) if health.is_raid else ""
        label, label_color = METHOD_LABELS[health.method]
        print(
            f"  {_paint(icon, usage_color, color)} {_paint(volume.display_name, 'cyan', color)}: "
            f"{_paint(f'{volume.free_space_percent:.2f}', usage_color, color)}% free "
            f"({volume.available_bytes / GIB:.2f} GB available, "
            f"{_paint(volume.file_system, 'purple', color)} filesystem) "
            f"{smart}{raid} {_paint(label, label_color, color)}"
        )
        for note in advisories(report, system_info.is_virtualized):
            print(f"    {_paint('WARNING: ' + note, 'yellow', color)}")
    if any(r.health.status is HealthStatus.UNKNOWN for r in reports):
        print(_paint(f"WARNING: {NO_HEALTH_WARNING}", "bold_red", color))
    if any(r.health.is_raid for r in reports):
        print(_paint(f"WARNING: {RAID_WARNING}", "bold_red", color))


def print_smart_details(reports: list[DiskReport], color: bool) -> None:
    print()
    print(_paint("SMART Status Details:", "bold_blue", color))
    for report in reports:
        health = report.health
        status = "N/A" if health.status is HealthStatus.UNKNOWN else health.status.value
        status_color = "bold_green" if health.status is HealthStatus.OK else "bold_red"
        print(f"  {_paint(report.volume.display_name, 'cyan', color)}: {_paint(status, status_color, color)}")
        print(f"    Serial: {health.serial or 'N/A'}")
        print(f"    Brand: {health.brand or 'N/A'}")
        print(f"    Model: {health.model or 'N/A'}")
        if health.is_raid:
            print("    (RAID)")
        for warning in attribute_warnings(health):
            print(f"    {_paint('WARNING: ' + warning, 'bold_red', color)}")


def print_alert_reasons(
    decision: AlertDecision, reports: list[DiskReport], threshold: float, color: bool
) -> None:
    if decision.reasons:
        print()
        print(
            f"{_paint('Alerts triggered for', 'bold_red', color)} "
            f"{_paint(str(len(decision.reasons)), 'bold_red', color)} disk(s):"
        )
        for name, reasons in decision.reasons.items():
            print(
                f"  {_paint('!', 'bold_red', color)} {_paint(name, 'cyan', color)}: "
                f"{_paint(', '.join(reasons), 'bold_red', color)}"
            )
        return
    if decision.forced:
        print()
        print(_paint("Forced mail mode: Sending comprehensive system report...", "bold_yellow", color))
        return
    print()
    if any(r.health.status is HealthStatus.UNKNOWN for r in reports):
        print(
            f"{_paint('All disks are above threshold', 'bold_yellow', color)} "
            f"(above {threshold:.1f}% threshold, but health status is unknown for one or more disks)."
        )
    else:
        print(
            f"{_paint('All disks are healthy', 'bold_green', color)} "
            f"(above {threshold:.1f}% threshold and SMART status OK)."
        )


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    level = resolve_log_level(args.verbose, args.log_level)
    configure_logging(level)
    color = sys.stdout.isatty()

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        logger.error("%s", exc)
        return EXIT_CONFIG_OR_DELIVERY
    monitor = config.monitor
    if args.smart_timeout is not None:
        monitor = replace(monitor, smart_timeout_s=args.smart_timeout)
    if monitor.debug:
        enable_debug_logging()

    system_info = get_system_info()
    prober = select_prober(monitor)
    if prober.smartctl_available:
        logger.info("smartctl found at %s.", prober.smartctl_path)
    else:
        logger.info("smartctl not found; using fallback health methods.")

    enumeration = enumerate_volumes(monitor.excluded_disks)
    for exclusion in enumeration.unmatched_exclusions:
        logger.warning("Excluded disk '%s' did not match any monitored volume.", exclusion)
    volumes = enumeration.volumes
    if not volumes:
        logger.error("No disks found to monitor.")
        return EXIT_FAILURE
    logger.info("Monitoring %d volume(s).", len(volumes))

    if monitor.health_check_enabled:
        collector = HealthCollector(prober, timeout_s=monitor.smart_timeout_s)
        results = collector.collect(volumes)
    else:
        results = disabled_results(volumes)
    reports = build_disk_reports(volumes, results)
    threshold = monitor.threshold_percent

    report_time = datetime.now().astimezone()
    payload = build_report_payload(
        reports,
        system_info,
        threshold,
        prober.smartctl_available,
        generated_at=report_time,
    )
    schema_errors = validate_payload(payload)
    if schema_errors:
        logger.warning("Schema validation failed with %s errors.", len(schema_errors))
        logger.debug("Schema errors: %s", schema_errors)
    else:
        logger.debug("Schema validation passed.")

    if not args.json:
        print_volume_listing(reports, system_info, color)

    if args.json or args.dump_json:
        try:
            payload_json = json.dumps(payload, indent=2)
        except (TypeError, ValueError) as exc:
            logger.error("Failed to serialize JSON output: %s", exc)
            return EXIT_FAILURE
        if args.dump_json:
            try:
                with open(args.dump_json, "w", encoding="utf-8") as handle:
                    handle.write(payload_json)
            except OSError as exc:
                logger.error("Failed to write %s: %s", args.dump_json, exc)
                return EXIT_FAILURE
        if args.json:
            if schema_errors:
                return EXIT_FAILURE
            print(payload_json)
            return EXIT_OK

    if args.smart:
        print_smart_details(reports, color)
        return EXIT_OK

    decision = decide_alert(reports, monitor, forced=args.force_mail)
    print_alert_reasons(decision, reports, threshold, color)
    if not decision.send:
        return EXIT_OK

    sinks = build_sinks(config)
    if not sinks:
        print("Test mode: no report sink is enabled, mail not sent.")
        return EXIT_OK

    display_name = monitor.friendly_name or system_info.hostname
    message = ReportMessage(
        subject=render_subject(display_name, system_info, forced=decision.forced),
        html_body=render_html_body(
            reports,
            system_info,
            display_name,
            threshold,
            prober.smartctl_available,
            report_mode(decision.forced, monitor.debug),
            report_time,
        ),
        recipients=config.mail.recipients,
        payload=payload,
    )
    policy = RetryPolicy.from_config(config.retry)
    sent = 0
    failed = False
    for sink in sinks:
        try:
            deliver_with_retry(sink, message, policy)
            sent += 1
        except DeliveryError as exc:
            print(_paint(f"ERROR Failed to send system report: {exc}", "bold_red", color), file=sys.stderr)
            failed = True
    if sent:
        print()
        print(f"{_paint('Summary:', 'bold_blue', color)} {sent} report(s) sent successfully.")
    if failed:
        print(_paint("Some errors occurred during alert processing.", "bold_red", color), file=sys.stderr)
        return EXIT_CONFIG_OR_DELIVERY
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
