from __future__ import annotations

from dataclasses import dataclass, replace
import configparser
import logging
import os
from pathlib import Path
import platform

DEFAULT_CONFIG_PATH = "config/diskmon.cfg"

SMTP_SECURITY_MODES = ("none", "starttls", "ssl")

ENV_OVERRIDES = {
    "DISKMON_SMTP_USER": "smtp_user",
    "DISKMON_SMTP_PASS": "smtp_pass",
    "DISKMON_EMAIL_FROM": "email_from",
    "DISKMON_EMAIL_TO": "email_to",
}

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when the configuration file is missing or invalid."""


@dataclass(frozen=True)
class MonitorConfig:
    threshold_percent: float
    health_check_enabled: bool
    smart_enabled: bool
    send_mail_on_unknown_status: bool
    debug: bool
    friendly_name: str | None
    excluded_disks: list[str]
    smart_timeout_s: float
    command_timeout_s: float
    smartctl_path: str


@dataclass(frozen=True)
class MailConfig:
    enabled: bool
    smtp_server: str
    smtp_port: int
    smtp_user: str
    smtp_pass: str
    email_from: str
    email_to: str
    smtp_security: str

    @property
    def recipients(self) -> list[str]:
        return _get_list(self.email_to)


@dataclass(frozen=True)
class MqttConfig:
    enabled: bool
    host: str
    port: int
    base_topic: str
    client_id: str
    username: str | None
    password: str | None
    qos: int
    retain: bool
    tls_enabled: bool
    ca_cert: str | None
    keepalive: int = 60


@dataclass(frozen=True)
class RetryConfig:
    initial_delay_s: float
    max_delay_s: float
    max_elapsed_s: float
    max_attempts: int


@dataclass(frozen=True)
class AppConfig:
    monitor: MonitorConfig
    mail: MailConfig
    mqtt: MqttConfig
    retry: RetryConfig


def _get_optional(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value if value else None


def _get_list(value: str | None) -> list[str]:
    if value is None:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _warn_if_world_readable(path: Path) -> None:
    if os.name != "posix":
        return
    try:
        mode = path.stat().st_mode
    except OSError:
        return
    if mode & 0o044:
        logger.warning(
            "Configuration file %s is readable by group/others. Consider: chmod 600 %s",
            path,
            path,
        )


def _apply_env_overrides(mail: MailConfig) -> MailConfig:
    changes: dict[str, str] = {}
    for env_name, field_name in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value is not None and value.strip():
            changes[field_name] = value
    return replace(mail, **changes) if changes else mail


def _exclusion_warnings(excluded: list[str], windows: bool) -> list[str]:
    warnings: list[str] = []
    for disk in excluded:
        if windows:
            if not (len(disk) == 2 and disk[1] == ":"):
                warnings.append(
                    f"Invalid excluded disk '{disk}': must be a drive letter like 'C:'"
                )
        elif "/" in disk:
            warnings.append(
                f"Invalid excluded disk '{disk}': must be a device name like 'sda' or 'nvme0n1'"
            )
    return warnings


def validate_config(config: AppConfig, windows: bool | None = None) -> list[str]:
    """Check an AppConfig for invalid values.

    Returns the list of non-fatal warnings. Raises ConfigError naming every
    invalid key at once.
    """
    if windows is None:
        windows = platform.system().lower() == "windows"
    problems: list[str] = []
    warnings: list[str] = []
    monitor = config.monitor
    mail = config.mail

    if not 1.0 <= monitor.threshold_percent <= 100.0:
        problems.append("threshold_percent (must be between 1.0 and 100.0)")
    if monitor.smart_timeout_s <= 0:
        problems.append("smart_timeout_s (must be positive)")
    if monitor.command_timeout_s <= 0:
        problems.append("command_timeout_s (must be positive)")

    if mail.enabled:
        if not mail.smtp_server.strip():
            problems.append("smtp_server")
        if not 1 <= mail.smtp_port <= 65535:
            problems.append("smtp_port (must be 1-65535)")
        if "@" not in mail.email_from:
            problems.append("email_from (must be a valid email address)")
        recipients = mail.recipients
        if not recipients:
            problems.append("email_to (must be a valid email address)")
        elif any("@" not in addr for addr in recipients):
            problems.append("email_to (one or more recipients appear invalid)")
    security = mail.smtp_security.lower()
    if security not in SMTP_SECURITY_MODES:
        problems.append("smtp_security (must be one of: none, starttls, ssl)")
    elif security == "none" and mail.enabled:
        warnings.append(
            "SMTP security is set to 'none'. This is insecure and not recommended."
        )

    if config.mqtt.enabled and not 0 <= config.mqtt.qos <= 2:
        problems.append("mqtt qos (must be 0, 1 or 2)")

    retry = config.retry
    if retry.max_attempts < 1:
        problems.append("max_attempts (must be at least 1)")
    if retry.initial_delay_s < 0 or retry.max_delay_s < retry.initial_delay_s:
        problems.append("retry delays (need 0 <= initial_delay_s <= max_delay_s)")

    if monitor.debug:
        warnings.append(
            "Debug mode is enabled. This may expose sensitive information in logs."
        )
    if not monitor.health_check_enabled:
        warnings.append(
            "Disk health checks are disabled. Only free space will be monitored."
        )
    if monitor.send_mail_on_unknown_status:
        warnings.append(
            "send_mail_on_unknown_status is enabled. Reports will be sent even if "
            "SMART status is unknown."
        )
    warnings.extend(_exclusion_warnings(monitor.excluded_disks, windows))

    if problems:
        raise ConfigError(
            "Missing or invalid required configuration keys: " + ", ".join(problems)
        )
    return warnings


def load_config(path: str | Path) -> AppConfig:
    path = Path(path)
    parser = configparser.ConfigParser(inline_comment_prefixes=(";", "#"))
    try:
        read_files = parser.read(path, encoding="utf-8")
    except configparser.Error as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not read_files:
        raise ConfigError(f"Configuration file not found: {path}")
    _warn_if_world_readable(path)

    try:
        monitor = MonitorConfig(
            threshold_percent=parser.getfloat("monitor", "threshold_percent", fallback=10.0),
            health_check_enabled=parser.getboolean(
                "monitor", "health_check_enabled", fallback=True
            ),
            smart_enabled=parser.getboolean("monitor", "smart_enabled", fallback=True),
            send_mail_on_unknown_status=parser.getboolean(
                "monitor", "send_mail_on_unknown_status", fallback=False
            ),
            debug=parser.getboolean("monitor", "debug", fallback=False),
            friendly_name=_get_optional(
                parser.get("monitor", "friendly_name", fallback=None)
            ),
            excluded_disks=_get_list(parser.get("monitor", "excluded_disks", fallback=None)),
            smart_timeout_s=parser.getfloat("monitor", "smart_timeout_s", fallback=30.0),
            command_timeout_s=parser.getfloat("monitor", "command_timeout_s", fallback=20.0),
            smartctl_path=parser.get("monitor", "smartctl_path", fallback="smartctl"),
        )

        mail = MailConfig(
            enabled=parser.getboolean("mail", "enabled", fallback=True),
            smtp_server=parser.get("mail", "smtp_server", fallback=""),
            smtp_port=parser.getint("mail", "smtp_port", fallback=587),
            smtp_user=parser.get("mail", "smtp_user", fallback=""),
            smtp_pass=parser.get("mail", "smtp_pass", fallback=""),
            email_from=parser.get("mail", "email_from", fallback=""),
            email_to=parser.get("mail", "email_to", fallback=""),
            smtp_security=parser.get("mail", "smtp_security", fallback="starttls").strip(),
        )

        mqtt = MqttConfig(
            enabled=parser.getboolean("mqtt", "enabled", fallback=False),
            host=parser.get("mqtt", "host", fallback="localhost"),
            port=parser.getint("mqtt", "port", fallback=1883),
            base_topic=parser.get("mqtt", "base_topic", fallback="diskmon/report"),
            client_id=parser.get("mqtt", "client_id", fallback="diskmon"),
            username=_get_optional(parser.get("mqtt", "username", fallback=None)),
            password=_get_optional(parser.get("mqtt", "password", fallback=None)),
            qos=parser.getint("mqtt", "qos", fallback=1),
            retain=parser.getboolean("mqtt", "retain", fallback=True),
            tls_enabled=parser.getboolean("mqtt", "tls", fallback=False),
            ca_cert=_get_optional(parser.get("mqtt", "ca_cert", fallback=None)),
            keepalive=parser.getint("mqtt", "keepalive", fallback=60),
        )

        retry = RetryConfig(
            initial_delay_s=parser.getfloat("retry", "initial_delay_s", fallback=1.0),
            max_delay_s=parser.getfloat("retry", "max_delay_s", fallback=30.0),
            max_elapsed_s=parser.getfloat("retry", "max_elapsed_s", fallback=300.0),
            max_attempts=parser.getint("retry", "max_attempts", fallback=3),
        )
    except ValueError as exc:
        raise ConfigError(f"Invalid value in config file {path}: {exc}") from exc

    config = AppConfig(
        monitor=monitor,
        mail=_apply_env_overrides(mail),
        mqtt=mqtt,
        retry=retry,
    )
    warnings = validate_config(config)
    if warnings:
        logger.warning("Configuration warnings: %s", " | ".join(warnings))
    return config
