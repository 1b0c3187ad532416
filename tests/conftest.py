"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import pytest

from diskmon.commands import CommandResult
from diskmon.config import AppConfig, MailConfig, MonitorConfig, MqttConfig, RetryConfig
from diskmon.models import Volume


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "windows: mark test as Windows-specific"
    )
    config.addinivalue_line(
        "markers", "linux: mark test as Linux-specific"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as integration test"
    )


def make_volume(
    mount_point: str = "/",
    device: str = "/dev/sda1",
    total: int = 100 * 1024**3,
    available: int = 50 * 1024**3,
    display_name: str | None = None,
    file_system: str = "ext4",
) -> Volume:
    return Volume(
        mount_point=mount_point,
        device=device,
        display_name=display_name or mount_point,
        file_system=file_system,
        total_bytes=total,
        available_bytes=available,
    )


class FakeRunner:
    """Stand-in for run_command keyed on the command's first words.

    Responses are matched by prefix; unmatched commands behave like a
    missing binary and return None. Every command is recorded.
    """

    def __init__(self, responses: dict[tuple[str, ...], CommandResult | None] | None = None):
        self.responses = dict(responses or {})
        self.calls: list[list[str]] = []

    def __call__(self, command: list[str]) -> CommandResult | None:
        self.calls.append(list(command))
        for prefix, response in self.responses.items():
            if tuple(command[: len(prefix)]) == prefix:
                return response
        return None


def ok(stdout: str = "", returncode: int = 0, stderr: str = "") -> CommandResult:
    return CommandResult(returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def monitor_config():
    return MonitorConfig(
        threshold_percent=10.0,
        health_check_enabled=True,
        smart_enabled=True,
        send_mail_on_unknown_status=False,
        debug=False,
        friendly_name=None,
        excluded_disks=[],
        smart_timeout_s=30.0,
        command_timeout_s=20.0,
        smartctl_path="smartctl",
    )


@pytest.fixture
def app_config(monitor_config):
    return AppConfig(
        monitor=monitor_config,
        mail=MailConfig(
            enabled=True,
            smtp_server="smtp.example.com",
            smtp_port=587,
            smtp_user="user",
            smtp_pass="secret",
            email_from="diskmon@example.com",
            email_to="ops@example.com, oncall@example.com",
            smtp_security="starttls",
        ),
        mqtt=MqttConfig(
            enabled=False,
            host="localhost",
            port=1883,
            base_topic="diskmon/report",
            client_id="diskmon",
            username=None,
            password=None,
            qos=1,
            retain=True,
            tls_enabled=False,
            ca_cert=None,
        ),
        retry=RetryConfig(
            initial_delay_s=1.0,
            max_delay_s=30.0,
            max_elapsed_s=300.0,
            max_attempts=3,
        ),
    )

