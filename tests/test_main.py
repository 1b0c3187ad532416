"""End-to-end tests for the command-line entry point with collaborators mocked."""
from __future__ import annotations

from dataclasses import replace
import json
from unittest.mock import Mock, patch

import pytest

from conftest import make_volume
from diskmon.config import ConfigError
from diskmon.delivery import DeliveryError
from diskmon.main import build_parser, main
from diskmon.models import HealthMethod, HealthResult, HealthStatus, SystemInfo
from diskmon.volumes import EnumerationResult

GB = 1024**3

SYSTEM = SystemInfo(
    os_name="Debian GNU/Linux 12 (bookworm)",
    os_version="6.1.0",
    architecture="64-bit",
    hostname="nas01",
    is_virtualized=False,
)


@pytest.fixture
def env(app_config):
    """Patch every collaborator of main() and expose the mocks."""
    volumes = [
        make_volume("/", total=100 * GB, available=50 * GB),
        make_volume("/data", device="/dev/sdb1", total=100 * GB, available=5 * GB),
    ]
    results = [
        HealthResult(status=HealthStatus.OK, method=HealthMethod.NATIVE_TOOL),
        HealthResult(status=HealthStatus.OK, method=HealthMethod.NATIVE_TOOL),
    ]
    prober = Mock(smartctl_available=True, smartctl_path="/usr/sbin/smartctl")
    sink = Mock()
    sink.name = "smtp"
    with patch("diskmon.main.configure_logging"), patch(
        "diskmon.main.load_config", return_value=app_config
    ) as load_config, patch("diskmon.main.get_system_info", return_value=SYSTEM), patch(
        "diskmon.main.select_prober", return_value=prober
    ), patch(
        "diskmon.main.enumerate_volumes", return_value=EnumerationResult(volumes=volumes)
    ) as enumerate_volumes, patch("diskmon.main.HealthCollector") as collector_cls, patch(
        "diskmon.main.build_sinks", return_value=[sink]
    ) as build_sinks, patch(
        "diskmon.main.deliver_with_retry", return_value=1
    ) as deliver:
        collector_cls.return_value.collect.return_value = results
        yield Mock(
            config=app_config,
            load_config=load_config,
            enumerate_volumes=enumerate_volumes,
            collector_cls=collector_cls,
            build_sinks=build_sinks,
            deliver=deliver,
            volumes=volumes,
            results=results,
        )


def test_parser_defaults():
    args = build_parser().parse_args([])
    assert args.config == "config/diskmon.cfg"
    assert args.verbose == 0
    assert not args.force_mail and not args.json and not args.smart
    assert args.smart_timeout is None


def test_parser_rejects_nonpositive_timeout():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["--smart-timeout", "0"])


def test_config_error_exits_2(env):
    env.load_config.side_effect = ConfigError("Missing or invalid required configuration keys: smtp_server")
    assert main([]) == 2
    env.enumerate_volumes.assert_not_called()


def test_no_volumes_exits_1(env):
    env.enumerate_volumes.return_value = EnumerationResult(volumes=[], unmatched_exclusions=["sdz"])
    assert main([]) == 1
    env.collector_cls.assert_not_called()


def test_low_space_sends_report(env, capsys):
    assert main([]) == 0

    out = capsys.readouterr().out
    assert "Alerts triggered for" in out
    assert "/data: low space (5.00%)" in out
    env.deliver.assert_called_once()
    message = env.deliver.call_args[0][1]
    assert message.subject == "System Disk Report - nas01 (Debian GNU/Linux 12 (bookworm) 6.1.0 64-bit)"
    assert message.recipients == ["ops@example.com", "oncall@example.com"]
    assert "<b>Disk 2: [LOW SPACE] /data</b>" in message.html_body
    assert message.payload["summary"]["low_space"] == 1


def test_healthy_run_sends_nothing(env, capsys):
    env.enumerate_volumes.return_value = EnumerationResult(volumes=env.volumes[:1])
    env.collector_cls.return_value.collect.return_value = env.results[:1]

    assert main([]) == 0

    assert "All disks are healthy" in capsys.readouterr().out
    env.deliver.assert_not_called()


def test_force_mail_uses_forced_subject(env):
    env.enumerate_volumes.return_value = EnumerationResult(volumes=env.volumes[:1])
    env.collector_cls.return_value.collect.return_value = env.results[:1]

    assert main(["--force-mail"]) == 0

    message = env.deliver.call_args[0][1]
    assert message.subject.startswith("[FORCED] ")
    assert "Mode: Forced Report" in message.html_body


def test_delivery_failure_exits_2(env, capsys):
    env.deliver.side_effect = DeliveryError("SMTP error: refused")

    assert main([]) == 2

    captured = capsys.readouterr()
    assert "Disk space report:" in captured.out
    assert "SMTP error: refused" in captured.err


def test_no_sinks_is_test_mode(env, capsys):
    env.build_sinks.return_value = []
    assert main([]) == 0
    assert "Test mode" in capsys.readouterr().out
    env.deliver.assert_not_called()


def test_json_mode_prints_payload_only(env, capsys):
    assert main(["--json"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["threshold_percent"] == 10.0
    assert payload["smartctl_available"] is True
    assert payload["alerts"] == ["/data: Low space (5.00%)"]
    env.deliver.assert_not_called()


def test_smart_mode_prints_details(env, capsys):
    assert main(["--smart"]) == 0
    assert "SMART Status Details:" in capsys.readouterr().out
    env.deliver.assert_not_called()


def test_dump_json_written(env, tmp_path):
    target = tmp_path / "report.json"
    assert main(["--dump-json", str(target)]) == 0
    assert json.loads(target.read_text())["summary"]["total"] == 2


def test_disabled_health_checks_skip_probes(env, app_config):
    config = replace(app_config, monitor=replace(app_config.monitor, health_check_enabled=False))
    env.load_config.return_value = config

    assert main(["--json"]) == 0

    env.collector_cls.assert_not_called()


def test_smart_timeout_override(env):
    main(["--smart-timeout", "5", "--json"])
    assert env.collector_cls.call_args[1]["timeout_s"] == 5.0
