"""Disk space and health monitor."""

from diskmon.collector import HealthCollector
from diskmon.config import AppConfig, load_config
from diskmon.probes import select_prober
from diskmon.report import decide_alert
from diskmon.schema import validate_payload
from diskmon.volumes import enumerate_volumes

__all__ = [
    "AppConfig",
    "HealthCollector",
    "decide_alert",
    "enumerate_volumes",
    "load_config",
    "select_prober",
    "validate_payload",
]
