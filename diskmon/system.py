"""Host identity used in report headers and the virtualization advisory."""
from __future__ import annotations

import json
import logging
import platform
import socket

import psutil

from diskmon.commands import read_text, run_command
from diskmon.models import SystemInfo

CPUINFO_PATH = "/proc/cpuinfo"

HYPERVISOR_MARKERS = (
    "virtual",
    "vmware",
    "kvm",
    "qemu",
    "xen",
    "hyper-v",
    "virtualbox",
    "bochs",
    "parallels",
)

ARCHITECTURES = {
    "x86_64": "64-bit",
    "amd64": "64-bit",
    "i386": "32-bit",
    "i686": "32-bit",
    "x86": "32-bit",
    "aarch64": "ARM64",
    "arm64": "ARM64",
    "armv7l": "ARM32",
    "armv6l": "ARM32",
    "arm": "ARM32",
}

logger = logging.getLogger(__name__)


def architecture_label(machine: str) -> str:
    return ARCHITECTURES.get(machine.lower(), "Unknown")


def os_name(system: str) -> str:
    if system.lower() == "linux":
        try:
            release = platform.freedesktop_os_release()
        except OSError:
            logger.debug("No os-release file found.")
            return "Linux"
        return release.get("PRETTY_NAME") or release.get("NAME") or "Linux"
    return system or "Unknown"


def os_version(system: str) -> str:
    if system.lower() == "windows":
        return platform.version() or "Unknown"
    return platform.release() or "Unknown"


def _linux_virtualized() -> bool:
    cpuinfo = read_text(CPUINFO_PATH)
    return bool(cpuinfo) and "hypervisor" in cpuinfo


def _windows_virtualized() -> bool:
    result = run_command(
        [
            "powershell",
            "-NoProfile",
            "-Command",
            "Get-WmiObject Win32_ComputerSystem | Select-Object Model, Manufacturer | ConvertTo-Json",
        ]
    )
    if result is not None and result.ok:
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError:
            logger.debug("Failed to parse Win32_ComputerSystem JSON.")
        else:
            if isinstance(data, list):
                data = data[0] if data else {}
            if isinstance(data, dict):
                identity = f"{data.get('Manufacturer') or ''} {data.get('Model') or ''}".lower()
                if any(marker in identity for marker in HYPERVISOR_MARKERS):
                    return True
    # Very small VMs are the common case when WMI says nothing useful.
    return (psutil.cpu_count() or 0) < 2


def is_virtualized(system: str | None = None) -> bool:
    system = (system or platform.system()).lower()
    if system == "linux":
        return _linux_virtualized()
    if system == "windows":
        return _windows_virtualized()
    return False


def get_system_info() -> SystemInfo:
    system = platform.system()
    info = SystemInfo(
        os_name=os_name(system),
        os_version=os_version(system),
        architecture=architecture_label(platform.machine()),
        hostname=socket.gethostname() or "Unknown",
        is_virtualized=is_virtualized(system),
    )
    logger.debug("System info: %s", info)
    return info
