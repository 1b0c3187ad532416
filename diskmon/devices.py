"""Map mounted volumes to the physical devices that back them."""
from __future__ import annotations

from collections.abc import Callable
from enum import Enum
import logging
import re

from diskmon.commands import CommandResult, read_text

MOUNT_TABLE_PATH = "/proc/mounts"
RAID_MARKERS = ("md", "dm-")

_MMC_BASE = re.compile(r"^(mmcblk\d+)")
_ALPHA_RUN = re.compile(r"^([a-z]+)")
_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")

# Locate the physical disk behind a drive letter. Prints the disk index or a
# *_NOT_FOUND / ERROR: sentinel.
WINDOWS_DISK_INDEX_SCRIPT = r"""
try {{
    $logicalDisk = Get-WmiObject -Class Win32_LogicalDisk -Filter "DeviceID='{letter}:'"
    if (-not $logicalDisk) {{ Write-Output "LOGICAL_DISK_NOT_FOUND"; exit 1 }}
    $partition = Get-WmiObject -Query "ASSOCIATORS OF {{Win32_LogicalDisk.DeviceID='{letter}:'}} WHERE AssocClass=Win32_LogicalDiskToPartition"
    if (-not $partition) {{ Write-Output "PARTITION_NOT_FOUND"; exit 1 }}
    $physicalDisk = Get-WmiObject -Query "ASSOCIATORS OF {{Win32_DiskPartition.DeviceID='$($partition.DeviceID)'}} WHERE AssocClass=Win32_DiskDriveToDiskPartition"
    if (-not $physicalDisk) {{ Write-Output "PHYSICAL_DISK_NOT_FOUND"; exit 1 }}
    Write-Output $physicalDisk.Index
}}
catch {{
    Write-Output "ERROR: $($_.Exception.Message)"
    exit 1
}}
"""

logger = logging.getLogger(__name__)


class DeviceFamily(str, Enum):
    MMC = "mmc"
    NVME = "nvme"
    ATA = "ata"
    OTHER = "other"


def _unescape_mount_field(value: str) -> str:
    return _OCTAL_ESCAPE.sub(lambda match: chr(int(match.group(1), 8)), value)


def read_mount_table(path: str = MOUNT_TABLE_PATH) -> list[tuple[str, str]]:
    """Return (source, mount point) pairs from the live mount table."""
    content = read_text(path)
    if content is None:
        logger.debug("Mount table %s is unreadable.", path)
        return []
    entries: list[tuple[str, str]] = []
    for line in content.splitlines():
        parts = line.split()
        if len(parts) >= 2:
            entries.append((parts[0], _unescape_mount_field(parts[1])))
    return entries


def resolve_mount_device(
    mount_point: str, mounts: list[tuple[str, str]] | None = None
) -> str | None:
    if mounts is None:
        mounts = read_mount_table()
    for source, target in mounts:
        if target == mount_point:
            if source.startswith("/dev/"):
                return source
            logger.debug(
                "Mount %s is backed by %s, not a block device.", mount_point, source
            )
            return None
    logger.debug("Could not determine device for mount point: %s", mount_point)
    return None


def device_name(device_path: str) -> str:
    return device_path.rstrip("/").rsplit("/", 1)[-1]


def device_family(device_path: str) -> DeviceFamily:
    name = device_name(device_path)
    if name.startswith("mmcblk"):
        return DeviceFamily.MMC
    if name.startswith("nvme"):
        return DeviceFamily.NVME
    if name.startswith(("sd", "hd", "vd", "xvd")):
        return DeviceFamily.ATA
    return DeviceFamily.OTHER


def base_device(device_path: str) -> str:
    """Strip the partition suffix from a device path.

    /dev/sda1 -> /dev/sda, /dev/nvme0n1p2 -> /dev/nvme0n1,
    /dev/mmcblk0p1 -> /dev/mmcblk0. Unknown families are returned as-is.
    """
    name = device_name(device_path)
    family = device_family(device_path)
    if family is DeviceFamily.MMC:
        match = _MMC_BASE.match(name)
        base = match.group(1) if match else name
    elif family is DeviceFamily.NVME:
        base = name.split("p", 1)[0]
    elif family is DeviceFamily.ATA:
        match = _ALPHA_RUN.match(name)
        base = match.group(1) if match else name
    else:
        return device_path
    return f"/dev/{base}"


def is_raid_device(device_path: str) -> bool:
    return any(marker in device_path for marker in RAID_MARKERS)


def drive_letter(mount_point: str) -> str | None:
    if len(mount_point) >= 2 and mount_point[1] == ":" and mount_point[0].isalpha():
        return mount_point[0].upper()
    return None


def resolve_windows_disk_index(
    letter: str, runner: Callable[[list[str]], CommandResult | None]
) -> int | None:
    script = WINDOWS_DISK_INDEX_SCRIPT.format(letter=letter)
    result = runner(["powershell", "-NoProfile", "-Command", script])
    if result is None or not result.ok:
        logger.debug("Physical disk lookup failed for drive %s:", letter)
        return None
    output = result.stdout.strip()
    if output.startswith("ERROR") or "NOT_FOUND" in output:
        logger.debug("Physical disk lookup for drive %s: returned %s", letter, output)
        return None
    try:
        return int(output.splitlines()[-1].strip())
    except (IndexError, ValueError):
        logger.debug("Unexpected physical disk index for drive %s: %r", letter, output)
        return None
