"""Enumerate mounted volumes and select the ones worth monitoring."""
from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
import platform

import psutil

from diskmon.models import Volume

UNIX_SKIPPED_PREFIXES = ("/media/", "/mnt/", "/run/media/")
WINDOWS_SKIPPED_PREFIXES = ("\\\\", "A:", "B:")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnumerationResult:
    volumes: list[Volume]
    unmatched_exclusions: list[str] = field(default_factory=list)


def _is_windows() -> bool:
    return platform.system().lower() == "windows"


def is_candidate(mount_point: str, total_bytes: int, windows: bool) -> bool:
    """Removable, network and zero-capacity volumes are never monitored."""
    if total_bytes <= 0:
        return False
    if windows:
        return not mount_point.upper().startswith(WINDOWS_SKIPPED_PREFIXES)
    return not mount_point.startswith(UNIX_SKIPPED_PREFIXES)


def display_name_for(mount_point: str, windows: bool) -> str:
    if windows and len(mount_point) >= 2 and mount_point[1] == ":":
        return f"Drive {mount_point[0].upper()}:"
    return mount_point


def _matches_exclusion(volume: Volume, exclusion: str, windows: bool) -> bool:
    if windows:
        return exclusion.upper() in volume.display_name.upper()
    return exclusion in (volume.device, os.path.basename(volume.device))


def apply_exclusions(
    volumes: list[Volume], exclusions: list[str], windows: bool
) -> tuple[list[Volume], list[str]]:
    """Drop excluded volumes.

    Drive-letter platforms match the exclusion as a case-insensitive
    substring of the display label; device-path platforms require exact
    equality with the device (full path or base name). Returns the kept
    volumes and the exclusions that matched nothing.
    """
    entries = [ex.strip() for ex in exclusions if ex.strip()]
    found: set[str] = set()
    kept: list[Volume] = []
    for volume in volumes:
        matched = [ex for ex in entries if _matches_exclusion(volume, ex, windows)]
        if matched:
            found.update(matched)
            logger.debug(
                "Excluding volume %s (display name %s, device %s).",
                volume.mount_point,
                volume.display_name,
                volume.device,
            )
            continue
        kept.append(volume)
    unmatched = [ex for ex in entries if ex not in found]
    return kept, unmatched


def list_mounted_volumes(windows: bool | None = None) -> list[Volume]:
    if windows is None:
        windows = _is_windows()
    volumes: list[Volume] = []
    partitions = psutil.disk_partitions(all=False)
    logger.debug("psutil reported %d partitions.", len(partitions))
    for part in partitions:
        try:
            usage = psutil.disk_usage(part.mountpoint)
        except OSError:
            logger.debug("Skipping volume at %s (unreadable).", part.mountpoint)
            continue
        total = int(usage.total)
        if not is_candidate(part.mountpoint, total, windows):
            logger.debug("Skipping volume at %s (not a candidate).", part.mountpoint)
            continue
        volumes.append(
            Volume(
                mount_point=part.mountpoint,
                device=part.device,
                display_name=display_name_for(part.mountpoint, windows),
                file_system=part.fstype or "Unknown",
                total_bytes=total,
                available_bytes=int(usage.free),
            )
        )
    return volumes


def enumerate_volumes(
    exclusions: list[str], windows: bool | None = None
) -> EnumerationResult:
    if windows is None:
        windows = _is_windows()
    volumes, unmatched = apply_exclusions(
        list_mounted_volumes(windows), exclusions, windows
    )
    for index, volume in enumerate(volumes):
        logger.debug(
            "Monitored volume %d: mount_point=%s display_name=%s fs=%s total=%d available=%d",
            index,
            volume.mount_point,
            volume.display_name,
            volume.file_system,
            volume.total_bytes,
            volume.available_bytes,
        )
    return EnumerationResult(volumes=volumes, unmatched_exclusions=unmatched)
