"""Admin timezone resolution.

Every period and due computation for a challenge runs in a single IANA zone,
the "admin timezone". This module picks that zone from the challenge's due
settings and never raises: anything unusable falls back to the process-wide
default zone.
"""
import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..config import DEFAULT_TIMEZONE
from ..models.challenge import Challenge, TimezoneMode

logger = logging.getLogger(__name__)

FALLBACK_ZONE = "UTC"


def is_valid_zone(name: Optional[str]) -> bool:
    if not isinstance(name, str) or not name.strip():
        return False
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return False
    return True


def _zone_from_localtime_link() -> Optional[str]:
    localtime = Path("/etc/localtime")
    try:
        target = str(localtime.resolve())
    except OSError:
        return None
    marker = "zoneinfo/"
    if marker in target:
        return target.split(marker, 1)[1]
    return None


def _zone_from_timezone_file() -> Optional[str]:
    try:
        return Path("/etc/timezone").read_text(encoding="utf-8").strip() or None
    except OSError:
        return None


@lru_cache(maxsize=1)
def default_zone() -> str:
    """The zone used when a challenge carries no usable zone of its own.

    Resolved once per process: the DEFAULT_TIMEZONE setting, then the host's
    local zone. UTC is used only when neither can be determined.
    """
    candidates = [
        DEFAULT_TIMEZONE,
        os.environ.get("TZ", "").lstrip(":") or None,
        _zone_from_timezone_file(),
        _zone_from_localtime_link(),
    ]
    for candidate in candidates:
        if is_valid_zone(candidate):
            logger.info("Default admin timezone resolved to %s", candidate)
            return candidate
    logger.warning("Could not determine the local timezone, defaulting to %s", FALLBACK_ZONE)
    return FALLBACK_ZONE


@lru_cache(maxsize=256)
def _warn_unusable_zone(value: str, challenge_id: Optional[int]) -> None:
    logger.warning(
        "Challenge %s has unusable timezone %r, falling back to %s",
        challenge_id, value, default_zone(),
    )


def get_zone(name: Optional[str]) -> ZoneInfo:
    """ZoneInfo for `name`, or for the default zone when `name` is unusable."""
    if is_valid_zone(name):
        return ZoneInfo(name)
    if name:
        _warn_unusable_zone(str(name), None)
    return ZoneInfo(default_zone())


def resolve_admin_timezone(challenge: Challenge) -> str:
    mode = challenge.timezone_mode
    zone = challenge.timezone

    if zone and is_valid_zone(zone):
        # fixedZone uses the configured zone verbatim; the local modes use the
        # zone captured from the creating device
        return zone

    if zone:
        _warn_unusable_zone(str(zone), challenge.challenge_id)
    elif mode == TimezoneMode.FIXED_ZONE:
        logger.debug("Challenge %s is fixedZone without a zone", challenge.challenge_id)
    return default_zone()
