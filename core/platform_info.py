"""Attune — Platform Information

Environment tag and username lookup. Both are read once per process
through OnceCell.
"""

from __future__ import annotations
import getpass
import logging
import os
import sys
from typing import Mapping, Optional

from models.models import Environment

logger = logging.getLogger("attune.platform_info")

UNKNOWN_USER = "unknown_user"


def _linux_desktop(environ: Mapping[str, str]) -> Optional[str]:
    for var in ("XDG_CURRENT_DESKTOP", "DESKTOP_SESSION"):
        value = environ.get(var)
        if value:
            return value
    return None


def detect_environment(platform: Optional[str] = None,
                       environ: Optional[Mapping[str, str]] = None) -> Environment:
    platform = sys.platform if platform is None else platform
    environ = os.environ if environ is None else environ

    if platform == "darwin":
        return Environment.MACOS
    if platform.startswith("win"):
        return Environment.WINDOWS
    if platform.startswith("linux"):
        desktop = _linux_desktop(environ)
        if desktop is None:
            return Environment.LINUX_OTHER
        if "gnome" in desktop.lower():
            return Environment.GNOME
        logger.info(f"Desktop {desktop!r} has no command templates; commands disabled")
        return Environment.LINUX_OTHER
    return Environment.UNKNOWN


def lookup_username() -> str:
    try:
        username = getpass.getuser().strip()
    except (KeyError, OSError, ImportError) as e:
        # getuser() raises when neither env vars nor the passwd entry exist
        logger.warning(f"Username lookup failed: {type(e).__name__}: {e}")
        return UNKNOWN_USER
    return username or UNKNOWN_USER


async def async_detect_environment() -> Environment:
    return detect_environment()


async def async_lookup_username() -> str:
    return lookup_username()
