"""
Twitch duration parsing (``"1h2m3s"`` → seconds).
"""

from __future__ import annotations

import re

_DURATION_RE = re.compile(r"^(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?$")


def parse_duration_to_seconds(duration: str) -> int:
    """
    Convert Twitch's compact duration (``"1h2m3s"``, ``"45m12s"``, ``"30s"``)
    to seconds.  Empty or unparseable input yields 0.
    """
    if not duration:
        return 0
    match = _DURATION_RE.match(duration.strip())
    if not match:
        return 0
    hours, minutes, seconds = (int(part) if part else 0 for part in match.groups())
    return hours * 3600 + minutes * 60 + seconds
