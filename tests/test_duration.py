"""
Tests for Twitch duration parsing.
"""

import pytest

from utils.duration import parse_duration_to_seconds


@pytest.mark.parametrize(
    "duration, expected",
    [
        ("1h2m3s", 3723),
        ("45m12s", 2712),
        ("30s", 30),
        ("2h", 7200),
        ("10m", 600),
        ("1h30s", 3630),
        (" 3m ", 180),
        ("", 0),
        ("abc", 0),
        ("1h2x", 0),
        ("s", 0),
    ],
)
def test_parse_duration(duration, expected):
    assert parse_duration_to_seconds(duration) == expected
