"""
tests/unit/test_backoff.py — backoff_delay
"""

import pytest

from container_herald.backoff import backoff_delay


@pytest.mark.parametrize("failures,expected", [
    (0, 30.0),
    (1, 30.0),
    (2, 60.0),
    (3, 120.0),
    (4, 240.0),
    (5, 300.0),
    (50, 300.0),
])
def test_doubles_up_to_cap(failures, expected):
    assert backoff_delay(30.0, failures, 300.0) == expected


def test_disabled_when_cap_is_zero():
    assert backoff_delay(30.0, 7, 0) == 30.0


def test_cap_below_interval_never_shortens_interval():
    assert backoff_delay(30.0, 3, 10.0) == 30.0
