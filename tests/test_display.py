from datetime import timedelta

import pytest

from repogit.display import format_health_port, format_interval


@pytest.mark.parametrize(
    "interval, expected",
    [
        (timedelta(0), "once"),
        (timedelta(seconds=1), "1s"),
        (timedelta(minutes=1), "1m0s"),
        (timedelta(hours=1), "1h0m0s"),
        (timedelta(hours=1, minutes=30), "1h30m0s"),
        (timedelta(hours=24), "24h0m0s"),
    ],
)
def test_format_interval(interval, expected):
    assert format_interval(interval) == expected


def test_format_interval_accepts_seconds():
    assert format_interval(0) == "once"
    assert format_interval(120) == "2m0s"


def test_format_interval_subsecond_and_fractional():
    assert format_interval(timedelta(milliseconds=250)) == "250ms"
    assert format_interval(timedelta(milliseconds=1500)) == "1.5s"


@pytest.mark.parametrize(
    "port, expected",
    [(0, "off"), (8080, "8080"), (9090, "9090")],
)
def test_format_health_port(port, expected):
    assert format_health_port(port) == expected