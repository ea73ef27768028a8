"""Human-readable rendering of run settings."""

from __future__ import annotations

from datetime import timedelta

__all__ = ["format_interval", "format_health_port"]


def _fraction(value: int, unit: int) -> str:
    whole, rest = divmod(value, unit)
    if not rest:
        return str(whole)
    width = len(str(unit)) - 1
    return f"{whole}.{rest:0{width}d}".rstrip("0")


def _format_duration(interval: timedelta) -> str:
    micros = (interval.days * 86400 + interval.seconds) * 1_000_000 + interval.microseconds
    sign = "-" if micros < 0 else ""
    micros = abs(micros)
    if micros == 0:
        return "0s"
    if micros < 1000:
        return f"{sign}{micros}µs"
    if micros < 1_000_000:
        return f"{sign}{_fraction(micros, 1000)}ms"
    seconds, sub = divmod(micros, 1_000_000)
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    text = f"{_fraction(secs * 1_000_000 + sub, 1_000_000)}s"
    if hours or minutes:
        text = f"{minutes}m{text}"
    if hours:
        text = f"{hours}h{text}"
    return sign + text


def format_interval(interval: timedelta | float) -> str:
    """Render a check interval; zero means the updater runs once."""
    if not isinstance(interval, timedelta):
        interval = timedelta(seconds=interval)
    if interval == timedelta(0):
        return "once"
    return _format_duration(interval)


def format_health_port(port: int) -> str:
    """Render a health port; zero means the server is off."""
    return "off" if port == 0 else str(port)