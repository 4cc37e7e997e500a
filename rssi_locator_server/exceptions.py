"""Exception hierarchy for rssi_locator_server."""

from __future__ import annotations


class LocatorError(Exception):
    """Base exception for all locator errors."""


class ConfigError(LocatorError):
    """Invalid, unreadable or out-of-range configuration."""


class StationRegistryError(ConfigError):
    """Malformed station table (missing columns, duplicate ids, bad values)."""
