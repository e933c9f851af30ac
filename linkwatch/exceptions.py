"""
Exception types raised across the link ingestion pipeline.
"""


class LinkwatchError(Exception):
    """Base class for all linkwatch errors."""


class ConfigurationError(LinkwatchError):
    """Required configuration is missing or invalid. Fatal at startup."""


class StorageError(LinkwatchError):
    """The link store could not complete a read or write."""


class SourceAccessError(LinkwatchError):
    """The message source refused access to a channel's history."""
