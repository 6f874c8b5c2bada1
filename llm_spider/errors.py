from __future__ import annotations


class SpiderError(Exception):
    """Base class for errors that escape the crawl boundary."""


class ConfigError(SpiderError, ValueError):
    """Invalid or incomplete configuration, detected before any network activity."""


class ProviderUnavailable(SpiderError):
    """The seed search provider could not produce results."""


class ModelUnavailable(SpiderError):
    """The link-selection model could not be reached or returned garbage."""
