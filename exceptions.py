"""Error types raised by the price watch pipeline."""


class PriceWatchError(Exception):
    """Base class for all price watch errors."""

    kind = "error"


class ConfigError(PriceWatchError):
    """Targets file missing, unreadable or malformed."""

    kind = "config"


class FetchError(PriceWatchError):
    """Page could not be fetched (network error, timeout, bad status)."""

    kind = "fetch"


class ExtractionError(PriceWatchError):
    """Selector matched nothing, or matched only empty text."""

    kind = "extraction"


class NormalizationError(PriceWatchError):
    """Price text could not be turned into a number."""

    kind = "normalization"


class StorageError(PriceWatchError):
    """Database create/query/delete failed."""

    kind = "storage"
