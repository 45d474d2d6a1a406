"""
Exception types raised by the stream indexer.
"""


class IndexerError(Exception):
    """Base class for indexer errors."""


class ConfigurationError(IndexerError):
    """Required configuration is missing or invalid. Fatal at startup."""


class ChainConnectionError(IndexerError):
    """The RPC endpoint could not be reached or the subscription dropped."""


class ChainReadError(IndexerError):
    """An authoritative contract read or log query failed."""
