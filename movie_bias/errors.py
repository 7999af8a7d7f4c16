from __future__ import annotations


class MovieBiasError(ValueError):
    """Base class for input and configuration problems raised by movie_bias."""


class SchemaError(MovieBiasError):
    pass


class EmptyPartitionError(MovieBiasError):
    pass


class InvalidConfigurationError(MovieBiasError):
    pass
