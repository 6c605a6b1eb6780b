"""Exception hierarchy for epic isolation.

Expected failures (bad input, collisions, git errors) are returned as
result models, not raised. These exceptions cover the rest.
"""


class EpicIsolationError(Exception):
    """Base class for errors raised by this package."""

    pass


class ConfigError(EpicIsolationError):
    """Settings file exists but is malformed or fails validation."""

    pass


class StoreError(EpicIsolationError):
    """The state store could not be read or written."""

    pass
