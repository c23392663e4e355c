"""
Engine exceptions.

Validation, authorization, not-found and state errors are raised before
any write. WriteFailure and ReconciliationRequired can happen after
partial side effects.
"""


class YomiError(Exception):
    """Base exception for the betting core."""


class ValidationError(YomiError):
    """Bad input. Nothing was written."""


class InvalidStake(ValidationError):
    pass


class InvalidSelection(ValidationError):
    pass


class IncompleteResolution(ValidationError):
    pass


class AuthorizationError(YomiError):
    """No session, or not allowed to do this."""


class NotAuthenticated(AuthorizationError):
    pass


class AdminRequired(AuthorizationError):
    pass


class NotFound(YomiError):
    pass


class MarketNotFound(NotFound):
    pass


class ProfileNotFound(NotFound):
    pass


class StateError(YomiError):
    """The records are not in a state that allows the operation."""


class MarketClosed(StateError):
    pass


class MarketNotClosed(StateError):
    pass


class AlreadyBet(StateError):
    pass


class OutcomesMissing(StateError):
    pass


class InsufficientBalance(StateError):
    pass


class ResolutionInProgress(StateError):
    pass


class WriteFailure(YomiError):
    """A write was rejected after earlier writes succeeded."""


class ReconciliationRequired(YomiError):
    """A compensating write failed. State must be repaired by hand."""
