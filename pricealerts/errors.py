"""
Exception taxonomy for rule evaluation and alert delivery.

DataUnavailable is deliberately not here: an unresolvable field is a value
(see rules/fields.py), not an error.
"""


class AlertEngineError(Exception):
    """Base class for engine errors."""


class ValidationError(AlertEngineError):
    """Malformed condition tree (field, operator or arity). Raised at authoring time."""


class TypeMismatchError(AlertEngineError):
    """Operator cannot be applied to the resolved value or literal."""


class ChannelError(AlertEngineError):
    """
    Delivery failure on a single channel.

    Args:
        message: Human-readable description
        retryable: False for permanent failures (suppressed address,
                   expired subscription, missing recipient)
    """

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class ConcurrentUpdateError(AlertEngineError):
    """Optimistic version check kept failing for a rule row."""


class StoreTimeoutError(AlertEngineError):
    """A collaborator call did not finish within its timeout."""
