"""
Error taxonomy for the escalation scheduler.

ValidationError       - malformed input, raised before any state change
NotFoundError         - unknown recipient / batch / schedule / reminder id
ExternalServiceError  - a channel call or send failed (isolated, non-fatal)
PersistenceError      - the durable store is unavailable (aborts the tick)
"""


class EscalationError(Exception):
    """Base class for all scheduler errors."""


class ValidationError(EscalationError):
    pass


class NotFoundError(EscalationError):
    pass


class ExternalServiceError(EscalationError):
    pass


class PersistenceError(EscalationError):
    pass
