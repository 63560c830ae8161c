"""Exception hierarchy for rankgrid services."""


class RankGridError(Exception):
    """Base class for all rankgrid errors."""


class ConfigurationError(RankGridError, ValueError):
    """Invalid geometry, schedule parameters, or settings."""


class NotFoundError(RankGridError, LookupError):
    """A requested config, term, schedule, or account does not exist."""


class RunInProgressError(RankGridError):
    """A run for the config is in flight, so the operation must wait."""


class ProviderError(RankGridError):
    """Non-retryable failure returned by the ranking provider."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Timeout, transport failure, or 5xx/429 -- safe to retry."""


class QuotaExceededError(ProviderError):
    """Provider-side credit or billing exhaustion -- never retried."""


class ScheduleConflictError(RankGridError):
    """An individual schedule collides with an active unified schedule."""


class InvalidScheduleTransition(ScheduleConflictError):
    """The unified schedule is not in a state that allows the operation."""

    def __init__(self, unified_id: int, state: str, action: str):
        super().__init__(
            f"Unified schedule {unified_id} cannot {action} while {state}"
        )
        self.unified_id = unified_id
        self.state = state
        self.action = action
