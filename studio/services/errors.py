"""Error taxonomy shared by the ledger, the orchestrator and the HTTP layer.

Every failure that reaches a caller is a ``GenerationError``. ``code`` is a
stable machine-readable identifier; ``str(exc)`` is safe to show to users.
``refunded`` tells the caller whether a reservation existed and has already
been released when the error was raised.
"""
from __future__ import annotations


class GenerationError(Exception):
    code = 'unknown'
    default_message = 'Generation failed'

    def __init__(self, message: str | None = None, *, refunded: bool = False) -> None:
        super().__init__(message or self.default_message)
        self.refunded = refunded


class InsufficientFunds(GenerationError):
    code = 'insufficient_funds'

    def __init__(self, required: int, available: int) -> None:
        self.required = int(required)
        self.available = max(0, int(available))
        super().__init__(
            f'Insufficient tickets. You have {self.available} available, '
            f'but this generation needs {self.required}.'
        )


class NoCreditsProvisioned(GenerationError):
    code = 'no_credits'
    default_message = 'No tickets found. Please purchase tickets first.'


class TooManyActiveJobs(GenerationError):
    code = 'too_many_active_jobs'

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f'You already have {limit} generations in progress. Wait for one to finish.')


class MaintenanceMode(GenerationError):
    code = 'maintenance'
    default_message = 'Generation is offline for maintenance'


class InvalidRequest(GenerationError):
    code = 'invalid_request'
    default_message = 'Invalid generation request'


class JobNotFound(GenerationError):
    code = 'job_not_found'
    default_message = 'Generation job not found'


class ProviderRejected(GenerationError):
    code = 'provider_rejected'
    default_message = 'The provider rejected this request'


class ContentPolicyRejected(ProviderRejected):
    code = 'content_policy'
    default_message = 'Sensitive content detected - request blocked'


class InvalidParameters(ProviderRejected):
    code = 'invalid_parameters'
    default_message = 'The provider rejected the generation parameters'


class ProviderUnavailable(GenerationError):
    code = 'provider_unavailable'
    default_message = 'The generation provider is unavailable. Please try again.'


class ProviderTimeout(GenerationError):
    code = 'timeout'
    default_message = 'Generation timed out. Please try again.'


class UnknownProviderError(GenerationError):
    code = 'unknown'


class PersistenceFailure(GenerationError):
    code = 'persistence_failure'
    default_message = 'The result could not be saved. Your tickets were not charged.'


class TrackingFailure(GenerationError):
    code = 'tracking_failure'
    default_message = 'Job tracking failed'
