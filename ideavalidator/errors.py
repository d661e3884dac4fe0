"""Error taxonomy shared by the services and the HTTP layer.

Every error that may cross into an HTTP response is an ``AppError`` carrying
a stable status code and a machine-readable ``code``.
"""
from typing import List, Optional


class AppError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None, details=None):
        self.message = message or self.message
        self.details = details
        super().__init__(self.message)


class ValidationFailed(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"
    message = "Validation failed"


# --- Auth ---
class AuthError(AppError):
    status_code = 401
    code = "AUTH_ERROR"
    message = "Authentication failed"


class MissingToken(AuthError):
    status_code = 401
    code = "MISSING_TOKEN"
    message = "Authentication token required"


class ExpiredToken(AuthError):
    status_code = 403
    code = "TOKEN_EXPIRED"
    message = "Your session has expired. Please login again."


class InvalidToken(AuthError):
    status_code = 403
    code = "INVALID_TOKEN"
    message = "Invalid authentication token"


class InvalidCredentials(AuthError):
    status_code = 401
    code = "INVALID_CREDENTIALS"
    message = "Invalid credentials"


# --- Accounts / credits ---
class InsufficientCredits(AppError):
    status_code = 402
    code = "INSUFFICIENT_CREDITS"
    message = "Insufficient credits. Please upgrade or purchase more."


class UserNotFound(AppError):
    status_code = 404
    code = "USER_NOT_FOUND"
    message = "User account not found"


class UserAlreadyExists(AppError):
    status_code = 409
    code = "USER_EXISTS"
    message = "User already exists"


class ReportNotFound(AppError):
    status_code = 404
    code = "REPORT_NOT_FOUND"
    message = "Report not found"


# --- AI providers ---
class InvalidAIResponse(AppError):
    status_code = 502
    code = "INVALID_AI_RESPONSE"
    message = "Invalid AI response format"


MISSING_CREDENTIAL = "missing credential"


class ProviderFailure:
    """One provider's outcome inside a fallback chain run (never raised)."""

    def __init__(self, provider: str, reason: str, skipped: bool = False):
        self.provider = provider
        self.reason = reason
        self.skipped = skipped

    def __repr__(self):
        state = "skipped" if self.skipped else "failed"
        return f"ProviderFailure({self.provider!r}, {state}: {self.reason!r})"

    def to_dict(self) -> dict:
        return {"provider": self.provider, "reason": self.reason, "skipped": self.skipped}


class AllProvidersExhausted(AppError):
    status_code = 503
    code = "AI_PROVIDERS_EXHAUSTED"

    def __init__(self, failures: List[ProviderFailure]):
        self.failures = list(failures)
        if not self.failures:
            summary = "no providers registered"
        else:
            summary = "; ".join(
                f"{f.provider}: {'skipped, ' if f.skipped else ''}{f.reason}" for f in self.failures
            )
        super().__init__(
            f"All AI providers failed ({summary})",
            details=[f.to_dict() for f in self.failures],
        )

    @property
    def misconfigured(self) -> bool:
        """True when every provider was skipped for lack of a credential."""
        return all(f.skipped and f.reason == MISSING_CREDENTIAL for f in self.failures)


class ProviderUnavailable(AppError):
    status_code = 503
    code = "AI_UNAVAILABLE"
    message = "AI not configured"


# --- Persistence / payments ---
class PersistenceFailure(AppError):
    status_code = 503
    code = "DATABASE_ERROR"
    message = "Database connection issue. Please wait a moment and refresh."


class PaymentError(AppError):
    status_code = 400
    code = "PAYMENT_ERROR"
    message = "Stripe not configured"
