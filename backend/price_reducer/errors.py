"""Error taxonomy shared by the engine, the marketplace layer and the HTTP surface.

Each error carries a short machine-readable ``code`` (used by the UI to pick
a message, e.g. to re-prompt OAuth on ``AuthError``) and a human message.
"""
from typing import Optional


class PriceReducerError(Exception):
    code = "price_reducer_error"

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(PriceReducerError):
    """Bad strategy configuration or pricing input, rejected before any external call."""

    code = "validation_error"


class AuthError(PriceReducerError):
    """Marketplace connection is missing, expired or revoked. Never retried."""

    code = "auth_error"


class CredentialDecryptError(AuthError):
    code = "decrypt_failed"


class MarketplaceRejection(PriceReducerError):
    """The marketplace refused the request on a business rule (4xx)."""

    code = "marketplace_rejection"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        error_id: Optional[str] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message, code=code)
        self.status_code = status_code
        self.error_id = error_id

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["status_code"] = self.status_code
        data["error_id"] = self.error_id
        return data


class TransientError(PriceReducerError):
    """Timeout, 429 or 5xx. Retried with backoff, then deferred to the next cycle."""

    code = "transient_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message, code=code)
        self.status_code = status_code
        self.retry_after = retry_after


class ConflictError(PriceReducerError):
    """Optimistic-concurrency mismatch or a state change that is not allowed."""

    code = "conflict"
