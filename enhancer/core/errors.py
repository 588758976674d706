"""Error taxonomy shared by services and routes.

Services raise these; ``enhancer.main`` renders them as
``{"detail": {"reason": ..., "message": ...}}`` with the matching status.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

SIGN_UP_PATH = "/sign-up"
PLANS_PATH = "/subscriptions"

NEEDS_PURCHASE = "needs_purchase"
NEEDS_SIGN_UP = "needs_sign_up"


class EnhancerError(Exception):
    status_code = 500
    reason = "error"

    def __init__(self, message: str, *, next_action: str | None = None, **extra: Any):
        super().__init__(message)
        self.message = message
        self.next_action = next_action
        self.extra = extra

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"reason": self.reason, "message": self.message}
        if self.next_action:
            detail["nextAction"] = self.next_action
        detail.update(self.extra)
        return detail


class Unauthenticated(EnhancerError):
    status_code = 401
    reason = "sign_in_required"

    def __init__(self, message: str = "Please sign in or sign up to continue."):
        super().__init__(message, next_action=SIGN_UP_PATH)


class InsufficientEntitlement(EnhancerError):
    status_code = 402

    def __init__(self, sub_reason: str, message: str, **extra: Any):
        next_action = SIGN_UP_PATH if sub_reason == NEEDS_SIGN_UP else PLANS_PATH
        super().__init__(message, next_action=next_action, **extra)
        self.reason = sub_reason


class UpstreamUnavailable(EnhancerError):
    status_code = 503
    reason = "upstream_unavailable"

    def __init__(self, service: str, message: str, *, retryable: bool = True):
        super().__init__(message, service=service, retry=retryable)
        self.service = service
        self.retryable = retryable


class InvalidRequest(EnhancerError):
    status_code = 400
    reason = "invalid_request"


class Forbidden(EnhancerError):
    status_code = 403
    reason = "forbidden"


class NotFound(EnhancerError):
    status_code = 404
    reason = "not_found"


class UnknownOutcome(EnhancerError):
    status_code = 500
    reason = "unknown_outcome"

    def __init__(
        self,
        message: str = "We could not confirm whether this request completed. Please check your account before retrying.",
    ):
        super().__init__(message)


class NotConfigured(EnhancerError):
    status_code = 503
    reason = "not_configured"


@dataclass(frozen=True)
class IntegrityDrift:
    """Local and billing state disagree in a way that can't be repaired automatically."""

    code: str
    message: str
    price_id: Optional[str] = None

    def as_warning(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "priceId": self.price_id}
