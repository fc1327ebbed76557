from __future__ import annotations

import logging
from typing import Optional

from rest_framework import status
from rest_framework.exceptions import APIException
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


class LaunchpadError(APIException):
    """Base for workflow failures. `retryable` tells the UI whether to offer a retry."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Request failed."
    default_code = "error"
    retryable = False


class Unauthorized(LaunchpadError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Authentication required."
    default_code = "unauthorized"


class EngineError(LaunchpadError):
    """Generic failure talking to the survey engine."""

    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = "Survey engine request failed."
    default_code = "engine_error"
    retryable = True

    def __init__(self, detail=None, code=None, upstream_status: Optional[int] = None):
        super().__init__(detail, code)
        self.upstream_status = upstream_status
        # Upstream validation rejections are the caller's fault, not a gateway failure
        if upstream_status in (400, 404, 409, 422):
            self.status_code = upstream_status
            self.retryable = False


class InsufficientFunds(LaunchpadError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    default_detail = "Wallet balance does not cover the estimated cost."
    default_code = "insufficient_funds"


class PlanLimitExceeded(LaunchpadError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Your current plan does not allow this. Upgrade to continue."
    default_code = "plan_limit_exceeded"


class GenerationFailure(LaunchpadError):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = "Question generation failed. Try again."
    default_code = "generation_failed"
    retryable = True


class SubmissionFailure(LaunchpadError):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = "Your answers could not be submitted. They have been kept; try again."
    default_code = "submission_failed"
    retryable = True


class PaymentProviderFailure(LaunchpadError):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = "The payment provider could not complete the request."
    default_code = "payment_provider_failed"
    retryable = True


class ActivationFailure(LaunchpadError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Survey could not be activated."
    default_code = "activation_failed"


class TopUpInsufficientAfterPayment(LaunchpadError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    default_detail = "Top-up completed but the balance still does not cover the cost."
    default_code = "TOPUP_INSUFFICIENT_AFTER_PAYMENT"


class SessionClosed(LaunchpadError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "This session has already been completed."
    default_code = "session_closed"


class ChannelFailure(Exception):
    """Live analytics stream broke. Never surfaced to HTTP callers."""


def engine_exception_handler(exc, context):
    """
    DRF exception handler.

    - Any Unauthorized clears the authentication context held in the Django session
      (drafts are keyed by owner and survive this).
    - Workflow errors carry `code` and `retryable` so the UI can render a dismissible message.
    """
    if isinstance(exc, Unauthorized):
        request = context.get("request")
        if request is not None:
            from apps.accounts.services import clear_auth_context  # local import to avoid circulars
            clear_auth_context(request)
            logger.info("Auth context cleared after upstream 401")

    response = exception_handler(exc, context)
    if response is None:
        return None

    if isinstance(exc, LaunchpadError):
        codes = exc.get_codes()
        response.data = {
            "detail": str(exc.detail),
            "code": codes if isinstance(codes, str) else exc.default_code,
            "retryable": exc.retryable,
        }
    return response
