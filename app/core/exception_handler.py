"""
DRF exception handler for application errors.

BaseApplicationError subclasses raised by services are rendered with their
own HTTP status. Staff users get the full payload (raw message, error code
and details); everyone else gets the user-facing reason and the code.
Anything else falls through to DRF's default handler.

Configured in settings:
    REST_FRAMEWORK = {"EXCEPTION_HANDLER": "core.exception_handler.application_exception_handler"}
"""

from __future__ import annotations

import logging

from rest_framework.response import Response
from rest_framework.views import exception_handler

from core.exceptions import BaseApplicationError

logger = logging.getLogger(__name__)


def _is_staff(request) -> bool:
    user = getattr(request, "user", None)
    return bool(user and user.is_authenticated and user.is_staff)


def application_exception_handler(exc, context):
    if not isinstance(exc, BaseApplicationError):
        return exception_handler(exc, context)

    request = context.get("request")
    view = context.get("view")
    level = logging.ERROR if exc.http_status >= 500 else logging.INFO
    logger.log(
        level,
        f"Request failed: {exc.error_code}",
        extra={
            "error_code": exc.error_code,
            "error": exc.message,
            "view": type(view).__name__ if view else None,
            "http_status": exc.http_status,
        },
    )

    payload = exc.to_dict() if _is_staff(request) else exc.to_public_dict()
    return Response(payload, status=exc.http_status)
