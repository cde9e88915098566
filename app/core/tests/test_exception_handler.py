"""
Tests for core.exception_handler.application_exception_handler.

Verifies:
- Application errors are rendered with their own HTTP status
- Staff see message, code and details; everyone else sees the user message
- Non-application exceptions fall through to DRF's default handler
"""

from unittest.mock import Mock

from django.contrib.auth.models import AnonymousUser
from rest_framework.exceptions import NotAuthenticated

from core.exception_handler import application_exception_handler
from core.exceptions import ConflictError, ExternalServiceError, NotFoundError


def context_for(user):
    return {"request": Mock(user=user), "view": None}


def staff_user():
    return Mock(is_authenticated=True, is_staff=True)


class TestApplicationExceptionHandler:
    def test_staff_get_full_payload(self):
        exc = ConflictError("Order 42 is disputed", details={"status": "disputed"})

        response = application_exception_handler(exc, context_for(staff_user()))

        assert response.status_code == 409
        assert response.data == {
            "error": "Order 42 is disputed",
            "error_code": "CONFLICT",
            "details": {"status": "disputed"},
        }

    def test_users_get_public_message(self):
        exc = NotFoundError("Transaction 42 not visible to user 7")

        response = application_exception_handler(exc, context_for(Mock(is_authenticated=True, is_staff=False)))

        assert response.status_code == 404
        assert response.data == {"error": NotFoundError.user_message, "error_code": "NOT_FOUND"}

    def test_anonymous_users_get_public_message(self):
        exc = ExternalServiceError("Gateway timed out after 30s")

        response = application_exception_handler(exc, context_for(AnonymousUser()))

        assert response.status_code == 503
        assert "30s" not in response.data["error"]

    def test_custom_error_code(self):
        exc = ConflictError("Not allowed", error_code="ACTOR_NOT_PERMITTED")

        response = application_exception_handler(exc, context_for(staff_user()))

        assert response.data["error_code"] == "ACTOR_NOT_PERMITTED"
        assert "details" not in response.data

    def test_drf_exceptions_use_default_handler(self):
        response = application_exception_handler(NotAuthenticated(), {"request": None, "view": None})

        assert response.status_code == 401

    def test_unknown_exceptions_are_not_handled(self):
        assert application_exception_handler(RuntimeError("boom"), {"request": None, "view": None}) is None
