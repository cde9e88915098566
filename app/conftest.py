"""
Root pytest configuration for the Django project.

This module configures pytest-django and provides project-wide fixtures.
App-specific fixtures are defined in each app's tests/conftest.py.
"""

import os

import django
import pytest

# Ensure Django settings are configured before any tests run
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")


def pytest_configure():
    """Configure Django settings before tests run."""
    django.setup()

    from django.conf import settings

    # Disable throttling during tests to prevent rate limit failures
    settings.REST_FRAMEWORK["DEFAULT_THROTTLE_CLASSES"] = []
    settings.REST_FRAMEWORK["DEFAULT_THROTTLE_RATES"] = {}

    # Use fast password hasher for tests (PBKDF2 is too slow with 870K iterations)
    settings.PASSWORD_HASHERS = [
        "django.contrib.auth.hashers.MD5PasswordHasher",
    ]

    # The test client speaks plain HTTP
    settings.SECURE_SSL_REDIRECT = False


def pytest_collection_modifyitems(items):
    """
    Auto-mark tests based on filename patterns.

    Mapping:
    - test_integration.py → e2e (full buyer/seller/arbiter journeys)
    - test_views.py, test_*_service.py, test_tasks.py, etc. → integration
    - test_commission.py, test_types.py, test_locks.py, etc. → unit
    - Unmatched files → integration (safe default for Django)

    Explicit markers on test functions/classes take precedence.
    """
    e2e_patterns = ["test_integration.py"]

    integration_patterns = [
        "test_views.py",
        "test_tasks.py",
        "test_payment_service.py",
        "test_dispute_service.py",
        "test_refund_service.py",
        "test_payout_service.py",
        "test_transaction_service.py",
        "test_query_service.py",
        "test_auto_confirm.py",
        "test_optimistic_locking.py",
        "test_events.py",
        "test_health.py",
    ]

    unit_patterns = [
        "test_commission.py",
        "test_types.py",
        "test_adapters.py",
        "test_exception_handler.py",
        "test_base_service.py",
        "test_state_transitions.py",
        "test_locks.py",
    ]

    for item in items:
        # Skip if test already has unit/integration/e2e marker
        existing_markers = {m.name for m in item.iter_markers()}
        if existing_markers & {"unit", "integration", "e2e"}:
            continue

        filename = str(item.fspath).split("/")[-1]

        if any(pattern in filename for pattern in e2e_patterns):
            item.add_marker(pytest.mark.e2e)
        elif any(pattern in filename for pattern in integration_patterns):
            item.add_marker(pytest.mark.integration)
        elif any(pattern in filename for pattern in unit_patterns):
            item.add_marker(pytest.mark.unit)
        else:
            item.add_marker(pytest.mark.integration)


def _patch_postgresql_flush_for_cascade():
    """
    Patch PostgreSQL flush to always use CASCADE.

    TransactionTestCase resets the database with TRUNCATE, which fails on
    tables referenced by foreign keys unless CASCADE is used.
    """
    from django.db.backends.postgresql import operations

    original_sql_flush = operations.DatabaseOperations.sql_flush

    def sql_flush_with_cascade(self, style, tables, *, reset_sequences=False, allow_cascade=False):
        return original_sql_flush(self, style, tables, reset_sequences=reset_sequences, allow_cascade=True)

    operations.DatabaseOperations.sql_flush = sql_flush_with_cascade


_patch_postgresql_flush_for_cascade()
