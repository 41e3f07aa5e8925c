"""
Project-wide pytest configuration.

This module adjusts Django settings for the test run and auto-marks tests
as unit, integration or e2e by file name. App-specific fixtures live in
each app's tests/conftest.py.
"""

import pytest


def pytest_configure():
    """Adjust Django settings before tests run."""
    from django.conf import settings

    # Disable throttling during tests to prevent rate limit failures
    settings.REST_FRAMEWORK["DEFAULT_THROTTLE_CLASSES"] = []
    settings.REST_FRAMEWORK["DEFAULT_THROTTLE_RATES"] = {}

    # Use fast password hasher for tests (PBKDF2 is too slow with 870K iterations)
    settings.PASSWORD_HASHERS = [
        "django.contrib.auth.hashers.MD5PasswordHasher",
    ]

    # Local-memory cache so the health check and anything else touching
    # the cache does not need Redis. Escrow locks are patched per test.
    settings.CACHES = {
        "default": {"BACKEND": "django.core.cache.backends.locmem.LocMemCache"}
    }

    # In-memory gateway; see escrow/tests/fakes.py
    settings.ESCROW_GATEWAY_CLASS = "escrow.tests.fakes.FakeGateway"


def pytest_collection_modifyitems(items):
    """
    Auto-mark tests based on filename patterns.

    Mapping:
    - test_integration.py -> e2e (full release and dispute journeys)
    - test_views.py, test_services.py, test_tasks.py, etc. -> integration
    - test_models.py, test_fees.py, test_locks.py, etc. -> unit
    - Unmatched files -> integration (safe default for Django)

    Explicit markers on test functions/classes take precedence.
    """
    e2e_patterns = ["test_integration.py"]

    integration_patterns = [
        "test_views.py",
        "test_tasks.py",
        "test_handlers.py",
        "test_ledger.py",
        "test_confirmations.py",
        "test_disputes.py",
        "test_settlement.py",
        "test_reporting.py",
        "test_auto_release.py",
        "test_payout_executor.py",
        "test_health_check.py",
    ]

    unit_patterns = [
        "test_models.py",
        "test_fees.py",
        "test_locks.py",
        "test_exceptions.py",
        "test_state_transitions.py",
        "test_stripe_gateway.py",
        "test_signals.py",
    ]

    for item in items:
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
