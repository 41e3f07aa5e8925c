"""
Pytest fixtures for escrow tests.

Redis is replaced by a MagicMock for every test (DistributedLock only
needs set/eval), and the in-memory FakeGateway is reset between tests.

Usage:
    def test_release(held_entry, admin_user):
        EscrowLedgerService.release(held_entry.id, actor=admin_user, ...)
"""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from django.utils import timezone
from rest_framework.test import APIClient

from escrow.services import ConfirmationService
from escrow.state_machines import ConfirmingParty
from escrow.tests.factories import (
    EscrowEntryFactory,
    HeldEscrowEntryFactory,
    PayoutFactory,
    UserFactory,
)
from escrow.tests.fakes import FakeGateway


# =============================================================================
# Infrastructure
# =============================================================================


@pytest.fixture(autouse=True)
def mock_redis():
    """Mock Redis for distributed locking."""
    redis = MagicMock()
    redis.set.return_value = True
    redis.get.return_value = None
    redis.delete.return_value = 1
    redis.eval.return_value = 1

    with patch("escrow.locks.get_redis_connection", return_value=redis):
        yield redis


@pytest.fixture(autouse=True)
def fake_gateway():
    """Fresh FakeGateway state per test."""
    FakeGateway.reset()
    yield FakeGateway
    FakeGateway.reset()


@pytest.fixture
def mock_payout_delay(mocker):
    """Capture execute_single_payout.delay calls instead of queueing."""
    return mocker.patch("escrow.workers.payout_executor.execute_single_payout.delay")


@pytest.fixture
def mock_refund_delay(mocker):
    """Capture execute_single_refund.delay calls instead of queueing."""
    return mocker.patch("escrow.workers.payout_executor.execute_single_refund.delay")


# =============================================================================
# Users
# =============================================================================


@pytest.fixture
def renter(db):
    return UserFactory()


@pytest.fixture
def owner(db):
    return UserFactory()


@pytest.fixture
def admin_user(db):
    return UserFactory(is_staff=True)


@pytest.fixture
def outsider(db):
    """Authenticated user with no part in the rental."""
    return UserFactory()


# =============================================================================
# Entries
# =============================================================================


@pytest.fixture
def pending_entry(db, renter, owner):
    return EscrowEntryFactory(payer=renter, payee=owner)


@pytest.fixture
def held_entry(db, renter, owner):
    return HeldEscrowEntryFactory(payer=renter, payee=owner)


@pytest.fixture
def due_entry(db, renter, owner):
    """Held entry whose auto-release window closed an hour ago."""
    held_at = timezone.now() - timedelta(days=3, hours=1)
    return HeldEscrowEntryFactory(payer=renter, payee=owner, held_at=held_at)


@pytest.fixture
def confirmed_entry(held_entry, renter, owner):
    """Held entry both parties have confirmed."""
    ConfirmationService.confirm_by_party(
        held_entry.id, ConfirmingParty.RENTER, "Returned the kayak on time", actor=renter
    )
    return ConfirmationService.confirm_by_party(
        held_entry.id, ConfirmingParty.OWNER, "Kayak back with no damage", actor=owner
    )


@pytest.fixture
def pending_payout(db):
    return PayoutFactory()


# =============================================================================
# API
# =============================================================================


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def renter_client(api_client, renter):
    api_client.force_authenticate(user=renter)
    return api_client


@pytest.fixture
def owner_client(owner):
    client = APIClient()
    client.force_authenticate(user=owner)
    return client


@pytest.fixture
def admin_client(admin_user):
    client = APIClient()
    client.force_authenticate(user=admin_user)
    return client
