from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.exc import IntegrityError

from subscription_engine.db import PaymentRequestORM
from subscription_engine.db.uow import AsyncUnitOfWork
from subscription_engine.exceptions import (
    AlreadyFinalizedError,
    ConcurrentModificationError,
    InvalidTransitionError,
    NotFoundError,
    OverlappingPeriodError,
)
from subscription_engine.models import (
    PaymentMethod,
    PaymentRequestCreate,
    PaymentRequestStatus,
    Period,
    PlanCreate,
    SubscriptionStatus,
)

pytestmark = pytest.mark.asyncio

JAN_1 = datetime(2025, 1, 1, tzinfo=timezone.utc)
JAN_31 = datetime(2025, 1, 31, tzinfo=timezone.utc)


def _request(sub, start, end, amount=20000) -> PaymentRequestCreate:
    return PaymentRequestCreate(
        tenant_id=sub.tenant_id,
        subscription_id=sub.id,
        amount=Decimal(amount),
        currency="RWF",
        period=Period(start=start, end=end),
        payment_method=PaymentMethod.mobile_money,
    )


@pytest_asyncio.fixture
async def purchase(billing_client, tenant, starter_plan):
    """A fresh purchase waiting for its first manual payment."""
    return await billing_client.create_subscription(tenant.id, starter_plan.plan_id, start_as_trial=False, now=JAN_1)


async def test_approval_activates_subscription_and_finalizes_request(billing_client, purchase):
    """
    20000 RWF for [Jan 1, Jan 31) approved: the subscription becomes active
    until Jan 31, and deciding the same request again fails.
    """
    # --- ARRANGE ---
    request = await billing_client.submit_payment_request(_request(purchase, JAN_1, JAN_31))
    assert request.status is PaymentRequestStatus.pending

    # --- ACT ---
    decision = await billing_client.decide(request.id, "admin@example.com", approve=True,
                                           notes="MoMo ref 123", now=JAN_1 + timedelta(hours=3))

    # --- ASSERT ---
    assert decision.request.status is PaymentRequestStatus.approved
    assert decision.request.verified_by == "admin@example.com"
    assert decision.subscription_status is SubscriptionStatus.active

    current = await billing_client.get_current(purchase.tenant_id)
    assert current.status is SubscriptionStatus.active
    assert current.current_period_end == JAN_31
    assert current.manual_paid_through == JAN_31
    assert current.version == purchase.version + 1

    with pytest.raises(AlreadyFinalizedError):
        await billing_client.decide(request.id, "admin@example.com", approve=False, notes="overwrite")

    stored = await billing_client.payments.get(request.id)
    assert stored.admin_notes == "MoMo ref 123"


async def test_overlapping_submission_is_rejected_adjacent_is_not(billing_client, purchase):
    first = await billing_client.submit_payment_request(_request(purchase, JAN_1, JAN_31))
    await billing_client.decide(first.id, "admin", approve=True, now=JAN_1)

    with pytest.raises(OverlappingPeriodError):
        await billing_client.submit_payment_request(_request(purchase, JAN_1 + timedelta(days=14), JAN_31 + timedelta(days=14)))

    # Half-open periods: [Jan 31, Mar 2) only touches [Jan 1, Jan 31).
    adjacent = await billing_client.submit_payment_request(_request(purchase, JAN_31, JAN_31 + timedelta(days=30)))
    assert adjacent.status is PaymentRequestStatus.pending


async def test_approving_an_overlapping_pending_request_changes_nothing(billing_client, purchase):
    """Ledger and subscription move together: a rejected approval leaves both untouched."""
    # --- ARRANGE ---
    first = await billing_client.submit_payment_request(_request(purchase, JAN_1, JAN_31))
    second = await billing_client.submit_payment_request(_request(purchase, JAN_1 + timedelta(days=10), JAN_31 + timedelta(days=30)))
    await billing_client.decide(first.id, "admin", approve=True, now=JAN_1)
    before = await billing_client.get_current(purchase.tenant_id)

    # --- ACT / ASSERT ---
    with pytest.raises(OverlappingPeriodError):
        await billing_client.decide(second.id, "admin", approve=True, now=JAN_1)

    after = await billing_client.get_current(purchase.tenant_id)
    assert after == before
    assert (await billing_client.payments.get(second.id)).status is PaymentRequestStatus.pending


async def test_rejection_leaves_subscription_alone(billing_client, purchase):
    request = await billing_client.submit_payment_request(_request(purchase, JAN_1, JAN_31))

    decision = await billing_client.decide(request.id, "admin", approve=False, notes="blurry receipt", now=JAN_1)

    assert decision.request.status is PaymentRequestStatus.rejected
    assert decision.subscription_status is SubscriptionStatus.pending_payment
    assert (await billing_client.get_current(purchase.tenant_id)).version == purchase.version


async def test_mark_under_review_only_from_pending(billing_client, purchase):
    request = await billing_client.submit_payment_request(_request(purchase, JAN_1, JAN_31))

    reviewed = await billing_client.mark_under_review(request.id, "receipts/momo-123.jpg")

    assert reviewed.status is PaymentRequestStatus.pending_approval
    assert reviewed.proof_reference == "receipts/momo-123.jpg"
    with pytest.raises(InvalidTransitionError):
        await billing_client.mark_under_review(request.id, "again.jpg")

    pending = await billing_client.list_pending_requests()
    assert [r.id for r in pending] == [request.id]


async def test_submit_for_foreign_subscription_is_not_found(billing_client, purchase):
    other = await billing_client.create_tenant("Other Bistro")
    data = _request(purchase, JAN_1, JAN_31).model_copy(update={"tenant_id": other.id})

    with pytest.raises(NotFoundError):
        await billing_client.submit_payment_request(data)


async def test_plan_upgrade_persists_proration_request(billing_client, purchase, pro_plan):
    """10000 -> 20000 with 15 days left bills 5000 as a proration request."""
    request = await billing_client.submit_payment_request(_request(purchase, JAN_1, JAN_31, amount=10000))
    await billing_client.decide(request.id, "admin", approve=True, now=JAN_1)

    result = await billing_client.change_plan(purchase.tenant_id, pro_plan.plan_id, now=JAN_31 - timedelta(days=15))

    assert result.charge == Decimal("5000")
    assert result.record.plan.name == "Professional"
    assert result.record.current_period_end == JAN_31
    requests = await billing_client.list_requests_for_tenant(purchase.tenant_id)
    proration = [r for r in requests if r.payment_method is PaymentMethod.proration]
    assert len(proration) == 1
    assert proration[0].amount == Decimal("5000")


async def test_exclusion_constraint_blocks_overlapping_approved_rows(billing_client, purchase):
    """The database refuses overlapping approved rows even when code checks are bypassed."""
    async def insert_approved(start, end):
        async with AsyncUnitOfWork(billing_client._session_factory) as uow:
            uow.session.add(PaymentRequestORM(
                tenant_id=purchase.tenant_id, subscription_id=purchase.id, amount=1, currency="RWF",
                period_start=start, period_end=end, due_date=start, status="approved",
            ))
            await uow.session.flush()

    await insert_approved(JAN_1, JAN_31)
    with pytest.raises(IntegrityError):
        await insert_approved(JAN_1 + timedelta(days=1), JAN_31 + timedelta(days=1))


async def test_stale_version_write_is_refused(billing_client, purchase):
    stale = purchase
    async with AsyncUnitOfWork(billing_client._session_factory) as uow:
        await billing_client.subscriptions.save_in_session(uow.session, stale.evolve(payment_on_file=True))

    with pytest.raises(ConcurrentModificationError):
        async with AsyncUnitOfWork(billing_client._session_factory) as uow:
            await billing_client.subscriptions.save_in_session(uow.session, stale.evolve(payment_on_file=False))


async def test_resubscribe_after_cancel_creates_new_record(billing_client, purchase, starter_plan):
    with pytest.raises(InvalidTransitionError):
        await billing_client.create_subscription(purchase.tenant_id, starter_plan.plan_id, now=JAN_1)

    canceled = await billing_client.cancel(purchase.tenant_id, "closing for renovation", now=JAN_1 + timedelta(days=1))
    fresh = await billing_client.create_subscription(purchase.tenant_id, starter_plan.plan_id,
                                                     now=JAN_1 + timedelta(days=2))

    assert canceled.status is SubscriptionStatus.canceled
    assert fresh.id != purchase.id
    assert fresh.status is SubscriptionStatus.trialing
    assert (await billing_client.get_current(purchase.tenant_id)).id == fresh.id
    assert len(await billing_client.subscription_history(purchase.tenant_id)) == 2


async def test_plan_without_trial_length_takes_configured_default(billing_client):
    default = await billing_client.create_plan(PlanCreate(name="Default Trial", price=5000))
    no_trial = await billing_client.create_plan(PlanCreate(name="No Trial", price=5000, trial_days=0))

    assert default.trial_days == billing_client.billing.default_trial_days
    assert no_trial.trial_days == 0
