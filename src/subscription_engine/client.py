# subscription_engine/client.py

import logging
from datetime import datetime, timedelta
from uuid import UUID
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from subscription_engine.config import BillingConfig
from subscription_engine.core import state_machine as sm
from subscription_engine.core.dates import calendar_day
from subscription_engine.core.reminders import evaluate_reminder
from subscription_engine.db import TenantORM
from subscription_engine.exceptions import (
    AlreadyFinalizedError,
    DatabaseError,
    InvalidTransitionError,
    NotFoundError,
    OverlappingPeriodError,
)
from subscription_engine.models import (
    DecisionResult,
    IntentKind,
    PaymentRequestCreate,
    PaymentRequestRecord,
    PaymentRequestStatus,
    PlanChangeResult,
    PlanCreate,
    PlanSnapshot,
    ProviderEvent,
    ReconcileResult,
    ReminderIntent,
    SubscriptionRecord,
    SubscriptionStatus,
    SubscriptionView,
    TransitionIntent,
    TransitionResult,
    utcnow,
)
from subscription_engine.models.subscription import ensure_utc
from subscription_engine.notifications import NotificationDispatcher
from subscription_engine.reconciler import WebhookReconciler
from subscription_engine.repositories import (
    PaymentRequestRepository,
    PlanRepository,
    ProviderEventRepository,
    ReminderRepository,
    SubscriptionRepository,
    TenantRepository,
)
from subscription_engine.transactions import TenantTransactor

logger = logging.getLogger(__name__)

# A tenant may only open a new subscription once the current one is over.
_REPLACEABLE = frozenset({SubscriptionStatus.expired, SubscriptionStatus.canceled})


class BillingClient:
    """
    Single entry point for the billing engine.

    Reads go straight to the repositories. Every write runs through the
    TenantTransactor: one transaction, one writer per tenant, retried on a
    version conflict. Intents produced by a write are queued for delivery
    only after its transaction commits.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        billing: BillingConfig | None = None,
        dispatcher: NotificationDispatcher | None = None,
        tenant_repo: TenantRepository | None = None,
        plan_repo: PlanRepository | None = None,
        subscription_repo: SubscriptionRepository | None = None,
        payment_repo: PaymentRequestRepository | None = None,
        event_repo: ProviderEventRepository | None = None,
        reminder_repo: ReminderRepository | None = None,
        engine: AsyncEngine | None = None,
    ):
        self.billing = billing or BillingConfig()
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.tenants = tenant_repo or TenantRepository(session_factory)
        self.plans = plan_repo or PlanRepository(session_factory)
        self.subscriptions = subscription_repo or SubscriptionRepository(session_factory)
        self.payments = payment_repo or PaymentRequestRepository(session_factory)
        self.events = event_repo or ProviderEventRepository(session_factory)
        self.reminders = reminder_repo or ReminderRepository(session_factory)
        self._session_factory = session_factory
        self._engine = engine
        self.transactor = TenantTransactor(session_factory, self.billing)
        self.reconciler = WebhookReconciler(
            session_factory=session_factory,
            transactor=self.transactor,
            tenants=self.tenants,
            plans=self.plans,
            subscriptions=self.subscriptions,
            events=self.events,
            billing=self.billing,
            publish=self._publish,
        )

    @property
    def grace_window(self) -> timedelta:
        return timedelta(days=self.billing.grace_window_days)

    def _publish(self, intents: Iterable[TransitionIntent | ReminderIntent]) -> None:
        for intent in intents:
            self.dispatcher.enqueue(intent)

    async def check_connections(self) -> dict[str, str]:
        statuses = {}
        try:
            await self.subscriptions.check_connection()
            statuses["postgres"] = "ok"
        except DatabaseError as e:
            statuses["postgres"] = f"failed: {e}"
        return statuses

    async def aclose(self) -> None:
        await self.dispatcher.stop()
        if self._engine is not None:
            await self._engine.dispose()

######################## CATALOG
    async def create_tenant(self, name: str, email: str | None = None, whatsapp_number: str | None = None,
                            external_customer_id: str | None = None) -> TenantORM:
        return await self.tenants.create_tenant(name, email, whatsapp_number, external_customer_id)

    async def create_plan(self, data: PlanCreate) -> PlanSnapshot:
        if data.trial_days is None:
            data = data.model_copy(update={"trial_days": self.billing.default_trial_days})
        plan = await self.plans.create_plan(data)
        return self.plans.to_snapshot(plan)

    async def list_plans(self) -> List[PlanSnapshot]:
        return [self.plans.to_snapshot(p) for p in await self.plans.list_active_plans()]

######################## SUBSCRIPTIONS
    async def create_subscription(
        self,
        tenant_id: UUID,
        plan_id: UUID,
        *,
        start_as_trial: bool = True,
        trial_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> SubscriptionRecord:
        """
        Opens a trial or a pending purchase for the tenant.
        Also used to resubscribe: the old record stays as history and the new one becomes current.
        """
        now = ensure_utc(now) if now else utcnow()

        async def work(session: AsyncSession) -> SubscriptionRecord:
            if not await self.tenants.exists_in_session(session, tenant_id):
                raise NotFoundError(f"Tenant {tenant_id} not found.")
            current = await self.subscriptions.get_current_for_tenant_in_session(session, tenant_id)
            if current is not None and current.status not in _REPLACEABLE:
                raise InvalidTransitionError(
                    f"Tenant {tenant_id} already has a '{current.status.value}' subscription {current.id}"
                )
            plan = await self.plans.get_snapshot_in_session(session, plan_id)
            record = sm.new_subscription(
                tenant_id, plan, now,
                start_as_trial=start_as_trial,
                trial_days=trial_days,
                payment_window=timedelta(days=self.billing.payment_window_days),
            )
            return await self.subscriptions.add_in_session(session, record)

        return await self.transactor.run(tenant_id, work)

    async def get_current(self, tenant_id: UUID) -> Optional[SubscriptionRecord]:
        return await self.subscriptions.get_current_for_tenant(tenant_id)

    async def subscription_history(self, tenant_id: UUID) -> List[SubscriptionRecord]:
        return await self.subscriptions.list_history(tenant_id)

    async def describe(self, tenant_id: UUID, now: Optional[datetime] = None) -> SubscriptionView:
        record = await self.get_current(tenant_id)
        if record is None:
            raise NotFoundError(f"Tenant {tenant_id} has no subscription.")
        return sm.describe(record, ensure_utc(now) if now else utcnow())

    async def tick_tenant(self, tenant_id: UUID, now: Optional[datetime] = None) -> Optional[TransitionResult]:
        """Applies the time rules to the tenant's current subscription and persists any change."""
        now = ensure_utc(now) if now else utcnow()

        async def work(session: AsyncSession) -> Optional[TransitionResult]:
            record = await self.subscriptions.get_current_for_tenant_in_session(session, tenant_id)
            if record is None:
                return None
            result = sm.advance_time(record, now, grace_window=self.grace_window)
            if not result.changed:
                return result
            saved = await self.subscriptions.save_in_session(session, result.record)
            return TransitionResult(record=saved, intents=result.intents)

        result = await self.transactor.run(tenant_id, work)
        if result is not None and result.changed:
            for intent in result.intents:
                logger.info(f"Tenant {tenant_id}: {intent.kind.value} "
                            f"({intent.from_status.value} -> {intent.to_status.value})")
            self._publish(result.intents)
        return result

    async def change_plan(self, tenant_id: UUID, plan_id: UUID, now: Optional[datetime] = None) -> PlanChangeResult:
        now = ensure_utc(now) if now else utcnow()

        async def work(session: AsyncSession) -> PlanChangeResult:
            record = await self.subscriptions.get_current_for_tenant_in_session(session, tenant_id)
            if record is None:
                raise NotFoundError(f"Tenant {tenant_id} has no subscription.")
            new_plan = await self.plans.get_snapshot_in_session(session, plan_id)
            changed = sm.change_plan(record, new_plan, now)
            saved = await self.subscriptions.save_in_session(session, changed.record)
            if changed.payment_request is not None:
                await self.payments.add_in_session(session, changed.payment_request)
            return PlanChangeResult(record=saved, charge=changed.charge, payment_request=changed.payment_request)

        result = await self.transactor.run(tenant_id, work)
        logger.info(f"Tenant {tenant_id} switched to plan '{result.record.plan.name}', charge {result.charge}")
        self._publish([TransitionIntent(
            kind=IntentKind.plan_changed,
            subscription_id=result.record.id,
            tenant_id=tenant_id,
            from_status=result.record.status,
            to_status=result.record.status,
            detail=result.record.plan.name,
        )])
        return result

    async def cancel(self, tenant_id: UUID, reason: Optional[str] = None,
                     now: Optional[datetime] = None) -> SubscriptionRecord:
        now = ensure_utc(now) if now else utcnow()

        async def work(session: AsyncSession) -> TransitionResult:
            record = await self.subscriptions.get_current_for_tenant_in_session(session, tenant_id)
            if record is None:
                raise NotFoundError(f"Tenant {tenant_id} has no subscription.")
            result = sm.cancel(record, now, reason)
            if not result.changed:
                return result
            saved = await self.subscriptions.save_in_session(session, result.record)
            return TransitionResult(record=saved, intents=result.intents)

        result = await self.transactor.run(tenant_id, work)
        self._publish(result.intents)
        return result.record

######################## PAYMENT REQUEST LEDGER
    async def submit_payment_request(self, data: PaymentRequestCreate) -> PaymentRequestRecord:
        async def work(session: AsyncSession) -> PaymentRequestRecord:
            subscription = await self.subscriptions.get_in_session(session, data.subscription_id)
            if subscription is None or subscription.tenant_id != data.tenant_id:
                raise NotFoundError(f"Subscription {data.subscription_id} not found for tenant {data.tenant_id}.")
            clashes = await self.payments.find_overlapping_approved_in_session(
                session, data.subscription_id, data.period
            )
            if clashes:
                raise OverlappingPeriodError(
                    f"Period overlaps approved payment request {clashes[0].id} of subscription {data.subscription_id}"
                )
            return await self.payments.add_in_session(session, data)

        return await self.transactor.run(data.tenant_id, work)

    async def _tenant_of_request(self, request_id: UUID) -> UUID:
        request = await self.payments.get(request_id)
        if request is None:
            raise NotFoundError(f"Payment request {request_id} not found.")
        return request.tenant_id

    async def mark_under_review(self, request_id: UUID, proof_reference: str) -> PaymentRequestRecord:
        """pending -> pending_approval once the tenant has attached a proof of payment."""
        tenant_id = await self._tenant_of_request(request_id)

        async def work(session: AsyncSession) -> PaymentRequestRecord:
            request = await self.payments.get_for_update_in_session(session, request_id)
            if request.status is not PaymentRequestStatus.pending:
                raise InvalidTransitionError(
                    f"Payment request {request_id} is '{request.status.value}', expected 'pending'"
                )
            updated = request.model_copy(update={
                "status": PaymentRequestStatus.pending_approval,
                "proof_reference": proof_reference,
            })
            return await self.payments.update_in_session(session, updated)

        return await self.transactor.run(tenant_id, work)

    async def decide(
        self,
        request_id: UUID,
        verifier: str,
        approve: bool,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DecisionResult:
        """
        Approves or rejects a payment request.

        On approval the ledger row and the subscription are written in the
        same transaction: either both change or neither does.
        """
        now = ensure_utc(now) if now else utcnow()
        tenant_id = await self._tenant_of_request(request_id)

        async def work(session: AsyncSession) -> tuple[DecisionResult, List[TransitionIntent]]:
            request = await self.payments.get_for_update_in_session(session, request_id)
            if request.status.is_terminal:
                raise AlreadyFinalizedError(f"Payment request {request_id} is already {request.status.value}.")
            subscription = await self.subscriptions.get_in_session(session, request.subscription_id)
            if subscription is None:
                raise NotFoundError(f"Subscription {request.subscription_id} not found.")

            decided = request.model_copy(update={
                "status": PaymentRequestStatus.approved if approve else PaymentRequestStatus.rejected,
                "verified_by": verifier,
                "admin_notes": notes,
                "decided_at": now,
            })
            intents: List[TransitionIntent] = []

            if approve:
                clashes = await self.payments.find_overlapping_approved_in_session(
                    session, request.subscription_id, request.period, exclude_id=request.id
                )
                if clashes:
                    raise OverlappingPeriodError(
                        f"Payment request {request_id} overlaps approved request {clashes[0].id}"
                    )
                if subscription.status is SubscriptionStatus.canceled:
                    logger.warning(f"Approving payment {request_id} for canceled subscription {subscription.id}; "
                                   f"the subscription stays canceled")
                result = sm.apply_payment_success(subscription, request.period, now, manual=True)
                if result.record != subscription:
                    subscription = await self.subscriptions.save_in_session(session, result.record)
                intents = list(result.intents)

            try:
                decided = await self.payments.update_in_session(session, decided)
            except IntegrityError as e:
                raise OverlappingPeriodError(f"Payment request {request_id} overlaps an approved period: {e.orig}")
            return DecisionResult(request=decided, subscription_status=subscription.status), intents

        decision, intents = await self.transactor.run(tenant_id, work)
        logger.info(f"Payment request {request_id} {decision.request.status.value} by {verifier}; "
                    f"subscription is now '{decision.subscription_status.value}'")
        self._publish(intents)
        return decision

    async def list_pending_requests(self) -> List[PaymentRequestRecord]:
        return await self.payments.list_pending()

    async def list_requests_for_tenant(self, tenant_id: UUID) -> List[PaymentRequestRecord]:
        return await self.payments.list_for_tenant(tenant_id)

######################## REMINDERS
    async def collect_reminder(self, record: SubscriptionRecord,
                               now: Optional[datetime] = None) -> Optional[ReminderIntent]:
        """Evaluates and, if due, queues today's reminder for the record's tenant."""
        now = ensure_utc(now) if now else utcnow()
        day = calendar_day(now, self.billing.reminder_timezone)
        notified = await self.reminders.was_notified(record.tenant_id, day)
        intent = evaluate_reminder(
            record, now,
            already_notified_today=notified,
            thresholds=self.billing.reminder_thresholds,
        )
        if intent is None:
            return None
        if not await self.reminders.record_once(intent, day):
            # Another worker logged one for today first.
            return None
        if not self.dispatcher.enqueue(intent):
            # Undelivered, so the day must stay open for another attempt.
            await self.reminders.forget(intent.tenant_id, day)
            return None
        return intent

######################## PROVIDER EVENTS
    async def handle_provider_event(self, event: ProviderEvent, now: Optional[datetime] = None) -> ReconcileResult:
        return await self.reconciler.reconcile(event, ensure_utc(now) if now else utcnow())
