# subscription_engine/reconciler.py
"""
Webhook reconciliation.

Provider events arrive at-least-once and in any order. Each one is applied
inside a single tenant transaction together with its idempotency marker, so
a replay finds the marker and changes nothing. Period boundaries are copied
from the payload rather than added to, which makes out-of-order delivery
converge on the provider's latest view.

Manual payments win over the provider: while an admin-approved period still
covers `now`, provider failures and cancellations are recorded but ignored,
and the period end never drops below what was paid manually.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscription_engine.config import BillingConfig
from subscription_engine.core import state_machine as sm
from subscription_engine.db.base import get_session
from subscription_engine.exceptions import NotFoundError, UnresolvedTenantError
from subscription_engine.models import (
    Period,
    ProviderEvent,
    ProviderEventKind,
    ReconcileOutcome,
    ReconcileResult,
    SubscriptionRecord,
    SubscriptionStatus,
    TransitionIntent,
    parse_status,
)
from subscription_engine.repositories import (
    PlanRepository,
    ProviderEventRepository,
    SubscriptionRepository,
    TenantRepository,
)
from subscription_engine.transactions import TenantTransactor

logger = logging.getLogger(__name__)

S = SubscriptionStatus

# Provider states that must never overwrite a record that has moved past them.
_NO_REGRESS = frozenset({S.pending_payment, S.trialing})
# Provider states that would take access away; suppressed while a manual payment covers now.
_ADVERSE = frozenset({S.past_due, S.grace_period, S.expired, S.canceled})
# Adverse states the provider may only report as a payment failure; grace and expiry are driven by the clock.
_LAPSED = frozenset({S.past_due, S.grace_period, S.expired})
_OPENING = frozenset({ProviderEventKind.checkout_completed, ProviderEventKind.subscription_created})

Applied = Tuple[Optional[SubscriptionRecord], List[TransitionIntent], Optional[str]]


class WebhookReconciler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        transactor: TenantTransactor,
        tenants: TenantRepository,
        plans: PlanRepository,
        subscriptions: SubscriptionRepository,
        events: ProviderEventRepository,
        billing: BillingConfig,
        publish: Callable[[Iterable[TransitionIntent]], None],
    ):
        self._session_factory = session_factory
        self._transactor = transactor
        self._tenants = tenants
        self._plans = plans
        self._subscriptions = subscriptions
        self._events = events
        self._billing = billing
        self._publish = publish

    @property
    def _grace_window(self) -> timedelta:
        return timedelta(days=self._billing.grace_window_days)

    async def resolve_tenant(self, event: ProviderEvent) -> UUID:
        """
        client_reference, then the provider subscription id, then the provider customer id.
        Raises UnresolvedTenantError when none of them maps to a tenant.
        """
        async for session in get_session(self._session_factory):
            if event.client_reference is not None:
                if await self._tenants.exists_in_session(session, event.client_reference):
                    return event.client_reference
                logger.warning(f"Event {event.id}: client reference {event.client_reference} is not a known tenant")
            if event.subscription_ref:
                record = await self._subscriptions.find_by_external_ref_in_session(session, event.subscription_ref)
                if record is not None:
                    return record.tenant_id
            if event.customer_ref:
                tenant_id = await self._tenants.find_by_customer_ref_in_session(session, event.customer_ref)
                if tenant_id is not None:
                    return tenant_id
        raise UnresolvedTenantError(
            f"Event {event.id} ({event.kind.value}) does not map to any tenant "
            f"(customer={event.customer_ref}, subscription={event.subscription_ref})"
        )

    async def reconcile(self, event: ProviderEvent, now: datetime) -> ReconcileResult:
        try:
            tenant_id = await self.resolve_tenant(event)
        except UnresolvedTenantError as e:
            # Acknowledged without a marker so a later replay can still be applied.
            logger.warning(str(e))
            return ReconcileResult(event_id=event.id, outcome=ReconcileOutcome.unresolved)

        async def work(session: AsyncSession) -> Tuple[ReconcileResult, List[TransitionIntent]]:
            if not await self._events.claim_in_session(session, event, tenant_id):
                return ReconcileResult(event_id=event.id, outcome=ReconcileOutcome.duplicate,
                                       tenant_id=tenant_id), []

            record, intents, ignore_reason = await self._apply(session, tenant_id, event, now)
            if ignore_reason is not None:
                await self._events.set_outcome_in_session(session, event.id, ReconcileOutcome.ignored)
                return ReconcileResult(event_id=event.id, outcome=ReconcileOutcome.ignored, tenant_id=tenant_id,
                                       subscription_id=record.id if record else None,
                                       detail=ignore_reason), []
            return ReconcileResult(event_id=event.id, outcome=ReconcileOutcome.applied, tenant_id=tenant_id,
                                   subscription_id=record.id if record else None), intents

        result, intents = await self._transactor.run(tenant_id, work)
        log = logger.info if result.outcome is ReconcileOutcome.applied else logger.debug
        log(f"Event {event.id} ({event.kind.value}) for tenant {tenant_id}: {result.outcome.value}"
            + (f" ({result.detail})" if result.detail else ""))
        self._publish(intents)
        return result

    async def _load(self, session: AsyncSession, tenant_id: UUID,
                    event: ProviderEvent) -> Optional[SubscriptionRecord]:
        if event.subscription_ref:
            record = await self._subscriptions.find_by_external_ref_in_session(session, event.subscription_ref)
            if record is not None and record.tenant_id == tenant_id:
                return record
        return await self._subscriptions.get_current_for_tenant_in_session(session, tenant_id)

    async def _apply(self, session: AsyncSession, tenant_id: UUID, event: ProviderEvent,
                     now: datetime) -> Applied:
        if event.customer_ref:
            await self._tenants.link_customer_in_session(session, tenant_id, event.customer_ref)

        record = await self._load(session, tenant_id, event)
        if record is None:
            return await self._create_from_event(session, tenant_id, event, now)
        if record.status is S.canceled:
            if event.kind in _OPENING and event.plan_id is not None and (
                    event.subscription_ref is None or event.subscription_ref != record.external_subscription_id):
                # Resubscription through the provider: a new record, the canceled one stays as history.
                return await self._create_from_event(session, tenant_id, event, now)
            return record, [], "subscription is canceled"

        kind = event.kind
        if kind is ProviderEventKind.checkout_completed:
            updated, intents = self._link(record, event), []
            period = event.period
            if period is None and record.status is S.pending_payment and self._reports_active(event):
                # A completed checkout pays for the first period, starting now.
                period = Period(start=now, end=now + (record.current_period_end - record.current_period_start))
            if period is not None:
                paid = sm.apply_payment_success(updated, period, now)
                updated, intents = paid.record, list(paid.intents)
        elif kind in (ProviderEventKind.subscription_created, ProviderEventKind.subscription_updated):
            try:
                updated, intents = self._merge(record, event, now)
            except ValueError as e:
                return record, [], str(e)
        elif kind is ProviderEventKind.subscription_canceled:
            if self._manually_covered(record, now):
                return record, [], "manual payment covers the current period"
            result = sm.cancel(record, now, "provider_canceled")
            updated, intents = result.record, list(result.intents)
        elif kind is ProviderEventKind.invoice_paid:
            if event.period is None:
                return record, [], "invoice carries no billing period"
            result = sm.apply_payment_success(self._link(record, event), event.period, now)
            updated, intents = result.record, list(result.intents)
        elif kind is ProviderEventKind.invoice_payment_failed:
            if self._manually_covered(record, now):
                return record, [], "manual payment covers the current period"
            result = sm.apply_payment_failure(record)
            updated, intents = result.record, list(result.intents)
        else:
            return record, [], f"unhandled event kind {kind.value}"

        if updated == record:
            return record, [], "no change"
        saved = await self._subscriptions.save_in_session(session, updated)
        return saved, intents, None

    @staticmethod
    def _manually_covered(record: SubscriptionRecord, now: datetime) -> bool:
        return record.manual_paid_through is not None and record.manual_paid_through > now

    @staticmethod
    def _is_stale(record: SubscriptionRecord, period: Period) -> bool:
        if period.end >= record.current_period_end:
            return False
        # A period end held up by a manual payment says nothing about the provider's last snapshot.
        return record.manual_paid_through is None or record.current_period_end > record.manual_paid_through

    @staticmethod
    def _reports_active(event: ProviderEvent) -> bool:
        if not event.provider_status:
            return True
        try:
            return parse_status(event.provider_status) is S.active
        except ValueError:
            return False

    @staticmethod
    def _link(record: SubscriptionRecord, event: ProviderEvent) -> SubscriptionRecord:
        changes = {}
        if event.subscription_ref and record.external_subscription_id != event.subscription_ref:
            changes["external_subscription_id"] = event.subscription_ref
        if event.payment_method_attached is not None:
            changes["payment_on_file"] = event.payment_method_attached
        return record.evolve(**changes) if changes else record

    def _merge(self, record: SubscriptionRecord, event: ProviderEvent,
               now: datetime) -> Tuple[SubscriptionRecord, List[TransitionIntent]]:
        """
        Overwrites the record with the provider's snapshot, within the dual-path rules.

        A snapshot whose period ends before the provider-driven period end of the
        record is older than what was already applied and is refused, so any
        delivery order ends in the same state. Lapsed provider states only ever count as a payment failure:
        grace and expiry are left to advance_time.
        """
        if not event.provider_status:
            raise ValueError("event carries no provider status")
        target = parse_status(event.provider_status)
        period = event.period
        if period is not None and self._is_stale(record, period):
            raise ValueError(
                f"stale snapshot: period ends {period.end:%Y-%m-%d}, "
                f"record already runs to {record.current_period_end:%Y-%m-%d}"
            )
        updated = self._link(record, event)
        changes = {}

        if event.trial_start is not None:
            changes["trial_start"] = event.trial_start
        if event.trial_end is not None:
            changes["trial_end"] = event.trial_end

        if period is not None:
            end = period.end
            if record.manual_paid_through is not None:
                end = max(end, record.manual_paid_through)
            changes["current_period_start"] = period.start
            changes["current_period_end"] = end
            changes["next_billing_date"] = end

        if target in _NO_REGRESS and target is not record.status:
            target = record.status
        if target in _ADVERSE and self._manually_covered(record, now):
            target = record.status

        if target is S.canceled:
            updated = updated.evolve(**changes)
            result = sm.cancel(updated, now, "provider_canceled")
            return result.record, list(result.intents)

        intents: List[TransitionIntent] = []
        if target in _LAPSED and target is not record.status:
            failed = sm.apply_payment_failure(updated.evolve(**changes))
            updated, intents = failed.record, list(failed.intents)
        else:
            if target is not record.status:
                changes["status"] = target
                if target is S.active:
                    changes["grace_period_end"] = None
            updated = updated.evolve(**changes)

        healed = sm.heal(updated, self._grace_window)
        return healed.record, intents + list(healed.intents)

    async def _create_from_event(self, session: AsyncSession, tenant_id: UUID, event: ProviderEvent,
                                 now: datetime) -> Applied:
        if event.plan_id is None:
            return None, [], "no subscription and no plan to create one from"
        try:
            plan = await self._plans.get_snapshot_in_session(session, event.plan_id)
        except NotFoundError:
            return None, [], f"unknown plan {event.plan_id}"

        status = S.active
        if event.provider_status:
            try:
                status = parse_status(event.provider_status)
            except ValueError as e:
                return None, [], str(e)
        if status is S.canceled:
            return None, [], "provider subscription already canceled"

        record = sm.new_subscription(tenant_id, plan, now, start_as_trial=status is S.trialing)
        record = self._link(record, event)
        changes = {}
        if record.status is not status:
            changes["status"] = status
        if event.period is not None:
            changes.update(current_period_start=event.period.start,
                           current_period_end=event.period.end,
                           next_billing_date=event.period.end)
        elif status is S.active:
            changes["next_billing_date"] = record.current_period_end
        if event.trial_start is not None:
            changes["trial_start"] = event.trial_start
        if event.trial_end is not None:
            changes["trial_end"] = event.trial_end
        if changes:
            record = record.evolve(**changes)
        record = sm.heal(record, self._grace_window).record
        saved = await self._subscriptions.add_in_session(session, record)
        logger.info(f"Created subscription {saved.id} for tenant {tenant_id} from provider event {event.id}")
        return saved, [], None
