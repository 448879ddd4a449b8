"""Entitlement operations: create, change, cancel, pause, resume and transfer."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Protocol, Sequence, Tuple
from zoneinfo import ZoneInfo

from ..blocking.checker import BlockingChecker, current_state
from ..blocking.models import (
    ENT_STATE_BLOCKED,
    ENT_STATE_CANCELLED,
    ENT_STATE_CLEAR,
    BlockableType,
    BlockingAction,
    BlockingState,
)
from ..blocking.repository import BlockingStateRepository
from ..callcontext import CallContext, InternalCallContext
from ..exceptions import (
    AccountApiError,
    BlockingApiError,
    EntitlementApiError,
    ErrorCode,
    SubscriptionBaseApiError,
)
from ..subscriptions.api import AccountInternalApi, SubscriptionBaseInternalApi
from ..subscriptions.models import (
    BillingActionPolicy,
    EntitlementActionPolicy,
    EntitlementSpecifier,
    PlanPhasePriceOverride,
    PlanPhaseSpecifier,
    SubscriptionBase,
    SubscriptionBundle,
)
from .context import InternalCallContextFactory
from .dates import EntitlementDateHelper
from .models import (
    Entitlement,
    EntitlementLifecycleEvent,
    EntitlementState,
    LifecycleEventType,
    OperationType,
)
from .plugins import EntitlementContext, EntitlementPluginExecution

logger = logging.getLogger(__name__)

ENTITLEMENT_SERVICE_NAME = "entitlement-service"


class EntitlementEventBus(Protocol):
    """Fire-and-forget, at-least-once lifecycle event publication."""

    def publish(self, event: EntitlementLifecycleEvent) -> None:
        ...


@contextmanager
def _store_errors() -> Iterator[None]:
    try:
        yield
    except (SubscriptionBaseApiError, AccountApiError) as exc:
        raise EntitlementApiError.wrap(exc) from exc


def _first_entitlement_specifier(specifiers: Sequence[EntitlementSpecifier]) -> EntitlementSpecifier:
    if not specifiers:
        raise EntitlementApiError.of(
            ErrorCode.SUB_CREATE_INVALID_ENTITLEMENT_SPECIFIER,
            "Missing entitlement specifier",
        )
    return specifiers[0]


class EntitlementApi:
    """Runs entitlement operations inside the plugin hooks.

    Each operation resolves its effective date, authorizes against the
    blocking hierarchy, delegates the subscription mutation to the store and
    appends the resulting blocking states before announcing lifecycle events.
    """

    def __init__(
        self,
        subscription_api: SubscriptionBaseInternalApi,
        account_api: AccountInternalApi,
        blocking_state_repository: BlockingStateRepository,
        event_bus: EntitlementEventBus,
        *,
        plugin_execution: Optional[EntitlementPluginExecution] = None,
        clock: Optional[Callable[[], datetime]] = None,
        service_name: str = ENTITLEMENT_SERVICE_NAME,
        default_time_zone: Optional[ZoneInfo] = None,
        publish_events: bool = True,
    ) -> None:
        self._subscription_api = subscription_api
        self._blocking_states = blocking_state_repository
        self._event_bus = event_bus
        self._plugin_execution = plugin_execution or EntitlementPluginExecution()
        self._date_helper = EntitlementDateHelper(account_api, clock=clock, default_time_zone=default_time_zone)
        self._context_factory = InternalCallContextFactory(account_api, subscription_api)
        self._checker = BlockingChecker(blocking_state_repository, subscription_api, clock=self._date_helper.now)
        self._service_name = service_name
        self._publish_events = publish_events

    @property
    def checker(self) -> BlockingChecker:
        return self._checker

    @property
    def plugin_execution(self) -> EntitlementPluginExecution:
        return self._plugin_execution

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def create_base_entitlement(
        self,
        account_id: str,
        spec: PlanPhaseSpecifier,
        external_key: Optional[str],
        *,
        overrides: Sequence[PlanPhasePriceOverride] = (),
        effective_date: Optional[date] = None,
        properties: Optional[Mapping[str, str]] = None,
        call_context: CallContext,
    ) -> Entitlement:
        plugin_context = EntitlementContext(
            operation_type=OperationType.CREATE_SUBSCRIPTION,
            call_context=call_context,
            account_id=account_id,
            external_key=external_key,
            entitlement_specifiers=(EntitlementSpecifier(plan_phase_specifier=spec, overrides=tuple(overrides)),),
            effective_date=effective_date,
            properties=dict(properties or {}),
        )

        def create(updated: EntitlementContext) -> Entitlement:
            context = self._context_factory.create_for_account(account_id, call_context)
            specifier = _first_entitlement_specifier(updated.entitlement_specifiers)
            with _store_errors():
                self._ensure_key_available(external_key, context)
                requested_date = self._date_helper.from_local_date_and_reference_time(
                    updated.effective_date, self._date_helper.now(), context
                )
                bundle = self._subscription_api.create_bundle_for_account(account_id, external_key, context)
                subscription = self._subscription_api.create_subscription(
                    bundle.id,
                    specifier.plan_phase_specifier,
                    specifier.overrides,
                    requested_date,
                    context,
                )
            entitlement = self._to_entitlement(subscription, bundle, context)
            self._publish_entitlement_event(LifecycleEventType.ENTITLEMENT_CREATED, entitlement, requested_date, context)
            logger.info("Created base entitlement %s bundle=%s account=%s", entitlement.id, bundle.id, account_id)
            return entitlement

        return self._plugin_execution.execute_with_plugin(create, plugin_context)

    def create_base_entitlement_with_add_ons(
        self,
        account_id: str,
        external_key: Optional[str],
        specifiers: Sequence[EntitlementSpecifier],
        *,
        effective_date: Optional[date] = None,
        properties: Optional[Mapping[str, str]] = None,
        call_context: CallContext,
    ) -> Entitlement:
        if not any(specifier.is_base for specifier in specifiers):
            raise EntitlementApiError.of(ErrorCode.SUB_CREATE_NO_BP, "Missing Base Subscription.")

        plugin_context = EntitlementContext(
            operation_type=OperationType.CREATE_SUBSCRIPTIONS_WITH_AO,
            call_context=call_context,
            account_id=account_id,
            external_key=external_key,
            entitlement_specifiers=tuple(specifiers),
            effective_date=effective_date,
            properties=dict(properties or {}),
        )

        def create(updated: EntitlementContext) -> Entitlement:
            context = self._context_factory.create_for_account(account_id, call_context)
            with _store_errors():
                self._ensure_key_available(external_key, context)
                requested_date = self._date_helper.from_local_date_and_reference_time(
                    updated.effective_date, self._date_helper.now(), context
                )
                bundle = self._subscription_api.create_bundle_for_account(account_id, external_key, context)
                base = self._subscription_api.create_base_subscription_with_add_ons(
                    bundle.id, updated.entitlement_specifiers, requested_date, context
                )
                subscriptions = self._subscription_api.get_subscriptions_for_bundle(bundle.id, context)
            for subscription in subscriptions:
                self._publish_entitlement_event(
                    LifecycleEventType.ENTITLEMENT_CREATED,
                    self._to_entitlement(subscription, bundle, context),
                    requested_date,
                    context,
                )
            logger.info(
                "Created base entitlement %s with %s add-on(s) bundle=%s account=%s",
                base.id,
                len(subscriptions) - 1,
                bundle.id,
                account_id,
            )
            return self._to_entitlement(base, bundle, context)

        return self._plugin_execution.execute_with_plugin(create, plugin_context)

    def add_entitlement(
        self,
        bundle_id: str,
        spec: PlanPhaseSpecifier,
        *,
        overrides: Sequence[PlanPhasePriceOverride] = (),
        effective_date: Optional[date] = None,
        properties: Optional[Mapping[str, str]] = None,
        call_context: CallContext,
    ) -> Entitlement:
        plugin_context = EntitlementContext(
            operation_type=OperationType.CREATE_SUBSCRIPTION,
            call_context=call_context,
            bundle_id=bundle_id,
            entitlement_specifiers=(EntitlementSpecifier(plan_phase_specifier=spec, overrides=tuple(overrides)),),
            effective_date=effective_date,
            properties=dict(properties or {}),
        )

        def add(updated: EntitlementContext) -> Entitlement:
            context = self._context_factory.create_for_bundle(bundle_id, call_context)
            with _store_errors():
                bundle = self._subscription_api.get_bundle_from_id(bundle_id, context)
                base = self._subscription_api.get_base_subscription(bundle_id, context)

            now = self._date_helper.now()
            if self._entitlement_state(base, context, now) in (EntitlementState.CANCELLED, EntitlementState.PENDING):
                raise EntitlementApiError.of(
                    ErrorCode.SUB_GET_NO_SUCH_BASE_SUBSCRIPTION,
                    f"No active base subscription for bundle {bundle_id}",
                    bundle_id=bundle_id,
                )
            if self._checker.get_blocked_state(base, context, now).block_change:
                raise BlockingApiError(BlockingAction.CHANGE.value, BlockableType.SUBSCRIPTION.value, base.id)

            specifier = _first_entitlement_specifier(updated.entitlement_specifiers)
            requested_date = self._date_helper.from_local_date_and_reference_time(
                updated.effective_date, base.start_date, context
            )
            with _store_errors():
                subscription = self._subscription_api.create_subscription(
                    bundle_id,
                    specifier.plan_phase_specifier,
                    specifier.overrides,
                    requested_date,
                    context,
                )
            entitlement = self._to_entitlement(subscription, bundle, context)
            self._publish_entitlement_event(LifecycleEventType.ENTITLEMENT_CREATED, entitlement, requested_date, context)
            logger.info("Added entitlement %s to bundle %s", entitlement.id, bundle_id)
            return entitlement

        return self._plugin_execution.execute_with_plugin(add, plugin_context)

    # ------------------------------------------------------------------
    # Plan changes
    # ------------------------------------------------------------------
    def change_plan(
        self,
        entitlement_id: str,
        spec: PlanPhaseSpecifier,
        *,
        overrides: Sequence[PlanPhasePriceOverride] = (),
        effective_date: Optional[date] = None,
        properties: Optional[Mapping[str, str]] = None,
        call_context: CallContext,
    ) -> Entitlement:
        return self._change_plan(
            entitlement_id,
            spec,
            overrides=overrides,
            effective_date=effective_date,
            billing_policy=None,
            properties=properties,
            call_context=call_context,
        )

    def change_plan_override_billing_policy(
        self,
        entitlement_id: str,
        spec: PlanPhaseSpecifier,
        billing_policy: BillingActionPolicy,
        *,
        overrides: Sequence[PlanPhasePriceOverride] = (),
        effective_date: Optional[date] = None,
        properties: Optional[Mapping[str, str]] = None,
        call_context: CallContext,
    ) -> Entitlement:
        return self._change_plan(
            entitlement_id,
            spec,
            overrides=overrides,
            effective_date=effective_date,
            billing_policy=billing_policy,
            properties=properties,
            call_context=call_context,
        )

    def _change_plan(
        self,
        entitlement_id: str,
        spec: PlanPhaseSpecifier,
        *,
        overrides: Sequence[PlanPhasePriceOverride],
        effective_date: Optional[date],
        billing_policy: Optional[BillingActionPolicy],
        properties: Optional[Mapping[str, str]],
        call_context: CallContext,
    ) -> Entitlement:
        plugin_context = EntitlementContext(
            operation_type=OperationType.CHANGE_PLAN,
            call_context=call_context,
            entitlement_id=entitlement_id,
            entitlement_specifiers=(EntitlementSpecifier(plan_phase_specifier=spec, overrides=tuple(overrides)),),
            effective_date=effective_date,
            billing_policy=billing_policy,
            properties=dict(properties or {}),
        )

        def change(updated: EntitlementContext) -> Entitlement:
            context = self._context_factory.create_for_subscription(entitlement_id, call_context)
            subscription, bundle = self._load(entitlement_id, context)
            self._ensure_not_cancelled(subscription, context)

            requested_date = self._date_helper.from_local_date_and_reference_time(
                updated.effective_date, subscription.start_date, context
            )
            self._checker.check_blocked_change(subscription, context)

            specifier = _first_entitlement_specifier(updated.entitlement_specifiers)
            with _store_errors():
                if updated.billing_policy is None:
                    changed = self._subscription_api.change_plan(
                        subscription.id,
                        specifier.plan_phase_specifier,
                        specifier.overrides,
                        requested_date,
                        context,
                    )
                else:
                    changed = self._subscription_api.change_plan_with_policy(
                        subscription.id,
                        specifier.plan_phase_specifier,
                        specifier.overrides,
                        requested_date,
                        updated.billing_policy,
                        context,
                    )
            entitlement = self._to_entitlement(changed, bundle, context)
            self._publish_entitlement_event(LifecycleEventType.ENTITLEMENT_CHANGED, entitlement, requested_date, context)
            logger.info("Changed plan of entitlement %s to %s", entitlement.id, entitlement.plan_name)
            return entitlement

        return self._plugin_execution.execute_with_plugin(change, plugin_context)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------
    def cancel_entitlement_with_date(
        self,
        entitlement_id: str,
        effective_date: Optional[date],
        *,
        properties: Optional[Mapping[str, str]] = None,
        call_context: CallContext,
    ) -> Entitlement:
        return self._cancel(
            entitlement_id,
            effective_date=effective_date,
            entitlement_policy=None,
            billing_policy=None,
            properties=properties,
            call_context=call_context,
        )

    def cancel_entitlement_with_policy(
        self,
        entitlement_id: str,
        policy: EntitlementActionPolicy,
        *,
        properties: Optional[Mapping[str, str]] = None,
        call_context: CallContext,
    ) -> Entitlement:
        return self._cancel(
            entitlement_id,
            effective_date=None,
            entitlement_policy=policy,
            billing_policy=None,
            properties=properties,
            call_context=call_context,
        )

    def cancel_entitlement_with_date_override_billing_policy(
        self,
        entitlement_id: str,
        effective_date: Optional[date],
        billing_policy: BillingActionPolicy,
        *,
        properties: Optional[Mapping[str, str]] = None,
        call_context: CallContext,
    ) -> Entitlement:
        return self._cancel(
            entitlement_id,
            effective_date=effective_date,
            entitlement_policy=None,
            billing_policy=billing_policy,
            properties=properties,
            call_context=call_context,
        )

    def cancel_entitlement_with_policy_override_billing_policy(
        self,
        entitlement_id: str,
        policy: EntitlementActionPolicy,
        billing_policy: BillingActionPolicy,
        *,
        properties: Optional[Mapping[str, str]] = None,
        call_context: CallContext,
    ) -> Entitlement:
        return self._cancel(
            entitlement_id,
            effective_date=None,
            entitlement_policy=policy,
            billing_policy=billing_policy,
            properties=properties,
            call_context=call_context,
        )

    def _cancel(
        self,
        entitlement_id: str,
        *,
        effective_date: Optional[date],
        entitlement_policy: Optional[EntitlementActionPolicy],
        billing_policy: Optional[BillingActionPolicy],
        properties: Optional[Mapping[str, str]],
        call_context: CallContext,
    ) -> Entitlement:
        plugin_context = EntitlementContext(
            operation_type=OperationType.CANCEL_SUBSCRIPTION,
            call_context=call_context,
            entitlement_id=entitlement_id,
            effective_date=effective_date,
            billing_policy=billing_policy,
            properties=dict(properties or {}),
        )

        def cancel(updated: EntitlementContext) -> Entitlement:
            context = self._context_factory.create_for_subscription(entitlement_id, call_context)
            subscription, bundle = self._load(entitlement_id, context)
            self._ensure_not_cancelled(subscription, context)

            now = self._date_helper.now()
            if entitlement_policy is None:
                cancel_date = self._date_helper.from_local_date_and_reference_time(
                    updated.effective_date, subscription.start_date, context
                )
            else:
                cancel_date = self._date_for_policy(subscription, entitlement_policy, now)
            cancel_date = max(cancel_date, subscription.start_date)

            targets = [subscription]
            if subscription.is_base:
                with _store_errors():
                    siblings = self._subscription_api.get_subscriptions_for_bundle(bundle.id, context)
                targets.extend(
                    other
                    for other in siblings
                    if other.id != subscription.id and not self._is_cancelled(other, context, now)
                )
            states = [
                BlockingState(
                    blockable_id=target.id,
                    blockable_type=BlockableType.SUBSCRIPTION,
                    state_name=ENT_STATE_CANCELLED,
                    service=self._service_name,
                    block_change=False,
                    block_entitlement=True,
                    block_billing=False,
                    effective_date=cancel_date,
                )
                for target in targets
            ]
            # A pending end-of-term cancellation may be preceded; one already in effect may not.
            for state in states:
                self._ensure_in_order(state, context)

            with _store_errors():
                if updated.billing_policy is None:
                    self._subscription_api.cancel(subscription.id, cancel_date, context)
                else:
                    self._subscription_api.cancel_with_policy(
                        subscription.id, cancel_date, updated.billing_policy, context
                    )

            for state in states:
                self._append_blocking_state(state, context, bundle_id=bundle.id)

            with _store_errors():
                refreshed = self._subscription_api.get_subscription_from_id(subscription.id, context)
            entitlement = self._to_entitlement(refreshed, bundle, context)
            self._publish_entitlement_event(LifecycleEventType.ENTITLEMENT_CANCELLED, entitlement, cancel_date, context)
            logger.info(
                "Cancelled entitlement %s effective=%s cascaded=%s",
                entitlement.id,
                cancel_date.isoformat(),
                len(targets) - 1,
            )
            return entitlement

        return self._plugin_execution.execute_with_plugin(cancel, plugin_context)

    def _date_for_policy(
        self, subscription: SubscriptionBase, policy: EntitlementActionPolicy, now: datetime
    ) -> datetime:
        if policy == EntitlementActionPolicy.IMMEDIATE:
            return now
        if policy == EntitlementActionPolicy.END_OF_TERM:
            charged_through = subscription.charged_through_date
            if charged_through is not None and charged_through > now:
                return charged_through
            return now
        raise EntitlementApiError.of(ErrorCode.SUB_INVALID_BILLING_POLICY, f"Unexpected entitlement policy {policy}")

    # ------------------------------------------------------------------
    # Pause / resume / explicit blocking states
    # ------------------------------------------------------------------
    def pause(
        self,
        bundle_id: str,
        effective_date: Optional[date] = None,
        *,
        properties: Optional[Mapping[str, str]] = None,
        call_context: CallContext,
    ) -> List[Entitlement]:
        """Block change, entitlement and billing for the whole bundle.

        Pausing an already paused bundle appends nothing.
        """

        return self._pause_or_resume(
            OperationType.PAUSE_BUNDLE,
            bundle_id,
            effective_date,
            state_name=ENT_STATE_BLOCKED,
            block=True,
            properties=properties,
            call_context=call_context,
        )

    def resume(
        self,
        bundle_id: str,
        effective_date: Optional[date] = None,
        *,
        properties: Optional[Mapping[str, str]] = None,
        call_context: CallContext,
    ) -> List[Entitlement]:
        """Clear a pause. Resuming a bundle that is not paused appends nothing."""

        return self._pause_or_resume(
            OperationType.RESUME_BUNDLE,
            bundle_id,
            effective_date,
            state_name=ENT_STATE_CLEAR,
            block=False,
            properties=properties,
            call_context=call_context,
        )

    def _pause_or_resume(
        self,
        operation_type: OperationType,
        bundle_id: str,
        effective_date: Optional[date],
        *,
        state_name: str,
        block: bool,
        properties: Optional[Mapping[str, str]],
        call_context: CallContext,
    ) -> List[Entitlement]:
        plugin_context = EntitlementContext(
            operation_type=operation_type,
            call_context=call_context,
            bundle_id=bundle_id,
            effective_date=effective_date,
            properties=dict(properties or {}),
        )

        def apply(updated: EntitlementContext) -> List[Entitlement]:
            context = self._context_factory.create_for_bundle(bundle_id, call_context)
            with _store_errors():
                base = self._subscription_api.get_base_subscription(bundle_id, context)
            self._ensure_not_cancelled(base, context)

            requested_date = self._date_helper.from_local_date_and_reference_time(
                updated.effective_date, base.start_date, context
            )
            state = BlockingState(
                blockable_id=bundle_id,
                blockable_type=BlockableType.SUBSCRIPTION_BUNDLE,
                state_name=state_name,
                service=self._service_name,
                block_change=block,
                block_entitlement=block,
                block_billing=block,
                effective_date=requested_date,
            )
            if self._append_on_change(state, context, bundle_id=bundle_id):
                event_type = (
                    LifecycleEventType.BUNDLE_PAUSED if block else LifecycleEventType.BUNDLE_RESUMED
                )
                self._publish(
                    EntitlementLifecycleEvent(
                        event_type=event_type,
                        tenant_id=context.tenant_id,
                        account_id=context.account_id,
                        bundle_id=bundle_id,
                        state_name=state_name,
                        effective_date=requested_date,
                        user_token=call_context.user_token,
                    )
                )
                logger.info("%s bundle %s effective=%s", operation_type.value, bundle_id, requested_date.isoformat())
            return self._entitlements_for_bundle(bundle_id, context)

        return self._plugin_execution.execute_with_plugin(apply, plugin_context)

    def set_blocking_state(
        self,
        bundle_id: str,
        state_name: str,
        service: str,
        *,
        effective_date: Optional[date] = None,
        block_billing: bool = False,
        block_entitlement: bool = False,
        block_change: bool = False,
        properties: Optional[Mapping[str, str]] = None,
        call_context: CallContext,
    ) -> BlockingState:
        """Append an explicit blocking state for a bundle, on behalf of any service."""

        plugin_context = EntitlementContext(
            operation_type=OperationType.SET_BLOCKING_STATE,
            call_context=call_context,
            bundle_id=bundle_id,
            effective_date=effective_date,
            properties=dict(properties or {}),
        )

        def apply(updated: EntitlementContext) -> BlockingState:
            context = self._context_factory.create_for_bundle(bundle_id, call_context)
            with _store_errors():
                base = self._subscription_api.get_base_subscription(bundle_id, context)
            requested_date = self._date_helper.from_local_date_and_reference_time(
                updated.effective_date, base.start_date, context
            )
            return self._append_blocking_state(
                BlockingState(
                    blockable_id=bundle_id,
                    blockable_type=BlockableType.SUBSCRIPTION_BUNDLE,
                    state_name=state_name,
                    service=service,
                    block_change=block_change,
                    block_entitlement=block_entitlement,
                    block_billing=block_billing,
                    effective_date=requested_date,
                ),
                context,
                bundle_id=bundle_id,
            )

        return self._plugin_execution.execute_with_plugin(apply, plugin_context)

    def get_blocking_states_for_service_and_type(
        self,
        blockable_id: str,
        blockable_type: BlockableType,
        service: Optional[str] = None,
        *,
        call_context: CallContext,
    ) -> List[BlockingState]:
        context = self._context_factory.create_for_tenant(call_context)
        try:
            states = self._blocking_states.get_blocking_states(blockable_id, blockable_type, context, service=service)
        except Exception as exc:
            raise EntitlementApiError.wrap(exc) from exc
        return sorted(states, key=lambda state: state.effective_date)

    # ------------------------------------------------------------------
    # Transfer
    # ------------------------------------------------------------------
    def transfer_entitlements(
        self,
        source_account_id: str,
        dest_account_id: str,
        external_key: str,
        effective_date: Optional[date] = None,
        *,
        properties: Optional[Mapping[str, str]] = None,
        call_context: CallContext,
    ) -> str:
        return self.transfer_entitlements_override_billing_policy(
            source_account_id,
            dest_account_id,
            external_key,
            effective_date,
            BillingActionPolicy.IMMEDIATE,
            properties=properties,
            call_context=call_context,
        )

    def transfer_entitlements_override_billing_policy(
        self,
        source_account_id: str,
        dest_account_id: str,
        external_key: str,
        effective_date: Optional[date],
        billing_policy: BillingActionPolicy,
        *,
        properties: Optional[Mapping[str, str]] = None,
        call_context: CallContext,
    ) -> str:
        """Move the active bundle ``external_key`` to another account; return the new bundle id.

        The blocking states cancelling the source subscriptions are written one
        by one. Writes that fail are logged individually and reported together
        as ``TRANSFER_INCOMPLETE``; nothing is rolled back.
        """

        plugin_context = EntitlementContext(
            operation_type=OperationType.TRANSFER_BUNDLE,
            call_context=call_context,
            account_id=source_account_id,
            dest_account_id=dest_account_id,
            external_key=external_key,
            effective_date=effective_date,
            billing_policy=billing_policy,
            properties=dict(properties or {}),
        )

        def transfer(updated: EntitlementContext) -> str:
            cancel_immediately = self._cancel_immediately(updated.billing_policy)
            context = self._context_factory.create_for_account(source_account_id, call_context)
            with _store_errors():
                active_id = self._first_active_subscription_id_for_key(external_key, context)
                base = (
                    self._subscription_api.get_subscription_from_id(active_id, context)
                    if active_id is not None
                    else None
                )
                bundle = (
                    self._subscription_api.get_bundle_from_id(base.bundle_id, context) if base is not None else None
                )
            if base is None or bundle is None or bundle.account_id != source_account_id:
                raise EntitlementApiError.of(
                    ErrorCode.SUB_GET_INVALID_BUNDLE_KEY,
                    f"Invalid bundle key {external_key}",
                    external_key=external_key,
                )

            requested_date = self._date_helper.from_local_date_and_reference_time(
                updated.effective_date, base.start_date, context
            )
            with _store_errors():
                subscriptions = self._subscription_api.get_subscriptions_for_bundle(bundle.id, context)
            states = [
                BlockingState(
                    blockable_id=subscription.id,
                    blockable_type=BlockableType.SUBSCRIPTION,
                    state_name=ENT_STATE_CANCELLED,
                    service=self._service_name,
                    block_change=False,
                    block_entitlement=True,
                    block_billing=True,
                    effective_date=requested_date,
                )
                for subscription in subscriptions
            ]
            for state in states:
                self._ensure_in_order(state, context)

            with _store_errors():
                new_bundle = self._subscription_api.transfer_bundle(
                    source_account_id,
                    dest_account_id,
                    external_key,
                    requested_date,
                    True,
                    cancel_immediately,
                    context,
                )

            failures: List[Tuple[str, Exception]] = []
            for subscription, state in zip(subscriptions, states):
                try:
                    self._append_blocking_state(state, context, bundle_id=bundle.id, supersede_pending=True)
                except Exception as exc:
                    logger.error(
                        "Transfer of bundle %s to account %s (new bundle %s): failed to block subscription %s: %s",
                        bundle.id,
                        dest_account_id,
                        new_bundle.id,
                        subscription.id,
                        exc,
                    )
                    failures.append((subscription.id, exc))

            if failures:
                raise EntitlementApiError.of(
                    ErrorCode.TRANSFER_INCOMPLETE,
                    f"Bundle {bundle.id} was transferred but {len(failures)} subscription(s) were not blocked",
                    new_bundle_id=new_bundle.id,
                    failed_subscription_ids=[subscription_id for subscription_id, _ in failures],
                ) from failures[0][1]

            self._publish(
                EntitlementLifecycleEvent(
                    event_type=LifecycleEventType.BUNDLE_TRANSFERRED,
                    tenant_id=context.tenant_id,
                    account_id=dest_account_id,
                    bundle_id=new_bundle.id,
                    effective_date=requested_date,
                    user_token=call_context.user_token,
                    metadata={
                        "source_account_id": source_account_id,
                        "source_bundle_id": bundle.id,
                        "billing_policy": updated.billing_policy.value if updated.billing_policy else "",
                    },
                )
            )
            logger.info(
                "Transferred bundle %s key=%s from account %s to %s as bundle %s",
                bundle.id,
                external_key,
                source_account_id,
                dest_account_id,
                new_bundle.id,
            )
            return new_bundle.id

        return self._plugin_execution.execute_with_plugin(transfer, plugin_context)

    @staticmethod
    def _cancel_immediately(policy: Optional[BillingActionPolicy]) -> bool:
        if policy == BillingActionPolicy.IMMEDIATE:
            return True
        if policy == BillingActionPolicy.END_OF_TERM:
            return False
        raise EntitlementApiError.of(ErrorCode.SUB_INVALID_BILLING_POLICY, f"Unexpected billing policy {policy}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_entitlement_for_id(self, entitlement_id: str, *, call_context: CallContext) -> Entitlement:
        context = self._context_factory.create_for_subscription(entitlement_id, call_context)
        subscription, bundle = self._load(entitlement_id, context)
        return self._to_entitlement(subscription, bundle, context)

    def get_all_entitlements_for_bundle(self, bundle_id: str, *, call_context: CallContext) -> List[Entitlement]:
        context = self._context_factory.create_for_bundle(bundle_id, call_context)
        return self._entitlements_for_bundle(bundle_id, context)

    def get_all_entitlements_for_account_id(self, account_id: str, *, call_context: CallContext) -> List[Entitlement]:
        context = self._context_factory.create_for_account(account_id, call_context)
        with _store_errors():
            bundles = self._subscription_api.get_bundles_for_account(account_id, context)
        entitlements: List[Entitlement] = []
        for bundle in bundles:
            entitlements.extend(self._entitlements_for_bundle(bundle.id, context, bundle=bundle))
        return entitlements

    def get_all_entitlements_for_account_id_and_external_key(
        self, account_id: str, external_key: str, *, call_context: CallContext
    ) -> List[Entitlement]:
        return [
            entitlement
            for entitlement in self.get_all_entitlements_for_account_id(account_id, call_context=call_context)
            if entitlement.external_key == external_key
        ]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _load(self, subscription_id: str, context: InternalCallContext) -> Tuple[SubscriptionBase, SubscriptionBundle]:
        with _store_errors():
            subscription = self._subscription_api.get_subscription_from_id(subscription_id, context)
            bundle = self._subscription_api.get_bundle_from_id(subscription.bundle_id, context)
        return subscription, bundle

    def _entitlements_for_bundle(
        self,
        bundle_id: str,
        context: InternalCallContext,
        *,
        bundle: Optional[SubscriptionBundle] = None,
    ) -> List[Entitlement]:
        with _store_errors():
            resolved_bundle = bundle or self._subscription_api.get_bundle_from_id(bundle_id, context)
            subscriptions = self._subscription_api.get_subscriptions_for_bundle(bundle_id, context)
        return [self._to_entitlement(subscription, resolved_bundle, context) for subscription in subscriptions]

    def _ensure_key_available(self, external_key: Optional[str], context: InternalCallContext) -> None:
        if self._first_active_subscription_id_for_key(external_key, context) is not None:
            raise EntitlementApiError.of(
                ErrorCode.SUB_CREATE_ACTIVE_BUNDLE_KEY_EXISTS,
                f"An active bundle already exists for key {external_key}",
                external_key=external_key,
            )

    def _first_active_subscription_id_for_key(
        self, external_key: Optional[str], context: InternalCallContext
    ) -> Optional[str]:
        if not external_key:
            return None
        now = self._date_helper.now()
        for bundle in self._subscription_api.get_bundles_for_key(external_key, context):
            for subscription in self._subscription_api.get_subscriptions_for_bundle(bundle.id, context):
                if subscription.is_base and not self._is_cancelled(subscription, context, now):
                    return subscription.id
        return None

    def _ensure_not_cancelled(self, subscription: SubscriptionBase, context: InternalCallContext) -> None:
        if self._is_cancelled(subscription, context, self._date_helper.now()):
            raise EntitlementApiError.of(
                ErrorCode.ENT_ALREADY_CANCELLED,
                f"Entitlement {subscription.id} is already cancelled",
                entitlement_id=subscription.id,
            )

    def _entitlement_cancellation(
        self, subscription: SubscriptionBase, context: InternalCallContext, at: datetime
    ) -> Optional[BlockingState]:
        """Return the ``ENT_CANCELLED`` state in effect for the subscription at ``at``, if any."""

        history = self._blocking_states.get_blocking_states(
            subscription.id, BlockableType.SUBSCRIPTION, context, service=self._service_name
        )
        state = current_state(history, at)
        if state is not None and state.state_name == ENT_STATE_CANCELLED:
            return state
        return None

    def _cancellation_date(self, subscription: SubscriptionBase, context: InternalCallContext) -> Optional[datetime]:
        """Earliest ``ENT_CANCELLED`` date; an earlier cancellation supersedes a pending one."""

        history = self._blocking_states.get_blocking_states(
            subscription.id, BlockableType.SUBSCRIPTION, context, service=self._service_name
        )
        return min(
            (state.effective_date for state in history if state.state_name == ENT_STATE_CANCELLED),
            default=None,
        )

    def _is_cancelled(self, subscription: SubscriptionBase, context: InternalCallContext, at: datetime) -> bool:
        if subscription.is_cancelled_at(at):
            return True
        return self._entitlement_cancellation(subscription, context, at) is not None

    def _entitlement_state(
        self, subscription: SubscriptionBase, context: InternalCallContext, now: datetime
    ) -> EntitlementState:
        if self._is_cancelled(subscription, context, now):
            return EntitlementState.CANCELLED
        if subscription.start_date > now:
            return EntitlementState.PENDING
        if self._checker.get_blocked_state(subscription, context, now).block_entitlement:
            return EntitlementState.BLOCKED
        return EntitlementState.ACTIVE

    def _to_entitlement(
        self, subscription: SubscriptionBase, bundle: SubscriptionBundle, context: InternalCallContext
    ) -> Entitlement:
        now = self._date_helper.now()
        end_dates = [value for value in (subscription.end_date, self._cancellation_date(subscription, context)) if value]
        effective_end_date = min(end_dates) if end_dates else None
        requested_end_date = subscription.future_end_date
        if requested_end_date is None and effective_end_date is not None and effective_end_date > now:
            requested_end_date = effective_end_date
        return Entitlement(
            id=subscription.id,
            account_id=bundle.account_id,
            bundle_id=bundle.id,
            external_key=bundle.external_key,
            state=self._entitlement_state(subscription, context, now),
            product_category=subscription.product_category,
            plan_name=subscription.plan_name,
            phase_name=subscription.phase_name,
            price_list=subscription.price_list,
            effective_start_date=subscription.start_date,
            effective_end_date=effective_end_date,
            requested_end_date=requested_end_date,
        )

    def _append_on_change(self, state: BlockingState, context: InternalCallContext, *, bundle_id: str) -> bool:
        """Append ``state`` unless the directive in effect at its date already matches.

        A directive without any flag is treated as equal to no directive at all.
        """

        history = self._blocking_states.get_blocking_states(
            state.blockable_id, state.blockable_type, context, service=state.service
        )
        effective = current_state(history, state.effective_date)
        if effective is None:
            unchanged = not (state.block_change or state.block_entitlement or state.block_billing)
        else:
            unchanged = effective.same_directive(state)
        if unchanged:
            logger.debug(
                "Blocking state %s already in effect for %s %s",
                state.state_name,
                state.blockable_type.value,
                state.blockable_id,
            )
            return False
        self._append_blocking_state(state, context, bundle_id=bundle_id)
        return True

    def _ensure_in_order(self, state: BlockingState, context: InternalCallContext) -> Optional[datetime]:
        """Reject ``state`` if a later state for the same service is already in effect.

        Later states that are still pending may be preceded; the latest of
        their effective dates is returned, or ``None`` when there are none.
        """

        try:
            history = self._blocking_states.get_blocking_states(
                state.blockable_id, state.blockable_type, context, service=state.service
            )
        except Exception as exc:
            raise EntitlementApiError.wrap(exc) from exc
        now = self._date_helper.now()
        later = [existing.effective_date for existing in history if existing.effective_date > state.effective_date]
        in_effect = [effective for effective in later if effective <= now]
        if in_effect:
            raise EntitlementApiError.of(
                ErrorCode.BLOCK_STATE_OUT_OF_ORDER,
                f"Blocking state for {state.blockable_type.value} {state.blockable_id} would predate "
                f"the state effective {max(in_effect).isoformat()}",
                blockable_id=state.blockable_id,
                blockable_type=state.blockable_type.value,
            )
        return max(later, default=None)

    def _append_blocking_state(
        self,
        state: BlockingState,
        context: InternalCallContext,
        *,
        bundle_id: Optional[str] = None,
        supersede_pending: bool = False,
    ) -> BlockingState:
        """Append ``state`` to the blocking history.

        With ``supersede_pending`` the directive is restated at the date of the
        latest pending state it precedes, so it stays current after that date.
        """

        pending = self._ensure_in_order(state, context)
        try:
            stored = self._blocking_states.append(state, context)
            if supersede_pending and pending is not None:
                self._blocking_states.append(state.model_copy(update={"effective_date": pending}), context)
        except Exception as exc:
            raise EntitlementApiError.wrap(exc) from exc

        self._publish(
            EntitlementLifecycleEvent(
                event_type=LifecycleEventType.BLOCKING_STATE_CHANGED,
                tenant_id=context.tenant_id,
                account_id=context.account_id,
                bundle_id=bundle_id,
                entitlement_id=state.blockable_id if state.blockable_type == BlockableType.SUBSCRIPTION else None,
                blockable_type=state.blockable_type,
                state_name=state.state_name,
                effective_date=state.effective_date,
                user_token=context.call_context.user_token,
                metadata=_blocking_flags(state),
            )
        )
        return stored

    def _publish_entitlement_event(
        self,
        event_type: LifecycleEventType,
        entitlement: Entitlement,
        effective_date: datetime,
        context: InternalCallContext,
    ) -> None:
        self._publish(
            EntitlementLifecycleEvent(
                event_type=event_type,
                tenant_id=context.tenant_id,
                account_id=entitlement.account_id,
                bundle_id=entitlement.bundle_id,
                entitlement_id=entitlement.id,
                effective_date=effective_date,
                user_token=context.call_context.user_token,
                metadata={"state": entitlement.state.value, "plan_name": entitlement.plan_name},
            )
        )

    def _publish(self, event: EntitlementLifecycleEvent) -> None:
        if not self._publish_events:
            return
        try:
            self._event_bus.publish(event)
        except Exception:
            logger.exception(
                "Failed to publish %s event for bundle=%s entitlement=%s",
                event.event_type.value,
                event.bundle_id,
                event.entitlement_id,
            )


def _blocking_flags(state: BlockingState) -> Dict[str, str]:
    return {
        "service": state.service,
        "block_change": str(state.block_change).lower(),
        "block_entitlement": str(state.block_entitlement).lower(),
        "block_billing": str(state.block_billing).lower(),
    }


__all__ = [
    "ENTITLEMENT_SERVICE_NAME",
    "EntitlementApi",
    "EntitlementEventBus",
]
