"""In-memory collaborators shared by the entitlement tests."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Dict, List, Optional, Sequence, Set, Tuple, Union
from zoneinfo import ZoneInfo

import pytest

from entitlement_engine.app.blocking import BlockingState, InMemoryBlockingStateRepository
from entitlement_engine.app.callcontext import CallContext, InternalCallContext
from entitlement_engine.app.entitlements import (
    EntitlementApi,
    EntitlementLifecycleEvent,
    EntitlementPluginExecution,
)
from entitlement_engine.app.exceptions import AccountApiError, ErrorCode, SubscriptionBaseApiError
from entitlement_engine.app.subscriptions import (
    BillingActionPolicy,
    EntitlementSpecifier,
    PlanPhasePriceOverride,
    PlanPhaseSpecifier,
    ProductCategory,
    SubscriptionBase,
    SubscriptionBaseState,
    SubscriptionBundle,
)

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


class FakeSubscriptionBaseApi:
    def __init__(self) -> None:
        self.bundles: Dict[str, SubscriptionBundle] = {}
        self.subscriptions: Dict[str, SubscriptionBase] = {}
        self.calls: List[Tuple[str, tuple]] = []
        self._bundle_ids = count(1)
        self._subscription_ids = count(1)

    # -- creation -------------------------------------------------------
    def create_bundle_for_account(
        self, account_id: str, external_key: Optional[str], context: InternalCallContext
    ) -> SubscriptionBundle:
        bundle = SubscriptionBundle(id=f"bundle-{next(self._bundle_ids)}", account_id=account_id, external_key=external_key)
        self.bundles[bundle.id] = bundle
        self.calls.append(("create_bundle_for_account", (account_id, external_key)))
        return bundle

    def create_subscription(
        self,
        bundle_id: str,
        spec: PlanPhaseSpecifier,
        overrides: Sequence[PlanPhasePriceOverride],
        requested_date: datetime,
        context: InternalCallContext,
    ) -> SubscriptionBase:
        self._require_bundle(bundle_id)
        subscription = SubscriptionBase(
            id=f"sub-{next(self._subscription_ids)}",
            bundle_id=bundle_id,
            product_category=spec.product_category,
            plan_name=_plan_name(spec),
            phase_name=f"{_plan_name(spec)}-evergreen",
            price_list=spec.price_list,
            start_date=requested_date,
        )
        self.subscriptions[subscription.id] = subscription
        self.calls.append(("create_subscription", (bundle_id, subscription.plan_name, requested_date)))
        return subscription

    def create_base_subscription_with_add_ons(
        self,
        bundle_id: str,
        specifiers: Sequence[EntitlementSpecifier],
        requested_date: datetime,
        context: InternalCallContext,
    ) -> SubscriptionBase:
        ordered = sorted(specifiers, key=lambda specifier: not specifier.is_base)
        created = [
            self.create_subscription(bundle_id, specifier.plan_phase_specifier, specifier.overrides, requested_date, context)
            for specifier in ordered
        ]
        return created[0]

    # -- mutation -------------------------------------------------------
    def change_plan(
        self,
        subscription_id: str,
        spec: PlanPhaseSpecifier,
        overrides: Sequence[PlanPhasePriceOverride],
        requested_date: datetime,
        context: InternalCallContext,
    ) -> SubscriptionBase:
        return self._change(subscription_id, spec, requested_date, None)

    def change_plan_with_policy(
        self,
        subscription_id: str,
        spec: PlanPhaseSpecifier,
        overrides: Sequence[PlanPhasePriceOverride],
        requested_date: datetime,
        policy: BillingActionPolicy,
        context: InternalCallContext,
    ) -> SubscriptionBase:
        return self._change(subscription_id, spec, requested_date, policy)

    def _change(
        self,
        subscription_id: str,
        spec: PlanPhaseSpecifier,
        requested_date: datetime,
        policy: Optional[BillingActionPolicy],
    ) -> SubscriptionBase:
        subscription = self._require_subscription(subscription_id)
        updated = subscription.model_copy(
            update={"plan_name": _plan_name(spec), "phase_name": f"{_plan_name(spec)}-evergreen"}
        )
        self.subscriptions[subscription_id] = updated
        self.calls.append(("change_plan", (subscription_id, updated.plan_name, requested_date, policy)))
        return updated

    def cancel(self, subscription_id: str, requested_date: datetime, context: InternalCallContext) -> bool:
        return self._cancel(subscription_id, requested_date, None)

    def cancel_with_policy(
        self,
        subscription_id: str,
        requested_date: datetime,
        policy: BillingActionPolicy,
        context: InternalCallContext,
    ) -> bool:
        return self._cancel(subscription_id, requested_date, policy)

    def _cancel(self, subscription_id: str, requested_date: datetime, policy: Optional[BillingActionPolicy]) -> bool:
        subscription = self._require_subscription(subscription_id)
        self.subscriptions[subscription_id] = subscription.model_copy(update={"end_date": requested_date})
        self.calls.append(("cancel", (subscription_id, requested_date, policy)))
        return True

    def transfer_bundle(
        self,
        source_account_id: str,
        dest_account_id: str,
        external_key: str,
        requested_date: datetime,
        transfer_add_ons: bool,
        cancel_immediately: bool,
        context: InternalCallContext,
    ) -> SubscriptionBundle:
        self.calls.append(
            (
                "transfer_bundle",
                (source_account_id, dest_account_id, external_key, requested_date, transfer_add_ons, cancel_immediately),
            )
        )
        source = next(
            bundle
            for bundle in self.bundles.values()
            if bundle.external_key == external_key and bundle.account_id == source_account_id
        )
        new_bundle = self.create_bundle_for_account(dest_account_id, external_key, context)
        for subscription in list(self.get_subscriptions_for_bundle(source.id, context)):
            if subscription.end_date is not None:
                continue
            if transfer_add_ons or subscription.is_base:
                copy = subscription.model_copy(
                    update={
                        "id": f"sub-{next(self._subscription_ids)}",
                        "bundle_id": new_bundle.id,
                        "start_date": requested_date,
                    }
                )
                self.subscriptions[copy.id] = copy
            end_date = requested_date if cancel_immediately else (subscription.charged_through_date or requested_date)
            self.subscriptions[subscription.id] = subscription.model_copy(update={"end_date": end_date})
        return new_bundle

    # -- queries --------------------------------------------------------
    def get_subscription_from_id(self, subscription_id: str, context: InternalCallContext) -> SubscriptionBase:
        return self._require_subscription(subscription_id)

    def get_subscriptions_for_bundle(self, bundle_id: str, context: InternalCallContext) -> List[SubscriptionBase]:
        return [subscription for subscription in self.subscriptions.values() if subscription.bundle_id == bundle_id]

    def get_base_subscription(self, bundle_id: str, context: InternalCallContext) -> SubscriptionBase:
        for subscription in self.get_subscriptions_for_bundle(bundle_id, context):
            if subscription.is_base:
                return subscription
        raise SubscriptionBaseApiError(ErrorCode.SUB_GET_NO_SUCH_BASE_SUBSCRIPTION, f"No base subscription for {bundle_id}")

    def get_bundle_from_id(self, bundle_id: str, context: InternalCallContext) -> SubscriptionBundle:
        return self._require_bundle(bundle_id)

    def get_bundles_for_key(self, external_key: str, context: InternalCallContext) -> List[SubscriptionBundle]:
        return [bundle for bundle in self.bundles.values() if bundle.external_key == external_key]

    def get_bundles_for_account(self, account_id: str, context: InternalCallContext) -> List[SubscriptionBundle]:
        return [bundle for bundle in self.bundles.values() if bundle.account_id == account_id]

    # -- test helpers ---------------------------------------------------
    def set_charged_through(self, subscription_id: str, charged_through: datetime) -> None:
        subscription = self._require_subscription(subscription_id)
        self.subscriptions[subscription_id] = subscription.model_copy(update={"charged_through_date": charged_through})

    def mark_cancelled(self, subscription_id: str) -> None:
        subscription = self._require_subscription(subscription_id)
        self.subscriptions[subscription_id] = subscription.model_copy(update={"state": SubscriptionBaseState.CANCELLED})

    def _require_bundle(self, bundle_id: str) -> SubscriptionBundle:
        bundle = self.bundles.get(bundle_id)
        if bundle is None:
            raise SubscriptionBaseApiError(ErrorCode.ENT_NOT_FOUND, f"Unknown bundle {bundle_id}")
        return bundle

    def _require_subscription(self, subscription_id: str) -> SubscriptionBase:
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            raise SubscriptionBaseApiError(ErrorCode.ENT_NOT_FOUND, f"Unknown subscription {subscription_id}")
        return subscription


def _plan_name(spec: PlanPhaseSpecifier) -> str:
    return spec.plan_name or f"{spec.product_name.lower()}-{spec.billing_period.value.lower()}"


class FakeAccountApi:
    def __init__(self) -> None:
        self.accounts: Dict[str, Tuple[int, Union[ZoneInfo, str, None]]] = {}
        self._record_ids = count(100)

    def add(self, account_id: str, time_zone: Union[str, None] = "UTC") -> None:
        zone: Union[ZoneInfo, str, None] = time_zone
        if time_zone is not None and time_zone in {"UTC", "America/New_York", "America/Los_Angeles", "Asia/Tokyo"}:
            zone = ZoneInfo(time_zone)
        self.accounts[account_id] = (next(self._record_ids), zone)

    def get_account_record_id(self, account_id: str, tenant_id: str) -> int:
        if account_id not in self.accounts:
            raise AccountApiError(account_id)
        return self.accounts[account_id][0]

    def get_account_time_zone(self, account_id: str, tenant_id: str):
        if account_id not in self.accounts:
            raise AccountApiError(account_id)
        return self.accounts[account_id][1]


class RecordingEventBus:
    def __init__(self, *, fail: bool = False) -> None:
        self.events: List[EntitlementLifecycleEvent] = []
        self.fail = fail

    def publish(self, event: EntitlementLifecycleEvent) -> None:
        if self.fail:
            raise ConnectionError("event bus unavailable")
        self.events.append(event)

    def of_type(self, event_type) -> List[EntitlementLifecycleEvent]:
        return [event for event in self.events if event.event_type == event_type]


class FlakyBlockingStateRepository(InMemoryBlockingStateRepository):
    """Fails appends for the configured blockable ids."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_for: Set[str] = set()

    def append(self, state: BlockingState, context: InternalCallContext) -> BlockingState:
        if state.blockable_id in self.fail_for:
            raise RuntimeError(f"database unavailable for {state.blockable_id}")
        return super().append(state, context)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def subscription_api() -> FakeSubscriptionBaseApi:
    return FakeSubscriptionBaseApi()


@pytest.fixture
def account_api() -> FakeAccountApi:
    accounts = FakeAccountApi()
    accounts.add("acct-1", "UTC")
    accounts.add("acct-2", "America/Los_Angeles")
    return accounts


@pytest.fixture
def blocking_repository() -> FlakyBlockingStateRepository:
    return FlakyBlockingStateRepository()


@pytest.fixture
def event_bus() -> RecordingEventBus:
    return RecordingEventBus()


@pytest.fixture
def plugin_execution() -> EntitlementPluginExecution:
    return EntitlementPluginExecution()


@pytest.fixture
def call_context() -> CallContext:
    return CallContext(tenant_id="tenant-1", user_name="tester")


@pytest.fixture
def tenant_context(call_context) -> InternalCallContext:
    return InternalCallContext(tenant_id="tenant-1", call_context=call_context, account_id="acct-1", account_record_id=100)


@pytest.fixture
def entitlement_api(subscription_api, account_api, blocking_repository, event_bus, plugin_execution, clock) -> EntitlementApi:
    return EntitlementApi(
        subscription_api=subscription_api,
        account_api=account_api,
        blocking_state_repository=blocking_repository,
        event_bus=event_bus,
        plugin_execution=plugin_execution,
        clock=clock,
    )


@pytest.fixture
def base_spec() -> PlanPhaseSpecifier:
    return PlanPhaseSpecifier(product_name="Shotgun", price_list="DEFAULT")


@pytest.fixture
def add_on_spec() -> PlanPhaseSpecifier:
    return PlanPhaseSpecifier(product_name="Telescope", product_category=ProductCategory.ADD_ON)


@pytest.fixture
def failing_event_bus() -> RecordingEventBus:
    return RecordingEventBus(fail=True)
