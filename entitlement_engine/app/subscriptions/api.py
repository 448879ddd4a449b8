"""Interfaces of the collaborators that own subscription and account data."""
from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, Sequence
from zoneinfo import ZoneInfo

from ..callcontext import InternalCallContext
from .models import (
    BillingActionPolicy,
    EntitlementSpecifier,
    PlanPhasePriceOverride,
    PlanPhaseSpecifier,
    SubscriptionBase,
    SubscriptionBundle,
)


class SubscriptionBaseInternalApi(Protocol):
    """Subscription store. Implementations raise ``SubscriptionBaseApiError``."""

    def create_bundle_for_account(
        self, account_id: str, external_key: Optional[str], context: InternalCallContext
    ) -> SubscriptionBundle:
        ...

    def create_subscription(
        self,
        bundle_id: str,
        spec: PlanPhaseSpecifier,
        overrides: Sequence[PlanPhasePriceOverride],
        requested_date: datetime,
        context: InternalCallContext,
    ) -> SubscriptionBase:
        ...

    def create_base_subscription_with_add_ons(
        self,
        bundle_id: str,
        specifiers: Sequence[EntitlementSpecifier],
        requested_date: datetime,
        context: InternalCallContext,
    ) -> SubscriptionBase:
        ...

    def change_plan(
        self,
        subscription_id: str,
        spec: PlanPhaseSpecifier,
        overrides: Sequence[PlanPhasePriceOverride],
        requested_date: datetime,
        context: InternalCallContext,
    ) -> SubscriptionBase:
        ...

    def change_plan_with_policy(
        self,
        subscription_id: str,
        spec: PlanPhaseSpecifier,
        overrides: Sequence[PlanPhasePriceOverride],
        requested_date: datetime,
        policy: BillingActionPolicy,
        context: InternalCallContext,
    ) -> SubscriptionBase:
        ...

    def cancel(
        self, subscription_id: str, requested_date: datetime, context: InternalCallContext
    ) -> SubscriptionBase:
        ...

    def cancel_with_policy(
        self,
        subscription_id: str,
        requested_date: datetime,
        policy: BillingActionPolicy,
        context: InternalCallContext,
    ) -> SubscriptionBase:
        ...

    def get_subscription_from_id(
        self, subscription_id: str, context: InternalCallContext
    ) -> SubscriptionBase:
        ...

    def get_subscriptions_for_bundle(
        self, bundle_id: str, context: InternalCallContext
    ) -> Sequence[SubscriptionBase]:
        ...

    def get_base_subscription(self, bundle_id: str, context: InternalCallContext) -> SubscriptionBase:
        ...

    def get_bundle_from_id(self, bundle_id: str, context: InternalCallContext) -> SubscriptionBundle:
        ...

    def get_bundles_for_key(
        self, external_key: str, context: InternalCallContext
    ) -> Sequence[SubscriptionBundle]:
        ...

    def get_bundles_for_account(
        self, account_id: str, context: InternalCallContext
    ) -> Sequence[SubscriptionBundle]:
        ...

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
        ...


class AccountInternalApi(Protocol):
    """Account lookup. Implementations raise ``AccountApiError``."""

    def get_account_record_id(self, account_id: str, tenant_id: str) -> int:
        ...

    def get_account_time_zone(self, account_id: str, tenant_id: str) -> Optional[ZoneInfo]:
        ...
