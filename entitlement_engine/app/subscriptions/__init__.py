"""Models and interfaces of the subscription store collaborator."""

from .api import AccountInternalApi, SubscriptionBaseInternalApi
from .models import (
    BillingActionPolicy,
    BillingPeriod,
    EntitlementActionPolicy,
    EntitlementSpecifier,
    PhaseType,
    PlanPhasePriceOverride,
    PlanPhaseSpecifier,
    ProductCategory,
    SubscriptionBase,
    SubscriptionBaseState,
    SubscriptionBundle,
)

__all__ = [
    "AccountInternalApi",
    "BillingActionPolicy",
    "BillingPeriod",
    "EntitlementActionPolicy",
    "EntitlementSpecifier",
    "PhaseType",
    "PlanPhasePriceOverride",
    "PlanPhaseSpecifier",
    "ProductCategory",
    "SubscriptionBase",
    "SubscriptionBaseInternalApi",
    "SubscriptionBaseState",
    "SubscriptionBundle",
]
