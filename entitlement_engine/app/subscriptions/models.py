"""Models exchanged with the subscription store and catalog collaborators."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field


class ProductCategory(str, Enum):
    """Catalog category of a subscribed product."""

    BASE = "BASE"
    ADD_ON = "ADD_ON"
    STANDALONE = "STANDALONE"


class BillingPeriod(str, Enum):
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    ANNUAL = "ANNUAL"
    NO_BILLING_PERIOD = "NO_BILLING_PERIOD"


class PhaseType(str, Enum):
    TRIAL = "TRIAL"
    DISCOUNT = "DISCOUNT"
    FIXEDTERM = "FIXEDTERM"
    EVERGREEN = "EVERGREEN"


class BillingActionPolicy(str, Enum):
    """Governs when the billing effect of a change or cancellation happens."""

    IMMEDIATE = "IMMEDIATE"
    END_OF_TERM = "END_OF_TERM"


class EntitlementActionPolicy(str, Enum):
    """Governs when the entitlement effect of a cancellation happens."""

    IMMEDIATE = "IMMEDIATE"
    END_OF_TERM = "END_OF_TERM"


class SubscriptionBaseState(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"


class PlanPhaseSpecifier(BaseModel):
    """Catalog selector for the plan and phase a subscription should use."""

    product_name: str
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    price_list: str = "DEFAULT"
    product_category: ProductCategory = ProductCategory.BASE
    phase_type: Optional[PhaseType] = None
    plan_name: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class PlanPhasePriceOverride(BaseModel):
    phase_name: str
    currency: str = Field(default="USD", min_length=3, max_length=3)
    fixed_price: Optional[Decimal] = None
    recurring_price: Optional[Decimal] = None

    model_config = ConfigDict(frozen=True)


class EntitlementSpecifier(BaseModel):
    """Request-time pairing of a plan selector with optional price overrides."""

    plan_phase_specifier: PlanPhaseSpecifier
    overrides: Sequence[PlanPhasePriceOverride] = Field(default_factory=tuple)

    model_config = ConfigDict(frozen=True)

    @property
    def is_base(self) -> bool:
        return self.plan_phase_specifier.product_category == ProductCategory.BASE


class SubscriptionBundle(BaseModel):
    id: str
    account_id: str
    external_key: Optional[str] = None
    created_date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)


class SubscriptionBase(BaseModel):
    """Subscription record as owned by the subscription store."""

    id: str
    bundle_id: str
    product_category: ProductCategory = ProductCategory.BASE
    plan_name: str
    phase_name: Optional[str] = None
    price_list: Optional[str] = None
    state: SubscriptionBaseState = SubscriptionBaseState.ACTIVE
    start_date: datetime
    end_date: Optional[datetime] = None
    future_end_date: Optional[datetime] = None
    charged_through_date: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    @property
    def is_base(self) -> bool:
        return self.product_category == ProductCategory.BASE

    def is_cancelled_at(self, at: datetime) -> bool:
        if self.state == SubscriptionBaseState.CANCELLED:
            return True
        return self.end_date is not None and self.end_date <= at
