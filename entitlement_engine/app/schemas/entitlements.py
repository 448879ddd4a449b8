"""API schemas for entitlement endpoints."""
from __future__ import annotations

from datetime import date, datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..blocking.models import BlockableType, BlockingState
from ..entitlements.models import Entitlement, EntitlementState
from ..subscriptions.models import (
    BillingActionPolicy,
    BillingPeriod,
    EntitlementActionPolicy,
    EntitlementSpecifier,
    PhaseType,
    PlanPhasePriceOverride,
    PlanPhaseSpecifier,
    ProductCategory,
)


class PlanSpecifierRequest(BaseModel):
    product_name: str = Field(alias="productName")
    billing_period: BillingPeriod = Field(alias="billingPeriod", default=BillingPeriod.MONTHLY)
    price_list: str = Field(alias="priceList", default="DEFAULT")
    product_category: ProductCategory = Field(alias="productCategory", default=ProductCategory.BASE)
    phase_type: Optional[PhaseType] = Field(alias="phaseType", default=None)
    plan_name: Optional[str] = Field(alias="planName", default=None)
    overrides: List[PlanPhasePriceOverride] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    def to_plan_phase_specifier(self) -> PlanPhaseSpecifier:
        return PlanPhaseSpecifier(
            product_name=self.product_name,
            billing_period=self.billing_period,
            price_list=self.price_list,
            product_category=self.product_category,
            phase_type=self.phase_type,
            plan_name=self.plan_name,
        )

    def to_entitlement_specifier(self) -> EntitlementSpecifier:
        return EntitlementSpecifier(
            plan_phase_specifier=self.to_plan_phase_specifier(),
            overrides=tuple(self.overrides),
        )


class CreateEntitlementRequest(BaseModel):
    account_id: str = Field(alias="accountId")
    external_key: Optional[str] = Field(alias="externalKey", default=None)
    plan: PlanSpecifierRequest
    add_ons: List[PlanSpecifierRequest] = Field(alias="addOns", default_factory=list)
    effective_date: Optional[date] = Field(alias="effectiveDate", default=None)
    properties: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class AddEntitlementRequest(BaseModel):
    plan: PlanSpecifierRequest
    effective_date: Optional[date] = Field(alias="effectiveDate", default=None)
    properties: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class ChangePlanRequest(BaseModel):
    plan: PlanSpecifierRequest
    effective_date: Optional[date] = Field(alias="effectiveDate", default=None)
    billing_policy: Optional[BillingActionPolicy] = Field(alias="billingPolicy", default=None)
    properties: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class CancelEntitlementRequest(BaseModel):
    """Either ``effectiveDate`` or ``entitlementPolicy`` selects the cancel date."""

    effective_date: Optional[date] = Field(alias="effectiveDate", default=None)
    entitlement_policy: Optional[EntitlementActionPolicy] = Field(alias="entitlementPolicy", default=None)
    billing_policy: Optional[BillingActionPolicy] = Field(alias="billingPolicy", default=None)
    properties: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class BundleDateRequest(BaseModel):
    effective_date: Optional[date] = Field(alias="effectiveDate", default=None)
    properties: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class BlockingStateRequest(BaseModel):
    state_name: str = Field(alias="stateName", min_length=1)
    service: str = Field(min_length=1)
    effective_date: Optional[date] = Field(alias="effectiveDate", default=None)
    block_change: bool = Field(alias="blockChange", default=False)
    block_entitlement: bool = Field(alias="blockEntitlement", default=False)
    block_billing: bool = Field(alias="blockBilling", default=False)
    properties: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class TransferRequest(BaseModel):
    source_account_id: str = Field(alias="sourceAccountId")
    dest_account_id: str = Field(alias="destAccountId")
    external_key: str = Field(alias="externalKey")
    effective_date: Optional[date] = Field(alias="effectiveDate", default=None)
    billing_policy: Optional[BillingActionPolicy] = Field(alias="billingPolicy", default=None)
    properties: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class EntitlementResponse(BaseModel):
    id: str
    account_id: str = Field(alias="accountId")
    bundle_id: str = Field(alias="bundleId")
    external_key: Optional[str] = Field(alias="externalKey", default=None)
    state: EntitlementState
    product_category: ProductCategory = Field(alias="productCategory")
    plan_name: str = Field(alias="planName")
    phase_name: Optional[str] = Field(alias="phaseName", default=None)
    price_list: Optional[str] = Field(alias="priceList", default=None)
    effective_start_date: datetime = Field(alias="effectiveStartDate")
    effective_end_date: Optional[datetime] = Field(alias="effectiveEndDate", default=None)
    requested_end_date: Optional[datetime] = Field(alias="requestedEndDate", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_entitlement(cls, entitlement: Entitlement) -> "EntitlementResponse":
        return cls(**entitlement.model_dump())


class EntitlementListResponse(BaseModel):
    entitlements: List[EntitlementResponse]


class BlockingStateResponse(BaseModel):
    blockable_id: str = Field(alias="blockableId")
    blockable_type: BlockableType = Field(alias="blockableType")
    state_name: str = Field(alias="stateName")
    service: str
    block_change: bool = Field(alias="blockChange")
    block_entitlement: bool = Field(alias="blockEntitlement")
    block_billing: bool = Field(alias="blockBilling")
    effective_date: datetime = Field(alias="effectiveDate")
    record_id: Optional[int] = Field(alias="recordId", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_state(cls, state: BlockingState) -> "BlockingStateResponse":
        return cls(
            blockable_id=state.blockable_id,
            blockable_type=state.blockable_type,
            state_name=state.state_name,
            service=state.service,
            block_change=state.block_change,
            block_entitlement=state.block_entitlement,
            block_billing=state.block_billing,
            effective_date=state.effective_date,
            record_id=state.record_id,
        )


class BlockingStateListResponse(BaseModel):
    states: List[BlockingStateResponse]


class TransferResponse(BaseModel):
    bundle_id: str = Field(alias="bundleId")

    model_config = ConfigDict(populate_by_name=True)
