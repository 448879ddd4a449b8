"""Domain models for blocking directives."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BlockableType(str, Enum):
    """Granularity at which a blocking state applies."""

    ACCOUNT = "ACCOUNT"
    SUBSCRIPTION_BUNDLE = "SUBSCRIPTION_BUNDLE"
    SUBSCRIPTION = "SUBSCRIPTION"


class BlockingAction(str, Enum):
    """Action dimensions a blocking state can restrict."""

    CHANGE = "change"
    ENTITLEMENT = "entitlement"
    BILLING = "billing"


ENT_STATE_BLOCKED = "ENT_BLOCKED"
ENT_STATE_CLEAR = "ENT_CLEAR"
ENT_STATE_CANCELLED = "ENT_CANCELLED"


class BlockingState(BaseModel):
    """Immutable, time-stamped directive restricting a blockable entity."""

    blockable_id: str
    blockable_type: BlockableType
    state_name: str
    service: str
    block_change: bool = False
    block_entitlement: bool = False
    block_billing: bool = False
    effective_date: datetime
    record_id: Optional[int] = None
    created_date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("effective_date", "created_date")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def blocks(self, action: BlockingAction) -> bool:
        """Return whether this state restricts ``action``."""

        if action == BlockingAction.CHANGE:
            return self.block_change
        if action == BlockingAction.ENTITLEMENT:
            return self.block_entitlement
        return self.block_billing

    def same_directive(self, other: "BlockingState") -> bool:
        """Compare the directive content, ignoring identity and timestamps."""

        return (
            self.state_name == other.state_name
            and self.block_change == other.block_change
            and self.block_entitlement == other.block_entitlement
            and self.block_billing == other.block_billing
        )


class BlockingAggregate(BaseModel):
    """OR-combined blocking flags across account, bundle, and subscription levels.

    The ``*_source`` fields name the most specific level asserting each flag so
    that callers can report which entity caused a refusal.
    """

    block_change: bool = False
    block_entitlement: bool = False
    block_billing: bool = False
    change_source: Optional[BlockingState] = None
    entitlement_source: Optional[BlockingState] = None
    billing_source: Optional[BlockingState] = None

    model_config = ConfigDict(frozen=True)

    def blocks(self, action: BlockingAction) -> bool:
        if action == BlockingAction.CHANGE:
            return self.block_change
        if action == BlockingAction.ENTITLEMENT:
            return self.block_entitlement
        return self.block_billing

    def source_for(self, action: BlockingAction) -> Optional[BlockingState]:
        if action == BlockingAction.CHANGE:
            return self.change_source
        if action == BlockingAction.ENTITLEMENT:
            return self.entitlement_source
        return self.billing_source
