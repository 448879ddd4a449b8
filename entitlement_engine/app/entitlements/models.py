"""Domain models for entitlements and their lifecycle events."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..blocking.models import BlockableType
from ..subscriptions.models import ProductCategory


class EntitlementState(str, Enum):
    """Externally visible lifecycle state of a subscription."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    BLOCKED = "BLOCKED"
    CANCELLED = "CANCELLED"


class OperationType(str, Enum):
    """Entitlement operations that run through the plugin hooks."""

    CREATE_SUBSCRIPTION = "CREATE_SUBSCRIPTION"
    CREATE_SUBSCRIPTIONS_WITH_AO = "CREATE_SUBSCRIPTIONS_WITH_AO"
    CHANGE_PLAN = "CHANGE_PLAN"
    CANCEL_SUBSCRIPTION = "CANCEL_SUBSCRIPTION"
    PAUSE_BUNDLE = "PAUSE_BUNDLE"
    RESUME_BUNDLE = "RESUME_BUNDLE"
    SET_BLOCKING_STATE = "SET_BLOCKING_STATE"
    TRANSFER_BUNDLE = "TRANSFER_BUNDLE"


class Entitlement(BaseModel):
    """Read model combining subscription data with the derived blocking state."""

    id: str
    account_id: str
    bundle_id: str
    external_key: Optional[str] = None
    state: EntitlementState
    product_category: ProductCategory
    plan_name: str
    phase_name: Optional[str] = None
    price_list: Optional[str] = None
    effective_start_date: datetime
    effective_end_date: Optional[datetime] = None
    requested_end_date: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    @property
    def is_active(self) -> bool:
        return self.state == EntitlementState.ACTIVE


class LifecycleEventType(str, Enum):
    ENTITLEMENT_CREATED = "entitlement.created"
    ENTITLEMENT_CHANGED = "entitlement.changed"
    ENTITLEMENT_CANCELLED = "entitlement.cancelled"
    BUNDLE_PAUSED = "bundle.paused"
    BUNDLE_RESUMED = "bundle.resumed"
    BUNDLE_TRANSFERRED = "bundle.transferred"
    BLOCKING_STATE_CHANGED = "blocking_state.changed"


class EntitlementLifecycleEvent(BaseModel):
    """Informational event announced to downstream consumers after a mutation."""

    event_type: LifecycleEventType
    tenant_id: str
    account_id: Optional[str] = None
    bundle_id: Optional[str] = None
    entitlement_id: Optional[str] = None
    blockable_type: Optional[BlockableType] = None
    state_name: Optional[str] = None
    effective_date: Optional[datetime] = None
    user_token: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)
