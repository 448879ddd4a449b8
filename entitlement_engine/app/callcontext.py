"""Immutable call identity threaded through every collaborator call."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class CallContext(BaseModel):
    """Tenant and caller identity supplied by the API consumer."""

    tenant_id: str
    user_name: str = "system"
    user_token: str = Field(default_factory=lambda: uuid4().hex)
    reason_code: Optional[str] = None
    comments: Optional[str] = None
    created_date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)


class InternalCallContext(BaseModel):
    """Operation context scoped to a tenant and, once resolved, an account."""

    tenant_id: str
    call_context: CallContext
    account_id: Optional[str] = None
    account_record_id: Optional[int] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def for_tenant(cls, call_context: CallContext) -> "InternalCallContext":
        return cls(tenant_id=call_context.tenant_id, call_context=call_context)
