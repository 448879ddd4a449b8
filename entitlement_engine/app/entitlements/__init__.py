"""Entitlement operations, date resolution and plugin hooks."""

from .context import InternalCallContextFactory
from .dates import EntitlementDateHelper, resolve
from .models import (
    Entitlement,
    EntitlementLifecycleEvent,
    EntitlementState,
    LifecycleEventType,
    OperationType,
)
from .plugins import (
    AfterHook,
    BeforeHook,
    Continue,
    EntitlementContext,
    EntitlementPluginExecution,
    ShortCircuit,
)
from .service import ENTITLEMENT_SERVICE_NAME, EntitlementApi, EntitlementEventBus

__all__ = [
    "InternalCallContextFactory",
    "EntitlementDateHelper",
    "resolve",
    "Entitlement",
    "EntitlementLifecycleEvent",
    "EntitlementState",
    "LifecycleEventType",
    "OperationType",
    "AfterHook",
    "BeforeHook",
    "Continue",
    "EntitlementContext",
    "EntitlementPluginExecution",
    "ShortCircuit",
    "ENTITLEMENT_SERVICE_NAME",
    "EntitlementApi",
    "EntitlementEventBus",
]
