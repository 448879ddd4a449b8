"""Application wiring for the entitlement API."""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

from ..blocking.repository import BlockingStateRepository, PostgresBlockingStateRepository
from ..entitlements import (
    EntitlementApi,
    EntitlementEventBus,
    EntitlementLifecycleEvent,
    EntitlementPluginExecution,
)
from ..subscriptions import AccountInternalApi, SubscriptionBaseInternalApi
from ...config import load_engine_config


logger = logging.getLogger("entitlements")

_subscription_api: Optional[SubscriptionBaseInternalApi] = None
_account_api: Optional[AccountInternalApi] = None
_event_bus: Optional[EntitlementEventBus] = None
_blocking_state_repository: Optional[BlockingStateRepository] = None
_plugin_execution: Optional[EntitlementPluginExecution] = None


class LoggingEventBus(EntitlementEventBus):
    """Event bus that records lifecycle events to the application logger."""

    def publish(self, event: EntitlementLifecycleEvent) -> None:
        logger.info(
            "Entitlement event %s tenant=%s account=%s bundle=%s entitlement=%s state=%s effective=%s metadata=%s",
            event.event_type.value,
            event.tenant_id,
            event.account_id,
            event.bundle_id,
            event.entitlement_id,
            event.state_name,
            event.effective_date.isoformat() if event.effective_date else None,
            event.metadata,
        )


def configure_collaborators(
    *,
    subscription_api: SubscriptionBaseInternalApi,
    account_api: AccountInternalApi,
    event_bus: Optional[EntitlementEventBus] = None,
    blocking_state_repository: Optional[BlockingStateRepository] = None,
    plugin_execution: Optional[EntitlementPluginExecution] = None,
) -> None:
    """Register the external collaborators the entitlement API runs against."""

    global _subscription_api, _account_api, _event_bus, _blocking_state_repository, _plugin_execution

    _subscription_api = subscription_api
    _account_api = account_api
    _event_bus = event_bus
    _blocking_state_repository = blocking_state_repository
    _plugin_execution = plugin_execution
    get_entitlement_api.cache_clear()


def reset_collaborators() -> None:
    global _subscription_api, _account_api, _event_bus, _blocking_state_repository, _plugin_execution

    _subscription_api = None
    _account_api = None
    _event_bus = None
    _blocking_state_repository = None
    _plugin_execution = None
    get_entitlement_api.cache_clear()


@lru_cache(maxsize=1)
def get_entitlement_api() -> EntitlementApi:
    if _subscription_api is None or _account_api is None:
        raise RuntimeError("Entitlement collaborators have not been configured yet")

    config = load_engine_config()
    api = EntitlementApi(
        subscription_api=_subscription_api,
        account_api=_account_api,
        blocking_state_repository=_blocking_state_repository or PostgresBlockingStateRepository(),
        event_bus=_event_bus or LoggingEventBus(),
        plugin_execution=_plugin_execution,
        service_name=config.service_name,
        default_time_zone=config.default_time_zone,
        publish_events=config.events_enabled,
    )
    return api


__all__ = [
    "LoggingEventBus",
    "configure_collaborators",
    "get_entitlement_api",
    "reset_collaborators",
]
