"""Authorization of state-changing operations against the blocking hierarchy."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..callcontext import InternalCallContext
from ..exceptions import BlockingApiError, EntitlementApiError, SubscriptionBaseApiError
from ..subscriptions.api import SubscriptionBaseInternalApi
from ..subscriptions.models import SubscriptionBase
from .models import BlockableType, BlockingAction, BlockingAggregate, BlockingState
from .repository import BlockingStateRepository

logger = logging.getLogger(__name__)

Level = Tuple[BlockableType, str]


def current_state(states: Sequence[BlockingState], at: datetime) -> Optional[BlockingState]:
    """Return the state in effect at ``at`` for a single (blockable, service) history.

    The sort is stable, so among states sharing an effective date the one
    appended last wins.
    """

    effective: Optional[BlockingState] = None
    for state in sorted(states, key=lambda item: item.effective_date):
        if state.effective_date > at:
            break
        effective = state
    return effective


def current_states_by_service(states: Sequence[BlockingState], at: datetime) -> Dict[str, BlockingState]:
    grouped: Dict[str, List[BlockingState]] = {}
    for state in states:
        grouped.setdefault(state.service, []).append(state)
    resolved: Dict[str, BlockingState] = {}
    for service, history in grouped.items():
        state = current_state(history, at)
        if state is not None:
            resolved[service] = state
    return resolved


class BlockingChecker:
    """OR-aggregates blocking flags across subscription, bundle and account."""

    def __init__(
        self,
        blocking_state_repository: BlockingStateRepository,
        subscription_api: SubscriptionBaseInternalApi,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = blocking_state_repository
        self._subscription_api = subscription_api
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def get_blocked_state(
        self,
        subscription: SubscriptionBase,
        context: InternalCallContext,
        at: Optional[datetime] = None,
    ) -> BlockingAggregate:
        account_id = self._account_for_bundle(subscription.bundle_id, context)
        levels: List[Level] = [
            (BlockableType.SUBSCRIPTION, subscription.id),
            (BlockableType.SUBSCRIPTION_BUNDLE, subscription.bundle_id),
            (BlockableType.ACCOUNT, account_id),
        ]
        return self._aggregate(levels, context, at or self._clock())

    def get_blocked_state_for_bundle(
        self,
        bundle_id: str,
        context: InternalCallContext,
        at: Optional[datetime] = None,
    ) -> BlockingAggregate:
        account_id = self._account_for_bundle(bundle_id, context)
        levels: List[Level] = [
            (BlockableType.SUBSCRIPTION_BUNDLE, bundle_id),
            (BlockableType.ACCOUNT, account_id),
        ]
        return self._aggregate(levels, context, at or self._clock())

    def is_blocked_change(self, subscription: SubscriptionBase, context: InternalCallContext) -> bool:
        return self.get_blocked_state(subscription, context).block_change

    def is_blocked_entitlement(self, subscription: SubscriptionBase, context: InternalCallContext) -> bool:
        return self.get_blocked_state(subscription, context).block_entitlement

    def is_blocked_billing(self, subscription: SubscriptionBase, context: InternalCallContext) -> bool:
        return self.get_blocked_state(subscription, context).block_billing

    def check_blocked_change(self, subscription: SubscriptionBase, context: InternalCallContext) -> None:
        self._check(self.get_blocked_state(subscription, context), BlockingAction.CHANGE)

    def check_blocked_entitlement(self, subscription: SubscriptionBase, context: InternalCallContext) -> None:
        self._check(self.get_blocked_state(subscription, context), BlockingAction.ENTITLEMENT)

    def check_blocked_billing(self, subscription: SubscriptionBase, context: InternalCallContext) -> None:
        self._check(self.get_blocked_state(subscription, context), BlockingAction.BILLING)

    def check_blocked_change_for_bundle(self, bundle_id: str, context: InternalCallContext) -> None:
        self._check(self.get_blocked_state_for_bundle(bundle_id, context), BlockingAction.CHANGE)

    def _check(self, aggregate: BlockingAggregate, action: BlockingAction) -> None:
        # A flag is set exactly when its source is.
        source = aggregate.source_for(action)
        if source is None:
            return
        logger.info(
            "Blocked action %s on %s %s (state=%s service=%s)",
            action.value,
            source.blockable_type.value,
            source.blockable_id,
            source.state_name,
            source.service,
        )
        raise BlockingApiError(action.value, source.blockable_type.value, source.blockable_id)

    # Levels are ordered most specific first; the first blocking level is reported.
    def _aggregate(self, levels: Sequence[Level], context: InternalCallContext, at: datetime) -> BlockingAggregate:
        sources: Dict[BlockingAction, Optional[BlockingState]] = {action: None for action in BlockingAction}
        for blockable_type, blockable_id in levels:
            states = self._repository.get_blocking_states(blockable_id, blockable_type, context)
            for state in current_states_by_service(states, at).values():
                for action in BlockingAction:
                    if sources[action] is None and state.blocks(action):
                        sources[action] = state

        return BlockingAggregate(
            block_change=sources[BlockingAction.CHANGE] is not None,
            block_entitlement=sources[BlockingAction.ENTITLEMENT] is not None,
            block_billing=sources[BlockingAction.BILLING] is not None,
            change_source=sources[BlockingAction.CHANGE],
            entitlement_source=sources[BlockingAction.ENTITLEMENT],
            billing_source=sources[BlockingAction.BILLING],
        )

    def _account_for_bundle(self, bundle_id: str, context: InternalCallContext) -> str:
        try:
            return self._subscription_api.get_bundle_from_id(bundle_id, context).account_id
        except SubscriptionBaseApiError as exc:
            raise EntitlementApiError.wrap(exc) from exc
