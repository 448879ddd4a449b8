"""Ordered before/after hooks wrapped around every mutating entitlement operation."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field

from ..callcontext import CallContext
from ..exceptions import EntitlementPluginPostCommitError
from ..subscriptions.models import BillingActionPolicy, EntitlementSpecifier
from .models import OperationType

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EntitlementContext(BaseModel):
    """Immutable request value handed from hook to hook.

    Hooks rewrite parameters by returning ``Continue(context.model_copy(update=...))``.
    """

    operation_type: OperationType
    call_context: CallContext
    account_id: Optional[str] = None
    dest_account_id: Optional[str] = None
    bundle_id: Optional[str] = None
    entitlement_id: Optional[str] = None
    external_key: Optional[str] = None
    entitlement_specifiers: Sequence[EntitlementSpecifier] = Field(default_factory=tuple)
    effective_date: Optional[date] = None
    billing_policy: Optional[BillingActionPolicy] = None
    properties: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


@dataclass(frozen=True)
class Continue:
    """Proceed with the (possibly rewritten) context."""

    context: EntitlementContext


@dataclass(frozen=True)
class ShortCircuit(Generic[T]):
    """Return ``result`` to the caller without running the wrapped operation."""

    result: T


PriorCallResult = Union[Continue, ShortCircuit]
BeforeHook = Callable[[EntitlementContext], Optional[PriorCallResult]]
AfterHook = Callable[[EntitlementContext, Any], None]


def _hook_name(hook: Callable[..., Any]) -> str:
    return getattr(hook, "__qualname__", None) or type(hook).__name__


class EntitlementPluginExecution:
    """Runs before hooks, the wrapped operation, then after hooks.

    A before-hook failure propagates and the operation never runs. An
    after-hook failure cannot undo the committed operation: it is raised as
    :class:`EntitlementPluginPostCommitError`, which carries the result.
    """

    def __init__(
        self,
        before_hooks: Sequence[BeforeHook] = (),
        after_hooks: Sequence[AfterHook] = (),
    ) -> None:
        self._before_hooks: List[BeforeHook] = list(before_hooks)
        self._after_hooks: List[AfterHook] = list(after_hooks)

    def register_before(self, hook: BeforeHook) -> None:
        self._before_hooks.append(hook)

    def register_after(self, hook: AfterHook) -> None:
        self._after_hooks.append(hook)

    def execute_with_plugin(self, operation: Callable[[EntitlementContext], T], context: EntitlementContext) -> T:
        current = context
        for hook in tuple(self._before_hooks):
            outcome = hook(current)
            if outcome is None:
                continue
            if isinstance(outcome, ShortCircuit):
                logger.info(
                    "Operation %s short-circuited by before-hook %s",
                    current.operation_type.value,
                    _hook_name(hook),
                )
                return outcome.result
            if isinstance(outcome, Continue):
                current = outcome.context
                continue
            raise TypeError(f"Unsupported before-hook outcome {outcome!r} from {_hook_name(hook)}")

        result = operation(current)

        for hook in tuple(self._after_hooks):
            try:
                hook(current, result)
            except Exception as exc:
                logger.warning(
                    "After-hook %s failed for committed operation %s: %s",
                    _hook_name(hook),
                    current.operation_type.value,
                    exc,
                )
                raise EntitlementPluginPostCommitError(
                    current.operation_type.value, _hook_name(hook), result
                ) from exc
        return result
