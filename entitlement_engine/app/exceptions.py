"""Error taxonomy shared by the entitlement and blocking packages."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


class ErrorCode(str, Enum):
    """Stable identifiers for every failure surfaced by the engine."""

    SUB_CREATE_ACTIVE_BUNDLE_KEY_EXISTS = "sub_create_active_bundle_key_exists"
    SUB_CREATE_NO_BP = "sub_create_no_bp"
    SUB_CREATE_INVALID_ENTITLEMENT_SPECIFIER = "sub_create_invalid_entitlement_specifier"
    SUB_GET_NO_SUCH_BASE_SUBSCRIPTION = "sub_get_no_such_base_subscription"
    SUB_GET_INVALID_BUNDLE_KEY = "sub_get_invalid_bundle_key"
    SUB_INVALID_BILLING_POLICY = "sub_invalid_billing_policy"
    ENT_ALREADY_CANCELLED = "ent_already_cancelled"
    ENT_NOT_FOUND = "ent_not_found"
    BLOCK_BLOCKED_ACTION = "block_blocked_action"
    BLOCK_STATE_OUT_OF_ORDER = "block_state_out_of_order"
    ACCOUNT_TIMEZONE_UNRESOLVED = "account_timezone_unresolved"
    STORE_FAILURE = "store_failure"
    TRANSFER_INCOMPLETE = "transfer_incomplete"
    PLUGIN_POST_COMMIT_FAILURE = "plugin_post_commit_failure"


_STATUS_BY_CODE: Dict[ErrorCode, int] = {
    ErrorCode.SUB_CREATE_ACTIVE_BUNDLE_KEY_EXISTS: status.HTTP_409_CONFLICT,
    ErrorCode.SUB_GET_NO_SUCH_BASE_SUBSCRIPTION: status.HTTP_404_NOT_FOUND,
    ErrorCode.SUB_GET_INVALID_BUNDLE_KEY: status.HTTP_404_NOT_FOUND,
    ErrorCode.ENT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.ENT_ALREADY_CANCELLED: status.HTTP_409_CONFLICT,
    ErrorCode.BLOCK_BLOCKED_ACTION: status.HTTP_409_CONFLICT,
    ErrorCode.STORE_FAILURE: status.HTTP_502_BAD_GATEWAY,
    ErrorCode.TRANSFER_INCOMPLETE: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.PLUGIN_POST_COMMIT_FAILURE: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class SubscriptionBaseApiError(Exception):
    """Raised by the subscription store collaborator."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class AccountApiError(Exception):
    """Raised by the account lookup collaborator."""

    def __init__(self, account_id: str, message: str = "Account not found") -> None:
        super().__init__(f"{message}: {account_id}")
        self.account_id = account_id


@dataclass
class EntitlementApiError(Exception):
    """Typed failure returned by every public entitlement operation."""

    code: ErrorCode
    message: str
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code.value, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @classmethod
    def of(cls, code: ErrorCode, message: str, **detail: Any) -> "EntitlementApiError":
        return cls(
            code=code,
            message=message,
            status_code=_STATUS_BY_CODE.get(code, status.HTTP_400_BAD_REQUEST),
            detail=detail or None,
        )

    @classmethod
    def wrap(cls, exc: Exception) -> "EntitlementApiError":
        """Translate a collaborator failure, keeping its code when it has one.

        Callers raise the result ``from exc`` so the cause stays attached.
        """

        if isinstance(exc, EntitlementApiError):
            return exc
        code = getattr(exc, "code", None)
        if not isinstance(code, ErrorCode):
            code = ErrorCode.STORE_FAILURE
        return cls.of(code, str(exc))

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class BlockingApiError(EntitlementApiError):
    """An operation was refused because a blocking state forbids it."""

    def __init__(self, action: str, blockable_type: str, blockable_id: str) -> None:
        self.action = action
        self.blockable_type = blockable_type
        self.blockable_id = blockable_id
        super().__init__(
            code=ErrorCode.BLOCK_BLOCKED_ACTION,
            message=f"The action {action} is blocked on this {blockable_type} with id={blockable_id}",
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "action": action,
                "blockable_type": blockable_type,
                "blockable_id": blockable_id,
            },
        )


class EntitlementPluginPostCommitError(EntitlementApiError):
    """An after-hook failed once the wrapped operation had already committed."""

    def __init__(self, operation: str, hook: str, result: Any) -> None:
        self.result = result
        self.hook = hook
        super().__init__(
            code=ErrorCode.PLUGIN_POST_COMMIT_FAILURE,
            message=f"After-hook {hook} failed for committed operation {operation}",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"operation": operation, "hook": hook},
        )


__all__ = [
    "AccountApiError",
    "BlockingApiError",
    "EntitlementApiError",
    "EntitlementPluginPostCommitError",
    "ErrorCode",
    "SubscriptionBaseApiError",
]
