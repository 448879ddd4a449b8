"""Factory resolving account-scoped operation contexts."""
from __future__ import annotations

from ..callcontext import CallContext, InternalCallContext
from ..exceptions import AccountApiError, EntitlementApiError, SubscriptionBaseApiError
from ..subscriptions.api import AccountInternalApi, SubscriptionBaseInternalApi


class InternalCallContextFactory:
    """Builds :class:`InternalCallContext` values with a valid account record id."""

    def __init__(
        self,
        account_api: AccountInternalApi,
        subscription_api: SubscriptionBaseInternalApi,
    ) -> None:
        self._account_api = account_api
        self._subscription_api = subscription_api

    def create_for_tenant(self, call_context: CallContext) -> InternalCallContext:
        return InternalCallContext.for_tenant(call_context)

    def create_for_account(self, account_id: str, call_context: CallContext) -> InternalCallContext:
        try:
            record_id = self._account_api.get_account_record_id(account_id, call_context.tenant_id)
        except AccountApiError as exc:
            raise EntitlementApiError.wrap(exc) from exc
        return InternalCallContext(
            tenant_id=call_context.tenant_id,
            call_context=call_context,
            account_id=account_id,
            account_record_id=record_id,
        )

    def create_for_bundle(self, bundle_id: str, call_context: CallContext) -> InternalCallContext:
        tenant_context = self.create_for_tenant(call_context)
        try:
            bundle = self._subscription_api.get_bundle_from_id(bundle_id, tenant_context)
        except SubscriptionBaseApiError as exc:
            raise EntitlementApiError.wrap(exc) from exc
        return self.create_for_account(bundle.account_id, call_context)

    def create_for_subscription(self, subscription_id: str, call_context: CallContext) -> InternalCallContext:
        tenant_context = self.create_for_tenant(call_context)
        try:
            subscription = self._subscription_api.get_subscription_from_id(subscription_id, tenant_context)
        except SubscriptionBaseApiError as exc:
            raise EntitlementApiError.wrap(exc) from exc
        return self.create_for_bundle(subscription.bundle_id, call_context)
