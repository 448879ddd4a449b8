"""API routes exposing entitlement lifecycle operations."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from ..blocking.models import BlockableType
from ..callcontext import CallContext
from ..exceptions import EntitlementApiError
from ..schemas.entitlements import (
    AddEntitlementRequest,
    BlockingStateListResponse,
    BlockingStateRequest,
    BlockingStateResponse,
    BundleDateRequest,
    CancelEntitlementRequest,
    ChangePlanRequest,
    CreateEntitlementRequest,
    EntitlementListResponse,
    EntitlementResponse,
    TransferRequest,
    TransferResponse,
)
from ..services.entitlements import get_entitlement_api


def _get_call_context(
    tenant_id: str = Header(alias="X-Tenant-Id"),
    user_name: Optional[str] = Header(default=None, alias="X-User-Name"),
    reason_code: Optional[str] = Header(default=None, alias="X-Reason-Code"),
    comments: Optional[str] = Header(default=None, alias="X-Comment"),
) -> CallContext:
    if not tenant_id.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing tenant id")
    return CallContext(
        tenant_id=tenant_id.strip(),
        user_name=(user_name or "").strip() or "api",
        reason_code=reason_code,
        comments=comments,
    )


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except EntitlementApiError as exc:
        raise exc.to_http_exception() from exc


def _entitlements(items) -> EntitlementListResponse:
    return EntitlementListResponse(entitlements=[EntitlementResponse.from_entitlement(item) for item in items])


router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])


@router.post("", response_model=EntitlementResponse, status_code=status.HTTP_201_CREATED)
def create_entitlement(
    payload: CreateEntitlementRequest,
    *,
    call_context: CallContext = Depends(_get_call_context),
) -> EntitlementResponse:
    api = get_entitlement_api()
    with _translate_errors():
        if payload.add_ons:
            specifiers = [payload.plan.to_entitlement_specifier()]
            specifiers.extend(add_on.to_entitlement_specifier() for add_on in payload.add_ons)
            entitlement = api.create_base_entitlement_with_add_ons(
                payload.account_id,
                payload.external_key,
                specifiers,
                effective_date=payload.effective_date,
                properties=payload.properties,
                call_context=call_context,
            )
        else:
            entitlement = api.create_base_entitlement(
                payload.account_id,
                payload.plan.to_plan_phase_specifier(),
                payload.external_key,
                overrides=payload.plan.overrides,
                effective_date=payload.effective_date,
                properties=payload.properties,
                call_context=call_context,
            )
    return EntitlementResponse.from_entitlement(entitlement)


@router.get("", response_model=EntitlementListResponse)
def list_account_entitlements(
    account_id: str = Query(alias="accountId"),
    external_key: Optional[str] = Query(default=None, alias="externalKey"),
    *,
    call_context: CallContext = Depends(_get_call_context),
) -> EntitlementListResponse:
    api = get_entitlement_api()
    with _translate_errors():
        if external_key:
            items = api.get_all_entitlements_for_account_id_and_external_key(
                account_id, external_key, call_context=call_context
            )
        else:
            items = api.get_all_entitlements_for_account_id(account_id, call_context=call_context)
    return _entitlements(items)


@router.get("/blocking-states", response_model=BlockingStateListResponse)
def list_blocking_states(
    blockable_id: str = Query(alias="blockableId"),
    blockable_type: BlockableType = Query(alias="blockableType"),
    service: Optional[str] = Query(default=None),
    *,
    call_context: CallContext = Depends(_get_call_context),
) -> BlockingStateListResponse:
    api = get_entitlement_api()
    with _translate_errors():
        states = api.get_blocking_states_for_service_and_type(
            blockable_id, blockable_type, service, call_context=call_context
        )
    return BlockingStateListResponse(states=[BlockingStateResponse.from_state(state) for state in states])


@router.post("/transfers", response_model=TransferResponse, status_code=status.HTTP_201_CREATED)
def transfer_bundle(
    payload: TransferRequest,
    *,
    call_context: CallContext = Depends(_get_call_context),
) -> TransferResponse:
    api = get_entitlement_api()
    with _translate_errors():
        if payload.billing_policy is None:
            bundle_id = api.transfer_entitlements(
                payload.source_account_id,
                payload.dest_account_id,
                payload.external_key,
                payload.effective_date,
                properties=payload.properties,
                call_context=call_context,
            )
        else:
            bundle_id = api.transfer_entitlements_override_billing_policy(
                payload.source_account_id,
                payload.dest_account_id,
                payload.external_key,
                payload.effective_date,
                payload.billing_policy,
                properties=payload.properties,
                call_context=call_context,
            )
    return TransferResponse(bundle_id=bundle_id)


@router.get("/bundles/{bundle_id}", response_model=EntitlementListResponse)
def list_bundle_entitlements(
    bundle_id: str,
    *,
    call_context: CallContext = Depends(_get_call_context),
) -> EntitlementListResponse:
    api = get_entitlement_api()
    with _translate_errors():
        items = api.get_all_entitlements_for_bundle(bundle_id, call_context=call_context)
    return _entitlements(items)


@router.post(
    "/bundles/{bundle_id}/entitlements",
    response_model=EntitlementResponse,
    status_code=status.HTTP_201_CREATED,
)
def add_entitlement(
    bundle_id: str,
    payload: AddEntitlementRequest,
    *,
    call_context: CallContext = Depends(_get_call_context),
) -> EntitlementResponse:
    api = get_entitlement_api()
    with _translate_errors():
        entitlement = api.add_entitlement(
            bundle_id,
            payload.plan.to_plan_phase_specifier(),
            overrides=payload.plan.overrides,
            effective_date=payload.effective_date,
            properties=payload.properties,
            call_context=call_context,
        )
    return EntitlementResponse.from_entitlement(entitlement)


@router.post("/bundles/{bundle_id}/pause", response_model=EntitlementListResponse)
def pause_bundle(
    bundle_id: str,
    payload: BundleDateRequest,
    *,
    call_context: CallContext = Depends(_get_call_context),
) -> EntitlementListResponse:
    api = get_entitlement_api()
    with _translate_errors():
        items = api.pause(
            bundle_id,
            payload.effective_date,
            properties=payload.properties,
            call_context=call_context,
        )
    return _entitlements(items)


@router.post("/bundles/{bundle_id}/resume", response_model=EntitlementListResponse)
def resume_bundle(
    bundle_id: str,
    payload: BundleDateRequest,
    *,
    call_context: CallContext = Depends(_get_call_context),
) -> EntitlementListResponse:
    api = get_entitlement_api()
    with _translate_errors():
        items = api.resume(
            bundle_id,
            payload.effective_date,
            properties=payload.properties,
            call_context=call_context,
        )
    return _entitlements(items)


@router.post(
    "/bundles/{bundle_id}/blocking-states",
    response_model=BlockingStateResponse,
    status_code=status.HTTP_201_CREATED,
)
def set_blocking_state(
    bundle_id: str,
    payload: BlockingStateRequest,
    *,
    call_context: CallContext = Depends(_get_call_context),
) -> BlockingStateResponse:
    api = get_entitlement_api()
    with _translate_errors():
        state = api.set_blocking_state(
            bundle_id,
            payload.state_name,
            payload.service,
            effective_date=payload.effective_date,
            block_billing=payload.block_billing,
            block_entitlement=payload.block_entitlement,
            block_change=payload.block_change,
            properties=payload.properties,
            call_context=call_context,
        )
    return BlockingStateResponse.from_state(state)


@router.get("/{entitlement_id}", response_model=EntitlementResponse)
def get_entitlement(
    entitlement_id: str,
    *,
    call_context: CallContext = Depends(_get_call_context),
) -> EntitlementResponse:
    api = get_entitlement_api()
    with _translate_errors():
        entitlement = api.get_entitlement_for_id(entitlement_id, call_context=call_context)
    return EntitlementResponse.from_entitlement(entitlement)


@router.put("/{entitlement_id}/plan", response_model=EntitlementResponse)
def change_plan(
    entitlement_id: str,
    payload: ChangePlanRequest,
    *,
    call_context: CallContext = Depends(_get_call_context),
) -> EntitlementResponse:
    api = get_entitlement_api()
    with _translate_errors():
        if payload.billing_policy is None:
            entitlement = api.change_plan(
                entitlement_id,
                payload.plan.to_plan_phase_specifier(),
                overrides=payload.plan.overrides,
                effective_date=payload.effective_date,
                properties=payload.properties,
                call_context=call_context,
            )
        else:
            entitlement = api.change_plan_override_billing_policy(
                entitlement_id,
                payload.plan.to_plan_phase_specifier(),
                payload.billing_policy,
                overrides=payload.plan.overrides,
                effective_date=payload.effective_date,
                properties=payload.properties,
                call_context=call_context,
            )
    return EntitlementResponse.from_entitlement(entitlement)


@router.post("/{entitlement_id}/cancel", response_model=EntitlementResponse)
def cancel_entitlement(
    entitlement_id: str,
    payload: CancelEntitlementRequest,
    *,
    call_context: CallContext = Depends(_get_call_context),
) -> EntitlementResponse:
    if payload.effective_date is not None and payload.entitlement_policy is not None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Specify either effectiveDate or entitlementPolicy, not both",
        )

    api = get_entitlement_api()
    with _translate_errors():
        if payload.entitlement_policy is not None and payload.billing_policy is not None:
            entitlement = api.cancel_entitlement_with_policy_override_billing_policy(
                entitlement_id,
                payload.entitlement_policy,
                payload.billing_policy,
                properties=payload.properties,
                call_context=call_context,
            )
        elif payload.entitlement_policy is not None:
            entitlement = api.cancel_entitlement_with_policy(
                entitlement_id,
                payload.entitlement_policy,
                properties=payload.properties,
                call_context=call_context,
            )
        elif payload.billing_policy is not None:
            entitlement = api.cancel_entitlement_with_date_override_billing_policy(
                entitlement_id,
                payload.effective_date,
                payload.billing_policy,
                properties=payload.properties,
                call_context=call_context,
            )
        else:
            entitlement = api.cancel_entitlement_with_date(
                entitlement_id,
                payload.effective_date,
                properties=payload.properties,
                call_context=call_context,
            )
    return EntitlementResponse.from_entitlement(entitlement)
