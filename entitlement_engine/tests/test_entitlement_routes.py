from __future__ import annotations

from datetime import date

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from entitlement_engine.app.blocking import BlockableType
from entitlement_engine.app.entitlements import EntitlementState
from entitlement_engine.app.routes import entitlements as entitlement_routes
from entitlement_engine.app.schemas.entitlements import (
    AddEntitlementRequest,
    BlockingStateListResponse,
    BlockingStateRequest,
    BundleDateRequest,
    CancelEntitlementRequest,
    ChangePlanRequest,
    CreateEntitlementRequest,
    EntitlementListResponse,
    EntitlementResponse,
    PlanSpecifierRequest,
    TransferRequest,
)


@pytest.fixture(autouse=True)
def wired_api(monkeypatch, entitlement_api):
    monkeypatch.setattr(entitlement_routes, "get_entitlement_api", lambda: entitlement_api)
    return entitlement_api


def _create(call_context, key="key-1", add_ons=()):
    payload = CreateEntitlementRequest(
        accountId="acct-1",
        externalKey=key,
        plan=PlanSpecifierRequest(productName="Shotgun"),
        addOns=[PlanSpecifierRequest(productName=name, productCategory="ADD_ON") for name in add_ons],
    )
    return entitlement_routes.create_entitlement(payload, call_context=call_context)


def test_create_and_get_entitlement(call_context):
    created = _create(call_context)

    assert isinstance(created, EntitlementResponse)
    assert created.state == EntitlementState.ACTIVE
    fetched = entitlement_routes.get_entitlement(created.id, call_context=call_context)
    assert fetched.bundle_id == created.bundle_id


def test_create_with_add_ons_uses_bulk_creation(call_context):
    created = _create(call_context, add_ons=("Telescope",))

    listing = entitlement_routes.list_bundle_entitlements(created.bundle_id, call_context=call_context)

    assert isinstance(listing, EntitlementListResponse)
    assert sorted(item.plan_name for item in listing.entitlements) == ["shotgun-monthly", "telescope-monthly"]


def test_duplicate_key_maps_to_conflict(call_context):
    _create(call_context)

    with pytest.raises(HTTPException) as excinfo:
        _create(call_context)

    assert excinfo.value.status_code == 409
    assert excinfo.value.detail["error"] == "sub_create_active_bundle_key_exists"


def test_add_change_and_cancel(call_context):
    created = _create(call_context)

    add_on = entitlement_routes.add_entitlement(
        created.bundle_id,
        AddEntitlementRequest(plan=PlanSpecifierRequest(productName="Telescope", productCategory="ADD_ON")),
        call_context=call_context,
    )
    changed = entitlement_routes.change_plan(
        created.id,
        ChangePlanRequest(plan=PlanSpecifierRequest(productName="Pistol"), billingPolicy="IMMEDIATE"),
        call_context=call_context,
    )
    cancelled = entitlement_routes.cancel_entitlement(
        add_on.id,
        CancelEntitlementRequest(entitlementPolicy="IMMEDIATE"),
        call_context=call_context,
    )

    assert changed.plan_name == "pistol-monthly"
    assert cancelled.state == EntitlementState.CANCELLED


def test_cancel_rejects_date_and_policy_together(call_context):
    created = _create(call_context)

    with pytest.raises(HTTPException) as excinfo:
        entitlement_routes.cancel_entitlement(
            created.id,
            CancelEntitlementRequest(effectiveDate=date(2024, 3, 1), entitlementPolicy="IMMEDIATE"),
            call_context=call_context,
        )

    assert excinfo.value.status_code == 400


def test_pause_resume_and_blocking_states(call_context):
    created = _create(call_context)

    paused = entitlement_routes.pause_bundle(created.bundle_id, BundleDateRequest(), call_context=call_context)
    resumed = entitlement_routes.resume_bundle(created.bundle_id, BundleDateRequest(), call_context=call_context)
    entitlement_routes.set_blocking_state(
        created.bundle_id,
        BlockingStateRequest(stateName="DUNNING", service="dunning-service", blockBilling=True),
        call_context=call_context,
    )
    states = entitlement_routes.list_blocking_states(
        blockable_id=created.bundle_id,
        blockable_type=BlockableType.SUBSCRIPTION_BUNDLE,
        service=None,
        call_context=call_context,
    )

    assert paused.entitlements[0].state == EntitlementState.BLOCKED
    assert resumed.entitlements[0].state == EntitlementState.ACTIVE
    assert isinstance(states, BlockingStateListResponse)
    assert [state.state_name for state in states.states] == ["ENT_BLOCKED", "ENT_CLEAR", "DUNNING"]


def test_transfer_and_account_listing(call_context):
    _create(call_context, key="key-t")

    response = entitlement_routes.transfer_bundle(
        TransferRequest(sourceAccountId="acct-1", destAccountId="acct-2", externalKey="key-t"),
        call_context=call_context,
    )
    listing = entitlement_routes.list_account_entitlements(
        account_id="acct-2", external_key="key-t", call_context=call_context
    )

    assert [item.bundle_id for item in listing.entitlements] == [response.bundle_id]


def test_unknown_entitlement_maps_to_not_found(call_context):
    with pytest.raises(HTTPException) as excinfo:
        entitlement_routes.get_entitlement("sub-missing", call_context=call_context)

    assert excinfo.value.status_code == 404


def test_call_context_from_headers():
    context = entitlement_routes._get_call_context(
        tenant_id=" tenant-9 ", user_name=None, reason_code="MIGRATION", comments=None
    )

    assert context.tenant_id == "tenant-9"
    assert context.user_name == "api"
    assert context.reason_code == "MIGRATION"

    with pytest.raises(HTTPException):
        entitlement_routes._get_call_context(tenant_id="  ", user_name=None, reason_code=None, comments=None)


def test_http_round_trip_uses_tenant_header():
    app = FastAPI()
    app.include_router(entitlement_routes.router)
    client = TestClient(app)

    missing_tenant = client.post("/api/entitlements", json={"accountId": "acct-1", "plan": {"productName": "Shotgun"}})
    created = client.post(
        "/api/entitlements",
        json={"accountId": "acct-1", "externalKey": "key-http", "plan": {"productName": "Shotgun"}},
        headers={"X-Tenant-Id": "tenant-1", "X-User-Name": "ops"},
    )

    assert missing_tenant.status_code == 422
    assert created.status_code == 201
    body = created.json()
    assert body["externalKey"] == "key-http"
    assert body["state"] == "ACTIVE"
