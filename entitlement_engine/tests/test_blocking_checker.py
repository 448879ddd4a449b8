from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from entitlement_engine.app.blocking import (
    BlockableType,
    BlockingChecker,
    BlockingState,
    InMemoryBlockingStateRepository,
    current_state,
)
from entitlement_engine.app.exceptions import BlockingApiError, EntitlementApiError, ErrorCode
from entitlement_engine.app.subscriptions import PlanPhaseSpecifier

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


def _state(blockable_id, blockable_type, *, service="svc", name="S", effective=NOW, **flags) -> BlockingState:
    return BlockingState(
        blockable_id=blockable_id,
        blockable_type=blockable_type,
        state_name=name,
        service=service,
        effective_date=effective,
        **flags,
    )


@pytest.fixture
def subscription(subscription_api, tenant_context):
    bundle = subscription_api.create_bundle_for_account("acct-1", "key-1", tenant_context)
    return subscription_api.create_subscription(
        bundle.id,
        PlanPhaseSpecifier(product_name="Shotgun"),
        (),
        NOW - timedelta(days=30),
        tenant_context,
    )


@pytest.fixture
def repository() -> InMemoryBlockingStateRepository:
    return InMemoryBlockingStateRepository()


@pytest.fixture
def checker(repository, subscription_api) -> BlockingChecker:
    return BlockingChecker(repository, subscription_api, clock=lambda: NOW)


def test_current_state_prefers_last_inserted_on_tied_dates():
    first = _state("b-1", BlockableType.SUBSCRIPTION_BUNDLE, name="FIRST", block_change=True)
    second = _state("b-1", BlockableType.SUBSCRIPTION_BUNDLE, name="SECOND")

    assert current_state([first, second], NOW).state_name == "SECOND"
    assert current_state([second, first], NOW).state_name == "FIRST"


def test_current_state_ignores_future_states():
    past = _state("b-1", BlockableType.SUBSCRIPTION_BUNDLE, name="PAST", effective=NOW - timedelta(days=1))
    future = _state("b-1", BlockableType.SUBSCRIPTION_BUNDLE, name="FUTURE", effective=NOW + timedelta(days=1))

    assert current_state([future, past], NOW).state_name == "PAST"
    assert current_state([future], NOW) is None


def test_unblocked_subscription_passes_every_check(checker, subscription, tenant_context):
    aggregate = checker.get_blocked_state(subscription, tenant_context)

    assert not (aggregate.block_change or aggregate.block_entitlement or aggregate.block_billing)
    checker.check_blocked_change(subscription, tenant_context)
    checker.check_blocked_entitlement(subscription, tenant_context)
    checker.check_blocked_billing(subscription, tenant_context)


@pytest.mark.parametrize(
    "blockable_type",
    [BlockableType.ACCOUNT, BlockableType.SUBSCRIPTION_BUNDLE, BlockableType.SUBSCRIPTION],
)
def test_change_blocked_at_any_level(checker, repository, subscription, tenant_context, blockable_type):
    blockable_id = {
        BlockableType.ACCOUNT: "acct-1",
        BlockableType.SUBSCRIPTION_BUNDLE: subscription.bundle_id,
        BlockableType.SUBSCRIPTION: subscription.id,
    }[blockable_type]
    repository.append(_state(blockable_id, blockable_type, block_change=True), tenant_context)

    assert checker.is_blocked_change(subscription, tenant_context)
    assert not checker.is_blocked_billing(subscription, tenant_context)
    with pytest.raises(BlockingApiError) as excinfo:
        checker.check_blocked_change(subscription, tenant_context)

    assert excinfo.value.code == ErrorCode.BLOCK_BLOCKED_ACTION
    assert excinfo.value.action == "change"
    assert excinfo.value.blockable_type == blockable_type.value
    assert excinfo.value.blockable_id == blockable_id


def test_most_specific_level_is_reported(checker, repository, subscription, tenant_context):
    repository.append(_state("acct-1", BlockableType.ACCOUNT, block_billing=True), tenant_context)
    repository.append(_state(subscription.id, BlockableType.SUBSCRIPTION, block_billing=True), tenant_context)

    with pytest.raises(BlockingApiError) as excinfo:
        checker.check_blocked_billing(subscription, tenant_context)

    assert excinfo.value.blockable_type == BlockableType.SUBSCRIPTION.value


def test_services_are_combined_with_or(checker, repository, subscription, tenant_context):
    bundle_id = subscription.bundle_id
    repository.append(
        _state(bundle_id, BlockableType.SUBSCRIPTION_BUNDLE, service="dunning", block_entitlement=True),
        tenant_context,
    )
    repository.append(_state(bundle_id, BlockableType.SUBSCRIPTION_BUNDLE, service="support"), tenant_context)

    assert checker.is_blocked_entitlement(subscription, tenant_context)


def test_later_clear_state_lifts_block(checker, repository, subscription, tenant_context):
    bundle_id = subscription.bundle_id
    repository.append(
        _state(bundle_id, BlockableType.SUBSCRIPTION_BUNDLE, effective=NOW - timedelta(days=2), block_change=True),
        tenant_context,
    )
    repository.append(
        _state(bundle_id, BlockableType.SUBSCRIPTION_BUNDLE, effective=NOW - timedelta(days=1)),
        tenant_context,
    )

    assert not checker.is_blocked_change(subscription, tenant_context)
    assert checker.get_blocked_state(subscription, tenant_context, NOW - timedelta(days=1, hours=12)).block_change


def test_bundle_check_ignores_subscription_level(checker, repository, subscription, tenant_context):
    repository.append(_state(subscription.id, BlockableType.SUBSCRIPTION, block_change=True), tenant_context)

    checker.check_blocked_change_for_bundle(subscription.bundle_id, tenant_context)

    repository.append(_state("acct-1", BlockableType.ACCOUNT, block_change=True), tenant_context)
    with pytest.raises(BlockingApiError) as excinfo:
        checker.check_blocked_change_for_bundle(subscription.bundle_id, tenant_context)
    assert excinfo.value.blockable_type == BlockableType.ACCOUNT.value


def test_unknown_bundle_is_wrapped(checker, subscription, tenant_context):
    orphan = subscription.model_copy(update={"bundle_id": "bundle-missing"})

    with pytest.raises(EntitlementApiError) as excinfo:
        checker.get_blocked_state(orphan, tenant_context)

    assert excinfo.value.code == ErrorCode.ENT_NOT_FOUND


def test_in_memory_repository_preserves_insertion_order(repository, tenant_context):
    first = repository.append(_state("b-1", BlockableType.SUBSCRIPTION_BUNDLE, name="A"), tenant_context)
    second = repository.append(
        _state("b-1", BlockableType.SUBSCRIPTION_BUNDLE, name="B", service="other"),
        tenant_context,
    )
    other_tenant = tenant_context.model_copy(update={"tenant_id": "tenant-2"})

    assert first.record_id < second.record_id
    assert [state.state_name for state in repository.get_blocking_states("b-1", BlockableType.SUBSCRIPTION_BUNDLE, tenant_context)] == ["A", "B"]
    assert [
        state.state_name
        for state in repository.get_blocking_states(
            "b-1", BlockableType.SUBSCRIPTION_BUNDLE, tenant_context, service="other"
        )
    ] == ["B"]
    assert repository.get_blocking_states("b-1", BlockableType.SUBSCRIPTION_BUNDLE, other_tenant) == []
