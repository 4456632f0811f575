"""
Launch lifecycle tests

Covers:
- the transition table
- begin_launch is idempotent, other repeated transitions are not
- cancellation rules (creator only, nothing contributed)
- created and failed are terminal
- a second creation attempt cannot overwrite the first
"""
import pytest

from safu.exceptions import InvalidState, LaunchNotFound, WalletMismatch
from safu.models import LaunchStatus
from safu.services.launch_state import can_transition

from conftest import new_tx_hash, new_wallet


@pytest.mark.parametrize(
    "current,target,allowed",
    [
        (LaunchStatus.PENDING_CONTRIBUTIONS, LaunchStatus.READY_TO_LAUNCH, True),
        (LaunchStatus.PENDING_CONTRIBUTIONS, LaunchStatus.CANCELLED, True),
        (LaunchStatus.PENDING_CONTRIBUTIONS, LaunchStatus.LAUNCHING, False),
        (LaunchStatus.READY_TO_LAUNCH, LaunchStatus.LAUNCHING, True),
        (LaunchStatus.READY_TO_LAUNCH, LaunchStatus.FAILED, True),
        (LaunchStatus.READY_TO_LAUNCH, LaunchStatus.PENDING_CONTRIBUTIONS, False),
        (LaunchStatus.LAUNCHING, LaunchStatus.CREATED, True),
        (LaunchStatus.LAUNCHING, LaunchStatus.FAILED, True),
        (LaunchStatus.CREATED, LaunchStatus.FAILED, False),
        (LaunchStatus.FAILED, LaunchStatus.LAUNCHING, False),
        (LaunchStatus.CANCELLED, LaunchStatus.PENDING_CONTRIBUTIONS, False),
    ],
)
def test_transition_table(current, target, allowed):
    assert can_transition(current, target) is allowed


async def _filled_launch(make_launch, contribute):
    launch = await make_launch(hardcap_sol=2.0, per_wallet_cap_sol=1.0)
    await contribute(launch, new_wallet(), 1.0)
    result = await contribute(launch, new_wallet(), 1.0)
    assert result.launch_status == LaunchStatus.READY_TO_LAUNCH
    return launch


async def test_begin_launch_is_idempotent(make_launch, contribute, state_machine):
    launch = await _filled_launch(make_launch, contribute)

    first = await state_machine.begin_launch(launch.id)
    second = await state_machine.begin_launch(launch.id)
    assert first.status == second.status == LaunchStatus.LAUNCHING


async def test_begin_launch_requires_full_launch(make_launch, state_machine):
    launch = await make_launch()
    with pytest.raises(InvalidState):
        await state_machine.begin_launch(launch.id)


async def test_mark_created_only_from_launching(make_launch, contribute, state_machine):
    launch = await _filled_launch(make_launch, contribute)
    with pytest.raises(InvalidState):
        await state_machine.mark_created(launch.id, new_wallet())

    await state_machine.begin_launch(launch.id)
    mint = new_wallet()
    created = await state_machine.mark_created(launch.id, mint, new_tx_hash())
    assert created.status == LaunchStatus.CREATED
    assert created.contract_address == mint
    assert created.launched_at is not None

    # Terminal: nothing moves a created launch
    with pytest.raises(InvalidState):
        await state_machine.mark_failed(launch.id, "too late")
    with pytest.raises(InvalidState):
        await state_machine.mark_created(launch.id, new_wallet())


async def test_mark_failed_keeps_reason(make_launch, contribute, state_machine):
    launch = await _filled_launch(make_launch, contribute)
    await state_machine.begin_launch(launch.id)

    failed = await state_machine.mark_failed(launch.id, "pump create rejected")
    assert failed.status == LaunchStatus.FAILED
    assert failed.failure_reason == "pump create rejected"
    with pytest.raises(InvalidState):
        await state_machine.begin_launch(launch.id)


async def test_record_creation_attempt_is_compare_and_set(make_launch, contribute, state_machine, store):
    launch = await _filled_launch(make_launch, contribute)
    await state_machine.begin_launch(launch.id)

    first_tx, mint = new_tx_hash(), new_wallet()
    await state_machine.record_creation_attempt(launch.id, first_tx, mint)

    # A concurrent executor that also saw no attempt loses
    with pytest.raises(InvalidState):
        await state_machine.record_creation_attempt(launch.id, new_tx_hash(), new_wallet())

    # Replacing an expired attempt names the one it replaces
    second_tx = new_tx_hash()
    await state_machine.record_creation_attempt(launch.id, second_tx, new_wallet(), previous_tx_hash=first_tx)
    async with store.session() as session:
        row = await store.get_launch(session, launch.id)
    assert row.creation_tx_hash == second_tx
    assert row.creation_submitted_at is not None


async def test_cancel_by_creator(make_launch, state_machine):
    launch = await make_launch()
    cancelled = await state_machine.cancel(launch.id, launch.creator_wallet)
    assert cancelled.status == LaunchStatus.CANCELLED


async def test_cancel_by_other_wallet(make_launch, state_machine):
    launch = await make_launch()
    with pytest.raises(WalletMismatch):
        await state_machine.cancel(launch.id, new_wallet())


async def test_cancel_with_contributions(make_launch, contribute, state_machine):
    launch = await make_launch()
    await contribute(launch, new_wallet(), 0.5)
    with pytest.raises(InvalidState):
        await state_machine.cancel(launch.id, launch.creator_wallet)


async def test_cancel_unknown_launch(state_machine):
    with pytest.raises(LaunchNotFound):
        await state_machine.cancel("missing", new_wallet())
