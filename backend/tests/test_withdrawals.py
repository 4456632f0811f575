"""
Withdrawal request queue tests

Covers:
- one in-flight request per wallet/pool/feature
- completing and rejecting requests
- wallet mismatch and blocked wallets
- safu payouts cannot be driven through the generic queue
"""
import asyncio

import pytest

from safu.exceptions import (
    ClaimInProgress,
    InvalidInput,
    InvalidState,
    WalletBlocked,
    WalletMismatch,
    WithdrawalRequestNotFound,
)
from safu.models import Feature, WithdrawalStatus
from safu.services.guards import block_wallet

from conftest import new_tx_hash, new_wallet


async def test_second_request_for_same_pool_is_rejected(withdrawal_service):
    wallet = new_wallet()
    first = await withdrawal_service.create_request(wallet, "pool-1", Feature.STAKING, 10.0, token_symbol="SAFU")
    assert first.status == WithdrawalStatus.PENDING

    with pytest.raises(ClaimInProgress):
        await withdrawal_service.create_request(wallet, "pool-1", Feature.STAKING, 5.0)

    # Different pool or feature is independent
    await withdrawal_service.create_request(wallet, "pool-2", Feature.STAKING, 5.0)
    await withdrawal_service.create_request(wallet, "pool-1", Feature.RACE, 5.0)


async def test_concurrent_requests_leave_one_in_flight(withdrawal_service):
    wallet = new_wallet()
    results = await asyncio.gather(
        *[withdrawal_service.create_request(wallet, "pool-1", Feature.BURN, 1.0) for _ in range(5)],
        return_exceptions=True,
    )
    created = [r for r in results if not isinstance(r, Exception)]
    assert len(created) == 1
    assert all(isinstance(r, ClaimInProgress) for r in results if isinstance(r, Exception))


async def test_complete_request(withdrawal_service):
    wallet = new_wallet()
    request = await withdrawal_service.create_request(wallet, "pool-1", Feature.STAKING, 10.0)
    tx_hash = new_tx_hash()

    completed = await withdrawal_service.complete_request(request.id, tx_hash, wallet)
    assert completed.status == WithdrawalStatus.COMPLETED
    assert completed.tx_hash == tx_hash

    with pytest.raises(InvalidState):
        await withdrawal_service.complete_request(request.id, new_tx_hash(), wallet)

    # The slot is free again
    await withdrawal_service.create_request(wallet, "pool-1", Feature.STAKING, 3.0)


async def test_complete_request_checks_wallet_and_hash(withdrawal_service):
    wallet = new_wallet()
    request = await withdrawal_service.create_request(wallet, "pool-1", Feature.STAKING, 10.0)

    with pytest.raises(WalletMismatch):
        await withdrawal_service.complete_request(request.id, new_tx_hash(), new_wallet())
    with pytest.raises(InvalidInput):
        await withdrawal_service.complete_request(request.id, "short", wallet)
    with pytest.raises(WithdrawalRequestNotFound):
        await withdrawal_service.complete_request("missing", new_tx_hash(), wallet)


async def test_processing_then_reject(withdrawal_service):
    wallet = new_wallet()
    request = await withdrawal_service.create_request(wallet, "pool-1", Feature.SOCIAL_FARMING, 2.0)

    processing = await withdrawal_service.mark_processing(request.id)
    assert processing.status == WithdrawalStatus.PROCESSING
    with pytest.raises(InvalidState):
        await withdrawal_service.mark_processing(request.id)

    rejected = await withdrawal_service.reject_request(request.id, "insufficient pool balance")
    assert rejected.status == WithdrawalStatus.REJECTED
    assert rejected.admin_notes == "insufficient pool balance"
    with pytest.raises(InvalidState):
        await withdrawal_service.reject_request(request.id, "again")


async def test_blocked_wallet_cannot_request(withdrawal_service, store):
    wallet = new_wallet()
    async with store.transaction() as session:
        await block_wallet(session, wallet, "abuse")
    with pytest.raises(WalletBlocked):
        await withdrawal_service.create_request(wallet, "pool-1", Feature.STAKING, 1.0)
    assert await withdrawal_service.list_requests(wallet) == []


async def test_invalid_amount(withdrawal_service):
    with pytest.raises(InvalidInput):
        await withdrawal_service.create_request(new_wallet(), "pool-1", Feature.STAKING, 0)


async def test_safu_requests_go_through_settlement(withdrawal_service, created_launch, settlement):
    with pytest.raises(InvalidState):
        await withdrawal_service.create_request(new_wallet(), "launch", Feature.SAFU, 1.0)

    launch, wallets = await created_launch()
    result = await settlement.claim_tokens(launch.id, wallets[0])
    with pytest.raises(InvalidState):
        await withdrawal_service.reject_request(result.request_id, "manual")

    requests = await withdrawal_service.list_requests(wallets[0], feature=Feature.SAFU)
    assert [r.id for r in requests] == [result.request_id]


async def test_list_requests_filters(withdrawal_service):
    wallet = new_wallet()
    staking = await withdrawal_service.create_request(wallet, "pool-1", Feature.STAKING, 1.0)
    await withdrawal_service.create_request(wallet, "pool-1", Feature.RACE, 1.0)
    await withdrawal_service.complete_request(staking.id, new_tx_hash())

    assert len(await withdrawal_service.list_requests(wallet)) == 2
    completed = await withdrawal_service.list_requests(wallet, status=WithdrawalStatus.COMPLETED)
    assert [r.id for r in completed] == [staking.id]
    race = await withdrawal_service.list_requests(wallet, feature=Feature.RACE)
    assert len(race) == 1 and race[0].feature == Feature.RACE
