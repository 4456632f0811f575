# safu/routers/safu/settlement.py
from fastapi import APIRouter, Depends

from safu.dependencies import get_deduplicator, get_settlement
from safu.schemas.safu import PayoutResponse, WalletAction
from safu.services.guards import RequestDeduplicator
from safu.services.settlement import PayoutResult, SettlementEngine

router = APIRouter(
    prefix="/safu/launches",
    tags=["Safu Settlement"]
)


def _payout_response(result: PayoutResult) -> PayoutResponse:
    return PayoutResponse(
        request_id=result.request_id,
        request_type=result.request_type.value,
        tx_hash=result.tx_hash,
        amount=result.amount,
        resumed=result.resumed,
    )


@router.post("/{launch_id}/claim", response_model=PayoutResponse)
async def claim_safu_tokens(
    launch_id: str,
    body: WalletAction,
    settlement: SettlementEngine = Depends(get_settlement),
    dedup: RequestDeduplicator = Depends(get_deduplicator),
):
    """Transfer the wallet's contributor share from escrow. Retry after a 202 to resume."""
    async with dedup.guard("claim", launch_id, body.wallet_address):
        result = await settlement.claim_tokens(launch_id, body.wallet_address)
    return _payout_response(result)


@router.post("/{launch_id}/refund", response_model=PayoutResponse)
async def refund_safu_contribution(
    launch_id: str,
    body: WalletAction,
    settlement: SettlementEngine = Depends(get_settlement),
    dedup: RequestDeduplicator = Depends(get_deduplicator),
):
    """Reverse the wallet's latest contribution and send the SOL back"""
    async with dedup.guard("refund", launch_id, body.wallet_address):
        result = await settlement.refund(launch_id, body.wallet_address)
    return _payout_response(result)
