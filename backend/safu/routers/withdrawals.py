# safu/routers/withdrawals.py
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from safu.dependencies import get_deduplicator, get_withdrawals
from safu.models import Feature, WithdrawalStatus
from safu.schemas.withdrawals import (
    WithdrawalConfirm,
    WithdrawalCreate,
    WithdrawalListResponse,
    WithdrawalResponse,
)
from safu.services.guards import RequestDeduplicator
from safu.services.withdrawals import WithdrawalService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/withdrawals",
    tags=["Withdrawals"]
)


@router.post("", response_model=WithdrawalResponse)
async def create_withdrawal_request(
    body: WithdrawalCreate,
    service: WithdrawalService = Depends(get_withdrawals),
    dedup: RequestDeduplicator = Depends(get_deduplicator),
):
    """Queue a staking/race/burn/social-farming claim; one in flight per wallet and pool"""
    async with dedup.guard("withdraw", body.wallet_address, body.pool_id, body.feature.value):
        request = await service.create_request(
            body.wallet_address,
            body.pool_id,
            body.feature,
            body.amount,
            token_symbol=body.token_symbol,
            token_address=body.token_address,
        )
    return request


@router.get("/{wallet_address}", response_model=WithdrawalListResponse)
async def list_withdrawal_requests(
    wallet_address: str,
    feature: Optional[Feature] = None,
    status: Optional[WithdrawalStatus] = None,
    limit: int = Query(default=50, ge=1, le=200),
    service: WithdrawalService = Depends(get_withdrawals),
):
    requests = await service.list_requests(wallet_address, feature, status, limit)
    return WithdrawalListResponse(
        requests=[WithdrawalResponse.model_validate(r) for r in requests],
        total=len(requests),
    )


@router.post("/{request_id}/confirm", response_model=WithdrawalResponse)
async def confirm_withdrawal_request(
    request_id: str,
    body: WithdrawalConfirm,
    service: WithdrawalService = Depends(get_withdrawals),
):
    """Mark a request completed with the payout signature"""
    return await service.complete_request(request_id, body.tx_hash, body.wallet_address)
