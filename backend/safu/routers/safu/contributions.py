# safu/routers/safu/contributions.py
import logging

from fastapi import APIRouter, BackgroundTasks, Depends

from safu.config import lamports_to_sol, settings
from safu.dependencies import get_deduplicator, get_executor, get_ledger, get_settlement
from safu.schemas.safu import (
    ContributionPrepare,
    ContributionQuoteResponse,
    ContributionRegister,
    ContributionRegisteredResponse,
    ContributionResponse,
    WalletContributionResponse,
)
from safu.services.guards import RequestDeduplicator
from safu.services.launch_executor import LaunchExecutor, run_launch_in_background
from safu.services.ledger import ContributionLedger
from safu.services.settlement import SettlementEngine

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/safu/launches",
    tags=["Safu Contributions"]
)


@router.post("/{launch_id}/prepare-contribution", response_model=ContributionQuoteResponse)
async def prepare_contribution(
    launch_id: str,
    body: ContributionPrepare,
    ledger: ContributionLedger = Depends(get_ledger),
):
    """Validate a planned contribution and return where to send the SOL"""
    quote = await ledger.prepare_contribution(launch_id, body.wallet_address, body.amount)
    return ContributionQuoteResponse(
        launch_id=quote.launch_id,
        deposit_wallet_address=quote.deposit_wallet_address,
        amount=lamports_to_sol(quote.amount_lamports),
        remaining=lamports_to_sol(quote.remaining_lamports),
        wallet_remaining=lamports_to_sol(quote.wallet_remaining_lamports),
    )


@router.post("/{launch_id}/contributions", response_model=ContributionRegisteredResponse)
async def register_contribution(
    launch_id: str,
    body: ContributionRegister,
    background_tasks: BackgroundTasks,
    ledger: ContributionLedger = Depends(get_ledger),
    executor: LaunchExecutor = Depends(get_executor),
    dedup: RequestDeduplicator = Depends(get_deduplicator),
):
    """Record a confirmed transfer into the launch's deposit wallet"""
    async with dedup.guard("contribute", launch_id, body.wallet_address, body.tx_hash):
        result = await ledger.register_contribution(launch_id, body.wallet_address, body.amount, body.tx_hash)

    if result.launch_ready and not result.replayed and settings.AUTO_LAUNCH_ON_HARDCAP:
        logger.info(f"Launch {launch_id} filled, scheduling token creation")
        background_tasks.add_task(run_launch_in_background, launch_id, executor)

    return ContributionRegisteredResponse(
        contribution=ContributionResponse.from_contribution(result.contribution),
        launch_status=result.launch_status,
        total_contributed=lamports_to_sol(result.total_contributed_lamports),
        hardcap=lamports_to_sol(result.hardcap_lamports),
        replayed=result.replayed,
    )


@router.get("/{launch_id}/contributions/{wallet_address}", response_model=WalletContributionResponse)
async def get_wallet_contribution(
    launch_id: str,
    wallet_address: str,
    ledger: ContributionLedger = Depends(get_ledger),
    settlement: SettlementEngine = Depends(get_settlement),
):
    summary = await ledger.get_wallet_contribution(launch_id, wallet_address)
    status = await settlement.get_claim_status(launch_id, wallet_address)
    return WalletContributionResponse(
        launch_id=launch_id,
        wallet_address=summary.wallet_address,
        amount=lamports_to_sol(summary.amount_lamports),
        claimed=summary.claimed,
        claimable_tokens=status.claimable_tokens,
        claimed_tokens=status.claimed_tokens,
        can_claim=status.can_claim,
        pending_request_id=status.pending_request_id,
        pending_tx_hash=status.pending_tx_hash,
        contributions=[ContributionResponse.from_contribution(c) for c in summary.contributions],
    )
