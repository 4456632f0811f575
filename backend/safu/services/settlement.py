# safu/services/settlement.py
"""
Settlement: contributor shares, token claims and SOL refunds.

Both payouts run through a withdrawal request row (feature=safu,
pool_id=launch id) that is the lock for the transfer:

    processing  a caller owns the transfer right now; others get ClaimInProgress
    pending     parked after a timeout or transport failure; the next call
                resumes it and re-checks the recorded signature first
    completed   transfer confirmed and the ledger finalised
    rejected    claim transfer failed for good; claimed stays false

The signature is recorded before the transaction is sent, so a resumed
payout never builds a second transfer while the first may still land.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from safu.config import lamports_to_sol, settings, sol_to_lamports
from safu.exceptions import (
    AlreadyClaimed,
    ClaimInProgress,
    ConfirmationTimeout,
    ContributionNotFound,
    InvalidState,
    LaunchNotFound,
    SafuError,
    SubmissionFailed,
)
from safu.models import (
    Feature, LaunchStatus, RequestType, SafuContribution, SafuLaunch, WithdrawalRequest, WithdrawalStatus, utcnow
)
from safu.services.escrow import EscrowWalletManager, escrow_manager
from safu.services.guards import ensure_wallet_address, ensure_wallet_not_blocked
from safu.services.solana_rpc import (
    ConfirmationOutcome,
    SolanaRpcClient,
    build_token_transfer_instructions,
    build_transfer_instruction,
)
from safu.services.withdrawals import open_request
from safu.store import LedgerStore
from safu.utils.logger import short

logger = logging.getLogger(__name__)


def pro_rata_share(amount_lamports: int, hardcap_lamports: int, contributor_pool: int) -> int:
    """floor(pool * amount / hardcap) in exact integer arithmetic."""
    if hardcap_lamports <= 0:
        raise ValueError("hardcap must be positive")
    return contributor_pool * amount_lamports // hardcap_lamports


def compute_contributor_share(contribution: SafuContribution, launch: SafuLaunch) -> int:
    # Denominator is the target hardcap, not what was actually raised
    return pro_rata_share(contribution.amount_lamports, launch.hardcap_lamports, launch.contributor_pool_tokens)


@dataclass
class PayoutResult:
    request_id: Optional[str]
    request_type: RequestType
    tx_hash: Optional[str]
    amount: float
    resumed: bool = False


@dataclass
class ClaimStatus:
    launch_id: str
    wallet_address: str
    launch_status: LaunchStatus
    contributed_lamports: int
    claimable_tokens: int
    claimed_tokens: int
    claimed: bool
    can_claim: bool
    pending_request_id: Optional[str] = None
    pending_tx_hash: Optional[str] = None


class SettlementEngine:

    def __init__(
        self,
        store: Optional[LedgerStore] = None,
        escrow: Optional[EscrowWalletManager] = None,
        rpc: Optional[SolanaRpcClient] = None,
    ):
        self.store = store or LedgerStore()
        self.escrow = escrow or escrow_manager
        self.rpc = rpc or self.escrow.rpc

    # ==================================================================
    # Claims
    # ==================================================================
    async def claim_tokens(self, launch_id: str, wallet_address: str) -> PayoutResult:
        wallet = ensure_wallet_address(wallet_address)
        async with self.store.session() as session:
            await ensure_wallet_not_blocked(session, wallet)
            launch = await self._get_launch(session, launch_id)
            rows = await self.store.get_wallet_contributions(session, launch_id, wallet)
            if not rows:
                raise ContributionNotFound()
            if launch.status != LaunchStatus.CREATED or not launch.contract_address:
                raise InvalidState(
                    "Tokens can only be claimed after the token is created",
                    status=launch.status.value,
                )
            in_flight = await self.store.get_in_flight_request(session, wallet, launch_id, Feature.SAFU, RequestType.CLAIM)

        if in_flight is not None:
            return await self._resume(launch, in_flight)

        unclaimed = [r for r in rows if not r.claimed]
        if not unclaimed:
            raise AlreadyClaimed()

        tokens = sum(compute_contributor_share(r, launch) for r in unclaimed)
        if tokens <= 0:
            # Dust contribution: nothing to transfer, the claim is settled as is
            await self.store.with_transaction(lambda s: self._finalize_claim(s, launch_id, wallet, None))
            return PayoutResult(request_id=None, request_type=RequestType.CLAIM, tx_hash=None, amount=0)

        async with self.store.transaction() as session:
            request = await open_request(
                session, self.store, wallet, launch_id, Feature.SAFU, float(tokens),
                request_type=RequestType.CLAIM,
                status=WithdrawalStatus.PROCESSING,
                token_symbol=launch.token_symbol,
                token_address=launch.contract_address,
            )
            # Re-read under the claim slot; a claim completed since the first read has flipped these
            rows = await self.store.get_wallet_contributions(session, launch_id, wallet)
            unclaimed = [r for r in rows if not r.claimed]
            if not unclaimed:
                raise AlreadyClaimed()
            tokens = sum(compute_contributor_share(r, launch) for r in unclaimed)
            request.amount = float(tokens)
        logger.info(f"🎁 Claim {request.id}: {tokens} {launch.token_symbol} to {short(wallet)}")
        return await self._drive(launch, request)

    async def _finalize_claim(self, session: AsyncSession, launch_id: str, wallet: str, tx_hash: Optional[str]) -> int:
        result = await session.execute(
            update(SafuContribution)
            .where(
                SafuContribution.launch_id == launch_id,
                SafuContribution.wallet_address == wallet,
                SafuContribution.claimed.is_(False),
            )
            .values(claimed=True, claimed_at=utcnow(), claim_tx_hash=tx_hash)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    # ==================================================================
    # Refunds
    # ==================================================================
    async def refund(self, launch_id: str, wallet_address: str) -> PayoutResult:
        wallet = ensure_wallet_address(wallet_address)
        async with self.store.session() as session:
            await ensure_wallet_not_blocked(session, wallet)
            launch = await self._get_launch(session, launch_id)
            in_flight = await self.store.get_in_flight_request(session, wallet, launch_id, Feature.SAFU, RequestType.REFUND)
            rows = await self.store.get_wallet_contributions(session, launch_id, wallet)

        # A reversed contribution whose transfer has not gone through yet:
        # only the transfer is retried, the ledger is never touched again
        if in_flight is not None:
            return await self._resume(launch, in_flight)

        if launch.status != LaunchStatus.PENDING_CONTRIBUTIONS:
            raise InvalidState(
                "Refunds are only available before the launch proceeds",
                status=launch.status.value,
            )
        unclaimed = [r for r in rows if not r.claimed]
        if not unclaimed:
            raise ContributionNotFound()
        contribution = unclaimed[-1]

        async with self.store.transaction() as session:
            request = await self._reverse_contribution(session, launch, wallet, contribution)
        logger.info(
            f"↩️ Contribution {short(contribution.tx_hash)} reversed: "
            f"{lamports_to_sol(contribution.amount_lamports)} SOL back to {short(wallet)}"
        )
        return await self._drive(launch, request)

    async def _reverse_contribution(
        self,
        session: AsyncSession,
        launch: SafuLaunch,
        wallet: str,
        contribution: SafuContribution,
    ) -> WithdrawalRequest:
        """Delete + decrement + open the refund request: one unit."""
        if not await self.store.delete_unclaimed_contribution(session, contribution.id):
            raise ContributionNotFound("Contribution was already refunded")
        if not await self.store.conditional_decrement(session, launch.id, contribution.amount_lamports):
            raise InvalidState("Refunds are only available before the launch proceeds")
        if await self.store.count_wallet_contributions(session, launch.id, wallet) == 0:
            await self.store.adjust_contributor_count(session, launch.id, -1)

        return await open_request(
            session, self.store, wallet, launch.id, Feature.SAFU,
            lamports_to_sol(contribution.amount_lamports),
            request_type=RequestType.REFUND,
            status=WithdrawalStatus.PROCESSING,
            token_symbol="SOL",
        )

    # ==================================================================
    # Payout driver
    # ==================================================================
    def _build_instructions(self, launch: SafuLaunch, request: WithdrawalRequest):
        if request.request_type == RequestType.REFUND:
            return [build_transfer_instruction(
                launch.deposit_wallet_address, request.wallet_address, sol_to_lamports(request.amount)
            )]
        return build_token_transfer_instructions(
            launch.deposit_wallet_address,
            request.wallet_address,
            request.token_address or launch.contract_address,
            int(request.amount) * 10 ** settings.TOKEN_DECIMALS,
            settings.TOKEN_DECIMALS,
        )

    async def _resume(self, launch: SafuLaunch, request: WithdrawalRequest) -> PayoutResult:
        if request.status == WithdrawalStatus.PROCESSING:
            raise ClaimInProgress(request_id=request.id)
        async with self.store.transaction() as session:
            taken = await self.store.update_request(
                session, request.id, [WithdrawalStatus.PENDING], status=WithdrawalStatus.PROCESSING
            )
            request = await session.get(WithdrawalRequest, request.id, populate_existing=True)
        if not taken:
            raise ClaimInProgress(request_id=request.id)
        logger.info(f"Resuming {request.request_type.value} {request.id} for {short(request.wallet_address)}")
        result = await self._drive(launch, request)
        result.resumed = True
        return result

    async def _drive(self, launch: SafuLaunch, request: WithdrawalRequest) -> PayoutResult:
        """Run the transfer for a request this caller holds in `processing`."""
        tx_hash = request.tx_hash
        try:
            if tx_hash:
                outcome = await self.rpc.resolve_submitted(tx_hash, request.submitted_at)
                if outcome == ConfirmationOutcome.CONFIRMED:
                    return await self._complete(launch, request, tx_hash)
                if outcome == ConfirmationOutcome.UNCONFIRMED:
                    await self._park(request, tx_hash)
                    raise ConfirmationTimeout(request_id=request.id, tx_hash=tx_hash)
                # FAILED or EXPIRED: the old transfer can no longer move funds
                logger.warning(f"Previous transfer {short(tx_hash)} for {request.id} is {outcome.value}, rebuilding")

            signed = await self.escrow.sign_instructions(launch, self._build_instructions(launch, request))
            tx_hash = signed.signature
            await self._record_submission(request, tx_hash)
            await self.escrow.submit(signed)
            outcome = await self.rpc.wait_for_confirmation(tx_hash)
        except ConfirmationTimeout:
            raise
        except SafuError as e:
            await self._fail(request, e.message)
            raise
        except Exception as e:
            # Outcome unknown: keep the signature so the next attempt re-checks it
            logger.error(f"Payout {request.id} interrupted: {e}")
            await self._park(request, tx_hash)
            raise

        if outcome == ConfirmationOutcome.CONFIRMED:
            return await self._complete(launch, request, tx_hash)
        if outcome == ConfirmationOutcome.FAILED:
            await self._fail(request, f"Transaction {tx_hash} failed on-chain")
            raise SubmissionFailed(request_id=request.id, tx_hash=tx_hash)
        await self._park(request, tx_hash)
        raise ConfirmationTimeout(request_id=request.id, tx_hash=tx_hash)

    async def _record_submission(self, request: WithdrawalRequest, tx_hash: str) -> None:
        async with self.store.transaction() as session:
            await self.store.update_request(
                session, request.id, [WithdrawalStatus.PROCESSING], tx_hash=tx_hash, submitted_at=utcnow()
            )
        request.tx_hash = tx_hash

    async def _park(self, request: WithdrawalRequest, tx_hash: Optional[str]) -> None:
        async with self.store.transaction() as session:
            await self.store.update_request(
                session, request.id, [WithdrawalStatus.PROCESSING],
                status=WithdrawalStatus.PENDING, tx_hash=tx_hash,
            )
        logger.info(f"⏳ {request.request_type.value} {request.id} parked as pending ({short(tx_hash or '')})")

    async def _fail(self, request: WithdrawalRequest, reason: str) -> None:
        """
        A claim is rejected and can be started over (nothing was paid, claimed
        stays false). A refund has already left the ledger, so it goes back to
        pending with no signature and the next call sends a fresh transfer.
        """
        async with self.store.transaction() as session:
            if request.request_type == RequestType.CLAIM:
                await self.store.update_request(
                    session, request.id, [WithdrawalStatus.PROCESSING],
                    status=WithdrawalStatus.REJECTED, admin_notes=reason[:1000],
                )
            else:
                await self.store.update_request(
                    session, request.id, [WithdrawalStatus.PROCESSING],
                    status=WithdrawalStatus.PENDING, tx_hash=None, submitted_at=None, admin_notes=reason[:1000],
                )
        logger.error(f"❌ {request.request_type.value} {request.id} failed: {reason}")

    async def _complete(self, launch: SafuLaunch, request: WithdrawalRequest, tx_hash: str) -> PayoutResult:
        duplicate = False
        async with self.store.transaction() as session:
            if request.request_type == RequestType.CLAIM:
                # Flip claimed only now that the transfer is confirmed
                flipped = await self._finalize_claim(session, launch.id, request.wallet_address, tx_hash)
                duplicate = flipped == 0
            values = dict(status=WithdrawalStatus.COMPLETED, tx_hash=tx_hash)
            if duplicate:
                values.update(status=WithdrawalStatus.REJECTED, admin_notes="Contributions were already claimed by another request")
            await self.store.update_request(session, request.id, [WithdrawalStatus.PROCESSING], **values)
        if duplicate:
            logger.error(f"🚨 Claim {request.id} paid {short(tx_hash)} but no unclaimed contribution was left")
            raise AlreadyClaimed(request_id=request.id, tx_hash=tx_hash)
        logger.info(f"✅ {request.request_type.value} {request.id} completed: {short(tx_hash)}")
        return PayoutResult(
            request_id=request.id,
            request_type=request.request_type,
            tx_hash=tx_hash,
            amount=request.amount,
        )

    # ==================================================================
    # Reads
    # ==================================================================
    async def _get_launch(self, session: AsyncSession, launch_id: str) -> SafuLaunch:
        launch = await self.store.get_launch(session, launch_id)
        if launch is None:
            raise LaunchNotFound(launch_id=launch_id)
        return launch

    async def get_claim_status(self, launch_id: str, wallet_address: str) -> ClaimStatus:
        wallet = ensure_wallet_address(wallet_address)
        async with self.store.session() as session:
            launch = await self._get_launch(session, launch_id)
            rows: List[SafuContribution] = await self.store.get_wallet_contributions(session, launch_id, wallet)
            in_flight = await self.store.get_in_flight_request(session, wallet, launch_id, Feature.SAFU, RequestType.CLAIM)

        claimable = sum(compute_contributor_share(r, launch) for r in rows if not r.claimed)
        claimed_tokens = sum(compute_contributor_share(r, launch) for r in rows if r.claimed)
        return ClaimStatus(
            launch_id=launch_id,
            wallet_address=wallet,
            launch_status=launch.status,
            contributed_lamports=sum(r.amount_lamports for r in rows),
            claimable_tokens=claimable,
            claimed_tokens=claimed_tokens,
            claimed=bool(rows) and all(r.claimed for r in rows),
            can_claim=launch.status == LaunchStatus.CREATED and claimable > 0 and in_flight is None,
            pending_request_id=in_flight.id if in_flight else None,
            pending_tx_hash=in_flight.tx_hash if in_flight else None,
        )


settlement = SettlementEngine()
