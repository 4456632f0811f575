# safu/services/ledger.py
"""
Contribution ledger.

registerContribution checks, in order (first failure wins):
    1. wallet not blocked                          WalletBlocked
    2. launch exists and accepts contributions     LaunchNotAcceptingContributions
    3. amount > 0 and within the per-wallet cap    PerWalletCapExceeded
    4. amount within the remaining hardcap         HardcapExceeded
    5. transfer confirmed on-chain, exact amount   TransferUnconfirmed

Steps 2-4 are re-derived from live data inside the atomic unit, which starts
with the conditional increment on the launch row.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional

from solana.exceptions import SolanaRpcException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from safu.config import lamports_to_sol, sol_to_lamports
from safu.exceptions import (
    DuplicateTransaction,
    HardcapExceeded,
    LaunchNotAcceptingContributions,
    LaunchNotFound,
    PerWalletCapExceeded,
    TransferUnconfirmed,
)
from safu.models import LaunchStatus, SafuContribution, SafuLaunch
from safu.services.guards import ensure_tx_hash_format, ensure_wallet_address, ensure_wallet_not_blocked
from safu.services.launch_state import LaunchStateMachine
from safu.services.solana_rpc import SolanaRpcClient, solana_rpc
from safu.store import LedgerStore
from safu.utils.logger import short

logger = logging.getLogger(__name__)


@dataclass
class ContributionResult:
    contribution: SafuContribution
    launch_status: LaunchStatus
    total_contributed_lamports: int
    hardcap_lamports: int
    replayed: bool = False

    @property
    def launch_ready(self) -> bool:
        return self.launch_status == LaunchStatus.READY_TO_LAUNCH


@dataclass
class ContributionQuote:
    launch_id: str
    deposit_wallet_address: str
    amount_lamports: int
    remaining_lamports: int
    wallet_remaining_lamports: int


@dataclass
class WalletContribution:
    launch_id: str
    wallet_address: str
    amount_lamports: int = 0
    claimed: bool = False
    contributions: List[SafuContribution] = field(default_factory=list)


def _to_lamports(amount) -> int:
    if amount is None or isinstance(amount, bool) or not math.isfinite(amount):
        return 0
    return sol_to_lamports(amount)


class ContributionLedger:

    def __init__(
        self,
        store: Optional[LedgerStore] = None,
        rpc: Optional[SolanaRpcClient] = None,
        state_machine: Optional[LaunchStateMachine] = None,
    ):
        self.store = store or LedgerStore()
        self.rpc = rpc or solana_rpc
        self.state_machine = state_machine or LaunchStateMachine(self.store)

    # ------------------------------------------------------------------
    # Pre-checks (read only)
    # ------------------------------------------------------------------
    async def _check_acceptance(self, session: AsyncSession, launch_id: str, wallet: str, lamports: int) -> SafuLaunch:
        launch = await self.store.get_launch(session, launch_id)
        if launch is None:
            raise LaunchNotAcceptingContributions("Launch not found", launch_id=launch_id)
        if launch.status != LaunchStatus.PENDING_CONTRIBUTIONS:
            raise LaunchNotAcceptingContributions(status=launch.status.value)

        if lamports <= 0:
            raise PerWalletCapExceeded("Contribution amount must be greater than 0")
        already = await self.store.wallet_contributed(session, launch_id, wallet)
        if already + lamports > launch.per_wallet_cap_lamports:
            raise PerWalletCapExceeded(
                f"Maximum contribution is {lamports_to_sol(launch.per_wallet_cap_lamports)} SOL per wallet",
                remaining=lamports_to_sol(max(launch.per_wallet_cap_lamports - already, 0)),
            )

        if launch.total_contributed_lamports + lamports > launch.hardcap_lamports:
            raise HardcapExceeded(
                f"Only {lamports_to_sol(launch.remaining_lamports)} SOL remaining",
                remaining=lamports_to_sol(launch.remaining_lamports),
            )
        return launch

    async def prepare_contribution(self, launch_id: str, wallet_address: str, amount: float) -> ContributionQuote:
        """Everything registerContribution checks before the transfer exists. Writes nothing."""
        wallet = ensure_wallet_address(wallet_address)
        lamports = _to_lamports(amount)
        async with self.store.session() as session:
            await ensure_wallet_not_blocked(session, wallet)
            launch = await self._check_acceptance(session, launch_id, wallet, lamports)
            already = await self.store.wallet_contributed(session, launch_id, wallet)
        return ContributionQuote(
            launch_id=launch.id,
            deposit_wallet_address=launch.deposit_wallet_address,
            amount_lamports=lamports,
            remaining_lamports=launch.remaining_lamports,
            wallet_remaining_lamports=launch.per_wallet_cap_lamports - already,
        )

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def _replay(self, existing: SafuContribution, launch: Optional[SafuLaunch], launch_id: str, wallet: str, lamports: int) -> ContributionResult:
        if (
            existing.launch_id != launch_id
            or existing.wallet_address != wallet
            or existing.amount_lamports != lamports
        ):
            logger.warning(f"Transaction {short(existing.tx_hash)} replayed with different parameters")
            raise DuplicateTransaction()
        logger.info(f"Contribution {short(existing.tx_hash)} already recorded, returning it")
        return ContributionResult(
            contribution=existing,
            launch_status=launch.status,
            total_contributed_lamports=launch.total_contributed_lamports,
            hardcap_lamports=launch.hardcap_lamports,
            replayed=True,
        )

    async def _find_replay(self, tx_hash: str, launch_id: str, wallet: str, lamports: int) -> Optional[ContributionResult]:
        async with self.store.session() as session:
            existing = await self.store.get_contribution_by_tx(session, tx_hash)
            if existing is None:
                return None
            launch = await self.store.get_launch(session, existing.launch_id)
        return self._replay(existing, launch, launch_id, wallet, lamports)

    async def _apply(self, session: AsyncSession, launch_id: str, wallet: str, lamports: int, tx_hash: str) -> ContributionResult:
        if not await self.store.conditional_increment(session, launch_id, lamports):
            launch = await self.store.get_launch(session, launch_id)
            if launch is None:
                raise LaunchNotAcceptingContributions("Launch not found", launch_id=launch_id)
            if launch.total_contributed_lamports + lamports > launch.hardcap_lamports:
                raise HardcapExceeded(
                    f"Only {lamports_to_sol(launch.remaining_lamports)} SOL remaining",
                    remaining=lamports_to_sol(launch.remaining_lamports),
                )
            raise LaunchNotAcceptingContributions(status=launch.status.value)

        # The launch row is write-locked from here until commit
        launch = await self.store.get_launch(session, launch_id)
        prior = await self.store.wallet_contributed(session, launch_id, wallet)
        if prior + lamports > launch.per_wallet_cap_lamports:
            raise PerWalletCapExceeded(
                f"Maximum contribution is {lamports_to_sol(launch.per_wallet_cap_lamports)} SOL per wallet",
                remaining=lamports_to_sol(max(launch.per_wallet_cap_lamports - prior, 0)),
            )

        contribution = SafuContribution(
            launch_id=launch_id,
            wallet_address=wallet,
            amount_lamports=lamports,
            tx_hash=tx_hash,
        )
        session.add(contribution)
        await session.flush()

        if prior == 0:
            await self.store.adjust_contributor_count(session, launch_id, 1)
        await self.state_machine.mark_ready_if_hardcap_reached(session, launch_id)

        launch = await self.store.get_launch(session, launch_id)
        return ContributionResult(
            contribution=contribution,
            launch_status=launch.status,
            total_contributed_lamports=launch.total_contributed_lamports,
            hardcap_lamports=launch.hardcap_lamports,
        )

    async def register_contribution(
        self,
        launch_id: str,
        wallet_address: str,
        amount: float,
        tx_hash: str,
    ) -> ContributionResult:
        wallet = ensure_wallet_address(wallet_address)
        tx_hash = ensure_tx_hash_format(tx_hash)
        lamports = _to_lamports(amount)

        async with self.store.session() as session:
            await ensure_wallet_not_blocked(session, wallet)
        replay = await self._find_replay(tx_hash, launch_id, wallet, lamports)
        if replay is not None:
            return replay

        async with self.store.session() as session:
            launch = await self._check_acceptance(session, launch_id, wallet, lamports)
            deposit_address = launch.deposit_wallet_address

        # No session is open across the RPC round trip
        try:
            confirmed = await self.rpc.verify_transfer(tx_hash, wallet, deposit_address, lamports)
        except SolanaRpcException as e:
            logger.warning(f"RPC unavailable while verifying {short(tx_hash)}: {e}")
            raise TransferUnconfirmed("Could not verify the transfer, please retry")
        if not confirmed:
            raise TransferUnconfirmed(tx_hash=tx_hash)

        try:
            async with self.store.transaction() as session:
                result = await self._apply(session, launch_id, wallet, lamports, tx_hash)
        except IntegrityError:
            # Same tx_hash registered concurrently; the committed row decides
            replay = await self._find_replay(tx_hash, launch_id, wallet, lamports)
            if replay is None:
                raise
            return replay

        logger.info(
            f"💰 Contribution {lamports_to_sol(lamports)} SOL from {short(wallet)} to launch {launch_id} "
            f"({lamports_to_sol(result.total_contributed_lamports)}/{lamports_to_sol(result.hardcap_lamports)} SOL)"
        )
        return result

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get_wallet_contribution(self, launch_id: str, wallet_address: str) -> WalletContribution:
        wallet = ensure_wallet_address(wallet_address)
        async with self.store.session() as session:
            if await self.store.get_launch(session, launch_id) is None:
                raise LaunchNotFound(launch_id=launch_id)
            rows = await self.store.get_wallet_contributions(session, launch_id, wallet)
        return WalletContribution(
            launch_id=launch_id,
            wallet_address=wallet,
            amount_lamports=sum(r.amount_lamports for r in rows),
            claimed=bool(rows) and all(r.claimed for r in rows),
            contributions=rows,
        )


ledger = ContributionLedger()
