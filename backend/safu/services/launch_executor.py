# safu/services/launch_executor.py
"""
Drives a filled launch through token creation:
ready_to_launch -> launching -> created | failed.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from solders.keypair import Keypair

from safu.config import lamports_to_sol, settings, sol_to_lamports
from safu.exceptions import ConfirmationTimeout, InvalidState, SafuError, SigningFailed, SubmissionFailed
from safu.models import LaunchStatus, SafuLaunch
from safu.services.escrow import EscrowWalletManager, escrow_manager
from safu.services.ipfs_service import IPFSService, ipfs_service
from safu.services.launch_state import LaunchStateMachine
from safu.services.onchain_integration import PumpPortalClient, pumpportal_client
from safu.services.solana_rpc import ConfirmationOutcome, SolanaRpcClient
from safu.store import LedgerStore
from safu.utils.logger import short

logger = logging.getLogger(__name__)


@dataclass
class LaunchOutcome:
    launch_id: str
    status: LaunchStatus
    tx_hash: Optional[str] = None
    contract_address: Optional[str] = None


def creation_budget_lamports(launch: SafuLaunch) -> int:
    """What the escrow spends on create + dev buy; the platform fee stays behind."""
    return max(launch.hardcap_lamports - sol_to_lamports(settings.PLATFORM_FEE_SOL), 0)


class LaunchExecutor:

    def __init__(
        self,
        store: Optional[LedgerStore] = None,
        state_machine: Optional[LaunchStateMachine] = None,
        escrow: Optional[EscrowWalletManager] = None,
        rpc: Optional[SolanaRpcClient] = None,
        pumpportal: Optional[PumpPortalClient] = None,
        ipfs: Optional[IPFSService] = None,
    ):
        self.store = store or LedgerStore()
        self.state_machine = state_machine or LaunchStateMachine(self.store)
        self.escrow = escrow or escrow_manager
        self.rpc = rpc or self.escrow.rpc
        self.pumpportal = pumpportal or pumpportal_client
        self.ipfs = ipfs or ipfs_service

    async def execute(self, launch_id: str) -> LaunchOutcome:
        launch = await self.state_machine.begin_launch(launch_id)

        # An earlier attempt may still land: never spend the escrow twice
        if launch.creation_tx_hash:
            outcome = await self.rpc.resolve_submitted(launch.creation_tx_hash, launch.creation_submitted_at)
            resolved = await self._apply_outcome(launch, launch.creation_tx_hash, launch.mint_address, outcome)
            if resolved is not None:
                return resolved
            logger.warning(f"Creation tx {short(launch.creation_tx_hash)} for launch {launch_id} expired, rebuilding")

        budget = creation_budget_lamports(launch)
        balance = await self.escrow.get_balance(launch)
        if balance < budget:
            raise InvalidState(
                f"Escrow holds {lamports_to_sol(balance)} SOL, creation needs {lamports_to_sol(budget)} SOL"
            )

        metadata_uri = await self._ensure_metadata(launch)
        mint = Keypair()
        mint_address = str(mint.pubkey())

        unsigned = await self.pumpportal.build_create_transaction(
            creator_address=launch.deposit_wallet_address,
            mint_address=mint_address,
            name=launch.token_name,
            symbol=launch.token_symbol,
            metadata_uri=metadata_uri,
            dev_buy_sol=lamports_to_sol(budget),
        )
        try:
            signed = self.escrow.sign_versioned(launch, unsigned, [mint])
        except SigningFailed as e:
            await self.state_machine.mark_failed(launch_id, e.message)
            raise
        finally:
            del mint

        await self.state_machine.record_creation_attempt(
            launch_id, signed.signature, mint_address, previous_tx_hash=launch.creation_tx_hash
        )
        logger.info(f"🚀 Submitting creation of {launch.token_symbol} ({short(mint_address)}) for launch {launch_id}")
        try:
            await self.escrow.submit(signed)
        except SubmissionFailed as e:
            await self.state_machine.mark_failed(launch_id, e.message)
            raise

        outcome = await self.rpc.wait_for_confirmation(signed.signature)
        return await self._apply_outcome(launch, signed.signature, mint_address, outcome)

    async def _apply_outcome(
        self,
        launch: SafuLaunch,
        tx_hash: str,
        mint_address: Optional[str],
        outcome: ConfirmationOutcome,
    ) -> Optional[LaunchOutcome]:
        if outcome == ConfirmationOutcome.CONFIRMED:
            created = await self.state_machine.mark_created(launch.id, mint_address, tx_hash)
            logger.info(f"🎉 Launch {launch.id} created token {mint_address}")
            return LaunchOutcome(launch.id, created.status, tx_hash, created.contract_address)
        if outcome == ConfirmationOutcome.FAILED:
            await self.state_machine.mark_failed(launch.id, f"Creation transaction {tx_hash} failed on-chain")
            raise SubmissionFailed(launch_id=launch.id, tx_hash=tx_hash)
        if outcome == ConfirmationOutcome.UNCONFIRMED:
            # Stay in launching; the next execute re-checks this signature
            raise ConfirmationTimeout(launch_id=launch.id, tx_hash=tx_hash)
        return None

    async def _ensure_metadata(self, launch: SafuLaunch) -> str:
        if launch.metadata_uri:
            return launch.metadata_uri
        uri = await self.ipfs.pin_token_metadata(launch)
        async with self.store.transaction() as session:
            stored = await self.store.get_launch(session, launch.id)
            stored.metadata_uri = uri
        launch.metadata_uri = uri
        return uri


launch_executor = LaunchExecutor()


async def run_launch_in_background(launch_id: str, executor: Optional[LaunchExecutor] = None) -> None:
    """Fire-and-forget entry point used when the last contribution fills a launch."""
    executor = executor or launch_executor
    try:
        outcome = await executor.execute(launch_id)
        logger.info(f"Auto-launch {launch_id} finished: {outcome.status.value}")
    except ConfirmationTimeout:
        logger.warning(f"Auto-launch {launch_id} still confirming; re-run execute to resume")
    except SafuError as e:
        logger.error(f"Auto-launch {launch_id} stopped: [{e.code}] {e.message}")
    except Exception:
        logger.exception(f"Auto-launch {launch_id} crashed")
