# safu/services/solana_rpc.py
import asyncio
import enum
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.instruction import Instruction
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction_status import TransactionConfirmationStatus
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    TransferCheckedParams,
    create_idempotent_associated_token_account,
    get_associated_token_address,
    transfer_checked,
)
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from safu.config import settings
from safu.exceptions import SubmissionFailed
from safu.utils.logger import short

logger = logging.getLogger(__name__)

_CONFIRMED_LEVELS = (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized)

rpc_retry = retry(
    stop=stop_after_attempt(settings.RPC_RETRY_ATTEMPTS),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    retry=retry_if_exception_type(SolanaRpcException),
    reraise=True,
)


class ConfirmationOutcome(str, enum.Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"            # landed with an on-chain error, terminal for this attempt
    UNCONFIRMED = "unconfirmed"  # not seen within the wait window, retryable
    EXPIRED = "expired"          # never landed and its blockhash is too old to land now


@dataclass(frozen=True)
class TxStatus:
    found: bool
    confirmed: bool
    err: Optional[str] = None


# =======================================
# INSTRUCTION BUILDERS
# =======================================
def build_transfer_instruction(from_address: str, to_address: str, amount_lamports: int) -> Instruction:
    return transfer(
        TransferParams(
            from_pubkey=Pubkey.from_string(from_address),
            to_pubkey=Pubkey.from_string(to_address),
            lamports=amount_lamports,
        )
    )


def build_token_transfer_instructions(
    owner_address: str,
    recipient_address: str,
    mint_address: str,
    amount: int,
    decimals: int,
    token_program_id: Pubkey = TOKEN_PROGRAM_ID,
) -> List[Instruction]:
    """
    Escrow ATA -> recipient ATA. The recipient ATA is created idempotently and
    paid for by the escrow wallet, so a retried payout never fails on it.
    """
    owner = Pubkey.from_string(owner_address)
    recipient = Pubkey.from_string(recipient_address)
    mint = Pubkey.from_string(mint_address)

    source_ata = get_associated_token_address(owner, mint, token_program_id=token_program_id)
    dest_ata = get_associated_token_address(recipient, mint, token_program_id=token_program_id)

    return [
        create_idempotent_associated_token_account(
            payer=owner, owner=recipient, mint=mint, token_program_id=token_program_id
        ),
        transfer_checked(
            TransferCheckedParams(
                program_id=token_program_id,
                source=source_ata,
                mint=mint,
                dest=dest_ata,
                owner=owner,
                amount=amount,
                decimals=decimals,
            )
        ),
    ]


def find_system_transfer(tx: Dict[str, Any], source: str, destination: str, lamports: int) -> bool:
    """
    Look for a parsed System Program transfer matching all three fields in a
    jsonParsed transaction (top-level and inner instructions).
    """
    meta = tx.get("meta") or {}
    if meta.get("err") is not None:
        return False

    message = (tx.get("transaction") or {}).get("message") or {}
    instructions = list(message.get("instructions") or [])
    for inner in meta.get("innerInstructions") or []:
        instructions.extend(inner.get("instructions") or [])

    for ix in instructions:
        if ix.get("program") != "system":
            continue
        parsed = ix.get("parsed")
        if not isinstance(parsed, dict) or parsed.get("type") != "transfer":
            continue
        info = parsed.get("info") or {}
        if (
            info.get("source") == source
            and info.get("destination") == destination
            and int(info.get("lamports", -1)) == lamports
        ):
            return True
    return False


# =======================================
# CLIENT
# =======================================
class SolanaRpcClient:
    """Thin async wrapper over solana-py for the calls the ledger needs."""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        commitment: Optional[str] = None,
        poll_interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ):
        self.rpc_url = rpc_url or settings.SOLANA_RPC_URL
        self.commitment = Commitment(commitment or settings.SOLANA_COMMITMENT)
        self.poll_interval = settings.CONFIRMATION_POLL_INTERVAL if poll_interval is None else poll_interval
        self.max_attempts = max_attempts or settings.CONFIRMATION_MAX_ATTEMPTS

    def _client(self) -> AsyncClient:
        return AsyncClient(self.rpc_url, commitment=self.commitment, timeout=10)

    @rpc_retry
    async def get_balance(self, address: str) -> int:
        async with self._client() as client:
            resp = await client.get_balance(Pubkey.from_string(address))
            return resp.value or 0

    @rpc_retry
    async def get_latest_blockhash(self) -> Hash:
        async with self._client() as client:
            resp = await client.get_latest_blockhash(commitment=self.commitment)
            return resp.value.blockhash

    @rpc_retry
    async def get_transaction_status(self, tx_hash: str) -> TxStatus:
        async with self._client() as client:
            resp = await client.get_signature_statuses(
                [Signature.from_string(tx_hash)], search_transaction_history=True
            )
        status = resp.value[0] if resp.value else None
        if status is None:
            return TxStatus(found=False, confirmed=False)
        if status.err is not None:
            return TxStatus(found=True, confirmed=False, err=str(status.err))
        return TxStatus(found=True, confirmed=status.confirmation_status in _CONFIRMED_LEVELS)

    @rpc_retry
    async def get_parsed_transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        async with self._client() as client:
            resp = await client.get_transaction(
                Signature.from_string(tx_hash),
                encoding="jsonParsed",
                commitment=self.commitment,
                max_supported_transaction_version=0,
            )
        if resp.value is None:
            return None
        # EncodedConfirmedTransactionWithStatusMeta -> {"slot", "transaction": {"transaction", "meta"}, ...}
        return json.loads(resp.value.to_json()).get("transaction")

    async def submit_signed_transaction(self, raw_tx: bytes) -> str:
        """Send already-signed bytes. Preflight rejection raises SubmissionFailed."""
        try:
            async with self._client() as client:
                resp = await client.send_raw_transaction(
                    raw_tx, opts=TxOpts(skip_preflight=False, preflight_commitment=self.commitment)
                )
        except RPCException as e:
            logger.error(f"Transaction rejected at preflight: {e}")
            raise SubmissionFailed(f"Transaction rejected: {e}")
        return str(resp.value)

    async def verify_transfer(self, tx_hash: str, source: str, destination: str, lamports: int) -> bool:
        """True only for a confirmed, successful transfer of exactly `lamports` source -> destination."""
        tx = await self.get_parsed_transaction(tx_hash)
        if tx is None:
            logger.info(f"Transfer {short(tx_hash)} not found at {self.commitment}")
            return False
        return find_system_transfer(tx, source, destination, lamports)

    async def wait_for_confirmation(
        self,
        tx_hash: str,
        max_attempts: Optional[int] = None,
        interval: Optional[float] = None,
    ) -> ConfirmationOutcome:
        """Bounded poll. Never hangs: ends in CONFIRMED, FAILED or UNCONFIRMED."""
        max_attempts = max_attempts or self.max_attempts
        interval = self.poll_interval if interval is None else interval

        for attempt in range(1, max_attempts + 1):
            try:
                status = await self.get_transaction_status(tx_hash)
            except SolanaRpcException as e:
                logger.warning(f"Status poll {attempt}/{max_attempts} for {short(tx_hash)} failed: {e}")
            else:
                if status.err is not None:
                    logger.warning(f"❌ {short(tx_hash)} failed on-chain: {status.err}")
                    return ConfirmationOutcome.FAILED
                if status.confirmed:
                    logger.info(f"✅ {short(tx_hash)} CONFIRMED after {attempt} attempt(s)")
                    return ConfirmationOutcome.CONFIRMED
            if attempt < max_attempts:
                await asyncio.sleep(interval)

        logger.warning(f"⏳ {short(tx_hash)} still unconfirmed after {max_attempts} attempts")
        return ConfirmationOutcome.UNCONFIRMED

    async def resolve_submitted(self, tx_hash: str, submitted_at: Optional[datetime]) -> ConfirmationOutcome:
        """
        Re-check a signature recorded by an earlier attempt. EXPIRED means it is
        safe to build and send a replacement.
        """
        outcome = await self.wait_for_confirmation(tx_hash)
        if outcome is not ConfirmationOutcome.UNCONFIRMED or not is_expired(submitted_at):
            return outcome
        try:
            status = await self.get_transaction_status(tx_hash)
        except SolanaRpcException:
            return ConfirmationOutcome.UNCONFIRMED
        if status.found:
            return ConfirmationOutcome.UNCONFIRMED
        logger.info(f"{short(tx_hash)} never landed, treating as dropped")
        return ConfirmationOutcome.EXPIRED


def is_expired(submitted_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if submitted_at is None:
        return False
    if submitted_at.tzinfo is None:  # SQLite drops tzinfo
        submitted_at = submitted_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return now - submitted_at > timedelta(seconds=settings.TX_EXPIRY_SECONDS)


solana_rpc = SolanaRpcClient()
