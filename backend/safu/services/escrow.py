# safu/services/escrow.py
"""
Custodial deposit wallets, one per launch.

The secret key exists in plaintext only inside the signing calls below: it is
decrypted, used to sign and dropped before the call returns. Nothing here logs,
returns or caches it.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from solana.exceptions import SolanaRpcException
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.transaction import Transaction, VersionedTransaction
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from safu.exceptions import SigningFailed, SafuError
from safu.models import SafuLaunch
from safu.security import decrypt_private_key_backend, encrypt_private_key_backend, rotate_private_key
from safu.services.solana_rpc import SolanaRpcClient, solana_rpc
from safu.utils.logger import short

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EscrowWallet:
    public_address: str
    encrypted_secret: str


@dataclass(frozen=True)
class SignedTransaction:
    signature: str
    raw: bytes


class EscrowWalletManager:

    def __init__(self, rpc: Optional[SolanaRpcClient] = None, keys: Optional[List[str]] = None):
        self.rpc = rpc or solana_rpc
        self.keys = keys

    def create_escrow_wallet(self, launch_id: Optional[str] = None) -> EscrowWallet:
        """Fresh keypair, encrypted before it leaves this function. Fails closed without a key."""
        keypair = Keypair()
        encrypted = encrypt_private_key_backend(bytes(keypair), self.keys)
        address = str(keypair.pubkey())
        logger.info(f"🔐 Escrow wallet {short(address)} created for launch {launch_id or '(new)'}")
        return EscrowWallet(public_address=address, encrypted_secret=encrypted)

    def _load_keypair(self, launch: SafuLaunch) -> Keypair:
        raw = decrypt_private_key_backend(launch.encrypted_private_key, self.keys)
        try:
            keypair = Keypair.from_bytes(raw)
        except ValueError:
            raise SigningFailed("Stored escrow key is malformed")
        finally:
            del raw
        if str(keypair.pubkey()) != launch.deposit_wallet_address:
            logger.error(f"Escrow key for launch {launch.id} does not match its deposit address")
            raise SigningFailed("Escrow key does not match deposit address")
        return keypair

    async def sign_instructions(self, launch: SafuLaunch, instructions: Sequence[Instruction]) -> SignedTransaction:
        """Legacy transaction paid for and signed by the escrow wallet."""
        blockhash = await self.rpc.get_latest_blockhash()
        keypair = self._load_keypair(launch)
        try:
            message = Message.new_with_blockhash(list(instructions), keypair.pubkey(), blockhash)
            tx = Transaction([keypair], message, blockhash)
        except Exception as e:
            logger.error(f"Signing failed for launch {launch.id}: {e}")
            raise SigningFailed()
        finally:
            del keypair
        return SignedTransaction(signature=str(tx.signatures[0]), raw=bytes(tx))

    def sign_versioned(
        self,
        launch: SafuLaunch,
        tx: VersionedTransaction,
        extra_signers: Iterable[Keypair] = (),
    ) -> SignedTransaction:
        """Sign a prebuilt versioned transaction (e.g. from a transaction builder API)."""
        keypair = self._load_keypair(launch)
        try:
            signed = VersionedTransaction(tx.message, [keypair, *extra_signers])
        except Exception as e:
            logger.error(f"Signing failed for launch {launch.id}: {e}")
            raise SigningFailed()
        finally:
            del keypair
        return SignedTransaction(signature=str(signed.signatures[0]), raw=bytes(signed))

    async def submit(self, signed: SignedTransaction) -> str:
        """
        Submit signed bytes. A transport error leaves the outcome unknown, so the
        locally known signature is returned and the caller's confirmation wait decides.
        """
        try:
            return await self.rpc.submit_signed_transaction(signed.raw)
        except SolanaRpcException as e:
            logger.warning(f"Submission of {short(signed.signature)} hit a transport error: {e}")
            return signed.signature

    async def sign_and_submit(self, launch: SafuLaunch, instructions: Sequence[Instruction]) -> str:
        signed = await self.sign_instructions(launch, instructions)
        return await self.submit(signed)

    async def get_balance(self, launch: SafuLaunch) -> int:
        return await self.rpc.get_balance(launch.deposit_wallet_address)

    async def rotate_encryption_key(self, session: AsyncSession) -> int:
        """Re-encrypt every escrow secret under the newest master key. Caller commits."""
        result = await session.execute(select(SafuLaunch))
        rotated = 0
        for launch in result.scalars():
            try:
                launch.encrypted_private_key = rotate_private_key(launch.encrypted_private_key, self.keys)
                rotated += 1
            except SafuError as e:
                logger.error(f"Could not rotate escrow key for launch {launch.id}: {e.message}")
                raise
        await session.flush()
        logger.info(f"Rotated {rotated} escrow keys")
        return rotated


escrow_manager = EscrowWalletManager()
