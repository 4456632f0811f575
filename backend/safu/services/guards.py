# safu/services/guards.py
"""
Precondition checks shared by every write path.

All of these run before the first write of an operation, so a failing check
never leaves a partial row behind.
"""
import hashlib
import logging
from contextlib import asynccontextmanager
from typing import Optional

from redis.exceptions import RedisError
from solders.pubkey import Pubkey
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from safu.config import settings
from safu.exceptions import DuplicateRequest, InvalidInput, WalletBlocked
from safu.models import BlockedWallet
from safu.utils.logger import short

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────
# Blocklist
# ──────────────────────────────────────────────────────────────
async def is_wallet_blocked(session: AsyncSession, wallet_address: str) -> bool:
    result = await session.execute(
        select(BlockedWallet.id).where(
            BlockedWallet.wallet_address == wallet_address,
            BlockedWallet.is_active.is_(True),
        )
    )
    return result.first() is not None


async def ensure_wallet_not_blocked(session: AsyncSession, wallet_address: str) -> None:
    if await is_wallet_blocked(session, wallet_address):
        logger.warning(f"Blocked wallet {short(wallet_address)} attempted a write")
        raise WalletBlocked(wallet_address=wallet_address)


async def block_wallet(session: AsyncSession, wallet_address: str, reason: Optional[str] = None) -> BlockedWallet:
    """Add or re-activate a blocklist entry. Caller commits."""
    result = await session.execute(select(BlockedWallet).where(BlockedWallet.wallet_address == wallet_address))
    entry = result.scalar_one_or_none()
    if entry is None:
        entry = BlockedWallet(wallet_address=wallet_address, reason=reason, is_active=True)
        session.add(entry)
    else:
        entry.is_active = True
        entry.reason = reason or entry.reason
    await session.flush()
    logger.info(f"🚫 Wallet {short(wallet_address)} blocked: {reason}")
    return entry


async def unblock_wallet(session: AsyncSession, wallet_address: str) -> bool:
    result = await session.execute(
        update(BlockedWallet)
        .where(BlockedWallet.wallet_address == wallet_address, BlockedWallet.is_active.is_(True))
        .values(is_active=False)
    )
    if result.rowcount:
        logger.info(f"Wallet {short(wallet_address)} unblocked")
    return bool(result.rowcount)


# ──────────────────────────────────────────────────────────────
# Input bounds
# ──────────────────────────────────────────────────────────────
def ensure_text_length(
    value: Optional[str],
    field: str,
    max_length: int,
    required: bool = False,
    min_length: int = 0,
) -> Optional[str]:
    """Strip and bound a user-supplied string. Empty optional text becomes None."""
    if value is None or not value.strip():
        if required:
            raise InvalidInput(f"{field} is required", field=field)
        return None
    value = value.strip()
    if len(value) > max_length:
        raise InvalidInput(f"{field} must be at most {max_length} characters", field=field)
    if len(value) < min_length:
        raise InvalidInput(f"{field} must be at least {min_length} characters", field=field)
    return value


def ensure_amount_bounds(amount, field: str = "amount", maximum=None):
    """Amounts are strictly positive and, when a maximum is given, at most that."""
    if amount is None or isinstance(amount, bool):
        raise InvalidInput(f"{field} is required", field=field)
    if amount != amount or amount <= 0:  # NaN or non-positive
        raise InvalidInput(f"{field} must be greater than 0", field=field)
    if maximum is not None and amount > maximum:
        raise InvalidInput(f"{field} must be at most {maximum}", field=field)
    return amount


def ensure_tx_hash_format(tx_hash: Optional[str], field: str = "tx_hash") -> str:
    tx_hash = (tx_hash or "").strip()
    if not settings.TX_HASH_MIN_LENGTH <= len(tx_hash) <= settings.TX_HASH_MAX_LENGTH:
        raise InvalidInput("Invalid transaction hash format", field=field)
    return tx_hash


def ensure_wallet_address(address: Optional[str], field: str = "wallet_address") -> str:
    address = (address or "").strip()
    try:
        Pubkey.from_string(address)
    except ValueError:
        raise InvalidInput("Invalid wallet address", field=field)
    return address


# ──────────────────────────────────────────────────────────────
# Duplicate-request suppression
# ──────────────────────────────────────────────────────────────
class RequestDeduplicator:
    """
    Short-lived request fingerprints in redis.

    A second identical write arriving while the first is still inside its TTL
    window is rejected with DuplicateRequest. A failed request releases its
    fingerprint so the caller can retry straight away.
    """

    def __init__(self, client=None, ttl: Optional[int] = None, prefix: str = "safu:req:"):
        if client is None:
            from safu.utils import redis_client
            client = redis_client
        self.client = client
        self.ttl = ttl or settings.REQUEST_DEDUP_TTL_SECONDS
        self.prefix = prefix

    def fingerprint(self, *parts) -> str:
        digest = hashlib.sha256("|".join(str(p) for p in parts).encode("utf-8")).hexdigest()
        return f"{self.prefix}{digest}"

    async def acquire(self, *parts) -> Optional[str]:
        key = self.fingerprint(*parts)
        try:
            acquired = await self.client.set(key, b"1", nx=True, ex=self.ttl)
        except (RedisError, OSError) as e:
            # Store constraints still hold without redis; only the fast-path suppression is lost
            logger.warning(f"Request dedup unavailable, continuing without it: {e}")
            return None
        if not acquired:
            raise DuplicateRequest()
        return key

    async def release(self, key: Optional[str]) -> None:
        if key is None:
            return
        try:
            await self.client.delete(key)
        except (RedisError, OSError) as e:
            logger.warning(f"Failed to release request fingerprint: {e}")

    @asynccontextmanager
    async def guard(self, *parts):
        key = await self.acquire(*parts)
        try:
            yield key
        except BaseException:
            await self.release(key)
            raise


request_deduplicator = RequestDeduplicator()
