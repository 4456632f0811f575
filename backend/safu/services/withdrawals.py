# safu/services/withdrawals.py
"""
Withdrawal / claim request queue shared by staking, race, burn, social farming
and safu payouts. At most one pending|processing request may exist per
(wallet, pool, feature, request type).
"""
import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from safu.exceptions import ClaimInProgress, InvalidState, WalletMismatch, WithdrawalRequestNotFound
from safu.models import IN_FLIGHT_STATUSES, Feature, RequestType, WithdrawalRequest, WithdrawalStatus
from safu.services.guards import (
    ensure_amount_bounds,
    ensure_text_length,
    ensure_tx_hash_format,
    ensure_wallet_address,
    ensure_wallet_not_blocked,
)
from safu.store import LedgerStore
from safu.utils.logger import short

logger = logging.getLogger(__name__)


async def open_request(
    session: AsyncSession,
    store: LedgerStore,
    wallet_address: str,
    pool_id: str,
    feature: Feature,
    amount: float,
    request_type: RequestType = RequestType.CLAIM,
    status: WithdrawalStatus = WithdrawalStatus.PENDING,
    token_symbol: Optional[str] = None,
    token_address: Optional[str] = None,
) -> WithdrawalRequest:
    """
    Insert a request inside the caller's transaction. The in-flight check and
    the partial unique index both guard the same tuple; losing either way
    raises ClaimInProgress and the caller's transaction rolls back.
    """
    existing = await store.get_in_flight_request(session, wallet_address, pool_id, feature, request_type)
    if existing is not None:
        raise ClaimInProgress(request_id=existing.id, status=existing.status.value)

    request = WithdrawalRequest(
        wallet_address=wallet_address,
        pool_id=pool_id,
        feature=feature,
        request_type=request_type,
        amount=amount,
        status=status,
        token_symbol=token_symbol,
        token_address=token_address,
    )
    session.add(request)
    try:
        await session.flush()
    except IntegrityError:
        logger.info(f"Concurrent {feature.value} {request_type.value} for {short(wallet_address)} on pool {pool_id}")
        raise ClaimInProgress()
    return request


class WithdrawalService:

    def __init__(self, store: Optional[LedgerStore] = None):
        self.store = store or LedgerStore()

    async def create_request(
        self,
        wallet_address: str,
        pool_id: str,
        feature: Feature,
        amount: float,
        token_symbol: Optional[str] = None,
        token_address: Optional[str] = None,
    ) -> WithdrawalRequest:
        if feature == Feature.SAFU:
            raise InvalidState("Safu payouts are opened through the launch claim and refund endpoints")
        wallet = ensure_wallet_address(wallet_address)
        pool_id = ensure_text_length(pool_id, "pool_id", 64, required=True)
        ensure_amount_bounds(amount)
        token_symbol = ensure_text_length(token_symbol, "token_symbol", 16)

        async with self.store.transaction() as session:
            await ensure_wallet_not_blocked(session, wallet)
            request = await open_request(
                session, self.store, wallet, pool_id, feature, amount,
                token_symbol=token_symbol, token_address=token_address,
            )
        logger.info(f"📝 {feature.value} claim {request.id} opened for {short(wallet)} ({amount})")
        return request

    async def get_request(self, request_id: str) -> WithdrawalRequest:
        async with self.store.session() as session:
            request = await session.get(WithdrawalRequest, request_id)
        if request is None:
            raise WithdrawalRequestNotFound(request_id=request_id)
        return request

    async def list_requests(
        self,
        wallet_address: str,
        feature: Optional[Feature] = None,
        status: Optional[WithdrawalStatus] = None,
        limit: int = 50,
    ) -> List[WithdrawalRequest]:
        wallet = ensure_wallet_address(wallet_address)
        stmt = select(WithdrawalRequest).where(WithdrawalRequest.wallet_address == wallet)
        if feature is not None:
            stmt = stmt.where(WithdrawalRequest.feature == feature)
        if status is not None:
            stmt = stmt.where(WithdrawalRequest.status == status)
        stmt = stmt.order_by(WithdrawalRequest.created_at.desc()).limit(limit)
        async with self.store.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def mark_processing(self, request_id: str) -> WithdrawalRequest:
        if (await self.get_request(request_id)).feature == Feature.SAFU:
            raise InvalidState("Safu payouts are settled by the settlement engine")
        async with self.store.transaction() as session:
            moved = await self.store.update_request(
                session, request_id, [WithdrawalStatus.PENDING], status=WithdrawalStatus.PROCESSING
            )
            request = await session.get(WithdrawalRequest, request_id, populate_existing=True)
            if request is None:
                raise WithdrawalRequestNotFound(request_id=request_id)
            if not moved:
                raise InvalidState(f"Cannot process request with status: {request.status.value}")
        return request

    async def complete_request(
        self,
        request_id: str,
        tx_hash: str,
        wallet_address: Optional[str] = None,
        notes: str = "User signed and submitted transaction",
    ) -> WithdrawalRequest:
        async with self.store.session() as session:
            request = await session.get(WithdrawalRequest, request_id)
            if request is None:
                raise WithdrawalRequestNotFound(request_id=request_id)
            if wallet_address and request.wallet_address != wallet_address:
                logger.error(
                    f"Wallet mismatch on request {request_id}: "
                    f"{short(request.wallet_address)} vs {short(wallet_address)}"
                )
                raise WalletMismatch()
            if request.feature == Feature.SAFU:
                raise InvalidState("Safu payouts are confirmed by the settlement engine")
            await ensure_wallet_not_blocked(session, request.wallet_address)
            if request.status not in IN_FLIGHT_STATUSES:
                raise InvalidState(f"Cannot confirm request with status: {request.status.value}")
        tx_hash = ensure_tx_hash_format(tx_hash)

        async with self.store.transaction() as session:
            completed = await self.store.update_request(
                session, request_id, IN_FLIGHT_STATUSES,
                status=WithdrawalStatus.COMPLETED, tx_hash=tx_hash, admin_notes=notes,
            )
            request = await session.get(WithdrawalRequest, request_id, populate_existing=True)
        if not completed:
            raise InvalidState(f"Cannot confirm request with status: {request.status.value}")
        logger.info(f"✅ Request {request_id} completed with {short(tx_hash)}")
        return request

    async def reject_request(self, request_id: str, reason: str) -> WithdrawalRequest:
        reason = ensure_text_length(reason, "reason", 1000, required=True)
        request = await self.get_request(request_id)
        if request.feature == Feature.SAFU:
            raise InvalidState("Safu payouts are settled by the settlement engine")

        async with self.store.transaction() as session:
            rejected = await self.store.update_request(
                session, request_id, IN_FLIGHT_STATUSES,
                status=WithdrawalStatus.REJECTED, admin_notes=reason,
            )
            request = await session.get(WithdrawalRequest, request_id, populate_existing=True)
            if not rejected:
                raise InvalidState(f"Cannot reject request with status: {request.status.value}")
        logger.info(f"Request {request_id} rejected: {reason}")
        return request


withdrawals = WithdrawalService()
