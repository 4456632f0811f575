"""
Transactional access to launch and contribution rows.

Every ledger mutation goes through one of the conditional primitives below.
They are single guarded UPDATE/DELETE statements whose WHERE clause re-checks
the invariant against live data, so a zero-row result means another request
got there first and the caller must re-derive the reason from a fresh read.
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, List, Optional, TypeVar

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from safu.models import (
    IN_FLIGHT_STATUSES, Feature, LaunchStatus, RequestType, SafuContribution, SafuLaunch, WithdrawalRequest
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LedgerStore:

    def __init__(self, sessionmaker: Optional[async_sessionmaker] = None):
        if sessionmaker is None:
            from safu.database import AsyncSessionLocal
            sessionmaker = AsyncSessionLocal
        self.sessionmaker = sessionmaker

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Plain session for reads; nothing is committed."""
        async with self.sessionmaker() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Atomic unit of work: commits on exit, rolls back on any exception."""
        async with self.sessionmaker() as session:
            async with session.begin():
                yield session

    async def with_transaction(self, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async with self.transaction() as session:
            return await fn(session)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get_launch(self, session: AsyncSession, launch_id: str) -> Optional[SafuLaunch]:
        stmt = (
            select(SafuLaunch)
            .where(SafuLaunch.id == launch_id)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_contribution_by_tx(self, session: AsyncSession, tx_hash: str) -> Optional[SafuContribution]:
        result = await session.execute(select(SafuContribution).where(SafuContribution.tx_hash == tx_hash))
        return result.scalar_one_or_none()

    async def get_wallet_contributions(self, session: AsyncSession, launch_id: str, wallet: str) -> List[SafuContribution]:
        stmt = (
            select(SafuContribution)
            .where(SafuContribution.launch_id == launch_id, SafuContribution.wallet_address == wallet)
            .order_by(SafuContribution.created_at.asc())
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def wallet_contributed(self, session: AsyncSession, launch_id: str, wallet: str) -> int:
        stmt = select(func.coalesce(func.sum(SafuContribution.amount_lamports), 0)).where(
            SafuContribution.launch_id == launch_id,
            SafuContribution.wallet_address == wallet,
        )
        return int((await session.execute(stmt)).scalar_one())

    async def count_wallet_contributions(self, session: AsyncSession, launch_id: str, wallet: str) -> int:
        stmt = select(func.count(SafuContribution.id)).where(
            SafuContribution.launch_id == launch_id,
            SafuContribution.wallet_address == wallet,
        )
        return int((await session.execute(stmt)).scalar_one())

    async def sum_contributions(self, session: AsyncSession, launch_id: str) -> int:
        stmt = select(func.coalesce(func.sum(SafuContribution.amount_lamports), 0)).where(
            SafuContribution.launch_id == launch_id
        )
        return int((await session.execute(stmt)).scalar_one())

    async def get_in_flight_request(
        self,
        session: AsyncSession,
        wallet: str,
        pool_id: str,
        feature: Feature,
        request_type: RequestType = RequestType.CLAIM,
    ) -> Optional[WithdrawalRequest]:
        stmt = (
            select(WithdrawalRequest)
            .where(
                WithdrawalRequest.wallet_address == wallet,
                WithdrawalRequest.pool_id == pool_id,
                WithdrawalRequest.feature == feature,
                WithdrawalRequest.request_type == request_type,
                WithdrawalRequest.status.in_(IN_FLIGHT_STATUSES),
            )
            .order_by(WithdrawalRequest.created_at.desc())
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalars().first()

    # ------------------------------------------------------------------
    # Conditional writes
    # ------------------------------------------------------------------
    async def conditional_increment(
        self,
        session: AsyncSession,
        launch_id: str,
        lamports: int,
        cap: Optional[int] = None,
    ) -> bool:
        """
        total_contributed += lamports, only while the launch accepts
        contributions and the result stays within the cap (the launch's own
        hardcap unless one is given). Returns False when no row matched.
        """
        limit = cap if cap is not None else SafuLaunch.hardcap_lamports
        stmt = (
            update(SafuLaunch)
            .where(
                SafuLaunch.id == launch_id,
                SafuLaunch.status == LaunchStatus.PENDING_CONTRIBUTIONS,
                SafuLaunch.total_contributed_lamports + lamports <= limit,
            )
            .values(total_contributed_lamports=SafuLaunch.total_contributed_lamports + lamports)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def conditional_decrement(self, session: AsyncSession, launch_id: str, lamports: int) -> bool:
        """Refund side of the ledger: never below zero, only before the launch proceeds."""
        stmt = (
            update(SafuLaunch)
            .where(
                SafuLaunch.id == launch_id,
                SafuLaunch.status == LaunchStatus.PENDING_CONTRIBUTIONS,
                SafuLaunch.total_contributed_lamports >= lamports,
            )
            .values(total_contributed_lamports=SafuLaunch.total_contributed_lamports - lamports)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def adjust_contributor_count(self, session: AsyncSession, launch_id: str, delta: int) -> None:
        stmt = (
            update(SafuLaunch)
            .where(SafuLaunch.id == launch_id, SafuLaunch.contributor_count + delta >= 0)
            .values(contributor_count=SafuLaunch.contributor_count + delta)
            .execution_options(synchronize_session=False)
        )
        await session.execute(stmt)

    async def transition_status(
        self,
        session: AsyncSession,
        launch_id: str,
        sources: Iterable[LaunchStatus],
        target: LaunchStatus,
        *conditions: Any,
        **values: Any,
    ) -> bool:
        stmt = (
            update(SafuLaunch)
            .where(SafuLaunch.id == launch_id, SafuLaunch.status.in_(list(sources)), *conditions)
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def delete_unclaimed_contribution(self, session: AsyncSession, contribution_id: str) -> bool:
        stmt = (
            delete(SafuContribution)
            .where(SafuContribution.id == contribution_id, SafuContribution.claimed.is_(False))
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def update_request(
        self,
        session: AsyncSession,
        request_id: str,
        sources: Iterable[Any],
        **values: Any,
    ) -> bool:
        """Withdrawal request compare-and-set on status."""
        stmt = (
            update(WithdrawalRequest)
            .where(WithdrawalRequest.id == request_id, WithdrawalRequest.status.in_(list(sources)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1
