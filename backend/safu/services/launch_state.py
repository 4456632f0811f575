# safu/services/launch_state.py
"""
Launch lifecycle.

    pending_contributions -> ready_to_launch -> launching -> created
                                   |               |
                                   +---> failed <--+
    pending_contributions -> cancelled   (only while nothing is contributed)

Every transition is one conditional UPDATE on the launch row whose WHERE
clause names the allowed source states, so two racing callers cannot both
move the same launch.
"""
import logging
from typing import Dict, FrozenSet, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from safu.exceptions import InvalidState, LaunchNotFound, WalletMismatch
from safu.models import LaunchStatus, SafuLaunch, utcnow
from safu.store import LedgerStore

logger = logging.getLogger(__name__)

ALLOWED_SOURCES: Dict[LaunchStatus, FrozenSet[LaunchStatus]] = {
    LaunchStatus.READY_TO_LAUNCH: frozenset({LaunchStatus.PENDING_CONTRIBUTIONS}),
    LaunchStatus.LAUNCHING: frozenset({LaunchStatus.READY_TO_LAUNCH}),
    LaunchStatus.CREATED: frozenset({LaunchStatus.LAUNCHING}),
    LaunchStatus.FAILED: frozenset({LaunchStatus.READY_TO_LAUNCH, LaunchStatus.LAUNCHING}),
    LaunchStatus.CANCELLED: frozenset({LaunchStatus.PENDING_CONTRIBUTIONS}),
}

# Re-requesting these while already there is a no-op rather than an error
IDEMPOTENT_TARGETS = frozenset({LaunchStatus.LAUNCHING})


def can_transition(current: LaunchStatus, target: LaunchStatus) -> bool:
    return current in ALLOWED_SOURCES.get(target, frozenset())


class LaunchStateMachine:

    def __init__(self, store: Optional[LedgerStore] = None):
        self.store = store or LedgerStore()

    async def transition(
        self,
        session: AsyncSession,
        launch_id: str,
        target: LaunchStatus,
        *conditions,
        **values,
    ) -> SafuLaunch:
        """Apply one transition inside the caller's transaction."""
        moved = await self.store.transition_status(
            session, launch_id, ALLOWED_SOURCES[target], target, *conditions, **values
        )
        launch = await self.store.get_launch(session, launch_id)
        if launch is None:
            raise LaunchNotFound(launch_id=launch_id)
        if moved:
            logger.info(f"Launch {launch_id} -> {target.value}")
            return launch
        if target in IDEMPOTENT_TARGETS and launch.status == target:
            return launch
        raise InvalidState(
            f"Cannot move launch from {launch.status.value} to {target.value}",
            status=launch.status.value,
        )

    async def mark_ready_if_hardcap_reached(self, session: AsyncSession, launch_id: str) -> bool:
        """Called by the ledger in the same unit as the increment that may have filled the launch."""
        moved = await self.store.transition_status(
            session,
            launch_id,
            ALLOWED_SOURCES[LaunchStatus.READY_TO_LAUNCH],
            LaunchStatus.READY_TO_LAUNCH,
            SafuLaunch.total_contributed_lamports >= SafuLaunch.hardcap_lamports,
        )
        if moved:
            logger.info(f"🎯 Launch {launch_id} reached its hardcap -> ready_to_launch")
        return moved

    async def begin_launch(self, launch_id: str) -> SafuLaunch:
        async with self.store.transaction() as session:
            return await self.transition(session, launch_id, LaunchStatus.LAUNCHING)

    async def record_creation_attempt(
        self,
        launch_id: str,
        tx_hash: str,
        mint_address: str,
        previous_tx_hash: Optional[str] = None,
    ) -> None:
        """
        Persist the creation signature before it is sent, so a retry re-checks
        it instead of paying twice. Only the caller that saw `previous_tx_hash`
        as the current attempt wins; a concurrent executor gets InvalidState.
        """
        if previous_tx_hash is None:
            current = SafuLaunch.creation_tx_hash.is_(None)
        else:
            current = SafuLaunch.creation_tx_hash == previous_tx_hash
        async with self.store.transaction() as session:
            recorded = await self.store.transition_status(
                session,
                launch_id,
                [LaunchStatus.LAUNCHING],
                LaunchStatus.LAUNCHING,
                current,
                creation_tx_hash=tx_hash,
                creation_submitted_at=utcnow(),
                mint_address=mint_address,
            )
        if not recorded:
            raise InvalidState("Another creation attempt is already in progress", launch_id=launch_id)

    async def mark_created(self, launch_id: str, contract_address: str, tx_hash: Optional[str] = None) -> SafuLaunch:
        values = {"contract_address": contract_address, "launched_at": utcnow(), "failure_reason": None}
        if tx_hash:
            values["creation_tx_hash"] = tx_hash
        async with self.store.transaction() as session:
            return await self.transition(session, launch_id, LaunchStatus.CREATED, **values)

    async def mark_failed(self, launch_id: str, reason: str) -> SafuLaunch:
        """Only for permanent failures; a confirmation timeout must never land here."""
        async with self.store.transaction() as session:
            launch = await self.transition(session, launch_id, LaunchStatus.FAILED, failure_reason=reason[:1000])
        logger.error(f"Launch {launch_id} failed: {reason}")
        return launch

    async def cancel(self, launch_id: str, requested_by: str) -> SafuLaunch:
        async with self.store.transaction() as session:
            cancelled = await self.store.transition_status(
                session,
                launch_id,
                ALLOWED_SOURCES[LaunchStatus.CANCELLED],
                LaunchStatus.CANCELLED,
                SafuLaunch.total_contributed_lamports == 0,
                SafuLaunch.creator_wallet == requested_by,
            )
            launch = await self.store.get_launch(session, launch_id)
            if launch is None:
                raise LaunchNotFound(launch_id=launch_id)
            if cancelled:
                logger.info(f"Launch {launch_id} cancelled by its creator")
                return launch
            if launch.creator_wallet != requested_by:
                raise WalletMismatch("Only the creator can cancel a launch")
            if launch.status != LaunchStatus.PENDING_CONTRIBUTIONS:
                raise InvalidState(f"Cannot cancel a launch in {launch.status.value}", status=launch.status.value)
            raise InvalidState("Cannot cancel a launch that already has contributions")


launch_state = LaunchStateMachine()
