# safu/services/launches.py
import logging
from typing import List, Optional

from sqlalchemy import select

from safu.config import settings, sol_to_lamports
from safu.exceptions import InvalidInput, LaunchNotFound
from safu.models import LaunchStatus, SafuLaunch, new_id
from safu.services.escrow import EscrowWalletManager, escrow_manager
from safu.services.guards import (
    ensure_amount_bounds,
    ensure_text_length,
    ensure_wallet_address,
    ensure_wallet_not_blocked,
)
from safu.store import LedgerStore
from safu.utils.logger import short

logger = logging.getLogger(__name__)


class LaunchService:

    def __init__(self, store: Optional[LedgerStore] = None, escrow: Optional[EscrowWalletManager] = None):
        self.store = store or LedgerStore()
        self.escrow = escrow or escrow_manager

    async def create_launch(
        self,
        creator_wallet: str,
        token_name: str,
        token_symbol: str,
        description: Optional[str] = None,
        token_image_url: Optional[str] = None,
        website_url: Optional[str] = None,
        telegram_url: Optional[str] = None,
        twitter_url: Optional[str] = None,
        hardcap_sol: Optional[float] = None,
        per_wallet_cap_sol: Optional[float] = None,
    ) -> SafuLaunch:
        creator = ensure_wallet_address(creator_wallet, "creator_wallet")
        token_name = ensure_text_length(token_name, "token_name", settings.TOKEN_NAME_MAX_LENGTH, required=True)
        token_symbol = ensure_text_length(token_symbol, "token_symbol", settings.TOKEN_SYMBOL_MAX_LENGTH, required=True)
        description = ensure_text_length(description, "description", settings.DESCRIPTION_MAX_LENGTH)
        urls = {
            name: ensure_text_length(value, name, settings.URL_MAX_LENGTH)
            for name, value in (
                ("token_image_url", token_image_url),
                ("website_url", website_url),
                ("telegram_url", telegram_url),
                ("twitter_url", twitter_url),
            )
        }

        hardcap = sol_to_lamports(ensure_amount_bounds(
            settings.DEFAULT_HARDCAP_SOL if hardcap_sol is None else hardcap_sol, "hardcap_sol"
        ))
        per_wallet_cap = sol_to_lamports(ensure_amount_bounds(
            settings.PER_WALLET_CAP_SOL if per_wallet_cap_sol is None else per_wallet_cap_sol, "per_wallet_cap_sol"
        ))
        if per_wallet_cap > hardcap:
            raise InvalidInput("per_wallet_cap_sol cannot exceed hardcap_sol", field="per_wallet_cap_sol")
        if hardcap <= sol_to_lamports(settings.PLATFORM_FEE_SOL):
            raise InvalidInput("hardcap_sol must exceed the platform fee", field="hardcap_sol")

        async with self.store.session() as session:
            await ensure_wallet_not_blocked(session, creator)

        launch_id = new_id()
        # Raises before anything is written when encryption is unavailable
        wallet = self.escrow.create_escrow_wallet(launch_id)

        launch = SafuLaunch(
            id=launch_id,
            creator_wallet=creator,
            token_name=token_name,
            token_symbol=token_symbol.upper(),
            description=description,
            stake_allocation=settings.STAKE_ALLOCATION,
            race_allocation=settings.RACE_ALLOCATION,
            burn_allocation=settings.BURN_ALLOCATION,
            social_farm_allocation=settings.SOCIAL_FARM_ALLOCATION,
            dev_lock_allocation=settings.DEV_LOCK_ALLOCATION,
            compensation_allocation=settings.COMPENSATION_ALLOCATION,
            dev_lock_duration=settings.DEV_LOCK_DURATION,
            dev_lock_unit=settings.DEV_LOCK_UNIT,
            contributor_pool_tokens=settings.CONTRIBUTOR_POOL_TOKENS,
            deposit_wallet_address=wallet.public_address,
            encrypted_private_key=wallet.encrypted_secret,
            hardcap_lamports=hardcap,
            per_wallet_cap_lamports=per_wallet_cap,
            total_contributed_lamports=0,
            contributor_count=0,
            status=LaunchStatus.PENDING_CONTRIBUTIONS,
            **urls,
        )
        async with self.store.transaction() as session:
            session.add(launch)

        logger.info(
            f"🆕 Launch {launch_id} ({launch.token_symbol}) by {short(creator)}, "
            f"deposit {short(wallet.public_address)}"
        )
        return launch

    async def get_launch(self, launch_id: str) -> SafuLaunch:
        async with self.store.session() as session:
            launch = await self.store.get_launch(session, launch_id)
        if launch is None:
            raise LaunchNotFound(launch_id=launch_id)
        return launch

    async def list_launches(self, status: Optional[LaunchStatus] = None, limit: int = 50) -> List[SafuLaunch]:
        stmt = select(SafuLaunch)
        if status is not None:
            stmt = stmt.where(SafuLaunch.status == status)
        stmt = stmt.order_by(SafuLaunch.created_at.desc()).limit(limit)
        async with self.store.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())


launches = LaunchService()
