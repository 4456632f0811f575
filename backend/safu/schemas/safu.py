# safu/schemas/safu.py
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime

from safu.config import lamports_to_sol, settings
from safu.models import LaunchStatus, SafuContribution, SafuLaunch


# ============================================
# REQUESTS
# ============================================
class LaunchCreate(BaseModel):
    creator_wallet: str = Field(..., min_length=32, max_length=64)
    token_name: str = Field(..., min_length=1, max_length=settings.TOKEN_NAME_MAX_LENGTH)
    token_symbol: str = Field(..., min_length=1, max_length=settings.TOKEN_SYMBOL_MAX_LENGTH)
    description: Optional[str] = Field(default=None, max_length=settings.DESCRIPTION_MAX_LENGTH)
    token_image_url: Optional[str] = Field(default=None, max_length=settings.URL_MAX_LENGTH)
    website_url: Optional[str] = Field(default=None, max_length=settings.URL_MAX_LENGTH)
    telegram_url: Optional[str] = Field(default=None, max_length=settings.URL_MAX_LENGTH)
    twitter_url: Optional[str] = Field(default=None, max_length=settings.URL_MAX_LENGTH)
    hardcap_sol: Optional[float] = Field(default=None, gt=0, le=10_000)
    per_wallet_cap_sol: Optional[float] = Field(default=None, gt=0, le=10_000)


class ContributionPrepare(BaseModel):
    wallet_address: str = Field(..., min_length=32, max_length=64)
    amount: float = Field(..., description="SOL")


class ContributionRegister(BaseModel):
    wallet_address: str = Field(..., min_length=32, max_length=64)
    amount: float = Field(..., description="SOL")
    tx_hash: str = Field(..., description="Signature of the transfer into the deposit wallet")


class WalletAction(BaseModel):
    """Claim / refund body"""
    wallet_address: str = Field(..., min_length=32, max_length=64)


# ============================================
# RESPONSES
# ============================================
class Allocations(BaseModel):
    stake: int
    race: int
    burn: int
    social_farm: int
    dev_lock: int
    compensation: int
    dev_lock_duration: int
    dev_lock_unit: str
    contributor_pool_tokens: int


class LaunchResponse(BaseModel):
    id: str
    creator_wallet: str
    token_name: str
    token_symbol: str
    description: Optional[str] = None
    token_image_url: Optional[str] = None
    website_url: Optional[str] = None
    telegram_url: Optional[str] = None
    twitter_url: Optional[str] = None
    deposit_wallet_address: str
    hardcap: float
    per_wallet_cap: float
    total_contributed: float
    remaining: float
    contributor_count: int
    status: LaunchStatus
    contract_address: Optional[str] = None
    creation_tx_hash: Optional[str] = None
    failure_reason: Optional[str] = None
    allocations: Allocations
    created_at: datetime
    launched_at: Optional[datetime] = None

    @classmethod
    def from_launch(cls, launch: SafuLaunch) -> "LaunchResponse":
        return cls(
            id=launch.id,
            creator_wallet=launch.creator_wallet,
            token_name=launch.token_name,
            token_symbol=launch.token_symbol,
            description=launch.description,
            token_image_url=launch.token_image_url,
            website_url=launch.website_url,
            telegram_url=launch.telegram_url,
            twitter_url=launch.twitter_url,
            deposit_wallet_address=launch.deposit_wallet_address,
            hardcap=launch.hardcap,
            per_wallet_cap=lamports_to_sol(launch.per_wallet_cap_lamports),
            total_contributed=launch.total_contributed,
            remaining=lamports_to_sol(launch.remaining_lamports),
            contributor_count=launch.contributor_count,
            status=launch.status,
            contract_address=launch.contract_address,
            creation_tx_hash=launch.creation_tx_hash,
            failure_reason=launch.failure_reason,
            allocations=Allocations(
                stake=launch.stake_allocation,
                race=launch.race_allocation,
                burn=launch.burn_allocation,
                social_farm=launch.social_farm_allocation,
                dev_lock=launch.dev_lock_allocation,
                compensation=launch.compensation_allocation,
                dev_lock_duration=launch.dev_lock_duration,
                dev_lock_unit=launch.dev_lock_unit,
                contributor_pool_tokens=launch.contributor_pool_tokens,
            ),
            created_at=launch.created_at,
            launched_at=launch.launched_at,
        )


class LaunchCreatedResponse(BaseModel):
    success: bool = True
    launch_id: str
    deposit_wallet_address: str
    launch: LaunchResponse


class ContributionQuoteResponse(BaseModel):
    success: bool = True
    launch_id: str
    deposit_wallet_address: str
    amount: float
    remaining: float
    wallet_remaining: float


class ContributionResponse(BaseModel):
    id: str
    launch_id: str
    wallet_address: str
    amount: float
    tx_hash: str
    claimed: bool
    claimed_at: Optional[datetime] = None
    claim_tx_hash: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_contribution(cls, c: SafuContribution) -> "ContributionResponse":
        return cls(
            id=c.id,
            launch_id=c.launch_id,
            wallet_address=c.wallet_address,
            amount=c.amount,
            tx_hash=c.tx_hash,
            claimed=c.claimed,
            claimed_at=c.claimed_at,
            claim_tx_hash=c.claim_tx_hash,
            created_at=c.created_at,
        )


class ContributionRegisteredResponse(BaseModel):
    success: bool = True
    contribution: ContributionResponse
    launch_status: LaunchStatus
    total_contributed: float
    hardcap: float
    replayed: bool = False


class WalletContributionResponse(BaseModel):
    launch_id: str
    wallet_address: str
    amount: float
    claimed: bool
    claimable_tokens: int
    claimed_tokens: int
    can_claim: bool
    pending_request_id: Optional[str] = None
    pending_tx_hash: Optional[str] = None
    contributions: List[ContributionResponse] = Field(default_factory=list)


class PayoutResponse(BaseModel):
    success: bool = True
    request_id: Optional[str] = None
    request_type: str
    tx_hash: Optional[str] = None
    amount: float
    resumed: bool = False


class LaunchExecutionResponse(BaseModel):
    success: bool = True
    launch_id: str
    status: LaunchStatus
    tx_hash: Optional[str] = None
    contract_address: Optional[str] = None


class CancelRequest(BaseModel):
    creator_wallet: str = Field(..., min_length=32, max_length=64)
