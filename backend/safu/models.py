# safu/models.py
from sqlalchemy import (
    BigInteger, Boolean, DateTime, Enum, Float, ForeignKey, Index, Integer, String, Text, text
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from datetime import datetime, timezone
from typing import List, Optional
import enum
import uuid

from safu.config import lamports_to_sol


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _values(enum_cls):
    return [member.value for member in enum_cls]

# =======================================
# ENUMS
# =======================================
class LaunchStatus(str, enum.Enum):
    PENDING_CONTRIBUTIONS = "pending_contributions"
    READY_TO_LAUNCH = "ready_to_launch"
    LAUNCHING = "launching"
    CREATED = "created"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WithdrawalStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"


class RequestType(str, enum.Enum):
    CLAIM = "claim"
    REFUND = "refund"


class Feature(str, enum.Enum):
    STAKING = "staking"
    RACE = "race"
    BURN = "burn"
    SOCIAL_FARMING = "social_farming"
    SAFU = "safu"


IN_FLIGHT_STATUSES = (WithdrawalStatus.PENDING, WithdrawalStatus.PROCESSING)


# ──────────────────────────────────────────────────────────────
# 1. Launches (one escrow wallet each)
# ──────────────────────────────────────────────────────────────
class SafuLaunch(Base):
    __tablename__ = "safu_launches"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    creator_wallet: Mapped[str] = mapped_column(String(64), index=True)

    # Token information
    token_name: Mapped[str] = mapped_column(String(64))
    token_symbol: Mapped[str] = mapped_column(String(16))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    token_image_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    website_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    telegram_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    twitter_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    metadata_uri: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    # Fixed allocations (in millions) - cannot be changed
    stake_allocation: Mapped[int] = mapped_column(Integer, default=20)
    race_allocation: Mapped[int] = mapped_column(Integer, default=20)
    burn_allocation: Mapped[int] = mapped_column(Integer, default=20)
    social_farm_allocation: Mapped[int] = mapped_column(Integer, default=10)
    dev_lock_allocation: Mapped[int] = mapped_column(Integer, default=20)
    compensation_allocation: Mapped[int] = mapped_column(Integer, default=10)
    dev_lock_duration: Mapped[int] = mapped_column(Integer, default=7)
    dev_lock_unit: Mapped[str] = mapped_column(String(16), default="days")
    contributor_pool_tokens: Mapped[int] = mapped_column(BigInteger, default=150_000_000)

    # Custody - the encrypted key never leaves the service
    deposit_wallet_address: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    encrypted_private_key: Mapped[str] = mapped_column(Text)

    # Economics (lamports)
    hardcap_lamports: Mapped[int] = mapped_column(BigInteger)
    per_wallet_cap_lamports: Mapped[int] = mapped_column(BigInteger)
    total_contributed_lamports: Mapped[int] = mapped_column(BigInteger, default=0)
    contributor_count: Mapped[int] = mapped_column(Integer, default=0)

    # Lifecycle
    status: Mapped[LaunchStatus] = mapped_column(
        Enum(LaunchStatus, native_enum=False, length=32, values_callable=_values),
        default=LaunchStatus.PENDING_CONTRIBUTIONS,
    )
    creation_tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    creation_submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # Mint keypair of the current creation attempt; becomes contract_address once confirmed
    mint_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    contract_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    launched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    contributions: Mapped[List["SafuContribution"]] = relationship(
        "SafuContribution", back_populates="launch"
    )

    __table_args__ = (
        Index('ix_safu_launches_status_created', "status", "created_at"),
    )

    @property
    def hardcap(self) -> float:
        return lamports_to_sol(self.hardcap_lamports)

    @property
    def total_contributed(self) -> float:
        return lamports_to_sol(self.total_contributed_lamports)

    @property
    def remaining_lamports(self) -> int:
        return max(self.hardcap_lamports - self.total_contributed_lamports, 0)


# ──────────────────────────────────────────────────────────────
# 2. Contributions (one row per confirmed transfer)
# ──────────────────────────────────────────────────────────────
class SafuContribution(Base):
    __tablename__ = "safu_contributions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    launch_id: Mapped[str] = mapped_column(ForeignKey("safu_launches.id"), index=True)
    wallet_address: Mapped[str] = mapped_column(String(64), index=True)

    amount_lamports: Mapped[int] = mapped_column(BigInteger)
    tx_hash: Mapped[str] = mapped_column(String(128), unique=True)

    claimed: Mapped[bool] = mapped_column(Boolean, default=False)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    claim_tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    launch: Mapped["SafuLaunch"] = relationship("SafuLaunch", back_populates="contributions")

    __table_args__ = (
        Index('ix_safu_contributions_launch_wallet', "launch_id", "wallet_address"),
    )

    @property
    def amount(self) -> float:
        return lamports_to_sol(self.amount_lamports)


# ──────────────────────────────────────────────────────────────
# 3. Withdrawal / claim requests (shared by every feature)
# ──────────────────────────────────────────────────────────────
class WithdrawalRequest(Base):
    __tablename__ = "withdrawal_requests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    wallet_address: Mapped[str] = mapped_column(String(64))
    feature: Mapped[Feature] = mapped_column(
        Enum(Feature, native_enum=False, length=32, values_callable=_values)
    )
    request_type: Mapped[RequestType] = mapped_column(
        Enum(RequestType, native_enum=False, length=16, values_callable=_values),
        default=RequestType.CLAIM,
    )
    pool_id: Mapped[str] = mapped_column(String(64))

    # Token units for claims, SOL for refunds
    amount: Mapped[float] = mapped_column(Float)
    token_symbol: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    token_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    status: Mapped[WithdrawalStatus] = mapped_column(
        Enum(WithdrawalStatus, native_enum=False, length=16, values_callable=_values),
        default=WithdrawalStatus.PENDING,
    )
    tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('ix_withdrawal_requests_lookup', "wallet_address", "pool_id", "feature", "status"),
        # At most one in-flight request per (wallet, pool, feature, type)
        Index(
            'uq_withdrawal_requests_in_flight',
            "wallet_address", "pool_id", "feature", "request_type",
            unique=True,
            postgresql_where=text("status IN ('pending', 'processing')"),
            sqlite_where=text("status IN ('pending', 'processing')"),
        ),
    )


# ──────────────────────────────────────────────────────────────
# 4. Blocked wallets
# ──────────────────────────────────────────────────────────────
class BlockedWallet(Base):
    __tablename__ = "blocked_wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    wallet_address: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
