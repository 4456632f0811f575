from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime

from safu.models import Feature, RequestType, WithdrawalStatus


class WithdrawalCreate(BaseModel):
    wallet_address: str = Field(..., min_length=32, max_length=64)
    pool_id: str = Field(..., min_length=1, max_length=64)
    feature: Feature
    amount: float = Field(..., gt=0)
    token_symbol: Optional[str] = Field(default=None, max_length=16)
    token_address: Optional[str] = Field(default=None, max_length=64)


class WithdrawalConfirm(BaseModel):
    tx_hash: str
    wallet_address: Optional[str] = None


class WithdrawalResponse(BaseModel):
    id: str
    wallet_address: str
    feature: Feature
    request_type: RequestType
    pool_id: str
    amount: float
    token_symbol: Optional[str] = None
    token_address: Optional[str] = None
    status: WithdrawalStatus
    tx_hash: Optional[str] = None
    admin_notes: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class WithdrawalListResponse(BaseModel):
    requests: List[WithdrawalResponse]
    total: int
