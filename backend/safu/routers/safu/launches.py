# safu/routers/safu/launches.py
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from safu.dependencies import (
    get_deduplicator,
    get_executor,
    get_launch_service,
    get_state_machine,
)
from safu.models import LaunchStatus
from safu.schemas.safu import (
    CancelRequest,
    LaunchCreate,
    LaunchCreatedResponse,
    LaunchExecutionResponse,
    LaunchResponse,
)
from safu.services.guards import RequestDeduplicator
from safu.services.launch_executor import LaunchExecutor
from safu.services.launch_state import LaunchStateMachine
from safu.services.launches import LaunchService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/safu/launches",
    tags=["Safu Launches"]
)


@router.post("", response_model=LaunchCreatedResponse)
async def create_safu_launch(
    body: LaunchCreate,
    service: LaunchService = Depends(get_launch_service),
    dedup: RequestDeduplicator = Depends(get_deduplicator),
):
    """Create a launch and its escrow deposit wallet"""
    async with dedup.guard("create", body.creator_wallet, body.token_name, body.token_symbol):
        launch = await service.create_launch(**body.model_dump())
    return LaunchCreatedResponse(
        launch_id=launch.id,
        deposit_wallet_address=launch.deposit_wallet_address,
        launch=LaunchResponse.from_launch(launch),
    )


@router.get("", response_model=List[LaunchResponse])
async def list_safu_launches(
    status: Optional[LaunchStatus] = None,
    limit: int = Query(default=50, ge=1, le=200),
    service: LaunchService = Depends(get_launch_service),
):
    return [LaunchResponse.from_launch(l) for l in await service.list_launches(status, limit)]


@router.get("/{launch_id}", response_model=LaunchResponse)
async def get_safu_launch(launch_id: str, service: LaunchService = Depends(get_launch_service)):
    return LaunchResponse.from_launch(await service.get_launch(launch_id))


@router.post("/{launch_id}/execute", response_model=LaunchExecutionResponse)
async def execute_safu_launch(
    launch_id: str,
    executor: LaunchExecutor = Depends(get_executor),
    dedup: RequestDeduplicator = Depends(get_deduplicator),
):
    """Operator trigger: build, sign and submit token creation. Safe to retry."""
    async with dedup.guard("execute", launch_id):
        outcome = await executor.execute(launch_id)
    return LaunchExecutionResponse(
        launch_id=outcome.launch_id,
        status=outcome.status,
        tx_hash=outcome.tx_hash,
        contract_address=outcome.contract_address,
    )


@router.post("/{launch_id}/cancel", response_model=LaunchResponse)
async def cancel_safu_launch(
    launch_id: str,
    body: CancelRequest,
    state_machine: LaunchStateMachine = Depends(get_state_machine),
):
    launch = await state_machine.cancel(launch_id, body.creator_wallet)
    return LaunchResponse.from_launch(launch)
