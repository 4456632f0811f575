# safu/dependencies.py
"""FastAPI providers for the service singletons. Tests swap them via dependency_overrides."""
from safu.services.guards import RequestDeduplicator, request_deduplicator
from safu.services.launch_executor import LaunchExecutor, launch_executor
from safu.services.launch_state import LaunchStateMachine, launch_state
from safu.services.launches import LaunchService, launches
from safu.services.ledger import ContributionLedger, ledger
from safu.services.settlement import SettlementEngine, settlement
from safu.services.withdrawals import WithdrawalService, withdrawals


def get_launch_service() -> LaunchService:
    return launches


def get_ledger() -> ContributionLedger:
    return ledger


def get_state_machine() -> LaunchStateMachine:
    return launch_state


def get_settlement() -> SettlementEngine:
    return settlement


def get_executor() -> LaunchExecutor:
    return launch_executor


def get_withdrawals() -> WithdrawalService:
    return withdrawals


def get_deduplicator() -> RequestDeduplicator:
    return request_deduplicator
