import asyncio
import os
import tempfile

from cryptography.fernet import Fernet

# Configure before any safu import builds its module-level engine and settings
_TMP = tempfile.mkdtemp(prefix="safu-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TMP}/default.db")
os.environ.setdefault("WALLET_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("LOG_DIR", os.path.join(_TMP, "logs"))
os.environ.setdefault("AUTO_LAUNCH_ON_HARDCAP", "false")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import CreateAccountParams, create_account
from solders.transaction import VersionedTransaction
from spl.token.constants import TOKEN_PROGRAM_ID

from safu.config import sol_to_lamports
from safu.database import build_engine, build_sessionmaker, init_db
from safu.exceptions import SubmissionFailed
from safu.services.escrow import EscrowWalletManager
from safu.services.guards import RequestDeduplicator
from safu.services.launch_state import LaunchStateMachine
from safu.services.launches import LaunchService
from safu.services.ledger import ContributionLedger
from safu.services.settlement import SettlementEngine
from safu.services.solana_rpc import SolanaRpcClient, TxStatus
from safu.services.withdrawals import WithdrawalService
from safu.store import LedgerStore


def new_wallet() -> str:
    return str(Keypair().pubkey())


def new_tx_hash() -> str:
    return str(Signature.new_unique())


class FakeRpc(SolanaRpcClient):
    """In-memory chain: transfers the ledger can verify, and a submit outcome per test."""

    def __init__(self):
        super().__init__(rpc_url="http://fake-rpc", poll_interval=0, max_attempts=2)
        self.transfers = {}
        self.statuses = {}
        self.balances = {}
        self.submitted = []
        self.submit_mode = "confirmed"
        self._gate = None
        self._gate_size = 0
        self._arrived = 0

    # chain fixtures
    def add_transfer(self, tx_hash, source, destination, lamports):
        self.transfers[tx_hash] = (source, destination, lamports)

    def confirm(self, signature):
        self.statuses[signature] = TxStatus(found=True, confirmed=True)

    def hold_verifications(self, n):
        """Make the next n verify_transfer calls wait for each other."""
        self._gate = asyncio.Event()
        self._gate_size = n
        self._arrived = 0

    # network methods
    async def get_balance(self, address):
        return self.balances.get(address, 0)

    async def get_latest_blockhash(self):
        return Hash.new_unique()

    async def get_transaction_status(self, tx_hash):
        return self.statuses.get(tx_hash, TxStatus(found=False, confirmed=False))

    async def get_parsed_transaction(self, tx_hash):
        if tx_hash not in self.transfers:
            return None
        source, destination, lamports = self.transfers[tx_hash]
        return {
            "meta": {"err": None, "innerInstructions": []},
            "transaction": {
                "signatures": [tx_hash],
                "message": {
                    "instructions": [{
                        "program": "system",
                        "programId": "11111111111111111111111111111111",
                        "parsed": {
                            "type": "transfer",
                            "info": {"source": source, "destination": destination, "lamports": lamports},
                        },
                    }],
                },
            },
        }

    async def verify_transfer(self, tx_hash, source, destination, lamports):
        if self._gate is not None:
            self._arrived += 1
            if self._arrived >= self._gate_size:
                self._gate.set()
            await self._gate.wait()
        return await super().verify_transfer(tx_hash, source, destination, lamports)

    async def submit_signed_transaction(self, raw_tx):
        # Legacy and versioned wire formats both start with a 1-byte count then the signatures
        signature = str(Signature.from_bytes(bytes(raw_tx[1:65])))
        if self.submit_mode == "reject":
            raise SubmissionFailed("Transaction rejected: simulated preflight failure")
        self.submitted.append(signature)
        if self.submit_mode == "confirmed":
            self.confirm(signature)
        elif self.submit_mode == "failed":
            self.statuses[signature] = TxStatus(found=True, confirmed=False, err="InstructionError")
        return signature


class FakeRedis:
    def __init__(self):
        self.data = {}
        self.down = False

    async def set(self, key, value, nx=False, ex=None):
        if self.down:
            raise RedisConnectionError("redis unavailable")
        if nx and key in self.data:
            return None
        self.data[key] = value
        return True

    async def delete(self, key):
        if self.down:
            raise RedisConnectionError("redis unavailable")
        return 1 if self.data.pop(key, None) is not None else 0


# ──────────────────────────────────────────────────────────────
# Fixtures
# ──────────────────────────────────────────────────────────────
@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path}/ledger.db")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(engine):
    return LedgerStore(build_sessionmaker(engine))


@pytest.fixture
def rpc():
    return FakeRpc()


@pytest.fixture
def escrow(rpc):
    return EscrowWalletManager(rpc=rpc)


@pytest.fixture
def state_machine(store):
    return LaunchStateMachine(store)


@pytest.fixture
def ledger(store, rpc, state_machine):
    return ContributionLedger(store, rpc, state_machine)


@pytest.fixture
def settlement(store, escrow, rpc):
    return SettlementEngine(store, escrow, rpc)


@pytest.fixture
def launch_service(store, escrow):
    return LaunchService(store, escrow)


@pytest.fixture
def withdrawal_service(store):
    return WithdrawalService(store)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def dedup(fake_redis):
    return RequestDeduplicator(client=fake_redis, ttl=10)


@pytest.fixture
def make_launch(launch_service):
    async def _make(**overrides):
        params = dict(creator_wallet=new_wallet(), token_name="Safu Test", token_symbol="SAFU")
        params.update(overrides)
        return await launch_service.create_launch(**params)
    return _make


@pytest.fixture
def contribute(ledger, rpc):
    """Send (in the fake chain) and register a contribution."""
    async def _contribute(launch, wallet, amount):
        tx_hash = new_tx_hash()
        rpc.add_transfer(tx_hash, wallet, launch.deposit_wallet_address, sol_to_lamports(amount))
        return await ledger.register_contribution(launch.id, wallet, amount, tx_hash)
    return _contribute


@pytest.fixture
def created_launch(make_launch, contribute, state_machine):
    """A 2 SOL launch filled by two 1 SOL wallets and moved to created."""
    async def _created(mint=None):
        launch = await make_launch(hardcap_sol=2.0, per_wallet_cap_sol=1.0)
        wallets = [new_wallet(), new_wallet()]
        for wallet in wallets:
            await contribute(launch, wallet, 1.0)
        await state_machine.begin_launch(launch.id)
        launch = await state_machine.mark_created(launch.id, mint or new_wallet(), new_tx_hash())
        return launch, wallets
    return _created


def unsigned_create_tx(payer_address, mint_address):
    """Stand-in for a builder API response: a v0 message the payer and the mint must both sign."""
    payer = Pubkey.from_string(payer_address)
    mint = Pubkey.from_string(mint_address)
    ix = create_account(CreateAccountParams(
        from_pubkey=payer, to_pubkey=mint, lamports=1_461_600, space=82, owner=TOKEN_PROGRAM_ID
    ))
    message = MessageV0.try_compile(payer, [ix], [], Hash.new_unique())
    return VersionedTransaction.populate(message, [Signature.default(), Signature.default()])
