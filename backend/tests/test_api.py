"""
HTTP surface tests

Covers:
- launch creation, lookup and listing
- contribution registration and the error envelope ({success, error, code})
- status codes per failure kind, 202 + retryable for confirmation timeouts
- duplicate request suppression returns 429
- withdrawal queue endpoints
- health check
"""
import httpx
import pytest

from safu.config import sol_to_lamports
from safu.dependencies import (
    get_deduplicator,
    get_launch_service,
    get_ledger,
    get_settlement,
    get_state_machine,
    get_withdrawals,
)
from safu.main import app
from safu.services.guards import block_wallet

from conftest import new_tx_hash, new_wallet


@pytest.fixture
async def client(launch_service, ledger, state_machine, settlement, withdrawal_service, dedup):
    app.dependency_overrides.update({
        get_launch_service: lambda: launch_service,
        get_ledger: lambda: ledger,
        get_state_machine: lambda: state_machine,
        get_settlement: lambda: settlement,
        get_withdrawals: lambda: withdrawal_service,
        get_deduplicator: lambda: dedup,
    })
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


async def _create_launch(client, **overrides):
    body = {"creator_wallet": new_wallet(), "token_name": "Safu Test", "token_symbol": "safu"}
    body.update(overrides)
    response = await client.post("/safu/launches", json=body)
    assert response.status_code == 200, response.text
    return response.json()


async def _register(client, rpc, launch, wallet, amount, tx_hash=None):
    tx_hash = tx_hash or new_tx_hash()
    rpc.add_transfer(tx_hash, wallet, launch["deposit_wallet_address"], sol_to_lamports(amount))
    return await client.post(
        f"/safu/launches/{launch['launch_id']}/contributions",
        json={"wallet_address": wallet, "amount": amount, "tx_hash": tx_hash},
    )


async def test_create_and_fetch_launch(client):
    created = await _create_launch(client, hardcap_sol=5.0)
    assert created["success"] is True
    launch = created["launch"]
    assert launch["token_symbol"] == "SAFU"
    assert launch["hardcap"] == 5.0
    assert launch["per_wallet_cap"] == 1.0
    assert launch["status"] == "pending_contributions"
    assert launch["allocations"]["contributor_pool_tokens"] == 150_000_000
    assert "encrypted_private_key" not in launch

    response = await client.get(f"/safu/launches/{created['launch_id']}")
    assert response.status_code == 200
    assert response.json()["deposit_wallet_address"] == created["deposit_wallet_address"]

    listed = await client.get("/safu/launches", params={"status": "pending_contributions"})
    assert [l["id"] for l in listed.json()] == [created["launch_id"]]


async def test_unknown_launch_is_404(client):
    response = await client.get("/safu/launches/missing")
    assert response.status_code == 404
    assert response.json() == {"success": False, "error": "Launch not found", "code": "launch_not_found", "launch_id": "missing"}


async def test_invalid_creator_wallet(client):
    response = await client.post(
        "/safu/launches",
        json={"creator_wallet": "0" * 40, "token_name": "Safu", "token_symbol": "SAFU"},
    )
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_input"


async def test_schema_violation_is_422(client):
    response = await client.post("/safu/launches", json={"token_name": "Safu"})
    assert response.status_code == 422


async def test_register_contribution(client, rpc):
    launch = await _create_launch(client)
    wallet, tx_hash = new_wallet(), new_tx_hash()

    response = await _register(client, rpc, launch, wallet, 0.5, tx_hash)
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["contribution"]["amount"] == 0.5
    assert body["total_contributed"] == 0.5
    assert body["replayed"] is False

    replay = await client.post(
        f"/safu/launches/{launch['launch_id']}/contributions",
        json={"wallet_address": wallet, "amount": 0.5, "tx_hash": tx_hash},
    )
    # The first request's fingerprint is still live
    assert replay.status_code == 429
    assert replay.json()["code"] == "duplicate_request"

    summary = await client.get(f"/safu/launches/{launch['launch_id']}/contributions/{wallet}")
    assert summary.status_code == 200
    assert summary.json()["amount"] == 0.5
    assert summary.json()["can_claim"] is False


async def test_contribution_errors_map_to_codes(client, rpc, store):
    launch = await _create_launch(client, hardcap_sol=2.0)

    response = await _register(client, rpc, launch, new_wallet(), 1.5)
    assert response.status_code == 400
    assert response.json()["code"] == "per_wallet_cap_exceeded"

    response = await client.post(
        f"/safu/launches/{launch['launch_id']}/contributions",
        json={"wallet_address": new_wallet(), "amount": 0.5, "tx_hash": new_tx_hash()},
    )
    assert response.status_code == 400
    assert response.json()["code"] == "transfer_unconfirmed"

    blocked = new_wallet()
    async with store.transaction() as session:
        await block_wallet(session, blocked, "abuse")
    response = await _register(client, rpc, launch, blocked, 0.5)
    assert response.status_code == 403
    assert response.json()["code"] == "wallet_blocked"


async def test_prepare_contribution(client):
    launch = await _create_launch(client)
    response = await client.post(
        f"/safu/launches/{launch['launch_id']}/prepare-contribution",
        json={"wallet_address": new_wallet(), "amount": 0.3},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["deposit_wallet_address"] == launch["deposit_wallet_address"]
    assert body["wallet_remaining"] == 1.0


async def test_refund_and_cancel(client, rpc):
    launch = await _create_launch(client)
    wallet = new_wallet()
    await _register(client, rpc, launch, wallet, 0.4)

    response = await client.post(f"/safu/launches/{launch['launch_id']}/cancel", json={"creator_wallet": launch["launch"]["creator_wallet"]})
    assert response.status_code == 409
    assert response.json()["code"] == "invalid_state"

    response = await client.post(f"/safu/launches/{launch['launch_id']}/refund", json={"wallet_address": wallet})
    assert response.status_code == 200, response.text
    assert response.json()["request_type"] == "refund"

    response = await client.post(f"/safu/launches/{launch['launch_id']}/cancel", json={"creator_wallet": new_wallet()})
    assert response.status_code == 403
    assert response.json()["code"] == "wallet_mismatch"

    response = await client.post(f"/safu/launches/{launch['launch_id']}/cancel", json={"creator_wallet": launch["launch"]["creator_wallet"]})
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"


async def test_claim_timeout_is_202_and_retryable(client, created_launch, rpc):
    launch, wallets = await created_launch()
    rpc.submit_mode = "unconfirmed"

    response = await client.post(f"/safu/launches/{launch.id}/claim", json={"wallet_address": wallets[0]})
    assert response.status_code == 202
    body = response.json()
    assert body["code"] == "confirmation_timeout"
    assert body["retryable"] is True
    assert body["tx_hash"] == rpc.submitted[-1]


async def test_claim_success(client, created_launch, dedup, fake_redis):
    launch, wallets = await created_launch()

    response = await client.post(f"/safu/launches/{launch.id}/claim", json={"wallet_address": wallets[1]})
    assert response.status_code == 200, response.text
    assert response.json()["amount"] == 75_000_000

    fake_redis.data.clear()
    response = await client.post(f"/safu/launches/{launch.id}/claim", json={"wallet_address": wallets[1]})
    assert response.status_code == 409
    assert response.json()["code"] == "already_claimed"


async def test_withdrawal_endpoints(client):
    wallet = new_wallet()
    response = await client.post(
        "/withdrawals",
        json={"wallet_address": wallet, "pool_id": "pool-1", "feature": "staking", "amount": 12.5},
    )
    assert response.status_code == 200, response.text
    request_id = response.json()["id"]

    response = await client.get(f"/withdrawals/{wallet}")
    assert response.json()["total"] == 1

    response = await client.post(
        f"/withdrawals/{request_id}/confirm",
        json={"tx_hash": new_tx_hash(), "wallet_address": wallet},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "completed"

    response = await client.post(
        "/withdrawals",
        json={"wallet_address": wallet, "pool_id": "pool-1", "feature": "safu", "amount": 1},
    )
    assert response.status_code == 409


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["database"] == "ok"
    assert response.json()["encryption"] == "configured"
