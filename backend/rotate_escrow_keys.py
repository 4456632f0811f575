# rotate_escrow_keys.py
"""
Re-encrypt escrow secrets.

    python rotate_escrow_keys.py
        Re-encrypt every launch secret under the newest WALLET_ENCRYPTION_KEY.
        Put the new key first and keep the old ones after it until this has run.

    python rotate_escrow_keys.py --import-legacy secrets.json
        Store legacy base58 secrets ({"<launch_id>": "<base58 secret>", ...})
        encrypted under the newest key. Each secret must match the launch's
        deposit address.
"""
import argparse
import asyncio
import json

import base58
from solders.keypair import Keypair
from sqlalchemy import select

from safu.database import AsyncSessionLocal
from safu.models import SafuLaunch
from safu.security import encrypt_private_key_backend
from safu.services.escrow import EscrowWalletManager


async def rotate_all():
    async with AsyncSessionLocal() as db:
        rotated = await EscrowWalletManager().rotate_encryption_key(db)
        await db.commit()
    print(f"Rotated {rotated} escrow keys")


async def import_legacy(path: str):
    with open(path, "r", encoding="utf-8") as f:
        secrets = json.load(f)

    async with AsyncSessionLocal() as db:
        result = await db.execute(select(SafuLaunch).where(SafuLaunch.id.in_(list(secrets))))
        launches = {launch.id: launch for launch in result.scalars()}
        print(f"Found {len(launches)} of {len(secrets)} launches to migrate")

        migrated = 0
        for launch_id, secret in secrets.items():
            launch = launches.get(launch_id)
            if launch is None:
                print(f"Skipping unknown launch {launch_id}")
                continue
            try:
                private_key_bytes = base58.b58decode(secret)
                keypair = Keypair.from_bytes(private_key_bytes)
            except ValueError as e:
                print(f"Failed to decode secret for launch {launch_id}: {e}")
                continue
            if str(keypair.pubkey()) != launch.deposit_wallet_address:
                print(f"Secret for launch {launch_id} does not match {launch.deposit_wallet_address[:8]}...")
                continue

            launch.encrypted_private_key = encrypt_private_key_backend(private_key_bytes)
            migrated += 1
            print(f"Migrated launch {launch_id} ({launch.deposit_wallet_address[:8]}...)")

        await db.commit()
    print(f"Migration complete! {migrated} secrets re-encrypted")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Re-encrypt escrow wallet secrets")
    parser.add_argument("--import-legacy", metavar="FILE", help="JSON map of launch id to base58 secret")
    args = parser.parse_args()

    if args.import_legacy:
        asyncio.run(import_legacy(args.import_legacy))
    else:
        asyncio.run(rotate_all())
