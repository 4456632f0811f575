import logging
from typing import Any, Dict, Optional

import httpx
from solders.transaction import VersionedTransaction
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from safu.config import settings
from safu.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)


class PumpPortalClient:
    """Builds unsigned pump.fun transactions through PumpPortal's local-trade API"""

    def __init__(self, api_url: Optional[str] = None, timeout: float = 30.0):
        self.api_url = api_url or settings.PUMPPORTAL_API_URL
        self.client_timeout = timeout

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.client_timeout) as client:
            return await client.post(self.api_url, json=payload)

    async def build_create_transaction(
        self,
        creator_address: str,
        mint_address: str,
        name: str,
        symbol: str,
        metadata_uri: str,
        dev_buy_sol: float,
    ) -> VersionedTransaction:
        """
        Unsigned create + dev-buy transaction. The creator (fee payer) and the
        mint keypair must both sign it before submission.
        """
        payload = {
            "publicKey": creator_address,
            "action": "create",
            "tokenMetadata": {"name": name, "symbol": symbol, "uri": metadata_uri},
            "mint": mint_address,
            "denominatedInSol": "true",
            "amount": dev_buy_sol,
            "slippage": settings.PUMPPORTAL_SLIPPAGE,
            "priorityFee": settings.PUMPPORTAL_PRIORITY_FEE,
            "pool": settings.PUMPPORTAL_POOL,
        }
        try:
            response = await self._post(payload)
        except httpx.HTTPError as e:
            logger.error(f"PumpPortal request failed: {e}")
            raise ExternalServiceError("Token creation service unavailable")

        if response.status_code != 200:
            logger.error(f"PumpPortal error: HTTP {response.status_code} - {response.text[:500]}")
            raise ExternalServiceError(f"Token creation service returned HTTP {response.status_code}")

        try:
            return VersionedTransaction.from_bytes(response.content)
        except ValueError as e:
            logger.error(f"PumpPortal returned an unreadable transaction: {e}")
            raise ExternalServiceError("Token creation service returned an invalid transaction")


pumpportal_client = PumpPortalClient()
