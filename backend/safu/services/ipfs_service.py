import logging
from typing import Any, Dict, Optional

import httpx

from safu.config import settings
from safu.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)


class IPFSService:
    def __init__(self, jwt: Optional[str] = None, api_url: Optional[str] = None):
        self.pinata_jwt = jwt if jwt is not None else settings.PINATA_JWT
        self.api_url = api_url or settings.PINATA_API_URL
        # Public gateway that pump.fun can read
        self.gateway_url = settings.IPFS_GATEWAY_URL

    async def pin_json(self, json_data: Dict[str, Any], name: str) -> str:
        """
        Pin JSON metadata to IPFS via Pinata
        Returns the IPFS CID
        """
        if not self.pinata_jwt:
            raise ExternalServiceError("IPFS pinning not configured")

        headers = {
            "Authorization": f"Bearer {self.pinata_jwt}",
            "Content-Type": "application/json",
        }
        pinata_content = {
            "pinataContent": json_data,
            "pinataMetadata": {"name": f"{name}_metadata.json"},
        }

        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.post(f"{self.api_url}/pinJSONToIPFS", headers=headers, json=pinata_content)
        except httpx.HTTPError as e:
            logger.error(f"Failed to pin to IPFS: {e}")
            raise ExternalServiceError("IPFS pinning failed")

        if response.status_code != 200:
            logger.error(f"Pinata API error: {response.status_code} - {response.text[:500]}")
            raise ExternalServiceError("IPFS pinning failed")

        cid = response.json().get("IpfsHash")
        if not cid:
            raise ExternalServiceError("IPFS pinning returned no CID")
        logger.info(f"Pinned metadata to IPFS with CID: {cid}")
        return cid

    def gateway_uri(self, cid: str) -> str:
        return self.gateway_url.format(cid=cid)

    async def pin_token_metadata(self, launch) -> str:
        """Metaplex-style JSON for a launch, pinned; returns the gateway URI."""
        metadata = {
            "name": launch.token_name,
            "symbol": launch.token_symbol,
            "description": launch.description or "",
            "image": launch.token_image_url or "",
            "showName": True,
            "createdOn": "https://pump.fun",
        }
        if launch.website_url:
            metadata["website"] = launch.website_url
        if launch.telegram_url:
            metadata["telegram"] = launch.telegram_url
        if launch.twitter_url:
            metadata["twitter"] = launch.twitter_url

        cid = await self.pin_json(metadata, launch.token_symbol)
        return self.gateway_uri(cid)


ipfs_service = IPFSService()
