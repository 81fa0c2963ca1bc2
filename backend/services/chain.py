"""On-chain market creation boundary.

The pipeline treats settlement as an opaque capability: hand over the market
display name and outcome-token metadata, get back the market address and the
two outcome-token mints. ``GatewayChainClient`` talks to a settlement
gateway over HTTP; ``DryRunChainClient`` returns mock addresses.
"""

from __future__ import annotations

import hashlib
import re
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import quote

import httpx

from utils.logger import get_logger

logger = get_logger("chain")

DISPLAY_NAME_MAX = 64
INITIAL_YES_PROBABILITY_BPS = 5000


class ChainClientError(Exception):
    pass


@dataclass
class CreatedMarket:
    market_address: str
    yes_token_mint: str
    no_token_mint: str
    tx_signature: Optional[str] = None


def market_symbol(title: str, outcome: str) -> str:
    """First six alphanumerics of the upper-cased title plus Y or N."""
    base = re.sub(r"[^A-Z0-9]", "", title.upper())[:6] or "MKT"
    return f"{base}{outcome[:1].upper()}"


def metadata_uri(title: str, outcome: str, base_url: Optional[str]) -> str:
    outcome = outcome.upper()
    if base_url:
        return f"{base_url.rstrip('/')}/{outcome}/{quote(title, safe='')}"
    return f"data:text/plain,{quote(f'{outcome}: {title}', safe='')}"


class MarketChainClient(ABC):
    dry_run = False

    @abstractmethod
    async def create_market(
        self,
        *,
        display_name: str,
        yes_symbol: str,
        yes_uri: str,
        no_symbol: str,
        no_uri: str,
        initial_yes_prob: int = INITIAL_YES_PROBABILITY_BPS,
    ) -> CreatedMarket:
        ...


class DryRunChainClient(MarketChainClient):
    dry_run = True

    async def create_market(
        self,
        *,
        display_name: str,
        yes_symbol: str,
        yes_uri: str,
        no_symbol: str,
        no_uri: str,
        initial_yes_prob: int = INITIAL_YES_PROBABILITY_BPS,
    ) -> CreatedMarket:
        seed = hashlib.sha256(f"{display_name}:{secrets.token_hex(8)}".encode()).hexdigest()
        logger.info("DRY RUN: skipping on-chain market creation", display_name=display_name)
        return CreatedMarket(
            market_address=f"DRYRUN{seed[:38]}",
            yes_token_mint=f"DRYRUNY{seed[38:64]}",
            no_token_mint=f"DRYRUNN{seed[:26]}",
        )


def _default_client_factory(timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout)


class GatewayChainClient(MarketChainClient):
    """Creates markets through the settlement gateway.

    Not retried here: a timed-out create may still have landed, and the
    publisher relies on the broker redelivery path plus the market_address
    guard instead.
    """

    def __init__(
        self,
        gateway_url: str,
        signer_key: str,
        *,
        timeout_seconds: float = 60.0,
        client_factory: Callable[[float], httpx.AsyncClient] = _default_client_factory,
    ):
        self.gateway_url = gateway_url.rstrip("/")
        self._signer_key = signer_key
        self.timeout_seconds = timeout_seconds
        self._client_factory = client_factory

    async def create_market(
        self,
        *,
        display_name: str,
        yes_symbol: str,
        yes_uri: str,
        no_symbol: str,
        no_uri: str,
        initial_yes_prob: int = INITIAL_YES_PROBABILITY_BPS,
    ) -> CreatedMarket:
        body = {
            "display_name": display_name[:DISPLAY_NAME_MAX],
            "yes_symbol": yes_symbol,
            "yes_uri": yes_uri,
            "no_symbol": no_symbol,
            "no_uri": no_uri,
            "initial_yes_prob": int(initial_yes_prob),
        }
        try:
            async with self._client_factory(self.timeout_seconds) as client:
                response = await client.post(
                    f"{self.gateway_url}/markets",
                    json=body,
                    headers={"Authorization": f"Bearer {self._signer_key}"},
                )
                response.raise_for_status()
                data = response.json()
            return CreatedMarket(
                market_address=str(data["market_address"]),
                yes_token_mint=str(data["yes_token_mint"]),
                no_token_mint=str(data["no_token_mint"]),
                tx_signature=data.get("tx_signature"),
            )
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            raise ChainClientError(f"Market creation failed: {exc}") from exc


def build_chain_client(
    *,
    dry_run: bool,
    gateway_url: Optional[str],
    signer_key: Optional[str],
) -> MarketChainClient:
    if dry_run or not gateway_url or not signer_key:
        return DryRunChainClient()
    return GatewayChainClient(gateway_url, signer_key)
