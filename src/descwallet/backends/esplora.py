"""
Esplora REST blockchain backend (blockstream.info, mempool.space, electrs).
"""

from __future__ import annotations

import os
from typing import Any

import httpx
from loguru import logger

from descwallet.backends.base import (
    UTXO,
    BackendConnectionError,
    BackendError,
    BlockchainBackend,
    RawTransaction,
)

DEFAULT_TIMEOUT = 5.0

# Environment variable to enable sensitive logging (addresses, raw transactions)
SENSITIVE_LOGGING = os.environ.get("SENSITIVE_LOGGING", "").lower() in ("1", "true", "yes")


class EsploraBackend(BlockchainBackend):
    """
    Blockchain backend using an Esplora HTTP API.
    Optionally routed through a SOCKS5 proxy (e.g. Tor).
    """

    def __init__(
        self,
        base_url: str,
        socks5: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.socks5 = socks5
        proxy = None
        if socks5:
            proxy = socks5 if "://" in socks5 else f"socks5://{socks5}"
            logger.info(f"Routing Esplora requests through SOCKS proxy {proxy}")
        self.client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, proxy=proxy, transport=transport
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            logger.error(f"Esplora request failed: {method} {path} - {e}")
            raise BackendConnectionError(f"{method} {path}: {e}") from e

        if response.status_code >= 400:
            message = response.text.strip() or response.reason_phrase
            logger.error(f"Esplora returned {response.status_code} for {method} {path}: {message}")
            raise BackendError(message)
        return response

    async def get_utxos(self, addresses: list[str]) -> list[UTXO]:
        utxos: list[UTXO] = []
        for address in addresses:
            response = await self._request("GET", f"/address/{address}/utxo")
            try:
                entries = response.json()
                for entry in entries:
                    status = entry.get("status", {})
                    utxos.append(
                        UTXO(
                            txid=entry["txid"],
                            vout=int(entry["vout"]),
                            value=int(entry["value"]),
                            address=address,
                            confirmations=1 if status.get("confirmed") else 0,
                            height=status.get("block_height"),
                        )
                    )
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                raise BackendError(f"Malformed UTXO response for address: {e}") from e
            if SENSITIVE_LOGGING and entries:
                logger.debug(f"{address}: {len(entries)} UTXO(s)")
        return utxos

    async def get_transaction(self, txid: str) -> RawTransaction | None:
        try:
            response = await self._request("GET", f"/tx/{txid}/hex")
        except BackendConnectionError:
            raise
        except BackendError as e:
            logger.warning(f"Failed to fetch transaction {txid}: {e}")
            return None
        return RawTransaction(txid=txid, raw=response.text.strip())

    async def broadcast_transaction(self, tx_hex: str) -> str:
        response = await self._request("POST", "/tx", content=tx_hex)
        txid = response.text.strip()
        logger.info(f"Broadcast transaction: {txid}")
        return txid

    async def estimate_fee(self, target_blocks: int) -> float:
        response = await self._request("GET", "/fee-estimates")
        try:
            estimates = {int(k): float(v) for k, v in response.json().items()}
        except (ValueError, TypeError, AttributeError) as e:
            raise BackendError(f"Malformed fee estimates: {e}") from e
        if not estimates:
            raise BackendError("No fee estimates available")

        # Slowest estimate that still confirms within target_blocks, else the fastest one
        candidates = [t for t in sorted(estimates) if t <= target_blocks]
        target = candidates[-1] if candidates else min(estimates)
        rate = estimates[target]
        logger.debug(f"Estimated fee for {target_blocks} blocks: {rate} sat/vB (target {target})")
        return rate

    async def close(self) -> None:
        await self.client.aclose()
