"""
Bitcoin Core RPC blockchain backend.
Uses RPC calls but NOT wallet functionality.
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

# Timeout for regular RPC calls (seconds)
DEFAULT_RPC_TIMEOUT = 30.0

# Timeout for scantxoutset calls - mainnet scans can take 90+ seconds
SCAN_RPC_TIMEOUT = 300.0

# Environment variable to enable sensitive logging (descriptors, addresses, etc.)
SENSITIVE_LOGGING = os.environ.get("SENSITIVE_LOGGING", "").lower() in ("1", "true", "yes")

# Bitcoin Core: "Scan already in progress"
RPC_SCAN_IN_PROGRESS = -8
# Bitcoin Core: "No such mempool or blockchain transaction"
RPC_INVALID_ADDRESS_OR_KEY = -5


class RPCError(BackendError):
    def __init__(self, code: int | str, message: str):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code


class BitcoinCoreBackend(BlockchainBackend):
    """
    Blockchain backend using Bitcoin Core RPC.
    Does NOT use the Bitcoin Core wallet: UTXOs come from scantxoutset.
    """

    def __init__(
        self,
        rpc_url: str = "http://127.0.0.1:18443",
        rpc_user: str = "rpcuser",
        rpc_password: str = "rpcpassword",
        timeout: float = DEFAULT_RPC_TIMEOUT,
        scan_timeout: float = SCAN_RPC_TIMEOUT,
        socks5: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.rpc_url = rpc_url.rstrip("/")
        self.rpc_user = rpc_user
        self.rpc_password = rpc_password
        proxy = None
        if socks5:
            proxy = socks5 if "://" in socks5 else f"socks5://{socks5}"
        # Client for regular RPC calls
        self.client = httpx.AsyncClient(
            timeout=timeout, auth=(rpc_user, rpc_password), proxy=proxy, transport=transport
        )
        # Separate client for long-running scans
        self._scan_client = httpx.AsyncClient(
            timeout=scan_timeout, auth=(rpc_user, rpc_password), proxy=proxy, transport=transport
        )
        self._request_id = 0

    async def _rpc_call(
        self,
        method: str,
        params: list | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> Any:
        """
        Make an RPC call to Bitcoin Core.

        Raises:
            RPCError: On RPC errors
            BackendConnectionError: On connection/timeout errors
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        use_client = client or self.client

        try:
            response = await use_client.post(self.rpc_url, json=payload)
        except httpx.TransportError as e:
            logger.error(f"RPC call failed: {method} - {e}")
            raise BackendConnectionError(f"{method}: {e}") from e

        # Bitcoin Core answers RPC errors with HTTP 500 and a JSON body
        try:
            data = response.json()
        except ValueError:
            response_text = response.text.strip() or response.reason_phrase
            logger.error(f"RPC call {method} returned HTTP {response.status_code}")
            raise BackendError(f"HTTP {response.status_code}: {response_text}") from None

        if data.get("error"):
            error_info = data["error"]
            raise RPCError(error_info.get("code", "unknown"), error_info.get("message", ""))
        return data.get("result")

    async def get_utxos(self, addresses: list[str]) -> list[UTXO]:
        utxos: list[UTXO] = []
        if not addresses:
            return utxos

        descriptors = [f"addr({addr})" for addr in addresses]
        if SENSITIVE_LOGGING:
            logger.debug(f"Scanning descriptors: {descriptors}")

        try:
            result = await self._rpc_call(
                "scantxoutset", ["start", descriptors], client=self._scan_client
            )
        except RPCError as e:
            if e.code == RPC_SCAN_IN_PROGRESS:
                logger.warning("Another scantxoutset is running on the node")
            raise

        if not result or "unspents" not in result:
            raise BackendError("scantxoutset returned no result")

        tip_height = result.get("height", 0)
        for utxo_data in result["unspents"]:
            # "addr(ADDRESS)#checksum"
            desc = utxo_data.get("desc", "").split("#")[0]
            address = desc[5:-1] if desc.startswith("addr(") and desc.endswith(")") else ""
            height = utxo_data.get("height", 0)
            utxos.append(
                UTXO(
                    txid=utxo_data["txid"],
                    vout=utxo_data["vout"],
                    value=round(utxo_data["amount"] * 100_000_000),
                    address=address,
                    scriptpubkey=utxo_data.get("scriptPubKey", ""),
                    confirmations=tip_height - height + 1 if height > 0 else 0,
                    height=height or None,
                )
            )

        logger.debug(f"Scanned {len(addresses)} addresses, found {len(utxos)} UTXOs")
        return utxos

    async def get_transaction(self, txid: str) -> RawTransaction | None:
        try:
            tx_data = await self._rpc_call("getrawtransaction", [txid, True])
        except RPCError as e:
            if e.code == RPC_INVALID_ADDRESS_OR_KEY:
                logger.warning(f"Failed to fetch transaction {txid}: {e}")
                return None
            raise

        if not tx_data:
            return None
        return RawTransaction(
            txid=txid, raw=tx_data.get("hex", ""), confirmations=tx_data.get("confirmations", 0)
        )

    async def broadcast_transaction(self, tx_hex: str) -> str:
        txid = await self._rpc_call("sendrawtransaction", [tx_hex])
        logger.info(f"Broadcast transaction: {txid}")
        return txid

    async def estimate_fee(self, target_blocks: int) -> float:
        result = await self._rpc_call("estimatesmartfee", [target_blocks])
        if not result or "feerate" not in result:
            errors = (result or {}).get("errors", [])
            raise BackendError(f"Fee estimation unavailable: {'; '.join(errors)}")

        btc_per_kb = result["feerate"]
        sat_per_vbyte = (btc_per_kb * 100_000_000) / 1000
        logger.debug(f"Estimated fee for {target_blocks} blocks: {sat_per_vbyte} sat/vB")
        return sat_per_vbyte

    async def close(self) -> None:
        await self.client.aclose()
        await self._scan_client.aclose()
