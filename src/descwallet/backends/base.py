"""
Base blockchain backend interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


class BackendError(Exception):
    """The backend answered, but with an error or data we cannot use."""


class BackendConnectionError(BackendError):
    """The backend could not be reached (connection refused, timeout, proxy failure)."""


@dataclass
class UTXO:
    txid: str
    vout: int
    value: int
    address: str
    scriptpubkey: str = ""
    confirmations: int = 0
    height: int | None = None


@dataclass
class RawTransaction:
    txid: str
    raw: str
    confirmations: int = 0


class BlockchainBackend(ABC):
    """
    Abstract blockchain backend interface.
    The wallet never persists anything: every call asks the backend again.
    """

    @abstractmethod
    async def get_utxos(self, addresses: list[str]) -> list[UTXO]:
        """Get UTXOs for given addresses"""

    @abstractmethod
    async def get_transaction(self, txid: str) -> RawTransaction | None:
        """Get transaction by txid, None if the backend does not know it"""

    @abstractmethod
    async def broadcast_transaction(self, tx_hex: str) -> str:
        """Broadcast transaction, returns txid"""

    @abstractmethod
    async def estimate_fee(self, target_blocks: int) -> float:
        """Estimate fee in sat/vbyte for target confirmation blocks"""

    async def close(self) -> None:
        """Close backend connection"""
        pass
