"""
Blockchain backend implementations.

Available backends:
- EsploraBackend: Esplora REST API (blockstream.info, mempool.space, electrs)
- BitcoinCoreBackend: Full node via Bitcoin Core RPC (no wallet, uses scantxoutset)
"""

from descwallet.backends.base import (
    UTXO,
    BackendConnectionError,
    BackendError,
    BlockchainBackend,
    RawTransaction,
)
from descwallet.backends.bitcoin_core import BitcoinCoreBackend
from descwallet.backends.esplora import EsploraBackend

__all__ = [
    "BackendConnectionError",
    "BackendError",
    "BitcoinCoreBackend",
    "BlockchainBackend",
    "EsploraBackend",
    "RawTransaction",
    "UTXO",
]
