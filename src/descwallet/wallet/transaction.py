"""
Transaction helpers over embit's transaction model: parsing, txid and weight.
"""

from __future__ import annotations

from embit.base import EmbitError
from embit.transaction import Transaction, TransactionInput

SEQUENCE_FINAL = 0xFFFFFFFF
SEQUENCE_RBF = 0xFFFFFFFD


class TransactionError(ValueError):
    pass


def parse_transaction(raw: bytes) -> Transaction:
    try:
        return Transaction.parse(raw)
    except (EmbitError, ValueError, IndexError) as e:
        raise TransactionError(f"Failed to parse transaction: {e}") from e


def txid_hex(tx: Transaction) -> str:
    """Transaction id in RPC (big-endian hex) order."""
    return tx.txid().hex()


def transaction_weight(tx: Transaction) -> int:
    """BIP141 weight: stripped size times three plus the full size."""
    stripped = Transaction(
        version=tx.version,
        vin=[
            TransactionInput(inp.txid, inp.vout, script_sig=inp.script_sig, sequence=inp.sequence)
            for inp in tx.vin
        ],
        vout=tx.vout,
        locktime=tx.locktime,
    )
    return len(stripped.serialize()) * 3 + len(tx.serialize())
