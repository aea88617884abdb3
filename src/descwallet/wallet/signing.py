"""
ECDSA input signing. embit computes the legacy and BIP143 sighashes,
coincurve produces the signature.
"""

from __future__ import annotations

from coincurve import PrivateKey
from embit.script import Script
from embit.transaction import Transaction

SIGHASH_ALL = 1


class TransactionSigningError(Exception):
    pass


def sign_hash(sighash: bytes, secret: bytes, sighash_type: int = SIGHASH_ALL) -> bytes:
    """
    Sign a precomputed sighash.

    Returns:
        DER-encoded signature with sighash type byte appended
    """
    # coincurve's sign() with hasher=None skips hashing
    signature = PrivateKey(secret).sign(sighash, hasher=None)
    return signature + bytes([sighash_type])


def sign_input(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    value: int | None,
    secret: bytes,
    segwit: bool,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    if input_index >= len(tx.vin):
        raise TransactionSigningError("Input index out of range")
    if sighash_type != SIGHASH_ALL:
        raise TransactionSigningError(f"Unsupported sighash type: {sighash_type}")

    if segwit:
        if value is None:
            raise TransactionSigningError("Segwit signing requires the input value")
        sighash = tx.sighash_segwit(input_index, Script(script_code), value, sighash=sighash_type)
    else:
        sighash = tx.sighash_legacy(input_index, Script(script_code), sighash=sighash_type)
    return sign_hash(sighash, secret, sighash_type)
