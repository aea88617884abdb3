"""
Partially Signed Bitcoin Transactions (BIP174) via embit.

embit owns the binary codec and keeps unknown fields; this module adds the
base64 layer with distinct errors, consistency checks on untrusted input and
the finalization helpers the wallet needs.
"""

from __future__ import annotations

import base64
import binascii

from embit.base import EmbitError
from embit.psbt import PSBT, InputScope
from embit.transaction import Transaction, TransactionOutput


class PSBTError(ValueError):
    pass


class PSBTEncodingError(PSBTError):
    """The outer base64 layer is malformed."""


def from_base64(encoded: str) -> PSBT:
    try:
        data = base64.b64decode(encoded.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise PSBTEncodingError(f"Invalid base64: {e}") from e
    try:
        psbt = PSBT.parse(data)
    except (EmbitError, ValueError, TypeError, IndexError, KeyError) as e:
        raise PSBTError(f"Failed to parse PSBT: {e}") from e
    _check_utxos(psbt)
    return psbt


def to_base64(psbt: PSBT) -> str:
    return base64.b64encode(psbt.serialize()).decode()


def _check_utxos(psbt: PSBT) -> None:
    for i, inp in enumerate(psbt.inputs):
        if inp.non_witness_utxo is not None and inp.non_witness_utxo.txid() != inp.txid:
            raise PSBTError(f"Input {i}: non-witness utxo does not match the outpoint")


def input_utxo(psbt: PSBT, index: int) -> TransactionOutput | None:
    """The output spent by input ``index``, from either utxo field."""
    inp = psbt.inputs[index]
    if inp.witness_utxo is not None:
        return inp.witness_utxo
    if inp.non_witness_utxo is not None and inp.vout < len(inp.non_witness_utxo.vout):
        return inp.non_witness_utxo.vout[inp.vout]
    return None


def is_input_finalized(inp: InputScope) -> bool:
    return inp.final_scriptsig is not None or inp.final_scriptwitness is not None


def is_finalized(psbt: PSBT) -> bool:
    return bool(psbt.inputs) and all(is_input_finalized(inp) for inp in psbt.inputs)


def clear_nonfinal_fields(inp: InputScope) -> None:
    inp.partial_sigs = {}
    inp.sighash_type = None
    inp.redeem_script = None
    inp.witness_script = None
    inp.bip32_derivations = {}


def extract_tx(psbt: PSBT) -> Transaction:
    """The network transaction, with whatever final fields are present."""
    tx = psbt.tx
    for txin, inp in zip(tx.vin, psbt.inputs):
        if inp.final_scriptsig is not None:
            txin.script_sig = inp.final_scriptsig
        if inp.final_scriptwitness is not None:
            txin.witness = inp.final_scriptwitness
    return tx
