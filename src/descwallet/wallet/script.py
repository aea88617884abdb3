"""
Bitcoin script helpers for the pieces embit leaves to the caller:
minimal data pushes for scriptSigs and output script classification.
"""

from __future__ import annotations

from embit import compact

OP_0 = 0x00
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_PUSHDATA4 = 0x4E
OP_1 = 0x51
OP_16 = 0x60
OP_DUP = 0x76
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_HASH160 = 0xA9
OP_CHECKSIG = 0xAC


def varint_len(value: int) -> int:
    return len(compact.to_bytes(value))


def push_data(data: bytes) -> bytes:
    """Minimal push of arbitrary data."""
    length = len(data)
    if length < OP_PUSHDATA1:
        return bytes([length]) + data
    if length <= 0xFF:
        return bytes([OP_PUSHDATA1, length]) + data
    if length <= 0xFFFF:
        return bytes([OP_PUSHDATA2]) + length.to_bytes(2, "little") + data
    return bytes([OP_PUSHDATA4]) + length.to_bytes(4, "little") + data


def push_stack(stack: list[bytes]) -> bytes:
    """scriptSig pushing ``stack`` bottom first, small numbers as opcodes."""
    result = b""
    for item in stack:
        if item == b"":
            result += bytes([OP_0])
        elif len(item) == 1 and 1 <= item[0] <= 16:
            result += bytes([OP_1 + item[0] - 1])
        else:
            result += push_data(item)
    return result


def p2pkh_script(pubkey_hash: bytes) -> bytes:
    # OP_DUP OP_HASH160 PUSH20 <pkh> OP_EQUALVERIFY OP_CHECKSIG
    return bytes([OP_DUP, OP_HASH160, 0x14]) + pubkey_hash + bytes([OP_EQUALVERIFY, OP_CHECKSIG])


def p2sh_script(script_hash: bytes) -> bytes:
    return bytes([OP_HASH160, 0x14]) + script_hash + bytes([OP_EQUAL])


def witness_program(script: bytes) -> tuple[int, bytes] | None:
    """Return (version, program) if script is a segwit output script."""
    if len(script) < 4 or len(script) > 42:
        return None
    if script[0] != OP_0 and not (OP_1 <= script[0] <= OP_16):
        return None
    if script[1] != len(script) - 2:
        return None
    version = 0 if script[0] == OP_0 else script[0] - OP_1 + 1
    return version, script[2:]


def is_p2pkh(script: bytes) -> bool:
    return (
        len(script) == 25
        and script[:3] == bytes([OP_DUP, OP_HASH160, 0x14])
        and script[23:] == bytes([OP_EQUALVERIFY, OP_CHECKSIG])
    )


def is_p2sh(script: bytes) -> bool:
    return len(script) == 23 and script[:2] == bytes([OP_HASH160, 0x14]) and script[22] == OP_EQUAL
