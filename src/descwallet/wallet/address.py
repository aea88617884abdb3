"""
Bitcoin address encoding and decoding.

Supports base58check (P2PKH, P2SH) and bech32/bech32m (segwit v0 and v1+).
Addresses are always checked against the network they are parsed for.
"""

from __future__ import annotations

import base58

from descwallet.wallet.script import (
    OP_0,
    OP_1,
    is_p2pkh,
    is_p2sh,
    p2pkh_script,
    p2sh_script,
    witness_program,
)

BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
BECH32_CONST = 1
BECH32M_CONST = 0x2BC830A3

NETWORK_PARAMS: dict[str, dict[str, int | str]] = {
    "mainnet": {"hrp": "bc", "p2pkh": 0x00, "p2sh": 0x05},
    "testnet": {"hrp": "tb", "p2pkh": 0x6F, "p2sh": 0xC4},
    "signet": {"hrp": "tb", "p2pkh": 0x6F, "p2sh": 0xC4},
    "regtest": {"hrp": "bcrt", "p2pkh": 0x6F, "p2sh": 0xC4},
}


class AddressError(ValueError):
    pass


def _params(network: str) -> dict[str, int | str]:
    try:
        return NETWORK_PARAMS[network]
    except KeyError:
        raise AddressError(f"Unknown network: {network}") from None


def bech32_polymod(values: list[int]) -> int:
    """Bech32 checksum polymod"""
    gen = [0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3]
    chk = 1
    for v in values:
        b = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ v
        for i in range(5):
            chk ^= gen[i] if ((b >> i) & 1) else 0
    return chk


def bech32_hrp_expand(hrp: str) -> list[int]:
    """Expand HRP for bech32"""
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def bech32_create_checksum(hrp: str, data: list[int], const: int) -> list[int]:
    values = bech32_hrp_expand(hrp) + data
    polymod = bech32_polymod(values + [0, 0, 0, 0, 0, 0]) ^ const
    return [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]


def bech32_encode(hrp: str, data: list[int], const: int = BECH32_CONST) -> str:
    combined = data + bech32_create_checksum(hrp, data, const)
    return hrp + "1" + "".join([BECH32_CHARSET[d] for d in combined])


def bech32_decode(bech: str) -> tuple[str, list[int], int]:
    """Decode a bech32/bech32m string into (hrp, data, checksum constant)."""
    if any(ord(x) < 33 or ord(x) > 126 for x in bech):
        raise AddressError("Invalid character in bech32 string")
    if bech.lower() != bech and bech.upper() != bech:
        raise AddressError("Mixed case bech32 string")
    bech = bech.lower()
    pos = bech.rfind("1")
    if pos < 1 or pos + 7 > len(bech) or len(bech) > 90:
        raise AddressError("Invalid bech32 separator position")
    if not all(x in BECH32_CHARSET for x in bech[pos + 1 :]):
        raise AddressError("Invalid bech32 data character")
    hrp = bech[:pos]
    data = [BECH32_CHARSET.find(x) for x in bech[pos + 1 :]]
    const = bech32_polymod(bech32_hrp_expand(hrp) + data)
    if const not in (BECH32_CONST, BECH32M_CONST):
        raise AddressError("Invalid bech32 checksum")
    return hrp, data[:-6], const


def convertbits(data: bytes | list[int], frombits: int, tobits: int, pad: bool = True) -> list[int]:
    """Convert between bit groups"""
    acc = 0
    bits = 0
    ret = []
    maxv = (1 << tobits) - 1
    max_acc = (1 << (frombits + tobits - 1)) - 1

    for value in data:
        if value < 0 or value >> frombits:
            raise AddressError("Invalid value for bit conversion")
        acc = ((acc << frombits) | value) & max_acc
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            ret.append((acc >> bits) & maxv)

    if pad:
        if bits:
            ret.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        raise AddressError("Invalid bits")

    return ret


def encode_segwit_address(hrp: str, version: int, program: bytes) -> str:
    const = BECH32_CONST if version == 0 else BECH32M_CONST
    return bech32_encode(hrp, [version] + convertbits(program, 8, 5), const)


def decode_segwit_address(hrp: str, address: str) -> tuple[int, bytes]:
    found_hrp, data, const = bech32_decode(address)
    if found_hrp != hrp:
        raise AddressError(f"Address prefix {found_hrp} does not match network prefix {hrp}")
    if not data:
        raise AddressError("Empty witness data")
    version = data[0]
    program = bytes(convertbits(data[1:], 5, 8, False))
    if version > 16 or len(program) < 2 or len(program) > 40:
        raise AddressError("Invalid witness program")
    if version == 0 and len(program) not in (20, 32):
        raise AddressError("Invalid witness v0 program length")
    expected = BECH32_CONST if version == 0 else BECH32M_CONST
    if const != expected:
        raise AddressError("Wrong checksum variant for witness version")
    return version, program


def address_to_scriptpubkey(address: str, network: str) -> bytes:
    """
    Convert an address to its scriptPubKey, rejecting other networks.

    Supports:
    - P2WPKH / P2WSH (bech32) and P2TR or future versions (bech32m)
    - P2PKH (1..., m..., n...)
    - P2SH (3..., 2...)
    """
    params = _params(network)
    hrp = str(params["hrp"])

    if address.lower().startswith(hrp + "1"):
        version, program = decode_segwit_address(hrp, address)
        op = OP_0 if version == 0 else OP_1 + version - 1
        return bytes([op, len(program)]) + program

    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise AddressError(f"Invalid address {address}: {e}") from e

    if len(decoded) != 21:
        raise AddressError(f"Invalid base58 payload length: {len(decoded)}")

    version = decoded[0]
    payload = decoded[1:]
    if version == params["p2pkh"]:
        return p2pkh_script(payload)
    if version == params["p2sh"]:
        return p2sh_script(payload)

    raise AddressError(f"Address version {version} is not valid for {network}")


def scriptpubkey_to_address(script: bytes, network: str) -> str | None:
    """Convert a scriptPubKey to an address, or None for non-standard scripts."""
    params = _params(network)

    if is_p2pkh(script):
        return base58.b58encode_check(bytes([int(params["p2pkh"])]) + script[3:23]).decode()
    if is_p2sh(script):
        return base58.b58encode_check(bytes([int(params["p2sh"])]) + script[2:22]).decode()

    program = witness_program(script)
    if program is None:
        return None
    version, data = program
    if version == 0 and len(data) not in (20, 32):
        return None
    return encode_segwit_address(str(params["hrp"]), version, data)
