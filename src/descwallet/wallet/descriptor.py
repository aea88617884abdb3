"""
Output descriptors (BIP380-BIP386 subset) on top of embit.

Supported forms:
    pkh(KEY), wpkh(KEY), sh(wpkh(KEY)), sh(MS), wsh(MS), sh(wsh(MS))
where KEY is an extended key (optionally with origin, derivation steps and a
trailing wildcard), a hex public key or a WIF private key, and MS is a
miniscript expression (see descwallet.wallet.miniscript).

embit parses, type checks, derives and compiles; this module adds the
checksum policy, the worst-case satisfaction weight and the satisfier glue.
"""

from __future__ import annotations

from dataclasses import dataclass

from embit import script as embit_script
from embit.base import EmbitError
from embit.descriptor import Descriptor as EmbitDescriptor
from embit.descriptor.arguments import Key
from embit.descriptor.checksum import add_checksum
from embit.descriptor.miniscript import Miniscript
from embit.hashes import hash160

from descwallet.wallet import miniscript
from descwallet.wallet.address import scriptpubkey_to_address
from descwallet.wallet.miniscript import MiniscriptError, SatisfactionContext
from descwallet.wallet.script import p2pkh_script, push_data, push_stack, varint_len

HARDENED = 0x80000000

# Worst-case signature push: 72-byte DER signature + sighash byte + length byte
MAX_SIG_PUSH = 73

KEY_KINDS = ("pkh", "wpkh", "sh-wpkh")
SEGWIT_KINDS = ("wpkh", "sh-wpkh", "wsh", "sh-wsh")

# embit reports malformed input through its own errors and a few builtins
PARSE_ERRORS = (EmbitError, ValueError, TypeError, IndexError, KeyError)


class DescriptorError(ValueError):
    pass


def descriptor_checksum(text: str) -> str:
    """Compute the 8 character BIP380 checksum of a descriptor."""
    try:
        return add_checksum(text).rpartition("#")[2]
    except PARSE_ERRORS as e:
        raise DescriptorError(f"Invalid character in descriptor: {e}") from e


def strip_checksum(text: str) -> str:
    """Remove and verify a trailing #checksum, if present."""
    text = text.strip()
    if "#" not in text:
        return text
    body, _, checksum = text.rpartition("#")
    if descriptor_checksum(body) != checksum:
        raise DescriptorError(f"Invalid descriptor checksum: {checksum}")
    return body


def key_origin(key: Key) -> tuple[bytes, list[int]]:
    """(fingerprint, path) for PSBT BIP32 fields; bare keys act as their own root."""
    if key.origin is not None:
        return key.origin.fingerprint, list(key.origin.derivation)
    return hash160(key.sec())[:4], []


def key_label(key: Key) -> str:
    """Public identifier of a key: its origin fingerprint, or the key itself."""
    if key.origin is not None:
        return key.origin.fingerprint.hex()
    return key.sec().hex()


@dataclass
class DerivedKey:
    """A concrete public key with the origin needed for PSBT BIP32 fields."""

    pubkey: bytes
    fingerprint: bytes
    path: list[int]
    secret: bytes | None = None


@dataclass
class DerivedDescriptor:
    """A descriptor at a concrete index: scripts, keys and a satisfier."""

    kind: str
    index: int
    script_pubkey: bytes
    keys: dict[bytes, DerivedKey]
    redeem_script: bytes | None = None
    witness_script: bytes | None = None
    node: Miniscript | None = None

    @property
    def is_segwit(self) -> bool:
        return self.kind in SEGWIT_KINDS

    def address(self, network: str) -> str:
        address = scriptpubkey_to_address(self.script_pubkey, network)
        if address is None:
            raise DescriptorError("Descriptor has no address form")
        return address

    def script_code(self) -> bytes:
        """scriptCode committed to by signatures over this output."""
        if self.kind in ("wpkh", "sh-wpkh"):
            (pubkey,) = self.keys
            return p2pkh_script(hash160(pubkey))
        if self.kind == "pkh":
            return self.script_pubkey
        if self.kind == "sh":
            return self.redeem_script
        return self.witness_script

    def satisfy(self, ctx: SatisfactionContext) -> tuple[bytes, list[bytes]] | None:
        """Return (scriptSig, witness) or None if ctx is not enough to spend."""
        if self.kind in KEY_KINDS:
            (pubkey,) = self.keys
            sig = ctx.signatures.get(pubkey)
            if sig is None:
                return None
            if self.kind == "pkh":
                return push_data(sig) + push_data(pubkey), []
            script_sig = push_data(self.redeem_script) if self.kind == "sh-wpkh" else b""
            return script_sig, [sig, pubkey]

        stack, _ = miniscript.satisfy(self.node, ctx)
        if stack is None:
            return None
        if self.kind == "sh":
            return push_stack(stack) + push_data(self.redeem_script), []
        script_sig = push_data(self.redeem_script) if self.kind == "sh-wsh" else b""
        return script_sig, stack + [self.witness_script]


class Descriptor:
    """Parsed output descriptor."""

    def __init__(self, body: str, inner: EmbitDescriptor):
        self.body = body
        self.inner = inner

    def __str__(self) -> str:
        return self.body

    def to_string(self) -> str:
        return add_checksum(self.body)

    @classmethod
    def from_string(cls, text: str) -> Descriptor:
        body = strip_checksum(text)
        name = body.partition("(")[0]
        if name not in ("pkh", "wpkh", "sh", "wsh"):
            raise DescriptorError(f"Unsupported descriptor type: {name}")

        try:
            inner = EmbitDescriptor.from_string(body)
        except PARSE_ERRORS as e:
            raise DescriptorError(f"Invalid descriptor: {e}") from e

        if inner.miniscript is not None:
            try:
                miniscript.check_supported(inner.miniscript)
            except MiniscriptError as e:
                raise DescriptorError(str(e)) from e

        descriptor = cls(body, inner)
        for key in descriptor.keys:
            if _needs_private_derivation(key):
                raise DescriptorError(f"Hardened derivation requires a private key: {body}")
        return descriptor

    @property
    def kind(self) -> str:
        if self.inner.miniscript is None:
            if not self.inner.wpkh:
                return "pkh"
            return "sh-wpkh" if self.inner.sh else "wpkh"
        if self.inner.wsh:
            return "sh-wsh" if self.inner.sh else "wsh"
        return "sh"

    @property
    def node(self) -> Miniscript | None:
        return self.inner.miniscript

    @property
    def keys(self) -> list[Key]:
        return list(self.inner.keys)

    @property
    def is_wildcard(self) -> bool:
        return "*" in self.body

    @property
    def can_sign(self) -> bool:
        return any(k.is_private for k in self.keys)

    def derive(self, index: int) -> DerivedDescriptor:
        try:
            derived = self.inner.derive(index)
            keys = {}
            for key in derived.keys:
                fingerprint, path = key_origin(key)
                secret = key.private_key.secret if key.is_private else None
                keys[key.sec()] = DerivedKey(key.sec(), fingerprint, path, secret)
            script_pubkey = derived.script_pubkey().data
            compiled = derived.miniscript.compile() if derived.miniscript is not None else None
        except PARSE_ERRORS as e:
            raise DescriptorError(f"Failed to derive index {index}: {e}") from e

        kind = self.kind
        if kind != "pkh" and kind != "sh" and any(len(pk) != 33 for pk in keys):
            raise DescriptorError("Segwit scripts require compressed keys")

        if kind in KEY_KINDS:
            redeem = None
            if kind == "sh-wpkh":
                redeem = embit_script.p2wpkh(derived.key).data
            return DerivedDescriptor(kind, index, script_pubkey, keys, redeem_script=redeem)

        if kind == "sh":
            if len(compiled) > 520:
                raise DescriptorError("Redeem script exceeds 520 bytes")
            return DerivedDescriptor(
                kind, index, script_pubkey, keys, redeem_script=compiled, node=derived.miniscript
            )

        redeem = None
        if kind == "sh-wsh":
            redeem = embit_script.p2wsh(embit_script.Script(compiled)).data
        return DerivedDescriptor(
            kind,
            index,
            script_pubkey,
            keys,
            redeem_script=redeem,
            witness_script=compiled,
            node=derived.miniscript,
        )

    def max_satisfaction_weight(self) -> int:
        """
        Worst-case weight of the scriptSig and witness needed to spend one
        output of this descriptor. Never lower than any real satisfaction.
        """
        derived = self.derive(0)
        kind = derived.kind

        if kind in KEY_KINDS:
            (pubkey,) = derived.keys
            pk_len = len(pubkey) + 1
            if kind == "pkh":
                return 4 * (1 + MAX_SIG_PUSH + pk_len)
            if kind == "wpkh":
                return 4 + 1 + MAX_SIG_PUSH + pk_len
            return 4 * 24 + 1 + MAX_SIG_PUSH + pk_len

        try:
            sat, _ = miniscript.max_satisfaction(derived.node)
        except MiniscriptError as e:
            raise DescriptorError(str(e)) from e
        if sat is None:
            raise DescriptorError("Descriptor cannot be satisfied")
        elements, sat_size = sat

        if kind == "sh":
            script_sig = sat_size + len(push_data(derived.redeem_script))
            return 4 * (varint_len(script_sig) + script_sig)

        script_size = len(derived.witness_script)
        witness = 4 + varint_len(script_size) + script_size + varint_len(elements + 1) + sat_size
        if kind == "sh-wsh":
            return 4 * 35 + witness
        return witness


def _needs_private_derivation(key: Key) -> bool:
    """True for a public key expression with hardened steps after the key."""
    if key.is_private:
        return False
    text = key.to_string()
    steps = text.split("]")[-1].split("/")[1:]
    return any(step.endswith(("'", "h", "H")) for step in steps)
