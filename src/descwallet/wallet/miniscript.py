"""
Miniscript satisfaction and worst-case witness sizing.

Parsing, type checking and compilation come from embit; this module walks
the resulting tree to produce witness stacks from collected signatures and
to bound the size of any satisfaction, which embit does not provide.

Supported fragments: pk_k, pk_h, pk, pkh, older, after, and_v, and_b, and_n,
or_b, or_c, or_d, or_i, andor, thresh, multi, sortedmulti, and the wrappers
a: s: c: d: v: j: n: t: l: u:.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from embit.base import EmbitError
from embit.descriptor.arguments import Key
from embit.descriptor.miniscript import Miniscript, Wrapper

from descwallet.wallet.script import varint_len

KEY_FRAGMENTS = {"pk_k", "pk_h", "pk", "pkh"}
MULTI_FRAGMENTS = {"multi", "sortedmulti"}
LOCK_FRAGMENTS = {"older", "after"}
BINARY_FRAGMENTS = {"and_v", "and_b", "and_n", "or_b", "or_c", "or_d", "or_i"}
WRAPPERS = set("asctdvjnlu")
SUPPORTED = (
    KEY_FRAGMENTS | MULTI_FRAGMENTS | LOCK_FRAGMENTS | BINARY_FRAGMENTS | WRAPPERS
) | {"andor", "thresh"}

# Worst-case sizes of witness stack items, including their length prefix
MAX_SIG_SIZE = 73
EMPTY_SIZE = 1
ONE_SIZE = 2

LOCKTIME_THRESHOLD = 500_000_000
SEQUENCE_DISABLE_FLAG = 1 << 31
SEQUENCE_TYPE_FLAG = 1 << 22
SEQUENCE_MASK = 0x0000FFFF

Size = tuple[int, int]  # (stack elements, bytes)
Stack = list[bytes]


class MiniscriptError(ValueError):
    pass


def fragment(node: Miniscript) -> str:
    """Fragment name of a node, a single letter for wrappers."""
    if isinstance(node, Wrapper):
        return type(node).__name__.lower()
    return node.NAME


def children(node: Miniscript) -> list[Miniscript]:
    return [arg for arg in node.args if isinstance(arg, Miniscript)]


def node_keys(node: Miniscript) -> list[Key]:
    """Keys of a pk/pkh/multi fragment in written order."""
    return [arg for arg in node.args if isinstance(arg, Key)]


def number(node: Miniscript) -> int:
    """Threshold of thresh/multi, or the value of older/after."""
    return node.args[0].num


def check_supported(node: Miniscript) -> None:
    name = fragment(node)
    if name not in SUPPORTED:
        raise MiniscriptError(f"Unsupported miniscript fragment: {name}")
    for child in children(node):
        check_supported(child)


def parse(text: str) -> Miniscript:
    """Parse and type check a top level miniscript expression."""
    try:
        node = Miniscript.from_string(text)
        node.verify()
    except (EmbitError, ValueError, TypeError, IndexError, KeyError) as e:
        raise MiniscriptError(f"Invalid miniscript {text}: {e}") from e
    if node.type != "B":
        raise MiniscriptError(f"Top level miniscript must be of type B, got {node.type}")
    check_supported(node)
    return node


def _add(a: Size | None, b: Size | None) -> Size | None:
    if a is None or b is None:
        return None
    return a[0] + b[0], a[1] + b[1]


def _max(*sizes: Size | None) -> Size | None:
    present = [s for s in sizes if s is not None]
    if not present:
        return None
    return max(present, key=lambda s: (s[1], s[0]))


def _key_push_size(key: Key) -> int:
    return len(key.sec()) + 1


def max_satisfaction(
    node: Miniscript, key_size: Callable[[Key], int] = _key_push_size
) -> tuple[Size | None, Size | None]:
    """
    Worst-case (satisfaction, dissatisfaction) sizes as (elements, bytes).

    key_size returns the serialized length of a key including its push byte.
    """
    f = fragment(node)
    c = children(node)

    if f in ("pk_k", "pk"):
        return (1, MAX_SIG_SIZE), (1, EMPTY_SIZE)
    if f in ("pk_h", "pkh"):
        size = key_size(node_keys(node)[0])
        return (2, MAX_SIG_SIZE + size), (2, EMPTY_SIZE + size)
    if f in LOCK_FRAGMENTS:
        return (0, 0), None
    if f in MULTI_FRAGMENTS:
        k = number(node)
        return (k + 1, EMPTY_SIZE + MAX_SIG_SIZE * k), (k + 1, k + 1)

    if f in ("a", "s", "c", "n"):
        return max_satisfaction(c[0], key_size)
    if f in ("t", "v"):
        sat, _ = max_satisfaction(c[0], key_size)
        return sat, None
    if f == "d":
        sat, _ = max_satisfaction(c[0], key_size)
        return _add(sat, (1, ONE_SIZE)), (1, EMPTY_SIZE)
    if f == "j":
        sat, _ = max_satisfaction(c[0], key_size)
        return sat, (1, EMPTY_SIZE)
    if f == "l":
        sat, dissat = max_satisfaction(c[0], key_size)
        return _add(sat, (1, EMPTY_SIZE)), _max((1, ONE_SIZE), _add(dissat, (1, EMPTY_SIZE)))
    if f == "u":
        sat, dissat = max_satisfaction(c[0], key_size)
        return _add(sat, (1, ONE_SIZE)), _max(_add(dissat, (1, ONE_SIZE)), (1, EMPTY_SIZE))

    if f == "thresh":
        subs = [max_satisfaction(child, key_size) for child in c]
        return _thresh_max(number(node), subs), _sum_sizes([d for _, d in subs])

    if f not in BINARY_FRAGMENTS and f != "andor":
        raise MiniscriptError(f"Cannot size fragment: {f}")

    x_sat, x_dis = max_satisfaction(c[0], key_size)
    y_sat, y_dis = max_satisfaction(c[1], key_size)
    if f == "and_v":
        return _add(x_sat, y_sat), None
    if f == "and_b":
        return _add(x_sat, y_sat), _add(x_dis, y_dis)
    if f == "and_n":
        return _add(x_sat, y_sat), x_dis
    if f == "or_b":
        return _max(_add(x_sat, y_dis), _add(x_dis, y_sat)), _add(x_dis, y_dis)
    if f == "or_c":
        return _max(x_sat, _add(x_dis, y_sat)), None
    if f == "or_d":
        return _max(x_sat, _add(x_dis, y_sat)), _add(x_dis, y_dis)
    if f == "or_i":
        return (
            _max(_add(x_sat, (1, ONE_SIZE)), _add(y_sat, (1, EMPTY_SIZE))),
            _max(_add(x_dis, (1, ONE_SIZE)), _add(y_dis, (1, EMPTY_SIZE))),
        )
    z_sat, z_dis = max_satisfaction(c[2], key_size)
    return _max(_add(x_sat, y_sat), _add(x_dis, z_sat)), _add(x_dis, z_dis)


def _sum_sizes(sizes: list[Size | None]) -> Size | None:
    total: Size | None = (0, 0)
    for size in sizes:
        total = _add(total, size)
    return total


def _thresh_max(k: int, subs: list[tuple[Size | None, Size | None]]) -> Size | None:
    forced_sat = [s for s, d in subs if d is None]
    if len(forced_sat) > k or any(s is None for s in forced_sat):
        return None
    optional = [(s, d) for s, d in subs if d is not None]
    total = _sum_sizes(forced_sat)
    choosable = sorted(
        [(s, d) for s, d in optional if s is not None],
        key=lambda sd: (sd[0][1] - sd[1][1], sd[0][0] - sd[1][0]),
        reverse=True,
    )
    need = k - len(forced_sat)
    if need > len(choosable):
        return None
    chosen = choosable[:need]
    rest = choosable[need:] + [(s, d) for s, d in optional if s is None]
    total = _add(total, _sum_sizes([s for s, _ in chosen]))
    return _add(total, _sum_sizes([d for _, d in rest]))


@dataclass
class SatisfactionContext:
    """What a satisfier may use: signatures by pubkey and the spending tx's timelocks."""

    signatures: dict[bytes, bytes] = field(default_factory=dict)
    locktime: int = 0
    sequence: int = 0xFFFFFFFF
    version: int = 1

    def check_after(self, value: int) -> bool:
        if self.sequence == 0xFFFFFFFF:
            return False
        if (value < LOCKTIME_THRESHOLD) != (self.locktime < LOCKTIME_THRESHOLD):
            return False
        return self.locktime >= value

    def check_older(self, value: int) -> bool:
        if self.version < 2 or self.sequence & SEQUENCE_DISABLE_FLAG:
            return False
        if (value & SEQUENCE_TYPE_FLAG) != (self.sequence & SEQUENCE_TYPE_FLAG):
            return False
        return (self.sequence & SEQUENCE_MASK) >= (value & SEQUENCE_MASK)


def stack_size(stack: Stack | None) -> int:
    if stack is None:
        return 1 << 30
    return sum(varint_len(len(item)) + len(item) for item in stack)


def _cat(*stacks: Stack | None) -> Stack | None:
    if any(s is None for s in stacks):
        return None
    result: Stack = []
    for stack in stacks:
        result.extend(stack)
    return result


def _best(*stacks: Stack | None) -> Stack | None:
    present = [s for s in stacks if s is not None]
    if not present:
        return None
    return min(present, key=stack_size)


def satisfy(node: Miniscript, ctx: SatisfactionContext) -> tuple[Stack | None, Stack | None]:
    """
    Cheapest (satisfaction, dissatisfaction) witness stacks, bottom item first.
    None means the stack cannot be produced with what ctx provides.

    Keys must be concrete (the tree of a derived descriptor).
    """
    f = fragment(node)
    c = children(node)

    if f in ("pk_k", "pk"):
        sig = ctx.signatures.get(node_keys(node)[0].sec())
        return ([sig] if sig else None), [b""]
    if f in ("pk_h", "pkh"):
        key = node_keys(node)[0].sec()
        sig = ctx.signatures.get(key)
        return ([sig, key] if sig else None), [b"", key]
    if f == "older":
        return ([] if ctx.check_older(number(node)) else None), None
    if f == "after":
        return ([] if ctx.check_after(number(node)) else None), None
    if f in MULTI_FRAGMENTS:
        k = number(node)
        keys = [key.sec() for key in node_keys(node)]
        if f == "sortedmulti":
            keys.sort()
        sigs = [ctx.signatures[key] for key in keys if key in ctx.signatures]
        sat = [b""] + sigs[:k] if len(sigs) >= k else None
        return sat, [b""] * (k + 1)

    if f in ("a", "s", "c", "n"):
        return satisfy(c[0], ctx)
    if f in ("t", "v"):
        sat, _ = satisfy(c[0], ctx)
        return sat, None
    if f == "d":
        sat, _ = satisfy(c[0], ctx)
        return _cat(sat, [b"\x01"]), [b""]
    if f == "j":
        sat, _ = satisfy(c[0], ctx)
        return sat, [b""]
    if f == "l":
        sat, dissat = satisfy(c[0], ctx)
        return _cat(sat, [b""]), _best([b"\x01"], _cat(dissat, [b""]))
    if f == "u":
        sat, dissat = satisfy(c[0], ctx)
        return _cat(sat, [b"\x01"]), _best(_cat(dissat, [b"\x01"]), [b""])

    if f == "thresh":
        subs = [satisfy(child, ctx) for child in c]
        return _thresh_satisfy(number(node), subs), _cat(*[d for _, d in reversed(subs)])

    if f not in BINARY_FRAGMENTS and f != "andor":
        raise MiniscriptError(f"Cannot satisfy fragment: {f}")

    x_sat, x_dis = satisfy(c[0], ctx)
    y_sat, y_dis = satisfy(c[1], ctx)
    if f == "and_v":
        return _cat(y_sat, x_sat), None
    if f == "and_b":
        return _cat(y_sat, x_sat), _cat(y_dis, x_dis)
    if f == "and_n":
        return _cat(y_sat, x_sat), x_dis
    if f == "or_b":
        return _best(_cat(y_dis, x_sat), _cat(y_sat, x_dis)), _cat(y_dis, x_dis)
    if f == "or_c":
        return _best(x_sat, _cat(y_sat, x_dis)), None
    if f == "or_d":
        return _best(x_sat, _cat(y_sat, x_dis)), _cat(y_dis, x_dis)
    if f == "or_i":
        return (
            _best(_cat(x_sat, [b"\x01"]), _cat(y_sat, [b""])),
            _best(_cat(x_dis, [b"\x01"]), _cat(y_dis, [b""])),
        )
    z_sat, z_dis = satisfy(c[2], ctx)
    return _best(_cat(y_sat, x_sat), _cat(z_sat, x_dis)), _cat(z_dis, x_dis)


def _thresh_satisfy(k: int, subs: list[tuple[Stack | None, Stack | None]]) -> Stack | None:
    # Pick the k children whose satisfaction costs least over their dissatisfaction
    indices = range(len(subs))
    must_sat = [i for i in indices if subs[i][1] is None]
    if len(must_sat) > k or any(subs[i][0] is None for i in must_sat):
        return None
    optional = [i for i in indices if subs[i][1] is not None and subs[i][0] is not None]
    optional.sort(key=lambda i: stack_size(subs[i][0]) - stack_size(subs[i][1]))
    need = k - len(must_sat)
    if need > len(optional):
        return None
    chosen = set(must_sat) | set(optional[:need])

    # Children execute left to right, so the first child's items sit on top
    stack: Stack = []
    for i in reversed(indices):
        part = subs[i][0] if i in chosen else subs[i][1]
        if part is None:
            return None
        stack.extend(part)
    return stack
