"""
Spending policies extracted from descriptors, and spending path selection.

A policy is a tree of threshold nodes over signatures and timelocks. Nodes
with more than one way to be satisfied can be steered by a path selection:
a map of node id to the indices of the children that will be satisfied.
The selected branch determines the nLockTime / nSequence a spend needs.
"""

from __future__ import annotations

from dataclasses import dataclass

from embit.descriptor.miniscript import Miniscript
from pydantic import BaseModel, Field

from descwallet.wallet.descriptor import Descriptor, key_label
from descwallet.wallet.miniscript import (
    LOCKTIME_THRESHOLD,
    SEQUENCE_TYPE_FLAG,
    children,
    fragment,
    node_keys,
    number,
)


class PolicyError(ValueError):
    pass


class Policy(BaseModel):
    """One node of a spending policy tree."""

    id: str
    # signature, multisig, absolute_timelock, relative_timelock, thresh, unsatisfiable
    kind: str
    threshold: int = 0
    keys: list[str] = Field(default_factory=list)
    value: int | None = None
    items: list[Policy] = Field(default_factory=list)

    def find(self, node_id: str) -> Policy | None:
        if self.id == node_id:
            return self
        for item in self.items:
            found = item.find(node_id)
            if found is not None:
                return found
        return None

    def has_timelocks(self) -> bool:
        if self.kind in ("absolute_timelock", "relative_timelock"):
            return True
        return any(item.has_timelocks() for item in self.items)


Policy.model_rebuild()


class SpendingPolicyPaths(BaseModel):
    """Selected branches for the external (deposit) and internal (change) keychains."""

    external: dict[str, list[int]] = Field(default_factory=dict)
    internal: dict[str, list[int]] = Field(default_factory=dict)


@dataclass
class Conditions:
    """Timelocks a spend must satisfy."""

    absolute: int | None = None
    relative: int | None = None

    def merge(self, other: Conditions) -> Conditions:
        return Conditions(
            absolute=_merge_absolute(self.absolute, other.absolute),
            relative=_merge_relative(self.relative, other.relative),
        )


def _merge_absolute(a: int | None, b: int | None) -> int | None:
    if a is None or b is None:
        return a if b is None else b
    if (a < LOCKTIME_THRESHOLD) != (b < LOCKTIME_THRESHOLD):
        raise PolicyError("Selected path mixes block height and time based locktimes")
    return max(a, b)


def _merge_relative(a: int | None, b: int | None) -> int | None:
    if a is None or b is None:
        return a if b is None else b
    if (a & SEQUENCE_TYPE_FLAG) != (b & SEQUENCE_TYPE_FLAG):
        raise PolicyError("Selected path mixes block and time based relative locktimes")
    return max(a, b)


def _unsatisfiable(node_id: str) -> Policy:
    return Policy(id=node_id, kind="unsatisfiable")


def _from_node(node: Miniscript, node_id: str) -> Policy:
    f = fragment(node)
    c = children(node)

    if f in ("a", "s", "c", "d", "v", "j", "n", "t"):
        return _from_node(c[0], node_id)
    # l:X is or_i(0,X) and u:X is or_i(X,0)
    if f == "l":
        items = [_unsatisfiable(f"{node_id}.0"), _from_node(c[0], f"{node_id}.1")]
        return Policy(id=node_id, kind="thresh", threshold=1, items=items)
    if f == "u":
        items = [_from_node(c[0], f"{node_id}.0"), _unsatisfiable(f"{node_id}.1")]
        return Policy(id=node_id, kind="thresh", threshold=1, items=items)
    if f in ("pk_k", "pk_h", "pk", "pkh"):
        return Policy(id=node_id, kind="signature", keys=[key_label(node_keys(node)[0])])
    if f in ("multi", "sortedmulti"):
        return Policy(
            id=node_id,
            kind="multisig",
            threshold=number(node),
            keys=[key_label(k) for k in node_keys(node)],
        )
    if f == "after":
        return Policy(id=node_id, kind="absolute_timelock", value=number(node))
    if f == "older":
        return Policy(id=node_id, kind="relative_timelock", value=number(node))
    if f in ("and_v", "and_b", "and_n"):
        return _thresh(node_id, 2, c)
    if f in ("or_b", "or_c", "or_d", "or_i"):
        return _thresh(node_id, 1, c)
    if f == "andor":
        both = Policy(
            id=f"{node_id}.0",
            kind="thresh",
            threshold=2,
            items=[_from_node(c[0], f"{node_id}.0.0"), _from_node(c[1], f"{node_id}.0.1")],
        )
        return Policy(
            id=node_id,
            kind="thresh",
            threshold=1,
            items=[both, _from_node(c[2], f"{node_id}.1")],
        )
    if f == "thresh":
        return _thresh(node_id, number(node), c)

    raise PolicyError(f"No policy for fragment: {f}")


def _thresh(node_id: str, threshold: int, items: list[Miniscript]) -> Policy:
    policies = [_from_node(child, f"{node_id}.{i}") for i, child in enumerate(items)]
    return Policy(id=node_id, kind="thresh", threshold=threshold, items=policies)


def extract_policy(descriptor: Descriptor) -> Policy:
    """Build the spending policy tree of a descriptor. The root id is "root"."""
    if descriptor.node is None:
        (key,) = descriptor.keys
        return Policy(id="root", kind="signature", keys=[key_label(key)])
    return _from_node(descriptor.node, "root")


def requirements(policy: Policy, selection: dict[str, list[int]] | None) -> Conditions:
    """
    Timelocks needed to spend along the selected path.

    Raises PolicyError for unknown ids, bad indices, too few selected items, or
    when a choice involving timelocks is left unselected.
    """
    selection = selection or {}
    for node_id in selection:
        if policy.find(node_id) is None:
            raise PolicyError(f"Unknown policy node id: {node_id}")
    return _requirements(policy, selection)


def _requirements(policy: Policy, selection: dict[str, list[int]]) -> Conditions:
    if policy.kind == "absolute_timelock":
        return Conditions(absolute=policy.value)
    if policy.kind == "relative_timelock":
        return Conditions(relative=policy.value)
    if policy.kind != "thresh":
        return Conditions()

    if policy.id in selection:
        chosen = selection[policy.id]
        if len(set(chosen)) != len(chosen):
            raise PolicyError(f"Duplicate items selected for policy node {policy.id}")
        for index in chosen:
            if not 0 <= index < len(policy.items):
                raise PolicyError(f"Index {index} out of range for policy node {policy.id}")
        if len(chosen) < policy.threshold:
            raise PolicyError(
                f"Policy node {policy.id} needs {policy.threshold} items, {len(chosen)} selected"
            )
        items = [policy.items[i] for i in chosen]
    elif policy.threshold == len(policy.items):
        items = policy.items
    elif any(item.has_timelocks() for item in policy.items):
        raise PolicyError(f"Spending policy path required for node {policy.id}")
    else:
        return Conditions()

    result = Conditions()
    for item in items:
        result = result.merge(_requirements(item, selection))
    return result
