"""
Result models returned by wallet operations.

Field names are part of the JSON boundary (CLI output) and must not change.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from descwallet.wallet.policy import Policy, SpendingPolicyPaths


class NetworkFee(BaseModel):
    rate: float
    absolute: int | None = None


class WalletAddress(BaseModel):
    address: str


class WalletPSBT(BaseModel):
    psbt: str
    is_finalized: bool = False


class DecodedTxIO(BaseModel):
    value: int
    to: str


class DecodedTx(BaseModel):
    outputs: list[DecodedTxIO] = Field(default_factory=list)


class TransactionWeight(BaseModel):
    weight: int


class Txid(BaseModel):
    txid: str


class WalletPolicies(BaseModel):
    external: Policy
    internal: Policy


__all__ = [
    "DecodedTx",
    "DecodedTxIO",
    "NetworkFee",
    "Policy",
    "SpendingPolicyPaths",
    "TransactionWeight",
    "Txid",
    "WalletAddress",
    "WalletPolicies",
    "WalletPSBT",
]
