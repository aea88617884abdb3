"""
descwallet - Descriptor based Bitcoin wallet

Derives addresses, builds, decodes, signs and broadcasts PSBTs for wallets
defined by output descriptors.
"""

__version__ = "0.1.0"

from descwallet.config import BlockchainBackendType, Settings, WalletConfig, get_settings
from descwallet.errors import ErrorKind, WalletError
from descwallet.fees import estimate_rate, get_absolute, get_rate
from descwallet.models import (
    DecodedTx,
    DecodedTxIO,
    NetworkFee,
    TransactionWeight,
    Txid,
    WalletAddress,
    WalletPolicies,
    WalletPSBT,
)
from descwallet.operations import broadcast, build, decode, generate, get_weight, policies, sign
from descwallet.wallet.policy import Policy, SpendingPolicyPaths

__all__ = [
    "BlockchainBackendType",
    "DecodedTx",
    "DecodedTxIO",
    "ErrorKind",
    "NetworkFee",
    "Policy",
    "Settings",
    "SpendingPolicyPaths",
    "TransactionWeight",
    "Txid",
    "WalletAddress",
    "WalletConfig",
    "WalletError",
    "WalletPolicies",
    "WalletPSBT",
    "broadcast",
    "build",
    "decode",
    "estimate_rate",
    "generate",
    "get_absolute",
    "get_rate",
    "get_settings",
    "get_weight",
    "policies",
    "sign",
]
