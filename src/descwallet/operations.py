"""
Wallet operations: the public API of descwallet.

Each call builds its own DescriptorWallet from a WalletConfig, so concurrent
calls never share caches. Every failure surfaces as a WalletError whose
message is a stable signal (see descwallet.errors).

The backend client belongs to the WalletConfig: operations use it but never
close it, so one config can serve several calls. Callers release it with
``await config.close()`` (the CLI does so after every command).
"""

from __future__ import annotations

from loguru import logger

from descwallet.backends.base import BackendConnectionError, BackendError
from descwallet.config import WalletConfig
from descwallet.errors import WalletError
from descwallet.models import (
    DecodedTx,
    DecodedTxIO,
    TransactionWeight,
    Txid,
    WalletAddress,
    WalletPolicies,
    WalletPSBT,
)
from descwallet.wallet.address import (
    NETWORK_PARAMS,
    AddressError,
    address_to_scriptpubkey,
    scriptpubkey_to_address,
)
from descwallet.wallet.descriptor import Descriptor, DescriptorError
from descwallet.wallet.policy import PolicyError, SpendingPolicyPaths
from descwallet.wallet import psbt as psbt_utils
from descwallet.wallet.psbt import PSBT, PSBTEncodingError, PSBTError
from descwallet.wallet.service import EXTERNAL, DescriptorWallet
from descwallet.wallet.signing import TransactionSigningError
from descwallet.wallet.transaction import transaction_weight


def _open_wallet(config: WalletConfig, online: bool = False) -> DescriptorWallet:
    try:
        return DescriptorWallet(
            config.deposit_desc,
            config.change_desc,
            config.network,
            backend=config.client if online else None,
            gap_limit=config.gap_limit,
        )
    except DescriptorError as e:
        logger.error(f"Failed to initialize wallet: {e}")
        raise WalletError.internal("Wallet-Initialization", str(e)) from e


async def _open_synced_wallet(config: WalletConfig) -> DescriptorWallet:
    if config.client is None:
        raise WalletError.internal("Wallet-Initialization", "No blockchain backend configured")
    wallet = _open_wallet(config, online=True)
    try:
        await wallet.sync()
    except BackendConnectionError as e:
        raise WalletError.network("Wallet-Sync", str(e)) from e
    except (BackendError, DescriptorError) as e:
        raise WalletError.internal("Wallet-Sync", str(e)) from e
    return wallet


def _parse_psbt(psbt: str, base64_signal: str, structure_signal: str) -> PSBT:
    try:
        return psbt_utils.from_base64(psbt)
    except PSBTEncodingError as e:
        raise WalletError.internal(base64_signal, str(e)) from e
    except PSBTError as e:
        raise WalletError.internal(structure_signal, str(e)) from e


def generate(config: WalletConfig, index: int) -> WalletAddress:
    """Deposit address at ``index`` of the external chain. Offline."""
    wallet = _open_wallet(config)
    try:
        address = wallet.get_address(EXTERNAL, index)
    except DescriptorError as e:
        raise WalletError.internal("Wallet-Initialization", str(e)) from e
    return WalletAddress(address=address)


def policies(config: WalletConfig) -> WalletPolicies:
    """Spending policy trees with the node ids used by SpendingPolicyPaths."""
    wallet = _open_wallet(config)
    try:
        external, internal = wallet.policies()
    except PolicyError as e:
        raise WalletError.internal("Policy-Extract", str(e)) from e
    return WalletPolicies(external=external, internal=internal)


async def build(
    config: WalletConfig,
    to: str,
    amount: int | None,
    fee_absolute: int,
    sweep: bool = False,
    policy_paths: SpendingPolicyPaths | None = None,
) -> WalletPSBT:
    """
    Build an unsigned, RBF-signalling PSBT paying ``to``.

    With ``sweep`` and no ``amount`` every coin goes to ``to`` minus the fee;
    otherwise ``amount`` is paid and the remainder returns as change.
    """
    wallet = await _open_synced_wallet(config)

    try:
        recipient_script = address_to_scriptpubkey(to, config.network)
    except AddressError as e:
        raise WalletError.internal("Address-Parse", str(e)) from e

    paths = policy_paths or SpendingPolicyPaths()
    try:
        psbt = await wallet.create_psbt(
            recipient_script,
            amount,
            fee_absolute,
            sweep=sweep,
            external_path=paths.external or None,
            internal_path=paths.internal or None,
        )
    except BackendConnectionError as e:
        raise WalletError.network("Wallet-Sync", str(e)) from e
    except BackendError as e:
        raise WalletError.internal("Wallet-Sync", str(e)) from e
    except ValueError as e:
        # coin selection, policy paths, previous transactions
        logger.error(f"Failed to build transaction: {e}")
        raise WalletError.internal(str(e)) from e

    return WalletPSBT(psbt=psbt_utils.to_base64(psbt), is_finalized=False)


def decode(network: str, psbt: str) -> DecodedTx:
    """
    Outputs of a PSBT as (value, address) pairs plus a trailing "miner"
    entry holding the implied fee. Unknown scripts show as "None"; a fee
    below zero is reported as is.
    """
    if network not in NETWORK_PARAMS:
        raise WalletError.internal("Network-Parse", f"Unknown network: {network}")
    parsed = _parse_psbt(psbt, "Base64-Decode", "Deserialize-Error")

    outputs: list[DecodedTxIO] = []
    total_out = 0
    for out in parsed.tx.vout:
        total_out += out.value
        address = scriptpubkey_to_address(out.script_pubkey.data, network)
        outputs.append(DecodedTxIO(value=out.value, to=address or "None"))

    total_in = 0
    for i in range(len(parsed.inputs)):
        utxo = psbt_utils.input_utxo(parsed, i)
        if utxo is None:
            raise WalletError.internal("Missing-Input-Value", f"input {i}")
        total_in += utxo.value

    fee = total_in - total_out
    if fee < 0:
        logger.warning(f"PSBT outputs exceed inputs by {-fee} sats")
    outputs.append(DecodedTxIO(value=fee, to="miner"))
    return DecodedTx(outputs=outputs)


def get_weight(deposit_desc: str, psbt: str) -> TransactionWeight:
    """
    Upper bound of the signed weight: the transaction as it stands plus the
    descriptor's worst-case satisfaction for each input not yet finalized.
    """
    parsed = _parse_psbt(psbt, "Base64-Decode", "Deserialize-Error")
    tx = psbt_utils.extract_tx(parsed)

    try:
        descriptor = Descriptor.from_string(deposit_desc)
        satisfaction_weight = descriptor.max_satisfaction_weight()
    except DescriptorError as e:
        raise WalletError.internal("Descriptor-Parse", str(e)) from e

    pending = sum(1 for inp in parsed.inputs if not psbt_utils.is_input_finalized(inp))
    return TransactionWeight(weight=transaction_weight(tx) + pending * satisfaction_weight)


def sign(config: WalletConfig, psbt: str) -> WalletPSBT:
    """Sign every input the wallet owns and finalize what can be finalized. Offline."""
    wallet = _open_wallet(config)
    parsed = _parse_psbt(psbt, "Deserialize-Psbt-Error", "Deserialize-Psbt-Error")

    try:
        signed = wallet.sign_psbt(parsed)
        finalized = wallet.finalize_psbt(parsed)
    except (TransactionSigningError, ValueError) as e:
        logger.error(f"Failed to sign PSBT: {e}")
        raise WalletError.internal("Sign-Error", str(e)) from e

    logger.info(f"Added {signed} signature(s), finalized: {finalized}")
    return WalletPSBT(psbt=psbt_utils.to_base64(parsed), is_finalized=finalized)


async def broadcast(config: WalletConfig, psbt: str) -> Txid:
    """Extract the final transaction from a PSBT and submit it to the network."""
    wallet = await _open_synced_wallet(config)
    parsed = _parse_psbt(psbt, "PSBT-Decode", "PSBT-Deserialize")
    tx = psbt_utils.extract_tx(parsed)

    try:
        txid = await wallet.broadcast(tx)
    except BackendConnectionError as e:
        raise WalletError.network("Broadcast", str(e)) from e
    except BackendError as e:
        logger.error(f"Broadcast rejected: {e}")
        raise WalletError.internal(str(e)) from e

    return Txid(txid=txid)
