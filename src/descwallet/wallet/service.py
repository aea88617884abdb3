"""
Descriptor wallet service.

Holds the external (deposit) and internal (change) descriptors of one wallet,
scans them against a blockchain backend, builds PSBTs from the discovered
coins and signs/finalizes PSBTs with whatever private keys the descriptors
carry. Nothing is persisted: caches live only as long as the instance.
"""

from __future__ import annotations

import os

from embit.bip32 import path_to_str
from embit.ec import PublicKey
from embit.psbt import PSBT, DerivationPath, InputScope, OutputScope
from embit.script import Script, Witness
from embit.transaction import Transaction, TransactionInput, TransactionOutput
from loguru import logger

from descwallet.backends.base import BlockchainBackend
from descwallet.wallet import psbt as psbt_utils
from descwallet.wallet.descriptor import HARDENED, DerivedDescriptor, Descriptor
from descwallet.wallet.miniscript import SatisfactionContext
from descwallet.wallet.models import CoinSelection, UTXOInfo
from descwallet.wallet.policy import Conditions, Policy, extract_policy, requirements
from descwallet.wallet.script import varint_len, witness_program
from descwallet.wallet.signing import SIGHASH_ALL, TransactionSigningError, sign_input
from descwallet.wallet.transaction import (
    SEQUENCE_RBF,
    TransactionError,
    parse_transaction,
    txid_hex,
)

EXTERNAL = "external"
INTERNAL = "internal"

# Environment variable to enable sensitive logging (descriptors, addresses, etc.)
SENSITIVE_LOGGING = os.environ.get("SENSITIVE_LOGGING", "").lower() in ("1", "true", "yes")

# Bitcoin Core's dust relay fee, sat/kvB
DUST_RELAY_FEE = 3000


def dust_threshold(script_pubkey: bytes) -> int:
    """Smallest output value Bitcoin Core relays for this script."""
    size = 8 + varint_len(len(script_pubkey)) + len(script_pubkey)
    if witness_program(script_pubkey) is not None:
        size += 32 + 4 + 1 + 107 // 4 + 4
    else:
        size += 32 + 4 + 1 + 107 + 4
    return size * DUST_RELAY_FEE // 1000


class DescriptorWallet:
    """
    Wallet defined by a pair of output descriptors.

    Keychains:
    - external: deposit addresses (descriptor as given)
    - internal: change addresses (same descriptor on the /1/* chain)
    """

    def __init__(
        self,
        deposit_desc: str,
        change_desc: str,
        network: str,
        backend: BlockchainBackend | None = None,
        gap_limit: int = 20,
    ):
        # DescriptorError propagates to the caller
        self.descriptors = {
            EXTERNAL: Descriptor.from_string(deposit_desc),
            INTERNAL: Descriptor.from_string(change_desc),
        }
        self.network = network
        self.backend = backend
        self.gap_limit = gap_limit

        # Same descriptor for both chains: treat it as one keychain
        self.keychains = [EXTERNAL]
        if str(self.descriptors[INTERNAL]) != str(self.descriptors[EXTERNAL]):
            self.keychains.append(INTERNAL)

        self.address_cache: dict[bytes, tuple[str, int]] = {}
        self._derived: dict[tuple[str, int], DerivedDescriptor] = {}
        self.used_indices: dict[str, set[int]] = {EXTERNAL: set(), INTERNAL: set()}
        self.utxos: list[UTXOInfo] = []

        if SENSITIVE_LOGGING:
            logger.debug(f"Wallet descriptors: {deposit_desc} / {change_desc}")

    def _keychain(self, keychain: str) -> str:
        return keychain if keychain in self.keychains else EXTERNAL

    def derive(self, keychain: str, index: int) -> DerivedDescriptor:
        """Descriptor at a concrete index (cached)."""
        keychain = self._keychain(keychain)
        cache_key = (keychain, index)
        if cache_key not in self._derived:
            derived = self.descriptors[keychain].derive(index)
            self._derived[cache_key] = derived
            self.address_cache[derived.script_pubkey] = cache_key
        return self._derived[cache_key]

    def get_address(self, keychain: str, index: int) -> str:
        return self.derive(keychain, index).address(self.network)

    def policies(self) -> tuple[Policy, Policy]:
        """Spending policy trees of the external and internal descriptors."""
        return (
            extract_policy(self.descriptors[EXTERNAL]),
            extract_policy(self.descriptors[self._keychain(INTERNAL)]),
        )

    async def sync(self) -> list[UTXOInfo]:
        """
        Scan both keychains with the backend up to the gap limit.
        Non-wildcard descriptors have a single address at index 0.
        """
        if self.backend is None:
            raise RuntimeError("Wallet has no blockchain backend")

        utxos: list[UTXOInfo] = []
        for keychain in self.keychains:
            self.used_indices[keychain] = set()
            wildcard = self.descriptors[keychain].is_wildcard
            batch_size = self.gap_limit if wildcard else 1
            consecutive_empty = 0
            index = 0

            while consecutive_empty < self.gap_limit:
                addresses = [self.get_address(keychain, index + i) for i in range(batch_size)]

                backend_utxos = await self.backend.get_utxos(addresses)

                utxos_by_address: dict[str, list] = {addr: [] for addr in addresses}
                for utxo in backend_utxos:
                    if utxo.address in utxos_by_address:
                        utxos_by_address[utxo.address].append(utxo)

                for i, address in enumerate(addresses):
                    addr_utxos = utxos_by_address[address]
                    if addr_utxos:
                        consecutive_empty = 0
                        self.used_indices[keychain].add(index + i)
                        derived = self.derive(keychain, index + i)
                        for utxo in addr_utxos:
                            utxos.append(
                                UTXOInfo(
                                    txid=utxo.txid,
                                    vout=utxo.vout,
                                    value=utxo.value,
                                    address=address,
                                    scriptpubkey=derived.script_pubkey.hex(),
                                    keychain=keychain,
                                    index=index + i,
                                    confirmations=utxo.confirmations,
                                    height=utxo.height,
                                )
                            )
                    else:
                        consecutive_empty += 1

                    if consecutive_empty >= self.gap_limit:
                        break

                index += batch_size
                if not wildcard:
                    break

            logger.debug(
                f"Synced {keychain} keychain: scanned ~{index} addresses, found "
                f"{len([u for u in utxos if u.keychain == keychain])} UTXOs"
            )

        self.utxos = utxos
        logger.info(f"Sync complete: {len(utxos)} UTXOs, {self.get_balance()} sats")
        return utxos

    def get_balance(self) -> int:
        return sum(utxo.value for utxo in self.utxos)

    def get_next_address_index(self, keychain: str) -> int:
        """First index of the keychain without known coins."""
        keychain = self._keychain(keychain)
        if not self.descriptors[keychain].is_wildcard:
            return 0
        used = self.used_indices[keychain]
        index = 0
        while index in used:
            index += 1
        return index

    def select_utxos(self, target_amount: int) -> list[UTXOInfo]:
        """
        Select UTXOs for spending.
        Uses simple greedy selection strategy (largest first).
        """
        eligible = sorted(self.utxos, key=lambda u: u.value, reverse=True)

        selected = []
        total = 0
        for utxo in eligible:
            selected.append(utxo)
            total += utxo.value
            if total >= target_amount:
                break

        if total < target_amount:
            raise ValueError(f"Insufficient funds: need {target_amount}, have {total}")
        return selected

    def plan_spend(
        self, recipient_script: bytes, amount: int | None, fee: int, sweep: bool
    ) -> tuple[CoinSelection, list[TransactionOutput], int | None]:
        """
        Choose coins and outputs. Returns the selection, the outputs and the
        index of the change output (None when there is no change).
        """
        if fee < 0:
            raise ValueError(f"Invalid fee: {fee}")

        if sweep and amount is None:
            if not self.utxos:
                raise ValueError("Insufficient funds: wallet has no UTXOs to sweep")
            selected = sorted(self.utxos, key=lambda u: u.value, reverse=True)
            total = sum(u.value for u in selected)
            send_value = total - fee
            if send_value < dust_threshold(recipient_script):
                raise ValueError(
                    f"Insufficient funds: sweeping {total} sats with fee {fee} leaves "
                    f"{send_value} sats, below the dust limit"
                )
            selection = CoinSelection(selected, total, 0, fee)
            return selection, [TransactionOutput(send_value, Script(recipient_script))], None

        if amount is None:
            raise ValueError("Amount is required unless sweeping")
        if amount < dust_threshold(recipient_script):
            raise ValueError(f"Output value {amount} is below the dust limit")

        selected = self.select_utxos(amount + fee)
        total = sum(u.value for u in selected)
        change_value = total - amount - fee
        outputs = [TransactionOutput(amount, Script(recipient_script))]

        change_script = self.derive(INTERNAL, self.get_next_address_index(INTERNAL)).script_pubkey
        if change_value >= dust_threshold(change_script):
            outputs.append(TransactionOutput(change_value, Script(change_script)))
            logger.debug(f"Change output: {change_value} sats")
            return CoinSelection(selected, total, change_value, fee), outputs, 1

        if change_value:
            logger.debug(f"Change of {change_value} sats is dust, adding it to the fee")
        return CoinSelection(selected, total, 0, fee + change_value), outputs, None

    def spending_conditions(
        self,
        external_path: dict[str, list[int]] | None,
        internal_path: dict[str, list[int]] | None,
    ) -> Conditions:
        """Timelocks implied by the selected policy paths of both keychains."""
        external_policy, internal_policy = self.policies()
        conditions = requirements(external_policy, external_path)
        if INTERNAL in self.keychains:
            conditions = conditions.merge(requirements(internal_policy, internal_path))
        elif internal_path:
            conditions = conditions.merge(requirements(external_policy, internal_path))
        return conditions

    async def create_psbt(
        self,
        recipient_script: bytes,
        amount: int | None,
        fee: int,
        sweep: bool = False,
        external_path: dict[str, list[int]] | None = None,
        internal_path: dict[str, list[int]] | None = None,
    ) -> PSBT:
        """
        Build an unsigned PSBT paying ``amount`` (or everything, when sweeping)
        to ``recipient_script`` with an absolute ``fee``. RBF is always signalled.
        """
        conditions = self.spending_conditions(external_path, internal_path)
        selection, outputs, change_index = self.plan_spend(recipient_script, amount, fee, sweep)

        version = 1
        sequence = SEQUENCE_RBF
        if conditions.relative is not None:
            version = 2
            sequence = conditions.relative
        locktime = conditions.absolute or 0

        tx = Transaction(
            version=version,
            vin=[
                TransactionInput(bytes.fromhex(u.txid), u.vout, sequence=sequence)
                for u in selection.utxos
            ],
            vout=outputs,
            locktime=locktime,
        )
        psbt = PSBT(tx)

        for utxo, scope in zip(selection.utxos, psbt.inputs):
            await self._fill_input(scope, utxo)

        if change_index is not None:
            change_derived = self.derive(INTERNAL, self.get_next_address_index(INTERNAL))
            self._fill_output(psbt.outputs[change_index], change_derived)
            if SENSITIVE_LOGGING:
                logger.debug(f"Change address: {change_derived.address(self.network)}")

        logger.info(
            f"Created PSBT: {len(tx.vin)} inputs, {len(tx.vout)} outputs, "
            f"fee {selection.fee} sats"
        )
        return psbt

    async def _fill_input(self, scope: InputScope, utxo: UTXOInfo) -> None:
        derived = self.derive(utxo.keychain, utxo.index)
        spent = TransactionOutput(utxo.value, Script(derived.script_pubkey))

        prev = await self.backend.get_transaction(utxo.txid) if self.backend else None
        if prev is not None and prev.raw:
            prev_tx = parse_transaction(bytes.fromhex(prev.raw))
            if txid_hex(prev_tx) != utxo.txid:
                raise TransactionError(f"Backend returned the wrong transaction for {utxo.txid}")
            if utxo.vout >= len(prev_tx.vout) or (
                prev_tx.vout[utxo.vout].serialize() != spent.serialize()
            ):
                raise TransactionError(f"Backend UTXO {utxo.txid}:{utxo.vout} does not match")
            scope.non_witness_utxo = prev_tx
        elif not derived.is_segwit:
            raise TransactionError(f"Previous transaction {utxo.txid} not found")
        else:
            logger.warning(f"Previous transaction {utxo.txid} not found, using witness utxo only")

        if derived.is_segwit:
            scope.witness_utxo = spent
        self._fill_scripts(scope, derived)

    @staticmethod
    def _fill_scripts(scope: InputScope | OutputScope, derived: DerivedDescriptor) -> None:
        if derived.redeem_script is not None:
            scope.redeem_script = Script(derived.redeem_script)
        if derived.witness_script is not None:
            scope.witness_script = Script(derived.witness_script)
        for pubkey, key in derived.keys.items():
            scope.bip32_derivations[PublicKey.parse(pubkey)] = DerivationPath(
                key.fingerprint, key.path
            )

    def _fill_output(self, scope: OutputScope, derived: DerivedDescriptor) -> None:
        self._fill_scripts(scope, derived)

    def _candidate_index(self, keychain: str, path: list[int]) -> int:
        """Wildcard index a BIP32 derivation points at: its last step."""
        if not self.descriptors[keychain].is_wildcard or not path:
            return 0
        return path[-1] & ~HARDENED

    def find_input_owner(
        self, scope: InputScope, script_pubkey: bytes | None
    ) -> DerivedDescriptor | None:
        """
        Locate the wallet descriptor an input spends from: first through its
        BIP32 derivations, then by scanning gap_limit indices of each keychain.
        """
        for pub, origin in scope.bip32_derivations.items():
            pubkey = pub.sec()
            for keychain in self.keychains:
                index = self._candidate_index(keychain, list(origin.derivation))
                derived = self.derive(keychain, index)
                key = derived.keys.get(pubkey)
                if key is None or key.fingerprint != origin.fingerprint:
                    continue
                if script_pubkey is None or derived.script_pubkey == script_pubkey:
                    return derived

        if script_pubkey is None:
            return None
        if script_pubkey in self.address_cache:
            return self.derive(*self.address_cache[script_pubkey])
        for keychain in self.keychains:
            limit = self.gap_limit if self.descriptors[keychain].is_wildcard else 1
            for index in range(limit):
                derived = self.derive(keychain, index)
                if derived.script_pubkey == script_pubkey:
                    return derived
        return None

    def sign_psbt(self, psbt: PSBT) -> int:
        """
        Add partial signatures for every input the wallet can sign.
        Returns the number of signatures added.

        Raises:
            TransactionSigningError: unsupported sighash type or missing UTXO data
        """
        if not any(d.can_sign for d in self.descriptors.values()):
            logger.debug("Descriptors carry no private keys, nothing to sign")
            return 0

        tx = psbt.tx
        signed = 0
        for i, scope in enumerate(psbt.inputs):
            if psbt_utils.is_input_finalized(scope):
                continue

            utxo = psbt_utils.input_utxo(psbt, i)
            derived = self.find_input_owner(
                scope, utxo.script_pubkey.data if utxo is not None else None
            )
            if derived is None:
                continue
            if utxo is None:
                raise TransactionSigningError(f"Input {i}: missing UTXO data")
            if derived.is_segwit and scope.witness_utxo is None:
                scope.witness_utxo = utxo

            sighash_type = scope.sighash_type or SIGHASH_ALL
            if sighash_type != SIGHASH_ALL:
                raise TransactionSigningError(
                    f"Input {i}: unsupported sighash type {sighash_type}"
                )

            if scope.redeem_script is None and derived.redeem_script is not None:
                scope.redeem_script = Script(derived.redeem_script)
            if scope.witness_script is None and derived.witness_script is not None:
                scope.witness_script = Script(derived.witness_script)

            existing = {pub.sec() for pub in scope.partial_sigs}
            for pubkey, key in derived.keys.items():
                if key.secret is None or pubkey in existing:
                    continue
                scope.partial_sigs[PublicKey.parse(pubkey)] = sign_input(
                    tx,
                    i,
                    derived.script_code(),
                    utxo.value,
                    key.secret,
                    derived.is_segwit,
                    sighash_type,
                )
                signed += 1
                logger.debug(
                    f"Signed input {i} with key "
                    f"{path_to_str(key.path, fingerprint=key.fingerprint)}"
                )

        return signed

    def finalize_psbt(self, psbt: PSBT) -> bool:
        """
        Build final scriptSig/witness for every input whose policy is
        satisfied by the collected signatures. Returns True if all inputs
        are final.
        """
        tx = psbt.tx
        for i, scope in enumerate(psbt.inputs):
            if psbt_utils.is_input_finalized(scope):
                continue
            utxo = psbt_utils.input_utxo(psbt, i)
            if utxo is None:
                continue
            derived = self.find_input_owner(scope, utxo.script_pubkey.data)
            if derived is None:
                continue

            ctx = SatisfactionContext(
                signatures={pub.sec(): sig for pub, sig in scope.partial_sigs.items()},
                locktime=tx.locktime,
                sequence=tx.vin[i].sequence,
                version=tx.version,
            )
            satisfaction = derived.satisfy(ctx)
            if satisfaction is None:
                logger.debug(f"Input {i} is not yet satisfiable")
                continue

            script_sig, witness = satisfaction
            scope.final_scriptsig = Script(script_sig) if script_sig else None
            scope.final_scriptwitness = Witness(witness) if derived.is_segwit else None
            psbt_utils.clear_nonfinal_fields(scope)
            logger.debug(f"Finalized input {i}")

        return psbt_utils.is_finalized(psbt)

    async def broadcast(self, tx: Transaction) -> str:
        if self.backend is None:
            raise RuntimeError("Wallet has no blockchain backend")
        return await self.backend.broadcast_transaction(tx.serialize().hex())

    async def close(self) -> None:
        """Close backend connection"""
        if self.backend is not None:
            await self.backend.close()
