"""
End-to-end tests of the wallet operations against a mocked backend.
"""

from __future__ import annotations

import base64
from unittest.mock import AsyncMock

import pytest
from coincurve import PublicKey
from embit.hashes import hash160
from embit.psbt import PSBT
from embit.script import Script, Witness
from embit.transaction import Transaction, TransactionInput, TransactionOutput

from descwallet import operations
from descwallet.backends.base import BackendConnectionError, BackendError
from descwallet.config import WalletConfig, change_descriptor
from descwallet.errors import ErrorKind, WalletError
from descwallet.models import DecodedTxIO
from descwallet.wallet.policy import SpendingPolicyPaths
from descwallet.wallet.psbt import extract_tx, from_base64, to_base64
from descwallet.wallet.script import p2pkh_script
from descwallet.wallet.transaction import transaction_weight

FIRST_CHANGE = "tb1qh4wj0dmjatw9xnvc02krp5s2mqlgtxjp03ga8f"
SECOND_CHANGE = "tb1q2u4zhyx42g9v3p8rlm8t9ylemzxz4we6glds8q"
MAINNET_ADDRESS = "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"
RAFT_LOCKTIME = 2105103


def _config(desc: str, backend: AsyncMock | None) -> WalletConfig:
    return WalletConfig(desc, change_descriptor(desc), "testnet", backend)


def _offline(desc: str) -> WalletConfig:
    return _config(desc, None)


FUNDING_TXID = "69ec8f72a3e601e807adb5d778ad0ad27cf5f14dcab59f5fbadf3754442cdcfd"
P2WPKH_SCRIPT = bytes.fromhex("0014135c032cff542be67ea90d52bd3b5e4e0d9fd409")


def _spend(input_value: int, outputs: list[tuple[int, bytes]], inputs: int = 1) -> PSBT:
    """PSBT spending ``inputs`` coins of ``input_value`` sats each into ``outputs``."""
    tx = Transaction(
        version=2,
        vin=[
            TransactionInput(bytes.fromhex(FUNDING_TXID), vout, sequence=0xFFFFFFFD)
            for vout in range(inputs)
        ],
        vout=[TransactionOutput(value, Script(script)) for value, script in outputs],
        locktime=0,
    )
    psbt = PSBT(tx)
    for scope in psbt.inputs:
        scope.witness_utxo = TransactionOutput(input_value, Script(P2WPKH_SCRIPT))
    return psbt


async def _build_funded(
    desc: str, make_backend, recipient: str, paths: SpendingPolicyPaths | None = None
) -> str:
    """Fund /0/0 of ``desc`` with 100000 sats and spend 5000 of them."""
    address = operations.generate(_offline(desc), 0).address
    backend = make_backend(funds={address: [("aa" * 32, 0, 100000)]})
    result = await operations.build(
        _config(desc, backend), recipient, 5000, 420, policy_paths=paths
    )
    assert not result.is_finalized
    return result.psbt


class TestGenerate:
    def test_first_address(self, watch_only_desc: str) -> None:
        result = operations.generate(_offline(watch_only_desc), 0)
        assert result.address == "tb1q093gl5yxww0hlvlkajdmf8wh3a6rlvsdk9e6d3"

    def test_index(self, watch_only_desc: str) -> None:
        result = operations.generate(_offline(watch_only_desc), 1)
        assert result.address == "tb1qzdwqxt8l2s47vl4fp4ft6w67fcxel4qf5j96ld"

    def test_bad_descriptor(self) -> None:
        with pytest.raises(WalletError) as excinfo:
            operations.generate(_offline("wpkh(nope)"), 0)
        assert excinfo.value.kind == ErrorKind.INTERNAL
        assert excinfo.value.message == "Wallet-Initialization"


class TestPolicies:
    def test_raft(self, raft_primary_desc: str) -> None:
        result = operations.policies(_offline(raft_primary_desc))
        assert result.external.kind == "thresh"
        assert result.internal.id == "root"
        assert result.external.find("root.1.1").value == RAFT_LOCKTIME


class TestBuild:
    @pytest.mark.asyncio
    async def test_fixed_amount(
        self, watch_only_desc: str, funded_backend: AsyncMock, recipient: str
    ) -> None:
        result = await operations.build(
            _config(watch_only_desc, funded_backend), recipient, 5000, 420
        )
        decoded = operations.decode("testnet", result.psbt)
        assert decoded.outputs == [
            DecodedTxIO(value=5000, to=recipient),
            DecodedTxIO(value=94580, to=FIRST_CHANGE),
            DecodedTxIO(value=420, to="miner"),
        ]

        tx = from_base64(result.psbt).tx
        assert tx.vin[0].sequence == 0xFFFFFFFD
        assert tx.locktime == 0
        # the config owns the client
        funded_backend.close.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sweep(
        self, watch_only_desc: str, funded_backend: AsyncMock, recipient: str
    ) -> None:
        result = await operations.build(
            _config(watch_only_desc, funded_backend), recipient, None, 420, sweep=True
        )
        decoded = operations.decode("testnet", result.psbt)
        assert decoded.outputs == [
            DecodedTxIO(value=99580, to=recipient),
            DecodedTxIO(value=420, to="miner"),
        ]
        assert from_base64(result.psbt).tx.vin[0].sequence == 0xFFFFFFFD

    @pytest.mark.asyncio
    async def test_insufficient_funds(
        self, watch_only_desc: str, make_backend, recipient: str
    ) -> None:
        with pytest.raises(WalletError) as excinfo:
            await operations.build(_config(watch_only_desc, make_backend()), recipient, 5000, 420)
        assert excinfo.value.kind == ErrorKind.INTERNAL
        assert excinfo.value.message == "Insufficient funds: need 5420, have 0"

    @pytest.mark.asyncio
    async def test_wrong_network_address(
        self, watch_only_desc: str, funded_backend: AsyncMock
    ) -> None:
        with pytest.raises(WalletError) as excinfo:
            await operations.build(
                _config(watch_only_desc, funded_backend), MAINNET_ADDRESS, 5000, 420
            )
        assert excinfo.value.message == "Address-Parse"

    @pytest.mark.asyncio
    async def test_unreachable_backend(
        self, watch_only_desc: str, make_backend, recipient: str
    ) -> None:
        backend = make_backend()
        backend.get_utxos.side_effect = BackendConnectionError("connection refused")
        with pytest.raises(WalletError) as excinfo:
            await operations.build(_config(watch_only_desc, backend), recipient, 5000, 420)
        assert excinfo.value.kind == ErrorKind.NETWORK
        assert excinfo.value.message == "Wallet-Sync"

    @pytest.mark.asyncio
    async def test_backend_error_during_sync(
        self, watch_only_desc: str, make_backend, recipient: str
    ) -> None:
        backend = make_backend()
        backend.get_utxos.side_effect = BackendError("bad response")
        with pytest.raises(WalletError) as excinfo:
            await operations.build(_config(watch_only_desc, backend), recipient, 5000, 420)
        assert excinfo.value.kind == ErrorKind.INTERNAL
        assert excinfo.value.message == "Wallet-Sync"

    @pytest.mark.asyncio
    async def test_needs_backend(self, watch_only_desc: str, recipient: str) -> None:
        with pytest.raises(WalletError) as excinfo:
            await operations.build(_offline(watch_only_desc), recipient, 5000, 420)
        assert excinfo.value.message == "Wallet-Initialization"

    @pytest.mark.asyncio
    async def test_timelock_choice_needs_policy_path(
        self, raft_primary_desc: str, make_backend, recipient: str
    ) -> None:
        with pytest.raises(WalletError) as excinfo:
            await _build_funded(raft_primary_desc, make_backend, recipient)
        assert excinfo.value.message == "Spending policy path required for node root"


class TestDecode:
    def test_fixture(self, fixture_psbt: str, recipient: str) -> None:
        decoded = operations.decode("testnet", fixture_psbt)
        assert decoded.outputs == [
            DecodedTxIO(value=94580, to=SECOND_CHANGE),
            DecodedTxIO(value=5000, to=recipient),
            DecodedTxIO(value=420, to="miner"),
        ]

    def test_json_shape(self, fixture_psbt: str) -> None:
        data = operations.decode("testnet", fixture_psbt).model_dump()
        assert data["outputs"][-1] == {"value": 420, "to": "miner"}

    def test_invalid_base64(self) -> None:
        with pytest.raises(WalletError) as excinfo:
            operations.decode("testnet", "%%%")
        assert excinfo.value.message == "Base64-Decode"

    def test_invalid_structure(self) -> None:
        with pytest.raises(WalletError) as excinfo:
            operations.decode("testnet", base64.b64encode(b"garbage").decode())
        assert excinfo.value.message == "Deserialize-Error"

    def test_deterministic(self, fixture_psbt: str) -> None:
        first = operations.decode("testnet", fixture_psbt)
        second = operations.decode("testnet", fixture_psbt)
        assert first == second
        assert first.model_dump_json() == second.model_dump_json()

    def test_op_return_output(self) -> None:
        psbt = _spend(100000, [(0, bytes.fromhex("6a04deadbeef")), (99000, P2WPKH_SCRIPT)])
        decoded = operations.decode("testnet", to_base64(psbt))
        assert decoded.outputs == [
            DecodedTxIO(value=0, to="None"),
            DecodedTxIO(value=99000, to="tb1qzdwqxt8l2s47vl4fp4ft6w67fcxel4qf5j96ld"),
            DecodedTxIO(value=1000, to="miner"),
        ]

    def test_negative_fee_is_reported(self) -> None:
        psbt = _spend(1000, [(5000, P2WPKH_SCRIPT)])
        decoded = operations.decode("testnet", to_base64(psbt))
        assert decoded.outputs[-1] == DecodedTxIO(value=-4000, to="miner")

    def test_network_rendering(self, fixture_psbt: str) -> None:
        decoded = operations.decode("mainnet", fixture_psbt)
        assert decoded.outputs[0].to.startswith("bc1")
        assert decoded.outputs[1].to.startswith("1")

    @pytest.mark.parametrize("network", ["bitcoin", "", "Testnet"])
    def test_unknown_network(self, network: str, fixture_psbt: str) -> None:
        with pytest.raises(WalletError) as excinfo:
            operations.decode(network, fixture_psbt)
        assert excinfo.value.kind == ErrorKind.INTERNAL
        assert excinfo.value.message == "Network-Parse"

    def test_network_checked_before_psbt(self) -> None:
        with pytest.raises(WalletError) as excinfo:
            operations.decode("bitcoin", "%%%")
        assert excinfo.value.message == "Network-Parse"

    def test_missing_input_value(self, fixture_psbt: str) -> None:
        psbt = from_base64(fixture_psbt)
        psbt.inputs[0].witness_utxo = None
        psbt.inputs[0].non_witness_utxo = None
        with pytest.raises(WalletError) as excinfo:
            operations.decode("testnet", to_base64(psbt))
        assert excinfo.value.message == "Missing-Input-Value"


class TestWeight:
    def test_unsigned_fixture(self, watch_only_desc: str, fixture_psbt: str) -> None:
        assert operations.get_weight(watch_only_desc, fixture_psbt).weight == 576

    def test_signed_fixture_is_within_estimate(
        self, watch_only_desc: str, signing_desc: str, fixture_psbt: str
    ) -> None:
        signed = operations.sign(_offline(signing_desc), fixture_psbt)
        weight = operations.get_weight(watch_only_desc, signed.psbt).weight
        assert 464 < weight <= 576

    def test_each_pending_input_adds_a_satisfaction(self, watch_only_desc: str) -> None:
        psbt = _spend(100000, [(99000, P2WPKH_SCRIPT)], inputs=2)
        # 4 + 1 + 2 * 41 + 1 + 31 + 4 bytes, no witness yet
        assert transaction_weight(extract_tx(psbt)) == 123 * 4
        weight = operations.get_weight(watch_only_desc, to_base64(psbt)).weight
        assert weight == 123 * 4 + 2 * 112

    def test_finalized_input_adds_nothing(self, watch_only_desc: str) -> None:
        psbt = _spend(100000, [(99000, P2WPKH_SCRIPT)], inputs=2)
        psbt.inputs[0].final_scriptwitness = Witness([b"\x30" * 72, b"\x02" * 33])
        # marker and flag, 108 bytes of witness for input 0 and an empty one for input 1
        signed_weight = 123 * 4 + 2 + 108 + 1
        assert transaction_weight(extract_tx(psbt)) == signed_weight
        weight = operations.get_weight(watch_only_desc, to_base64(psbt)).weight
        assert weight == signed_weight + 112

    def test_bad_descriptor(self, fixture_psbt: str) -> None:
        with pytest.raises(WalletError) as excinfo:
            operations.get_weight("wpkh(nope)", fixture_psbt)
        assert excinfo.value.message == "Descriptor-Parse"

    def test_bad_psbt(self, watch_only_desc: str) -> None:
        with pytest.raises(WalletError) as excinfo:
            operations.get_weight(watch_only_desc, "%%%")
        assert excinfo.value.message == "Base64-Decode"


class TestSign:
    def test_finalizes_with_private_key(self, signing_desc: str, fixture_psbt: str) -> None:
        result = operations.sign(_offline(signing_desc), fixture_psbt)
        assert result.is_finalized

        psbt = from_base64(result.psbt)
        signature, pubkey = psbt.inputs[0].final_scriptwitness.items
        sighash = psbt.tx.sighash_segwit(0, Script(p2pkh_script(hash160(pubkey))), 100000)
        assert PublicKey(pubkey).verify(signature[:-1], sighash, hasher=None)

    def test_watch_only_leaves_psbt_unchanged(
        self, watch_only_desc: str, fixture_psbt: str
    ) -> None:
        result = operations.sign(_offline(watch_only_desc), fixture_psbt)
        assert not result.is_finalized
        assert result.psbt == fixture_psbt

    def test_garbage(self, signing_desc: str) -> None:
        with pytest.raises(WalletError) as excinfo:
            operations.sign(_offline(signing_desc), "not a psbt")
        assert excinfo.value.kind == ErrorKind.INTERNAL
        assert excinfo.value.message == "Deserialize-Psbt-Error"

    @pytest.mark.asyncio
    async def test_multisig_needs_both_parties(
        self,
        multisig_user_desc: str,
        multisig_custodian_desc: str,
        make_backend,
        recipient: str,
    ) -> None:
        unsigned = await _build_funded(multisig_user_desc, make_backend, recipient)

        partial = operations.sign(_offline(multisig_user_desc), unsigned)
        assert not partial.is_finalized
        assert len(from_base64(partial.psbt).inputs[0].partial_sigs) == 1

        complete = operations.sign(_offline(multisig_custodian_desc), partial.psbt)
        assert complete.is_finalized
        witness = from_base64(complete.psbt).inputs[0].final_scriptwitness.items
        assert witness[0] == b""
        assert len(witness) == 4

    @pytest.mark.asyncio
    async def test_raft_primary_path(
        self, raft_primary_desc: str, raft_secondary_desc: str, make_backend, recipient: str
    ) -> None:
        paths = SpendingPolicyPaths(external={"root": [0]}, internal={"root": [0]})
        unsigned = await _build_funded(raft_primary_desc, make_backend, recipient, paths)
        assert from_base64(unsigned).tx.locktime == 0

        # the custodian's branch is not yet spendable at locktime 0
        assert not operations.sign(_offline(raft_secondary_desc), unsigned).is_finalized
        assert operations.sign(_offline(raft_primary_desc), unsigned).is_finalized

    @pytest.mark.asyncio
    async def test_raft_secondary_path(
        self, raft_primary_desc: str, raft_secondary_desc: str, make_backend, recipient: str
    ) -> None:
        paths = SpendingPolicyPaths(external={"root": [1]}, internal={"root": [1]})
        unsigned = await _build_funded(raft_primary_desc, make_backend, recipient, paths)
        tx = from_base64(unsigned).tx
        assert tx.locktime == RAFT_LOCKTIME
        assert tx.vin[0].sequence == 0xFFFFFFFD

        assert operations.sign(_offline(raft_secondary_desc), unsigned).is_finalized

    @pytest.mark.asyncio
    async def test_raft_weight_estimate(
        self, raft_primary_desc: str, make_backend, recipient: str
    ) -> None:
        paths = SpendingPolicyPaths(external={"root": [0]}, internal={"root": [0]})
        unsigned = await _build_funded(raft_primary_desc, make_backend, recipient, paths)
        signed = operations.sign(_offline(raft_primary_desc), unsigned)

        estimate = operations.get_weight(raft_primary_desc, unsigned).weight
        actual = operations.get_weight(raft_primary_desc, signed.psbt).weight
        assert actual <= estimate


class TestBroadcast:
    @pytest.fixture
    def signed_psbt(self, signing_desc: str, fixture_psbt: str) -> str:
        return operations.sign(_offline(signing_desc), fixture_psbt).psbt

    @pytest.mark.asyncio
    async def test_success(self, watch_only_desc: str, make_backend, signed_psbt: str) -> None:
        backend = make_backend(broadcast_txid="cd" * 32)
        result = await operations.broadcast(_config(watch_only_desc, backend), signed_psbt)
        assert result.txid == "cd" * 32

        expected = extract_tx(from_base64(signed_psbt)).serialize().hex()
        backend.broadcast_transaction.assert_awaited_once_with(expected)

    @pytest.mark.asyncio
    async def test_rejected(self, watch_only_desc: str, make_backend, signed_psbt: str) -> None:
        backend = make_backend()
        backend.broadcast_transaction.side_effect = BackendError("bad-txns-inputs-missingorspent")
        with pytest.raises(WalletError) as excinfo:
            await operations.broadcast(_config(watch_only_desc, backend), signed_psbt)
        assert excinfo.value.kind == ErrorKind.INTERNAL
        assert excinfo.value.message == "bad-txns-inputs-missingorspent"

    @pytest.mark.asyncio
    async def test_unreachable(self, watch_only_desc: str, make_backend, signed_psbt: str) -> None:
        backend = make_backend()
        backend.broadcast_transaction.side_effect = BackendConnectionError("timed out")
        with pytest.raises(WalletError) as excinfo:
            await operations.broadcast(_config(watch_only_desc, backend), signed_psbt)
        assert excinfo.value.kind == ErrorKind.NETWORK
        assert excinfo.value.message == "Broadcast"

    @pytest.mark.asyncio
    async def test_invalid_psbt(self, watch_only_desc: str, make_backend) -> None:
        config = _config(watch_only_desc, make_backend())
        with pytest.raises(WalletError) as excinfo:
            await operations.broadcast(config, "%%%")
        assert excinfo.value.message == "PSBT-Decode"

        with pytest.raises(WalletError) as excinfo:
            await operations.broadcast(config, base64.b64encode(b"garbage").decode())
        assert excinfo.value.message == "PSBT-Deserialize"
