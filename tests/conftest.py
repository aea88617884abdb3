"""
Test configuration for descwallet tests.

Keys are testnet-only test vectors (not for production use!).
"""

from __future__ import annotations

from collections.abc import Callable
from unittest.mock import AsyncMock

import pytest

from descwallet.backends.base import UTXO, BlockchainBackend, RawTransaction

USER_TPUB = (
    "tpubDCCh4SuT3pSAQ1qAN86qKEzsLoBeiugoGGQeibmieRUKv8z6fCTTmEXsb9yeueBkUWjGVzJr91bCzeCNShorbBqjZV4WRGjz3CrJsCboXUe"
)
USER_TPRV = (
    "tprv8fWev2sCuSkVWYoNUUSEuqLkmmfiZaVtgxosS5jRE9fw5ejL2odsajv1QyiLrPri3ppgyta6dsFaoDVCF4ZdEAR6qqY4tnaosujsPzLxB49"
)
CUSTODIAN_TPUB = (
    "tpubDCKvnVh6U56wTSUEJGamQzdb3ByAc6gTPbjxXQqts5Bf1dBMopknipUUSmAV3UuihKPTddruSZCiqhyiYyhFWhz62SAGuC3PYmtAafUuG6R"
)
CUSTODIAN_TPRV = (
    "tprv8fdte5erKhRGZySSQcvB1ayUUATESmVYpJ9BEtobSoPGB8vbBRwCYKrcGcmKaRqTp1hdpprDpwVq4Fd7p7VacgwdMywv1Lmet6ZtYHV3uc1"
)
USER_ORIGIN = "[db7d25b5/84'/1'/6']"
CUSTODIAN_ORIGIN = "[66a0c105/84'/1'/5']"

# Unsigned single input wpkh spend: 5000 sats to a P2PKH address, 94580 change, 420 fee
FIXTURE_PSBT = (
    "cHNidP8BAHQBAAAAAf3cLERUN9+6X5+1yk3x9XzSCq1417WtB+gB5qNyj+xpAAAAAAD9////AnRxAQAAAAAAFgAUVyor"
    "kNVSCsiE4/7OspP52IwquzqIEwAAAAAAABl2qRQ0Sg9IyhUOwrkDgXZgubaLE6ZwJoisAAAAAAABAN4CAAAAAAEByvn9"
    "X3PvFqemGsrTv8ivAO07IOeRhBz7J0huqXJLfVgBAAAAAP7///8CoIYBAAAAAAAWABQTXAMs/1Qr5n6pDVK9O15ODZ/U"
    "CVZWjQAAAAAAFgAUIixaISTPlO8fwyT3hCL+An5+Km4CRzBEAiBFsQJfBur3eQgO5Vw+EvEgr2CagcVGXw9oYw3FOaMS"
    "SgIgch0CV+W3oRCKNBwxqiqIK0C5b1TsGk32HvNM+4Z7IksBIQNP/rsBHKbA98977TzmriFrOuO8hQjNg4ON3goI9/Uw"
    "jp0BIAABAR+ghgEAAAAAABYAFBNcAyz/VCvmfqkNUr07Xk4Nn9QJIgYD9WhlKKSeNh6567KTmyKrlitDWZOz/+mms7em"
    "VsWjGTsY230ltVQAAIABAACABgAAgAAAAAABAAAAACICAgHPrE7CShQkK90ApPF8xdr+8o7T/sHggOlZNOHIUft/GNt9"
    "JbVUAACAAQAAgAYAAIABAAAAAQAAAAAA"
)

RECIPIENT = "mkHS9ne12qx9pS9VojpwU5xtRd4T7X7ZUt"


@pytest.fixture
def watch_only_desc() -> str:
    """wpkh deposit descriptor with the user's tpub."""
    return f"wpkh({USER_ORIGIN}{USER_TPUB}/0/*)"


@pytest.fixture
def signing_desc() -> str:
    """Same wallet as watch_only_desc, carrying the private key."""
    return f"wpkh({USER_ORIGIN}{USER_TPRV}/0/*)"


@pytest.fixture
def raft_primary_desc() -> str:
    """User can spend alone; custodian can spend alone after block 2105103."""
    return (
        f"wsh(thresh(1,pk({USER_ORIGIN}{USER_TPRV}/0/*),"
        f"snj:and_v(v:pk({CUSTODIAN_ORIGIN}{CUSTODIAN_TPUB}/0/*),after(2105103))))"
    )


@pytest.fixture
def raft_secondary_desc() -> str:
    """The custodian's view of the raft wallet."""
    return (
        f"wsh(thresh(1,pk({USER_ORIGIN}{USER_TPUB}/0/*),"
        f"snj:and_v(v:pk({CUSTODIAN_ORIGIN}{CUSTODIAN_TPRV}/0/*),after(2105103))))"
    )


@pytest.fixture
def fixture_psbt() -> str:
    return FIXTURE_PSBT


@pytest.fixture
def recipient() -> str:
    return RECIPIENT


@pytest.fixture
def make_backend() -> Callable[..., AsyncMock]:
    """
    Factory for a mocked blockchain backend.

    funds maps address -> list of (txid, vout, value); transactions maps
    txid -> raw hex returned by get_transaction.
    """

    def factory(
        funds: dict[str, list[tuple[str, int, int]]] | None = None,
        transactions: dict[str, str] | None = None,
        broadcast_txid: str = "ab" * 32,
    ) -> AsyncMock:
        funds = funds or {}
        transactions = transactions or {}
        backend = AsyncMock(spec=BlockchainBackend)

        async def get_utxos(addresses: list[str]) -> list[UTXO]:
            return [
                UTXO(txid=txid, vout=vout, value=value, address=address, confirmations=1)
                for address in addresses
                for txid, vout, value in funds.get(address, [])
            ]

        async def get_transaction(txid: str) -> RawTransaction | None:
            if txid not in transactions:
                return None
            return RawTransaction(txid=txid, raw=transactions[txid])

        backend.get_utxos.side_effect = get_utxos
        backend.get_transaction.side_effect = get_transaction
        backend.broadcast_transaction.return_value = broadcast_txid
        backend.estimate_fee.return_value = 2.1
        return backend

    return factory


# Segwit transaction whose output 0 pays 100000 sats to watch_only_desc /0/1
FUNDING_TX = (
    "02000000000101caf9fd5f73ef16a7a61acad3bfc8af00ed3b20e791841cfb27486ea9724b7d58010000000"
    "0feffffff02a086010000000000160014135c032cff542be67ea90d52bd3b5e4e0d9fd40956568d00000000"
    "00160014222c5a2124cf94ef1fc324f78422fe027e7e2a6e02473044022045b1025f06eaf779080ee55c3e12"
    "f120af609a81c5465f0f68630dc539a3124a0220721d0257e5b7a1108a341c31aa2a882b40b96f54ec1a4df6"
    "1ef34cfb867b224b0121034ffebb011ca6c0f7cf7bed3ce6ae216b3ae3bc8508cd83838dde0a08f7f5308e9d"
    "012000"
)
FUNDING_TXID = "69ec8f72a3e601e807adb5d778ad0ad27cf5f14dcab59f5fbadf3754442cdcfd"
FUNDED_ADDRESS = "tb1qzdwqxt8l2s47vl4fp4ft6w67fcxel4qf5j96ld"


@pytest.fixture
def funded_backend(make_backend: Callable[..., AsyncMock]) -> AsyncMock:
    """Backend where watch_only_desc holds one 100000 sat coin at /0/1."""
    return make_backend(
        funds={FUNDED_ADDRESS: [(FUNDING_TXID, 0, 100000)]},
        transactions={FUNDING_TXID: FUNDING_TX},
    )


@pytest.fixture
def multisig_user_desc() -> str:
    """2-of-2 multisig as seen by the user (can add the first signature)."""
    return (
        f"wsh(multi(2,{USER_ORIGIN}{USER_TPRV}/0/*,{CUSTODIAN_ORIGIN}{CUSTODIAN_TPUB}/0/*))"
    )


@pytest.fixture
def multisig_custodian_desc() -> str:
    """Same 2-of-2 multisig as seen by the custodian."""
    return (
        f"wsh(multi(2,{USER_ORIGIN}{USER_TPUB}/0/*,{CUSTODIAN_ORIGIN}{CUSTODIAN_TPRV}/0/*))"
    )
