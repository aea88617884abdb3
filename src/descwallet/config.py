"""
Configuration management: environment settings and per-call wallet configuration.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Literal

from loguru import logger
from pydantic_settings import BaseSettings, SettingsConfigDict

from descwallet.backends import BitcoinCoreBackend, BlockchainBackend, EsploraBackend
from descwallet.errors import WalletError
from descwallet.wallet.descriptor import DescriptorError, strip_checksum

DEFAULT = "default"
DEFAULT_MAINNET_NODE = "https://blockstream.info/api"
DEFAULT_TESTNET_NODE = "https://blockstream.info/testnet/api"
DEFAULT_MAINNET_RPC = "http://127.0.0.1:8332"
DEFAULT_TESTNET_RPC = "http://127.0.0.1:18332"

EXTERNAL_CHAIN = "/0/*"
INTERNAL_CHAIN = "/1/*"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DESCWALLET_", env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    backend: Literal["esplora", "rpc"] = "esplora"
    node_address: str = DEFAULT
    socks5: str | None = None

    timeout: float = 5.0
    gap_limit: int = 20

    rpc_user: str = "rpcuser"
    rpc_password: str = "rpcpassword"

    log_level: str = "INFO"


def get_settings() -> Settings:
    return Settings()


class BlockchainBackendType(str, Enum):
    ESPLORA = "esplora"
    RPC = "rpc"


def infer_network(descriptor: str) -> str:
    """Mainnet iff the descriptor carries a mainnet extended key."""
    if "xpub" in descriptor or "xprv" in descriptor:
        return "mainnet"
    return "testnet"


def change_descriptor(deposit_desc: str) -> str:
    """Internal (change) keychain descriptor for a deposit descriptor."""
    try:
        body = strip_checksum(deposit_desc)
    except DescriptorError as e:
        raise WalletError.internal("Wallet-Initialization", str(e)) from e
    return body.replace(EXTERNAL_CHAIN, INTERNAL_CHAIN)


def create_backend(
    backend: BlockchainBackendType,
    node_address: str,
    network: str,
    socks5: str | None,
    settings: Settings,
) -> BlockchainBackend:
    if backend == BlockchainBackendType.ESPLORA:
        if DEFAULT in node_address:
            node_address = DEFAULT_MAINNET_NODE if network == "mainnet" else DEFAULT_TESTNET_NODE
        return EsploraBackend(node_address, socks5=socks5, timeout=settings.timeout)

    if DEFAULT in node_address:
        node_address = DEFAULT_MAINNET_RPC if network == "mainnet" else DEFAULT_TESTNET_RPC
    return BitcoinCoreBackend(
        rpc_url=node_address,
        rpc_user=settings.rpc_user,
        rpc_password=settings.rpc_password,
        socks5=socks5,
    )


@dataclass
class WalletConfig:
    deposit_desc: str
    change_desc: str
    network: str
    client: BlockchainBackend | None
    gap_limit: int = 20

    @classmethod
    def new(
        cls,
        deposit_desc: str,
        backend: BlockchainBackendType | str = BlockchainBackendType.ESPLORA,
        node_address: str = DEFAULT,
        socks5: str | None = None,
        settings: Settings | None = None,
    ) -> WalletConfig:
        settings = settings or get_settings()
        network = infer_network(deposit_desc)
        change_desc = change_descriptor(deposit_desc)

        try:
            backend = BlockchainBackendType(backend)
            client = create_backend(backend, node_address, network, socks5, settings)
        except ImportError as e:
            # httpx raises ImportError for socks5 proxies without socksio installed
            raise WalletError.internal("Wallet-Initialization", str(e)) from e
        except OSError as e:
            raise WalletError.network("Wallet-Initialization", str(e)) from e
        except ValueError as e:
            raise WalletError.internal("Wallet-Initialization", str(e)) from e

        logger.debug(f"Wallet config: network={network}, backend={backend.value}")
        return cls(deposit_desc, change_desc, network, client, settings.gap_limit)

    @classmethod
    def offline(cls, deposit_desc: str, settings: Settings | None = None) -> WalletConfig:
        """Configuration without a backend, for signing and derivation."""
        settings = settings or get_settings()
        return cls(
            deposit_desc,
            change_descriptor(deposit_desc),
            infer_network(deposit_desc),
            None,
            settings.gap_limit,
        )

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()
