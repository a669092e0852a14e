"""
Configuration for the wallet and its Electrum connection.
"""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from btcwallet.constants import (
    DEFAULT_ELECTRUM_HOST,
    DEFAULT_ELECTRUM_PORT,
    DEFAULT_FEE_TARGET_BLOCKS,
    DEFAULT_MAX_FEE,
    MIN_RELAY_FEE,
    STANDARD_DUST_LIMIT,
)


class Network(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    REGTEST = "regtest"

    @property
    def hrp(self) -> str:
        """Bech32 human readable part."""
        return {"mainnet": "bc", "testnet": "tb", "regtest": "bcrt"}[self.value]

    @property
    def wif_prefix(self) -> int:
        return 0x80 if self is Network.MAINNET else 0xEF

    @property
    def p2pkh_version(self) -> int:
        return 0x00 if self is Network.MAINNET else 0x6F

    @property
    def p2sh_version(self) -> int:
        return 0x05 if self is Network.MAINNET else 0xC4


class ElectrumConfig(BaseModel):
    """Connection settings for a single Electrum server."""

    host: str = DEFAULT_ELECTRUM_HOST
    port: int = Field(default=DEFAULT_ELECTRUM_PORT, ge=1, le=65535)
    protocol: Literal["tcp", "tls"] = "tcp"
    network: Network = Network.MAINNET
    # Many Electrum servers run with self-signed certificates
    verify_tls: bool = True
    connect_timeout: float = Field(default=10.0, gt=0)
    # None waits forever, matching the plain protocol semantics
    request_timeout: float | None = Field(default=30.0, gt=0)
    max_message_size: int = Field(default=16 * 1024 * 1024, ge=1024)


class WalletConfig(BaseModel):
    """Configuration for a wallet manager and the accounts it derives."""

    seed_phrase: str | None = None
    bip39_passphrase: str = ""
    network: Network = Network.MAINNET
    electrum: ElectrumConfig = Field(default_factory=ElectrumConfig)

    # Payment settings
    fee_target_blocks: int = Field(default=DEFAULT_FEE_TARGET_BLOCKS, ge=1, le=1008)
    max_fee: int = Field(default=DEFAULT_MAX_FEE, ge=0, description="Maximum fee in sats")
    dust_limit: int = Field(default=STANDARD_DUST_LIMIT, ge=0)
    min_relay_fee: int = Field(default=MIN_RELAY_FEE, ge=0)

    # Hold a short-lived reservation on selected outputs so concurrent sends
    # from the same manager never pick the same coin
    reserve_utxos: bool = False

    @model_validator(mode="after")
    def sync_electrum_network(self) -> WalletConfig:
        """The Electrum client always follows the wallet network."""
        if self.electrum.network != self.network:
            object.__setattr__(
                self, "electrum", self.electrum.model_copy(update={"network": self.network})
            )
        return self


class Settings(BaseSettings):
    """Environment driven settings (BTCWALLET_* variables or a .env file)."""

    model_config = SettingsConfigDict(
        env_prefix="BTCWALLET_", env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    network: Network = Network.MAINNET
    seed_phrase: str | None = None

    electrum_host: str = DEFAULT_ELECTRUM_HOST
    electrum_port: int = DEFAULT_ELECTRUM_PORT
    electrum_protocol: Literal["tcp", "tls"] = "tcp"
    electrum_verify_tls: bool = True
    request_timeout: float | None = 30.0

    max_fee: int = DEFAULT_MAX_FEE
    reserve_utxos: bool = False

    log_level: str = "INFO"

    def to_wallet_config(self) -> WalletConfig:
        return WalletConfig(
            seed_phrase=self.seed_phrase,
            network=self.network,
            electrum=ElectrumConfig(
                host=self.electrum_host,
                port=self.electrum_port,
                protocol=self.electrum_protocol,
                network=self.network,
                verify_tls=self.electrum_verify_tls,
                request_timeout=self.request_timeout,
            ),
            max_fee=self.max_fee,
            reserve_utxos=self.reserve_utxos,
        )


def get_settings() -> Settings:
    return Settings()
