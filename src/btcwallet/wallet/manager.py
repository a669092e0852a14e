"""
Wallet manager: holds the seed phrase and hands out BIP84 accounts that
share one Electrum connection.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal
from typing import Any

from loguru import logger

from btcwallet.config import WalletConfig
from btcwallet.constants import BIP84_BASE_PATH, SATS_PER_BTC
from btcwallet.electrum.client import ElectrumClient
from btcwallet.errors import WalletValidationError
from btcwallet.wallet.account import WalletAccount
from btcwallet.wallet.bip32 import (
    HARDENED,
    HDKey,
    derive_child,
    generate_mnemonic,
    mnemonic_to_seed,
    validate_mnemonic,
)
from btcwallet.wallet.coin_selection import CoinSelector, UtxoReservations
from btcwallet.wallet.payment import PaymentEngine
from btcwallet.wallet.transaction import TransactionCodec


class WalletManager:
    """
    BIP84 wallet manager.

    Derivation path: m/84'/0'/{account}'/{change}/{index}
    - get_account(i) uses m/84'/0'/0'/0/i
    - get_account("a/c") uses m/84'/0'/a'/c
    """

    def __init__(
        self,
        config: WalletConfig | None = None,
        client: ElectrumClient | None = None,
        selector: CoinSelector | None = None,
    ):
        self.config = config or WalletConfig()
        self.network = self.config.network
        self.electrum_client = client or ElectrumClient.from_config(self.config.electrum)
        self.selector = selector
        self.reservations = UtxoReservations() if self.config.reserve_utxos else None
        self._codec = TransactionCodec(self.network)
        self._seed_phrase: str | None = None

        if self.config.seed_phrase is not None:
            self.seed_phrase = self.config.seed_phrase

        logger.info(f"Initialized {self.network.value} wallet manager")

    @property
    def seed_phrase(self) -> str | None:
        return self._seed_phrase

    @seed_phrase.setter
    def seed_phrase(self, phrase: str) -> None:
        if not self.is_valid_seed_phrase(phrase):
            raise WalletValidationError("Invalid mnemonic phrase")
        self._seed_phrase = phrase

    @staticmethod
    def get_random_seed_phrase() -> str:
        """Return a random 12-word BIP39 seed phrase."""
        return generate_mnemonic()

    @staticmethod
    def is_valid_seed_phrase(seed_phrase: Any) -> bool:
        return validate_mnemonic(seed_phrase)

    @staticmethod
    def get_bip84_path(index: int | str = 0) -> str:
        """
        BIP84 path for an account index.

        An "account/change" string selects that account and chain instead.
        """
        if isinstance(index, str):
            account, _, change = index.partition("/")
            parts = [account or "0", change or "0"]
            if not all(part.isdecimal() and int(part) < HARDENED for part in parts):
                raise WalletValidationError(f"Invalid account/change index: {index!r}")
            return f"m/84'/0'/{int(parts[0])}'/{int(parts[1])}"
        if isinstance(index, bool) or not isinstance(index, int):
            raise WalletValidationError(f"Account index must be an integer, got {index!r}")
        if not 0 <= index < HARDENED:
            raise WalletValidationError(f"Account index out of range: {index}")
        return f"{BIP84_BASE_PATH}/{index}"

    def _master_key(self, phrase: str) -> HDKey:
        return HDKey.from_seed(mnemonic_to_seed(phrase, self.config.bip39_passphrase))

    async def get_account(self, index: int | str = 0) -> WalletAccount | None:
        """Account at index, or None when no seed phrase is set."""
        if not self._seed_phrase:
            return None

        path = self.get_bip84_path(index)
        key = self._master_key(self._seed_phrase).derive(path)
        address = key.get_address(self.network)

        engine = PaymentEngine(
            client=self.electrum_client,
            key=key,
            address=address,
            network=self.network,
            codec=self._codec,
            selector=self.selector,
            reservations=self.reservations,
            fee_target_blocks=self.config.fee_target_blocks,
            max_fee=self.config.max_fee,
            dust_limit=self.config.dust_limit,
            min_relay_fee=self.config.min_relay_fee,
        )
        logger.debug(f"Derived account {index} at {path}")
        return WalletAccount(
            index=index,
            path=path,
            key=key,
            client=self.electrum_client,
            engine=engine,
            network=self.network,
        )

    def restore_wallet_from_phrase(self, mnemonic: str) -> dict[str, str]:
        """
        First receive address and keys of a phrase, without touching the
        manager's own seed phrase.
        """
        if not mnemonic:
            raise WalletValidationError("Mnemonic phrase cannot be empty")
        if not validate_mnemonic(mnemonic):
            raise WalletValidationError("Invalid mnemonic phrase")

        path = self.get_bip84_path()
        derived = derive_child(
            mnemonic_to_seed(mnemonic, self.config.bip39_passphrase), path, self.network
        )
        return {
            "mnemonic": mnemonic,
            "address": derived.key.get_address(self.network),
            "public_key": derived.public_key_hex,
            "private_key": derived.private_key_wif,
            "derivation_path": path,
            "fingerprint": derived.fingerprint,
        }

    def create_wallet(self) -> dict[str, str]:
        """Generate a new phrase and return its first receive address and keys."""
        return self.restore_wallet_from_phrase(generate_mnemonic())

    def derive_private_keys_from_phrase(self, mnemonic: str) -> dict[str, str]:
        """Raw hex private and public key of the first receive address."""
        if not mnemonic:
            raise WalletValidationError("Mnemonic phrase cannot be empty")
        if not validate_mnemonic(mnemonic):
            raise WalletValidationError("Invalid mnemonic phrase")

        key = self._master_key(mnemonic).derive(self.get_bip84_path())
        return {
            "private_key": key.get_private_key_bytes().hex(),
            "public_key": key.public_key_hex,
        }

    @staticmethod
    def btc_to_sats(btc: Decimal | str | float | int) -> int:
        """Convert BTC to satoshis, truncating sub-satoshi digits."""
        amount = Decimal(str(btc)) * SATS_PER_BTC
        return int(amount.to_integral_value(rounding=ROUND_DOWN))

    @staticmethod
    def sats_to_btc(sats: int) -> Decimal:
        return (Decimal(sats) / SATS_PER_BTC).quantize(Decimal("0.00000001"))

    async def close(self) -> None:
        """Close the shared Electrum connection"""
        await self.electrum_client.disconnect()
