"""
A single BIP84 account: one address, its keys and the payments it funds.
"""

from __future__ import annotations

import base64
import binascii
from typing import Any

from btcwallet.config import Network
from btcwallet.electrum.client import Balance, ElectrumClient
from btcwallet.wallet.bip32 import HDKey
from btcwallet.wallet.models import KeyPair, PaymentPlan, TransactionResult
from btcwallet.wallet.payment import PaymentEngine
from btcwallet.wallet.signing import message_digest


class WalletAccount:
    """
    Account handle returned by WalletManager.get_account().

    Chain queries go through the manager's shared ElectrumClient.
    """

    def __init__(
        self,
        index: int | str,
        path: str,
        key: HDKey,
        client: ElectrumClient,
        engine: PaymentEngine,
        network: Network = Network.MAINNET,
    ):
        self.index = index
        self.path = path
        self.network = Network(network)
        self.address = key.get_address(self.network)
        self.key_pair = KeyPair(public_key=key.public_key_hex, private_key=key.to_wif(self.network))
        self._key = key
        self._client = client
        self._engine = engine

    def __repr__(self) -> str:
        return f"WalletAccount(index={self.index}, path={self.path!r}, address={self.address!r})"

    @property
    def last_attempt(self) -> PaymentPlan | None:
        """The most recent payment built by this account."""
        return self._engine.last_attempt

    async def get_balance(self) -> Balance:
        return await self._client.get_balance(self.address)

    async def get_history(self) -> list[dict[str, Any]]:
        return await self._client.get_history(self.address)

    async def get_unspent(self) -> list[dict[str, Any]]:
        return await self._client.get_unspent(self.address)

    async def send_transaction(self, to: str, amount: int) -> TransactionResult:
        """Send amount satoshis to address to; change returns to this account."""
        return await self._engine.send_transaction(to, amount)

    def sign(self, message: str) -> str:
        """Sign SHA256(message) with the account key. Returns base64 text."""
        signature = self._key.sign(message_digest(message))
        return base64.b64encode(signature).decode("ascii")

    def verify(self, message: str, signature: str) -> bool:
        """Check a base64 signature made by sign(). Never raises."""
        try:
            raw = base64.b64decode(signature, validate=True)
            return self._key.verify(message_digest(message), raw)
        except (binascii.Error, ValueError, TypeError, AttributeError):
            return False
