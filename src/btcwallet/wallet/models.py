"""
Wallet data models.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class UnspentOutput:
    """An unspent output of the funding address."""

    tx_hash: str
    tx_pos: int
    value: int
    height: int
    # Output script of the parent transaction, filled in once resolved
    scriptpubkey: str | None = None

    @property
    def outpoint(self) -> tuple[str, int]:
        return (self.tx_hash, self.tx_pos)

    @property
    def is_resolved(self) -> bool:
        return self.scriptpubkey is not None

    @classmethod
    def from_electrum(cls, entry: dict[str, Any]) -> UnspentOutput:
        """Build from a blockchain.scripthash.listunspent entry."""
        tx_hash = entry["tx_hash"]
        if not isinstance(tx_hash, str) or len(bytes.fromhex(tx_hash)) != 32:
            raise ValueError(f"Invalid tx_hash: {tx_hash!r}")
        return cls(
            tx_hash=tx_hash.lower(),
            tx_pos=int(entry["tx_pos"]),
            value=int(entry["value"]),
            height=int(entry.get("height", 0)),
        )


@dataclass(frozen=True)
class KeyPair:
    public_key: str
    # WIF encoded
    private_key: str


@dataclass(frozen=True)
class TransactionResult:
    txid: str
    hex: str


@dataclass(frozen=True)
class PaymentPlan:
    """Details of the most recent payment built by an account."""

    recipient: str
    amount: int
    inputs: tuple[UnspentOutput, ...]
    change: int
    fee: int
    fee_rate: float
    virtual_size: int
    txid: str

    @property
    def input_value(self) -> int:
        return sum(utxo.value for utxo in self.inputs)

    @property
    def has_change(self) -> bool:
        return self.change > 0
