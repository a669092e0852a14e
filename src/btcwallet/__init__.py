"""
btcwallet - BIP84 Bitcoin wallet backed by an Electrum server

Provides HD key derivation, an async Electrum client and single-recipient
payments from native SegWit accounts.
"""

__version__ = "0.1.0"

from btcwallet.config import ElectrumConfig, Network, Settings, WalletConfig, get_settings
from btcwallet.constants import MIN_RELAY_FEE, STANDARD_DUST_LIMIT
from btcwallet.electrum.client import Balance, ElectrumClient
from btcwallet.errors import (
    BroadcastError,
    ElectrumConnectionError,
    ElectrumProtocolError,
    InsufficientFundsError,
    RequestTimeoutError,
    WalletError,
    WalletValidationError,
)
from btcwallet.wallet.account import WalletAccount
from btcwallet.wallet.manager import WalletManager
from btcwallet.wallet.models import KeyPair, PaymentPlan, TransactionResult, UnspentOutput

__all__ = [
    "Balance",
    "BroadcastError",
    "ElectrumClient",
    "ElectrumConfig",
    "ElectrumConnectionError",
    "ElectrumProtocolError",
    "InsufficientFundsError",
    "KeyPair",
    "MIN_RELAY_FEE",
    "Network",
    "PaymentPlan",
    "RequestTimeoutError",
    "STANDARD_DUST_LIMIT",
    "Settings",
    "TransactionResult",
    "UnspentOutput",
    "WalletAccount",
    "WalletConfig",
    "WalletError",
    "WalletManager",
    "WalletValidationError",
    "get_settings",
]
