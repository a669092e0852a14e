"""
Exception hierarchy for the wallet.

Every error raised on purpose by this package derives from WalletError, so
callers can catch the whole family at once or pick a single kind.
"""

from __future__ import annotations


class WalletError(Exception):
    """Base class for wallet errors."""


class ElectrumConnectionError(WalletError):
    """Transport-level failure talking to the Electrum server."""


class RequestTimeoutError(ElectrumConnectionError):
    """No correlated response arrived within the request timeout."""


class ElectrumProtocolError(WalletError):
    """Malformed message or an error object returned by the server."""

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.code = code


class WalletValidationError(WalletError, ValueError):
    """Invalid caller input: mnemonic, address, amount or fee limits."""


class InsufficientFundsError(WalletError):
    """The funding address cannot cover amount plus fee."""


class BroadcastError(WalletError):
    """The server refused or failed to relay a signed transaction."""


class TransactionSigningError(WalletError):
    """A draft could not be signed or serialized."""
