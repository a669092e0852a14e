"""
Bitcoin and Electrum constants used by the wallet.
"""

from __future__ import annotations

# Standard P2PKH dust limit in Bitcoin Core
STANDARD_DUST_LIMIT = 546  # satoshis

# Absolute fee floor for a payment, regardless of the estimated rate
MIN_RELAY_FEE = 141  # satoshis

# Upper bound on the fee of a single payment unless configured otherwise
DEFAULT_MAX_FEE = 100_000  # satoshis

SATS_PER_BTC = 100_000_000

# blockchain.estimatefee answers in BTC/kB; multiplying by this gives sat/vbyte
FEE_RATE_SCALE = 100_000

# Confirmation target used when asking the server for a fee estimate
DEFAULT_FEE_TARGET_BLOCKS = 1

# BIP84 (native SegWit) receive chain of the first account.
# The coin type stays 0 on every network.
BIP84_BASE_PATH = "m/84'/0'/0'/0"

DEFAULT_ELECTRUM_HOST = "electrum.blockstream.info"
DEFAULT_ELECTRUM_PORT = 50001

# Electrum protocol version we announce in server.version
ELECTRUM_PROTOCOL_VERSION = "1.4"
CLIENT_NAME = "btcwallet"
