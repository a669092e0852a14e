"""
Electrum protocol client and its stream transport.
"""

from btcwallet.electrum.client import Balance, ElectrumClient
from btcwallet.electrum.transport import RpcTransport

__all__ = [
    "Balance",
    "ElectrumClient",
    "RpcTransport",
]
