"""
Bitcoin address encoding and Electrum script hashes.
"""

from __future__ import annotations

import hashlib

import base58
import bech32

from btcwallet.config import Network
from btcwallet.errors import WalletValidationError


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def pubkey_to_p2wpkh_script(pubkey: bytes) -> bytes:
    """Create P2WPKH scriptPubKey (OP_0 <20-byte-hash>)"""
    return bytes([0x00, 0x14]) + hash160(pubkey)


def pubkey_to_p2wpkh_address(pubkey: bytes, network: Network = Network.MAINNET) -> str:
    """
    Convert compressed public key to P2WPKH (native segwit) address.
    BIP173 bech32 encoding.
    """
    if len(pubkey) != 33:
        raise ValueError(f"Invalid compressed pubkey length: {len(pubkey)}")

    address = bech32.encode(Network(network).hrp, 0, hash160(pubkey))
    if address is None:
        raise ValueError(f"Failed to encode P2WPKH address for {pubkey.hex()}")
    return address


def _decode_segwit(address: str, network: Network) -> bytes:
    hrp = network.hrp
    if not address.lower().startswith(hrp + "1"):
        raise WalletValidationError(f"Address {address} is not a {network.value} address")

    witver, witprog = bech32.decode(hrp, address)
    if witver is None or witprog is None:
        raise WalletValidationError(f"Invalid bech32 address: {address}")

    program = bytes(witprog)
    if witver == 0:
        if len(program) == 20:
            # P2WPKH: OP_0 <20-byte-pubkeyhash>
            return bytes([0x00, 0x14]) + program
        if len(program) == 32:
            # P2WSH: OP_0 <32-byte-scripthash>
            return bytes([0x00, 0x20]) + program
    elif witver == 1 and len(program) == 32:
        # P2TR: OP_1 <32-byte-pubkey>
        return bytes([0x51, 0x20]) + program

    raise WalletValidationError(f"Unsupported witness program in {address}")


def _decode_base58(address: str, network: Network) -> bytes:
    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise WalletValidationError(f"Invalid address: {address}") from e

    if len(decoded) != 21:
        raise WalletValidationError(f"Invalid address payload length: {address}")

    version, payload = decoded[0], decoded[1:]
    if version == network.p2pkh_version:
        # OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG
        return bytes([0x76, 0xA9, 0x14]) + payload + bytes([0x88, 0xAC])
    if version == network.p2sh_version:
        # OP_HASH160 <20-byte-scripthash> OP_EQUAL
        return bytes([0xA9, 0x14]) + payload + bytes([0x87])

    raise WalletValidationError(f"Address {address} is not a {network.value} address")


def address_to_scriptpubkey(address: str, network: Network = Network.MAINNET) -> bytes:
    """
    Convert a Bitcoin address to its output script.

    Supports P2WPKH, P2WSH, P2TR, P2PKH and P2SH. The address must belong to
    the given network.

    Raises:
        WalletValidationError: If the address is malformed or for another network
    """
    network = Network(network)
    if not isinstance(address, str) or not address:
        raise WalletValidationError("Address must be a non-empty string")

    if address.lower().startswith(("bc1", "tb1", "bcrt1")):
        return _decode_segwit(address, network)
    return _decode_base58(address, network)


def scriptpubkey_to_address(scriptpubkey: bytes, network: Network = Network.MAINNET) -> str:
    """Convert a native SegWit scriptPubKey back to its address."""
    hrp = Network(network).hrp

    if len(scriptpubkey) == 22 and scriptpubkey[:2] == b"\x00\x14":
        result = bech32.encode(hrp, 0, scriptpubkey[2:])
    elif len(scriptpubkey) == 34 and scriptpubkey[:2] == b"\x00\x20":
        result = bech32.encode(hrp, 0, scriptpubkey[2:])
    else:
        raise ValueError(f"Unsupported scriptPubKey: {scriptpubkey.hex()}")

    if result is None:
        raise ValueError(f"Failed to encode address: {scriptpubkey.hex()}")
    return result


def script_hash(script: bytes) -> str:
    """Electrum script hash: SHA256 of the output script, byte-reversed, hex."""
    return hashlib.sha256(script).digest()[::-1].hex()


def address_to_script_hash(address: str, network: Network = Network.MAINNET) -> str:
    return script_hash(address_to_scriptpubkey(address, network))
