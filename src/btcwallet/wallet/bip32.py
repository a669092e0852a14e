"""
BIP32 HD key derivation and BIP39 seed handling.
Implements BIP84 (Native SegWit) derivation paths.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass

import base58
from coincurve import PrivateKey, PublicKey
from coincurve.ecdsa import cdata_to_der, der_to_cdata, deserialize_compact, serialize_compact
from mnemonic import Mnemonic

from btcwallet.config import Network
from btcwallet.wallet.address import hash160, pubkey_to_p2wpkh_address

# secp256k1 curve order
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

HARDENED = 0x80000000


class HDKey:
    """
    Hierarchical Deterministic Key for Bitcoin.
    Implements BIP32 derivation.
    """

    def __init__(
        self,
        private_key: PrivateKey,
        chain_code: bytes,
        depth: int = 0,
        parent_fingerprint: bytes = b"\x00\x00\x00\x00",
    ):
        self._private_key = private_key
        self._public_key = private_key.public_key
        self.chain_code = chain_code
        self.depth = depth
        self.parent_fingerprint = parent_fingerprint

    @property
    def private_key(self) -> PrivateKey:
        """Return the coincurve PrivateKey instance."""
        return self._private_key

    @property
    def public_key(self) -> PublicKey:
        """Return the coincurve PublicKey instance."""
        return self._public_key

    @property
    def fingerprint(self) -> bytes:
        """First four bytes of HASH160 of the compressed public key."""
        return hash160(self.get_public_key_bytes())[:4]

    @property
    def public_key_hex(self) -> str:
        return self.get_public_key_bytes().hex()

    @classmethod
    def from_seed(cls, seed: bytes) -> HDKey:
        """Create master HD key from seed"""
        hmac_result = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        key_bytes = hmac_result[:32]
        chain_code = hmac_result[32:]

        private_key = PrivateKey(key_bytes)

        return cls(private_key, chain_code, depth=0)

    def derive(self, path: str) -> HDKey:
        """
        Derive child key from path notation (e.g., "m/84'/0'/0'/0/0")
        ' indicates hardened derivation
        """
        if not path.startswith("m"):
            raise ValueError("Path must start with 'm'")

        key = self
        for part in path.split("/")[1:]:
            if not part:
                continue

            hardened = part.endswith("'") or part.endswith("h")
            index = int(part.rstrip("'h"))
            if index < 0 or index >= HARDENED:
                raise ValueError(f"Path index out of range: {part}")

            key = key._derive_child(index + HARDENED if hardened else index)

        return key

    def _derive_child(self, index: int) -> HDKey:
        """Derive a child key at the given index"""
        if index >= HARDENED:
            data = b"\x00" + self._private_key.secret + index.to_bytes(4, "big")
        else:
            data = self.get_public_key_bytes() + index.to_bytes(4, "big")

        hmac_result = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        key_offset = hmac_result[:32]
        child_chain = hmac_result[32:]

        offset_int = int.from_bytes(key_offset, "big")
        if offset_int >= SECP256K1_N:
            raise ValueError("Invalid child key")

        parent_key_int = int.from_bytes(self._private_key.secret, "big")
        child_key_int = (parent_key_int + offset_int) % SECP256K1_N
        if child_key_int == 0:
            raise ValueError("Invalid child key")

        return HDKey(
            PrivateKey(child_key_int.to_bytes(32, "big")),
            child_chain,
            depth=self.depth + 1,
            parent_fingerprint=self.fingerprint,
        )

    def get_private_key_bytes(self) -> bytes:
        """Get private key as 32 bytes"""
        return self._private_key.secret

    def get_public_key_bytes(self, compressed: bool = True) -> bytes:
        """Get public key bytes"""
        return self._public_key.format(compressed=compressed)

    def get_address(self, network: Network = Network.MAINNET) -> str:
        """Get P2WPKH (Native SegWit) address for this key"""
        return pubkey_to_p2wpkh_address(self.get_public_key_bytes(), network)

    def to_wif(self, network: Network = Network.MAINNET) -> str:
        """Private key in Wallet Import Format (compressed)."""
        payload = bytes([Network(network).wif_prefix]) + self.get_private_key_bytes() + b"\x01"
        return base58.b58encode_check(payload).decode("ascii")

    def sign(self, digest: bytes) -> bytes:
        """
        Sign a 32-byte digest.

        Returns the 64-byte compact r||s signature (low-S, RFC 6979 nonce).
        """
        if len(digest) != 32:
            raise ValueError(f"Digest must be 32 bytes, got {len(digest)}")
        der = self._private_key.sign(digest, hasher=None)
        return serialize_compact(der_to_cdata(der))

    def verify(self, digest: bytes, signature: bytes) -> bool:
        """Check a compact signature over digest. Malformed input returns False."""
        try:
            der = cdata_to_der(deserialize_compact(signature))
            return self._public_key.verify(der, digest, hasher=None)
        except (ValueError, TypeError):
            return False


@dataclass(frozen=True)
class DerivedKey:
    """Key material for one derivation path."""

    path: str
    public_key_hex: str
    private_key_wif: str
    # Fingerprint of the master key the path is rooted at
    fingerprint: str
    key: HDKey


def derive_child(seed: bytes, path: str, network: Network = Network.MAINNET) -> DerivedKey:
    master = HDKey.from_seed(seed)
    child = master.derive(path)
    return DerivedKey(
        path=path,
        public_key_hex=child.public_key_hex,
        private_key_wif=child.to_wif(network),
        fingerprint=master.fingerprint.hex(),
        key=child,
    )


_WORDLIST = Mnemonic("english")


def generate_mnemonic(strength: int = 128) -> str:
    """Random BIP39 mnemonic (128 bits of entropy gives 12 words)."""
    return _WORDLIST.generate(strength=strength)


def validate_mnemonic(mnemonic: str | None) -> bool:
    """Check words and checksum of a BIP39 mnemonic. Never raises."""
    if not mnemonic or not isinstance(mnemonic, str):
        return False
    try:
        return bool(_WORDLIST.check(mnemonic))
    except (ValueError, LookupError):
        return False


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """Convert BIP39 mnemonic to the 64-byte seed."""
    return Mnemonic.to_seed(mnemonic, passphrase)
