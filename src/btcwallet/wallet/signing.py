"""
Bitcoin transaction signing utilities for P2WPKH inputs, and message hashing.
"""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING

from coincurve import PrivateKey

from btcwallet.errors import TransactionSigningError
from btcwallet.wallet.address import hash160

if TYPE_CHECKING:
    from btcwallet.wallet.transaction import DraftTransaction

SIGHASH_ALL = 1


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "little")
    if value <= 0xFFFFFFFF:
        return b"\xfe" + value.to_bytes(4, "little")
    return b"\xff" + value.to_bytes(8, "little")


def serialize_outpoint(txid: str, vout: int) -> bytes:
    """Serialize outpoint (txid:vout)."""
    # txid is in RPC format (big-endian), need to reverse for raw tx
    return bytes.fromhex(txid)[::-1] + vout.to_bytes(4, "little")


def compute_sighash_segwit(
    tx: DraftTransaction,
    input_index: int,
    script_code: bytes,
    value: int,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """BIP143 signature hash for a SegWit v0 input."""
    if input_index < 0 or input_index >= len(tx.inputs):
        raise TransactionSigningError("Input index out of range")

    try:
        hash_prevouts = hash256(
            b"".join(serialize_outpoint(inp.txid, inp.vout) for inp in tx.inputs)
        )
        hash_sequence = hash256(b"".join(inp.sequence.to_bytes(4, "little") for inp in tx.inputs))
        hash_outputs = hash256(
            b"".join(
                out.value.to_bytes(8, "little") + encode_varint(len(script)) + script
                for out, script in zip(tx.outputs, tx.output_scripts, strict=True)
            )
        )

        target_input = tx.inputs[input_index]

        preimage = (
            tx.version.to_bytes(4, "little")
            + hash_prevouts
            + hash_sequence
            + serialize_outpoint(target_input.txid, target_input.vout)
            + encode_varint(len(script_code))
            + script_code
            + value.to_bytes(8, "little")
            + target_input.sequence.to_bytes(4, "little")
            + hash_outputs
            + tx.locktime.to_bytes(4, "little")
            + sighash_type.to_bytes(4, "little")
        )
    except (ValueError, OverflowError) as e:
        raise TransactionSigningError(f"Failed to compute sighash: {e}") from e

    return hash256(preimage)


def sign_p2wpkh_input(
    tx: DraftTransaction,
    input_index: int,
    script_code: bytes,
    value: int,
    private_key: PrivateKey,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """Sign a P2WPKH input using coincurve.

    Args:
        tx: The transaction to sign
        input_index: Index of the input to sign
        script_code: The scriptCode for signing (P2PKH script for P2WPKH)
        value: The value of the input being spent (in satoshis)
        private_key: coincurve PrivateKey instance
        sighash_type: Sighash type (default SIGHASH_ALL = 1)

    Returns:
        DER-encoded signature with sighash type byte appended
    """
    sighash = compute_sighash_segwit(tx, input_index, script_code, value, sighash_type)

    # The sighash is already SHA256d, so skip coincurve's own hashing
    signature = private_key.sign(sighash, hasher=None)

    return signature + bytes([sighash_type])


def create_p2wpkh_script_code(pubkey_bytes: bytes) -> bytes:
    """Create the scriptCode for P2WPKH signing (BIP 143).

    For P2WPKH, the scriptCode is the P2PKH script:
    OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG
    """
    return b"\x76\xa9\x14" + hash160(pubkey_bytes) + b"\x88\xac"


def create_witness_stack(signature: bytes, pubkey_bytes: bytes) -> list[bytes]:
    return [signature, pubkey_bytes]


def message_digest(message: str) -> bytes:
    """SHA256 of the UTF-8 encoded message."""
    return hashlib.sha256(message.encode("utf-8")).digest()
