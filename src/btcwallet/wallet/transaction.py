"""
Transaction codec for single-signer P2WPKH payments.

Turns selected inputs and the payment outputs into a draft, signs each input
(BIP143) and serializes the result with its txid and virtual size.
"""

from __future__ import annotations

import math
import struct
from dataclasses import dataclass, field

from loguru import logger

from btcwallet.config import Network
from btcwallet.errors import TransactionSigningError
from btcwallet.wallet.address import address_to_scriptpubkey, pubkey_to_p2wpkh_script
from btcwallet.wallet.bip32 import HDKey
from btcwallet.wallet.signing import (
    SIGHASH_ALL,
    create_p2wpkh_script_code,
    create_witness_stack,
    encode_varint,
    hash256,
    serialize_outpoint,
    sign_p2wpkh_input,
)


@dataclass
class TxInput:
    """Transaction input."""

    txid: str
    vout: int
    value: int
    scriptpubkey: str = ""
    sequence: int = 0xFFFFFFFF


@dataclass
class TxOutput:
    """Transaction output."""

    address: str
    value: int
    scriptpubkey: str = ""


@dataclass
class DraftTransaction:
    """Unsigned or partially signed transaction."""

    inputs: list[TxInput]
    outputs: list[TxOutput]
    output_scripts: list[bytes]
    version: int = 2
    locktime: int = 0
    witnesses: list[list[bytes]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.witnesses:
            self.witnesses = [[] for _ in self.inputs]

    @property
    def input_value(self) -> int:
        return sum(inp.value for inp in self.inputs)

    @property
    def output_value(self) -> int:
        return sum(out.value for out in self.outputs)

    @property
    def is_signed(self) -> bool:
        return all(self.witnesses)


@dataclass(frozen=True)
class FinalizedTransaction:
    """Serialized, fully signed transaction."""

    raw_hex: str
    txid: str
    virtual_size: int
    weight: int


class TransactionCodec:
    """Builds, signs and serializes P2WPKH transactions."""

    def __init__(self, network: Network = Network.MAINNET):
        self.network = Network(network)

    def build_draft(self, inputs: list[TxInput], outputs: list[TxOutput]) -> DraftTransaction:
        """
        Assemble inputs and outputs into a signable draft.

        Output scripts come from scriptpubkey when set, else from the address.
        """
        if not inputs:
            raise ValueError("Transaction needs at least one input")
        if not outputs:
            raise ValueError("Transaction needs at least one output")

        scripts = [
            bytes.fromhex(out.scriptpubkey)
            if out.scriptpubkey
            else address_to_scriptpubkey(out.address, self.network)
            for out in outputs
        ]
        return DraftTransaction(inputs=list(inputs), outputs=list(outputs), output_scripts=scripts)

    def sign_input(self, draft: DraftTransaction, index: int, key: HDKey) -> None:
        """Sign one P2WPKH input with key and attach its witness."""
        pubkey = key.get_public_key_bytes()
        inp = draft.inputs[index] if 0 <= index < len(draft.inputs) else None
        if inp is None:
            raise TransactionSigningError("Input index out of range")

        if inp.scriptpubkey and bytes.fromhex(inp.scriptpubkey) != pubkey_to_p2wpkh_script(pubkey):
            raise TransactionSigningError(
                f"Input {index} ({inp.txid}:{inp.vout}) is not spendable by this key"
            )

        signature = sign_p2wpkh_input(
            draft,
            index,
            create_p2wpkh_script_code(pubkey),
            inp.value,
            key.private_key,
            SIGHASH_ALL,
        )
        draft.witnesses[index] = create_witness_stack(signature, pubkey)

    def finalize(self, draft: DraftTransaction) -> FinalizedTransaction:
        """Serialize a fully signed draft."""
        if not draft.is_signed:
            unsigned = [i for i, w in enumerate(draft.witnesses) if not w]
            raise TransactionSigningError(f"Inputs {unsigned} are not signed")

        stripped = self._serialize(draft, with_witness=False)
        full = self._serialize(draft, with_witness=True)
        weight = len(stripped) * 3 + len(full)

        finalized = FinalizedTransaction(
            raw_hex=full.hex(),
            txid=hash256(stripped)[::-1].hex(),
            virtual_size=math.ceil(weight / 4),
            weight=weight,
        )
        logger.debug(
            f"Finalized tx {finalized.txid}: {len(draft.inputs)} in, "
            f"{len(draft.outputs)} out, {finalized.virtual_size} vB"
        )
        return finalized

    def _serialize(self, draft: DraftTransaction, with_witness: bool) -> bytes:
        result = struct.pack("<I", draft.version)

        if with_witness:
            # SegWit marker and flag
            result += bytes([0x00, 0x01])

        result += encode_varint(len(draft.inputs))
        for inp in draft.inputs:
            result += serialize_outpoint(inp.txid, inp.vout)
            # Empty scriptSig for native SegWit
            result += bytes([0x00])
            result += struct.pack("<I", inp.sequence)

        result += encode_varint(len(draft.outputs))
        for out, script in zip(draft.outputs, draft.output_scripts, strict=True):
            result += struct.pack("<Q", out.value)
            result += encode_varint(len(script))
            result += script

        if with_witness:
            for witness in draft.witnesses:
                result += encode_varint(len(witness))
                for item in witness:
                    result += encode_varint(len(item))
                    result += item

        result += struct.pack("<I", draft.locktime)
        return result
