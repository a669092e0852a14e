"""
Payment engine: fee estimation, input selection, exact-fee assembly,
signing and broadcast of a single-recipient payment.
"""

from __future__ import annotations

import math
from decimal import Decimal, InvalidOperation
from typing import Any

from loguru import logger

from btcwallet.config import Network
from btcwallet.constants import (
    DEFAULT_FEE_TARGET_BLOCKS,
    DEFAULT_MAX_FEE,
    FEE_RATE_SCALE,
    MIN_RELAY_FEE,
    STANDARD_DUST_LIMIT,
)
from btcwallet.electrum.client import ElectrumClient
from btcwallet.errors import (
    BroadcastError,
    ElectrumProtocolError,
    InsufficientFundsError,
    WalletError,
    WalletValidationError,
)
from btcwallet.wallet.address import address_to_scriptpubkey, pubkey_to_p2wpkh_script
from btcwallet.wallet.bip32 import HDKey
from btcwallet.wallet.coin_selection import CoinSelector, FirstFitSelector, UtxoReservations
from btcwallet.wallet.models import PaymentPlan, TransactionResult, UnspentOutput
from btcwallet.wallet.transaction import (
    FinalizedTransaction,
    TransactionCodec,
    TxInput,
    TxOutput,
)


# Rebuilds allowed while the signed size keeps growing past the measured one
_MAX_FEE_PASSES = 4


def _with_context(error: WalletError, context: str) -> WalletError:
    """Same error kind, message prefixed with context."""
    if isinstance(error, ElectrumProtocolError):
        return ElectrumProtocolError(f"{context}: {error}", error.code)
    return type(error)(f"{context}: {error}")


def fee_rate_from_estimate(estimate: Any) -> Decimal:
    """
    Convert a blockchain.estimatefee answer (BTC/kB) to sat/vbyte.

    Electrum answers -1 when it has no estimate; that maps to a zero rate so
    the relay fee floor applies.
    """
    try:
        rate = Decimal(str(estimate)) * FEE_RATE_SCALE
    except InvalidOperation as e:
        raise ElectrumProtocolError(f"Invalid fee estimate: {estimate!r}") from e
    if not rate.is_finite():
        raise ElectrumProtocolError(f"Invalid fee estimate: {estimate!r}")
    if rate < 0:
        logger.warning(f"Server returned no fee estimate ({estimate}), using the relay fee floor")
        return Decimal(0)
    return rate


class PaymentEngine:
    """
    Builds and sends payments funded by a single P2WPKH address.

    Change goes back to the funding address. Inputs are resolved one at a
    time by fetching their parent transactions.
    """

    def __init__(
        self,
        client: ElectrumClient,
        key: HDKey,
        address: str,
        network: Network = Network.MAINNET,
        codec: TransactionCodec | None = None,
        selector: CoinSelector | None = None,
        reservations: UtxoReservations | None = None,
        fee_target_blocks: int = DEFAULT_FEE_TARGET_BLOCKS,
        max_fee: int = DEFAULT_MAX_FEE,
        dust_limit: int = STANDARD_DUST_LIMIT,
        min_relay_fee: int = MIN_RELAY_FEE,
    ):
        self.client = client
        self.key = key
        self.address = address
        self.network = Network(network)
        self.codec = codec or TransactionCodec(self.network)
        self.selector = selector or FirstFitSelector()
        self.reservations = reservations
        self.fee_target_blocks = fee_target_blocks
        self.max_fee = max_fee
        self.dust_limit = dust_limit
        self.min_relay_fee = min_relay_fee
        self.funding_script = pubkey_to_p2wpkh_script(key.get_public_key_bytes()).hex()

        self.last_attempt: PaymentPlan | None = None

    def validate_payment(self, recipient: str, amount: int) -> None:
        """Reject bad recipients and dust amounts before touching the network."""
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise WalletValidationError(f"Amount must be an integer number of sats, got {amount!r}")
        if amount <= self.dust_limit:
            raise WalletValidationError(
                f"send amount must be bigger than dust limit {self.dust_limit} got: {amount}"
            )
        address_to_scriptpubkey(recipient, self.network)

    async def estimate_fee_rate(self) -> Decimal:
        """Fee rate in sat/vbyte for the configured confirmation target."""
        try:
            estimate = await self.client.get_fee_estimate(self.fee_target_blocks)
        except WalletError as e:
            logger.error(f"Electrum client error while estimating fee: {e}")
            raise _with_context(e, "Failed to estimate fee") from e
        return fee_rate_from_estimate(estimate)

    async def list_unspent(self) -> list[UnspentOutput]:
        try:
            entries = await self.client.get_unspent(self.address)
        except WalletError as e:
            logger.error(f"Electrum client error while fetching UTXOs: {e}")
            raise _with_context(e, "Failed to fetch UTXOs") from e

        try:
            return [UnspentOutput.from_electrum(entry) for entry in entries or []]
        except (KeyError, TypeError, ValueError) as e:
            raise ElectrumProtocolError(f"Malformed listunspent response: {e}") from e

    async def resolve(self, utxo: UnspentOutput) -> UnspentOutput:
        """Attach the output script by fetching the parent transaction."""
        try:
            tx = await self.client.get_transaction(utxo.tx_hash)
        except WalletError as e:
            logger.error(f"Electrum client error while fetching {utxo.tx_hash}: {e}")
            raise _with_context(e, "Failed to fetch transaction") from e

        try:
            vout = tx["vout"][utxo.tx_pos]
            scriptpubkey = vout["scriptPubKey"]["hex"]
        except (KeyError, IndexError, TypeError) as e:
            raise ElectrumProtocolError(
                f"Parent transaction {utxo.tx_hash} has no output {utxo.tx_pos}"
            ) from e

        if not isinstance(scriptpubkey, str) or scriptpubkey.lower() != self.funding_script:
            raise ElectrumProtocolError(
                f"Output {utxo.tx_hash}:{utxo.tx_pos} does not pay {self.address} "
                f"(script {scriptpubkey!r})"
            )

        return UnspentOutput(
            tx_hash=utxo.tx_hash,
            tx_pos=utxo.tx_pos,
            value=utxo.value,
            height=utxo.height,
            scriptpubkey=self.funding_script,
        )

    async def _select(self, candidates: list[UnspentOutput], amount: int) -> list[UnspentOutput]:
        if not candidates:
            raise InsufficientFundsError("No unspent outputs available")

        if self.reservations is None:
            return self.selector.select(candidates, amount)

        selected = await self.reservations.claim(candidates, self.selector, amount)
        if not selected:
            raise InsufficientFundsError(
                "No unspent outputs available (all reserved by payments in flight)"
            )
        return selected

    async def collect_utxos(self, amount: int) -> list[UnspentOutput]:
        """
        Select inputs for amount and resolve each of them.

        With reservations enabled the returned outputs stay reserved until
        release() is called on the reservation set.
        """
        selected = await self._select(await self.list_unspent(), amount)
        try:
            resolved = []
            for utxo in selected:
                resolved.append(await self.resolve(utxo))
            return resolved
        except BaseException:
            if self.reservations is not None:
                await self.reservations.release(selected)
            raise

    def _assemble(
        self, utxos: list[UnspentOutput], amount: int, recipient: str, fee: int
    ) -> tuple[FinalizedTransaction, int]:
        """Build and sign with a fixed fee. Returns the transaction and change value."""
        total_input = sum(utxo.value for utxo in utxos)
        change = total_input - amount - fee
        if change < 0:
            raise InsufficientFundsError(
                f"Insufficient balance: have {total_input} sats, need {amount + fee} "
                f"({amount} + {fee} fee)"
            )

        outputs = [TxOutput(address=recipient, value=amount)]
        if change > self.dust_limit:
            outputs.append(TxOutput(address=self.address, value=change))
        else:
            # Leftover at or below dust goes to the miner
            change = 0

        inputs = [
            TxInput(
                txid=utxo.tx_hash,
                vout=utxo.tx_pos,
                value=utxo.value,
                scriptpubkey=utxo.scriptpubkey or "",
            )
            for utxo in utxos
        ]
        draft = self.codec.build_draft(inputs, outputs)
        for index in range(len(inputs)):
            self.codec.sign_input(draft, index, self.key)
        return self.codec.finalize(draft), change

    def build_transaction(
        self, utxos: list[UnspentOutput], amount: int, recipient: str, fee_rate: Decimal
    ) -> tuple[FinalizedTransaction, PaymentPlan]:
        """
        Exact fee assembly.

        A zero-fee signed draft gives the real virtual size; the final
        transaction pays max(fee_rate * vsize, min_relay_fee). DER signatures
        vary in length between passes, so the size is measured again until
        the fee covers the transaction actually produced.
        """
        self.validate_payment(recipient, amount)

        measured, _ = self._assemble(utxos, amount, recipient, fee=0)
        virtual_size = measured.virtual_size
        for _ in range(_MAX_FEE_PASSES):
            fee = max(math.ceil(fee_rate * virtual_size), self.min_relay_fee)
            if fee > self.max_fee:
                raise WalletValidationError(
                    f"Fee {fee} sats exceeds the maximum of {self.max_fee}"
                )

            finalized, change = self._assemble(utxos, amount, recipient, fee)
            if finalized.virtual_size <= virtual_size:
                break
            virtual_size = finalized.virtual_size
        else:
            logger.warning(
                f"Transaction size did not settle after {_MAX_FEE_PASSES} passes, "
                f"paying {fee} sats for {finalized.virtual_size} vB"
            )

        plan = PaymentPlan(
            recipient=recipient,
            amount=amount,
            inputs=tuple(utxos),
            change=change,
            fee=sum(utxo.value for utxo in utxos) - amount - change,
            fee_rate=float(fee_rate),
            virtual_size=finalized.virtual_size,
            txid=finalized.txid,
        )
        logger.debug(
            f"Built {plan.txid}: {len(utxos)} input(s), fee {plan.fee} sats "
            f"at {fee_rate:.2f} sat/vB over {plan.virtual_size} vB, change {plan.change}"
        )
        return finalized, plan

    async def broadcast(self, finalized: FinalizedTransaction) -> str:
        """
        Submit the raw transaction.

        Every failure surfaces as BroadcastError; the underlying error is kept
        as its __cause__.
        """
        try:
            returned_txid = await self.client.broadcast_transaction(finalized.raw_hex)
        except Exception as e:
            logger.error(f"Electrum broadcast error for {finalized.txid}: {type(e).__name__}: {e}")
            raise BroadcastError("Failed to broadcast transaction") from e

        if returned_txid != finalized.txid:
            logger.warning(
                f"Server returned txid {returned_txid!r} for broadcast of {finalized.txid}"
            )
        return finalized.txid

    async def send_transaction(self, recipient: str, amount: int) -> TransactionResult:
        """
        Pay amount satoshis to recipient.

        Raises:
            WalletValidationError: Bad recipient, dust amount or fee above max_fee
            InsufficientFundsError: The funding address cannot cover amount + fee
            BroadcastError: The server did not accept the transaction
        """
        self.validate_payment(recipient, amount)

        fee_rate = await self.estimate_fee_rate()
        utxos = await self.collect_utxos(amount)
        try:
            finalized, plan = self.build_transaction(utxos, amount, recipient, fee_rate)
            self.last_attempt = plan
            await self.broadcast(finalized)
        finally:
            if self.reservations is not None:
                await self.reservations.release(utxos)

        logger.info(f"Sent {amount} sats to {recipient} in {finalized.txid} (fee {plan.fee} sats)")
        return TransactionResult(txid=finalized.txid, hex=finalized.raw_hex)
