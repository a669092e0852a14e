"""
Tests for the payment engine using a mocked Electrum client.
"""

from __future__ import annotations

import asyncio
import math
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from btcwallet.config import Network
from btcwallet.electrum.client import ElectrumClient
from btcwallet.errors import (
    BroadcastError,
    ElectrumConnectionError,
    ElectrumProtocolError,
    InsufficientFundsError,
    WalletError,
    WalletValidationError,
)
from btcwallet.wallet.address import pubkey_to_p2wpkh_script
from btcwallet.wallet.bip32 import HDKey, mnemonic_to_seed
from btcwallet.wallet.coin_selection import UtxoReservations
from btcwallet.wallet.payment import PaymentEngine, fee_rate_from_estimate

RECIPIENT = "bc1qnjg0jd8228aq7egyzacy8cys3knf9xvrerkf9g"


@pytest.fixture
def key(test_mnemonic) -> HDKey:
    return HDKey.from_seed(mnemonic_to_seed(test_mnemonic)).derive("m/84'/0'/0'/0/0")


def _utxo(index: int, value: int) -> dict:
    return {"tx_hash": f"{index:064x}", "tx_pos": 0, "value": value, "height": 800_000}


def _mock_client(key: HDKey, utxos: list[dict], estimate: float = 0.00001) -> AsyncMock:
    script = pubkey_to_p2wpkh_script(key.get_public_key_bytes()).hex()

    client = AsyncMock(spec=ElectrumClient)
    client.get_fee_estimate.return_value = estimate
    client.get_unspent.return_value = utxos
    client.get_transaction.side_effect = lambda txid, verbose=True: {
        "txid": txid,
        "vout": [{"n": 0, "value": 0.001, "scriptPubKey": {"hex": script}}],
    }
    client.broadcast_transaction.side_effect = lambda raw: "server-txid"
    return client


def _engine(key: HDKey, client: AsyncMock, **kwargs) -> PaymentEngine:
    return PaymentEngine(
        client=client, key=key, address=key.get_address(), network=Network.MAINNET, **kwargs
    )


def _output_count(raw_hex: str) -> int:
    """Output count of a single-input segwit transaction."""
    # version (4) + marker/flag (2) + input count (1) + input (41)
    return bytes.fromhex(raw_hex)[48]


class TestFeeRate:
    def test_btc_per_kb_to_sat_per_vbyte(self) -> None:
        assert fee_rate_from_estimate(0.00001) == Decimal(1)
        assert fee_rate_from_estimate(0.00012) == Decimal(12)

    def test_negative_estimate_becomes_zero(self) -> None:
        assert fee_rate_from_estimate(-1) == Decimal(0)

    @pytest.mark.parametrize("estimate", [None, "abc", float("nan"), float("inf")])
    def test_invalid_estimate(self, estimate) -> None:
        with pytest.raises(ElectrumProtocolError, match="Invalid fee estimate"):
            fee_rate_from_estimate(estimate)


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, 546, -5, 1000.0, True])
    async def test_rejects_bad_amount(self, key, amount) -> None:
        client = _mock_client(key, [_utxo(1, 100_000)])

        with pytest.raises(WalletValidationError):
            await _engine(key, client).send_transaction(RECIPIENT, amount)

        client.get_fee_estimate.assert_not_awaited()
        client.broadcast_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "recipient",
        ["", "notanaddress", "tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx"],
    )
    async def test_rejects_bad_recipient(self, key, recipient) -> None:
        client = _mock_client(key, [_utxo(1, 100_000)])

        with pytest.raises(WalletValidationError):
            await _engine(key, client).send_transaction(recipient, 10_000)

        client.get_unspent.assert_not_awaited()


class TestSend:
    @pytest.mark.asyncio
    async def test_payment_with_change(self, key) -> None:
        client = _mock_client(key, [_utxo(1, 100_000)])
        engine = _engine(key, client)

        result = await engine.send_transaction(RECIPIENT, 50_000)

        plan = engine.last_attempt
        assert plan is not None
        assert result.txid == plan.txid
        assert plan.fee == 141
        assert plan.change == 100_000 - 50_000 - 141
        assert plan.has_change
        assert _output_count(result.hex) == 2
        client.broadcast_transaction.assert_awaited_once_with(result.hex)
        client.get_transaction.assert_awaited_once_with("0" * 63 + "1")

    @pytest.mark.asyncio
    async def test_fee_follows_rate(self, key) -> None:
        # 0.001 BTC/kB = 100 sat/vB
        client = _mock_client(key, [_utxo(1, 100_000)], estimate=0.001)
        engine = _engine(key, client)

        await engine.send_transaction(RECIPIENT, 50_000)

        plan = engine.last_attempt
        assert plan.virtual_size == 141
        assert plan.fee == 14_100
        assert plan.fee_rate == 100.0
        assert plan.input_value == plan.amount + plan.change + plan.fee

    @pytest.mark.asyncio
    async def test_fee_covers_signed_size(self, key) -> None:
        # Signature lengths vary with the signed data, so try many amounts
        for amount in range(150_000, 170_000, 691):
            client = _mock_client(key, [_utxo(1, 100_000), _utxo(2, 100_000)], estimate=0.001)
            engine = _engine(key, client)

            result = await engine.send_transaction(RECIPIENT, amount)

            plan = engine.last_attempt
            assert len(plan.inputs) == 2
            assert plan.fee >= math.ceil(100 * plan.virtual_size)

    @pytest.mark.asyncio
    async def test_fee_floor_without_estimate(self, key) -> None:
        client = _mock_client(key, [_utxo(1, 100_000)], estimate=-1)
        engine = _engine(key, client)

        await engine.send_transaction(RECIPIENT, 50_000)

        assert engine.last_attempt.fee == 141

    @pytest.mark.asyncio
    async def test_dust_change_goes_to_fee(self, key) -> None:
        # Leftover after the 141 sat floor is 300, below the dust limit
        client = _mock_client(key, [_utxo(1, 10_000 + 141 + 300)], estimate=-1)
        engine = _engine(key, client)

        result = await engine.send_transaction(RECIPIENT, 10_000)

        plan = engine.last_attempt
        assert _output_count(result.hex) == 1
        assert plan.change == 0
        assert not plan.has_change
        assert plan.fee == 441

    @pytest.mark.asyncio
    async def test_multiple_inputs(self, key) -> None:
        client = _mock_client(key, [_utxo(1, 30_000), _utxo(2, 30_000), _utxo(3, 30_000)])
        engine = _engine(key, client)

        await engine.send_transaction(RECIPIENT, 50_000)

        plan = engine.last_attempt
        assert [u.tx_hash for u in plan.inputs] == [f"{1:064x}", f"{2:064x}"]
        assert all(u.is_resolved for u in plan.inputs)
        assert client.get_transaction.await_count == 2

    @pytest.mark.asyncio
    async def test_returns_local_txid_when_server_differs(self, key) -> None:
        client = _mock_client(key, [_utxo(1, 100_000)])
        result = await _engine(key, client).send_transaction(RECIPIENT, 50_000)
        assert result.txid != "server-txid"
        assert len(result.txid) == 64


class TestFailures:
    @pytest.mark.asyncio
    async def test_no_unspent_outputs(self, key) -> None:
        client = _mock_client(key, [])

        with pytest.raises(InsufficientFundsError, match="No unspent outputs available"):
            await _engine(key, client).send_transaction(RECIPIENT, 10_000)

        client.broadcast_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, key) -> None:
        client = _mock_client(key, [_utxo(1, 5_000), _utxo(2, 5_000)])

        with pytest.raises(InsufficientFundsError, match="Insufficient balance"):
            await _engine(key, client).send_transaction(RECIPIENT, 20_000)

        client.broadcast_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_insufficient_for_fee(self, key) -> None:
        client = _mock_client(key, [_utxo(1, 10_000 + 100)], estimate=-1)

        with pytest.raises(InsufficientFundsError):
            await _engine(key, client).send_transaction(RECIPIENT, 10_000)

        client.broadcast_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fee_above_max(self, key) -> None:
        client = _mock_client(key, [_utxo(1, 100_000)], estimate=0.001)

        with pytest.raises(WalletValidationError, match="exceeds the maximum"):
            await _engine(key, client, max_fee=1_000).send_transaction(RECIPIENT, 50_000)

        client.broadcast_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fee_estimate_failure(self, key) -> None:
        client = _mock_client(key, [_utxo(1, 100_000)])
        client.get_fee_estimate.side_effect = ElectrumProtocolError("daemon error", 1)

        with pytest.raises(ElectrumProtocolError, match="Failed to estimate fee") as exc_info:
            await _engine(key, client).send_transaction(RECIPIENT, 50_000)

        assert exc_info.value.code == 1
        client.get_unspent.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unspent_fetch_failure(self, key) -> None:
        client = _mock_client(key, [])
        client.get_unspent.side_effect = ElectrumConnectionError("Connection lost")

        with pytest.raises(ElectrumConnectionError, match="Failed to fetch UTXOs"):
            await _engine(key, client).send_transaction(RECIPIENT, 50_000)

    @pytest.mark.asyncio
    async def test_parent_without_output(self, key) -> None:
        client = _mock_client(key, [_utxo(1, 100_000)])
        client.get_transaction.side_effect = lambda txid, verbose=True: {"vout": []}

        with pytest.raises(ElectrumProtocolError, match="has no output 0"):
            await _engine(key, client).send_transaction(RECIPIENT, 50_000)

    @pytest.mark.asyncio
    async def test_parent_output_to_another_script(self, key) -> None:
        client = _mock_client(key, [_utxo(1, 100_000)])
        foreign = "0014" + "11" * 20
        client.get_transaction.side_effect = lambda txid, verbose=True: {
            "vout": [{"n": 0, "value": 0.001, "scriptPubKey": {"hex": foreign}}],
        }

        with pytest.raises(ElectrumProtocolError, match="does not pay") as exc_info:
            await _engine(key, client).send_transaction(RECIPIENT, 50_000)

        assert isinstance(exc_info.value, WalletError)
        client.broadcast_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tx_hash", ["zz", "ab" * 31, 7])
    async def test_malformed_unspent_hash(self, key, tx_hash) -> None:
        client = _mock_client(key, [{"tx_hash": tx_hash, "tx_pos": 0, "value": 100_000}])

        with pytest.raises(ElectrumProtocolError, match="Malformed listunspent response"):
            await _engine(key, client).send_transaction(RECIPIENT, 50_000)

        client.get_transaction.assert_not_awaited()
        client.broadcast_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_broadcast_error_keeps_cause(self, key) -> None:
        client = _mock_client(key, [_utxo(1, 100_000)])
        cause = ElectrumProtocolError("bad-txns-inputs-missingorspent", 1)
        client.broadcast_transaction.side_effect = cause
        engine = _engine(key, client)

        with pytest.raises(BroadcastError, match="Failed to broadcast transaction") as exc_info:
            await engine.send_transaction(RECIPIENT, 50_000)

        assert exc_info.value.__cause__ is cause
        # The built payment is still recorded
        assert engine.last_attempt is not None
        assert engine.last_attempt.amount == 50_000


class TestReservations:
    @staticmethod
    def _slow_broadcast(client: AsyncMock) -> None:
        async def broadcast(raw):
            await asyncio.sleep(0.01)
            return "server-txid"

        client.broadcast_transaction.side_effect = broadcast

    @pytest.mark.asyncio
    async def test_concurrent_sends_use_disjoint_inputs(self, key) -> None:
        client = _mock_client(key, [_utxo(1, 100_000), _utxo(2, 100_000)])
        self._slow_broadcast(client)
        reservations = UtxoReservations()
        first = _engine(key, client, reservations=reservations)
        second = _engine(key, client, reservations=reservations)

        await asyncio.gather(
            first.send_transaction(RECIPIENT, 50_000),
            second.send_transaction(RECIPIENT, 50_000),
        )

        first_inputs = {u.outpoint for u in first.last_attempt.inputs}
        second_inputs = {u.outpoint for u in second.last_attempt.inputs}
        assert not first_inputs & second_inputs
        assert len(reservations) == 0

    @pytest.mark.asyncio
    async def test_without_reservations_inputs_may_overlap(self, key) -> None:
        client = _mock_client(key, [_utxo(1, 100_000), _utxo(2, 100_000)])
        self._slow_broadcast(client)
        first = _engine(key, client)
        second = _engine(key, client)

        await asyncio.gather(
            first.send_transaction(RECIPIENT, 50_000),
            second.send_transaction(RECIPIENT, 50_000),
        )

        assert first.last_attempt.inputs == second.last_attempt.inputs

    @pytest.mark.asyncio
    async def test_everything_reserved(self, key) -> None:
        client = _mock_client(key, [_utxo(1, 100_000)])
        reservations = UtxoReservations()
        engine = _engine(key, client, reservations=reservations)
        await reservations.claim(await engine.list_unspent(), engine.selector, 1)

        with pytest.raises(InsufficientFundsError, match="reserved"):
            await engine.send_transaction(RECIPIENT, 50_000)

    @pytest.mark.asyncio
    async def test_released_after_failure(self, key) -> None:
        client = _mock_client(key, [_utxo(1, 100_000)])
        client.broadcast_transaction.side_effect = ElectrumProtocolError("rejected", 1)
        reservations = UtxoReservations()

        with pytest.raises(BroadcastError):
            await _engine(key, client, reservations=reservations).send_transaction(
                RECIPIENT, 50_000
            )

        assert len(reservations) == 0
