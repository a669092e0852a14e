"""
Coin selection strategies and short-lived output reservations.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence

from loguru import logger

from btcwallet.wallet.models import UnspentOutput


class CoinSelector(ABC):
    """Picks which unspent outputs fund a payment."""

    @abstractmethod
    def select(self, candidates: Sequence[UnspentOutput], target: int) -> list[UnspentOutput]:
        """
        Choose outputs to cover target satoshis.

        May return a set worth less than target when the candidates cannot
        cover it; the caller reports the shortfall once the fee is known.
        """


class FirstFitSelector(CoinSelector):
    """
    Take candidates in the order given (the server's order) and stop at the
    first prefix whose value reaches the target.
    """

    def select(self, candidates: Sequence[UnspentOutput], target: int) -> list[UnspentOutput]:
        selected: list[UnspentOutput] = []
        total = 0

        for utxo in candidates:
            selected.append(utxo)
            total += utxo.value
            if total >= target:
                break

        logger.debug(f"First-fit selected {len(selected)} output(s) worth {total} for {target}")
        return selected


class UtxoReservations:
    """
    Outpoints currently held by an in-flight payment.

    Shared by every account of a wallet manager so that two concurrent sends
    never spend the same output.
    """

    def __init__(self) -> None:
        self._reserved: set[tuple[str, int]] = set()
        self._lock = asyncio.Lock()

    def __contains__(self, outpoint: tuple[str, int]) -> bool:
        return outpoint in self._reserved

    def __len__(self) -> int:
        return len(self._reserved)

    async def claim(
        self, candidates: Sequence[UnspentOutput], selector: CoinSelector, target: int
    ) -> list[UnspentOutput]:
        """
        Run selector over the unreserved candidates and reserve its choice.

        Filtering, selection and reservation happen under one lock, so two
        concurrent payments always end up with disjoint inputs.
        """
        async with self._lock:
            available = [utxo for utxo in candidates if utxo.outpoint not in self._reserved]
            if len(available) < len(candidates):
                logger.debug(f"Skipped {len(candidates) - len(available)} reserved output(s)")
            selected = selector.select(available, target) if available else []
            self._reserved.update(utxo.outpoint for utxo in selected)
            return selected

    async def release(self, utxos: Iterable[UnspentOutput]) -> None:
        async with self._lock:
            self._reserved.difference_update(utxo.outpoint for utxo in utxos)
