"""Transaction correlation for a single transport.

Each transport owns one TransactionCorrelator. Transaction ids come from a
16-bit counter rather than a random source, so two requests in flight on the
same stream never share an id.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Hashable
from dataclasses import dataclass

from mbmaster.errors import DeviceBusy, TransportTimeout
from mbmaster.protocol.frame import DecodedFrame

logger = logging.getLogger(__name__)

_ID_SPACE = 0x10000


@dataclass
class Transaction:
    """One request waiting for its response."""

    transaction_id: int
    device_id: Hashable
    expected_function_code: int
    deadline: float
    result: DecodedFrame | None = None
    error: Exception | None = None

    @property
    def done(self) -> bool:
        return self.result is not None or self.error is not None


class TransactionCorrelator:
    """Allocates transaction ids and matches inbound frames to pending requests.

    The pending table is guarded by an internal lock that is independent of
    any device lock, so a receive loop running for one device may consult it
    while another device registers a request.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._pending: dict[int, Transaction] = {}
        self._counter = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def register(
        self,
        device_id: Hashable,
        expected_function_code: int,
        timeout: float,
    ) -> int:
        """Start tracking a request.

        Args:
            device_id: Device the request is sent to
            expected_function_code: Function code of the request
            timeout: Seconds until the transaction expires

        Returns:
            The allocated transaction id

        Raises:
            DeviceBusy: If all 65536 ids are in flight
        """
        with self._lock:
            transaction_id = self._next_free_id()
            self._pending[transaction_id] = Transaction(
                transaction_id=transaction_id,
                device_id=device_id,
                expected_function_code=expected_function_code,
                deadline=self._clock() + timeout,
            )
            return transaction_id

    def _next_free_id(self) -> int:
        if len(self._pending) >= _ID_SPACE:
            raise DeviceBusy("No free transaction id: 65536 transactions in flight")
        while True:
            self._counter = (self._counter + 1) % _ID_SPACE
            if self._counter not in self._pending:
                return self._counter

    def pending(self, transaction_id: int) -> Transaction | None:
        with self._lock:
            return self._pending.get(transaction_id)

    def match(self, transaction_id: int, frame: DecodedFrame) -> Transaction | None:
        """Hand a decoded frame to the transaction that owns its id.

        Returns:
            The completed transaction, or None for foreign traffic
        """
        with self._lock:
            transaction = self._pending.pop(transaction_id, None)
        if transaction is None:
            logger.debug(f"Discarding frame with unknown transaction id {transaction_id}")
            return None
        transaction.result = frame
        return transaction

    def expire(self, now: float | None = None) -> list[Transaction]:
        """Remove every transaction whose deadline has passed.

        Each expired transaction gets a TransportTimeout in its error slot.
        Releasing the device lock is up to the caller.
        """
        if now is None:
            now = self._clock()
        with self._lock:
            expired = [t for t in self._pending.values() if t.deadline <= now]
            for transaction in expired:
                del self._pending[transaction.transaction_id]
        for transaction in expired:
            transaction.error = TransportTimeout(
                f"Transaction {transaction.transaction_id} to device "
                f"{transaction.device_id} timed out"
            )
            logger.debug(f"Expired transaction {transaction.transaction_id}")
        return expired

    def discard(self, transaction_id: int) -> None:
        with self._lock:
            self._pending.pop(transaction_id, None)
