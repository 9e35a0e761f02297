"""Transaction log poller feeding an ordered stream of source transactions."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Tuple

from ..errors import SourceReadError
from ..model import Transaction
from ..stores.base import SourceStore

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.1
HANDOFF_TIMEOUT = 0.05


class CancellationToken:
    """Cooperative cancellation signal shared by the poller and the worker."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float]) -> bool:
        """Sleep up to ``timeout`` seconds; True if cancelled meanwhile."""
        return self._event.wait(timeout)


@dataclass(frozen=True)
class _PollerFailure:
    error: BaseException


class TransactionStream:
    """Consumer side of the poller hand-off queue."""

    def __init__(self, channel: "queue.Queue[object]", token: CancellationToken) -> None:
        self._channel = channel
        self._token = token

    def get(self, timeout: Optional[float] = None) -> Optional[Transaction]:
        """Next transaction, or None if none arrived within ``timeout``."""
        try:
            item = self._channel.get(timeout=timeout)
        except queue.Empty:
            return None
        if isinstance(item, _PollerFailure):
            raise SourceReadError(f"source log read failed: {item.error}") from item.error
        return item  # type: ignore[return-value]

    def __iter__(self) -> Iterator[Transaction]:
        while not self._token.cancelled:
            tx = self.get(timeout=HANDOFF_TIMEOUT)
            if tx is not None:
                yield tx


class TransactionPoller:
    """Reads the source log from ``start_t`` and pushes transactions in order."""

    def __init__(
        self,
        source: SourceStore,
        *,
        start_t: Optional[int] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        token: Optional[CancellationToken] = None,
        buffer_size: int = 1,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self._source = source
        self._cursor = start_t
        self._poll_interval = poll_interval
        self._token = token or CancellationToken()
        self._channel: "queue.Queue[object]" = queue.Queue(maxsize=max(1, buffer_size))
        self._thread: Optional[threading.Thread] = None
        self.stream = TransactionStream(self._channel, self._token)

    @property
    def cursor(self) -> Optional[int]:
        return self._cursor

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("poller already started")
        self._thread = threading.Thread(
            target=self._run,
            name="transaction-poller",
            daemon=True,
        )
        self._thread.start()

    def cancel(self) -> None:
        self._token.cancel()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def _run(self) -> None:
        logger.debug("poller started at t=%s", self._cursor)
        try:
            while not self._token.cancelled:
                txs = self._source.log_range(self._cursor, None)
                if not txs:
                    self._token.wait(self._poll_interval)
                    continue
                for tx in txs:
                    if not self._offer(tx):
                        break
                else:
                    self._cursor = txs[-1].t + 1
        except Exception as exc:  # noqa: BLE001 - surfaced to the consumer
            logger.error("transaction log read failed at t=%s: %s", self._cursor, exc)
            self._offer(_PollerFailure(exc))
        logger.debug("poller stopped at t=%s", self._cursor)

    def _offer(self, item: object) -> bool:
        while not self._token.cancelled:
            try:
                self._channel.put(item, timeout=HANDOFF_TIMEOUT)
                return True
            except queue.Full:
                continue
        return False


def open_transaction_stream(
    source: SourceStore,
    start_t: Optional[int] = None,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    *,
    token: Optional[CancellationToken] = None,
) -> Tuple[TransactionStream, Callable[[], None]]:
    """Start a poller and return its stream together with a cancel function."""

    poller = TransactionPoller(
        source,
        start_t=start_t,
        poll_interval=poll_interval,
        token=token,
    )
    poller.start()
    return poller.stream, poller.cancel
