"""Replicator orchestrating polling, translation, bootstrap and commits."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..config import Settings
from ..errors import ReplicationError, ReplicatorStateError, TransientCommitError
from ..model import CommitResult, Transaction
from ..stores.base import DestinationStore, SourceStore
from .bootstrap import Bootstrap, bootstrap_destination
from .checkpoint import resume_position
from .identity import IdentityResolver, default_identity
from .metrics import ReplicatorMetrics
from .poller import (
    DEFAULT_POLL_INTERVAL,
    HANDOFF_TIMEOUT,
    CancellationToken,
    TransactionPoller,
)
from .translate import translate_transaction

logger = logging.getLogger(__name__)

DEFAULT_TRANSIENT_PAUSE = 10.0


class ReplicatorState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ReplicatorOptions:
    """Construction-time configuration for a ``Replicator``.

    ``start_t`` overrides the checkpoint stored in the destination.
    ``identity_resolver`` and ``bootstrap`` replace the default strategies.
    ``poll_interval`` and ``transient_pause`` are in seconds.
    """

    start_t: Optional[int] = None
    poll_interval: float = DEFAULT_POLL_INTERVAL
    identity_resolver: IdentityResolver = default_identity
    bootstrap: Bootstrap = bootstrap_destination
    transient_pause: float = DEFAULT_TRANSIENT_PAUSE


class Replicator:
    """Copies every source transaction into the destination, in order, once.

    Lifecycle is ``created -> running -> stopped``; a stopped replicator cannot
    be restarted, build a new one to resume from the stored checkpoint.
    """

    def __init__(
        self,
        source: SourceStore,
        destination: DestinationStore,
        options: Optional[ReplicatorOptions] = None,
        *,
        metrics: Optional[ReplicatorMetrics] = None,
    ) -> None:
        self._source = source
        self._destination = destination
        self._options = options or ReplicatorOptions()
        self._metrics = metrics or ReplicatorMetrics()
        self._lock = threading.Lock()
        self._state = ReplicatorState.CREATED
        self._token = CancellationToken()
        self._poller: Optional[TransactionPoller] = None
        self._worker: Optional[threading.Thread] = None
        self._bootstrapped = False
        self._last_t: Optional[int] = None
        self._error: Optional[BaseException] = None

    @property
    def state(self) -> ReplicatorState:
        with self._lock:
            return self._state

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    @property
    def last_applied_t(self) -> Optional[int]:
        return self._last_t

    @property
    def options(self) -> ReplicatorOptions:
        return self._options

    @property
    def metrics(self) -> ReplicatorMetrics:
        return self._metrics

    def start(self) -> None:
        with self._lock:
            if self._state is not ReplicatorState.CREATED:
                raise ReplicatorStateError(
                    f"cannot start a replicator that is {self._state.value}"
                )
            try:
                start_t = resume_position(
                    self._destination.view(), self._options.start_t
                )
            except Exception as exc:
                self._error = exc
                self._state = ReplicatorState.STOPPED
                raise
            self._poller = TransactionPoller(
                self._source,
                start_t=start_t,
                poll_interval=self._options.poll_interval,
                token=self._token,
            )
            self._worker = threading.Thread(
                target=self._run_loop,
                name="replicator",
                daemon=True,
            )
            self._state = ReplicatorState.RUNNING
        logger.info(
            "starting replicator at t=%s",
            "origin" if start_t is None else start_t,
        )
        self._poller.start()
        self._worker.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Request shutdown; the in-flight transaction, if any, is finished."""

        with self._lock:
            if self._state is ReplicatorState.CREATED:
                self._state = ReplicatorState.STOPPED
                self._token.cancel()
                return
            if self._state is ReplicatorState.STOPPED and self._token.cancelled:
                return
        logger.info("stopping replicator")
        self._token.cancel()
        if self._poller is not None:
            self._poller.join(timeout)
        worker = self._worker
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the worker exits; re-raise the error that halted it."""

        worker = self._worker
        if worker is not None:
            worker.join(timeout)
            if worker.is_alive():
                return False
        if self._error is not None:
            raise self._error
        return self.state is ReplicatorState.STOPPED

    def run(self) -> None:
        """Start and block until stopped or halted by an error."""

        self.start()
        self.wait()

    def replicate(self, tx: Transaction) -> Optional[CommitResult]:
        """Translate and commit one transaction, retrying destination timeouts.

        Returns None when a stop request arrives while paused after a timeout;
        the transaction is then left unapplied.
        """

        if self._last_t is not None and tx.t <= self._last_t:
            raise ReplicationError(
                f"transaction t={tx.t} arrived after t={self._last_t}"
            )
        logger.info("replicating transaction t=%d (%d facts)", tx.t, len(tx.facts))
        while True:
            try:
                if not self._bootstrapped:
                    logger.info("initializing destination database")
                    self._options.bootstrap(self._destination, tx.instant)
                    self._bootstrapped = True
                write_set = translate_transaction(
                    tx,
                    self._source.as_of(tx.t),
                    self._destination.view(),
                    self._options.identity_resolver,
                )
                result = self._destination.commit(write_set.operations, write_set.instant)
            except TransientCommitError as exc:
                self._metrics.inc_retries()
                logger.warning(
                    "commit of t=%d timed out (%s); pausing %.1fs",
                    tx.t,
                    exc,
                    self._options.transient_pause,
                )
                if self._token.wait(self._options.transient_pause):
                    logger.info("stop requested while paused; t=%d not applied", tx.t)
                    return None
                continue
            self._last_t = tx.t
            self._metrics.record_applied(tx.t, write_set.fact_count)
            return result

    def _run_loop(self) -> None:
        assert self._poller is not None
        stream = self._poller.stream
        try:
            while not self._token.cancelled:
                tx = stream.get(timeout=HANDOFF_TIMEOUT)
                if tx is None or self._token.cancelled:
                    continue
                self.replicate(tx)
        except Exception as exc:  # noqa: BLE001 - fail-stop, re-raised by wait()
            self._error = exc
            self._metrics.inc_errors()
            logger.exception(
                "replication halted after t=%s",
                "none" if self._last_t is None else self._last_t,
            )
        finally:
            self._token.cancel()
            with self._lock:
                self._state = ReplicatorState.STOPPED
            logger.info("replicator stopped")


def build_replicator(
    settings: Settings,
    *,
    source: Optional[SourceStore] = None,
    destination: Optional[DestinationStore] = None,
    metrics: Optional[ReplicatorMetrics] = None,
    options: Optional[ReplicatorOptions] = None,
) -> Replicator:
    """Construct a replicator using application settings."""

    from ..stores.postgres import PostgresDatomStore

    if source is None:
        if not settings.source_dsn:
            raise ValueError("SOURCE_PG_DSN is not configured")
        source = PostgresDatomStore(
            conninfo=settings.source_dsn,
            schema=settings.datom_schema,
            log_batch_size=settings.log_batch_size,
        )
    if destination is None:
        if not settings.dest_dsn:
            raise ValueError("DEST_PG_DSN is not configured")
        destination = PostgresDatomStore(
            conninfo=settings.dest_dsn,
            schema=settings.datom_schema,
            commit_timeout_ms=settings.commit_timeout_ms,
        )
    if options is None:
        options = ReplicatorOptions(
            start_t=settings.start_t,
            poll_interval=settings.poll_interval_ms / 1000.0,
            transient_pause=settings.transient_pause_seconds,
        )
    return Replicator(source, destination, options, metrics=metrics)


__all__ = [
    "DEFAULT_TRANSIENT_PAUSE",
    "Replicator",
    "ReplicatorOptions",
    "ReplicatorState",
    "build_replicator",
]
