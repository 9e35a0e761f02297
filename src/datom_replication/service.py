"""Process runtime for the datom replication service."""

from __future__ import annotations

import logging
import signal
import threading
from typing import Optional

from prometheus_client import REGISTRY, start_http_server

from .cdc.metrics import ReplicatorMetrics
from .cdc.replicator import Replicator, build_replicator
from .config import Settings, load_settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=getattr(logging, level, logging.INFO),
            format=LOG_FORMAT,
        )


class ServiceRuntime:
    """Owns one replicator and ties it to process signals."""

    def __init__(
        self,
        settings: Settings,
        *,
        replicator: Optional[Replicator] = None,
    ) -> None:
        self.settings = settings
        self._replicator = replicator
        self._stop_requested = threading.Event()

    @property
    def replicator(self) -> Replicator:
        if self._replicator is None:
            metrics = ReplicatorMetrics(registry=REGISTRY)
            self._replicator = build_replicator(self.settings, metrics=metrics)
        return self._replicator

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)

    def _handle_signal(self, signum, _frame) -> None:
        logger.info("received signal %s; shutting down", signum)
        self.stop()

    def stop(self) -> None:
        self._stop_requested.set()
        if self._replicator is not None:
            self._replicator.stop(timeout=5)

    def run(self) -> None:
        replicator = self.replicator
        if self.settings.metrics_port:
            start_http_server(self.settings.metrics_port)
            logger.info("serving metrics on port %d", self.settings.metrics_port)
        replicator.start()
        try:
            while not self._stop_requested.is_set():
                if replicator.wait(timeout=0.5):
                    break
        finally:
            replicator.stop(timeout=5)
            if replicator.error is None:
                logger.info(
                    "replication finished; last applied t=%s",
                    replicator.last_applied_t,
                )


def main() -> None:
    """Entrypoint used by both python -m and the console script hook."""
    settings = load_settings()
    configure_logging(settings.log_level)
    runtime = ServiceRuntime(settings)
    runtime.install_signal_handlers()
    runtime.run()
