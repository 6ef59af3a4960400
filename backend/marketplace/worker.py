"""
Background worker process.

Runs the lifecycle engine's periodic tasks until SIGINT/SIGTERM:

    python -m marketplace.worker
"""
import logging
import signal
import threading

from .config import EngineConfig
from .database import init_db
from .runtime import build_runtime

logger = logging.getLogger(__name__)


def main() -> None:
    config = EngineConfig.load()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    init_db()
    runtime = build_runtime(config=config)
    shutdown = threading.Event()

    def _handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        shutdown.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    runtime.start()
    logger.info("Lifecycle worker running")
    shutdown.wait()
    runtime.stop()
    logger.info("Lifecycle worker stopped")


if __name__ == "__main__":
    main()
