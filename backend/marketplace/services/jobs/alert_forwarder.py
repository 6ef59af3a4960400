"""
Alert Forwarder

Side channel that LISTENs on a PostgreSQL NOTIFY channel (fed by the
system_alerts insert trigger) and forwards each notification to the
external monitoring webhook:

    POST <MONITORING_WEBHOOK_URL>
    Authorization: Bearer <MONITORING_WEBHOOK_SECRET>
    {"event_type": <channel>, "payload": <notification json>}

A lost database connection is retried after a fixed delay.
"""
import json
import logging
import select
import threading
from typing import Any, Dict, Optional

import psycopg2
import requests
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT
from sqlalchemy.engine import Engine

from ...config import EngineConfig

logger = logging.getLogger(__name__)

POLL_TIMEOUT_SECONDS = 1.0


class AlertForwarder:
    """Forwards datastore notifications to the monitoring webhook."""

    def __init__(
        self,
        engine: Engine,
        config: EngineConfig,
        http_session: Optional[requests.Session] = None,
    ):
        if not config.notify_channel.isidentifier():
            raise ValueError(f"Invalid notify channel name: {config.notify_channel!r}")
        self.engine = engine
        self.config = config
        self._session = http_session or requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})
        if config.webhook_secret:
            self._session.headers.update({"Authorization": f"Bearer {config.webhook_secret}"})
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.forwarded = 0
        self.failed = 0

    # -------------------------------------------------------------------------
    # Forwarding
    # -------------------------------------------------------------------------

    def forward(self, event_type: str, payload: Dict[str, Any]) -> bool:
        """POST one event to the webhook. Returns False on any HTTP failure."""
        if not self.config.webhook_url:
            logger.debug("Monitoring webhook not configured, dropping event")
            return False
        try:
            response = self._session.post(
                self.config.webhook_url,
                json={"event_type": event_type, "payload": payload},
                timeout=self.config.webhook_timeout_seconds,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            self.failed += 1
            logger.error(f"Webhook forward failed for {event_type}: {e}")
            return False
        self.forwarded += 1
        return True

    def handle_notification(self, channel: str, raw_payload: str) -> bool:
        try:
            payload = json.loads(raw_payload) if raw_payload else {}
        except ValueError:
            payload = {"raw": raw_payload}
        return self.forward(channel, payload)

    # -------------------------------------------------------------------------
    # Listener lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="lifecycle-alert-forwarder", daemon=True)
        self._thread.start()
        logger.info(f"Alert forwarder listening on '{self.config.notify_channel}'")

    def stop(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._session.close()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            raw = None
            try:
                raw = self.engine.raw_connection()
                self._listen(raw.driver_connection)
            except psycopg2.Error as e:
                logger.error(
                    f"Alert listener connection lost: {e}; reconnecting in "
                    f"{self.config.listener_reconnect_seconds}s"
                )
                self._stop_event.wait(timeout=self.config.listener_reconnect_seconds)
            finally:
                # LISTEN connections are autocommit; never return them to the pool
                if raw is not None:
                    raw.invalidate()

    def _listen(self, connection) -> None:
        connection.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)
        with connection.cursor() as cursor:
            cursor.execute(f"LISTEN {self.config.notify_channel}")

        while not self._stop_event.is_set():
            readable, _, _ = select.select([connection], [], [], POLL_TIMEOUT_SECONDS)
            if not readable:
                continue
            connection.poll()
            while connection.notifies:
                notification = connection.notifies.pop(0)
                self.handle_notification(notification.channel, notification.payload)
