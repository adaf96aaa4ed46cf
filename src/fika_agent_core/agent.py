"""
Agent runtime wiring.

Builds the session, store, publisher, executor and dispatcher from an
AgentConfig and runs them until shutdown:

    session.messages() -> dispatcher.on_message -> executor -> publisher -> session
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from fika_agent_core.commands import AllowListPolicy
from fika_agent_core.config import AgentConfig
from fika_agent_core.dispatcher import CommandDispatcher
from fika_agent_core.errors import AuthError, StoreUnavailable
from fika_agent_core.executor import JobExecutor
from fika_agent_core.mqtt_log_handler import install_mqtt_log_handler
from fika_agent_core.mqtt_topics import TopicSchema
from fika_agent_core.publisher import ResultPublisher
from fika_agent_core.reporter import BossReporter
from fika_agent_core.session import SessionManager
from fika_agent_core.state_store import StateStore

logger = logging.getLogger(__name__)


class Agent:
    def __init__(
        self,
        cfg: AgentConfig,
        *,
        session: Optional[SessionManager] = None,
        store: Optional[StateStore] = None,
        reporter: Optional[BossReporter] = None,
    ) -> None:
        self.cfg = cfg
        self.topics = TopicSchema(cfg.device_id)
        self._stop = threading.Event()
        self._fatal: Optional[AuthError] = None
        self._pump: Optional[threading.Thread] = None

        self.session = session or SessionManager(
            cfg.mqtt_host,
            cfg.mqtt_port,
            cfg.device_id,
            ca_file=cfg.ca_file,
            cert_file=cfg.cert_file,
            key_file=cfg.key_file,
            version=cfg.agent_version,
            client_id=cfg.instance_id,
            keepalive=cfg.keepalive_s,
            connect_timeout_s=cfg.connect_timeout_s,
            publish_timeout_s=cfg.publish_timeout_s,
            outbound_queue_size=cfg.outbound_queue_size,
            backoff=cfg.backoff,
        )
        self.store = store or StateStore.from_url(cfg.redis_url, terminal_ttl_s=cfg.terminal_ttl_s)
        self.publisher = ResultPublisher(
            self.session,
            self.store,
            self.topics,
            owner_id=cfg.instance_id,
            backoff=cfg.backoff,
            max_retries=cfg.publish_max_retries,
            publish_timeout_s=cfg.publish_timeout_s,
            reporter=reporter or BossReporter.from_config(cfg),
            stop_event=self._stop,
        )
        self.executor = JobExecutor(
            self.store,
            self.publisher,
            owner_id=cfg.instance_id,
            max_concurrent=cfg.max_concurrent_jobs,
            lease_s=cfg.lease_duration_s,
            kill_grace_s=cfg.kill_grace_s,
            chunk_max_bytes=cfg.chunk_max_bytes,
            chunk_flush_interval_s=cfg.chunk_flush_interval_s,
            backoff=cfg.backoff,
        )
        self.dispatcher = CommandDispatcher(
            self.store,
            self.executor,
            self.publisher,
            self.topics,
            AllowListPolicy(cfg.allowed_commands),
            owner_id=cfg.instance_id,
            lease_s=cfg.lease_duration_s,
            buffer_size=cfg.admission_buffer_size,
            backoff=cfg.backoff,
        )

        self.session.add_state_listener(self.dispatcher.on_connectivity_change)
        self.session.subscribe(self.topics.inbound())

    @property
    def fatal_error(self) -> Optional[AuthError]:
        return self._fatal

    def start(self) -> bool:
        """
        Start all components and connect. Returns whether the broker session
        came up within the connect timeout. Raises AuthError.
        """
        if not self.cfg.allowed_commands:
            logger.warning("ALLOWED_COMMANDS is empty; every command will be rejected")
        if self.cfg.mqtt_logs_enabled:
            install_mqtt_log_handler(self.session, self.topics.logs())

        try:
            self.store.ping()
        except StoreUnavailable as exc:
            logger.warning("State store not reachable at startup: %s", exc)

        self.executor.start()
        self.dispatcher.start()
        connected = self.session.connect()

        self._pump = threading.Thread(target=self._pump_messages, name="inbound", daemon=True)
        self._pump.start()
        return connected

    def _pump_messages(self) -> None:
        try:
            for message in self.session.messages():
                self.dispatcher.on_message(message)
        except AuthError as exc:
            self._fatal = exc
            logger.critical("Session lost on authentication failure: %s", exc)
        except Exception:
            logger.exception("Inbound message pump crashed")

    def stop(self) -> None:
        logger.info("Shutting down...")
        self.dispatcher.stop()
        self.executor.stop(cancel_running=True)
        self._stop.set()
        try:
            self.session.disconnect()
        except Exception:
            logger.exception("Error disconnecting MQTT")
        if self._pump is not None:
            self._pump.join(timeout=5.0)
            self._pump = None
        logger.info("MQTT disconnected")

    def run(self, shutdown: threading.Event) -> int:
        """Run until `shutdown` is set. Returns a process exit code."""
        try:
            connected = self.start()
        except AuthError as exc:
            logger.critical("MQTT authentication failed: %s", exc)
            self.stop()
            return 1
        if not connected:
            logger.error("MQTT connection failed")
            self.stop()
            return 1

        logger.info("Agent running (shutdown via SIGINT/SIGTERM)")
        try:
            while not shutdown.is_set() and self._fatal is None:
                shutdown.wait(timeout=0.5)
        finally:
            self.stop()
        return 1 if self._fatal is not None else 0
