"""
fika-agent-core entrypoint.

CLI:
  fika-agent-core run        -> run agent (runtime mode)
  fika-agent-core history    -> print recently finished jobs from the state store
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from dataclasses import dataclass
from typing import Optional

from fika_agent_core.config import package_version
from fika_agent_core.log_config import configure_logging

configure_logging()
logger = logging.getLogger(__name__)


def get_version_string() -> str:
    return package_version()


@dataclass
class Runtime:
    shutdown: threading.Event
    agent: Optional[object] = None


def _install_signal_handlers(rt: Runtime) -> None:
    def _handler(signum: int, frame) -> None:  # frame is unused, keep signature
        logger.info("Received signal %s; requesting shutdown", signum)
        rt.shutdown.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def run_agent() -> int:
    """
    Runtime mode: connect to MQTT and the state store, admit commands until shutdown.
    Returns process exit code.
    """
    from fika_agent_core.agent import Agent
    from fika_agent_core.config import ConfigError, load_config

    try:
        cfg = load_config()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2

    rt = Runtime(shutdown=threading.Event())
    _install_signal_handlers(rt)

    logger.info("============================================================")
    logger.info("fika-agent-core")
    logger.info("Version: %s", get_version_string())
    logger.info("Device: %s  Instance: %s", cfg.device_id, cfg.instance_id)
    logger.info("Allowed commands: %s", sorted(cfg.allowed_commands))
    logger.info("============================================================")

    agent = Agent(cfg)
    rt.agent = agent
    return agent.run(rt.shutdown)


def show_history(limit: int) -> int:
    from fika_agent_core.config import ConfigError, load_config
    from fika_agent_core.errors import StoreUnavailable
    from fika_agent_core.state_store import StateStore

    try:
        cfg = load_config()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2

    store = StateStore.from_url(cfg.redis_url, terminal_ttl_s=cfg.terminal_ttl_s)
    try:
        for job_id in store.history(limit):
            record = store.get(job_id)
            if record is None:
                print(f"{job_id}\t(expired)")
                continue
            exit_code = "" if record.exit_code is None else record.exit_code
            print(f"{job_id}\t{record.state.value}\t{exit_code}\t{record.reason or ''}")
    except StoreUnavailable as exc:
        logger.error("%s", exc)
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="fika-agent-core")
    p.add_argument("--version", action="version", version=get_version_string())

    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("run", help="Run agent runtime")

    history = sub.add_parser("history", help="List recently finished jobs")
    history.add_argument("--limit", type=int, default=20, help="Number of jobs to list (default: 20)")

    return p


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    if args.cmd == "run":
        raise SystemExit(run_agent())

    if args.cmd == "history":
        raise SystemExit(show_history(args.limit))

    raise SystemExit(2)


if __name__ == "__main__":
    main()
