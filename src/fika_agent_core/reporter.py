"""
HTTP reporting to the boss-api backend.

Result messages are mirrored to `<BOSS_API_URL>/jobs/results` as JSON. The
reporter is optional; callers treat every failure as non-fatal.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional
from urllib.error import URLError
from urllib.request import Request, urlopen

from fika_agent_core.config import AgentConfig

logger = logging.getLogger(__name__)

RESULTS_PATH = "/jobs/results"


class ReportError(RuntimeError):
    """The backend did not accept a report."""


class BossReporter:
    def __init__(
        self,
        base_url: str,
        *,
        device_id: str,
        token: Optional[str] = None,
        timeout_s: float = 5.0,
        user_agent: str = "fika-agent-core",
    ) -> None:
        self.url = base_url.rstrip("/") + RESULTS_PATH
        self.device_id = device_id
        self.token = token
        self.timeout_s = timeout_s
        self.user_agent = user_agent

    @classmethod
    def from_config(cls, cfg: AgentConfig) -> Optional["BossReporter"]:
        if not cfg.boss_api_url:
            return None
        return cls(
            cfg.boss_api_url,
            device_id=cfg.device_id,
            token=cfg.boss_api_token,
            timeout_s=cfg.boss_api_timeout_s,
            user_agent=f"fika-agent-core/{cfg.agent_version}",
        )

    def report(self, result: dict[str, Any]) -> int:
        """POST one result message. Returns the HTTP status; raises ReportError."""
        body = json.dumps({"deviceId": self.device_id, **result}).encode("utf-8")
        headers = {"Content-Type": "application/json", "User-Agent": self.user_agent}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        req = Request(self.url, data=body, headers=headers, method="POST")
        try:
            with urlopen(req, timeout=self.timeout_s) as resp:
                status = resp.status
        except (URLError, OSError) as exc:
            raise ReportError(f"POST {self.url} failed: {exc}") from exc
        if status >= 300:
            raise ReportError(f"POST {self.url} returned HTTP {status}")
        logger.debug("Reported job %s (%s) to boss-api", result.get("jobId"), result.get("state"))
        return status
