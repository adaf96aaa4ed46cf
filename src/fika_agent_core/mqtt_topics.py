"""
MQTT topic schema for fika-agent-core.

All topics under devices/<device_id>/.
Inbound:  commands, commands/cancel.
Outbound: results, output (stream), status (retained + LWT), logs (stream).
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_DEVICE_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class TopicSchemaError(ValueError):
    """Raised when an invalid identifier is used to construct topics."""


def validate_device_id(device_id: str) -> str:
    if not isinstance(device_id, str) or not device_id:
        raise TopicSchemaError("device_id must be a non-empty string")
    if not _DEVICE_ID_RE.fullmatch(device_id):
        raise TopicSchemaError(
            f"device_id '{device_id}' is invalid; allowed: [A-Za-z0-9_-]+"
        )
    return device_id


@dataclass(frozen=True, slots=True)
class TopicSchema:
    """
    MQTT topic schema for a single device.
    Root: devices/<device_id>
    """

    device_id: str

    def __post_init__(self) -> None:
        validate_device_id(self.device_id)

    @property
    def base(self) -> str:
        return f"devices/{self.device_id}"

    # -------------------------
    # Inbound
    # -------------------------
    def commands(self) -> str:
        return f"{self.base}/commands"

    def commands_cancel(self) -> str:
        return f"{self.base}/commands/cancel"

    def inbound(self) -> list[str]:
        """Every topic the agent subscribes to."""
        return [self.commands(), self.commands_cancel()]

    # -------------------------
    # Outbound
    # -------------------------
    def results(self) -> str:
        return f"{self.base}/results"

    def output(self) -> str:
        return f"{self.base}/output"

    def status(self) -> str:
        return f"{self.base}/status"

    def logs(self) -> str:
        return f"{self.base}/logs"
