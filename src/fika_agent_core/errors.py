"""
Error taxonomy for fika-agent-core.

Fatal:      AuthError (halts the agent, operator must fix credentials)
Retried:    TransportError, StoreUnavailable, PublishTimeout
Rejected:   MalformedRequest, PolicyViolation (reported, never retried)
Job result: ExecutionFailure (carried as a terminal job state)
"""

from __future__ import annotations


class AgentError(Exception):
    """Base class for all agent errors."""


class AuthError(AgentError):
    """Broker rejected our TLS identity or credentials. Not retried."""


class TransportError(AgentError):
    """Broker connection failed or dropped. Retried with backoff."""


class RequestError(AgentError):
    """Inbound command could not be admitted. Published as a Rejected result."""

    reason = "Rejected"

    def __init__(self, message: str, *, job_id: str = "") -> None:
        super().__init__(message)
        self.job_id = job_id


class MalformedRequest(RequestError):
    reason = "MalformedRequest"


class PolicyViolation(RequestError):
    reason = "PolicyViolation"


class StoreUnavailable(AgentError):
    """State store cannot be reached. Admission pauses; not a job failure."""


class ClaimLost(AgentError):
    """The job record is no longer owned by this agent instance."""


class PublishTimeout(AgentError):
    """A message could not be queued and acknowledged within the publish timeout."""


class ExecutionFailure(AgentError):
    """The job could not be started, or its output could not be delivered. Ends the job as Failed."""
