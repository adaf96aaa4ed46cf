"""
fika-agent-core: MQTT command agent for edge devices.

Keeps a mutual-TLS session with the broker, admits command requests exactly
once per job id through a Redis-backed claim store, runs them as child
processes, and streams their output and results back.
"""
