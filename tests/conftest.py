"""
Pytest configuration and shared fixtures
"""
import os
import sys
import threading

import fakeredis
import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from fika_agent_core.errors import PublishTimeout  # noqa: E402
from fika_agent_core.mqtt_topics import TopicSchema  # noqa: E402
from fika_agent_core.state_store import StateStore  # noqa: E402


class FakeSession:
    """Records publishes instead of sending them; can be told to time out."""

    def __init__(self):
        self.published = []
        self.nowait = []
        self.fail_publishes = 0
        self._lock = threading.Lock()

    def publish(self, topic, payload, *, qos=1, retain=False, timeout_s=None):
        with self._lock:
            if self.fail_publishes:
                self.fail_publishes -= 1
                raise PublishTimeout(f"publish to {topic} timed out")
            self.published.append((topic, payload))

    def publish_nowait(self, topic, payload, *, qos=0, retain=False):
        self.nowait.append((topic, payload))
        return True

    def messages_on(self, topic):
        with self._lock:
            return [p for t, p in self.published if t == topic]


@pytest.fixture
def topics():
    return TopicSchema("dev-1")


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server):
    return fakeredis.FakeRedis(server=redis_server)


@pytest.fixture
def store(redis_client):
    return StateStore(redis_client, terminal_ttl_s=3600)


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def tls_files(tmp_path):
    paths = {}
    for name in ("ca.pem", "cert.pem", "key.pem"):
        p = tmp_path / name
        p.write_text("-----BEGIN TEST-----\n")
        paths[name] = str(p)
    return paths


@pytest.fixture
def mock_env(monkeypatch, tls_files):
    """Set up a complete, valid environment"""
    env_vars = {
        'MQTT_HOST': 'test.mqtt.local',
        'MQTT_PORT': '8883',
        'DEVICE_ID': 'dev-1',
        'MQTT_CA_FILE': tls_files['ca.pem'],
        'MQTT_CERT_FILE': tls_files['cert.pem'],
        'MQTT_KEY_FILE': tls_files['key.pem'],
        'ALLOWED_COMMANDS': 'echo, sleep',
    }

    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)

    return env_vars
