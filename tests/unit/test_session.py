import json
import ssl
import time
from unittest.mock import MagicMock

import paho.mqtt.client as mqtt
import pytest

from fika_agent_core.backoff import BackoffPolicy
from fika_agent_core.errors import AuthError, PublishTimeout
from fika_agent_core.mqtt_topics import TopicSchema
from fika_agent_core.session import ConnectivityState, SessionManager

FAST = BackoffPolicy(base_delay=0.01, factor=1.0, max_delay=0.01, jitter=0.0)


class FakeMQTTMessage:
    def __init__(self, topic: str, payload: bytes):
        self.topic = topic
        self.payload = payload


@pytest.fixture
def fake_paho_client(monkeypatch):
    """
    Patch paho.mqtt.client.Client to return a controllable fake.
    """
    fake = MagicMock()

    def _loop(timeout=1.0):
        time.sleep(0.01)
        return mqtt.MQTT_ERR_SUCCESS

    fake.loop.side_effect = _loop

    def _ctor(*args, **kwargs):
        fake.ctor_kwargs = kwargs
        return fake

    monkeypatch.setattr("paho.mqtt.client.Client", _ctor)
    return fake


@pytest.fixture
def session(fake_paho_client, tls_files):
    s = SessionManager(
        "broker.local",
        8883,
        "dev-1",
        ca_file=tls_files["ca.pem"],
        cert_file=tls_files["cert.pem"],
        key_file=tls_files["key.pem"],
        version="1.2.3",
        connect_timeout_s=2.0,
        publish_timeout_s=0.5,
        backoff=FAST,
    )
    yield s
    s.disconnect()


def _ack_on_connect(session, fake, code=0):
    def _connect(*args, **kwargs):
        session._on_connect(fake, None, {}, code)
        return mqtt.MQTT_ERR_SUCCESS

    return _connect


def _connected(session):
    session._client = session._build_client()
    session._on_connect(session._client, None, {}, 0)


def _info(rc=mqtt.MQTT_ERR_SUCCESS, published=True):
    info = MagicMock()
    info.rc = rc
    info.is_published.return_value = published
    return info


def test_connect_sets_tls_lwt_and_subscribes(session, fake_paho_client):
    topics = TopicSchema("dev-1")
    session.subscribe(topics.inbound())
    fake_paho_client.connect.side_effect = _ack_on_connect(session, fake_paho_client)

    assert session.connect() is True
    assert session.state is ConnectivityState.CONNECTED

    assert fake_paho_client.ctor_kwargs["callback_api_version"] == mqtt.CallbackAPIVersion.VERSION2
    fake_paho_client.tls_set.assert_called_once()
    tls_kwargs = fake_paho_client.tls_set.call_args.kwargs
    assert tls_kwargs["certfile"].endswith("cert.pem")
    assert tls_kwargs["keyfile"].endswith("key.pem")
    assert tls_kwargs["cert_reqs"] == ssl.CERT_REQUIRED

    args, kwargs = fake_paho_client.will_set.call_args
    assert args[0] == topics.status()
    assert kwargs["retain"] is True
    assert kwargs["qos"] == 1
    assert json.loads(kwargs["payload"]) == {"state": "offline", "device_id": "dev-1", "version": "1.2.3"}

    fake_paho_client.connect.assert_called_with("broker.local", 8883, keepalive=60)
    subscribed = [c.args[0] for c in fake_paho_client.subscribe.call_args_list]
    assert subscribed == topics.inbound()

    online = [c for c in fake_paho_client.publish.call_args_list if c.args[0] == topics.status()]
    assert json.loads(online[0].kwargs["payload"])["state"] == "online"


def test_disconnect_publishes_offline_and_stops(session, fake_paho_client):
    fake_paho_client.connect.side_effect = _ack_on_connect(session, fake_paho_client)
    session.connect()
    fake_paho_client.publish.reset_mock()

    session.disconnect()

    (call,) = fake_paho_client.publish.call_args_list
    assert json.loads(call.kwargs["payload"])["state"] == "offline"
    fake_paho_client.disconnect.assert_called_once()
    assert session.state is ConnectivityState.DISCONNECTED


def test_connack_not_authorized_is_fatal(session, fake_paho_client):
    fake_paho_client.connect.side_effect = _ack_on_connect(session, fake_paho_client, code=135)

    with pytest.raises(AuthError):
        session.connect()

    assert isinstance(session.fatal_error, AuthError)
    assert fake_paho_client.connect.call_count == 1


def test_tls_handshake_failure_is_fatal(session, fake_paho_client):
    fake_paho_client.connect.side_effect = ssl.SSLError("certificate verify failed")

    with pytest.raises(AuthError):
        session.connect()
    assert fake_paho_client.connect.call_count == 1


def test_unreadable_tls_material_is_auth_error(session, fake_paho_client):
    fake_paho_client.tls_set.side_effect = FileNotFoundError("key.pem")

    with pytest.raises(AuthError):
        session.connect()


def test_transport_error_is_retried_with_backoff(session, fake_paho_client):
    states = []
    session.add_state_listener(states.append)
    ack = _ack_on_connect(session, fake_paho_client)
    attempts = {"n": 0}

    def _flaky_connect(*args, **kwargs):
        attempts["n"] += 1
        if attempts["n"] == 1:
            raise ConnectionRefusedError("refused")
        return ack(*args, **kwargs)

    fake_paho_client.connect.side_effect = _flaky_connect

    assert session.connect() is True

    assert fake_paho_client.connect.call_count == 2
    assert states == [
        ConnectivityState.CONNECTING,
        ConnectivityState.DISCONNECTED,
        ConnectivityState.CONNECTING,
        ConnectivityState.CONNECTED,
    ]


def test_reconnect_resubscribes_full_topic_set(session, fake_paho_client):
    session.subscribe(["a/1", "a/2"])
    _connected(session)
    session._on_disconnect(fake_paho_client, None, {}, 7)
    assert session.state is ConnectivityState.DISCONNECTED

    session._on_connect(fake_paho_client, None, {}, 0)

    subscribed = [c.args[0] for c in fake_paho_client.subscribe.call_args_list]
    assert subscribed == ["a/1", "a/2", "a/1", "a/2"]
    assert session.session_id == 2


def test_subscribe_while_connected_is_immediate(session, fake_paho_client):
    _connected(session)

    session.subscribe(["x/y"])
    session.subscribe(["x/y"])

    fake_paho_client.subscribe.assert_called_once_with("x/y", qos=1)


def test_messages_yields_inbound_in_order(session, fake_paho_client):
    session._on_message(fake_paho_client, None, FakeMQTTMessage("t/1", b"one"))
    session._on_message(fake_paho_client, None, FakeMQTTMessage("t/2", b"two"))

    it = session.messages()
    first, second = next(it), next(it)

    assert (first.topic, first.payload) == ("t/1", b"one")
    assert (second.topic, second.payload) == ("t/2", b"two")
    assert first.received_at <= second.received_at


def test_messages_raises_after_auth_failure(session):
    session._fatal = AuthError("revoked")

    with pytest.raises(AuthError):
        next(session.messages())


def test_publish_waits_for_ack(session, fake_paho_client):
    _connected(session)
    info = _info()
    fake_paho_client.publish.return_value = info

    session.publish("devices/dev-1/results", {"jobId": "j"})

    fake_paho_client.publish.assert_called_with(
        "devices/dev-1/results", payload='{"jobId": "j"}', qos=1, retain=False
    )
    info.wait_for_publish.assert_called_once()


def test_publish_times_out_when_queue_full(session, fake_paho_client):
    _connected(session)
    fake_paho_client.publish.return_value = _info(rc=mqtt.MQTT_ERR_QUEUE_SIZE)

    t0 = time.monotonic()
    with pytest.raises(PublishTimeout):
        session.publish("t", "x", timeout_s=0.2)
    assert time.monotonic() - t0 < 1.0
    assert fake_paho_client.publish.call_count > 1


def test_publish_times_out_when_not_acknowledged(session, fake_paho_client):
    _connected(session)
    fake_paho_client.publish.return_value = _info(published=False)

    with pytest.raises(PublishTimeout):
        session.publish("t", "x", timeout_s=0.1)


def test_publish_while_disconnected_times_out(session, fake_paho_client):
    with pytest.raises(PublishTimeout):
        session.publish("t", "x", timeout_s=0.1)
    fake_paho_client.publish.assert_not_called()


def test_publish_nowait(session, fake_paho_client):
    assert session.publish_nowait("t", "x") is False

    _connected(session)
    fake_paho_client.publish.return_value = _info()
    assert session.publish_nowait("t", {"a": 1}) is True


def test_failing_listener_does_not_block_others(session):
    seen = []

    def bad(state):
        raise RuntimeError("boom")

    session.add_state_listener(bad)
    session.add_state_listener(seen.append)
    _connected(session)

    assert seen == [ConnectivityState.CONNECTED]
