from __future__ import annotations

import json
import time
from unittest.mock import MagicMock

import pytest

from fika_agent_core.backoff import BackoffPolicy
from fika_agent_core.commands import AllowListPolicy
from fika_agent_core.dispatcher import CommandDispatcher
from fika_agent_core.errors import StoreUnavailable
from fika_agent_core.publisher import ResultPublisher
from fika_agent_core.session import ConnectivityState, InboundMessage
from fika_agent_core.state_store import JobState

FAST = BackoffPolicy(base_delay=0.01, factor=2.0, max_delay=0.05, jitter=0.0)


class FlakyStore:
    """Delegates to a real store, failing with StoreUnavailable while `down`."""

    def __init__(self, inner, down=False):
        self.inner = inner
        self.down = down
        self.pings = 0

    def try_claim(self, *a, **k):
        if self.down:
            raise StoreUnavailable("connection refused")
        return self.inner.try_claim(*a, **k)

    def ping(self):
        self.pings += 1
        if self.down:
            raise StoreUnavailable("connection refused")

    def __getattr__(self, name):
        return getattr(self.inner, name)


def _msg(topic, payload):
    raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    return InboundMessage(topic=topic, payload=raw, received_at=time.time(), session_id=1)


def _command(job_id, exe="echo"):
    return {"jobId": job_id, "exec": exe, "args": ["hi"], "timeoutSeconds": 5}


@pytest.fixture
def executor():
    return MagicMock()


@pytest.fixture
def publisher(fake_session, store, topics):
    return ResultPublisher(fake_session, store, topics, owner_id="agent-a", backoff=FAST, max_retries=0)


def _dispatcher(store, executor, publisher, topics, **kw):
    kw.setdefault("connected", True)
    return CommandDispatcher(
        store,
        executor,
        publisher,
        topics,
        AllowListPolicy(["echo"]),
        owner_id="agent-a",
        lease_s=30,
        backoff=FAST,
        **kw,
    )


@pytest.fixture
def dispatcher(store, executor, publisher, topics):
    d = _dispatcher(store, executor, publisher, topics)
    d.start()
    yield d
    d.stop()


def _submitted(executor):
    return [c.args[0].job_id for c in executor.submit.call_args_list]


def test_valid_command_is_claimed_and_submitted(dispatcher, executor, store, topics):
    dispatcher.on_message(_msg(topics.commands(), _command("job-1")))
    assert dispatcher.wait_idle(5)

    assert _submitted(executor) == ["job-1"]
    request, record = executor.submit.call_args.args
    assert request.command.argv == ["echo", "hi"]
    assert record.owner == "agent-a"
    assert store.get("job-1").state is JobState.PENDING
    assert dispatcher.admitted == 1


def test_missing_job_id_rejected_without_store_entry(dispatcher, executor, fake_session, topics, redis_client):
    payload = _command("x")
    del payload["jobId"]
    dispatcher.on_message(_msg(topics.commands(), payload))
    assert dispatcher.wait_idle(5)

    assert fake_session.messages_on(topics.results()) == [
        {"jobId": "", "state": "Rejected", "reason": "MalformedRequest"}
    ]
    assert redis_client.keys("job:*") == []
    executor.submit.assert_not_called()


def test_policy_violation_rejected_without_claim(dispatcher, executor, fake_session, topics, redis_client):
    dispatcher.on_message(_msg(topics.commands(), _command("job-rm", exe="rm")))
    assert dispatcher.wait_idle(5)

    assert fake_session.messages_on(topics.results()) == [
        {"jobId": "job-rm", "state": "Rejected", "reason": "PolicyViolation"}
    ]
    assert redis_client.keys("job:*") == []
    executor.submit.assert_not_called()


def test_non_utf8_payload_rejected(dispatcher, fake_session, topics):
    dispatcher.on_message(_msg(topics.commands(), b"\xff\xfe"))
    assert dispatcher.wait_idle(5)

    (result,) = fake_session.messages_on(topics.results())
    assert result["reason"] == "MalformedRequest"


def test_redelivery_while_in_flight_runs_once(dispatcher, executor, fake_session, topics):
    for _ in range(3):
        dispatcher.on_message(_msg(topics.commands(), _command("job-dup")))
    assert dispatcher.wait_idle(5)

    assert _submitted(executor) == ["job-dup"]
    assert fake_session.messages_on(topics.results()) == []


def test_redelivery_after_terminal_republishes_result(dispatcher, executor, fake_session, store, topics):
    store.try_claim("job-done", "agent-a", 30)

    def _done(rec):
        rec.state = JobState.COMPLETED
        rec.exit_code = 0

    store.update("job-done", "agent-a", _done)

    dispatcher.on_message(_msg(topics.commands(), _command("job-done")))
    assert dispatcher.wait_idle(5)

    executor.submit.assert_not_called()
    assert fake_session.messages_on(topics.results()) == [
        {"jobId": "job-done", "state": "Completed", "exitCode": 0}
    ]


def test_cancel_topic_routes_to_executor(dispatcher, executor, topics):
    dispatcher.on_message(_msg(topics.commands_cancel(), {"jobId": "job-1"}))
    dispatcher.on_message(_msg(topics.commands_cancel(), {"nope": 1}))
    assert dispatcher.wait_idle(5)

    executor.cancel.assert_called_once_with("job-1")


def test_buffered_while_disconnected_then_admitted_in_order(store, executor, publisher, topics):
    d = _dispatcher(store, executor, publisher, topics, connected=False)
    d.start()
    try:
        for i in range(3):
            d.on_message(_msg(topics.commands(), _command(f"job-{i}")))
        time.sleep(0.2)
        assert d.paused
        assert d.buffered == 3
        executor.submit.assert_not_called()

        d.on_connectivity_change(ConnectivityState.CONNECTED)
        assert d.wait_idle(5)
        assert _submitted(executor) == ["job-0", "job-1", "job-2"]
    finally:
        d.stop()


def test_store_outage_pauses_and_resumes_in_order(store, executor, publisher, topics):
    flaky = FlakyStore(store, down=True)
    d = _dispatcher(flaky, executor, publisher, topics)
    d.start()
    try:
        for i in range(3):
            d.on_message(_msg(topics.commands(), _command(f"job-{i}")))
        time.sleep(0.3)
        assert d.paused
        assert flaky.pings >= 1
        executor.submit.assert_not_called()

        flaky.down = False
        assert d.wait_idle(5)
        assert not d.paused
        assert _submitted(executor) == ["job-0", "job-1", "job-2"]
    finally:
        d.stop()


def test_backpressure_drops_oldest(store, executor, publisher, topics):
    d = _dispatcher(store, executor, publisher, topics, connected=False, buffer_size=2)
    d.start()
    try:
        for i in range(3):
            d.on_message(_msg(topics.commands(), _command(f"job-{i}")))

        assert d.backpressure_drops == 1
        assert d.buffered == 2

        d.on_connectivity_change(ConnectivityState.CONNECTED)
        assert d.wait_idle(5)
        assert _submitted(executor) == ["job-1", "job-2"]
    finally:
        d.stop()


def test_disconnect_pauses_admission(dispatcher, executor, topics):
    dispatcher.on_connectivity_change(ConnectivityState.CONNECTING)
    dispatcher.on_message(_msg(topics.commands(), _command("job-late")))
    time.sleep(0.1)

    executor.submit.assert_not_called()
    dispatcher.on_connectivity_change(ConnectivityState.CONNECTED)
    assert dispatcher.wait_idle(5)
    assert _submitted(executor) == ["job-late"]
