from __future__ import annotations

import threading
from unittest.mock import MagicMock

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from fika_agent_core.errors import ClaimLost, StoreUnavailable
from fika_agent_core.state_store import AlreadyClaimed, Claimed, JobRecord, JobState, StateStore


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def clocked_store(redis_client, clock):
    return StateStore(redis_client, terminal_ttl_s=3600, history_limit=3, clock=clock)


def _finish(state, exit_code=None):
    def _m(rec: JobRecord) -> None:
        rec.state = state
        rec.exit_code = exit_code
    return _m


def test_first_claim_creates_pending_record(store):
    result = store.try_claim("job-1", "agent-a", 30)

    assert isinstance(result, Claimed)
    assert result.record.state is JobState.PENDING
    assert result.record.owner == "agent-a"
    assert result.record.attempts == 1
    assert result.record.next_seq == {"stdout": 0, "stderr": 0}

    stored = store.get("job-1")
    assert stored is not None
    assert stored.owner == "agent-a"


def test_get_unknown_returns_none(store):
    assert store.get("missing") is None


def test_second_claim_while_leased_returns_existing(store):
    store.try_claim("job-1", "agent-a", 30)

    result = store.try_claim("job-1", "agent-b", 30)

    assert isinstance(result, AlreadyClaimed)
    assert result.existing.owner == "agent-a"


def test_concurrent_claims_have_single_winner(redis_server):
    winners = []
    barrier = threading.Barrier(8)

    def worker(i):
        s = StateStore(fakeredis.FakeRedis(server=redis_server))
        barrier.wait()
        if isinstance(s.try_claim("job-race", f"agent-{i}", 30), Claimed):
            winners.append(i)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(winners) == 1


def test_expired_lease_can_be_reclaimed_and_keeps_progress(clocked_store, clock):
    clocked_store.try_claim("job-1", "agent-a", 30)

    def _progress(rec):
        rec.state = JobState.RUNNING
        rec.next_seq["stdout"] = 4
        rec.output_offset = 99

    clocked_store.update("job-1", "agent-a", _progress)

    clock.now += 31
    result = clocked_store.try_claim("job-1", "agent-b", 30)

    assert isinstance(result, Claimed)
    assert result.record.owner == "agent-b"
    assert result.record.state is JobState.PENDING
    assert result.record.attempts == 2
    assert result.record.next_seq["stdout"] == 4
    assert result.record.output_offset == 99


def test_terminal_record_is_never_reclaimed(clocked_store, clock):
    clocked_store.try_claim("job-1", "agent-a", 30)
    clocked_store.update("job-1", "agent-a", _finish(JobState.COMPLETED, 0))

    clock.now += 10_000
    result = clocked_store.try_claim("job-1", "agent-b", 30)

    assert isinstance(result, AlreadyClaimed)
    assert result.existing.state is JobState.COMPLETED
    assert result.existing.exit_code == 0


def test_update_by_non_owner_raises_claim_lost(store):
    store.try_claim("job-1", "agent-a", 30)

    with pytest.raises(ClaimLost):
        store.update("job-1", "agent-b", _finish(JobState.FAILED, 1))

    assert store.get("job-1").state is JobState.PENDING


def test_update_missing_record_raises_claim_lost(store):
    with pytest.raises(ClaimLost):
        store.update("ghost", "agent-a", _finish(JobState.FAILED))


def test_terminal_update_sets_ttl_and_history(clocked_store, redis_client):
    for i in range(5):
        job = f"job-{i}"
        clocked_store.try_claim(job, "agent-a", 30)
        clocked_store.update(job, "agent-a", _finish(JobState.COMPLETED, 0))

    ttl = redis_client.ttl(StateStore.key("job-4"))
    assert 0 < ttl <= 3600
    # capped at history_limit, newest first
    assert clocked_store.history(10) == ["job-4", "job-3", "job-2"]


def test_non_terminal_update_has_no_ttl(store, redis_client):
    store.try_claim("job-1", "agent-a", 30)

    assert redis_client.ttl(StateStore.key("job-1")) == -1


def test_renew_extends_lease(clocked_store, clock):
    first = clocked_store.try_claim("job-1", "agent-a", 30).record
    clock.now += 20

    renewed = clocked_store.renew("job-1", "agent-a", 30)

    assert renewed.lease_expires_at == first.lease_expires_at + 20


def test_record_json_round_trip():
    rec = JobRecord(job_id="j", state=JobState.TIMED_OUT, owner="o", lease_expires_at=1.0, claimed_at=0.5, reason="slow")

    back = JobRecord.from_json(rec.to_json())

    assert back == rec


def test_connection_errors_map_to_store_unavailable():
    client = MagicMock()
    client.get.side_effect = RedisConnectionError("down")
    client.ping.side_effect = RedisConnectionError("down")
    client.pipeline.side_effect = RedisConnectionError("down")
    s = StateStore(client)

    with pytest.raises(StoreUnavailable):
        s.get("job-1")
    with pytest.raises(StoreUnavailable):
        s.ping()
    with pytest.raises(StoreUnavailable):
        s.try_claim("job-1", "agent-a", 30)
