"""
Job executor.

Runs claimed jobs as child processes in their own process group, one
WorkerSlot each, and streams stdout/stderr as sequenced OutputChunks.

Every transition is written to the state store before it is published:
    Pending -> Running -> Completed | Failed | TimedOut | Cancelled

Timeout and cancellation share one signal sequence: SIGTERM to the process
group, kill_grace_s, then SIGKILL. Output still buffered at that point is
discarded.
"""

from __future__ import annotations

import logging
import os
import queue
import signal
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import IO, Callable, Optional

from fika_agent_core.backoff import Backoff, BackoffPolicy
from fika_agent_core.commands import JobRequest
from fika_agent_core.errors import ClaimLost, ExecutionFailure, StoreUnavailable
from fika_agent_core.publisher import ChunkBatcher, OutputChunk, ResultPublisher
from fika_agent_core.state_store import STREAMS, JobRecord, JobState, StateStore

logger = logging.getLogger(__name__)

SLOT_WAIT_REASON = "worker slot wait exceeded timeout"
CANCEL_REQUESTED = "cancelled by request"
CANCEL_SHUTDOWN = "agent shutting down"
CANCEL_CLAIM_LOST = "claim lost"

_POLL_S = 0.05
# undelivered output chunks held per job before the job is failed
MAX_UNDELIVERED_CHUNKS = 256


@dataclass(slots=True)
class WorkerSlot:
    index: int
    job_id: Optional[str] = None
    pid: Optional[int] = None


class WorkerPool:
    """Fixed-size pool of WorkerSlots."""

    def __init__(self, size: int) -> None:
        if size < 1:
            raise ValueError("pool size must be >= 1")
        self.size = size
        self._free: queue.Queue[WorkerSlot] = queue.Queue()
        for i in range(size):
            self._free.put(WorkerSlot(i))

    @property
    def available(self) -> int:
        return self._free.qsize()

    def acquire(self, timeout: float) -> Optional[WorkerSlot]:
        try:
            return self._free.get(timeout=max(0.0, timeout))
        except queue.Empty:
            return None

    def release(self, slot: WorkerSlot) -> None:
        slot.job_id = None
        slot.pid = None
        self._free.put(slot)


@dataclass(slots=True)
class _LocalJob:
    request: JobRequest
    record: JobRecord
    cancelled: threading.Event = field(default_factory=threading.Event)
    cancel_reason: str = CANCEL_REQUESTED
    finished: bool = False
    deadline: Optional[float] = None
    undelivered: deque = field(default_factory=deque)

    def cancel(self, reason: str) -> None:
        if not self.cancelled.is_set():
            self.cancel_reason = reason
            self.cancelled.set()


def _pump_stream(name: str, pipe: IO[bytes], out: "queue.Queue[tuple[str, Optional[bytes]]]", max_bytes: int) -> None:
    try:
        while True:
            data = pipe.read1(max_bytes)  # type: ignore[attr-defined]
            if not data:
                break
            out.put((name, data))
    except (OSError, ValueError) as exc:
        logger.debug("Reader for %s stopped: %s", name, exc)
    finally:
        out.put((name, None))


class JobExecutor:
    def __init__(
        self,
        store: StateStore,
        publisher: ResultPublisher,
        *,
        owner_id: str,
        max_concurrent: int = 4,
        lease_s: float = 30.0,
        kill_grace_s: float = 5.0,
        chunk_max_bytes: int = 4096,
        chunk_flush_interval_s: float = 0.2,
        backoff: BackoffPolicy = BackoffPolicy(),
    ) -> None:
        self.store = store
        self.publisher = publisher
        self.owner_id = owner_id
        self.pool = WorkerPool(max_concurrent)
        self.lease_s = lease_s
        self.kill_grace_s = kill_grace_s
        self.chunk_max_bytes = chunk_max_bytes
        self.chunk_flush_interval_s = chunk_flush_interval_s
        self.backoff = backoff

        self._jobs: dict[str, _LocalJob] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._cond = threading.Condition()
        self._stop = threading.Event()
        self._renewer: Optional[threading.Thread] = None

    # -------------------------
    # Lifecycle
    # -------------------------
    def start(self) -> None:
        if self._renewer is not None:
            return
        self._stop.clear()
        self._renewer = threading.Thread(target=self._renew_loop, name="lease-renewal", daemon=True)
        self._renewer.start()

    def stop(self, *, cancel_running: bool = True, timeout_s: float = 30.0) -> None:
        if cancel_running:
            with self._cond:
                jobs = list(self._jobs.values())
            for job in jobs:
                job.cancel(CANCEL_SHUTDOWN)
        self.wait_idle(timeout_s)
        self._stop.set()
        if self._renewer is not None:
            self._renewer.join(timeout=5.0)
            self._renewer = None

    def active_jobs(self) -> list[str]:
        with self._cond:
            return list(self._jobs)

    def wait_idle(self, timeout_s: Optional[float] = None) -> bool:
        """Block until no job is running locally. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._jobs, timeout=timeout_s)

    # -------------------------
    # Submission / cancellation
    # -------------------------
    def _register(self, request: JobRequest, record: JobRecord) -> _LocalJob:
        job = _LocalJob(request=request, record=record)
        with self._cond:
            self._jobs[request.job_id] = job
        return job

    def _unregister(self, job: _LocalJob) -> None:
        job.finished = True
        with self._cond:
            if self._jobs.get(job.request.job_id) is job:
                del self._jobs[job.request.job_id]
            self._threads.pop(job.request.job_id, None)
            self._cond.notify_all()

    def submit(self, request: JobRequest, record: JobRecord) -> threading.Thread:
        """Run the job on its own thread; cancel() can reach it immediately."""
        job = self._register(request, record)
        thread = threading.Thread(
            target=self._run_registered,
            args=(job,),
            name=f"job-{request.job_id}",
            daemon=True,
        )
        with self._cond:
            self._threads[request.job_id] = thread
        thread.start()
        return thread

    def run(self, request: JobRequest, record: JobRecord) -> JobRecord:
        """Run the job on the calling thread and return its final record."""
        return self._run_registered(self._register(request, record))

    def cancel(self, job_id: str) -> bool:
        """Request cancellation. Best effort; returns False if the job is not running here."""
        with self._cond:
            job = self._jobs.get(job_id)
        if job is None:
            logger.info("Cancel for job %s ignored: not running on this agent", job_id)
            return False
        logger.info("Cancelling job %s", job_id)
        job.cancel(CANCEL_REQUESTED)
        return True

    # -------------------------
    # Execution
    # -------------------------
    def _run_registered(self, job: _LocalJob) -> JobRecord:
        try:
            return self._acquire_and_run(job)
        except ClaimLost as exc:
            logger.warning("Job %s stopped, claim lost: %s", job.request.job_id, exc)
            return job.record
        except StoreUnavailable as exc:
            # store writes were retried for a full lease; the record stays
            # non-terminal and becomes reclaimable once its lease expires
            logger.error("Job %s abandoned, state store unavailable: %s", job.request.job_id, exc)
            return job.record
        except Exception:
            logger.exception("Job %s crashed in executor", job.request.job_id)
            return job.record
        finally:
            self._unregister(job)

    def _acquire_and_run(self, job: _LocalJob) -> JobRecord:
        timeout_s = job.request.command.timeout_seconds
        deadline = time.monotonic() + timeout_s
        slot: Optional[WorkerSlot] = None
        while slot is None:
            if job.cancelled.is_set():
                return self._cancelled(job)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("Job %s: no worker slot within %ds", job.request.job_id, timeout_s)
                return self._finish(job, JobState.TIMED_OUT, reason=SLOT_WAIT_REASON)
            slot = self.pool.acquire(timeout=min(remaining, _POLL_S))

        slot.job_id = job.request.job_id
        try:
            return self._execute(job, slot)
        finally:
            self.pool.release(slot)

    @staticmethod
    def _spawn(job: _LocalJob) -> subprocess.Popen:
        cmd = job.request.command
        try:
            return subprocess.Popen(
                cmd.argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env={**os.environ, **cmd.env},
                cwd=cmd.cwd,
                start_new_session=True,
            )
        except OSError as exc:
            raise ExecutionFailure(f"spawn failed: {exc}") from exc

    def _execute(self, job: _LocalJob, slot: WorkerSlot) -> JobRecord:
        request = job.request
        cmd = request.command

        try:
            proc = self._spawn(job)
        except ExecutionFailure as exc:
            logger.warning("Job %s (%s): %s", request.job_id, cmd.exec, exc)
            return self._finish(job, JobState.FAILED, reason=str(exc))

        # execution time counts from spawn, whatever the broker is doing
        job.deadline = time.monotonic() + cmd.timeout_seconds
        slot.pid = proc.pid
        logger.info("Job %s started pid=%d slot=%d: %s", request.job_id, proc.pid, slot.index, cmd.argv)

        started = time.time()

        def _running(rec: JobRecord) -> None:
            rec.state = JobState.RUNNING
            rec.started_at = started

        try:
            self._update(job, _running)
        except (ClaimLost, StoreUnavailable):
            self._terminate(proc)
            raise
        self.publisher.publish_running(job.record, deadline=job.deadline)

        try:
            outcome = self._stream_until_exit(job, proc)
        except ExecutionFailure as exc:
            logger.error("Job %s failed: %s", request.job_id, exc)
            return self._finish(job, JobState.FAILED, reason=str(exc))

        if outcome == "timeout":
            return self._finish(
                job,
                JobState.TIMED_OUT,
                reason=f"exceeded timeout of {cmd.timeout_seconds}s",
            )
        if outcome == "cancel":
            return self._cancelled(job)

        if not self._deliver(job, deadline=None):
            logger.error(
                "Job %s: %d output chunk(s) never delivered, from %s seq=%d",
                request.job_id,
                len(job.undelivered),
                job.undelivered[0].stream,
                job.undelivered[0].seq,
            )

        code = proc.returncode
        if code == 0:
            return self._finish(job, JobState.COMPLETED, exit_code=0)
        if code < 0:
            return self._finish(job, JobState.FAILED, exit_code=code, reason=f"terminated by signal {-code}")
        return self._finish(job, JobState.FAILED, exit_code=code)

    def _stream_until_exit(self, job: _LocalJob, proc: subprocess.Popen) -> str:
        """
        Forward output until the process exits ("exit"), job.deadline passes
        ("timeout") or the job is cancelled ("cancel"). On timeout/cancel the
        process group is terminated and pending output discarded.
        """
        chunks: queue.Queue[tuple[str, Optional[bytes]]] = queue.Queue()
        readers = [
            threading.Thread(
                target=_pump_stream,
                args=(name, pipe, chunks, self.chunk_max_bytes),
                name=f"job-{job.request.job_id}-{name}",
                daemon=True,
            )
            for name, pipe in zip(STREAMS, (proc.stdout, proc.stderr))
        ]
        for r in readers:
            r.start()

        batcher = ChunkBatcher(max_bytes=self.chunk_max_bytes, flush_interval_s=self.chunk_flush_interval_s)
        open_streams = set(STREAMS)
        outcome = "exit"
        exited = False
        try:
            while True:
                if job.cancelled.is_set():
                    outcome = "cancel"
                    break
                if time.monotonic() >= job.deadline:
                    outcome = "timeout"
                    break

                if open_streams:
                    try:
                        name, data = chunks.get(timeout=_POLL_S)
                    except queue.Empty:
                        pass
                    else:
                        if data is None:
                            open_streams.discard(name)
                        else:
                            self._emit(job, batcher.add(name, data))
                    self._emit(job, batcher.due())
                    continue

                # both streams closed; the process may still be running
                self._emit(job, batcher.flush())
                try:
                    proc.wait(timeout=_POLL_S)
                except subprocess.TimeoutExpired:
                    continue
                exited = True
                break

            if outcome != "exit":
                batcher.discard()
                job.undelivered.clear()
                logger.warning(
                    "Job %s: %s, terminating process group %d",
                    job.request.job_id,
                    "timeout" if outcome == "timeout" else job.cancel_reason,
                    proc.pid,
                )
        finally:
            if not exited:
                # also covers store/publish errors raised mid-stream
                self._terminate(proc)
            self._release_pipes(job, proc, readers)
        return outcome

    def _release_pipes(self, job: _LocalJob, proc: subprocess.Popen, readers: list[threading.Thread]) -> None:
        for r in readers:
            r.join(timeout=1.0)
        for r, pipe in zip(readers, (proc.stdout, proc.stderr)):
            if r.is_alive():
                # held open outside the process group; close() would block on the reader
                logger.warning("Job %s: %s still open, leaving its reader attached", job.request.job_id, r.name)
            elif pipe is not None:
                pipe.close()

    def _emit(self, job: _LocalJob, pieces: list[tuple[str, bytes]]) -> None:
        for stream, data in pieces:
            seq = job.record.next_seq[stream]
            end = job.record.output_offset + len(data)

            def _advance(rec: JobRecord, stream: str = stream, seq: int = seq, end: int = end) -> None:
                rec.next_seq[stream] = seq + 1
                rec.output_offset = end

            self._update(job, _advance)
            job.undelivered.append(OutputChunk(job.request.job_id, stream, seq, data))

        self._deliver(job, deadline=job.deadline)
        if len(job.undelivered) > MAX_UNDELIVERED_CHUNKS:
            raise ExecutionFailure(f"{len(job.undelivered)} output chunks could not be delivered")

    def _deliver(self, job: _LocalJob, *, deadline: Optional[float]) -> bool:
        """
        Publish held chunks oldest first. Stops at the first failure so a
        later sequence number never overtakes an undelivered one.
        """
        while job.undelivered:
            if not self.publisher.publish_chunk(job.undelivered[0], deadline=deadline):
                return False
            job.undelivered.popleft()
        return True

    def _update(self, job: _LocalJob, mutate: Callable[[JobRecord], None]) -> JobRecord:
        """
        Write through the store. StoreUnavailable is retried with backoff for
        up to one lease period; ClaimLost is not retried.
        """
        give_up = time.monotonic() + self.lease_s
        backoff = Backoff(self.backoff)
        while True:
            try:
                job.record = self.store.update(job.request.job_id, self.owner_id, mutate)
                return job.record
            except StoreUnavailable as exc:
                delay = backoff.next_delay()
                if time.monotonic() + delay >= give_up:
                    raise
                logger.warning(
                    "Store write for job %s failed (%s); retrying in %.2fs",
                    job.request.job_id,
                    exc,
                    delay,
                )
                time.sleep(delay)

    def _terminate(self, proc: subprocess.Popen) -> None:
        """SIGTERM the whole process group, SIGKILL whatever is left after kill_grace_s."""
        self._signal_group(proc, signal.SIGTERM)
        deadline = time.monotonic() + self.kill_grace_s
        while self._group_alive(proc):
            if time.monotonic() >= deadline:
                logger.warning(
                    "process group %d ignored SIGTERM for %.1fs; sending SIGKILL",
                    proc.pid,
                    self.kill_grace_s,
                )
                self._signal_group(proc, signal.SIGKILL)
                break
            time.sleep(_POLL_S)
        proc.wait()

    @staticmethod
    def _group_alive(proc: subprocess.Popen) -> bool:
        proc.poll()  # reap the leader; a zombie still counts as a group member
        try:
            os.killpg(proc.pid, 0)
        except ProcessLookupError:
            return False
        return True

    @staticmethod
    def _signal_group(proc: subprocess.Popen, sig: signal.Signals) -> None:
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            logger.debug("process group %d already gone", proc.pid)

    # -------------------------
    # Terminal transitions
    # -------------------------
    def _cancelled(self, job: _LocalJob) -> JobRecord:
        if job.cancel_reason == CANCEL_CLAIM_LOST:
            raise ClaimLost(f"job {job.request.job_id} was reclaimed by another instance")
        return self._finish(job, JobState.CANCELLED, reason=job.cancel_reason)

    def _finish(
        self,
        job: _LocalJob,
        state: JobState,
        *,
        exit_code: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> JobRecord:
        ended = time.time()

        def _terminal(rec: JobRecord) -> None:
            rec.state = state
            rec.ended_at = ended
            rec.exit_code = exit_code
            rec.reason = reason

        self._update(job, _terminal)
        logger.info(
            "Job %s finished state=%s exit_code=%s",
            job.request.job_id,
            state.value,
            exit_code,
        )
        self.publisher.publish_result(job.record)
        return job.record

    # -------------------------
    # Lease renewal
    # -------------------------
    def renew_leases(self) -> None:
        with self._cond:
            jobs = [j for j in self._jobs.values() if not j.finished]
        for job in jobs:
            job_id = job.request.job_id
            try:
                self.store.renew(job_id, self.owner_id, self.lease_s)
            except ClaimLost as exc:
                logger.warning("Lease for job %s lost: %s", job_id, exc)
                job.cancel(CANCEL_CLAIM_LOST)
            except StoreUnavailable as exc:
                logger.warning("Lease renewal for job %s failed: %s", job_id, exc)

    def _renew_loop(self) -> None:
        interval = max(self.lease_s / 3.0, _POLL_S)
        while not self._stop.wait(timeout=interval):
            try:
                self.renew_leases()
            except Exception:
                logger.exception("Lease renewal pass failed")
