import json
import logging
from enum import Enum
from threading import Lock, Timer
from time import time
from typing import Callable

import botocore.exceptions

from .errors import MergeConflictException
from .s3 import S3Client

logger = logging.getLogger(__name__)

ClockType = Callable[[], int]


def now_ms() -> int:
    return round(time() * 1000)


class JobStatus(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMMITTED = "committed"


class JobHealth(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILED = "failed"


class RunStats:
    """
    Outcome of one job run. `end_ms` is the watermark the run committed.
    """
    job: str
    start_ms: int
    end_ms: int
    rows_in: int
    rows_out: int
    skipped: int
    failed: int
    degraded: bool
    duration_ms: int

    def __init__(self, job: str, start_ms: int, end_ms: int, rows_in: int = 0, rows_out: int = 0, skipped: int = 0,
                 failed: int = 0, degraded: bool = False):
        self.job = job
        self.start_ms = start_ms
        self.end_ms = end_ms
        self.rows_in = rows_in
        self.rows_out = rows_out
        self.skipped = skipped
        self.failed = failed
        self.degraded = degraded
        self.duration_ms = 0

    def dict(self) -> dict:
        return {
            "start_ms": self.start_ms,
            "end_ms": self.end_ms,
            "rows_in": self.rows_in,
            "rows_out": self.rows_out,
            "skipped": self.skipped,
            "failed": self.failed,
            "degraded": self.degraded,
            "duration_ms": self.duration_ms,
        }

    def __repr__(self):
        return f"RunStats({self.job}, {json.dumps(self.dict())})"


class JobState:
    """
    What a job persists between runs. A job without persisted state starts from the beginning (watermark 0).
    """
    name: str
    watermark: int
    health: JobHealth
    last_run: dict | None
    last_error: str | None
    extra: dict

    def __init__(self, name: str, watermark: int = 0, health: JobHealth = JobHealth.HEALTHY, last_run: dict = None,
                 last_error: str = None, extra: dict = None):
        self.name = name
        self.watermark = watermark
        self.health = health
        self.last_run = last_run
        self.last_error = last_error
        self.extra = extra if extra is not None else {}

    def toJSON(self) -> str:
        return json.dumps({
            "n": self.name,
            "w": self.watermark,
            "h": self.health.value,
            "r": self.last_run,
            "e": self.last_error,
            "x": self.extra,
        })

    def __repr__(self):
        return self.toJSON()


def JobStateFromJSON(d: dict) -> JobState:
    return JobState(d["n"], int(d["w"]), JobHealth(d["h"]), d.get("r"), d.get("e"), d.get("x") or {})


class JobStateStore:
    """
    Persists job state as one JSON object per job under `<prefix>/_jobs/`
    """
    s3c: S3Client

    def __init__(self, s3c: S3Client):
        self.s3c = s3c

    def key(self, name: str) -> str:
        return self.s3c.key('_jobs', name + '.json')

    def load(self, name: str) -> JobState:
        try:
            body = self.s3c.get_bytes(self.key(name))
        except botocore.exceptions.ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                return JobState(name)
            raise
        return JobStateFromJSON(json.loads(body))

    def save(self, state: JobState):
        self.s3c.put_bytes(self.key(state.name), bytes(state.toJSON(), "utf-8"))

    def delete(self, name: str):
        self.s3c.delete(self.key(name))


class Job:
    """
    A periodically triggered unit of work over commit-time windows.

    A run moves IDLE -> RUNNING(start, end) -> COMMITTED -> IDLE. The window starts at the persisted watermark and
    ends at `window_end`; the watermark only advances after `process` returned, so a run that fails or is killed
    is redone from the same watermark by the next run. Only one run of a job is in flight at a time.
    """
    name: str
    interval_sec: float
    commit_settle_ms: int
    store: JobStateStore
    clock: ClockType
    status: JobStatus

    def __init__(self, name: str, store: JobStateStore, interval_sec: float = 60, commit_settle_ms: int = 5000,
                 clock: ClockType = now_ms):
        self.name = name
        self.store = store
        self.interval_sec = interval_sec
        self.commit_settle_ms = commit_settle_ms
        self.clock = clock
        self.status = JobStatus.IDLE
        self._lock = Lock()
        self._window: tuple[int, int] | None = None

    def process(self, state: JobState, start_ms: int, end_ms: int) -> RunStats:
        raise NotImplementedError

    def window_start(self, watermark: int) -> int:
        return watermark

    def window_end(self, now: int) -> int:
        """
        Commits younger than the settle time may still be in flight, so they belong to the next window
        """
        return now - self.commit_settle_ms

    def watermark(self) -> int:
        return self.store.load(self.name).watermark

    def state(self) -> JobState:
        return self.store.load(self.name)

    @property
    def window(self) -> tuple[int, int] | None:
        return self._window

    def run_once(self, block: bool = False) -> RunStats | None:
        """
        Runs the job over its next window. Returns None when another run of the same job is in flight
        (or raises MergeConflictException if `block` is set and the lock can't be taken).
        """
        if not self._lock.acquire(blocking=False):
            if block:
                raise MergeConflictException(self.name)
            logger.warning("job %s is still running, skipping this run", self.name)
            return None
        try:
            return self._run()
        finally:
            self._window = None
            self.status = JobStatus.IDLE
            self._lock.release()

    def wait(self, timeout: float = None) -> bool:
        """
        Blocks until no run of this job is in flight. Returns False if `timeout` seconds passed first.
        """
        if not self._lock.acquire(timeout=timeout if timeout is not None else -1):
            return False
        self._lock.release()
        return True

    def _run(self) -> RunStats:
        s = self.clock()
        state = self.store.load(self.name)
        start = self.window_start(state.watermark)
        end = self.window_end(s)
        if end <= state.watermark:
            return RunStats(self.name, start, state.watermark)

        self.status = JobStatus.RUNNING
        self._window = (start, end)
        logger.debug("job %s running window (%d, %d]", self.name, start, end)
        try:
            stats = self.process(state, start, end)
        except Exception as e:
            state.health = JobHealth.FAILED
            state.last_error = str(e)
            self.store.save(state)
            logger.error("job %s failed on window (%d, %d]: %s", self.name, start, end, e)
            raise

        stats.duration_ms = self.clock() - s
        state.watermark = max(state.watermark, stats.end_ms)
        state.health = JobHealth.DEGRADED if stats.degraded else JobHealth.HEALTHY
        state.last_run = stats.dict()
        state.last_error = None if not stats.degraded else state.last_error
        self.store.save(state)
        self.status = JobStatus.COMMITTED
        if stats.degraded:
            logger.error("job %s is degraded: %d failed, %d skipped", self.name, stats.failed, stats.skipped)
        logger.info("job %s committed watermark %d: %d rows in, %d rows out", self.name, state.watermark,
                    stats.rows_in, stats.rows_out)
        return stats

    def drop(self):
        """
        Deletes the persisted state, the next run starts from the beginning
        """
        self.store.delete(self.name)
        logger.info("dropped job %s", self.name)


class JobScheduler(object):
    """
    Runs each job every `interval_sec` on its own timer. The next run is only scheduled once the previous one
    finished, so a run that overruns its interval makes the job skip ticks instead of overlapping with itself.

    Adapted from https://stackoverflow.com/questions/3393612/run-certain-code-every-n-seconds
    """

    def __init__(self, jobs: list[Job]):
        self.jobs = jobs
        self._timers: dict[str, Timer] = {}
        self._timers_lock = Lock()
        self.is_running = False

    def _schedule(self, job: Job):
        with self._timers_lock:
            if not self.is_running:
                return
            timer = Timer(job.interval_sec, self._tick, [job])
            timer.daemon = True
            self._timers[job.name] = timer
            timer.start()

    def _tick(self, job: Job):
        try:
            job.run_once()
        except Exception:
            # the failure is recorded in the job's state, keep the schedule alive
            logger.exception("caught exception running job %s", job.name)
        finally:
            self._schedule(job)

    def start(self):
        if self.is_running:
            return
        self.is_running = True
        for job in self.jobs:
            self._schedule(job)

    def stop(self):
        """
        Cancels the pending timers and waits for runs already in flight to finish
        """
        with self._timers_lock:
            self.is_running = False
            for timer in self._timers.values():
                timer.cancel()
            self._timers = {}
        for job in self.jobs:
            job.wait()
