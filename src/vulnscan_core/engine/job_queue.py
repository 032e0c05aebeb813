# src/vulnscan_core/engine/job_queue.py
"""
JobQueue: database-backed job queue with a bounded pool of worker threads.

Jobs are claimed in priority order (lower number first), FIFO within a
priority. A job is claimed by exactly one worker through a conditional
UPDATE, and no two jobs for the same scan are active at once. Failed jobs are
retried with exponential backoff until their attempts run out.
"""

import logging
import threading
import time
import uuid
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from vulnscan_core.config import QueueSettings
from vulnscan_core.engine.errors import UnrecoverableJobError
from vulnscan_core.engine.models import JobState, ScanJob, utcnow

logger = logging.getLogger(__name__)

Handler = Callable[[dict, Callable[[int], None]], Optional[dict]]


def _ts(value):
    return str(value) if value else None


class JobQueue:
    def __init__(self, session_factory, handler: Handler, settings: Optional[QueueSettings] = None,
                 on_failed: Optional[Callable[[dict, str], None]] = None, name: str = "scan-processing"):
        self.session_factory = session_factory
        self.handler = handler
        self.settings = settings or QueueSettings()
        self.on_failed = on_failed
        self.name = name
        self.instance_id = uuid.uuid4().hex[:8]
        self._cond = threading.Condition()
        self._claim_lock = threading.Lock()
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(self, payload: dict, priority: int = 0, delay: float = 0) -> str:
        job = ScanJob(
            scan_id=payload.get("scan_id"),
            payload=payload,
            priority=int(priority or 0),
            state=JobState.WAITING.value,
            max_attempts=self.settings.attempts,
            available_at=utcnow() + timedelta(seconds=max(0, delay or 0)),
        )
        db = self.session_factory()
        try:
            db.add(job)
            db.commit()
            job_id = job.job_id
        finally:
            db.close()
        logger.info(f"[job_id={job_id}] Job added to queue {self.name}. scan_id={job.scan_id} priority={job.priority} delay={delay}")
        with self._cond:
            self._cond.notify_all()
        return job_id

    def get_status(self, job_id: str) -> Optional[dict]:
        db = self.session_factory()
        try:
            job = db.query(ScanJob).filter(ScanJob.job_id == job_id).first()
        finally:
            db.close()
        if job is None:
            return None
        return {
            "job_id": job.job_id,
            "scan_id": job.scan_id,
            "state": job.state,
            "progress": job.progress,
            "data": job.payload,
            "priority": job.priority,
            "attempts_made": job.attempts_made,
            "max_attempts": job.max_attempts,
            "result": job.result,
            "error": job.failed_reason,
            "created_at": _ts(job.created_at),
            "available_at": _ts(job.available_at),
            "processed_on": _ts(job.processed_on),
            "finished_on": _ts(job.finished_on),
        }

    def stats(self) -> Dict[str, int]:
        db = self.session_factory()
        try:
            counts = dict(db.query(ScanJob.state, func.count(ScanJob.id)).group_by(ScanJob.state).all())
            delayed = (
                db.query(func.count(ScanJob.id))
                .filter(ScanJob.state == JobState.WAITING.value)
                .filter(ScanJob.available_at > utcnow())
                .scalar()
            )
        finally:
            db.close()
        stats = {state.value: counts.get(state.value, 0) for state in JobState}
        stats["delayed"] = delayed or 0
        stats["total"] = sum(counts.values())
        return stats

    def busy_scan_ids(self) -> set:
        """Scan ids that still have a waiting or active job."""
        db = self.session_factory()
        try:
            rows = (
                db.query(ScanJob.scan_id)
                .filter(ScanJob.state.in_([JobState.WAITING.value, JobState.ACTIVE.value]))
                .filter(ScanJob.scan_id.isnot(None))
                .distinct()
                .all()
            )
        finally:
            db.close()
        return {row.scan_id for row in rows}

    def backoff_delay(self, attempts_made: int) -> float:
        return self.settings.backoff_base * (2 ** max(0, attempts_made - 1))

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self):
        if self.running:
            return
        self.recover_stalled(orphaned=True)
        self._stop.clear()
        self._threads = []
        for i in range(self.settings.concurrency):
            worker_name = f"{self.instance_id}-worker-{i + 1}"
            thread = threading.Thread(target=self._worker_loop, args=(worker_name,), name=worker_name, daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(f"Queue {self.name} started with {self.settings.concurrency} workers")

    def stop(self, wait: bool = True, timeout: Optional[float] = None):
        self._stop.set()
        with self._cond:
            self._cond.notify_all()
        if wait:
            for thread in self._threads:
                thread.join(timeout)
        logger.info(f"Queue {self.name} stopped")

    def wait_until_idle(self, timeout: float = 30.0) -> bool:
        """Block until no job is waiting or active. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            stats = self.stats()
            if stats[JobState.WAITING.value] == 0 and stats[JobState.ACTIVE.value] == 0:
                return True
            time.sleep(min(self.settings.poll_interval, 0.05))
        return False

    def _worker_loop(self, worker_name: str):
        while not self._stop.is_set():
            try:
                job = self._claim_next(worker_name)
            except SQLAlchemyError as e:
                logger.error(f"[worker={worker_name}] Could not claim job: {e}")
                self._stop.wait(self.settings.poll_interval)
                continue
            if job is None:
                with self._cond:
                    self._cond.wait(timeout=self.settings.poll_interval)
                continue
            try:
                self._process(job, worker_name)
            except Exception:
                logger.exception(f"[job_id={job['job_id']}] Could not record job outcome, returning it to the queue")
                self._release(job)

    def _release(self, job: dict):
        """Put a job this worker still holds back to waiting after a failed state write."""
        job_id = job["job_id"]
        delay = self.backoff_delay(job["attempts_made"])
        db = self.session_factory()
        try:
            db.execute(
                update(ScanJob)
                .where(ScanJob.job_id == job_id)
                .where(ScanJob.state == JobState.ACTIVE.value)
                .values(
                    state=JobState.WAITING.value,
                    available_at=utcnow() + timedelta(seconds=delay),
                    claimed_by=None,
                )
            )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            # left active; recover_stalled picks it up once the heartbeat is stale
            logger.exception(f"[job_id={job_id}] Could not return job to the queue")
        finally:
            db.close()
        with self._cond:
            self._cond.notify_all()

    def _claim_next(self, worker_name: str) -> Optional[dict]:
        with self._claim_lock:
            db = self.session_factory()
            try:
                now = utcnow()
                active_scans = (
                    select(ScanJob.scan_id)
                    .where(ScanJob.state == JobState.ACTIVE.value)
                    .where(ScanJob.scan_id.isnot(None))
                )
                candidates = (
                    db.query(ScanJob.id)
                    .filter(ScanJob.state == JobState.WAITING.value)
                    .filter(ScanJob.available_at <= now)
                    .filter(or_(ScanJob.scan_id.is_(None), ScanJob.scan_id.notin_(active_scans)))
                    .order_by(ScanJob.priority.asc(), ScanJob.id.asc())
                    .limit(10)
                    .all()
                )
                for candidate in candidates:
                    result = db.execute(
                        update(ScanJob)
                        .where(ScanJob.id == candidate.id)
                        .where(ScanJob.state == JobState.WAITING.value)
                        .values(
                            state=JobState.ACTIVE.value,
                            claimed_by=worker_name,
                            heartbeat_at=now,
                            processed_on=now,
                            attempts_made=ScanJob.attempts_made + 1,
                        )
                    )
                    db.commit()
                    if result.rowcount == 1:
                        job = db.query(ScanJob).filter(ScanJob.id == candidate.id).one()
                        return {
                            "job_id": job.job_id,
                            "scan_id": job.scan_id,
                            "payload": job.payload,
                            "attempts_made": job.attempts_made,
                            "max_attempts": job.max_attempts,
                        }
                return None
            finally:
                db.close()

    def _process(self, job: dict, worker_name: str):
        job_id = job["job_id"]
        logger.info(f"[job_id={job_id}] Started job on {worker_name}. attempt={job['attempts_made']}/{job['max_attempts']}")

        def report_progress(value: int):
            self._update_progress(job_id, value)

        try:
            result = self.handler(job["payload"], report_progress)
        except UnrecoverableJobError as e:
            self._finish_failed(job, e)
        except Exception as e:
            if job["attempts_made"] < job["max_attempts"]:
                self._schedule_retry(job, e)
            else:
                self._finish_failed(job, e)
        else:
            self._finish_completed(job, result)

    def _update_progress(self, job_id: str, value: int):
        db = self.session_factory()
        try:
            db.execute(
                update(ScanJob)
                .where(ScanJob.job_id == job_id)
                .where(ScanJob.state == JobState.ACTIVE.value)
                .where(ScanJob.progress <= value)
                .values(progress=value, heartbeat_at=utcnow())
            )
            db.commit()
        finally:
            db.close()
        logger.debug(f"[job_id={job_id}] Progress {value}")

    def _finish_completed(self, job: dict, result):
        job_id = job["job_id"]
        db = self.session_factory()
        try:
            db.execute(
                update(ScanJob)
                .where(ScanJob.job_id == job_id)
                .values(
                    state=JobState.COMPLETED.value,
                    progress=100,
                    result=result,
                    failed_reason=None,
                    finished_on=utcnow(),
                )
            )
            db.commit()
            self._evict(db, JobState.COMPLETED, self.settings.keep_completed)
        finally:
            db.close()
        logger.info(f"[job_id={job_id}] Completed job. result={result}")

    def _schedule_retry(self, job: dict, error: Exception):
        job_id = job["job_id"]
        delay = self.backoff_delay(job["attempts_made"])
        db = self.session_factory()
        try:
            db.execute(
                update(ScanJob)
                .where(ScanJob.job_id == job_id)
                .values(
                    state=JobState.WAITING.value,
                    available_at=utcnow() + timedelta(seconds=delay),
                    failed_reason=_describe(error),
                    claimed_by=None,
                )
            )
            db.commit()
        finally:
            db.close()
        logger.warning(
            f"[job_id={job_id}] Attempt {job['attempts_made']}/{job['max_attempts']} failed: {error}. "
            f"Retrying in {delay}s"
        )
        with self._cond:
            self._cond.notify_all()

    def _finish_failed(self, job: dict, error):
        job_id = job["job_id"]
        message = _describe(error)
        db = self.session_factory()
        try:
            db.execute(
                update(ScanJob)
                .where(ScanJob.job_id == job_id)
                .values(state=JobState.FAILED.value, failed_reason=message, finished_on=utcnow())
            )
            db.commit()
            self._evict(db, JobState.FAILED, self.settings.keep_failed)
        finally:
            db.close()
        logger.error(f"[job_id={job_id}] Job failed after {job['attempts_made']} attempts: {message}")
        if self.on_failed:
            try:
                self.on_failed(job["payload"], message)
            except Exception:
                # the reconciliation sweep picks up the scan later
                logger.exception(f"[job_id={job_id}] Failure callback raised")

    def _evict(self, db, state: JobState, keep: int):
        stale = (
            db.query(ScanJob.id)
            .filter(ScanJob.state == state.value)
            .order_by(ScanJob.finished_on.desc(), ScanJob.id.desc())
            .offset(keep)
            .all()
        )
        if stale:
            db.query(ScanJob).filter(ScanJob.id.in_([row.id for row in stale])).delete(synchronize_session=False)
            db.commit()
            logger.debug(f"Evicted {len(stale)} {state.value} jobs")

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def recover_stalled(self, orphaned: bool = False) -> List[str]:
        """
        Return stalled active jobs to the queue, or fail them if out of attempts.

        A job is stalled when its heartbeat is older than stall_timeout. With
        orphaned=True every active job claimed by another queue instance also
        counts, which is the case for jobs left behind by a crashed process.
        """
        cutoff = utcnow() - timedelta(seconds=self.settings.stall_timeout)
        conditions = [ScanJob.heartbeat_at < cutoff, ScanJob.heartbeat_at.is_(None)]
        if orphaned:
            conditions.append(or_(ScanJob.claimed_by.is_(None), ~ScanJob.claimed_by.startswith(f"{self.instance_id}-")))

        recovered, exhausted = [], []
        db = self.session_factory()
        try:
            stalled = (
                db.query(ScanJob)
                .filter(ScanJob.state == JobState.ACTIVE.value)
                .filter(or_(*conditions))
                .all()
            )
            for job in stalled:
                if job.attempts_made < job.max_attempts:
                    job.state = JobState.WAITING.value
                    job.available_at = utcnow()
                    job.claimed_by = None
                    job.failed_reason = "job stalled"
                    recovered.append(job.job_id)
                else:
                    job.state = JobState.FAILED.value
                    job.failed_reason = "job stalled more than allowable limit"
                    job.finished_on = utcnow()
                    exhausted.append({"job_id": job.job_id, "payload": job.payload,
                                      "attempts_made": job.attempts_made})
            db.commit()
        finally:
            db.close()

        for job in exhausted:
            logger.error(f"[job_id={job['job_id']}] Stalled job failed after {job['attempts_made']} attempts")
            if self.on_failed:
                try:
                    self.on_failed(job["payload"], "job stalled more than allowable limit")
                except Exception:
                    logger.exception(f"[job_id={job['job_id']}] Failure callback raised")
        if recovered:
            logger.warning(f"Moved {len(recovered)} stalled jobs back to waiting: {recovered}")
            with self._cond:
                self._cond.notify_all()
        return recovered + [job["job_id"] for job in exhausted]


def _describe(error) -> str:
    return str(error) or error.__class__.__name__
