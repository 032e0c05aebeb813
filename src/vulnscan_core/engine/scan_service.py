# src/vulnscan_core/engine/scan_service.py
"""
ScanService: wires settings, storage, adapters, executor and job queue together.

This is the boundary the submission and reporting layers talk to:
enqueue_scan_job() in, get_job_status() out.
"""
import logging
from datetime import timedelta
from typing import Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from vulnscan_core.config import EngineSettings
from vulnscan_core.engine.db import create_session_factory
from vulnscan_core.engine.job_queue import JobQueue
from vulnscan_core.engine.models import ScanType, utcnow
from vulnscan_core.engine.scan_executor import ScanExecutor, build_adapters
from vulnscan_core.engine.scan_store import ScanStore
from vulnscan_core.tools.base import SecurityToolAdapter

logger = logging.getLogger(__name__)


class ScanService:
    def __init__(self, settings: EngineSettings, session_factory=None,
                 adapters: Optional[Dict[ScanType, SecurityToolAdapter]] = None):
        self.settings = settings
        self.session_factory = session_factory or create_session_factory(settings.database_url)
        self.store = ScanStore(self.session_factory)
        self.executor = ScanExecutor(
            self.store,
            adapters if adapters is not None else build_adapters(settings),
            classification_workers=settings.classification_workers,
        )
        self.queue = JobQueue(
            self.session_factory,
            self.executor.execute,
            settings.queue,
            on_failed=self._on_job_failed,
        )
        self._scheduler: Optional[BackgroundScheduler] = None

    def start(self):
        self.queue.start()
        if self.settings.reconcile_interval > 0 and self._scheduler is None:
            self._scheduler = BackgroundScheduler(daemon=True)
            self._scheduler.add_job(
                func=self.reconcile,
                trigger=IntervalTrigger(seconds=self.settings.reconcile_interval),
                id="scan_reconciler",
                name="Recover stalled jobs and stuck scans",
                replace_existing=True,
                max_instances=1,
            )
            self._scheduler.start()
            logger.info(f"Reconciliation sweep scheduled every {self.settings.reconcile_interval}s")

    def shutdown(self, wait: bool = True):
        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        self.queue.stop(wait=wait)

    def enqueue_scan_job(self, scan_id: str, target: str, scan_type, options: Optional[dict] = None,
                         priority: int = 0, delay: float = 0) -> str:
        """Queue a scan whose row already exists in status pending."""
        payload = {
            "scan_id": scan_id,
            "target": target,
            "scan_type": getattr(scan_type, "value", scan_type),
            "options": options or {},
            "priority": priority,
            "delay": delay,
        }
        return self.queue.enqueue(payload, priority=priority, delay=delay)

    def get_job_status(self, job_id: str) -> Optional[dict]:
        return self.queue.get_status(job_id)

    def queue_stats(self) -> dict:
        return self.queue.stats()

    def _on_job_failed(self, payload: dict, message: str):
        self.executor.fail_scan(payload.get("scan_id"), message)

    def reconcile(self) -> dict:
        """Requeue stalled jobs, then fail RUNNING scans that have no job left."""
        stalled_jobs = self.queue.recover_stalled()
        cutoff = utcnow() - timedelta(seconds=self.settings.stuck_scan_timeout)
        stuck_scans = self.executor.recover_stuck_scans(self.queue.busy_scan_ids(), cutoff)
        return {"stalled_jobs": stalled_jobs, "stuck_scans": stuck_scans}
