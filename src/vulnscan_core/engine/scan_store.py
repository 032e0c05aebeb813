# src/vulnscan_core/engine/scan_store.py
"""
ScanStore: row-level persistence for scans and their findings.

Every method runs in its own short transaction so progress and findings are
visible to readers as soon as they are written. SQLAlchemy errors surface as
PersistenceFailure, which the job queue retries.
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from vulnscan_core.engine.errors import (
    InvalidTransition,
    PersistenceFailure,
    ScanInProgressError,
    ScanNotFound,
)
from vulnscan_core.engine.models import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    Finding,
    Scan,
    ScanStatus,
    ScanType,
    utcnow,
)

logger = logging.getLogger(__name__)


class ScanStore:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    @contextmanager
    def session(self):
        db = self.session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceFailure(f"Database error: {e}") from e
        finally:
            db.close()

    def _load(self, db, scan_id: str) -> Scan:
        scan = db.get(Scan, scan_id)
        if scan is None:
            raise ScanNotFound(scan_id)
        return scan

    @staticmethod
    def _transition(scan: Scan, target: ScanStatus):
        current = ScanStatus(scan.status)
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransition(scan.id, current.value, target.value)
        scan.status = target.value

    def create_scan(self, target: str, scan_type, options: Optional[dict] = None,
                    user_id: Optional[str] = None, title: Optional[str] = None) -> Scan:
        """Insert a pending scan. Normally done by the submission layer."""
        with self.session() as db:
            scan = Scan(
                target=target,
                scan_type=ScanType(scan_type).value,
                status=ScanStatus.PENDING.value,
                options=options or {},
                user_id=user_id,
                title=title,
            )
            db.add(scan)
            db.commit()
            return scan

    def get_scan(self, scan_id: str) -> Optional[Scan]:
        with self.session() as db:
            return db.get(Scan, scan_id)

    def list_findings(self, scan_id: str) -> List[Finding]:
        with self.session() as db:
            return db.query(Finding).filter(Finding.scan_id == scan_id).order_by(Finding.id).all()

    def mark_running(self, scan_id: str) -> Scan:
        with self.session() as db:
            scan = self._load(db, scan_id)
            self._transition(scan, ScanStatus.RUNNING)
            now = utcnow()
            if scan.started_at is None:
                scan.started_at = now
            scan.claimed_at = now
            db.commit()
            return scan

    def update_progress(self, scan_id: str, progress: int) -> bool:
        """Raise progress to `progress`. Never lowers it and never touches a terminal scan."""
        progress = max(0, min(100, int(progress)))
        with self.session() as db:
            result = db.execute(
                update(Scan)
                .where(Scan.id == scan_id)
                .where(Scan.progress < progress)
                .where(Scan.status.notin_([s.value for s in TERMINAL_STATUSES]))
                .values(progress=progress, updated_at=utcnow())
            )
            db.commit()
            return result.rowcount > 0

    def stored_stage_indices(self, scan_id: str, stage: str) -> set:
        """Positions in a stage's output that already have a stored finding."""
        with self.session() as db:
            rows = (
                db.query(Finding.stage_index)
                .filter(Finding.scan_id == scan_id)
                .filter(Finding.stage == stage)
                .all()
            )
            return {row.stage_index for row in rows}

    def add_finding(self, scan_id: str, raw, classification, stage: Optional[str] = None,
                    stage_index: Optional[int] = None) -> Finding:
        with self.session() as db:
            finding = Finding(
                scan_id=scan_id,
                vulnerability_type=raw.vulnerability_type,
                risk_level=classification.risk_level,
                title=(raw.title or classification.title)[:255],
                description=classification.description,
                fix_suggestion=classification.fix_suggestion,
                score=classification.score,
                cve_id=raw.cve_id,
                affected_component=raw.affected_component,
                port=raw.port,
                service=raw.service,
                raw_output=raw.raw_output,
                classification_metadata=classification.to_metadata(),
                stage=stage,
                stage_index=stage_index,
            )
            db.add(finding)
            db.commit()
            return finding

    def record_stage(self, scan_id: str, stage: str):
        with self.session() as db:
            scan = self._load(db, scan_id)
            done = list(scan.stages_done or [])
            if stage not in done:
                scan.stages_done = done + [stage]
                db.commit()

    def mark_complete(self, scan_id: str) -> Scan:
        with self.session() as db:
            scan = self._load(db, scan_id)
            self._transition(scan, ScanStatus.COMPLETE)
            scan.progress = 100
            scan.completed_at = utcnow()
            db.commit()
            return scan

    def mark_error(self, scan_id: str, message: str) -> bool:
        with self.session() as db:
            scan = db.get(Scan, scan_id)
            if scan is None:
                logger.warning(f"[scan_id={scan_id}] Cannot record error for missing scan: {message}")
                return False
            if ScanStatus(scan.status).terminal:
                logger.warning(f"[scan_id={scan_id}] Scan already {scan.status}, error not recorded: {message}")
                return False
            self._transition(scan, ScanStatus.ERROR)
            scan.error_message = message
            scan.completed_at = utcnow()
            db.commit()
            return True

    def delete_scan(self, scan_id: str) -> bool:
        """Delete a scan and, by cascade, its findings. Running scans are refused."""
        with self.session() as db:
            scan = db.get(Scan, scan_id)
            if scan is None:
                return False
            if scan.status == ScanStatus.RUNNING.value:
                raise ScanInProgressError(scan_id)
            db.delete(scan)
            db.commit()
            return True

    def find_stuck_scans(self, older_than: datetime) -> List[str]:
        with self.session() as db:
            rows = (
                db.query(Scan.id)
                .filter(Scan.status == ScanStatus.RUNNING.value)
                .filter(Scan.claimed_at < older_than)
                .all()
            )
            return [row.id for row in rows]
