# src/vulnscan_core/engine/scan_executor.py
"""
ScanExecutor: runs one scan job from RUNNING to a terminal status.

Stages run strictly one after another, even for combined scans, so a single
target is never hit by two tools at once. Findings are classified and stored
one by one as each stage finishes; a later failure leaves them in place.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from vulnscan_core.config import EngineSettings
from vulnscan_core.engine.errors import ScanNotFound, UnsupportedScanType
from vulnscan_core.engine.models import ScanStatus, ScanType
from vulnscan_core.engine.risk_classifier import classify
from vulnscan_core.engine.scan_store import ScanStore
from vulnscan_core.tools.base import RawFinding, SecurityToolAdapter
from vulnscan_core.tools.nikto_adapter import NiktoAdapter
from vulnscan_core.tools.nmap_adapter import NmapAdapter
from vulnscan_core.tools.sqlmap_adapter import SqlmapAdapter
from vulnscan_core.tools.zap_adapter import ZapAdapter
from vulnscan_core.utils.findings_utils import calculate_risk_stats, highest_risk
from vulnscan_core.utils.log_utils import log_scan

logger = logging.getLogger(__name__)

# fixed order for combined scans
COMBINED_STAGES = (ScanType.NMAP, ScanType.NIKTO, ScanType.SQLMAP)

# share of progress handed out before stages; the rest is reserved for completion
STAGE_PROGRESS_SPAN = 80


def build_adapters(settings: EngineSettings) -> Dict[ScanType, SecurityToolAdapter]:
    permissive = settings.permissive
    return {
        ScanType.NMAP: NmapAdapter(settings.tools, permissive),
        ScanType.NIKTO: NiktoAdapter(settings.tools, permissive),
        ScanType.SQLMAP: SqlmapAdapter(settings.tools, permissive),
        ScanType.ZAP: ZapAdapter(settings.tools, permissive),
    }


def plan_stages(scan_type) -> List[ScanType]:
    try:
        scan_type = ScanType(scan_type)
    except ValueError:
        raise UnsupportedScanType(scan_type)
    if scan_type is ScanType.COMBINED:
        return list(COMBINED_STAGES)
    if scan_type in (ScanType.NMAP, ScanType.NIKTO, ScanType.SQLMAP, ScanType.ZAP):
        return [scan_type]
    raise UnsupportedScanType(scan_type)


def stage_milestone(index: int, total: int) -> int:
    """Progress reported right before stage `index` of `total` starts."""
    return round(STAGE_PROGRESS_SPAN * (index + 1) / (total + 1))


@dataclass
class ScanOutcome:
    scan_id: str
    status: str
    findings: int = 0
    risk_counts: Dict[str, int] = field(default_factory=dict)
    highest_risk: Optional[str] = None
    skipped: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class ScanExecutor:
    def __init__(self, store: ScanStore, adapters: Dict[ScanType, SecurityToolAdapter],
                 classification_workers: int = 1, classifier=classify):
        self.store = store
        self.adapters = adapters
        self.classification_workers = classification_workers
        self.classifier = classifier

    def execute(self, payload: dict, progress: Optional[Callable[[int], None]] = None) -> dict:
        """
        Job handler. Returns the ScanOutcome as a dict for the job result.

        Safe to call again for the same scan: a terminal scan is skipped and a
        RUNNING scan (a retried job) resumes after its last finished stage
        without lowering its progress.
        """
        scan_id = payload["scan_id"]
        scan = self.store.get_scan(scan_id)
        if scan is None:
            raise ScanNotFound(scan_id)
        if ScanStatus(scan.status).terminal:
            logger.info(f"[scan_id={scan_id}] Scan already {scan.status}, nothing to do")
            return ScanOutcome(scan_id=scan_id, status=scan.status, skipped=True).to_dict()

        target = payload.get("target") or scan.target
        scan_type = payload.get("scan_type") or scan.scan_type
        options = payload.get("options") or scan.options or {}
        stages = plan_stages(scan_type)

        scan = self.store.mark_running(scan_id)
        done = set(scan.stages_done or [])
        log_scan(scan_id, "scan_started", target=target, scan_type=scan_type)

        for index, stage in enumerate(stages):
            self._report(scan_id, stage_milestone(index, len(stages)), progress)
            if stage.value in done:
                logger.info(f"[scan_id={scan_id}] Stage {stage.value} finished by an earlier attempt, skipping")
                continue
            raw_findings = self.adapters[stage].execute(target, options)
            stored = self._classify_and_persist(scan_id, stage.value, raw_findings)
            self.store.record_stage(scan_id, stage.value)
            logger.info(f"[scan_id={scan_id}] Stage {stage.value} stored {stored} findings")

        self._report(scan_id, STAGE_PROGRESS_SPAN, progress)
        scan = self.store.mark_complete(scan_id)
        if progress:
            progress(100)

        levels = [f.risk_level for f in self.store.list_findings(scan_id)]
        stats = calculate_risk_stats(levels)
        log_scan(scan_id, "scan_completed", target=target, scan_type=scan_type,
                 vulnerabilities=stats["total_findings"])
        return ScanOutcome(
            scan_id=scan_id,
            status=scan.status,
            findings=stats["total_findings"],
            risk_counts=stats["risk_counts"],
            highest_risk=highest_risk(levels),
        ).to_dict()

    def _report(self, scan_id: str, value: int, progress: Optional[Callable[[int], None]]):
        self.store.update_progress(scan_id, value)
        if progress:
            progress(value)

    def _classify_and_persist(self, scan_id: str, stage: str, raw_findings: List[RawFinding]) -> int:
        # a retried stage stores only the positions an earlier attempt did not reach
        stored = self.store.stored_stage_indices(scan_id, stage)
        pending = [(index, raw) for index, raw in enumerate(raw_findings) if index not in stored]
        if self.classification_workers <= 1 or len(pending) <= 1:
            for index, raw in pending:
                self.store.add_finding(scan_id, raw, self.classifier(raw), stage, index)
            return len(pending)

        # stored in completion order, which may differ from detection order
        with ThreadPoolExecutor(max_workers=self.classification_workers) as pool:
            futures = {pool.submit(self.classifier, raw): (index, raw) for index, raw in pending}
            for future in as_completed(futures):
                index, raw = futures[future]
                self.store.add_finding(scan_id, raw, future.result(), stage, index)
        return len(pending)

    def fail_scan(self, scan_id: Optional[str], message: str) -> bool:
        if not scan_id:
            return False
        recorded = self.store.mark_error(scan_id, message)
        if recorded:
            log_scan(scan_id, "scan_failed", error=message)
        return recorded

    def recover_stuck_scans(self, busy_scan_ids, older_than: datetime) -> List[str]:
        """Fail RUNNING scans that no waiting or active job will ever finish."""
        recovered = []
        for scan_id in self.store.find_stuck_scans(older_than):
            if scan_id in busy_scan_ids:
                continue
            if self.fail_scan(scan_id, "Scan interrupted: no active job"):
                recovered.append(scan_id)
        if recovered:
            logger.warning(f"Recovered {len(recovered)} stuck scans: {recovered}")
        return recovered
