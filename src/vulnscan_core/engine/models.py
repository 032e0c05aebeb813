# src/vulnscan_core/engine/models.py
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    # naive UTC, sqlite drops tzinfo anyway
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class ScanType(str, enum.Enum):
    NMAP = "nmap"
    NIKTO = "nikto"
    SQLMAP = "sqlmap"
    ZAP = "zap"
    COMBINED = "combined"


class ScanStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({ScanStatus.COMPLETE, ScanStatus.ERROR, ScanStatus.CANCELLED})

ALLOWED_TRANSITIONS = {
    ScanStatus.PENDING: {ScanStatus.RUNNING, ScanStatus.ERROR, ScanStatus.CANCELLED},
    # running -> running happens when a retried job re-enters the scan
    ScanStatus.RUNNING: {ScanStatus.RUNNING, ScanStatus.COMPLETE, ScanStatus.ERROR, ScanStatus.CANCELLED},
    ScanStatus.COMPLETE: set(),
    ScanStatus.ERROR: set(),
    ScanStatus.CANCELLED: set(),
}


class RiskLevel(str, enum.Enum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class JobState(str, enum.Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class Scan(Base):
    __tablename__ = 'scans'
    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=True, index=True)
    target = Column(String(255), nullable=False, index=True)
    scan_type = Column(String(20), nullable=False, default=ScanType.COMBINED.value)
    status = Column(String(20), nullable=False, default=ScanStatus.PENDING.value, index=True)
    title = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    progress = Column(Integer, nullable=False, default=0)
    options = Column(JSON, nullable=False, default=dict)
    # stages whose findings are fully stored; a retried job skips them
    stages_done = Column(JSON, nullable=False, default=list)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    started_at = Column(DateTime, nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    findings = relationship(
        "Finding",
        back_populates="scan",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Finding.id",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "target": self.target,
            "scan_type": self.scan_type,
            "status": self.status,
            "progress": self.progress,
            "options": self.options,
            "error_message": self.error_message,
            "created_at": str(self.created_at) if self.created_at else None,
            "started_at": str(self.started_at) if self.started_at else None,
            "completed_at": str(self.completed_at) if self.completed_at else None,
        }


class Finding(Base):
    __tablename__ = 'findings'
    id = Column(Integer, primary_key=True, autoincrement=True)
    scan_id = Column(String(36), ForeignKey('scans.id', ondelete='CASCADE'), nullable=False, index=True)
    vulnerability_type = Column(String(255), nullable=False, index=True)
    risk_level = Column(String(10), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    fix_suggestion = Column(Text, nullable=True)
    score = Column(Float, nullable=False, default=0.0)
    cve_id = Column(String(50), nullable=True)
    affected_component = Column(String(255), nullable=True)
    port = Column(Integer, nullable=True)
    service = Column(String(100), nullable=True)
    raw_output = Column(JSON, nullable=True)
    classification_metadata = Column(JSON, nullable=True)
    # stage that produced the finding and its position in that stage's output
    stage = Column(String(20), nullable=True)
    stage_index = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    scan = relationship("Scan", back_populates="findings")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scan_id": self.scan_id,
            "vulnerability_type": self.vulnerability_type,
            "risk_level": self.risk_level,
            "title": self.title,
            "description": self.description,
            "fix_suggestion": self.fix_suggestion,
            "score": self.score,
            "cve_id": self.cve_id,
            "affected_component": self.affected_component,
            "port": self.port,
            "service": self.service,
            "stage": self.stage,
            "created_at": str(self.created_at) if self.created_at else None,
        }


class ScanJob(Base):
    __tablename__ = 'scan_jobs'
    # autoincrement id doubles as FIFO order within a priority
    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), unique=True, nullable=False, default=new_id)
    scan_id = Column(String(36), nullable=True, index=True)
    payload = Column(JSON, nullable=False)
    priority = Column(Integer, nullable=False, default=0)
    state = Column(String(20), nullable=False, default=JobState.WAITING.value, index=True)
    progress = Column(Integer, nullable=False, default=0)
    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    available_at = Column(DateTime, nullable=False, default=utcnow)
    result = Column(JSON, nullable=True)
    failed_reason = Column(Text, nullable=True)
    claimed_by = Column(String(100), nullable=True)
    heartbeat_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    processed_on = Column(DateTime, nullable=True)
    finished_on = Column(DateTime, nullable=True)
