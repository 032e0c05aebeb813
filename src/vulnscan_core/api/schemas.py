# src/vulnscan_core/api/schemas.py
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal, Optional


class EnqueueScanRequest(BaseModel):
    scan_id: str = Field(..., description="Id of an existing scan in status pending")
    target: str  # host, IP or URL, validated by the submission layer
    scan_type: Literal['nmap', 'nikto', 'sqlmap', 'zap', 'combined'] = Field(..., description="Tool to run, or 'combined'")
    options: Dict[str, Any] = Field(default_factory=dict, description="Tool options, e.g. ports, scripts, level, risk")
    priority: int = Field(0, ge=0, description="Lower runs first")
    delay: float = Field(0, ge=0, description="Seconds before the job becomes visible")


class EnqueueScanResponse(BaseModel):
    job_id: str
    status: str


class JobStatus(BaseModel):
    job_id: str
    scan_id: Optional[str] = None
    state: str
    progress: int
    data: Dict[str, Any]
    priority: int = 0
    attempts_made: int
    max_attempts: int
    result: Optional[Any] = None
    error: Optional[str] = None
    created_at: Optional[str] = None
    processed_on: Optional[str] = None
    finished_on: Optional[str] = None


class ScanDetail(BaseModel):
    scan: Dict[str, Any]
    findings: List[Dict[str, Any]]
