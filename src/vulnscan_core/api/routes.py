# src/vulnscan_core/api/routes.py
from fastapi import APIRouter, Depends, Request

from vulnscan_core.api.schemas import EnqueueScanRequest, EnqueueScanResponse, JobStatus, ScanDetail
from vulnscan_core.engine.errors import ScanInProgressError
from vulnscan_core.engine.models import ScanStatus
from vulnscan_core.engine.scan_service import ScanService

router = APIRouter()


def get_scan_service(request: Request) -> ScanService:
    return request.app.state.scan_service


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.post(
    "/scan/jobs",
    summary="Queue a scan job",
    response_description="Job ID and submission status",
    tags=["Scan Jobs"],
    responses={
        200: {"description": "Job submitted successfully"},
        500: {"description": "Internal server error"}
    },
)
def enqueue_scan_job(request: EnqueueScanRequest, service: ScanService = Depends(get_scan_service)):
    """
    Queue an existing pending scan for execution. Returns a job ID.
    """
    scan = service.store.get_scan(request.scan_id)
    if scan is None:
        return {"success": False, "error": "Scan not found"}
    if scan.status != ScanStatus.PENDING.value:
        return {"success": False, "error": f"Scan is {scan.status}, only pending scans can be queued"}
    job_id = service.enqueue_scan_job(
        request.scan_id,
        request.target,
        request.scan_type,
        options=request.options,
        priority=request.priority,
        delay=request.delay,
    )
    return EnqueueScanResponse(job_id=job_id, status="submitted")


@router.get(
    "/scan/jobs/{job_id}",
    summary="Get scan job status and result",
    response_description="Job state, progress and result or error",
    tags=["Scan Jobs"],
    responses={
        200: {"description": "Job status and result"},
        500: {"description": "Internal server error"}
    },
)
def get_scan_job_status(job_id: str, service: ScanService = Depends(get_scan_service)):
    """
    Get the status and result of a scan job by job ID.
    Evicted and unknown jobs report status not_found.
    """
    status = service.get_job_status(job_id)
    if status is None:
        return {"status": "not_found", "result": None}
    return JobStatus(**status)


@router.get("/scan/queue/stats", summary="Count jobs by state", tags=["Scan Jobs"])
def get_queue_stats(service: ScanService = Depends(get_scan_service)):
    return service.queue_stats()


@router.get("/scan/{scan_id}", summary="Get a scan and its findings", tags=["Scans"])
def get_scan(scan_id: str, service: ScanService = Depends(get_scan_service)):
    scan = service.store.get_scan(scan_id)
    if scan is None:
        return {"success": False, "error": "Scan not found"}
    findings = service.store.list_findings(scan_id)
    return ScanDetail(scan=scan.to_dict(), findings=[f.to_dict() for f in findings])


@router.delete("/scan/{scan_id}", summary="Delete a scan and its findings", tags=["Scans"])
def delete_scan(scan_id: str, service: ScanService = Depends(get_scan_service)):
    try:
        deleted = service.store.delete_scan(scan_id)
    except ScanInProgressError as e:
        return {"success": False, "error": str(e)}
    if not deleted:
        return {"success": False, "error": "Scan not found"}
    return {"success": True, "message": f"Scan {scan_id} and its findings deleted."}
