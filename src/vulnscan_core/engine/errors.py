# src/vulnscan_core/engine/errors.py
"""
Exception taxonomy for the scan engine.

TransientJobFailure subclasses are retried by the job queue.
UnrecoverableJobError subclasses fail the job on the first attempt.
ParseFailure and ClassificationFailure never leave the component that raised them.
"""


class ScanEngineError(Exception):
    pass


class TransientJobFailure(ScanEngineError):
    pass


class ToolExecutionError(TransientJobFailure):
    def __init__(self, tool: str, reason: str):
        super().__init__(f"{tool}: {reason}")
        self.tool = tool
        self.reason = reason


class ToolTimeoutError(ToolExecutionError):
    def __init__(self, tool: str, timeout: float):
        super().__init__(tool, f"command timeout after {timeout}s")
        self.timeout = timeout


class ToolExitError(ToolExecutionError):
    def __init__(self, tool: str, returncode: int, stderr: str = ""):
        super().__init__(tool, f"command failed with code {returncode}: {stderr.strip()[:500]}")
        self.returncode = returncode
        self.stderr = stderr


class ToolSpawnError(ToolExecutionError):
    pass


class PersistenceFailure(TransientJobFailure):
    pass


class UnrecoverableJobError(ScanEngineError):
    pass


class UnsupportedScanType(UnrecoverableJobError):
    def __init__(self, scan_type):
        super().__init__(f"Unsupported scan type: {scan_type}")
        self.scan_type = scan_type


class ScanNotFound(UnrecoverableJobError):
    def __init__(self, scan_id: str):
        super().__init__(f"Scan {scan_id} not found")
        self.scan_id = scan_id


class ParseFailure(ScanEngineError):
    pass


class ClassificationFailure(ScanEngineError):
    pass


class InvalidTransition(ScanEngineError):
    def __init__(self, scan_id: str, current: str, target: str):
        super().__init__(f"Scan {scan_id} cannot move from {current} to {target}")
        self.scan_id = scan_id
        self.current = current
        self.target = target


class ScanInProgressError(ScanEngineError):
    def __init__(self, scan_id: str):
        super().__init__(f"Scan {scan_id} is running and cannot be deleted")
        self.scan_id = scan_id
