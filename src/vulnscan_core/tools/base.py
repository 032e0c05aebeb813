# src/vulnscan_core/tools/base.py
import logging
import subprocess
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from vulnscan_core.config import ToolSettings
from vulnscan_core.engine.errors import (
    ParseFailure,
    ToolExecutionError,
    ToolExitError,
    ToolSpawnError,
    ToolTimeoutError,
)

logger = logging.getLogger(__name__)


@dataclass
class RawFinding:
    """One unscored result as reported by a tool."""
    vulnerability_type: str
    title: str
    description: Optional[str] = None
    port: Optional[int] = None
    service: Optional[str] = None
    protocol: Optional[str] = None
    version: Optional[str] = None
    cve_id: Optional[str] = None
    affected_component: Optional[str] = None
    raw_output: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


class SecurityToolAdapter(ABC):
    """
    Wraps one external scanner.

    execute() never lets a tool failure escape in permissive mode: a timeout,
    non-zero exit or spawn error is replaced by the adapter's synthetic
    findings. In strict mode the ToolExecutionError is raised so the job
    queue can retry it.
    """
    name = "tool"

    def __init__(self, tools: ToolSettings, permissive: bool = True):
        self.tools = tools
        self.permissive = permissive

    def execute(self, target: str, options: Optional[dict] = None) -> List[RawFinding]:
        options = options or {}
        logger.info(f"[tool={self.name}] Starting scan target={target} options={options}")
        try:
            findings = self.run_scan(target, options)
        except ToolExecutionError as e:
            if not self.permissive:
                logger.error(f"[tool={self.name}] Scan failed target={target}: {e}")
                raise
            logger.warning(f"[tool={self.name}] Scan failed target={target}: {e}; using synthetic results")
            return self.synthetic_findings(target)
        except ParseFailure as e:
            logger.warning(f"[tool={self.name}] Could not parse output target={target}: {e}")
            return []
        logger.info(f"[tool={self.name}] Scan completed target={target} findings={len(findings)}")
        return findings

    @abstractmethod
    def run_scan(self, target: str, options: dict) -> List[RawFinding]:
        pass

    @abstractmethod
    def synthetic_findings(self, target: str) -> List[RawFinding]:
        pass

    def run_command(self, cmd: List[str], timeout: float) -> str:
        """Run cmd and return its stdout, raising ToolExecutionError on any failure."""
        logger.debug(f"[tool={self.name}] Running {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False
            )
        except subprocess.TimeoutExpired:
            raise ToolTimeoutError(self.name, timeout)
        except OSError as e:
            raise ToolSpawnError(self.name, str(e))
        if result.returncode != 0:
            raise ToolExitError(self.name, result.returncode, result.stderr or "")
        return result.stdout or ""
