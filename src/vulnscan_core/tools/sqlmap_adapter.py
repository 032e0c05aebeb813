# src/vulnscan_core/tools/sqlmap_adapter.py
import shutil
import tempfile
from typing import List

from .base import RawFinding, SecurityToolAdapter

INJECTION_MARKER = "sqlmap identified the following injection point"


class SqlmapAdapter(SecurityToolAdapter):
    name = "sqlmap"

    def build_command(self, target: str, options: dict, output_dir: str) -> List[str]:
        cmd = [
            self.tools.sqlmap_path,
            "-u", target,
            "--batch",
            "--output-dir", output_dir,
            "--level", str(options.get("level") or 1),
            "--risk", str(options.get("risk") or 1),
        ]
        if options.get("data"):
            cmd += ["--data", str(options["data"])]
        if options.get("cookie"):
            cmd += ["--cookie", str(options["cookie"])]
        return cmd

    def run_scan(self, target: str, options: dict) -> List[RawFinding]:
        output_dir = tempfile.mkdtemp(prefix="sqlmap_", dir=self.tools.temp_dir)
        try:
            output = self.run_command(self.build_command(target, options, output_dir), self.tools.sqlmap_timeout)
            return parse_sqlmap_output(output)
        finally:
            shutil.rmtree(output_dir, ignore_errors=True)

    def synthetic_findings(self, target: str) -> List[RawFinding]:
        return [
            RawFinding(
                vulnerability_type="SQL Injection",
                title="SQL Injection in Login Form",
                description="Time-based blind SQL injection vulnerability detected in login parameter",
                cve_id="CVE-2021-44228",
                raw_output={"sqlmap_output": "Parameter: username (POST)\nType: time-based blind"},
            ),
        ]


def parse_sqlmap_output(output: str) -> List[RawFinding]:
    # sqlmap reports every injection point under one banner, so at most one finding
    if INJECTION_MARKER not in output:
        return []
    return [RawFinding(
        vulnerability_type="SQL Injection",
        title="SQL Injection Vulnerability Detected",
        description="SQLMap detected potential SQL injection vulnerabilities",
        raw_output={"sqlmap_output": output},
    )]
