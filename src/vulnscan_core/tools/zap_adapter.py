# src/vulnscan_core/tools/zap_adapter.py
from typing import List

from .base import RawFinding, SecurityToolAdapter


class ZapAdapter(SecurityToolAdapter):
    """OWASP ZAP has no process integration yet; it always reports its synthetic set."""
    name = "zap"

    def run_scan(self, target: str, options: dict) -> List[RawFinding]:
        return self.synthetic_findings(target)

    def synthetic_findings(self, target: str) -> List[RawFinding]:
        return [
            RawFinding(
                vulnerability_type="XSS",
                title="Cross-Site Scripting (XSS) Vulnerability",
                description="Reflected XSS vulnerability found in search parameter",
                port=80,
                service="http",
                raw_output={"zap_finding": "XSS detected in search parameter"},
            ),
        ]
