# src/vulnscan_core/tools/nikto_adapter.py
import os
import re
import tempfile
from typing import List, Optional

from vulnscan_core.engine.errors import ParseFailure
from .base import RawFinding, SecurityToolAdapter

NIKTO_LINE = re.compile(r"\+ (.+)")
MARKERS = ("OSVDB", "CVE", "+ ")


class NiktoAdapter(SecurityToolAdapter):
    name = "nikto"

    def build_command(self, target: str, options: dict, output_file: str) -> List[str]:
        cmd = [self.tools.nikto_path, "-h", target, "-output", output_file, "-Format", "txt"]
        if options.get("port"):
            cmd += ["-port", str(options["port"])]
        return cmd

    def run_scan(self, target: str, options: dict) -> List[RawFinding]:
        fd, output_file = tempfile.mkstemp(prefix="nikto_", suffix=".txt", dir=self.tools.temp_dir)
        os.close(fd)
        try:
            self.run_command(self.build_command(target, options, output_file), self.tools.nikto_timeout)
            try:
                with open(output_file, "r", encoding="utf-8", errors="replace") as f:
                    content = f.read()
            except OSError as e:
                raise ParseFailure(f"could not read nikto report: {e}")
            return parse_nikto_output(content, port=_int_or_none(options.get("port")))
        finally:
            if os.path.exists(output_file):
                os.remove(output_file)

    def synthetic_findings(self, target: str) -> List[RawFinding]:
        return [
            RawFinding(
                vulnerability_type="Web Vulnerability",
                title="Server Information Disclosure",
                description="Server version information is disclosed in HTTP headers",
                port=80,
                service="http",
                raw_output={"nikto_line": "+ Server: Apache/2.4.29 (Ubuntu)"},
            ),
            RawFinding(
                vulnerability_type="Web Vulnerability",
                title="Directory Listing Enabled",
                description="Directory listing is enabled on /uploads/ directory",
                port=80,
                service="http",
                raw_output={"nikto_line": "+ /uploads/: Directory indexing found."},
            ),
        ]


def parse_nikto_output(content: str, port: Optional[int] = None) -> List[RawFinding]:
    """One finding per '+ '-prefixed report line."""
    findings = []
    for line in content.splitlines():
        if not any(marker in line for marker in MARKERS):
            continue
        match = NIKTO_LINE.search(line)
        if not match:
            continue
        text = match.group(1).strip()
        findings.append(RawFinding(
            vulnerability_type="Web Vulnerability",
            title=text[:100],
            description=text,
            port=port or 80,
            service="http",
            raw_output={"nikto_line": line},
        ))
    return findings


def _int_or_none(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
