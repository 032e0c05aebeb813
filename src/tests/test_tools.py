import os
import subprocess
from unittest.mock import patch

import pytest

from vulnscan_core.config import ToolSettings
from vulnscan_core.engine.errors import (
    ParseFailure,
    ToolExitError,
    ToolTimeoutError,
    TransientJobFailure,
)
from vulnscan_core.tools.nikto_adapter import NiktoAdapter, parse_nikto_output
from vulnscan_core.tools.nmap_adapter import NmapAdapter, parse_nmap_xml
from vulnscan_core.tools.sqlmap_adapter import INJECTION_MARKER, SqlmapAdapter, parse_sqlmap_output
from vulnscan_core.tools.zap_adapter import ZapAdapter

RUN = "vulnscan_core.tools.base.subprocess.run"

NMAP_XML = """<?xml version="1.0"?>
<nmaprun scanner="nmap">
  <host>
    <address addr="93.184.216.34" addrtype="ipv4"/>
    <ports>
      <port protocol="tcp" portid="22">
        <state state="open"/>
        <service name="ssh" product="OpenSSH" version="8.2p1"/>
      </port>
      <port protocol="tcp" portid="80">
        <state state="open"/>
        <service name="http"/>
      </port>
      <port protocol="tcp" portid="3306">
        <state state="closed"/>
        <service name="mysql"/>
      </port>
    </ports>
  </host>
</nmaprun>
"""


@pytest.fixture
def tools(tmp_path):
    return ToolSettings(temp_dir=str(tmp_path))


def completed(cmd, stdout="", returncode=0, stderr=""):
    return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr=stderr)


def test_parse_nmap_xml_keeps_open_ports_only():
    findings = parse_nmap_xml(NMAP_XML)
    assert [f.port for f in findings] == [22, 80]
    ssh = findings[0]
    assert ssh.vulnerability_type == "Open Port"
    assert ssh.title == "ssh Service on Port 22"
    assert ssh.service == "ssh"
    assert ssh.version == "8.2p1"
    assert ssh.protocol == "tcp"
    assert ssh.affected_component == "93.184.216.34:22"
    assert ssh.raw_output["state"] == "open"


def test_parse_nmap_xml_rejects_garbage():
    with pytest.raises(ParseFailure):
        parse_nmap_xml("<nmaprun><host>")


def test_nmap_reads_xml_report(tools, tmp_path):
    def fake_run(cmd, **kwargs):
        with open(cmd[cmd.index("-oX") + 1], "w") as f:
            f.write(NMAP_XML)
        return completed(cmd)

    with patch(RUN, side_effect=fake_run) as run:
        findings = NmapAdapter(tools).execute("example.com", {"ports": "22,80", "scripts": "default"})

    cmd = run.call_args[0][0]
    assert cmd[:4] == ["nmap", "-T4", "-A", "-oX"]
    assert cmd[cmd.index("-p") + 1] == "22,80"
    assert cmd[cmd.index("--script") + 1] == "default"
    assert run.call_args[1]["timeout"] == 300
    assert len(findings) == 2
    # report file is removed afterwards
    assert os.listdir(tmp_path) == []


def test_nmap_timeout_returns_synthetic_findings(tools):
    with patch(RUN, side_effect=subprocess.TimeoutExpired(cmd="nmap", timeout=300)):
        findings = NmapAdapter(tools).execute("example.com")
    assert [(f.service, f.port) for f in findings] == [("ssh", 22), ("http", 80)]
    assert findings[0].affected_component == "example.com:22"
    assert findings[0].version == "OpenSSH 8.2p1"


def test_missing_binary_returns_synthetic_findings(tools):
    with patch(RUN, side_effect=FileNotFoundError("nmap not found")):
        findings = NmapAdapter(tools).execute("example.com")
    assert len(findings) == 2


def test_nonzero_exit_returns_synthetic_findings(tools):
    with patch(RUN, side_effect=lambda cmd, **kw: completed(cmd, returncode=1, stderr="boom")):
        findings = NiktoAdapter(tools).execute("example.com")
    assert [f.title for f in findings] == ["Server Information Disclosure", "Directory Listing Enabled"]


def test_strict_mode_raises_instead_of_faking(tools):
    adapter = NmapAdapter(tools, permissive=False)
    with patch(RUN, side_effect=subprocess.TimeoutExpired(cmd="nmap", timeout=300)):
        with pytest.raises(ToolTimeoutError) as exc_info:
            adapter.execute("example.com")
    assert isinstance(exc_info.value, TransientJobFailure)
    assert exc_info.value.tool == "nmap"


def test_strict_mode_reports_exit_code(tools):
    adapter = SqlmapAdapter(tools, permissive=False)
    with patch(RUN, side_effect=lambda cmd, **kw: completed(cmd, returncode=2, stderr="bad url")):
        with pytest.raises(ToolExitError) as exc_info:
            adapter.execute("http://example.com/?id=1")
    assert exc_info.value.returncode == 2
    assert "bad url" in str(exc_info.value)


def test_unparseable_report_yields_no_findings(tools):
    def fake_run(cmd, **kwargs):
        with open(cmd[cmd.index("-oX") + 1], "w") as f:
            f.write("not xml at all")
        return completed(cmd)

    with patch(RUN, side_effect=fake_run):
        assert NmapAdapter(tools).execute("example.com") == []


def test_parse_nikto_output_one_finding_per_marker_line():
    report = "\n".join([
        "- Nikto v2.1.6",
        "+ Target IP:          93.184.216.34",
        "+ Server: Apache/2.4.29 (Ubuntu)",
        "some unrelated banner",
        "+ OSVDB-3268: /uploads/: Directory indexing found.",
    ])
    findings = parse_nikto_output(report)
    assert [f.title for f in findings] == [
        "Target IP:          93.184.216.34",
        "Server: Apache/2.4.29 (Ubuntu)",
        "OSVDB-3268: /uploads/: Directory indexing found.",
    ]
    assert all(f.vulnerability_type == "Web Vulnerability" for f in findings)
    assert all(f.port == 80 and f.service == "http" for f in findings)


def test_parse_nikto_output_truncates_title():
    findings = parse_nikto_output("+ " + "A" * 250, port=8080)
    assert len(findings[0].title) == 100
    assert len(findings[0].description) == 250
    assert findings[0].port == 8080


def test_nikto_command_and_report(tools):
    def fake_run(cmd, **kwargs):
        with open(cmd[cmd.index("-output") + 1], "w") as f:
            f.write("+ /admin/: Admin login page found.\n")
        return completed(cmd)

    with patch(RUN, side_effect=fake_run) as run:
        findings = NiktoAdapter(tools).execute("example.com", {"port": "8443"})

    cmd = run.call_args[0][0]
    assert cmd[:3] == ["nikto", "-h", "example.com"]
    assert cmd[cmd.index("-Format") + 1] == "txt"
    assert cmd[cmd.index("-port") + 1] == "8443"
    assert run.call_args[1]["timeout"] == 600
    assert len(findings) == 1
    assert findings[0].port == 8443


def test_parse_sqlmap_output_collapses_to_one_finding():
    output = f"[INFO] testing\n{INJECTION_MARKER}(s):\nParameter: id (GET)\nParameter: q (GET)\n"
    findings = parse_sqlmap_output(output)
    assert len(findings) == 1
    assert findings[0].vulnerability_type == "SQL Injection"
    assert findings[0].raw_output["sqlmap_output"] == output
    assert parse_sqlmap_output("all tested parameters do not appear to be injectable") == []


def test_sqlmap_command_and_cleanup(tools, tmp_path):
    seen = {}

    def fake_run(cmd, **kwargs):
        seen["output_dir"] = cmd[cmd.index("--output-dir") + 1]
        assert os.path.isdir(seen["output_dir"])
        return completed(cmd, stdout=f"{INJECTION_MARKER}(s):\n")

    with patch(RUN, side_effect=fake_run) as run:
        findings = SqlmapAdapter(tools).execute(
            "http://example.com/login", {"data": "user=a&pass=b", "cookie": "sid=1", "level": 3}
        )

    cmd = run.call_args[0][0]
    assert cmd[:4] == ["sqlmap", "-u", "http://example.com/login", "--batch"]
    assert cmd[cmd.index("--level") + 1] == "3"
    assert cmd[cmd.index("--risk") + 1] == "1"
    assert cmd[cmd.index("--data") + 1] == "user=a&pass=b"
    assert cmd[cmd.index("--cookie") + 1] == "sid=1"
    assert run.call_args[1]["timeout"] == 900
    assert len(findings) == 1
    assert not os.path.exists(seen["output_dir"])


def test_sqlmap_timeout_returns_synthetic_finding(tools):
    with patch(RUN, side_effect=subprocess.TimeoutExpired(cmd="sqlmap", timeout=900)):
        findings = SqlmapAdapter(tools).execute("http://example.com/login")
    assert len(findings) == 1
    assert findings[0].cve_id == "CVE-2021-44228"


def test_custom_tool_paths(tmp_path):
    tools = ToolSettings(nmap_path="/opt/nmap/bin/nmap", nmap_timeout=5, temp_dir=str(tmp_path))
    with patch(RUN, side_effect=lambda cmd, **kw: completed(cmd, returncode=1)) as run:
        NmapAdapter(tools).execute("10.0.0.1")
    assert run.call_args[0][0][0] == "/opt/nmap/bin/nmap"
    assert run.call_args[1]["timeout"] == 5


def test_zap_always_synthetic(tools):
    with patch(RUN) as run:
        findings = ZapAdapter(tools, permissive=False).execute("http://example.com")
    run.assert_not_called()
    assert [f.vulnerability_type for f in findings] == ["XSS"]


def test_nmap_report_with_invalid_utf8(tools):
    report = NMAP_XML.encode("utf-8").replace(b'product="OpenSSH"', b'product="Open\xff\xfeSSH"')

    def fake_run(cmd, **kwargs):
        with open(cmd[cmd.index("-oX") + 1], "wb") as f:
            f.write(report)
        return completed(cmd)

    with patch(RUN, side_effect=fake_run):
        findings = NmapAdapter(tools).execute("example.com")

    assert [f.port for f in findings] == [22, 80]
    assert "\ufffd" in findings[0].raw_output["service"]["product"]


def test_missing_nikto_report_yields_no_findings(tools):
    def fake_run(cmd, **kwargs):
        os.remove(cmd[cmd.index("-output") + 1])
        return completed(cmd)

    with patch(RUN, side_effect=fake_run):
        assert NiktoAdapter(tools).execute("example.com") == []
