# src/vulnscan_core/tools/nmap_adapter.py
"""
Port scanning through the nmap binary.

nmap writes an XML report to a temp file; every port in state "open"
becomes one RawFinding of type "Open Port".
"""
import os
import tempfile
from typing import List
from xml.etree import ElementTree

from vulnscan_core.engine.errors import ParseFailure
from .base import RawFinding, SecurityToolAdapter


class NmapAdapter(SecurityToolAdapter):
    name = "nmap"

    def build_command(self, target: str, options: dict, output_file: str) -> List[str]:
        cmd = [self.tools.nmap_path, "-T4", "-A", "-oX", output_file, target]
        if options.get("ports"):
            cmd += ["-p", str(options["ports"])]
        if options.get("scripts"):
            cmd += ["--script", str(options["scripts"])]
        return cmd

    def run_scan(self, target: str, options: dict) -> List[RawFinding]:
        fd, output_file = tempfile.mkstemp(prefix="nmap_", suffix=".xml", dir=self.tools.temp_dir)
        os.close(fd)
        try:
            self.run_command(self.build_command(target, options, output_file), self.tools.nmap_timeout)
            try:
                with open(output_file, "r", encoding="utf-8", errors="replace") as f:
                    content = f.read()
            except OSError as e:
                raise ParseFailure(f"could not read nmap report: {e}")
            return parse_nmap_xml(content)
        finally:
            if os.path.exists(output_file):
                os.remove(output_file)

    def synthetic_findings(self, target: str) -> List[RawFinding]:
        return [
            RawFinding(
                vulnerability_type="Open Port",
                title="SSH Service on Port 22",
                port=22,
                service="ssh",
                version="OpenSSH 8.2p1",
                protocol="tcp",
                affected_component=f"{target}:22",
                raw_output={
                    "host": target,
                    "port": 22,
                    "protocol": "tcp",
                    "state": "open",
                    "service": {"name": "ssh", "version": "OpenSSH 8.2p1"},
                },
            ),
            RawFinding(
                vulnerability_type="Open Port",
                title="HTTP Service on Port 80",
                port=80,
                service="http",
                version="Apache 2.4.29",
                protocol="tcp",
                affected_component=f"{target}:80",
                raw_output={
                    "host": target,
                    "port": 80,
                    "protocol": "tcp",
                    "state": "open",
                    "service": {"name": "http", "version": "Apache 2.4.29"},
                },
            ),
        ]


def parse_nmap_xml(xml_content: str) -> List[RawFinding]:
    try:
        root = ElementTree.fromstring(xml_content)
    except ElementTree.ParseError as e:
        raise ParseFailure(f"invalid nmap XML: {e}")

    findings = []
    for host in root.findall("host"):
        address = host.find("address")
        host_address = address.get("addr") if address is not None else None
        for port in host.findall("ports/port"):
            state = port.find("state")
            if state is None or state.get("state") != "open":
                continue
            port_id = port.get("portid")
            protocol = port.get("protocol")
            service = port.find("service")
            service_attrs = dict(service.attrib) if service is not None else {}
            service_name = service_attrs.get("name")
            try:
                port_number = int(port_id)
            except (TypeError, ValueError):
                raise ParseFailure(f"invalid port id {port_id!r}")
            findings.append(RawFinding(
                vulnerability_type="Open Port",
                title=f"{service_name or 'Unknown'} Service on Port {port_number}",
                port=port_number,
                service=service_name,
                version=service_attrs.get("version"),
                protocol=protocol,
                affected_component=f"{host_address}:{port_number}",
                raw_output={
                    "host": host_address,
                    "port": port_id,
                    "protocol": protocol,
                    "state": "open",
                    "service": service_attrs or None,
                },
            ))
    return findings
