import pytest
from sqlalchemy import event
from sqlalchemy.exc import OperationalError

from vulnscan_core.config import EngineSettings, QueueSettings
from vulnscan_core.engine.db import create_session_factory
from vulnscan_core.engine.models import Finding, ScanType
from vulnscan_core.engine.scan_store import ScanStore
from vulnscan_core.tools.base import RawFinding


class FakeAdapter:
    """Stands in for a tool adapter: returns canned findings or raises."""

    def __init__(self, findings=None, error=None):
        self.findings = findings or []
        self.error = error
        self.calls = []

    def execute(self, target, options=None):
        self.calls.append((target, options))
        if self.error is not None:
            raise self.error
        return list(self.findings)


def open_port(port, service, version=None, target="example.com"):
    return RawFinding(
        vulnerability_type="Open Port",
        title=f"{service} Service on Port {port}",
        port=port,
        service=service,
        version=version,
        protocol="tcp",
        affected_component=f"{target}:{port}",
        raw_output={"host": target, "port": port, "state": "open"},
    )


@pytest.fixture
def settings(tmp_path):
    return EngineSettings(
        database_url=f"sqlite:///{tmp_path / 'scans.db'}",
        reconcile_interval=0,
        queue=QueueSettings(concurrency=3, backoff_base=0.01, poll_interval=0.01),
    )


@pytest.fixture
def session_factory(settings):
    return create_session_factory(settings.database_url)


@pytest.fixture
def store(session_factory):
    return ScanStore(session_factory)


@pytest.fixture
def fake_adapter():
    return FakeAdapter


@pytest.fixture
def port_finding():
    return open_port


@pytest.fixture
def fake_adapters():
    """nmap reports ssh/22 and http/80, every other tool reports nothing."""
    return {
        ScanType.NMAP: FakeAdapter([open_port(22, "ssh", "OpenSSH 8.2p1"), open_port(80, "http")]),
        ScanType.NIKTO: FakeAdapter(),
        ScanType.SQLMAP: FakeAdapter(),
        ScanType.ZAP: FakeAdapter(),
    }


class InsertFailures:
    """Fails chosen Finding inserts the way a locked sqlite database does."""

    def __init__(self):
        self.plan = []

    def fail_after(self, inserts_ok, failures=1):
        self.plan = [False] * inserts_ok + [True] * failures

    def __call__(self, mapper, connection, target):
        if self.plan and self.plan.pop(0):
            raise OperationalError("INSERT INTO findings", {}, Exception("database is locked"))


@pytest.fixture
def insert_failures():
    failures = InsertFailures()
    event.listen(Finding, "before_insert", failures)
    yield failures
    event.remove(Finding, "before_insert", failures)
