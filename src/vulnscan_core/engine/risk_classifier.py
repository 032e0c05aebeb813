# src/vulnscan_core/engine/risk_classifier.py
"""
Risk classification: maps a RawFinding to a score, risk level and remediation text.

classify() is a pure function of its input and never raises. Any internal
error produces an info-level fallback so the scan keeps going.
"""
import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from vulnscan_core.engine.errors import ClassificationFailure
from vulnscan_core.engine.models import RiskLevel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RiskProfile:
    key: str
    base_score: float
    description: str
    fix_suggestions: Tuple[str, ...]


PROFILES: Dict[str, RiskProfile] = {
    'ssh_open': RiskProfile(
        'ssh_open', 5.3,
        'SSH service is exposed and accessible from external networks',
        (
            'Restrict SSH access to specific IP ranges using firewall rules',
            'Implement fail2ban to prevent brute force attacks',
            'Use key-based authentication instead of passwords',
            'Change SSH port from default 22 to a non-standard port',
            'Disable root login via SSH',
        ),
    ),
    'http_server_outdated': RiskProfile(
        'http_server_outdated', 7.5,
        'Web server is running an outdated version with known security vulnerabilities',
        (
            'Update web server to the latest stable version',
            'Apply all available security patches',
            'Review and harden server configuration',
            'Implement Web Application Firewall (WAF)',
            'Regular security updates and monitoring',
        ),
    ),
    'ssl_weak_cipher': RiskProfile(
        'ssl_weak_cipher', 3.7,
        'Server supports weak SSL/TLS cipher suites that could be exploited',
        (
            'Disable weak cipher suites (RC4, DES, 3DES)',
            'Enable only strong encryption algorithms (AES)',
            'Use TLS 1.2 or higher versions only',
            'Implement Perfect Forward Secrecy (PFS)',
            'Regular SSL/TLS configuration audits',
        ),
    ),
    'database_exposed': RiskProfile(
        'database_exposed', 8.1,
        'Database service is accessible from external networks',
        (
            'Restrict database access to application servers only',
            'Use VPN for remote database administration',
            'Implement database firewall rules',
            'Enable database encryption at rest and in transit',
            'Regular database security audits',
        ),
    ),
    'sql_injection': RiskProfile(
        'sql_injection', 9.8,
        'Application is vulnerable to SQL injection attacks',
        (
            'Use parameterized queries and prepared statements',
            'Implement input validation and sanitization',
            'Apply principle of least privilege for database users',
            'Use stored procedures where appropriate',
            'Regular code security reviews and testing',
        ),
    ),
    'xss_vulnerability': RiskProfile(
        'xss_vulnerability', 6.1,
        'Application is vulnerable to Cross-Site Scripting (XSS) attacks',
        (
            'Implement proper input validation and output encoding',
            'Use Content Security Policy (CSP) headers',
            'Sanitize user input before displaying',
            'Use secure coding practices for web development',
            'Regular security testing and code reviews',
        ),
    ),
    'open_port': RiskProfile(
        'open_port', 0.0,
        'Network service detected on open port',
        (
            'Review if this service is necessary',
            'Implement access controls if service is required',
            'Monitor service for security updates',
            'Consider using VPN for sensitive services',
        ),
    ),
}

DEFAULT_PROFILE = 'open_port'

REMOTE_ACCESS_PORTS = {22, 23, 3389}
DATABASE_SERVICES = {'mysql', 'postgresql', 'mssql'}
DATABASE_PORTS = {3306, 5432, 1433}
WEB_SERVICES = {'http', 'https'}
WEB_PORTS = {80, 443}

IMPACTS = {
    RiskLevel.CRITICAL: 'Complete system compromise, data breach, or service disruption highly likely',
    RiskLevel.HIGH: 'Significant security risk with potential for unauthorized access or data exposure',
    RiskLevel.MEDIUM: 'Moderate security risk that could lead to limited unauthorized access',
    RiskLevel.LOW: 'Minor security concern with limited potential impact',
    RiskLevel.INFO: 'Informational finding for security awareness',
}

REMEDIATION_PRIORITIES = {
    RiskLevel.CRITICAL: 'Immediate (within 24 hours)',
    RiskLevel.HIGH: 'High (within 1 week)',
    RiskLevel.MEDIUM: 'Medium (within 1 month)',
    RiskLevel.LOW: 'Low (within 3 months)',
    RiskLevel.INFO: 'Informational (as time permits)',
}

REFERENCES = {
    'ssh_open': [
        'https://www.ssh.com/academy/ssh/security',
        'https://nvd.nist.gov/vuln/search/results?form_type=Basic&results_type=overview&query=SSH',
    ],
    'sql_injection': [
        'https://owasp.org/www-community/attacks/SQL_Injection',
        'https://cwe.mitre.org/data/definitions/89.html',
    ],
    'xss_vulnerability': [
        'https://owasp.org/www-community/attacks/xss/',
        'https://cwe.mitre.org/data/definitions/79.html',
    ],
}

SUGGESTION_SEPARATOR = '\n• '


@dataclass
class Classification:
    risk_level: str
    score: float
    title: str
    description: str
    fix_suggestion: str
    impact: str
    remediation_priority: str
    references: List[str] = field(default_factory=list)
    confidence: float = 0.0
    profile: Optional[str] = None
    technical_details: Dict[str, Any] = field(default_factory=dict)

    def to_metadata(self) -> dict:
        return asdict(self)


@dataclass
class _Facts:
    vulnerability_type: str
    title: str
    description: str
    port: Optional[int]
    service: Optional[str]
    cve_id: Optional[str]
    version: Optional[str]


def _extract(raw) -> _Facts:
    port = raw.port
    if port is not None:
        try:
            port = int(port)
        except (TypeError, ValueError):
            raise ClassificationFailure(f"invalid port {port!r}")
    return _Facts(
        vulnerability_type=(raw.vulnerability_type or '').lower(),
        title=(raw.title or '').lower(),
        description=(raw.description or '').lower(),
        port=port,
        service=raw.service.lower() if raw.service else None,
        cve_id=raw.cve_id or None,
        version=raw.version or None,
    )


# Evaluated in order, first match wins
RULES: List[Tuple[str, Callable[[_Facts], bool]]] = [
    ('sql_injection', lambda f: 'sql' in f.vulnerability_type or 'sql injection' in f.title),
    ('xss_vulnerability', lambda f: 'xss' in f.vulnerability_type or 'cross-site scripting' in f.title),
    ('ssh_open', lambda f: f.service == 'ssh' or f.port == 22),
    ('http_server_outdated', lambda f: (f.service in WEB_SERVICES or f.port in WEB_PORTS)
        and ('outdated' in f.description or 'vulnerable version' in f.description)),
    ('ssl_weak_cipher', lambda f: 'ssl' in f.vulnerability_type or 'tls' in f.vulnerability_type),
    ('database_exposed', lambda f: f.service in DATABASE_SERVICES or f.port in DATABASE_PORTS),
]


def select_profile(facts: _Facts) -> RiskProfile:
    for key, matches in RULES:
        if matches(facts):
            return PROFILES[key]
    return PROFILES[DEFAULT_PROFILE]


def risk_multiplier(facts: _Facts) -> float:
    multiplier = 1.0
    if facts.port in REMOTE_ACCESS_PORTS:
        multiplier += 0.2
    if facts.service in DATABASE_SERVICES:
        multiplier += 0.3
    if facts.cve_id:
        multiplier += 0.4
    return multiplier


def round_score(score: float) -> float:
    # half-up to one decimal
    return math.floor(score * 10 + 0.5) / 10


def risk_level_for(score: float) -> RiskLevel:
    if score >= 9.0:
        return RiskLevel.CRITICAL
    if score >= 7.0:
        return RiskLevel.HIGH
    if score >= 4.0:
        return RiskLevel.MEDIUM
    if score > 0.0:
        return RiskLevel.LOW
    return RiskLevel.INFO


def confidence_for(facts: _Facts) -> float:
    confidence = 0.7
    if facts.cve_id:
        confidence += 0.2
    if facts.service:
        confidence += 0.1
    if facts.version:
        confidence += 0.1
    return round(min(confidence, 1.0), 2)


def _title(raw, profile: RiskProfile) -> str:
    if profile.key == 'ssh_open':
        return f"SSH Service Exposed on Port {raw.port or 22}"
    if profile.key == 'database_exposed':
        return 'Database Service Accessible from External Networks'
    return raw.title or raw.vulnerability_type or 'Security Finding'


def _description(raw, profile: RiskProfile) -> str:
    description = profile.description
    if raw.service:
        description += f" The {raw.service} service is running on port {raw.port or 'unknown'}."
    if raw.cve_id:
        description += f" This finding is associated with {raw.cve_id}."
    return description


def _fix_suggestion(raw, profile: RiskProfile) -> str:
    suggestions = list(profile.fix_suggestions)
    if raw.port:
        suggestions.append(f"Consider changing the service from default port {raw.port} if possible")
    return SUGGESTION_SEPARATOR.join(suggestions)


def classify(raw) -> Classification:
    try:
        return _classify(raw)
    except Exception as e:
        logger.error(f"Risk classification failed, using fallback: {e}")
        return fallback_classification(raw)


def _classify(raw) -> Classification:
    facts = _extract(raw)
    profile = select_profile(facts)
    score = round_score(min(profile.base_score * risk_multiplier(facts), 10.0))
    level = risk_level_for(score)
    return Classification(
        risk_level=level.value,
        score=score,
        title=_title(raw, profile),
        description=_description(raw, profile),
        fix_suggestion=_fix_suggestion(raw, profile),
        impact=IMPACTS[level],
        remediation_priority=REMEDIATION_PRIORITIES[level],
        references=list(REFERENCES.get(profile.key, [])),
        confidence=confidence_for(facts),
        profile=profile.key,
        technical_details={
            'port': facts.port,
            'service': raw.service,
            'protocol': raw.protocol or 'tcp',
            'version': raw.version,
            'raw_output': raw.raw_output,
        },
    )


def fallback_classification(raw) -> Classification:
    try:
        title = raw.title or 'Security Finding'
    except AttributeError:
        title = 'Security Finding'
    return Classification(
        risk_level=RiskLevel.INFO.value,
        score=0.0,
        title=title,
        description='A security finding was detected but could not be fully analyzed.',
        fix_suggestion='Review this finding manually and apply appropriate security measures.',
        impact='Impact assessment unavailable',
        remediation_priority='Manual review required',
        references=[],
        confidence=0.3,
        profile=None,
    )
