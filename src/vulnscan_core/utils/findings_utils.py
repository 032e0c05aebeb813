from typing import Iterable

from vulnscan_core.engine.models import RiskLevel


def calculate_risk_stats(risk_levels: Iterable[str]):
    """
    Count findings by risk level (INFO, LOW, MEDIUM, HIGH, CRITICAL).
    Unknown levels are ignored.
    """
    risk_counts = {level.value: 0 for level in RiskLevel}

    for level in risk_levels:
        level = (level or "").lower()
        if level in risk_counts:
            risk_counts[level] += 1

    total_findings = sum(risk_counts.values())

    return {
        "risk_counts": risk_counts,
        "total_findings": total_findings
    }


def highest_risk(risk_levels: Iterable[str]):
    """Return the most severe risk level present, or None."""
    order = [level.value for level in RiskLevel]
    present = [order.index(level) for level in risk_levels if level in order]
    return order[max(present)] if present else None
