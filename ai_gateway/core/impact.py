"""
Business impact estimation for hallucination findings.

The dollar/hour constants are heuristics, not calibrated data, so they live
in a configurable table instead of being scattered through the detectors.
"""

from dataclasses import dataclass, field
from typing import Dict

from ai_gateway.storage.models import BusinessImpact, Category, Severity


@dataclass(frozen=True)
class SeverityImpact:
    """Impact of a single full-confidence finding at one severity."""
    hours: float
    cost_multiplier: float
    quality_points: int

    def __post_init__(self):
        """Validate impact values are non-negative."""
        if self.hours < 0:
            raise ValueError("hours cannot be negative")
        if self.cost_multiplier < 1.0:
            raise ValueError("cost_multiplier must be >= 1.0")
        if self.quality_points < 0:
            raise ValueError("quality_points cannot be negative")


def _default_severity_impacts() -> Dict[Severity, SeverityImpact]:
    return {
        Severity.LOW: SeverityImpact(hours=0.5, cost_multiplier=1.1, quality_points=5),
        Severity.MEDIUM: SeverityImpact(hours=2.0, cost_multiplier=1.3, quality_points=15),
        Severity.HIGH: SeverityImpact(hours=4.0, cost_multiplier=1.6, quality_points=30),
        Severity.CRITICAL: SeverityImpact(hours=8.0, cost_multiplier=2.0, quality_points=50),
    }


def _default_category_multipliers() -> Dict[Category, float]:
    return {
        Category.MAPPING: 1.3,
        Category.NAMING: 1.2,
        Category.RESOURCE: 1.6,
        Category.LOGIC: 1.4,
    }


@dataclass(frozen=True)
class ImpactTable:
    """Configurable business impact constants."""
    hourly_rate_usd: float = 100.0
    severity: Dict[Severity, SeverityImpact] = field(default_factory=_default_severity_impacts)
    category_multipliers: Dict[Category, float] = field(default_factory=_default_category_multipliers)

    def __post_init__(self):
        """Validate the table covers every severity and category."""
        if self.hourly_rate_usd < 0:
            raise ValueError("hourly_rate_usd cannot be negative")
        missing_severities = set(Severity) - set(self.severity)
        if missing_severities:
            names = sorted(s.value for s in missing_severities)
            raise ValueError(f"impact table missing severities: {names}")
        missing_categories = set(Category) - set(self.category_multipliers)
        if missing_categories:
            names = sorted(c.value for c in missing_categories)
            raise ValueError(f"impact table missing categories: {names}")

    def finding_impact(self, severity: Severity, confidence: float) -> BusinessImpact:
        """Impact of one finding, scaled by how sure the detector is."""
        entry = self.severity[severity]
        return BusinessImpact(
            dev_hours_wasted=round(entry.hours * confidence, 4),
            cost_multiplier=entry.cost_multiplier,
            quality_impact_points=int(round(entry.quality_points * confidence)),
        )

    def category_cost(self, category: Category, hours: float) -> float:
        """USD estimate: hours x category multiplier x developer hourly rate."""
        return hours * self.category_multipliers[category] * self.hourly_rate_usd


DEFAULT_IMPACT_TABLE = ImpactTable()
