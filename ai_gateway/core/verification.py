"""
Hallucination verification pipeline.

Merges static pattern findings with findings derived from a sandboxed run
into a single confidence-weighted report with per-category
recommendations and business impact estimates.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple

from ai_gateway.storage.models import (
    MAX_SEVERITY_WEIGHT,
    Category,
    Evidence,
    ExecutionError,
    ExecutionOutcome,
    FindingSource,
    HallucinationFinding,
    Recommendation,
    Severity,
    VerificationResult,
)
from .code_extraction import infer_language
from .impact import ImpactTable
from .patterns import PatternMatcher
from .sandbox import ERROR_CATEGORY_TABLE, ExecutionSandbox, SandboxLimits, SandboxUnavailableError

logger = logging.getLogger(__name__)

RUNTIME_ERROR_CONFIDENCE = 0.9
SECURITY_ERROR_CONFIDENCE = 0.95
TIMEOUT_CONFIDENCE = 1.0
MEMORY_CONFIDENCE = 0.8
WALL_TIME_CONFIDENCE = 0.8
CPU_CONFIDENCE = 0.7

RUNTIME_FIXES: Dict[str, str] = {
    "TypeError": "Check data types and add type validation",
    "IndexError": "Add bounds checking before sequence access",
    "KeyError": "Use .get() or verify the key exists",
    "NameError": "Define the variable before use",
    "UnboundLocalError": "Assign the local before reading it, or declare it global",
    "AttributeError": "Verify the object has the required attribute",
    "ImportError": "Install the required package or fix the import path",
    "ModuleNotFoundError": "Install the required package or fix the import path",
    "MemoryError": "Reduce memory usage",
    "MemoryLimitExceeded": "Reduce memory usage",
    "RecursionError": "Add a base case or use iteration",
    "ZeroDivisionError": "Guard the divisor against zero",
    "SecurityError": "Remove dangerous operations",
    "SyntaxError": "Fix the syntax error",
    "IndentationError": "Fix the indentation",
}


@dataclass(frozen=True)
class _RecommendationTemplate:
    title: str
    description: str
    action_items: Tuple[str, ...]


RECOMMENDATION_TEMPLATES: Dict[Category, _RecommendationTemplate] = {
    Category.MAPPING: _RecommendationTemplate(
        title="Data Type and Structure Issues",
        description="Code contains potential data mapping problems",
        action_items=(
            "Add type checking and validation",
            "Verify data structure assumptions",
            "Test with edge cases and different data types",
        ),
    ),
    Category.NAMING: _RecommendationTemplate(
        title="Identifier and Reference Issues",
        description="Code contains potential naming and reference problems",
        action_items=(
            "Verify all variables and functions are defined",
            "Check import statements and module availability",
            "Review scope and naming conventions",
        ),
    ),
    Category.RESOURCE: _RecommendationTemplate(
        title="Resource and Performance Issues",
        description="Code may have resource consumption problems",
        action_items=(
            "Add resource limits and monitoring",
            "Optimize memory and CPU usage",
            "Implement proper error handling for resource constraints",
        ),
    ),
    Category.LOGIC: _RecommendationTemplate(
        title="Logic and Flow Issues",
        description="Code contains potential logical inconsistencies",
        action_items=(
            "Review algorithm logic and flow",
            "Add proper termination conditions",
            "Test with various input scenarios",
        ),
    ),
}


@dataclass(frozen=True)
class ExecutionThresholds:
    """Resource levels above which a run is reported as a finding."""
    memory_mb: float = 64.0
    wall_time_ms: int = 3000
    cpu_percent: float = 80.0
    # CPU% of very short runs is noise
    cpu_min_wall_time_ms: int = 1000


@dataclass(frozen=True)
class VerificationSettings:
    """Tunable behaviour of the verification pipeline."""
    execute: bool = True
    confidence_threshold: float = 0.7
    sandbox: SandboxLimits = field(default_factory=SandboxLimits)
    thresholds: ExecutionThresholds = field(default_factory=ExecutionThresholds)
    impact: ImpactTable = field(default_factory=ImpactTable)

    def __post_init__(self):
        """Validate the confidence threshold is a probability."""
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ValueError("confidence_threshold must be between 0 and 1")


def overall_rate(findings: Sequence[HallucinationFinding]) -> float:
    """Severity-weighted, confidence-scaled rate in [0, 1]."""
    if not findings:
        return 0.0
    total = sum(finding.weight for finding in findings)
    return min(1.0, total / (MAX_SEVERITY_WEIGHT * len(findings)))


def estimate_time_to_fix(hours: float) -> str:
    if hours < 1:
        return "15-30 minutes"
    if hours < 2:
        return "30-60 minutes"
    if hours < 4:
        return "1-2 hours"
    if hours < 8:
        return "2-4 hours"
    return "4+ hours"


def _memory_severity(megabytes: float) -> Severity:
    if megabytes > 200:
        return Severity.CRITICAL
    if megabytes > 128:
        return Severity.HIGH
    if megabytes > 64:
        return Severity.MEDIUM
    return Severity.LOW


def _wall_time_severity(milliseconds: int) -> Severity:
    if milliseconds > 10000:
        return Severity.CRITICAL
    if milliseconds > 5000:
        return Severity.HIGH
    return Severity.MEDIUM


class HallucinationVerifier:
    """Static + execution verification of AI-generated code.

    Collaborators are passed in explicitly; anything omitted is built from
    the settings.
    """

    def __init__(
        self,
        matcher: Optional[PatternMatcher] = None,
        sandbox: Optional[ExecutionSandbox] = None,
        settings: Optional[VerificationSettings] = None,
    ):
        self.settings = settings or VerificationSettings()
        self.matcher = matcher or PatternMatcher(impact_table=self.settings.impact)
        self.sandbox = sandbox or ExecutionSandbox(self.settings.sandbox)

    async def verify(self, code: str, language: Optional[str] = None) -> VerificationResult:
        """Analyze a code snippet.

        Never raises for detector problems: a sandbox that cannot start or
        any unexpected failure yields ``VerificationResult.failed``.
        Cancellation still propagates.

        Args:
            code: Candidate source
            language: Declared language tag, inferred when omitted

        Returns:
            VerificationResult
        """
        resolved = infer_language(code or "", language)
        try:
            try:
                static = self.matcher.scan(code, resolved)
            except Exception:
                logger.exception("Pattern matcher failed, continuing without static findings")
                static = []

            execution: Optional[ExecutionOutcome] = None
            dynamic: List[HallucinationFinding] = []
            if self.settings.execute and resolved == "python":
                execution = await self.sandbox.execute(code, resolved)
                dynamic = self.execution_findings(execution)

            merged = self._merge(static, dynamic)
            kept = [f for f in merged if f.confidence >= self.settings.confidence_threshold]
            return self._build_result(kept, execution, resolved)
        except SandboxUnavailableError as e:
            logger.error("Sandbox unavailable: %s", e)
            return VerificationResult.failed(str(e), language=resolved)
        except Exception as e:
            logger.exception("Verification failed")
            return VerificationResult.failed(f"{type(e).__name__}: {e}", language=resolved)

    def execution_findings(self, outcome: ExecutionOutcome) -> List[HallucinationFinding]:
        """Translate an execution outcome into findings."""
        findings: List[HallucinationFinding] = []
        for error in outcome.errors:
            if error.type == "TimeoutError" and outcome.timed_out:
                continue
            mapping = ERROR_CATEGORY_TABLE.get(error.type)
            if mapping is None:
                logger.debug("No category for runtime error type %s", error.type)
                continue
            category, subtype, severity = mapping
            confidence = SECURITY_ERROR_CONFIDENCE if error.type == "SecurityError" else RUNTIME_ERROR_CONFIDENCE
            findings.append(self._runtime_finding(error, category, subtype, severity, confidence))

        if outcome.timed_out:
            findings.append(self._resource_finding(
                rule="runtime:timeout",
                subtype="computational_boundary",
                severity=Severity.CRITICAL,
                confidence=TIMEOUT_CONFIDENCE,
                description="Code execution timed out",
                content=f"Execution did not finish within {self.settings.sandbox.timeout_seconds:g}s",
                fix="Optimize the algorithm or add proper termination conditions",
            ))

        usage = outcome.resource_usage
        thresholds = self.settings.thresholds
        over_delta = usage.memory_mb > thresholds.memory_mb
        over_ceiling = usage.peak_memory_mb > self.settings.sandbox.memory_limit_mb
        if (over_delta or over_ceiling) and "MemoryLimitExceeded" not in outcome.error_types():
            size = usage.memory_mb if over_delta else usage.peak_memory_mb
            findings.append(self._resource_finding(
                rule="runtime:memory",
                subtype="physical_constraint",
                severity=_memory_severity(size),
                confidence=MEMORY_CONFIDENCE,
                description="Code uses excessive memory",
                content=f"Memory usage {size:.1f}MB",
                fix="Optimize memory usage or process data in chunks",
            ))

        if not outcome.timed_out and usage.wall_time_ms > thresholds.wall_time_ms:
            findings.append(self._resource_finding(
                rule="runtime:wall_time",
                subtype="computational_boundary",
                severity=_wall_time_severity(usage.wall_time_ms),
                confidence=WALL_TIME_CONFIDENCE,
                description="Code runs for a long time",
                content=f"Wall time {usage.wall_time_ms}ms",
                fix="Reduce algorithmic complexity",
            ))

        if usage.cpu_percent > thresholds.cpu_percent and usage.wall_time_ms >= thresholds.cpu_min_wall_time_ms:
            findings.append(self._resource_finding(
                rule="runtime:cpu",
                subtype="computational_boundary",
                severity=Severity.MEDIUM,
                confidence=CPU_CONFIDENCE,
                description="Code saturates the CPU",
                content=f"CPU usage {usage.cpu_percent:.0f}%",
                fix="Reduce busy work or add pacing",
            ))
        return findings

    def _runtime_finding(
        self, error: ExecutionError, category: Category, subtype: str, severity: Severity, confidence: float,
    ) -> HallucinationFinding:
        return HallucinationFinding(
            category=category,
            subtype=subtype,
            severity=severity,
            confidence=confidence,
            rule=f"runtime:{error.type}",
            description=f"Runtime {error.type}: {error.message}",
            source=FindingSource.EXECUTION,
            evidence=(Evidence(type="execution_error", content=error.message or error.type, line_number=error.line_number),),
            line_numbers=(error.line_number,) if error.line_number else (),
            suggested_fix=RUNTIME_FIXES.get(error.type, "Review the code for logical errors"),
            business_impact=self.settings.impact.finding_impact(severity, confidence),
        )

    def _resource_finding(
        self, rule: str, subtype: str, severity: Severity, confidence: float, description: str, content: str, fix: str,
    ) -> HallucinationFinding:
        return HallucinationFinding(
            category=Category.RESOURCE,
            subtype=subtype,
            severity=severity,
            confidence=confidence,
            rule=rule,
            description=description,
            source=FindingSource.EXECUTION,
            evidence=(Evidence(type="resource_usage", content=content),),
            suggested_fix=fix,
            business_impact=self.settings.impact.finding_impact(severity, confidence),
        )

    def _merge(
        self, static: List[HallucinationFinding], dynamic: List[HallucinationFinding],
    ) -> List[HallucinationFinding]:
        """Fold execution findings into matching static ones.

        A match has the same category and subtype and either shares a line
        or the execution finding has no line. The higher-confidence finding
        survives with the evidence of both.
        """
        merged = list(static)
        for finding in dynamic:
            line = finding.line_numbers[0] if finding.line_numbers else None
            for position, existing in enumerate(merged):
                if existing.source is not FindingSource.STATIC:
                    continue
                if (existing.category, existing.subtype) != (finding.category, finding.subtype):
                    continue
                if line is not None and line not in existing.line_numbers:
                    continue
                merged[position] = self._combine(existing, finding)
                break
            else:
                merged.append(finding)
        return merged

    def _combine(self, static: HallucinationFinding, runtime: HallucinationFinding) -> HallucinationFinding:
        primary, other = (runtime, static) if runtime.confidence > static.confidence else (static, runtime)
        return replace(
            primary,
            evidence=primary.evidence + other.evidence,
            line_numbers=tuple(sorted(set(primary.line_numbers) | set(other.line_numbers))),
            suggested_fix=primary.suggested_fix or other.suggested_fix,
        )

    def _build_result(
        self, findings: List[HallucinationFinding], execution: Optional[ExecutionOutcome], language: str,
    ) -> VerificationResult:
        ordered = sorted(findings, key=lambda f: (
            -f.severity.weight, -f.confidence, f.line_numbers[0] if f.line_numbers else 0,
        ))
        return VerificationResult(
            overall_rate=overall_rate(ordered),
            findings=tuple(ordered),
            recommendations=tuple(self.recommendations(ordered)),
            execution_result=execution,
            has_critical_issue=any(f.severity is Severity.CRITICAL for f in ordered),
            language=language,
        )

    def recommendations(self, findings: Sequence[HallucinationFinding]) -> List[Recommendation]:
        """One recommendation per category present, in category order."""
        table = self.settings.impact
        grouped: Dict[Category, List[HallucinationFinding]] = {}
        for finding in findings:
            grouped.setdefault(finding.category, []).append(finding)

        recommendations = []
        for category in Category:
            members = grouped.get(category)
            if not members:
                continue
            template = RECOMMENDATION_TEMPLATES[category]
            hours = sum(f.business_impact.dev_hours_wasted for f in members if f.business_impact)
            urgent = any(f.severity in (Severity.HIGH, Severity.CRITICAL) for f in members)
            recommendations.append(Recommendation(
                category=category,
                priority="high" if urgent else "medium",
                title=template.title,
                description=template.description,
                action_items=template.action_items,
                finding_count=len(members),
                estimated_time_to_fix=estimate_time_to_fix(hours),
                dev_hours_wasted=hours,
                cost_multiplier=table.category_multipliers[category],
                estimated_cost_usd=table.category_cost(category, hours),
            ))
        return recommendations
