"""
Data models for storage layer.

Defines the interaction ledger entries and the verification report
structures persisted alongside them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Category(Enum):
    """Hallucination classes recognised by the verification pipeline."""
    MAPPING = "mapping"
    NAMING = "naming"
    RESOURCE = "resource"
    LOGIC = "logic"


class Severity(Enum):
    """Declared severity of a finding, lowest first."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def weight(self) -> int:
        """Weight used when computing the overall hallucination rate."""
        return _SEVERITY_WEIGHTS[self]


_SEVERITY_WEIGHTS = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}

MAX_SEVERITY_WEIGHT = 4


class FindingSource(Enum):
    """Detector that produced a finding."""
    STATIC = "static"
    EXECUTION = "execution"


@dataclass(frozen=True)
class Evidence:
    """One piece of supporting evidence for a finding."""
    type: str
    content: str
    line_number: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type, "content": self.content}
        if self.line_number is not None:
            data["lineNumber"] = self.line_number
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Evidence":
        return cls(
            type=data["type"],
            content=data["content"],
            line_number=data.get("lineNumber"),
        )


@dataclass(frozen=True)
class BusinessImpact:
    """Estimated cost of leaving a finding unresolved."""
    dev_hours_wasted: float
    cost_multiplier: float
    quality_impact_points: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "devHoursWasted": self.dev_hours_wasted,
            "costMultiplier": self.cost_multiplier,
            "qualityImpactPoints": self.quality_impact_points,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BusinessImpact":
        return cls(
            dev_hours_wasted=float(data["devHoursWasted"]),
            cost_multiplier=float(data["costMultiplier"]),
            quality_impact_points=int(data["qualityImpactPoints"]),
        )


@dataclass(frozen=True)
class HallucinationFinding:
    """Immutable record of one detected hallucination instance."""
    category: Category
    subtype: str
    severity: Severity
    confidence: float
    rule: str
    description: str
    source: FindingSource
    evidence: Tuple[Evidence, ...] = ()
    line_numbers: Tuple[int, ...] = ()
    suggested_fix: Optional[str] = None
    business_impact: Optional[BusinessImpact] = None

    def __post_init__(self):
        """Validate confidence is a probability."""
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError("confidence must be between 0 and 1")

    @property
    def weight(self) -> float:
        """Severity weight scaled by confidence."""
        return self.severity.weight * self.confidence

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "category": self.category.value,
            "subtype": self.subtype,
            "severity": self.severity.value,
            "confidence": round(self.confidence, 4),
            "rule": self.rule,
            "description": self.description,
            "source": self.source.value,
            "evidence": [item.to_dict() for item in self.evidence],
            "lineNumbers": list(self.line_numbers),
        }
        if self.suggested_fix is not None:
            data["suggestedFix"] = self.suggested_fix
        if self.business_impact is not None:
            data["businessImpact"] = self.business_impact.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HallucinationFinding":
        impact = data.get("businessImpact")
        return cls(
            category=Category(data["category"]),
            subtype=data["subtype"],
            severity=Severity(data["severity"]),
            confidence=float(data["confidence"]),
            rule=data.get("rule", ""),
            description=data.get("description", ""),
            source=FindingSource(data.get("source", FindingSource.STATIC.value)),
            evidence=tuple(Evidence.from_dict(item) for item in data.get("evidence", [])),
            line_numbers=tuple(data.get("lineNumbers", [])),
            suggested_fix=data.get("suggestedFix"),
            business_impact=BusinessImpact.from_dict(impact) if impact else None,
        )


@dataclass(frozen=True)
class ExecutionError:
    """Runtime error raised by the candidate code, typed by exception name."""
    type: str
    message: str
    line_number: Optional[int] = None
    traceback: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type, "message": self.message}
        if self.line_number is not None:
            data["lineNumber"] = self.line_number
        if self.traceback:
            data["traceback"] = self.traceback
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionError":
        return cls(
            type=data.get("type") or "UnknownError",
            message=data.get("message") or "",
            line_number=data.get("lineNumber"),
            traceback=data.get("traceback"),
        )


@dataclass(frozen=True)
class ResourceUsage:
    """Resources consumed by one sandboxed execution."""
    memory_mb: float = 0.0
    peak_memory_mb: float = 0.0
    wall_time_ms: int = 0
    cpu_percent: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memoryMB": round(self.memory_mb, 3),
            "peakMemoryMB": round(self.peak_memory_mb, 3),
            "wallTimeMs": self.wall_time_ms,
            "cpuPercent": round(self.cpu_percent, 2),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceUsage":
        return cls(
            memory_mb=float(data.get("memoryMB", 0.0)),
            peak_memory_mb=float(data.get("peakMemoryMB", 0.0)),
            wall_time_ms=int(data.get("wallTimeMs", 0)),
            cpu_percent=float(data.get("cpuPercent", 0.0)),
        )


@dataclass(frozen=True)
class CodeQualityMetrics:
    """Structural and readability metrics of one extracted snippet."""
    syntax_valid: bool = True
    lines_of_code: int = 0
    complexity: float = 0.0
    has_functions: bool = False
    has_classes: bool = False
    has_tests: bool = False
    readability: float = 5.0
    potential_issues: Tuple[str, ...] = ()
    language: Optional[str] = None

    def __post_init__(self):
        """Validate complexity (0-10) and readability (1-10) ranges."""
        if not 0.0 <= self.complexity <= 10.0:
            raise ValueError("complexity must be between 0 and 10")
        if not 1.0 <= self.readability <= 10.0:
            raise ValueError("readability must be between 1 and 10")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "syntaxValid": self.syntax_valid,
            "linesOfCode": self.lines_of_code,
            "complexity": round(self.complexity, 2),
            "hasFunctions": self.has_functions,
            "hasClasses": self.has_classes,
            "hasTests": self.has_tests,
            "estimatedReadability": round(self.readability, 2),
            "potentialIssues": list(self.potential_issues),
        }
        if self.language is not None:
            data["language"] = self.language
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CodeQualityMetrics":
        return cls(
            syntax_valid=bool(data.get("syntaxValid", True)),
            lines_of_code=int(data.get("linesOfCode", 0)),
            complexity=float(data.get("complexity", 0.0)),
            has_functions=bool(data.get("hasFunctions")),
            has_classes=bool(data.get("hasClasses")),
            has_tests=bool(data.get("hasTests")),
            readability=float(data.get("estimatedReadability", 5.0)),
            potential_issues=tuple(data.get("potentialIssues", ())),
            language=data.get("language"),
        )


@dataclass(frozen=True)
class ExecutionOutcome:
    """Result of running candidate code in the sandbox.

    Security rejections, timeouts and resource breaches are all expressed
    as unsuccessful outcomes rather than exceptions.
    """
    success: bool
    stdout: str = ""
    stderr: str = ""
    errors: Tuple[ExecutionError, ...] = ()
    resource_usage: ResourceUsage = field(default_factory=ResourceUsage)
    security_flags: Tuple[str, ...] = ()
    timed_out: bool = False
    exit_code: Optional[int] = None

    def error_types(self) -> List[str]:
        return [error.type for error in self.errors]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "errors": [error.to_dict() for error in self.errors],
            "resourceUsage": self.resource_usage.to_dict(),
            "securityFlags": list(self.security_flags),
            "timedOut": self.timed_out,
            "exitCode": self.exit_code,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionOutcome":
        return cls(
            success=bool(data.get("success")),
            stdout=data.get("stdout", ""),
            stderr=data.get("stderr", ""),
            errors=tuple(ExecutionError.from_dict(item) for item in data.get("errors", [])),
            resource_usage=ResourceUsage.from_dict(data.get("resourceUsage", {})),
            security_flags=tuple(data.get("securityFlags", [])),
            timed_out=bool(data.get("timedOut")),
            exit_code=data.get("exitCode"),
        )


@dataclass(frozen=True)
class Recommendation:
    """Actionable advice for one hallucination category."""
    category: Category
    priority: str
    title: str
    description: str
    action_items: Tuple[str, ...]
    finding_count: int
    estimated_time_to_fix: str
    dev_hours_wasted: float
    cost_multiplier: float
    estimated_cost_usd: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "priority": self.priority,
            "title": self.title,
            "description": self.description,
            "actionItems": list(self.action_items),
            "findingCount": self.finding_count,
            "estimatedTimeToFix": self.estimated_time_to_fix,
            "businessImpact": {
                "devHoursWasted": round(self.dev_hours_wasted, 4),
                "costMultiplier": self.cost_multiplier,
                "estimatedCostUSD": round(self.estimated_cost_usd, 2),
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Recommendation":
        impact = data.get("businessImpact", {})
        return cls(
            category=Category(data["category"]),
            priority=data["priority"],
            title=data["title"],
            description=data["description"],
            action_items=tuple(data.get("actionItems", [])),
            finding_count=int(data.get("findingCount", 0)),
            estimated_time_to_fix=data.get("estimatedTimeToFix", ""),
            dev_hours_wasted=float(impact.get("devHoursWasted", 0.0)),
            cost_multiplier=float(impact.get("costMultiplier", 1.0)),
            estimated_cost_usd=float(impact.get("estimatedCostUSD", 0.0)),
        )


@dataclass(frozen=True)
class VerificationResult:
    """Verification report for one analyzed code snippet.

    Derived data: only ever persisted inside its InteractionRecord.
    """
    overall_rate: float
    findings: Tuple[HallucinationFinding, ...] = ()
    recommendations: Tuple[Recommendation, ...] = ()
    execution_result: Optional[ExecutionOutcome] = None
    has_critical_issue: bool = False
    language: Optional[str] = None
    error: Optional[str] = None

    def __post_init__(self):
        """Validate rate bounds."""
        if not 0.0 <= self.overall_rate <= 1.0:
            raise ValueError("overall_rate must be between 0 and 1")

    @classmethod
    def failed(cls, error: str, language: Optional[str] = None) -> "VerificationResult":
        """Empty result explicitly flagged as a detector failure."""
        return cls(overall_rate=0.0, language=language, error=error)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "overallRate": round(self.overall_rate, 4),
            "findings": [finding.to_dict() for finding in self.findings],
            "recommendations": [rec.to_dict() for rec in self.recommendations],
            "hasCriticalIssue": self.has_critical_issue,
            "language": self.language,
        }
        if self.execution_result is not None:
            data["executionResult"] = self.execution_result.to_dict()
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VerificationResult":
        execution = data.get("executionResult")
        return cls(
            overall_rate=float(data.get("overallRate", 0.0)),
            findings=tuple(HallucinationFinding.from_dict(item) for item in data.get("findings", [])),
            recommendations=tuple(Recommendation.from_dict(item) for item in data.get("recommendations", [])),
            execution_result=ExecutionOutcome.from_dict(execution) if execution else None,
            has_critical_issue=bool(data.get("hasCriticalIssue")),
            language=data.get("language"),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class InteractionRecord:
    """Immutable record of one proxied AI interaction.

    Append-only facts that create an auditable ledger of AI usage.
    Once written, these records must never be modified.
    """
    request_id: str
    timestamp: str
    provider: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost_usd: float
    task_type: str
    retry_count: int = 0
    upstream_status: Optional[int] = None
    user_prompt: Optional[str] = None
    ai_response_text: Optional[str] = None
    extracted_code: Optional[str] = None
    code_language: Optional[str] = None
    verification_result: Optional[VerificationResult] = None
    code_quality_metrics: Optional[CodeQualityMetrics] = None
    code_quality_score: Optional[int] = None
    effectiveness_score: Optional[int] = None

    def __post_init__(self):
        """Coding records with code carry exactly one verification result.

        Quality and effectiveness scores are 0-100 and only accompany code.
        """
        has_code = self.task_type == "coding" and bool(self.extracted_code)
        if has_code and self.verification_result is None:
            raise ValueError("coding interactions with extracted code require a verification result")
        if not has_code and self.verification_result is not None:
            raise ValueError("verification result is only valid for coding interactions with code")
        scored = (self.code_quality_metrics, self.code_quality_score, self.effectiveness_score)
        if not has_code and any(value is not None for value in scored):
            raise ValueError("code quality is only valid for coding interactions with code")
        for name in ("code_quality_score", "effectiveness_score"):
            score = getattr(self, name)
            if score is not None and not 0 <= score <= 100:
                raise ValueError(f"{name} must be between 0 and 100")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "requestId": self.request_id,
            "timestamp": self.timestamp,
            "provider": self.provider,
            "model": self.model,
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
            "costUSD": self.cost_usd,
            "taskType": self.task_type,
            "retryCount": self.retry_count,
            "upstreamStatus": self.upstream_status,
        }
        optional = {
            "userPrompt": self.user_prompt,
            "aiResponseText": self.ai_response_text,
            "extractedCode": self.extracted_code,
            "codeLanguage": self.code_language,
        }
        data.update({key: value for key, value in optional.items() if value is not None})
        if self.verification_result is not None:
            data["verificationResult"] = self.verification_result.to_dict()
        if self.code_quality_metrics is not None:
            data["codeQualityMetrics"] = self.code_quality_metrics.to_dict()
        if self.code_quality_score is not None:
            data["codeQualityScore"] = self.code_quality_score
        if self.effectiveness_score is not None:
            data["effectivenessScore"] = self.effectiveness_score
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InteractionRecord":
        verification = data.get("verificationResult")
        metrics = data.get("codeQualityMetrics")
        quality = data.get("codeQualityScore")
        effectiveness = data.get("effectivenessScore")
        return cls(
            request_id=data["requestId"],
            timestamp=data["timestamp"],
            provider=data["provider"],
            model=data.get("model", "unknown"),
            prompt_tokens=int(data.get("promptTokens", 0)),
            completion_tokens=int(data.get("completionTokens", 0)),
            total_tokens=int(data.get("totalTokens", 0)),
            cost_usd=float(data.get("costUSD", 0.0)),
            task_type=data.get("taskType", "chat"),
            retry_count=int(data.get("retryCount", 0)),
            upstream_status=data.get("upstreamStatus"),
            user_prompt=data.get("userPrompt"),
            ai_response_text=data.get("aiResponseText"),
            extracted_code=data.get("extractedCode"),
            code_language=data.get("codeLanguage"),
            verification_result=VerificationResult.from_dict(verification) if verification else None,
            code_quality_metrics=CodeQualityMetrics.from_dict(metrics) if metrics else None,
            code_quality_score=int(quality) if quality is not None else None,
            effectiveness_score=int(effectiveness) if effectiveness is not None else None,
        )


def utc_timestamp(moment: Optional[datetime] = None) -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a ``Z`` suffix."""
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse a record timestamp; naive values are taken as UTC.

    Raises:
        ValueError: If the value is not ISO-8601
    """
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def month_key(moment: datetime) -> str:
    """Calendar month of a moment in UTC, as ``YYYY-MM``."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m")


@dataclass(frozen=True)
class SpendTotals:
    """Month-to-date spend, overall and per provider."""
    total: float = 0.0
    by_provider: Dict[str, float] = field(default_factory=dict)

    def provider_total(self, provider: str) -> float:
        return self.by_provider.get(provider, 0.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": round(self.total, 6),
            "byProvider": {name: round(cost, 6) for name, cost in sorted(self.by_provider.items())},
        }
