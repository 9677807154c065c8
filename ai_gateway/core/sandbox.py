"""
Resource-bounded execution sandbox.

Runs candidate Python in a fresh child interpreter under a wall-clock
timeout and reports what happened as an ExecutionOutcome. Code that fails
the safety screen is never executed.

Security model:
  - Weighted deny-list screen over the source (strings and comments masked)
  - Isolated interpreter (``-I``) with a minimal environment in a private
    temporary directory
  - Wall-clock timeout enforced with SIGKILL
  - Memory ceiling checked after the run from ``getrusage`` peaks; it is
    reported, not enforced by the kernel
"""

import asyncio
import json
import logging
import os
import re
import sys
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Pattern, Tuple

from ai_gateway.storage.models import Category, ExecutionError, ExecutionOutcome, ResourceUsage, Severity
from .patterns import SourceView

logger = logging.getLogger(__name__)

RISK_BUDGET = 0.5
RESULT_MARKER = "__EXECUTION_RESULT__"
SUPPORTED_LANGUAGES = frozenset({"python", "py", "python3"})
MAX_CAPTURED_OUTPUT = 65536

# Modules whose import alone is a risk, with their weight
DENIED_MODULES: Dict[str, float] = {
    "os": 0.6,
    "subprocess": 0.6,
    "sys": 0.6,
    "socket": 0.6,
    "shutil": 0.6,
    "ctypes": 0.6,
    "multiprocessing": 0.6,
    "importlib": 0.6,
    "pty": 0.6,
    "signal": 0.6,
    "urllib": 0.3,
    "http": 0.3,
    "requests": 0.3,
    "httpx": 0.3,
    "ftplib": 0.3,
    "smtplib": 0.3,
    "pathlib": 0.3,
    "tempfile": 0.3,
    "pickle": 0.3,
}

# (risk name, pattern over masked source, weight)
DENIED_CONSTRUCTS: Tuple[Tuple[str, Pattern, float], ...] = (
    ("call:eval", re.compile(r"(?<![\w.])eval\s*\("), 0.6),
    ("call:exec", re.compile(r"(?<![\w.])exec\s*\("), 0.6),
    ("call:compile", re.compile(r"(?<![\w.])compile\s*\("), 0.6),
    ("call:__import__", re.compile(r"(?<![\w.])__import__\s*\("), 0.6),
    ("escape:dunder", re.compile(r"\.__(?:subclasses|globals|builtins|code|bases|mro)__\b|\b__builtins__\b"), 0.6),
    ("file:open", re.compile(r"(?<![\w.])open\s*\("), 0.3),
    ("file:path_io", re.compile(r"\.(?:read_text|write_text|read_bytes|write_bytes|unlink|rmdir)\s*\("), 0.3),
    ("process:exit", re.compile(r"(?<![\w.])(?:exit|quit)\s*\("), 0.3),
    ("process:kill", re.compile(r"\.kill\s*\("), 0.3),
    ("debug:breakpoint", re.compile(r"(?<![\w.])breakpoint\s*\("), 0.3),
    ("introspection:getattr", re.compile(r"(?<![\w.])(?:getattr|setattr|delattr)\s*\("), 0.2),
    ("introspection:scope", re.compile(r"(?<![\w.])(?:globals|locals|vars|dir)\s*\("), 0.1),
    ("introspection:hasattr", re.compile(r"(?<![\w.])hasattr\s*\("), 0.1),
)

_IMPORT_STATEMENT = re.compile(r"^\s*(?:import\s+([\w.]+(?:\s+as\s+\w+)?(?:\s*,\s*[\w.]+(?:\s+as\s+\w+)?)*)|from\s+([\w.]+)\s+import\b)")

# Runtime error type -> (category, subtype, severity)
ERROR_CATEGORY_TABLE: Dict[str, Tuple[Category, str, Severity]] = {
    "TypeError": (Category.MAPPING, "data_compliance", Severity.HIGH),
    "IndexError": (Category.MAPPING, "structure_access", Severity.MEDIUM),
    "KeyError": (Category.MAPPING, "structure_access", Severity.MEDIUM),
    "NameError": (Category.NAMING, "identity", Severity.HIGH),
    "UnboundLocalError": (Category.NAMING, "identity", Severity.HIGH),
    "AttributeError": (Category.NAMING, "identity", Severity.MEDIUM),
    "ImportError": (Category.NAMING, "external_source", Severity.CRITICAL),
    "ModuleNotFoundError": (Category.NAMING, "external_source", Severity.CRITICAL),
    "FileNotFoundError": (Category.NAMING, "external_source", Severity.MEDIUM),
    "MemoryError": (Category.RESOURCE, "physical_constraint", Severity.CRITICAL),
    "MemoryLimitExceeded": (Category.RESOURCE, "physical_constraint", Severity.HIGH),
    "RecursionError": (Category.RESOURCE, "computational_boundary", Severity.HIGH),
    "TimeoutError": (Category.RESOURCE, "computational_boundary", Severity.CRITICAL),
    "SecurityError": (Category.RESOURCE, "physical_constraint", Severity.CRITICAL),
    "ZeroDivisionError": (Category.LOGIC, "logic_deviation", Severity.HIGH),
    "OverflowError": (Category.LOGIC, "logic_deviation", Severity.MEDIUM),
    "ValueError": (Category.LOGIC, "logic_breakdown", Severity.MEDIUM),
    "AssertionError": (Category.LOGIC, "logic_breakdown", Severity.MEDIUM),
    "RuntimeError": (Category.LOGIC, "logic_breakdown", Severity.MEDIUM),
    "NotImplementedError": (Category.LOGIC, "logic_breakdown", Severity.MEDIUM),
    "SyntaxError": (Category.LOGIC, "logic_breakdown", Severity.HIGH),
    "IndentationError": (Category.LOGIC, "logic_breakdown", Severity.HIGH),
    "TabError": (Category.LOGIC, "logic_breakdown", Severity.HIGH),
}

HARNESS_SOURCE = r'''
import io
import json
import resource
import sys
import time
import traceback

MARKER = "__EXECUTION_RESULT__"
CANDIDATE = "<candidate>"


def line_of(exc):
    if isinstance(exc, SyntaxError) and exc.filename == CANDIDATE:
        return exc.lineno
    line = None
    for frame in traceback.extract_tb(exc.__traceback__):
        if frame.filename == CANDIDATE:
            line = frame.lineno
    return line


def main():
    with open(sys.argv[1], encoding="utf-8") as handle:
        source = handle.read()
    limit = int(sys.argv[2])

    real_stdout = sys.stdout
    captured = io.StringIO()
    error = None
    before = resource.getrusage(resource.RUSAGE_SELF)
    started = time.perf_counter()
    sys.stdout = captured
    try:
        exec(compile(source, CANDIDATE, "exec"), {"__name__": "__main__"})
    except SystemExit as exc:
        if exc.code not in (None, 0):
            error = {"type": "SystemExit", "message": str(exc.code), "lineNumber": line_of(exc)}
    except BaseException as exc:
        error = {
            "type": type(exc).__name__,
            "message": str(exc),
            "lineNumber": line_of(exc),
            "traceback": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))[-4000:],
        }
    finally:
        sys.stdout = real_stdout
    wall = time.perf_counter() - started
    after = resource.getrusage(resource.RUSAGE_SELF)

    # ru_maxrss is KiB on Linux and bytes on macOS
    unit = 1024.0 * 1024.0 if sys.platform == "darwin" else 1024.0
    cpu = (after.ru_utime - before.ru_utime) + (after.ru_stime - before.ru_stime)
    report = {
        "stdout": captured.getvalue()[:limit],
        "error": error,
        "wallTimeMs": int(wall * 1000),
        "memoryMB": max(0.0, (after.ru_maxrss - before.ru_maxrss) / unit),
        "peakMemoryMB": after.ru_maxrss / unit,
        "cpuPercent": (cpu / wall * 100.0) if wall > 0 else 0.0,
    }
    sys.stdout.write("\n" + MARKER + "\n" + json.dumps(report) + "\n")
    sys.stdout.flush()


main()
'''


class SandboxUnavailableError(RuntimeError):
    """The sandbox interpreter could not be started."""


@dataclass(frozen=True)
class SandboxLimits:
    """Execution limits for one sandbox run."""
    timeout_seconds: float = 5.0
    memory_limit_mb: int = 128
    max_code_bytes: int = 100_000

    def __post_init__(self):
        """Validate limits are positive."""
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.memory_limit_mb <= 0:
            raise ValueError("memory_limit_mb must be positive")
        if self.max_code_bytes <= 0:
            raise ValueError("max_code_bytes must be positive")


@dataclass(frozen=True)
class SafetyAssessment:
    """Outcome of the pre-execution safety screen."""
    is_safe: bool
    risks: Tuple[str, ...]
    risk_score: float


def assess_safety(code: str) -> SafetyAssessment:
    """Screen source against the weighted deny-list.

    Each distinct risk counts once. Code is unsafe when the summed weight
    exceeds the risk budget; any single hard-deny construct does.
    """
    view = SourceView.parse(code or "")
    weights: Dict[str, float] = {}

    for line in view.code:
        match = _IMPORT_STATEMENT.match(line)
        if not match:
            continue
        modules = match.group(1).split(",") if match.group(1) else [match.group(2)]
        for module in modules:
            root = module.strip().split(" ")[0].split(".")[0]
            if root in DENIED_MODULES:
                weights[f"import:{root}"] = DENIED_MODULES[root]

    masked = "\n".join(view.code)
    for name, pattern, weight in DENIED_CONSTRUCTS:
        if pattern.search(masked):
            weights[name] = weight

    score = round(sum(weights.values()), 4)
    return SafetyAssessment(is_safe=score <= RISK_BUDGET, risks=tuple(sorted(weights)), risk_score=score)


def _rejected(error_type: str, message: str, security_flags: Tuple[str, ...] = ()) -> ExecutionOutcome:
    return ExecutionOutcome(
        success=False,
        errors=(ExecutionError(type=error_type, message=message),),
        security_flags=security_flags,
    )


class ExecutionSandbox:
    """Runs candidate code in a child interpreter, one process per call."""

    def __init__(self, limits: Optional[SandboxLimits] = None, interpreter: Optional[str] = None):
        self.limits = limits or SandboxLimits()
        self.interpreter = interpreter or sys.executable

    def assess_safety(self, code: str) -> SafetyAssessment:
        return assess_safety(code)

    async def execute(self, code: str, language: Optional[str] = "python") -> ExecutionOutcome:
        """Execute code and report errors and resource usage.

        Args:
            code: Candidate source
            language: Language tag; only Python is executed

        Returns:
            ExecutionOutcome; rejections and timeouts are unsuccessful outcomes

        Raises:
            SandboxUnavailableError: If the child interpreter cannot be spawned
        """
        if (language or "python").lower() not in SUPPORTED_LANGUAGES:
            return _rejected("UnsupportedLanguage", f"Execution is not supported for '{language}'")
        if not code or not code.strip():
            return _rejected("InvalidInput", "No code provided")
        if len(code.encode("utf-8")) > self.limits.max_code_bytes:
            return _rejected("InvalidInput", f"Code exceeds {self.limits.max_code_bytes} bytes")

        safety = self.assess_safety(code)
        if not safety.is_safe:
            logger.warning("Sandbox rejected code: risks=%s score=%.2f", ",".join(safety.risks), safety.risk_score)
            return _rejected(
                "SecurityError",
                f"Code contains potentially dangerous operations: {', '.join(safety.risks)}",
                security_flags=safety.risks,
            )

        return await self._run(code)

    async def _run(self, code: str) -> ExecutionOutcome:
        with tempfile.TemporaryDirectory(prefix="ai-gateway-sandbox-") as workdir:
            harness = Path(workdir) / "harness.py"
            candidate = Path(workdir) / "candidate.py"
            harness.write_text(HARNESS_SOURCE, encoding="utf-8")
            candidate.write_text(code, encoding="utf-8")

            started = time.monotonic()
            try:
                process = await asyncio.create_subprocess_exec(
                    self.interpreter, "-I", str(harness), str(candidate), str(MAX_CAPTURED_OUTPUT),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=workdir,
                    env=self._environment(workdir),
                )
            except OSError as e:
                raise SandboxUnavailableError(f"Cannot start sandbox interpreter '{self.interpreter}': {e}") from e

            try:
                stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.limits.timeout_seconds)
            except asyncio.TimeoutError:
                await self._kill(process)
                elapsed = int((time.monotonic() - started) * 1000)
                logger.warning("Sandbox execution timed out after %dms", elapsed)
                return ExecutionOutcome(
                    success=False,
                    errors=(ExecutionError(
                        type="TimeoutError",
                        message=f"Execution exceeded {self.limits.timeout_seconds:g}s",
                    ),),
                    resource_usage=ResourceUsage(wall_time_ms=elapsed),
                    timed_out=True,
                    exit_code=process.returncode,
                )
            except asyncio.CancelledError:
                await self._kill(process)
                raise

        elapsed = int((time.monotonic() - started) * 1000)
        return self._outcome(stdout.decode("utf-8", "replace"), stderr.decode("utf-8", "replace"),
                             process.returncode, elapsed)

    @staticmethod
    def _environment(workdir: str) -> Dict[str, str]:
        return {
            "PATH": os.environ.get("PATH", ""),
            "HOME": workdir,
            "TMPDIR": workdir,
            "LANG": "C.UTF-8",
        }

    @staticmethod
    async def _kill(process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()

    def _outcome(self, stdout: str, stderr: str, exit_code: Optional[int], elapsed_ms: int) -> ExecutionOutcome:
        stderr = stderr[-MAX_CAPTURED_OUTPUT:]
        marker = stdout.rfind(RESULT_MARKER)
        report = None
        if marker >= 0:
            try:
                report = json.loads(stdout[marker + len(RESULT_MARKER):].strip())
            except ValueError:
                logger.warning("Sandbox harness produced an unreadable report")
        if not isinstance(report, dict):
            # Harness died before reporting (killed by a signal, interpreter crash)
            message = stderr.strip().splitlines()[-1] if stderr.strip() else f"exit code {exit_code}"
            return ExecutionOutcome(
                success=False,
                stdout=stdout[:MAX_CAPTURED_OUTPUT],
                stderr=stderr,
                errors=(ExecutionError(type="ProcessCrashed", message=message),),
                resource_usage=ResourceUsage(wall_time_ms=elapsed_ms),
                exit_code=exit_code,
            )

        usage = ResourceUsage(
            memory_mb=float(report.get("memoryMB", 0.0)),
            peak_memory_mb=float(report.get("peakMemoryMB", 0.0)),
            wall_time_ms=int(report.get("wallTimeMs", elapsed_ms)),
            cpu_percent=float(report.get("cpuPercent", 0.0)),
        )

        errors: List[ExecutionError] = []
        if report.get("error"):
            errors.append(ExecutionError.from_dict(report["error"]))
        if usage.peak_memory_mb > self.limits.memory_limit_mb:
            errors.append(ExecutionError(
                type="MemoryLimitExceeded",
                message=f"Peak memory {usage.peak_memory_mb:.1f}MB exceeded {self.limits.memory_limit_mb}MB",
            ))

        return ExecutionOutcome(
            success=not errors and exit_code == 0,
            stdout=report.get("stdout", ""),
            stderr=stderr,
            errors=tuple(errors),
            resource_usage=usage,
            exit_code=exit_code,
        )
