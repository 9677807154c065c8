"""
Code quality and effectiveness scoring.

Scores an extracted snippet on syntax, structure and readability, and
rates how well an AI answer fulfils the prompt that asked for it. Both
scores are 0-100 heuristics stored with the interaction for reporting;
they never affect whether a request is forwarded.
"""

import ast
import re
from dataclasses import dataclass
from typing import List, Optional

from ai_gateway.storage.models import CodeQualityMetrics

from .code_extraction import infer_language

MAX_COMPLEXITY = 10.0
LONG_SNIPPET_LINES = 100
SUBSTANTIAL_SNIPPET_LINES = 20

PYTHON = "python"
JS_LANGUAGES = frozenset({"javascript", "typescript"})

UNKNOWN_LANGUAGE_ISSUE = "Language not recognized for detailed analysis"
LONG_SNIPPET_ISSUE = "Very long snippet, consider splitting it up"
SYNTAX_ISSUE = "Syntax errors detected"

_CONTROL_FLOW = re.compile(r"\b(?:if|elif|for|while|switch|try|except|catch)\b")
_DEFINITION = re.compile(r"\b(?:function|def|class)\b")
_NAMED_DEFINITION = re.compile(r"\b(?:function|def|class)\s+\w+")
_PY_FUNCTION = re.compile(r"^\s*(?:async\s+)?def\s+\w+", re.MULTILINE)
_JS_FUNCTION = re.compile(r"\bfunction\s+\w+|\b(?:const|let|var)\s+\w+\s*=\s*(?:async\s*)?(?:\([^)]*\)|\w+)\s*=>")
_CLASS = re.compile(r"\bclass\s+[A-Za-z_]\w*")
_PY_TESTS = re.compile(r"\bdef\s+test_\w*|\bunittest\b|\bpytest\b")
_JS_TESTS = re.compile(r"\b(?:describe|it|test)\s*\(")

_PY_COMMENT = re.compile(r"(?:^|\s)#", re.MULTILINE)
_JS_COMMENT = re.compile(r"//|/\*")
_DOCSTRING = re.compile(r'"""[\s\S]*?"""|\'\'\'[\s\S]*?\'\'\'')
_SNAKE_CASE = re.compile(r"\b[a-z][a-z0-9]*_[a-z0-9_]+\b")
_CAMEL_CASE = re.compile(r"\b[a-z][a-z0-9]*[A-Z]\w*")
_DUNDER = re.compile(r"__\w+__")
_JS_LITERAL_OR_COMMENT = re.compile(
    r"//[^\n]*|/\*[\s\S]*?\*/|\"(?:\\.|[^\"\\\n])*\"|'(?:\\.|[^'\\\n])*'|`(?:\\.|[^`\\])*`"
)
_BRACKET_PAIRS = {")": "(", "]": "[", "}": "{"}

_PROMPT_WORD = re.compile(r"[a-z][a-z0-9_]{3,}")
_ACKNOWLEDGEMENT = re.compile(r"\b(?:here|below|code)\b")
_COMPLETED = re.compile(r"\b(?:return|yield|export)\b")
_UNFINISHED = re.compile(r"\b(?:TODO|FIXME)\b|\bNotImplementedError\b", re.IGNORECASE)
_BUSY_LOOP = re.compile(r"\bwhile\s*\(?\s*(?:True|true|1)\s*\)?|\bfor\s*\(\s*;\s*;\s*\)")
_LOOP_EXIT = re.compile(r"\b(?:break|return)\b")


@dataclass(frozen=True)
class EffectivenessScore:
    """How well an answer fulfils its prompt; every part is 0-100."""
    prompt_match: float = 0.0
    completeness: float = 0.0
    correctness: float = 0.0
    efficiency: float = 0.0
    overall: int = 0


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _source_lines(code: str) -> List[str]:
    return [line for line in code.splitlines() if line.strip()]


def _complexity(lines: List[str]) -> float:
    """1 plus control flow, definitions and indentation depth, capped at 10."""
    complexity = 1.0
    for line in lines:
        expanded = line.expandtabs(4)
        if _CONTROL_FLOW.search(line):
            complexity += 0.5
        complexity += (len(expanded) - len(expanded.lstrip())) * 0.1
        if _DEFINITION.search(line):
            complexity += 1.0
    return min(complexity, MAX_COMPLEXITY)


def _python_syntax_valid(code: str) -> bool:
    try:
        ast.parse(code)
    except (SyntaxError, ValueError, RecursionError):
        return False
    return True


def _brackets_balanced(code: str) -> bool:
    stack = []
    for char in _JS_LITERAL_OR_COMMENT.sub('""', code):
        if char in "([{":
            stack.append(char)
        elif char in _BRACKET_PAIRS:
            if not stack or stack.pop() != _BRACKET_PAIRS[char]:
                return False
    return not stack


def _python_readability(code: str, line_count: int) -> float:
    score = 7.0
    if len(code) > 1500:
        score -= 1.5
    if line_count > 40:
        score -= 1.0
    if _PY_COMMENT.search(code):
        score += 0.5
    if _DOCSTRING.search(code):
        score += 1.0
    if _SNAKE_CASE.search(_DUNDER.sub("", code)):
        score += 0.5
    return _clamp(score, 1.0, 10.0)


def _js_readability(code: str, line_count: int) -> float:
    score = 5.0
    if len(code) > 2000:
        score -= 2.0
    if line_count > 50:
        score -= 1.0
    if _JS_COMMENT.search(code):
        score += 1.0
    if _SNAKE_CASE.search(code):
        score -= 1.0
    if _CAMEL_CASE.search(code):
        score += 1.0
    return _clamp(score, 1.0, 10.0)


def analyze_code_quality(code: str, language: Optional[str] = None) -> CodeQualityMetrics:
    """Measure one snippet.

    Python is parsed with ``ast`` (never executed); JavaScript and
    TypeScript get a bracket-balance check. Other languages are counted
    and measured for complexity only.

    Args:
        code: Snippet to measure
        language: Declared language, inferred when omitted

    Returns:
        CodeQualityMetrics for the snippet
    """
    language = infer_language(code, language)
    if not code or not code.strip():
        return CodeQualityMetrics(language=language)

    lines = _source_lines(code)
    issues = []
    syntax_valid = True
    has_functions = has_classes = has_tests = False
    readability = 5.0

    if language == PYTHON:
        syntax_valid = _python_syntax_valid(code)
        has_functions = bool(_PY_FUNCTION.search(code))
        has_classes = bool(_CLASS.search(code))
        has_tests = bool(_PY_TESTS.search(code))
        readability = _python_readability(code, len(lines))
    elif language in JS_LANGUAGES:
        syntax_valid = _brackets_balanced(code)
        has_classes = bool(_CLASS.search(code))
        has_functions = has_classes or bool(_JS_FUNCTION.search(code))
        has_tests = bool(_JS_TESTS.search(code))
        readability = _js_readability(code, len(lines))
    else:
        issues.append(UNKNOWN_LANGUAGE_ISSUE)

    if len(lines) > LONG_SNIPPET_LINES:
        issues.append(LONG_SNIPPET_ISSUE)
    if not syntax_valid:
        issues.append(SYNTAX_ISSUE)

    return CodeQualityMetrics(
        syntax_valid=syntax_valid,
        lines_of_code=len(lines),
        complexity=_complexity(lines),
        has_functions=has_functions,
        has_classes=has_classes,
        has_tests=has_tests,
        readability=readability,
        potential_issues=tuple(issues),
        language=language,
    )


def quality_score(metrics: CodeQualityMetrics) -> int:
    """Overall 0-100 quality of a measured snippet; empty snippets score 0."""
    if metrics.lines_of_code == 0:
        return 0
    score = 50
    if metrics.syntax_valid:
        score += 20
    score += int(metrics.readability * 2 + 0.5)
    if metrics.has_functions or metrics.has_classes:
        score += 15
    if not metrics.potential_issues:
        score += 10
    if metrics.lines_of_code > SUBSTANTIAL_SNIPPET_LINES:
        score += 5
    return min(100, score)


def _prompt_match(prompt: str, response_text: str, code: str) -> float:
    words = set(_PROMPT_WORD.findall(prompt.lower()))
    code_lower = code.lower()
    match = 0.0
    if words:
        match += sum(1 for word in words if word in code_lower) / len(words) * 40
    if _ACKNOWLEDGEMENT.search(response_text.lower()):
        match += 20
    if len(response_text) > len(code) * 2:
        match += 15
    return min(100.0, match)


def _correctness(metrics: CodeQualityMetrics) -> float:
    score = 50.0
    score += 25 if metrics.syntax_valid else -20
    if metrics.readability > 6:
        score += 15
    elif metrics.readability < 4:
        score -= 10
    if not metrics.potential_issues:
        score += 10
    return _clamp(score, 0.0, 100.0)


def _completeness(code: str) -> float:
    score = 50.0
    if _NAMED_DEFINITION.search(code):
        score += 20
    if _COMPLETED.search(code):
        score += 15
    if len(code.splitlines()) > 10:
        score += 10
    if _UNFINISHED.search(code):
        score -= 15
    return _clamp(score, 0.0, 100.0)


def _efficiency(code: str, metrics: CodeQualityMetrics) -> float:
    score = 60.0
    if metrics.complexity < 3:
        score += 20
    elif metrics.complexity > 7:
        score -= 20
    if metrics.lines_of_code > LONG_SNIPPET_LINES:
        score -= 10
    if _BUSY_LOOP.search(code) and not _LOOP_EXIT.search(code):
        score -= 15
    return _clamp(score, 0.0, 100.0)


def score_effectiveness(
    prompt: Optional[str],
    response_text: Optional[str],
    code: Optional[str] = None,
    metrics: Optional[CodeQualityMetrics] = None,
) -> EffectivenessScore:
    """Rate how well an answer fulfils its prompt.

    The overall score weights prompt match 30%, completeness 25%,
    correctness 25% and efficiency 20%.

    Args:
        prompt: User prompt
        response_text: Full assistant text
        code: Snippet extracted from the answer (the whole answer when omitted)
        metrics: Pre-computed metrics for the snippet

    Returns:
        EffectivenessScore, all zeros when the prompt or answer is missing
    """
    code = code or response_text
    if not prompt or not code:
        return EffectivenessScore()
    response_text = response_text or code
    metrics = metrics or analyze_code_quality(code)

    prompt_match = _prompt_match(prompt, response_text, code)
    completeness = _completeness(code)
    correctness = _correctness(metrics)
    efficiency = _efficiency(code, metrics)
    weighted = prompt_match * 0.3 + completeness * 0.25 + correctness * 0.25 + efficiency * 0.2
    return EffectivenessScore(
        prompt_match=prompt_match,
        completeness=completeness,
        correctness=correctness,
        efficiency=efficiency,
        overall=int(weighted + 0.5),
    )
