"""
Static hallucination pattern detection.

A fixed table of line-oriented heuristics scans candidate source for the
shapes AI models typically get wrong: mixed operand types, indices past the
end of a literal, names that were never bound, runaway loops and
self-contradicting logic. No AST is built, so rules also run on snippets
that do not parse.
"""

import builtins
import keyword
import logging
import re
import sys
from bisect import bisect_right
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterator, List, Optional, Pattern, Sequence, Set, Tuple

from ai_gateway.storage.models import Category, Evidence, FindingSource, HallucinationFinding, Severity
from .code_extraction import infer_language
from .impact import DEFAULT_IMPACT_TABLE, ImpactTable

logger = logging.getLogger(__name__)

PYTHON_ONLY = frozenset({"python"})

COMMENT_BOOST = 0.15
PLACEHOLDER_PENALTY = 0.1
MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 1.0

PLACEHOLDER_NAMES = frozenset({
    "x", "y", "i", "j", "temp", "tmp", "data", "result", "value", "item", "foo", "bar",
})

SUSPICIOUS_INDEX = 100
OVERSIZED_ELEMENTS = 10_000_000
OVERSIZED_STRING_CHARS = 100_000_000
OVERSIZED_LITERAL_ITEMS = 1000

WELL_KNOWN_MODULES = frozenset({
    "numpy", "pandas", "scipy", "matplotlib", "seaborn", "sklearn", "torch",
    "tensorflow", "requests", "httpx", "aiohttp", "flask", "django", "fastapi",
    "pydantic", "yaml", "bs4", "PIL", "pytest", "sqlalchemy", "click", "typer",
    "rich", "openai", "anthropic", "jinja2", "dateutil", "pytz", "tqdm",
    "boto3", "redis", "networkx", "sympy", "attr", "attrs",
})
KNOWN_MODULES = frozenset(sys.stdlib_module_names) | WELL_KNOWN_MODULES

_BUILTIN_NAMES = frozenset(dir(builtins))
_MODULE_DUNDERS = frozenset({
    "__name__", "__file__", "__doc__", "__builtins__", "__spec__", "__loader__",
    "__package__", "__annotations__", "__dict__", "__path__", "__debug__",
    "__class__", "__module__", "__qualname__",
})
_SOFT_KEYWORDS = frozenset(getattr(keyword, "softkwlist", ())) | {"match", "case", "_", "type"}

_LITERAL_OR_COMMENT = re.compile(
    r'(?P<string>"""[\s\S]*?"""|\'\'\'[\s\S]*?\'\'\'|"(?:\\.|[^"\\\n])*"|\'(?:\\.|[^\'\\\n])*\')'
    r"|(?P<comment>#[^\n]*)"
)
MASKED_STRING = '""'

_NAME = re.compile(r"[A-Za-z_]\w*")
_IDENTIFIER = re.compile(r"(?<![\w.])([A-Za-z_]\w*)(?![\w\"'])")
_NUMBER = re.compile(r"^-?(?:\d[\d_]*(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?$")
_STRING = re.compile(r'^[rRuUfFbB]{0,2}""$')
_DEF = re.compile(r"^\s*(?:async\s+)?def\s+([A-Za-z_]\w*)\s*\(")
_CLASS = re.compile(r"^\s*class\s+([A-Za-z_]\w*)")
_IMPORT = re.compile(r"^\s*import\s+(.+)$")
_FROM_IMPORT = re.compile(r"^\s*from\s+(\.*[\w.]*)\s+import\s+(.+)$")
_FOR_TARGET = re.compile(r"\bfor\s+(.+?)\s+in\b")
_AS_TARGET = re.compile(r"\bas\s+\(?\s*([A-Za-z_]\w*(?:\s*,\s*[A-Za-z_]\w*)*)")
_LAMBDA = re.compile(r"\blambda\b([^:]*):")
_WALRUS = re.compile(r"([A-Za-z_]\w*)\s*:=")
_SCOPE_DECLARATION = re.compile(r"^\s*(?:global|nonlocal)\s+(.+)$")
_CASE = re.compile(r"^\s*case\b")
_ANNOTATED_TARGET = re.compile(r"^\s*([A-Za-z_]\w*)\s*:(.*)$")
_BARE_ANNOTATION = re.compile(r"^\s*([A-Za-z_]\w*)\s*:\s*([^=]+)$")
_AUGMENTED = re.compile(r"^\s*([A-Za-z_]\w*)\s*(?:\+|-|\*|/|//|%|\*\*)=\s*(.+)$")
_MUTATING_CALL = re.compile(
    r"(?<![\w.])([A-Za-z_]\w*)\.(?:append|extend|insert|pop|remove|clear|update|setdefault|popitem|add)\s*\("
)
_DELETE = re.compile(r"^\s*del\s+([A-Za-z_]\w*)")

_OPERAND = r'(?:[rRuUfFbB]{0,2}""|\d[\d_]*(?:\.\d+)?|[A-Za-z_]\w*)'
_BINARY_OPERATION = re.compile(
    rf'(?=(?<![\w.\])"])({_OPERAND})\s*([+\-/%])\s*({_OPERAND})(?![\w(\[."]))'
)
_AUGMENTED_STRING = re.compile(r'(?<![\w.])([A-Za-z_]\w*)\s*(?:\+|-)=\s*[rRuUfFbB]{0,2}""')
_LITERAL_INDEX = re.compile(r"(?<![\w.\]\)])([A-Za-z_]\w*)\s*\[\s*(-?\d+)\s*\]")
_DOTTED_LITERAL_INDEX = re.compile(r"(?<![\w.\]\)])([A-Za-z_][\w.]*)\s*\[\s*(\d+)\s*\]")
_KEY_SUBSCRIPT = re.compile(r'(?<![\w.\]\)])([A-Za-z_]\w*)\s*\[\s*""\s*\]')
_MEMBERSHIP_GUARD = re.compile(r'""\s+(?:not\s+)?in\s+([A-Za-z_]\w*)')
_GET_GUARD = re.compile(r'(?<![\w.])([A-Za-z_]\w*)\.get\(\s*""')

_WHILE_TRUE = re.compile(r"^\s*while\s+(?:True|1|\(\s*True\s*\))\s*:(.*)$")
_LOOP_EXIT = re.compile(r"\b(?:break|return|raise|yield)\b|\b(?:sys\.exit|os\._exit|exit|quit)\s*\(")
_CONDITIONAL = re.compile(
    r"^\s*(?:if|elif|else|match|case|try|except|for|while)\b|\bif\b.+\belse\b|\b(?:and|or)\b"
)
_STUB_STATEMENTS = frozenset({"pass", "...", MASKED_STRING})
_STUB_DECORATOR = re.compile(r"^\s*@(?:\w+\.)*(?:abstractmethod|abstractproperty|overload)\b")
_ABSTRACT_CLASS = re.compile(r"^\s*class\s+\w+\s*\(.*\b(?:Protocol|ABC|ABCMeta)\b")

_NUMBER_EXPR = r"(\d[\d_]*(?:\.\d+)?(?:[eE]\+?\d+)?(?:\s*\*\*\s*\d+)?)"
_REPEATED_SEQUENCE = re.compile(rf"\]\s*\*\s*{_NUMBER_EXPR}|(?<![\w.]){_NUMBER_EXPR}\s*\*\s*\[")
_REPEATED_STRING = re.compile(rf'""\s*\*\s*{_NUMBER_EXPR}|(?<![\w.]){_NUMBER_EXPR}\s*\*\s*[rRuUfFbB]{{0,2}}""')
_MATERIALIZED_RANGE = re.compile(
    rf"(?:\b(?:list|tuple|set|sorted)\(\s*|\[[^\]]*\bfor\b[^\]]*\b(?:in)\s+)range\(\s*(?:\d[\d_]*\s*,\s*)?{_NUMBER_EXPR}\s*[,)]"
)

_NAME_REF = r"[A-Za-z_][\w.]*"
_CONSTANT = r"(?:-?\d+(?:\.\d+)?|None|True|False)"
_NUMERIC = r"-?\d+(?:\.\d+)?"
_EQ_AND_NE = re.compile(
    rf"(?<![\w.])({_NAME_REF})\s*==\s*({_CONSTANT}|{_NAME_REF})\s+and\s+\1\s*!=\s*\2(?![\w.(\[])"
)
_NE_AND_EQ = re.compile(
    rf"(?<![\w.])({_NAME_REF})\s*!=\s*({_CONSTANT}|{_NAME_REF})\s+and\s+\1\s*==\s*\2(?![\w.(\[])"
)
_DOUBLE_EQUALITY = re.compile(
    rf"(?<![\w.])({_NAME_REF})\s*==\s*({_CONSTANT})\s+and\s+\1\s*==\s*({_CONSTANT})(?![\w.])"
)
_SELF_NEGATION = re.compile(rf"(?<![\w.])(?<!not )({_NAME_REF})\s+and\s+not\s+\1(?![\w.(\[])")
_NEGATION_FIRST = re.compile(rf"\bnot\s+({_NAME_REF})\s+and\s+\1(?![\w.(\[])")
_LOWER_THEN_UPPER = re.compile(
    rf"(?<![\w.])({_NAME_REF})\s*(>=|>)\s*({_NUMERIC})\s+and\s+\1\s*(<=|<)\s*({_NUMERIC})(?![\w.])"
)
_UPPER_THEN_LOWER = re.compile(
    rf"(?<![\w.])({_NAME_REF})\s*(<=|<)\s*({_NUMERIC})\s+and\s+\1\s*(>=|>)\s*({_NUMERIC})(?![\w.])"
)
_CHAINED_BOUNDS = re.compile(rf"(?<![\w.])({_NUMERIC})\s*(<=|<)\s*({_NAME_REF})\s*(<=|<)\s*({_NUMERIC})(?![\w.])")
_DEAD_BRANCH = re.compile(r"^\s*(?:if|elif|while)\s+(?:False|0|None)\s*:")
_TRIVIAL_LINE = re.compile(
    r'^(?:pass|\.\.\.|else:|try:|finally:|break|continue|return|print\(\)|""|[(\[{]|[)\]},;]+|end|fi|done)$'
)


@dataclass(frozen=True)
class SourceView:
    """Source split into lines with string contents and comments masked.

    Every string literal is collapsed to ``""`` on the line where it starts
    (its original text is kept in ``strings``), and comments are removed
    from ``code`` but kept per line in ``comments``. Line counts of
    ``raw`` and ``code`` always agree.
    """
    raw: Tuple[str, ...]
    code: Tuple[str, ...]
    comments: Tuple[str, ...]
    strings: Tuple[Tuple[str, ...], ...]

    @classmethod
    def parse(cls, source: str) -> "SourceView":
        source = source.replace("\r\n", "\n").replace("\r", "\n")
        line_starts = [0] + [pos + 1 for pos, char in enumerate(source) if char == "\n"]
        comments: Dict[int, str] = {}
        strings: Dict[int, List[str]] = {}

        def mask(match):
            line = bisect_right(line_starts, match.start()) - 1
            comment = match.group("comment")
            if comment is not None:
                comments[line] = comment[1:].strip()
                return ""
            literal = match.group("string")
            quote = 3 if literal[:3] in ('"""', "'''") else 1
            strings.setdefault(line, []).append(literal[quote:-quote])
            return MASKED_STRING + "\n" * literal.count("\n")

        masked = _LITERAL_OR_COMMENT.sub(mask, source)
        raw_lines = source.split("\n")
        return cls(
            raw=tuple(raw_lines),
            code=tuple(masked.split("\n")),
            comments=tuple(comments.get(i, "") for i in range(len(raw_lines))),
            strings=tuple(tuple(strings.get(i, ())) for i in range(len(raw_lines))),
        )

    def __len__(self) -> int:
        return len(self.raw)

    def indent(self, index: int) -> int:
        line = self.code[index]
        return len(line) - len(line.lstrip())

    def is_blank(self, index: int) -> bool:
        return not self.code[index].strip()

    def block(self, after: int, base_indent: int) -> List[int]:
        """Non-blank lines following ``after`` indented deeper than ``base_indent``."""
        body = []
        for index in range(after + 1, len(self)):
            if self.is_blank(index):
                continue
            if self.indent(index) <= base_indent:
                break
            body.append(index)
        return body

    def string_at(self, index: int, position: int) -> Optional[str]:
        """Original text of the masked string literal starting at ``position``."""
        ordinal = self.code[index].count(MASKED_STRING, 0, position)
        literals = self.strings[index]
        return literals[ordinal] if ordinal < len(literals) else None

    def comment_near(self, index: int, hint: Pattern) -> Optional[Tuple[int, str]]:
        """Comment on the line or an adjacent line that matches ``hint``."""
        for candidate in (index, index - 1, index + 1):
            if 0 <= candidate < len(self) and self.comments[candidate]:
                if hint.search(self.comments[candidate]):
                    return candidate, self.comments[candidate]
        return None


@dataclass(frozen=True)
class RuleMatch:
    """Raw hit from one rule, before confidence adjustment."""
    line: int
    identifier: Optional[str] = None
    detail: Optional[str] = None
    extra_lines: Tuple[int, ...] = ()
    adjustment: float = 0.0


@dataclass(frozen=True)
class PatternRule:
    """One entry of the static rule table."""
    name: str
    category: Category
    subtype: str
    severity: Severity
    base_confidence: float
    error_type: str
    description: str
    suggested_fix: str
    detect: Callable[[SourceView], Iterator[RuleMatch]]
    comment_hint: Pattern
    # None applies the rule to every language
    languages: Optional[FrozenSet[str]] = PYTHON_ONLY

    def applies_to(self, language: str) -> bool:
        return self.languages is None or language in self.languages


# ---------------------------------------------------------------------------
# Shared parsing helpers
# ---------------------------------------------------------------------------

def _split_top_level(text: str, separator: str = ",") -> List[Tuple[int, str]]:
    """Split on ``separator`` outside brackets, keeping each piece's offset."""
    pieces = []
    depth = 0
    start = 0
    for position, char in enumerate(text):
        if char in "([{":
            depth += 1
        elif char in ")]}":
            depth -= 1
        elif char == separator and depth == 0:
            pieces.append((start, text[start:position]))
            start = position + 1
    pieces.append((start, text[start:]))
    return pieces


def _closes_at_end(text: str) -> bool:
    """True when the bracket opening ``text`` is closed by its last character."""
    depth = 0
    for position, char in enumerate(text):
        if char in "([{":
            depth += 1
        elif char in ")]}":
            depth -= 1
            if depth == 0:
                return position == len(text) - 1
    return False


def _split_assignment(line: str) -> Tuple[List[str], str]:
    """Split a statement on top-level ``=`` into targets and the assigned value."""
    parts = []
    depth = 0
    start = 0
    for position, char in enumerate(line):
        if char in "([{":
            depth += 1
        elif char in ")]}":
            depth -= 1
        elif char == "=" and depth == 0:
            before = line[position - 1] if position else ""
            after = line[position + 1] if position + 1 < len(line) else ""
            if after == "=" or before in "=!<>:+-*/%&|^@":
                continue
            parts.append(line[start:position])
            start = position + 1
    return parts, line[start:]


def _is_store(line: str, end: int) -> bool:
    rest = line[end:].lstrip()
    return rest.startswith("=") and not rest.startswith("==")


def _param_names(params: str) -> Set[str]:
    names = set()
    for _, param in _split_top_level(params):
        match = _NAME.match(param.strip().lstrip("*").strip())
        if match:
            names.add(match.group(0))
    return names


def _header_end(view: SourceView, header: int) -> Tuple[int, str]:
    """Line where a def/class header's colon sits, and any inline body after it."""
    depth = 0
    for index in range(header, min(len(view), header + 30)):
        line = view.code[index]
        for position, char in enumerate(line):
            if char in "([{":
                depth += 1
            elif char in ")]}":
                depth -= 1
            elif char == ":" and depth == 0:
                return index, line[position + 1:].strip()
    return header, ""


def _def_signature(view: SourceView, header: int) -> Tuple[int, str]:
    """Header end line and the raw parameter list of a def."""
    end, _ = _header_end(view, header)
    text = " ".join(view.code[header:end + 1])
    opening = text.find("(")
    depth = 0
    for position in range(opening, len(text)):
        if text[position] == "(":
            depth += 1
        elif text[position] == ")":
            depth -= 1
            if depth == 0:
                return end, text[opening + 1:position]
    return end, text[opening + 1:]


def _function_body(view: SourceView, header: int) -> Tuple[int, str, List[int]]:
    end, inline = _header_end(view, header)
    return end, inline, view.block(end, view.indent(header))


def _inside_try(view: SourceView, index: int) -> bool:
    current = view.indent(index)
    for candidate in range(index - 1, -1, -1):
        if view.is_blank(candidate):
            continue
        indent = view.indent(candidate)
        if indent < current:
            if view.code[candidate].strip().startswith("try"):
                return True
            current = indent
            if indent == 0:
                return False
    return False


def _target_pieces(target: str) -> List[str]:
    target = target.strip()
    if not re.search(r"\.|\w\s*\[", target):
        return _NAME.findall(target)
    return [piece.strip().lstrip("*").strip() for _, piece in _split_top_level(target) if piece.strip()]


def _eval_count(text: str) -> int:
    """Evaluate a literal element count such as ``10**8``, ``1e7`` or ``5_000_000``."""
    text = text.replace("_", "").replace(" ", "")
    try:
        if "**" in text:
            base, exponent = text.split("**", 1)
            return int(float(base)) ** min(int(exponent), 64)
        return int(float(text))
    except (ValueError, OverflowError):
        return 0


# ---------------------------------------------------------------------------
# Literal bindings (mapping rules)
# ---------------------------------------------------------------------------

@dataclass
class _Literal:
    kind: str
    length: int = 0
    # None when any key is not a plain string literal
    keys: Optional[Set[str]] = None

    def copy(self) -> "_Literal":
        return _Literal(self.kind, self.length, set(self.keys) if self.keys is not None else None)


def _classify_literal(view: SourceView, index: int, value: str, offset: int) -> Optional[_Literal]:
    text = value.strip().rstrip(";").strip()
    if _NUMBER.match(text):
        return _Literal("number")
    if _STRING.match(text):
        return _Literal("bytes" if "b" in text[:-2].lower() else "string")
    if not text or text[0] not in "[({" or not _closes_at_end(text):
        return None

    inner_start = view.code[index].find(text, offset) + 1
    items = [(start, item) for start, item in _split_top_level(text[1:-1]) if item.strip()]
    if any(re.search(r"\bfor\b", item) or item.strip().startswith("*") for _, item in items):
        return None

    if text[0] == "{":
        if not items:
            return _Literal("mapping", keys=set())
        keys: Optional[Set[str]] = set()
        for start, item in items:
            pieces = _split_top_level(item, ":")
            if len(pieces) < 2:
                # a set literal
                return None
            key = pieces[0][1].strip()
            if keys is not None and key == MASKED_STRING:
                position = inner_start + start + item.index(MASKED_STRING)
                content = view.string_at(index, position)
                if content is None:
                    keys = None
                else:
                    keys.add(content)
            else:
                keys = None
        return _Literal("mapping", keys=keys)

    if text[0] == "(" and len(items) == 1 and not text[1:-1].rstrip().endswith(","):
        return None
    return _Literal("sequence", length=len(items))


def _update_literals(view: SourceView, index: int, literals: Dict[str, _Literal]) -> None:
    line = view.code[index]
    if not line.strip():
        return

    if _DEF.match(line):
        _, params = _def_signature(view, index)
        for name in _param_names(params):
            literals.pop(name, None)
        return

    for match in _FOR_TARGET.finditer(line):
        for name in _NAME.findall(match.group(1)):
            literals.pop(name, None)
    for name in _WALRUS.findall(line):
        literals.pop(name, None)
    for match in _MUTATING_CALL.finditer(line):
        literal = literals.get(match.group(1))
        if literal is not None and literal.kind in ("sequence", "mapping"):
            literals.pop(match.group(1))
    deleted = _DELETE.match(line)
    if deleted:
        literals.pop(deleted.group(1), None)
    for match in _KEY_SUBSCRIPT.finditer(line):
        literal = literals.get(match.group(1))
        if literal is not None and literal.keys is not None and _is_store(line, match.end()):
            key = view.string_at(index, line.index(MASKED_STRING, match.start()))
            literal.keys.add(key if key is not None else "")

    targets, value = _split_assignment(line)
    if not targets:
        augmented = _AUGMENTED.match(line)
        if augmented:
            name = augmented.group(1)
            literal = literals.get(name)
            added = _classify_literal(view, index, augmented.group(2), augmented.start(2))
            if literal is None or added is None or literal.kind != added.kind or literal.kind != "number":
                literals.pop(name, None)
        return

    literal = _classify_literal(view, index, value, len(line) - len(value))
    for target in targets:
        annotated = _ANNOTATED_TARGET.match(target)
        simple = annotated.group(1) if annotated else target.strip()
        if _NAME.fullmatch(simple) and literal is not None:
            literals[simple] = literal.copy()
        else:
            for name in _target_pieces(target):
                literals.pop(name, None)


def _walk_literals(view: SourceView) -> Iterator[Tuple[int, Dict[str, _Literal]]]:
    """Yield each line with the literal bindings in effect just before it."""
    literals: Dict[str, _Literal] = {}
    for index in range(len(view)):
        yield index, literals
        _update_literals(view, index, literals)


# ---------------------------------------------------------------------------
# Rule detectors
# ---------------------------------------------------------------------------

def _operand_kind(token: str, literals: Dict[str, _Literal]) -> Optional[str]:
    if token.endswith(MASKED_STRING):
        return "bytes" if "b" in token[:-2].lower() else "string"
    if token[0].isdigit():
        return "number"
    literal = literals.get(token)
    if literal is not None and literal.kind in ("number", "string", "bytes"):
        return literal.kind
    return None


def _detect_type_mixing(view: SourceView) -> Iterator[RuleMatch]:
    for index, literals in _walk_literals(view):
        line = view.code[index]
        if not line.strip() or _DEF.match(line):
            continue
        for match in _BINARY_OPERATION.finditer(line):
            left, operator, right = match.group(1), match.group(2), match.group(3)
            left_kind = _operand_kind(left, literals)
            right_kind = _operand_kind(right, literals)
            if {left_kind, right_kind} not in ({"number", "string"}, {"number", "bytes"}):
                continue
            if operator == "%" and left_kind != "number":
                # printf-style formatting
                continue
            named = [token for token in (left, right) if _NAME.fullmatch(token) and token in literals]
            numeric = [token for token in named if literals[token].kind == "number"]
            identifier = (numeric or named or [None])[0]
            yield RuleMatch(
                line=index,
                identifier=identifier,
                detail=f"{left_kind} {operator} {right_kind}",
            )
        for match in _AUGMENTED_STRING.finditer(line):
            literal = literals.get(match.group(1))
            if literal is not None and literal.kind == "number":
                yield RuleMatch(line=index, identifier=match.group(1), detail="number += string")


def _detect_index_out_of_range(view: SourceView) -> Iterator[RuleMatch]:
    for index, literals in _walk_literals(view):
        for match in _LITERAL_INDEX.finditer(view.code[index]):
            literal = literals.get(match.group(1))
            if literal is None or literal.kind != "sequence":
                continue
            position = int(match.group(2))
            if position >= literal.length or position < -literal.length:
                yield RuleMatch(
                    line=index,
                    identifier=match.group(1),
                    detail=f"index {position} on a sequence of length {literal.length}",
                )


def _detect_suspicious_index(view: SourceView) -> Iterator[RuleMatch]:
    for index, literals in _walk_literals(view):
        for match in _DOTTED_LITERAL_INDEX.finditer(view.code[index]):
            name = match.group(1)
            position = int(match.group(2))
            if position < SUSPICIOUS_INDEX or name in literals:
                continue
            yield RuleMatch(line=index, identifier=name.split(".")[-1], detail=f"index {position}")


def _key_guards(line: str) -> Iterator[str]:
    for match in _MEMBERSHIP_GUARD.finditer(line):
        yield match.group(1)
    for match in _GET_GUARD.finditer(line):
        yield match.group(1)


def _detect_missing_key(view: SourceView) -> Iterator[RuleMatch]:
    for index, literals in _walk_literals(view):
        line = view.code[index]
        for match in _KEY_SUBSCRIPT.finditer(line):
            literal = literals.get(match.group(1))
            if literal is None or literal.kind != "mapping" or literal.keys is None:
                continue
            if _is_store(line, match.end()) or _DELETE.match(line):
                continue
            key = view.string_at(index, line.index(MASKED_STRING, match.start()))
            if key is not None and key not in literal.keys:
                yield RuleMatch(
                    line=index,
                    identifier=match.group(1),
                    detail=f"key '{key}' is not in the dict literal",
                )


def _detect_unchecked_key(view: SourceView) -> Iterator[RuleMatch]:
    guarded: Set[Tuple[str, Optional[str]]] = set()
    reported: Set[Tuple[str, Optional[str]]] = set()
    for index, literals in _walk_literals(view):
        line = view.code[index]
        for name in _key_guards(line):
            # guards may name any key, so match on the name
            guarded.add((name, None))
        for match in _KEY_SUBSCRIPT.finditer(line):
            name = match.group(1)
            literal = literals.get(name)
            if literal is not None and (literal.kind != "mapping" or literal.keys is not None):
                continue
            if _is_store(line, match.end()) or _DELETE.match(line):
                continue
            key = view.string_at(index, line.index(MASKED_STRING, match.start()))
            if (name, None) in guarded or (name, key) in reported or _inside_try(view, index):
                continue
            reported.add((name, key))
            yield RuleMatch(line=index, identifier=name, detail=f"'{name}[{key!r}]' read without a guard")


@dataclass
class _LineNames:
    index: int
    before: Set[str] = field(default_factory=set)
    after: Set[str] = field(default_factory=set)
    uses: str = ""
    is_def: bool = False
    star_import: bool = False


def _import_bindings(line: str) -> Tuple[Set[str], bool]:
    names: Set[str] = set()
    match = _IMPORT.match(line)
    if match:
        for part in match.group(1).split(","):
            part = part.strip()
            if " as " in part:
                names.add(part.split(" as ", 1)[1].strip())
            elif part:
                names.add(part.split(".")[0])
        return names, False

    match = _FROM_IMPORT.match(line)
    imported = match.group(2).strip().strip("()\\").strip()
    if imported == "*":
        return names, True
    for _, part in _split_top_level(imported):
        part = part.strip().strip("()").strip()
        if " as " in part:
            names.add(part.split(" as ", 1)[1].strip())
        elif _NAME.fullmatch(part):
            names.add(part)
    return names, False


def _name_flow(view: SourceView) -> Iterator[_LineNames]:
    """Per-line name bindings and the text whose names are read."""
    index = 0
    while index < len(view):
        line = view.code[index]
        if not line.strip():
            index += 1
            continue

        def_match = _DEF.match(line)
        if def_match:
            end, params = _def_signature(view, index)
            _, inline = _header_end(view, index)
            yield _LineNames(
                index, before=_param_names(params), after={def_match.group(1)}, uses=inline, is_def=True,
            )
            index = end + 1
            continue

        if _IMPORT.match(line) or _FROM_IMPORT.match(line):
            start = index
            names, star = _import_bindings(line)
            if "(" in line and ")" not in line:
                while index + 1 < len(view):
                    index += 1
                    names.update(name for name in _NAME.findall(view.code[index]) if name != "as")
                    if ")" in view.code[index]:
                        break
            yield _LineNames(start, after=names, star_import=star)
            index += 1
            continue

        declaration = _SCOPE_DECLARATION.match(line)
        if declaration or _CASE.match(line):
            bound = set(_NAME.findall(declaration.group(1) if declaration else line))
            yield _LineNames(index, before=bound)
            index += 1
            continue

        entry = _LineNames(index)
        for match in _FOR_TARGET.finditer(line):
            entry.before.update(_NAME.findall(match.group(1)))
        for match in _AS_TARGET.finditer(line):
            entry.before.update(_NAME.findall(match.group(1)))
        for match in _LAMBDA.finditer(line):
            entry.before.update(_param_names(match.group(1)))
        entry.before.update(_WALRUS.findall(line))

        targets, value = _split_assignment(line)
        uses = [value]
        for target in targets:
            annotated = _ANNOTATED_TARGET.match(target)
            if annotated and not keyword.iskeyword(annotated.group(1)):
                entry.after.add(annotated.group(1))
                uses.append(annotated.group(2))
                continue
            for piece in _target_pieces(target):
                if _NAME.fullmatch(piece):
                    entry.after.add(piece)
                else:
                    uses.append(piece)
        if not targets:
            bare = _BARE_ANNOTATION.match(line)
            if bare and not keyword.iskeyword(bare.group(1)) and bare.group(1) not in _SOFT_KEYWORDS:
                entry.after.add(bare.group(1))
                uses = [bare.group(2)]
        entry.uses = " ".join(uses)
        yield entry
        index += 1


def _read_names(text: str) -> Iterator[str]:
    for match in _IDENTIFIER.finditer(text):
        name = match.group(1)
        if keyword.iskeyword(name) or name in _SOFT_KEYWORDS:
            continue
        if _is_store(text, match.end()):
            # keyword argument
            continue
        yield name


def _detect_undefined_names(view: SourceView) -> Iterator[RuleMatch]:
    known = set(_BUILTIN_NAMES) | _MODULE_DUNDERS
    for line in view.code:
        match = _DEF.match(line) or _CLASS.match(line)
        if match:
            known.add(match.group(1))

    flow = list(_name_flow(view))
    bound_anywhere: Set[str] = set()
    for entry in flow:
        bound_anywhere |= entry.before | entry.after

    defined = set(known)
    def_indents: List[int] = []
    uses: Dict[str, List[int]] = {}
    used_at_module_level: Set[str] = set()
    for entry in flow:
        if entry.star_import:
            break
        indent = view.indent(entry.index)
        while def_indents and indent <= def_indents[-1]:
            def_indents.pop()
        defined |= entry.before
        for name in _read_names(entry.uses):
            if name in defined:
                continue
            lines = uses.setdefault(name, [])
            if entry.index not in lines:
                lines.append(entry.index)
            if not def_indents and not entry.is_def:
                used_at_module_level.add(name)
        defined |= entry.after
        if entry.is_def:
            def_indents.append(indent)

    for name, lines in uses.items():
        # module globals bound later are visible by the time a function runs
        late_global = name in bound_anywhere and name not in used_at_module_level
        yield RuleMatch(
            line=lines[0],
            identifier=name,
            detail=f"'{name}' is used before it is defined",
            extra_lines=tuple(lines[1:5]),
            adjustment=-0.3 if late_global else 0.0,
        )


def _imported_modules(line: str) -> List[str]:
    match = _IMPORT.match(line)
    if match:
        return [part.strip().split(" as ")[0].strip() for part in match.group(1).split(",") if part.strip()]
    match = _FROM_IMPORT.match(line)
    if match and not match.group(1).startswith("."):
        return [match.group(1)]
    return []


def _detect_unknown_imports(view: SourceView) -> Iterator[RuleMatch]:
    for index, line in enumerate(view.code):
        for module in _imported_modules(line):
            root = module.split(".")[0]
            if root and root not in KNOWN_MODULES:
                yield RuleMatch(
                    line=index,
                    identifier=root,
                    detail=f"'{root}' is neither in the standard library nor a widely used package",
                )


def _detect_unbounded_loops(view: SourceView) -> Iterator[RuleMatch]:
    for index, line in enumerate(view.code):
        match = _WHILE_TRUE.match(line)
        if not match:
            continue
        body = [match.group(1)] + [view.code[i] for i in view.block(index, view.indent(index))]
        if not any(_LOOP_EXIT.search(statement) for statement in body):
            yield RuleMatch(line=index, detail="loop has no break, return, raise or exit")


def _detect_unbounded_recursion(view: SourceView) -> Iterator[RuleMatch]:
    for index, line in enumerate(view.code):
        match = _DEF.match(line)
        if not match:
            continue
        name = match.group(1)
        self_call = re.compile(rf"(?:(?<![\w.]){name}|\b(?:self|cls)\.{name})\s*\(")
        _, inline, body = _function_body(view, index)
        statements = ([inline] if inline else []) + [view.code[i] for i in body]
        call_lines = [i for i in body if self_call.search(view.code[i])]
        if inline and self_call.search(inline):
            call_lines.insert(0, index)
        if not call_lines:
            continue
        if any(_CONDITIONAL.search(statement) for statement in statements):
            continue
        yield RuleMatch(
            line=index,
            identifier=name,
            detail=f"'{name}' calls itself with no base case",
            extra_lines=tuple(call_lines[:1]),
        )


def _detect_oversized_literals(view: SourceView) -> Iterator[RuleMatch]:
    for index, line in enumerate(view.code):
        detail = None
        for match in _REPEATED_SEQUENCE.finditer(line):
            count = _eval_count(match.group(1) or match.group(2))
            if count >= OVERSIZED_ELEMENTS:
                detail = f"sequence repeated {count:,} times"
        for match in _REPEATED_STRING.finditer(line):
            count = _eval_count(match.group(1) or match.group(2))
            if count >= OVERSIZED_STRING_CHARS:
                detail = f"string repeated {count:,} times"
        for match in _MATERIALIZED_RANGE.finditer(line):
            count = _eval_count(match.group(1))
            if count >= OVERSIZED_ELEMENTS:
                detail = f"range of {count:,} elements materialized"
        if detail is None and line.count(",") > OVERSIZED_LITERAL_ITEMS:
            detail = f"literal with more than {OVERSIZED_LITERAL_ITEMS} items"
        if detail is None:
            continue
        targets, _ = _split_assignment(line)
        identifier = targets[0].strip() if len(targets) == 1 and _NAME.fullmatch(targets[0].strip()) else None
        yield RuleMatch(line=index, identifier=identifier, detail=detail)


def _bounds_disjoint(low: float, low_inclusive: bool, high: float, high_inclusive: bool) -> bool:
    if low > high:
        return True
    return low == high and not (low_inclusive and high_inclusive)


def _detect_contradictions(view: SourceView) -> Iterator[RuleMatch]:
    for index, line in enumerate(view.code):
        found = None
        for pattern in (_EQ_AND_NE, _NE_AND_EQ, _SELF_NEGATION, _NEGATION_FIRST):
            match = pattern.search(line)
            if match:
                found = (match.group(1), match.group(0))
                break
        if found is None:
            match = _DOUBLE_EQUALITY.search(line)
            if match and match.group(2) != match.group(3):
                found = (match.group(1), match.group(0))
        if found is None:
            match = _LOWER_THEN_UPPER.search(line)
            if match and _bounds_disjoint(
                float(match.group(3)), match.group(2) == ">=", float(match.group(5)), match.group(4) == "<="
            ):
                found = (match.group(1), match.group(0))
        if found is None:
            match = _UPPER_THEN_LOWER.search(line)
            if match and _bounds_disjoint(
                float(match.group(5)), match.group(4) == ">=", float(match.group(3)), match.group(2) == "<="
            ):
                found = (match.group(1), match.group(0))
        if found is None:
            match = _CHAINED_BOUNDS.search(line)
            if match and _bounds_disjoint(
                float(match.group(1)), match.group(2) == "<=", float(match.group(5)), match.group(4) == "<="
            ):
                found = (match.group(3), match.group(0))
        if found is not None:
            yield RuleMatch(line=index, identifier=found[0].split(".")[-1], detail=f"'{found[1]}' can never hold")
        elif _DEAD_BRANCH.match(line):
            yield RuleMatch(line=index, detail="branch condition is always false", adjustment=-0.25)


def _detect_duplicate_lines(view: SourceView) -> Iterator[RuleMatch]:
    for index in range(1, len(view)):
        current = view.raw[index].rstrip()
        if not current or current != view.raw[index - 1].rstrip():
            continue
        statement = view.code[index].strip()
        if not statement or _TRIVIAL_LINE.match(statement):
            continue
        adjustment = 0.2 if re.match(r"(?:return|raise)\b", statement) else 0.0
        yield RuleMatch(
            line=index,
            detail=f"line {index + 1} repeats line {index}",
            extra_lines=(index - 1,),
            adjustment=adjustment,
        )


def _is_intentional_stub(view: SourceView, header: int) -> bool:
    indent = view.indent(header)
    candidate = header - 1
    while candidate >= 0 and view.code[candidate].strip().startswith("@"):
        if _STUB_DECORATOR.match(view.code[candidate]):
            return True
        candidate -= 1
    for candidate in range(header - 1, -1, -1):
        if view.is_blank(candidate) or view.indent(candidate) >= indent:
            continue
        return bool(_ABSTRACT_CLASS.match(view.code[candidate]))
    return False


def _detect_empty_functions(view: SourceView) -> Iterator[RuleMatch]:
    for index, line in enumerate(view.code):
        match = _DEF.match(line)
        if not match or _is_intentional_stub(view, index):
            continue
        name = match.group(1)
        _, inline, body = _function_body(view, index)
        if not inline and not body:
            yield RuleMatch(line=index, identifier=name, detail=f"'{name}' has no body", adjustment=0.15)
            continue
        statements = ([inline] if inline else []) + [view.code[i].strip() for i in body]
        if all(statement.strip() in _STUB_STATEMENTS for statement in statements):
            yield RuleMatch(line=index, identifier=name, detail=f"'{name}' is an empty stub")


# ---------------------------------------------------------------------------
# Rule table
# ---------------------------------------------------------------------------

def _hint(pattern: str) -> Pattern:
    return re.compile(pattern, re.IGNORECASE)


RULES: Tuple[PatternRule, ...] = (
    PatternRule(
        name="type_mixing",
        category=Category.MAPPING,
        subtype="data_compliance",
        severity=Severity.HIGH,
        base_confidence=0.95,
        error_type="TypeError",
        description="Arithmetic mixes a number and a string",
        suggested_fix="Convert operands explicitly, e.g. str(value) or int(text), before combining them",
        detect=_detect_type_mixing,
        comment_hint=_hint(r"\bTypeError\b|type\s*error|unsupported operand"),
    ),
    PatternRule(
        name="index_out_of_range",
        category=Category.MAPPING,
        subtype="structure_access",
        severity=Severity.MEDIUM,
        base_confidence=0.85,
        error_type="IndexError",
        description="Literal index is past the end of a sequence literal",
        suggested_fix="Check len() before indexing or iterate over the sequence instead",
        detect=_detect_index_out_of_range,
        comment_hint=_hint(r"\bIndexError\b|index\s*error|out of range"),
    ),
    PatternRule(
        name="suspicious_literal_index",
        category=Category.MAPPING,
        subtype="structure_access",
        severity=Severity.MEDIUM,
        base_confidence=0.6,
        error_type="IndexError",
        description="Unusually large literal index on a sequence of unknown length",
        suggested_fix="Derive the index from the data, or guard it with a length check",
        detect=_detect_suspicious_index,
        comment_hint=_hint(r"\bIndexError\b|index\s*error|out of range|out of bounds"),
        languages=None,
    ),
    PatternRule(
        name="missing_key",
        category=Category.MAPPING,
        subtype="structure_access",
        severity=Severity.MEDIUM,
        base_confidence=0.85,
        error_type="KeyError",
        description="Key is not present in the dict literal being read",
        suggested_fix="Use dict.get() with a default or add the key to the literal",
        detect=_detect_missing_key,
        comment_hint=_hint(r"\bKeyError\b|key\s*error|missing key"),
    ),
    PatternRule(
        name="unchecked_key_access",
        category=Category.MAPPING,
        subtype="structure_access",
        severity=Severity.LOW,
        base_confidence=0.6,
        error_type="KeyError",
        description="String key read without a membership check",
        suggested_fix="Guard the read with 'in' or use dict.get()",
        detect=_detect_unchecked_key,
        comment_hint=_hint(r"\bKeyError\b|key\s*error|missing key"),
    ),
    PatternRule(
        name="undefined_name",
        category=Category.NAMING,
        subtype="identity",
        severity=Severity.HIGH,
        base_confidence=0.8,
        error_type="NameError",
        description="Name is used before it is defined",
        suggested_fix="Define or import the name before it is used, or fix the spelling",
        detect=_detect_undefined_names,
        comment_hint=_hint(r"\bNameError\b|name\s*error|not defined|undefined"),
    ),
    PatternRule(
        name="unknown_import",
        category=Category.NAMING,
        subtype="external_source",
        severity=Severity.CRITICAL,
        base_confidence=0.75,
        error_type="ModuleNotFoundError",
        description="Import of a module that may not exist",
        suggested_fix="Verify the package name on the index and declare it as a dependency",
        detect=_detect_unknown_imports,
        comment_hint=_hint(r"\bModuleNotFoundError\b|\bImportError\b|no module named|pip install"),
    ),
    PatternRule(
        name="unbounded_loop",
        category=Category.RESOURCE,
        subtype="computational_boundary",
        severity=Severity.HIGH,
        base_confidence=0.9,
        error_type="TimeoutError",
        description="Infinite loop without an exit",
        suggested_fix="Add a termination condition, an iteration cap or a break",
        detect=_detect_unbounded_loops,
        comment_hint=_hint(r"\bTimeoutError\b|infinite|endless|forever|hang"),
    ),
    PatternRule(
        name="unbounded_recursion",
        category=Category.RESOURCE,
        subtype="physical_constraint",
        severity=Severity.CRITICAL,
        base_confidence=0.9,
        error_type="RecursionError",
        description="Self-recursive function without a base case",
        suggested_fix="Add a conditional base case that returns without recursing",
        detect=_detect_unbounded_recursion,
        comment_hint=_hint(r"\bRecursionError\b|recursion|stack overflow|maximum recursion"),
    ),
    PatternRule(
        name="oversized_literal",
        category=Category.RESOURCE,
        subtype="physical_constraint",
        severity=Severity.HIGH,
        base_confidence=0.75,
        error_type="MemoryError",
        description="Allocation that is likely to exhaust memory",
        suggested_fix="Stream or chunk the data, or use a generator instead of a materialized collection",
        detect=_detect_oversized_literals,
        comment_hint=_hint(r"\bMemoryError\b|out of memory|memory"),
    ),
    PatternRule(
        name="contradictory_condition",
        category=Category.LOGIC,
        subtype="logic_deviation",
        severity=Severity.HIGH,
        base_confidence=0.9,
        error_type="AssertionError",
        description="Condition can never be true",
        suggested_fix="Rewrite the condition; one of the clauses is inverted or redundant",
        detect=_detect_contradictions,
        comment_hint=_hint(r"\bAssertionError\b|contradict|impossible|never|unreachable"),
    ),
    PatternRule(
        name="duplicate_line",
        category=Category.LOGIC,
        subtype="logic_breakdown",
        severity=Severity.MEDIUM,
        base_confidence=0.65,
        error_type="RuntimeError",
        description="Statement is repeated on consecutive lines",
        suggested_fix="Remove the duplicate or change it to the intended statement",
        detect=_detect_duplicate_lines,
        comment_hint=_hint(r"duplicate|twice|repeated"),
        languages=None,
    ),
    PatternRule(
        name="empty_function",
        category=Category.LOGIC,
        subtype="logic_breakdown",
        severity=Severity.MEDIUM,
        base_confidence=0.75,
        error_type="NotImplementedError",
        description="Function has no implementation",
        suggested_fix="Implement the function body or raise NotImplementedError explicitly",
        detect=_detect_empty_functions,
        comment_hint=_hint(r"\bNotImplementedError\b|\bTODO\b|stub|implement"),
    ),
)


def _clamp(confidence: float) -> float:
    return round(min(MAX_CONFIDENCE, max(MIN_CONFIDENCE, confidence)), 4)


class PatternMatcher:
    """Runs the static rule table over source text.

    Stateless: the same input always produces the same ordered findings.
    """

    def __init__(self, rules: Sequence[PatternRule] = RULES, impact_table: ImpactTable = DEFAULT_IMPACT_TABLE):
        self.rules = tuple(rules)
        self.impact_table = impact_table

    def scan(self, code: str, language: Optional[str] = None) -> List[HallucinationFinding]:
        """Detect hallucination patterns in a code snippet.

        Args:
            code: Candidate source text
            language: Declared language tag, inferred when omitted

        Returns:
            Findings sorted by severity, confidence, first line and rule order
        """
        if not code or not code.strip():
            return []

        resolved = infer_language(code, language)
        view = SourceView.parse(code)
        ranked: List[Tuple[int, HallucinationFinding]] = []
        for order, rule in enumerate(self.rules):
            if not rule.applies_to(resolved):
                continue
            seen: Set[Tuple[int, Optional[str]]] = set()
            for match in rule.detect(view):
                key = (match.line, match.identifier)
                if key in seen:
                    continue
                seen.add(key)
                ranked.append((order, self._build_finding(rule, match, view)))

        ranked.sort(key=lambda entry: (
            -entry[1].severity.weight,
            -entry[1].confidence,
            entry[1].line_numbers[0],
            entry[0],
        ))
        logger.debug("Pattern scan produced %d findings (language=%s)", len(ranked), resolved)
        return [finding for _, finding in ranked]

    def _build_finding(self, rule: PatternRule, match: RuleMatch, view: SourceView) -> HallucinationFinding:
        lines = (match.line,) + tuple(line for line in match.extra_lines if line != match.line)
        confidence = rule.base_confidence + match.adjustment
        evidence = [Evidence(type="code", content=view.raw[match.line].strip(), line_number=match.line + 1)]

        for line in lines:
            comment = view.comment_near(line, rule.comment_hint)
            if comment is not None:
                confidence += COMMENT_BOOST
                evidence.append(Evidence(type="comment", content=comment[1], line_number=comment[0] + 1))
                break

        if match.identifier and match.identifier.lower() in PLACEHOLDER_NAMES:
            confidence -= PLACEHOLDER_PENALTY

        confidence = _clamp(confidence)
        description = f"{rule.description}: {match.detail}" if match.detail else rule.description
        return HallucinationFinding(
            category=rule.category,
            subtype=rule.subtype,
            severity=rule.severity,
            confidence=confidence,
            rule=rule.name,
            description=description,
            source=FindingSource.STATIC,
            evidence=tuple(evidence),
            line_numbers=tuple(sorted(line + 1 for line in lines)),
            suggested_fix=rule.suggested_fix,
            business_impact=self.impact_table.finding_impact(rule.severity, confidence),
        )
