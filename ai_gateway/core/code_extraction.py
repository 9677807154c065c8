"""
Response content extraction.

Pulls the user prompt and the assistant text out of provider-specific
request/response bodies, decides whether an interaction is a coding task,
and isolates the code snippet that should be verified.
"""

import re
from dataclasses import dataclass
from typing import Any, List, Optional

CODING_PROMPT = re.compile(r"\b(code|function|script|program|algorithm|implement)", re.IGNORECASE)
FENCED_BLOCK = re.compile(r"```([\w+#-]*)[ \t]*\n?([\s\S]*?)```")
INLINE_CODE = re.compile(r"`([^`\n]+)`")

# Combined inline snippets shorter than this are prose, not a solution
MIN_INLINE_CODE_CHARS = 50

_LANGUAGE_ALIASES = {
    "py": "python",
    "python3": "python",
    "js": "javascript",
    "node": "javascript",
    "jsx": "javascript",
    "ts": "typescript",
    "tsx": "typescript",
}

_PYTHON_MARKERS = re.compile(
    r"^\s*(?:def\s+\w+\s*\(.*\)\s*(?:->.*)?:|class\s+\w+.*:|elif\b|from\s+[\w.]+\s+import\b)"
    r"|\bprint\(|\bself\b|\bNone\b|\bTrue\b|\bFalse\b",
    re.MULTILINE,
)
_JS_MARKERS = re.compile(
    r"\bfunction\s*\w*\s*\(|\b(?:const|let|var)\s+\w+\s*=|=>|\bconsole\.log\(|;\s*$",
    re.MULTILINE,
)
_TS_MARKERS = re.compile(r"\binterface\s+\w+|:\s*(?:string|number|boolean)\b")


@dataclass(frozen=True)
class CodeSnippet:
    """Code isolated from an AI response."""
    code: str
    language: Optional[str] = None


def _text_parts(parts: Any) -> List[str]:
    if not isinstance(parts, list):
        return []
    return [part["text"] for part in parts if isinstance(part, dict) and isinstance(part.get("text"), str)]


def _message_text(content: Any) -> Optional[str]:
    """Chat message content is either a string or a list of typed parts."""
    if isinstance(content, str):
        return content
    texts = _text_parts(content)
    return "\n".join(texts) if texts else None


def extract_user_prompt(request_body: Any) -> Optional[str]:
    """Last user-authored text in a Gemini, OpenAI or Anthropic request body."""
    if not isinstance(request_body, dict):
        return None

    contents = request_body.get("contents")
    if isinstance(contents, list):
        for item in reversed(contents):
            if isinstance(item, dict) and item.get("role", "user") == "user":
                texts = _text_parts(item.get("parts"))
                if texts:
                    return "\n".join(texts)

    messages = request_body.get("messages")
    if isinstance(messages, list):
        for message in reversed(messages):
            if isinstance(message, dict) and message.get("role") == "user":
                text = _message_text(message.get("content"))
                if text:
                    return text

    prompt = request_body.get("prompt")
    if isinstance(prompt, str) and prompt:
        return prompt
    return None


def extract_response_text(response_body: Any) -> Optional[str]:
    """Assistant text from a Gemini, OpenAI or Anthropic response body."""
    if not isinstance(response_body, dict):
        return None

    candidates = response_body.get("candidates")
    if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
        content = candidates[0].get("content")
        if isinstance(content, dict):
            texts = _text_parts(content.get("parts"))
            if texts:
                return "\n".join(texts)

    choices = response_body.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        choice = choices[0]
        message = choice.get("message")
        if isinstance(message, dict):
            text = _message_text(message.get("content"))
            if text:
                return text
        if isinstance(choice.get("text"), str):
            return choice["text"]

    texts = _text_parts(response_body.get("content"))
    if texts:
        return "\n".join(texts)

    # Ollama-style local servers
    if isinstance(response_body.get("response"), str):
        return response_body["response"]
    return None


def is_coding_request(prompt: Optional[str], response_text: Optional[str]) -> bool:
    """A prompt asking for code, or any response containing a fenced block."""
    if prompt and CODING_PROMPT.search(prompt):
        return True
    return bool(response_text and FENCED_BLOCK.search(response_text))


def normalize_language(tag: Optional[str]) -> Optional[str]:
    if not tag:
        return None
    tag = tag.strip().lower()
    return _LANGUAGE_ALIASES.get(tag, tag) or None


def extract_code(response_text: Optional[str]) -> Optional[CodeSnippet]:
    """Isolate code from an AI response.

    The first fenced block wins, keeping its language tag. Without one,
    inline code spans are joined and kept only if they add up to a
    substantial snippet.

    Args:
        response_text: Assistant text

    Returns:
        CodeSnippet, or None when the response carries no code
    """
    if not response_text:
        return None

    match = FENCED_BLOCK.search(response_text)
    if match:
        code = match.group(2).strip()
        if code:
            return CodeSnippet(code=code, language=normalize_language(match.group(1)))

    inline = [m.group(1) for m in INLINE_CODE.finditer(response_text)]
    combined = "\n\n".join(inline)
    if len(combined) > MIN_INLINE_CODE_CHARS:
        return CodeSnippet(code=combined)
    return None


def infer_language(code: str, declared: Optional[str] = None) -> str:
    """Resolve the language of a snippet.

    A declared tag always wins. Otherwise Python markers are checked before
    JavaScript ones since ``import`` and ``class`` are shared keywords, and
    anything unrecognized is treated as Python.
    """
    language = normalize_language(declared)
    if language:
        return language

    python_hits = len(_PYTHON_MARKERS.findall(code))
    js_hits = len(_JS_MARKERS.findall(code))
    if js_hits > python_hits:
        return "typescript" if _TS_MARKERS.search(code) else "javascript"
    return "python"
