"""
Token counting and usage tracking.

Resolves prompt/completion/total token counts from provider-specific
response bodies using per-provider token paths validated at load time.
"""

import math
import re
from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union

_IDENTIFIER_SEGMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")
_INDEX_SEGMENT = re.compile(r"^\d+$")


@dataclass(frozen=True)
class TokenPath:
    """Validated dot-path into a JSON response body.

    Segments are either object keys or non-negative list indices,
    e.g. ``usage.prompt_tokens`` or ``choices.0.usage.total``.
    """
    segments: Tuple[Union[str, int], ...]

    @classmethod
    def parse(cls, path: str) -> "TokenPath":
        """Parse and validate a dot-path string.

        Args:
            path: Dot-separated path

        Returns:
            Parsed TokenPath

        Raises:
            ValueError: If the path is empty or has an invalid segment
        """
        if not isinstance(path, str) or not path.strip():
            raise ValueError("token path must be a non-empty string")

        segments = []
        for raw in path.strip().split("."):
            if _INDEX_SEGMENT.match(raw):
                segments.append(int(raw))
            elif _IDENTIFIER_SEGMENT.match(raw):
                segments.append(raw)
            else:
                raise ValueError(f"Invalid segment '{raw}' in token path '{path}'")
        return cls(tuple(segments))

    def resolve(self, body: Any) -> Optional[Any]:
        """Follow the path through nested dicts and lists, returning None on any miss."""
        current = body
        for segment in self.segments:
            if isinstance(segment, int):
                if not isinstance(current, list) or segment >= len(current):
                    return None
                current = current[segment]
            else:
                if not isinstance(current, dict) or segment not in current:
                    return None
                current = current[segment]
        return current

    def __str__(self) -> str:
        return ".".join(str(segment) for segment in self.segments)


@dataclass(frozen=True)
class TokenFieldMap:
    """Where a provider reports its token counts."""
    prompt: TokenPath
    completion: TokenPath
    total: Optional[TokenPath] = None


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Contains exact token counts without estimation or model-specific logic.
    """
    prompt_tokens: int
    completion_tokens: int
    reported_total: int = 0

    @property
    def total_tokens(self) -> int:
        """Reported total, falling back to prompt + completion when absent or zero."""
        if self.reported_total > 0:
            return self.reported_total
        return self.prompt_tokens + self.completion_tokens


def _as_token_count(value: Any) -> int:
    # bool is an int subclass and never a token count
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if value < 0 or not math.isfinite(value):
        return 0
    return int(value)


def extract_token_usage(body: Any, mapping: TokenFieldMap) -> TokenUsage:
    """Extract token counts from a provider response body.

    Never raises: any path that cannot be resolved to a non-negative
    number yields a count of 0.

    Args:
        body: Decoded JSON response body (any shape)
        mapping: Provider token field map

    Returns:
        TokenUsage with prompt, completion and reported total counts
    """
    prompt = _as_token_count(mapping.prompt.resolve(body))
    completion = _as_token_count(mapping.completion.resolve(body))
    total = _as_token_count(mapping.total.resolve(body)) if mapping.total else 0
    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        reported_total=total,
    )
