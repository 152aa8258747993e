"""Content interceptors applied around every stage invocation.

An InterceptorChain is an ordered list of ContentFilters composed once from
configuration (`settings.interceptors`). Each stage passes its prompt through
`apply_input` before the backend call and the model's text through
`apply_output` afterwards. A filter may rewrite the text (PII masking, keyword
masking) or block it outright, in which case the chain substitutes a fixed
refusal message and the stage does not use the original text.

Available filters:
- pii: masks emails, phone numbers, card numbers and IPv4 addresses
- guardrail: masks forbidden keywords with '*'; severe keywords block
- logging: logs text sizes, never modifies
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol

logger = logging.getLogger(__name__)

REFUSAL_TEXT = (
    "[Content blocked] This content was withheld by the content safety policy. "
    "Please revise the request and try again."
)


@dataclass
class FilterResult:
    text: str
    violations: list[str] = field(default_factory=list)
    blocked: bool = False


class ContentFilter(Protocol):
    name: str

    def filter(self, text: str) -> FilterResult: ...


# --- Filters ---


class PIIFilter:
    """Replace personal data with bracketed placeholders."""

    name = "pii"

    # Order matters: emails before IPs, cards before phone numbers.
    PATTERNS: list[tuple[str, re.Pattern, str]] = [
        ("email", re.compile(r"\b[\w.+-]+@[\w-]+(?:\.[\w-]+)*\.[A-Za-z]{2,}\b"), "[EMAIL]"),
        ("card", re.compile(r"\b(?:\d[ -]?){12,18}\d\b"), "[CARD]"),
        ("phone", re.compile(r"(?<!\w)\+?\d{1,3}[ .-]?\(?\d{3}\)?[ .-]\d{3}[ .-]\d{4}\b"), "[PHONE]"),
        ("phone", re.compile(r"\b\d{3}-\d{3}-\d{4}\b"), "[PHONE]"),
        ("ipv4", re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b"), "[IP]"),
    ]

    def filter(self, text: str) -> FilterResult:
        violations = []
        for kind, pattern, placeholder in self.PATTERNS:
            text, count = pattern.subn(placeholder, text)
            if count:
                violations.append(f"{kind}x{count}")
        return FilterResult(text=text, violations=violations)


DEFAULT_FORBIDDEN_KEYWORDS = [
    # violence
    "murder", "massacre", "assault",
    # illegal activity
    "narcotics", "drug trafficking", "smuggling", "fraud scheme",
    # adult content
    "pornography", "obscene",
    # gambling
    "online gambling", "sports betting",
    # extremism
    "terrorism", "extremism",
    # self-harm
    "suicide", "self-harm",
    # discrimination
    "hate speech", "racial slur",
]

SEVERE_KEYWORDS = frozenset({
    "narcotics", "drug trafficking", "pornography", "obscene",
    "terrorism", "suicide", "self-harm",
})


class GuardrailFilter:
    """Mask forbidden keywords; block when a severe keyword is present."""

    name = "guardrail"

    def __init__(
        self,
        forbidden: Optional[Iterable[str]] = None,
        severe: Optional[Iterable[str]] = None,
    ):
        self.forbidden = list(forbidden) if forbidden is not None else list(DEFAULT_FORBIDDEN_KEYWORDS)
        self.severe = frozenset(k.lower() for k in (severe if severe is not None else SEVERE_KEYWORDS))

    def filter(self, text: str) -> FilterResult:
        violations = []
        for keyword in self.forbidden:
            pattern = re.compile(re.escape(keyword), re.IGNORECASE)
            text, count = pattern.subn("*" * len(keyword), text)
            if count:
                violations.append(keyword)
        blocked = any(v.lower() in self.severe for v in violations)
        return FilterResult(text=text, violations=violations, blocked=blocked)


class LoggingFilter:
    name = "logging"

    def filter(self, text: str) -> FilterResult:
        logger.info(f"[interceptor] {len(text):,} chars")
        logger.debug(f"[interceptor] preview: {text[:200]}")
        return FilterResult(text=text)


FILTERS = {
    "pii": PIIFilter,
    "guardrail": GuardrailFilter,
    "logging": LoggingFilter,
}


# --- Chain ---


class InterceptorChain:
    """Ordered filters applied to stage input and output."""

    def __init__(self, filters: Iterable[ContentFilter] = ()):
        self.filters = list(filters)

    def __len__(self) -> int:
        return len(self.filters)

    def _apply(self, text: str, direction: str, label: str) -> FilterResult:
        violations: list[str] = []
        for f in self.filters:
            result = f.filter(text)
            violations.extend(f"{f.name}:{v}" for v in result.violations)
            if result.blocked:
                logger.warning(
                    f"[{label}] {direction} blocked by {f.name}: {', '.join(result.violations)}"
                )
                return FilterResult(text=REFUSAL_TEXT, violations=violations, blocked=True)
            text = result.text
        if violations:
            logger.info(f"[{label}] {direction} filtered: {', '.join(violations)}")
        return FilterResult(text=text, violations=violations)

    def apply_input(self, text: str, label: str = "") -> FilterResult:
        return self._apply(text, "input", label)

    def apply_output(self, text: str, label: str = "") -> FilterResult:
        return self._apply(text, "output", label)


def build_interceptor_chain(names: Iterable[str]) -> InterceptorChain:
    """Compose a chain from filter names, preserving order.

    Raises:
        ValueError: On an unknown filter name
    """
    filters = []
    for name in names:
        cls = FILTERS.get(name)
        if cls is None:
            raise ValueError(f"Unknown interceptor '{name}'. Available: {sorted(FILTERS)}")
        filters.append(cls())
    return InterceptorChain(filters)
