from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List


FILTER_MARKER = "[FILTERED]"
SCRIPT_MARKER = "[SCRIPT_REMOVED]"

DEFAULT_MAX_LENGTH = 2000
PROMPT_MAX_LENGTH = 500
BLOCK_THRESHOLD = 70

MIN_ORDER_ID_LENGTH = 3
MAX_ORDER_ID_LENGTH = 20
MAX_ORDER_IDS = 3
MAX_URLS = 3

_FLAGS = re.IGNORECASE

SUSPICIOUS_PATTERNS = [
    re.compile(r"ignore\s+(previous|all|above|system)\s+instructions?", _FLAGS),
    re.compile(r"forget\s+(everything|all|previous)\s+(instructions?|prompts?)", _FLAGS),
    re.compile(r"act\s+as\s+(a\s+)?(different|new|another)\s+(ai|bot|assistant|character)", _FLAGS),
    re.compile(r"pretend\s+(to\s+be|you\s+are)\s+(a\s+)?(different|evil|malicious)", _FLAGS),
    re.compile(r"system\s*:\s*[\"']?.*[\"']?", _FLAGS),
    re.compile(r"assistant\s*:\s*[\"']?.*[\"']?", _FLAGS),
    re.compile(r"human\s*:\s*[\"']?.*[\"']?", _FLAGS),
    re.compile(r"\{\{.*\}\}", _FLAGS),
    re.compile(r"\$\{.*\}", _FLAGS),
    re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", _FLAGS),
    re.compile(r"javascript\s*:", _FLAGS),
    re.compile(r"data\s*:\s*text/html", _FLAGS),
    re.compile(r"on\w+\s*=\s*[\"'][^\"']*[\"']?", _FLAGS),
]

INJECTION_KEYWORDS = [
    "ignore",
    "forget",
    "disregard",
    "override",
    "bypass",
    "jailbreak",
    "roleplaying",
    "roleplay",
    "pretend",
    "simulate",
    "emulate",
    "system message",
    "system prompt",
    "initial prompt",
    "base prompt",
]

_SCRIPT_TAG = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", _FLAGS)
_HTML_TAG = re.compile(r"<[^>]*>")
_URL = re.compile(r"https?://[^\s]+", _FLAGS)
_WORD = re.compile(r"[a-z]+")

# Order reference shapes, tried in this order.
# The trailing flag says whether the captured code must contain a digit.
ORDER_ID_PATTERNS = [
    (re.compile(r"\b([A-Z]{2,4}-[0-9]{4}-[0-9]{3})\b", _FLAGS), False),
    (re.compile(r"\b([A-Z]{2,4}[0-9]{3,6})\b", _FLAGS), False),
    (re.compile(r"#([A-Z0-9\-]{3,15})", _FLAGS), False),
    (re.compile(r"\border\s+([A-Z0-9\-]{3,15})", _FLAGS), True),
    (re.compile(r"\b([0-9]{5,10})\b", _FLAGS), False),
]

COMMON_WORDS = {
    "NEED", "WANT", "CANCEL", "CHECK", "ORDER", "TRACK", "STATUS", "THE", "MY",
    "FOR", "AND", "PLEASE", "NUMBER", "HISTORY", "DETAILS", "PLACED", "WITH",
}


@dataclass
class SanitizationResult:
    sanitized_text: str
    warnings: List[str] = field(default_factory=list)
    risk_score: int = 0

    @property
    def is_clean(self) -> bool:
        return not self.warnings


@dataclass
class OrderIdExtraction:
    order_ids: List[str] = field(default_factory=list)
    is_valid: bool = False


def sanitize(text, max_length: int = DEFAULT_MAX_LENGTH) -> SanitizationResult:
    """
    Neutralize prompt-injection and markup in free-form customer input.

    Pure function: the same input always yields the same result.
    """
    if not isinstance(text, str) or not text:
        warnings = ["Invalid input provided"]
        return SanitizationResult("", warnings, calculate_risk_score("", warnings))

    warnings: List[str] = []
    out = text

    if len(out) > max_length:
        out = out[:max_length]
        warnings.append(f"Input truncated to {max_length} characters")

    for idx, pattern in enumerate(SUSPICIOUS_PATTERNS):
        if pattern.search(out):
            out = pattern.sub(FILTER_MARKER, out)
            warnings.append(f"Suspicious pattern detected and removed ({idx})")

    lowered = out.lower()
    found = [k for k in INJECTION_KEYWORDS if k in lowered]
    if found:
        warnings.append(f"Potential injection keywords detected: {', '.join(found)}")

    out = re.sub(r"[ \t\r\f\v]+", " ", out)
    out = re.sub(r" ?\n ?", "\n", out)
    out = re.sub(r"\n{3,}", "\n\n", out)

    out = _SCRIPT_TAG.sub(SCRIPT_MARKER, out)
    out = _HTML_TAG.sub("", out)

    if len(_URL.findall(out)) > MAX_URLS:
        warnings.append("Excessive URLs detected")

    out = out.strip()
    return SanitizationResult(out, warnings, calculate_risk_score(text, warnings))


def _keyword_density(text: str) -> int:
    lowered = text.lower()
    words = _WORD.findall(lowered)
    single = [k for k in INJECTION_KEYWORDS if " " not in k]
    multi = [k for k in INJECTION_KEYWORDS if " " in k]

    count = sum(1 for w in words if any(k in w for k in single))
    count += sum(lowered.count(k) for k in multi)
    return count


def calculate_risk_score(original: str, warnings: List[str]) -> int:
    score = 0

    if len(original) > 1000:
        score += 10
    if len(original) > 2000:
        score += 20

    score += len(warnings) * 15
    score += sum(25 for p in SUSPICIOUS_PATTERNS if p.search(original))
    score += min(30, _keyword_density(original) * 10)

    return min(score, 100)


def should_block(risk_score: int, threshold: int = BLOCK_THRESHOLD) -> bool:
    return risk_score >= threshold


def extract_order_ids(text: str) -> OrderIdExtraction:
    """
    Pull order-id-like tokens out of already-sanitized text.

    Returns them upper-cased, de-duplicated, in first-seen order.
    """
    if not text:
        return OrderIdExtraction([], False)

    ids: List[str] = []
    for pattern, needs_digit in ORDER_ID_PATTERNS:
        for m in pattern.finditer(text):
            candidate = m.group(1).upper()
            if needs_digit and not any(ch.isdigit() for ch in candidate):
                continue
            if candidate in COMMON_WORDS:
                continue
            if not (MIN_ORDER_ID_LENGTH <= len(candidate) <= MAX_ORDER_ID_LENGTH):
                continue
            if candidate not in ids:
                ids.append(candidate)

    return OrderIdExtraction(ids[:MAX_ORDER_IDS], 1 <= len(ids) <= MAX_ORDER_IDS)


def validate_order_input(text, max_length: int = DEFAULT_MAX_LENGTH) -> List[str]:
    """
    Cheap envelope checks on raw input. Returns a list of problems (empty when fine).
    No character-set restriction: apostrophes and punctuation are normal in chat.
    """
    errors: List[str] = []
    if not isinstance(text, str):
        return ["Message must be a string"]
    if not text.strip():
        errors.append("Message cannot be empty")
    if len(text) > max_length:
        errors.append(f"Message too long (max {max_length} characters)")
    return errors
