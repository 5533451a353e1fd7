"""Slip heuristics: amount parsing, reference matching, slip-type classification.

Pure functions, no I/O. The synchronous validation endpoint and the background
processing job both call into this module so the instant verdict shown to the
submitter and the verdict stored for staff review come from the same rules.

None of these functions raise; unusable input degrades to ``None`` / ``False``.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional

MIN_SLIP_CONFIDENCE = 60.0
AMOUNT_TOLERANCE = 1.0
MIN_TEXT_LENGTH = 20
MIN_ALNUM_RATIO = 0.35

NEGATIVE_PHRASES = (
    "does not contain",
    "no text",
    "no visible",
    "not contain any visible",
    "unable to read",
    "could not",
)
NEGATIVE_KEYWORDS = ("invoice", "note", "photo", "random")
CURRENCY_CODES = ("mvr", "usd")
POSITIVE_KEYWORDS = (
    "deposit",
    "transfer",
    "transaction",
    "amount",
    *CURRENCY_CODES,
    "bank",
    "account",
    "reference",
)
AMOUNT_LINE_KEYWORDS = ("amount", "total", "paid", "transferred", *CURRENCY_CODES)

_SLIP_AMOUNT_RE = re.compile(r"\b\d{1,3}(?:[,\s]\d{3})*(?:\.\d{1,2})?\b")
_AMOUNT_CANDIDATE_RE = re.compile(
    # Numbers glued to a date or time ("18/10/2026", "2026-10-18", "14:35") are not amounts.
    r"(?<![\w.,])(?<!\d[/:-])(?:\d{1,3}(?:[, ]\d{3})+|\d+)(?:\.\d{1,2})?(?![\w,]|\.\d|[/:-]\d)"
)
_PLAIN_NUMBER_RE = re.compile(r"[-+]?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?", re.ASCII)
_NUMERIC_PREFIX_RE = re.compile(r"^[-+]?(?:\d+\.?\d*|\.\d+)")
_TOKEN_STRIP_RE = re.compile(r"[^A-Za-z0-9-]")
_SANITIZE_RE = re.compile(r"[^0-9A-Za-z]")


# ---------------------------------------------------------------------------
# Amount Parser / Reconciler
# ---------------------------------------------------------------------------


def parse_amount(raw: Any) -> Optional[float]:
    """Normalize a free-form amount ("MVR 1,250.00", " 99 ") into a float.

    Returns ``None`` for anything that does not yield a finite number.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
        return value if math.isfinite(value) else None

    text = str(raw).replace(",", "").strip()
    if not text:
        return None
    if _PLAIN_NUMBER_RE.fullmatch(text):
        # Plain ASCII numbers, scientific notation included, parse as written.
        value = float(text)
        return value if math.isfinite(value) else None

    cleaned = re.sub(r"[^0-9.\-]", "", re.sub(r"\s+", "", text))
    match = _NUMERIC_PREFIX_RE.match(cleaned)
    if not match:
        return None
    try:
        value = float(match.group(0))
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def amounts_match(detected: Any, expected: Any, *, tolerance: float = AMOUNT_TOLERANCE) -> Optional[bool]:
    """``True`` when both amounts parse and differ by at most *tolerance*.

    ``None`` means undetermined (a side is missing or unparseable), which is
    not the same as a mismatch.
    """
    detected_value = parse_amount(detected)
    expected_value = parse_amount(expected)
    if detected_value is None or expected_value is None:
        return None
    return abs(detected_value - expected_value) <= tolerance


def _amount_candidates(text: str) -> list[tuple[int, int, float]]:
    """(line number, offset, value) for every standalone amount-shaped substring."""
    found = []
    for line_no, line in enumerate(text.splitlines()):
        for match in _AMOUNT_CANDIDATE_RE.finditer(line):
            value = parse_amount(match.group(0))
            if value is not None:
                found.append((line_no, match.start(), value))
    return found


def _amount_keyword_end(line: str) -> Optional[int]:
    lowered = line.lower()
    ends = [lowered.find(keyword) + len(keyword) for keyword in AMOUNT_LINE_KEYWORDS if keyword in lowered]
    return min(ends) if ends else None


def detect_amount(text: Optional[str], detected_reference: Optional[str] = None) -> Optional[float]:
    """Pick the amount most likely to be the transferred amount.

    Preference order: on the first line naming an amount or currency, the
    first amount after that word (else the first on the line); then the largest amount after the detected reference, then the largest
    amount anywhere (last occurrence wins ties).
    """
    if not text:
        return None
    candidates = _amount_candidates(text)
    reference_digits = re.sub(r"\D", "", detected_reference or "")
    if reference_digits:
        # A bare reference number on its own line is not an amount.
        candidates = [c for c in candidates if c[2] != float(reference_digits)]
    if not candidates:
        return None

    lines = text.splitlines()
    for line_no in sorted({c[0] for c in candidates}):
        keyword_end = _amount_keyword_end(lines[line_no])
        if keyword_end is None:
            continue
        on_line = [c for c in candidates if c[0] == line_no]
        after_keyword = [c for c in on_line if c[1] >= keyword_end]
        return round((after_keyword or on_line)[0][2], 2)

    if detected_reference:
        ref_line = next(
            (i for i, line in enumerate(lines) if detected_reference.upper() in line.upper()),
            None,
        )
        if ref_line is not None:
            after = [c for c in candidates if c[0] >= ref_line]
            if after:
                return round(max(c[2] for c in after), 2)

    highest = max(c[2] for c in candidates)
    return round(highest, 2)


# ---------------------------------------------------------------------------
# Reference Matcher
# ---------------------------------------------------------------------------


def tokenize(text: Optional[str]) -> list[str]:
    """Split OCR text into candidate reference tokens, in document order."""
    if not text:
        return []
    flattened = re.sub(r"[\r\n]+", " ", str(text))
    tokens = (_TOKEN_STRIP_RE.sub("", part) for part in flattened.split())
    return [token for token in tokens if token]


def normalize_reference(value: Optional[str]) -> str:
    if not value:
        return ""
    return "".join(tokenize(value)).upper()


def detect_reference(ocr_text: Optional[str], entered_reference: Optional[str] = None) -> Optional[str]:
    """Find the token most likely to be the payment reference.

    With an entered reference, the first token that contains it or is
    contained in it wins (OCR often crops or zero-pads references).
    Otherwise the longest token wins, earliest on ties.
    """
    tokens = tokenize(ocr_text)
    if not tokens:
        return None

    needle = normalize_reference(entered_reference)
    if needle:
        for token in tokens:
            candidate = token.upper()
            if candidate in needle or needle in candidate:
                return token

    longest = tokens[0]
    for token in tokens[1:]:
        if len(token) > len(longest):
            longest = token
    return longest


def reference_matches(detected_reference: Optional[str], entered_reference: Optional[str]) -> Optional[bool]:
    """Case-insensitive two-way substring check. ``None`` when nothing was entered."""
    needle = normalize_reference(entered_reference)
    if not needle:
        return None
    candidate = normalize_reference(detected_reference)
    if not candidate:
        return False
    return needle in candidate or candidate in needle


def _sanitize(value: Optional[str]) -> str:
    return _SANITIZE_RE.sub("", value or "").upper()


def levenshtein(a: str, b: str) -> int:
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def reference_distance(entered_reference: Optional[str], text: Optional[str]) -> Optional[int]:
    """Best edit distance of the entered reference over any same-length window of the text.

    Evidence for staff only; the reference verdict itself is substring based.
    """
    needle = _sanitize(entered_reference)
    if not needle:
        return None
    haystack = _sanitize(text)
    if not haystack:
        return len(needle)
    if needle in haystack:
        return 0
    if len(haystack) <= len(needle):
        return levenshtein(needle, haystack)
    best = len(needle)
    for start in range(len(haystack) - len(needle) + 1):
        distance = levenshtein(needle, haystack[start : start + len(needle)])
        if distance < best:
            best = distance
            if best == 0:
                break
    return best


# ---------------------------------------------------------------------------
# Slip-Type Classifier
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SlipText:
    raw: str
    lowered: str
    confidence: Optional[float]
    min_confidence: float


@dataclass(frozen=True)
class SlipRule:
    name: str
    applies: Callable[[SlipText], bool]
    is_slip: bool


@dataclass(frozen=True)
class SlipClassification:
    is_slip: bool
    rule: str


def _low_confidence(doc: SlipText) -> bool:
    return doc.confidence is not None and doc.confidence < doc.min_confidence


def _blank(doc: SlipText) -> bool:
    return not doc.raw.strip()


def _ocr_reported_failure(doc: SlipText) -> bool:
    return any(phrase in doc.lowered for phrase in NEGATIVE_PHRASES)


def _known_non_slip(doc: SlipText) -> bool:
    return any(keyword in doc.lowered for keyword in NEGATIVE_KEYWORDS)


def _slip_vocabulary(doc: SlipText) -> bool:
    return any(keyword in doc.lowered for keyword in POSITIVE_KEYWORDS)


def _too_little_structure(doc: SlipText) -> bool:
    chars = re.sub(r"\s+", "", doc.raw)
    if len(chars) < MIN_TEXT_LENGTH:
        return True
    alnum = sum(1 for char in chars if char.isascii() and char.isalnum())
    return alnum / len(chars) < MIN_ALNUM_RATIO


def _has_amount(doc: SlipText) -> bool:
    return bool(_SLIP_AMOUNT_RE.search(doc.lowered))


# Evaluated in order; the first rule that applies decides.
SLIP_RULES: tuple[SlipRule, ...] = (
    SlipRule("low_confidence", _low_confidence, False),
    SlipRule("blank_text", _blank, False),
    SlipRule("ocr_reported_failure", _ocr_reported_failure, False),
    SlipRule("known_non_slip", _known_non_slip, False),
    SlipRule("slip_vocabulary", _slip_vocabulary, True),
    SlipRule("too_little_structure", _too_little_structure, False),
    SlipRule("amount_pattern", _has_amount, True),
)
DEFAULT_RULE = "no_evidence"


def _as_confidence(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if math.isfinite(value) else None


def classify_slip(
    text: Optional[str],
    confidence: Any = None,
    *,
    min_confidence: float = MIN_SLIP_CONFIDENCE,
) -> SlipClassification:
    raw = text if isinstance(text, str) else ""
    doc = SlipText(
        raw=raw,
        lowered=raw.lower(),
        confidence=_as_confidence(confidence),
        min_confidence=min_confidence,
    )
    for rule in SLIP_RULES:
        if rule.applies(doc):
            return SlipClassification(is_slip=rule.is_slip, rule=rule.name)
    return SlipClassification(is_slip=False, rule=DEFAULT_RULE)


def is_payment_slip(text: Optional[str], confidence: Any = None, *, min_confidence: float = MIN_SLIP_CONFIDENCE) -> bool:
    return classify_slip(text, confidence, min_confidence=min_confidence).is_slip
