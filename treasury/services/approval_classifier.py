"""Heuristic classification of treasurer email replies.

Scoring is a deterministic weighted-keyword match so every decision can be
audited from the stored ``matched_keywords``. The weight tables are plain data;
tune them here without touching ``classify``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from email.utils import parseaddr
from functools import lru_cache
from typing import Mapping

from treasury.models import ParseConfidence, ParsedApprovalStatus


APPROVAL_KEYWORDS: tuple[tuple[str, int], ...] = (
    ('approved', 10),
    ('approve', 10),
    ('authorized', 10),
    ('authorize', 9),
    ('go ahead', 10),
    ('green light', 9),
    ('lgtm', 9),
    ('proceed', 8),
    ('send it', 8),
    ('confirmed', 8),
    ('confirm', 7),
    ('looks good', 7),
    ('sounds good', 7),
    ('yes', 5),
    ('ok', 5),
    ('okay', 5),
    ('thanks', 5),
    ('thank you', 5),
    ('sure', 4),
)

REJECTION_KEYWORDS: tuple[tuple[str, int], ...] = (
    ('not approved', 20),
    ('do not approve', 20),
    ("don't approve", 20),
    ('do not send', 15),
    ("don't send", 15),
    ('rejected', 10),
    ('reject', 10),
    ('declined', 10),
    ('decline', 10),
    ('denied', 10),
    ('deny', 10),
    ('hold off', 8),
    ('on hold', 8),
    ('not yet', 8),
    ('stop', 8),
    ('cancel', 8),
    ('no', 5),
)

UNCLEAR_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern)
    for pattern in (
        r'\?',
        r'\bmaybe\b',
        r'\bperhaps\b',
        r'\bnot sure\b',
        r'\bunsure\b',
        r'\bclarify\b',
        r'\bquestion\b',
        r'\bwondering\b',
        r'\bdepends\b',
        r'\bcan you\b',
        r'\bcould you\b',
        r'\blet me (?:check|think|review|look)\b',
        r'\bneed (?:more )?(?:info|information|details)\b',
    )
)

# Lines at or after these belong to the quoted or forwarded original.
QUOTE_HEADER_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r'^on\b.*\bwrote:?$',
        r'^from:\s',
        r'^sent:\s',
        r'^-{2,}\s*(?:original|forwarded) message\s*-{2,}$',
        r'^_{5,}$',
        r'^begin forwarded message:?$',
    )
)

SIGNATURE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r'^--\s*$'),
    re.compile(r'^-- \S'),
    re.compile(r'^(?:best|regards|best regards|kind regards|warm regards|cheers|sincerely|thanks|thank you),?$', re.IGNORECASE),
    re.compile(r'^sent from my \w+', re.IGNORECASE),
    re.compile(r'^[A-Z][a-z]+ [A-Z][a-z]+$'),
)

AUTO_REPLY_SUBJECT_PHRASES = (
    'out of office',
    'out of the office',
    'automatic reply',
    'auto-reply',
    'auto reply',
    'autoreply',
    'away from the office',
    'on vacation',
    'vacation reply',
)

AUTO_REPLY_BODY_PHRASES = (
    'i am out of the office',
    "i'm out of the office",
    'i am currently out',
    "i'm currently out",
    'i am currently away',
    'i am on vacation',
    "i'm on vacation",
    'limited access to email',
    'will respond when i return',
    'will reply when i return',
    'this is an automated response',
    'this is an automatic reply',
)

REQUEST_NUMBER_RE = re.compile(r'\bDR-\d{8}-[0-9A-F]{6}\b', re.IGNORECASE)

# Mail clients substitute smart quotes; "don’t approve" must score like "don't approve".
_QUOTE_FOLDING = str.maketrans({
    '‘': "'",
    '’': "'",
    '‛': "'",
    'ʼ': "'",
    '′': "'",
    '＇': "'",
    '“': '"',
    '”': '"',
    ' ': ' ',
})


def normalize_text(text: str | None) -> str:
    return (text or '').translate(_QUOTE_FOLDING).strip().lower()


@dataclass(frozen=True)
class ApprovalParseResult:
    status: ParsedApprovalStatus
    confidence: ParseConfidence
    matched_keywords: list[str] = field(default_factory=list)
    extracted_message: str | None = None
    approval_score: int = 0
    rejection_score: int = 0

    @property
    def is_decision(self) -> bool:
        return self.status != ParsedApprovalStatus.UNCLEAR


@lru_cache(maxsize=None)
def _phrase_pattern(phrase: str) -> re.Pattern[str]:
    # "ok" must not match inside "broken".
    return re.compile(r'(?<![a-z0-9])' + re.escape(normalize_text(phrase)) + r'(?![a-z0-9])')


def score_keywords(text: str, table: tuple[tuple[str, int], ...]) -> tuple[int, list[str]]:
    """Sum the weights of every phrase in ``table`` found in lowercased ``text``."""
    score = 0
    matched: list[str] = []
    for phrase, weight in table:
        if _phrase_pattern(phrase).search(text):
            score += weight
            matched.append(phrase)
    return score, matched


def has_unclear_signals(text: str) -> bool:
    return any(pattern.search(text) for pattern in UNCLEAR_PATTERNS)


def _resolve_confidence(*, winning: int, difference: int, unclear_signals: bool, status: ParsedApprovalStatus) -> ParseConfidence:
    if unclear_signals and status != ParsedApprovalStatus.UNCLEAR:
        return ParseConfidence.MEDIUM if difference >= 10 else ParseConfidence.LOW
    if difference >= 15 and winning >= 10:
        return ParseConfidence.HIGH
    if difference >= 8 or winning >= 7:
        return ParseConfidence.MEDIUM
    return ParseConfidence.LOW


def classify(body: str | None) -> ApprovalParseResult:
    text = normalize_text(body)
    extracted = extract_message(body)

    approval_score, approval_matches = score_keywords(text, APPROVAL_KEYWORDS)
    rejection_score, rejection_matches = score_keywords(text, REJECTION_KEYWORDS)
    unclear_signals = has_unclear_signals(text)

    if approval_score == 0 and rejection_score == 0:
        return ApprovalParseResult(
            status=ParsedApprovalStatus.UNCLEAR,
            confidence=ParseConfidence.LOW,
            matched_keywords=[],
            extracted_message=extracted,
        )

    if approval_score > rejection_score:
        status = ParsedApprovalStatus.APPROVED
    elif rejection_score > approval_score:
        status = ParsedApprovalStatus.REJECTED
    else:
        status = ParsedApprovalStatus.UNCLEAR

    winning = max(approval_score, rejection_score)
    difference = abs(approval_score - rejection_score)
    confidence = _resolve_confidence(
        winning=winning,
        difference=difference,
        unclear_signals=unclear_signals,
        status=status,
    )

    # A weak low-confidence lead is never reported as a decision.
    if confidence == ParseConfidence.LOW and status != ParsedApprovalStatus.UNCLEAR and winning < 6:
        status = ParsedApprovalStatus.UNCLEAR

    return ApprovalParseResult(
        status=status,
        confidence=confidence,
        matched_keywords=approval_matches + rejection_matches,
        extracted_message=extracted,
        approval_score=approval_score,
        rejection_score=rejection_score,
    )


def _is_quote_header(line: str) -> bool:
    return any(pattern.search(line) for pattern in QUOTE_HEADER_PATTERNS)


def _is_signature(line: str) -> bool:
    return any(pattern.search(line) for pattern in SIGNATURE_PATTERNS)


def strip_quoted_text(body: str | None) -> str:
    """Return the reply portion of ``body``, keeping line breaks."""
    kept: list[str] = []
    for line in (body or '').splitlines():
        stripped = line.strip()
        if stripped.startswith('>'):
            continue
        if _is_quote_header(stripped):
            break
        kept.append(line)
    return '\n'.join(kept).strip()


def extract_message(body: str | None) -> str | None:
    kept: list[str] = []
    for line in (body or '').splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith('>'):
            continue
        if _is_quote_header(stripped) or _is_signature(stripped):
            break
        kept.append(stripped)
    message = ' '.join(kept).strip()
    return message or None


def _header(headers: Mapping[str, str] | None, name: str) -> str | None:
    if not headers:
        return None
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return '' if value is None else str(value)
    return None


def is_auto_reply(subject: str | None, body: str | None, headers: Mapping[str, str] | None = None) -> bool:
    auto_submitted = _header(headers, 'Auto-Submitted')
    if auto_submitted is not None and auto_submitted.strip().lower() != 'no':
        return True
    if _header(headers, 'X-Auto-Response-Suppress') is not None:
        return True

    subject_text = normalize_text(subject)
    if any(phrase in subject_text for phrase in AUTO_REPLY_SUBJECT_PHRASES):
        return True
    body_text = normalize_text(body)
    return any(phrase in body_text for phrase in AUTO_REPLY_BODY_PHRASES)


def validate_sender_email(from_address: str | None, expected: str | None) -> bool:
    sender = (from_address or '').strip().lower()
    wanted = (expected or '').strip().lower()
    if not sender or not wanted:
        return False
    if sender == wanted:
        return True
    _, address = parseaddr(sender)
    return address.strip().lower() == wanted


def extract_request_number(*texts: str | None) -> str | None:
    for text in texts:
        match = REQUEST_NUMBER_RE.search(text or '')
        if match:
            return match.group(0).upper()
    return None
