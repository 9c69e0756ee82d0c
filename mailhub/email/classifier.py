"""
Deterministic urgency/importance scoring for email messages.
Labels each message urgent and/or important and explains why.
"""

import re
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import List, Dict, Any, Optional, Sequence, Pattern

from .providers.base import EmailMessage, ProviderType

logger = logging.getLogger(__name__)

DEFAULT_URGENT_KEYWORDS = [
    'urgent', 'asap', 'critical', 'emergency', 'immediately', 'rush',
    'time-sensitive', 'deadline', 'important', 'high priority',
    'action required', 'attention needed',
]

DEFAULT_IMPORTANT_KEYWORDS = [
    'meeting', 'conference', 'presentation', 'proposal', 'deal',
    'contract', 'agreement', 'approval', 'review', 'approval needed',
    'signature', 'confirmation', 'important',
]

URGENT_THRESHOLD = 0.3
IMPORTANT_THRESHOLD = 0.3

KEYWORD_WEIGHT = 0.15
KEYWORD_CAP = 0.5
UNREAD_URGENCY = 0.2
UNREAD_IMPORTANCE = 0.1
ATTACHMENT_IMPORTANCE = 0.25
PROVIDER_LABEL_BONUS = 0.3
RECENT_URGENCY = 0.15
RECENT_WINDOW = timedelta(hours=24)

PRIORITY_LABELS = ('IMPORTANT', 'STARRED')


@dataclass(frozen=True)
class ClassificationPrefs:
    """Per-account inputs to classification."""
    urgent_keywords: Sequence[str] = ()
    important_keywords: Sequence[str] = ()
    provider: Optional[str] = None


@dataclass
class Classification:
    """Outcome of classifying one message."""
    urgency_score: float
    importance_score: float
    is_urgent: bool
    is_important: bool
    reasons: List[str] = field(default_factory=list)

    @property
    def rank_score(self) -> float:
        return self.urgency_score * 2 + self.importance_score

    def to_dict(self) -> Dict[str, Any]:
        return {
            'urgency_score': self.urgency_score,
            'importance_score': self.importance_score,
            'is_urgent': self.is_urgent,
            'is_important': self.is_important,
            'reasons': list(self.reasons),
        }


@lru_cache(maxsize=512)
def _keyword_pattern(keyword: str) -> Pattern:
    """Whole-word matcher for a keyword (phrases allowed)."""
    return re.compile(r'\b' + re.escape(keyword.lower()) + r'\b')


def count_keyword(text: str, keyword: str) -> int:
    """Count whole-word occurrences of keyword in already lower-cased text."""
    if not keyword or not keyword.strip():
        return 0
    return len(_keyword_pattern(keyword).findall(text))


def _score_keywords(text: str, keywords: Sequence[str], kind: str, reasons: List[str]) -> float:
    score = 0.0
    for keyword in keywords:
        occurrences = count_keyword(text, keyword)
        if occurrences > 0:
            score += min(occurrences * KEYWORD_WEIGHT, KEYWORD_CAP)
            reasons.append(f'Contains {kind} keyword: "{keyword}"')
    return score


def _clamp(value: float) -> float:
    return max(0.0, min(value, 1.0))


def classify(
    message: EmailMessage,
    prefs: Optional[ClassificationPrefs] = None,
    now: Optional[datetime] = None
) -> Classification:
    """
    Score a message for urgency and importance.

    Pure function: the same message, preferences and ``now`` always give the
    same scores and the same ordered reasons.

    Args:
        message: Message to score
        prefs: Account keyword overrides; empty lists fall back to the defaults
        now: Reference time for the recency signal (defaults to current UTC time)

    Returns:
        Classification with scores clamped to [0, 1]
    """
    prefs = prefs or ClassificationPrefs()
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    urgent_keywords = list(prefs.urgent_keywords) or DEFAULT_URGENT_KEYWORDS
    important_keywords = list(prefs.important_keywords) or DEFAULT_IMPORTANT_KEYWORDS

    reasons: List[str] = []
    text = f"{message.subject or ''} {message.snippet or ''}".lower()

    urgency = _score_keywords(text, urgent_keywords, 'urgent', reasons)
    importance = _score_keywords(text, important_keywords, 'important', reasons)

    if not message.is_read:
        urgency += UNREAD_URGENCY
        importance += UNREAD_IMPORTANCE
        reasons.append('Email is unread')

    if message.has_attachments:
        importance += ATTACHMENT_IMPORTANCE
        reasons.append('Email has attachments')

    # Gmail reports its own priority signal through labels
    if prefs.provider == ProviderType.GMAIL.value and any(
        label in PRIORITY_LABELS for label in message.labels
    ):
        urgency = min(urgency + PROVIDER_LABEL_BONUS, 1.0)
        importance = min(importance + PROVIDER_LABEL_BONUS, 1.0)
        reasons.append('Marked as important/starred in Gmail')

    if now - message.received_at < RECENT_WINDOW:
        urgency += RECENT_URGENCY
        reasons.append('Received within last 24 hours')

    urgency = _clamp(urgency)
    importance = _clamp(importance)

    return Classification(
        urgency_score=urgency,
        importance_score=importance,
        is_urgent=urgency >= URGENT_THRESHOLD,
        is_important=importance >= IMPORTANT_THRESHOLD,
        reasons=reasons,
    )
