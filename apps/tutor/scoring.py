"""
scoring.py — Tutor Engine · Pronunciation Scoring
=================================================
Turns (target word, recognizer transcript, recognizer confidence) into a
0–100 pronunciation score, a pass/fail verdict and up to two diagnostic
hints.

Pipeline
--------
  1. Exact-match fast path (identical text AND confidence > 0.85 → 100)
  2. Metaphone keys → normalised Levenshtein similarity        (weight 0.4)
  3. Character-bigram Dice coefficient on the raw words        (weight 0.2)
  4. Recognizer confidence                                     (weight 0.4)
  5. Three-band rescale of the blend, rounded half-up, clamped to [0, 100]

The weights, the 0.85 fast-path cutoff, the band edges and the 80-point
pass mark are a compatibility contract with stored scores: change them only
as a deliberate break.
"""

from __future__ import annotations

import logging
import math
import re
from collections import Counter
from dataclasses import dataclass, field

from rapidfuzz.distance import Levenshtein

from apps.tutor.phonetics import phonetic_key

log = logging.getLogger("tutor_engine.scoring")

PASS_SCORE = 80
EXACT_MATCH_CONFIDENCE = 0.85

PHONETIC_WEIGHT   = 0.4
STRING_WEIGHT     = 0.2
CONFIDENCE_WEIGHT = 0.4

HIGH_BAND_FLOOR = 0.80
MID_BAND_FLOOR  = 0.60

MAX_DIAGNOSTICS = 2

_VOWEL_RE = re.compile(r"[aeiou]")
_CONSONANT_RE = re.compile(r"[bcdfghjklmnpqrstvwxyz]")
_WHITESPACE_RE = re.compile(r"\s+")

# Smart formatting on the recognizer appends sentence punctuation ("Cat.")
_TRAILING_PUNCT = ".,!?;:"


@dataclass(frozen=True)
class ScoreResult:
    score:          int
    success:        bool
    phoneme_errors: list[str] = field(default_factory=list)


def normalize(text: str) -> str:
    """Case-fold and trim, including trailing sentence punctuation."""
    return (text or "").strip().lower().rstrip(_TRAILING_PUNCT).strip()


def phonetic_similarity(target: str, spoken: str) -> float:
    """``1 - distance / max_len`` over the Metaphone keys (0 when both are empty)."""
    target_key = phonetic_key(target)
    spoken_key = phonetic_key(spoken)
    max_len = max(len(target_key), len(spoken_key))
    if max_len == 0:
        return 0.0
    distance = Levenshtein.distance(target_key, spoken_key)
    return 1.0 - distance / max_len


def string_similarity(first: str, second: str) -> float:
    """Sørensen–Dice coefficient over character bigrams, whitespace ignored."""
    first = _WHITESPACE_RE.sub("", first)
    second = _WHITESPACE_RE.sub("", second)

    if first == second:
        return 1.0
    if len(first) < 2 or len(second) < 2:
        return 0.0

    first_bigrams = Counter(first[i:i + 2] for i in range(len(first) - 1))
    intersection = 0
    for i in range(len(second) - 1):
        bigram = second[i:i + 2]
        if first_bigrams[bigram] > 0:
            first_bigrams[bigram] -= 1
            intersection += 1

    return 2.0 * intersection / (len(first) + len(second) - 2)


def rescale(base: float) -> int:
    """Spread the weighted blend over 0–100 with the three fixed bands."""
    if base >= HIGH_BAND_FLOOR:
        scaled = 80 + (base - HIGH_BAND_FLOOR) * 100
    elif base >= MID_BAND_FLOOR:
        scaled = 60 + (base - MID_BAND_FLOOR) * 100
    else:
        scaled = base * 100
    # Round half-up, not Python's banker's rounding
    return int(math.floor(scaled + 0.5))


def _first_mismatch(kind: str, pattern: re.Pattern, target: str, spoken: str) -> list[str]:
    target_chars = pattern.findall(target)
    spoken_chars = pattern.findall(spoken)

    if len(target_chars) != len(spoken_chars):
        return [f"{kind} count mismatch"]

    for expected, heard in zip(target_chars, spoken_chars):
        if expected != heard:
            return [f"{kind} '{expected}' pronounced as '{heard}'"]
    return []


def diagnose(target_word: str, spoken_text: str) -> list[str]:
    """Positional vowel / consonant / length hints, at most two, first divergence only."""
    target = normalize(target_word)
    spoken = normalize(spoken_text)
    if target == spoken:
        return []

    errors = _first_mismatch("vowel", _VOWEL_RE, target, spoken)
    errors += _first_mismatch("consonant", _CONSONANT_RE, target, spoken)

    if not errors and len(target) != len(spoken):
        errors.append("word too short" if len(target) > len(spoken) else "word too long")

    return errors[:MAX_DIAGNOSTICS]


def score(target_word: str, spoken_text: str, confidence: float) -> tuple[int, bool]:
    """Score only: ``(score, success)``."""
    result = analyze(target_word, spoken_text, confidence)
    return result.score, result.success


def analyze(target_word: str, spoken_text: str, confidence: float) -> ScoreResult:
    """Full analysis of one attempt: score, verdict and diagnostics."""
    target = normalize(target_word)
    spoken = normalize(spoken_text)
    confidence = min(1.0, max(0.0, float(confidence)))

    if target == spoken and confidence > EXACT_MATCH_CONFIDENCE:
        log.debug("event=score_exact_match target=%s confidence=%.2f", target, confidence)
        return ScoreResult(score=100, success=True)

    phonetic = phonetic_similarity(target, spoken)
    surface = string_similarity(target, spoken)
    base = (
        PHONETIC_WEIGHT * phonetic
        + STRING_WEIGHT * surface
        + CONFIDENCE_WEIGHT * confidence
    )
    final = min(100, max(0, rescale(base)))
    success = final >= PASS_SCORE

    log.debug(
        "event=score target=%s spoken=%s phonetic=%.3f string=%.3f confidence=%.2f base=%.3f score=%d",
        target, spoken, phonetic, surface, confidence, base, final,
    )
    return ScoreResult(score=final, success=success, phoneme_errors=diagnose(target, spoken))
