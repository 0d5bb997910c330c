from __future__ import annotations

import re
from dataclasses import dataclass
from math import exp

MULTI_STEP_PATTERNS = (
    re.compile(r"first.*then", re.IGNORECASE | re.DOTALL),
    re.compile(r"step \d", re.IGNORECASE),
    re.compile(r"\d\.\s"),
)
QUESTION_MARKS = ("?", "？")


@dataclass(frozen=True, slots=True)
class DimensionScore:
    name: str
    score: float
    signal: str | None = None


@dataclass(frozen=True, slots=True)
class KeywordBands:
    """Match-count thresholds and the score awarded in each band."""

    low: int
    high: int
    none_score: float
    low_score: float
    high_score: float


def find_keyword_matches(text: str, keywords: tuple[str, ...]) -> list[str]:
    return [keyword for keyword in keywords if keyword in text]


def score_keyword_dimension(
    text: str,
    keywords: tuple[str, ...],
    *,
    name: str,
    label: str,
    bands: KeywordBands,
) -> tuple[DimensionScore, list[str]]:
    matches = find_keyword_matches(text, keywords)
    count = len(matches)
    if count >= bands.high:
        score = bands.high_score
    elif count >= bands.low:
        score = bands.low_score
    else:
        return DimensionScore(name=name, score=bands.none_score), matches
    preview = ", ".join(matches[:3])
    return DimensionScore(name=name, score=score, signal=f"{label} ({preview})"), matches


def score_token_count(
    estimated_tokens: int, *, simple_threshold: int, complex_threshold: int
) -> DimensionScore:
    if estimated_tokens < simple_threshold:
        return DimensionScore(
            name="token_count", score=-1.0, signal=f"short ({estimated_tokens} tokens)"
        )
    if estimated_tokens > complex_threshold:
        return DimensionScore(
            name="token_count", score=1.0, signal=f"long ({estimated_tokens} tokens)"
        )
    return DimensionScore(name="token_count", score=0.0)


def score_multi_step(text: str) -> DimensionScore:
    if any(pattern.search(text) for pattern in MULTI_STEP_PATTERNS):
        return DimensionScore(name="multi_step_patterns", score=0.5, signal="multi-step")
    return DimensionScore(name="multi_step_patterns", score=0.0)


def score_question_complexity(prompt: str) -> DimensionScore:
    count = sum(prompt.count(mark) for mark in QUESTION_MARKS)
    if count > 3:
        return DimensionScore(
            name="question_complexity", score=0.5, signal=f"{count} questions"
        )
    return DimensionScore(name="question_complexity", score=0.0)


def agentic_keyword_score(match_count: int) -> float:
    if match_count >= 4:
        return 1.0
    if match_count >= 3:
        return 0.6
    if match_count >= 1:
        return 0.2
    return 0.0


def calibrate_confidence(distance: float, steepness: float) -> float:
    return _sigmoid(steepness * distance)


def _sigmoid(value: float) -> float:
    if value >= 0:
        exp_neg = exp(-value)
        return 1.0 / (1.0 + exp_neg)
    exp_pos = exp(value)
    return exp_pos / (1.0 + exp_pos)


def clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, value))
