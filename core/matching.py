"""
Address Matching Engine.

Scores register entries against a target address and picks the single best
candidate above a threshold. Deterministic, single pass, no side effects.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Final, Generic, Iterable, Optional, TypeVar

from core.models import normalise_address_key


logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# Scores and thresholds
# =============================================================================

SCORE_IDENTICAL: Final[int] = 100
SCORE_CONTAINED: Final[int] = 90
SCORE_STRUCTURAL_STRONG: Final[int] = 80
SCORE_STRUCTURAL: Final[int] = 70

GENERAL_THRESHOLD: Final[int] = 70
STRICT_THRESHOLD: Final[int] = 80

GENERAL_MIN_TOKEN_LENGTH: Final[int] = 2
STRICT_MIN_TOKEN_LENGTH: Final[int] = 3

# Shared significant tokens needed to lift a structural match to 80
STRONG_SHARED_TOKENS: Final[int] = 2

_FLAT_RE: Final = re.compile(r"\b(?:flat|apartment|apt|unit)\s+([a-z0-9]+)\b")
_NUMBER_RE: Final = re.compile(r"\b(\d+[a-z]?)\b")
_LEADING_NUMBER_RE: Final = re.compile(r"^(\d+[a-z]?)\b")


def normalise_address(address: str) -> str:
    """Lowercase, strip `,` `.` `'` and collapse whitespace."""
    return normalise_address_key(address)


def structural_key(normalised: str) -> Optional[str]:
    """
    Flat + building number ('flat 2 10'), else the leading building number.

    The flat token may appear anywhere in the address so that
    'flat 2 10 high street' and '10 high street flat 2' share a key.
    """
    flat = _FLAT_RE.search(normalised)
    if flat:
        flat_id = flat.group(1)
        remainder = normalised[: flat.start()] + " " + normalised[flat.end():]
        for number in _NUMBER_RE.findall(remainder):
            return f"flat {flat_id} {number}"
        return f"flat {flat_id}"
    leading = _LEADING_NUMBER_RE.match(normalised)
    if leading:
        return leading.group(1)
    return None


def significant_tokens(normalised: str, min_length: int) -> set[str]:
    """Tokens longer than `min_length` characters."""
    return {token for token in normalised.split() if len(token) > min_length}


def score_addresses(
    target: str,
    candidate: str,
    min_token_length: int = GENERAL_MIN_TOKEN_LENGTH,
) -> int:
    """
    Score a candidate address against a target (0-100).

    Both inputs are raw addresses; they are normalised here.
    """
    a = normalise_address(target)
    b = normalise_address(candidate)
    if not a or not b:
        return 0
    if a == b:
        return SCORE_IDENTICAL
    # Substring either way, or the same words in a different order
    if a in b or b in a or Counter(a.split()) == Counter(b.split()):
        return SCORE_CONTAINED

    key_a = structural_key(a)
    if key_a is None or key_a != structural_key(b):
        return 0
    shared = significant_tokens(a, min_token_length) & significant_tokens(b, min_token_length)
    if len(shared) >= STRONG_SHARED_TOKENS:
        return SCORE_STRUCTURAL_STRONG
    return SCORE_STRUCTURAL


# =============================================================================
# Best match
# =============================================================================


@dataclass(frozen=True)
class MatchResult(Generic[T]):
    """The selected candidate and its score."""

    candidate: T
    score: int


@dataclass(frozen=True)
class MatchPolicy:
    """Threshold and token length for one call site."""

    threshold: int
    min_token_length: int

    def __post_init__(self):
        if not 0 <= self.threshold <= 100:
            raise ValueError("threshold must be between 0 and 100")


GENERAL_POLICY: Final = MatchPolicy(GENERAL_THRESHOLD, GENERAL_MIN_TOKEN_LENGTH)
STRICT_POLICY: Final = MatchPolicy(STRICT_THRESHOLD, STRICT_MIN_TOKEN_LENGTH)


def best_match(
    target_address: str,
    candidates: Iterable[T],
    address_of: Callable[[T], str],
    policy: MatchPolicy = GENERAL_POLICY,
) -> Optional[MatchResult[T]]:
    """
    Pick the best-scoring candidate at or above the policy threshold.

    Ties keep the first candidate seen. Below threshold returns None.

    Args:
        target_address: Address of the property being enriched.
        candidates: Register entries to score.
        address_of: Extracts the address string from a candidate.
        policy: Threshold and significant-token length for this call site.
    """
    best: Optional[T] = None
    best_score = -1
    for candidate in candidates:
        score = score_addresses(target_address, address_of(candidate), policy.min_token_length)
        logger.debug("Match score %d for %r vs %r", score, target_address, address_of(candidate))
        if score > best_score:
            best, best_score = candidate, score
            if score == SCORE_IDENTICAL:
                break

    if best is None or best_score < policy.threshold:
        return None
    return MatchResult(candidate=best, score=best_score)
