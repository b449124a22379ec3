"""
Skill Adaptation Engine
========================
Pure functions deciding how a learner's skill level evolves. No I/O.

State Machine (per domain):
  level ──[last K signals mostly correct/mastery, no confusion]──►  level + 1
  level ──[confusion, learning mode]─────────────────────────────►  level − 1
  level ──[2 consecutive confusion, normal mode]─────────────────►  level − 1

Evidence only counts while it was observed at the current level, so a level
change starts a fresh window. Levels never move more than one step per turn.
"""

import logging
import re
from typing import List, Optional, Sequence, Tuple

from .models import Domain, SignalRecord, SkillLevel, SkillSignal

logger = logging.getLogger(__name__)

POSITIVE_SIGNALS = (SkillSignal.CORRECT_ATTEMPT, SkillSignal.MASTERY_DECLARED)

# Phrase heuristics, checked in order. First hit wins.
_SIGNAL_PATTERNS: Tuple[Tuple[SkillSignal, re.Pattern], ...] = (
    (SkillSignal.CONFUSION, re.compile(
        r"\b(don'?t (get|understand)|i'?m (confused|lost)|confus(ed|ing)|"
        r"makes no sense|what do you mean|doesn'?t make sense|over my head)\b"
    )),
    (SkillSignal.INCORRECT_ATTEMPT, re.compile(
        r"\b(still (doesn'?t|does not|not) work|still (fail|broken|crash)\w*|"
        r"didn'?t work|same error|that'?s wrong)\b"
    )),
    (SkillSignal.MASTERY_DECLARED, re.compile(
        r"\b(i already know|i know (this|that|how)|too (easy|basic)|"
        r"skip the basics|i'?m (an )?expert)\b"
    )),
    (SkillSignal.CORRECT_ATTEMPT, re.compile(
        r"\b(it works|that worked|it worked|that fixed it|i (solved|fixed) it|"
        r"got it working|makes sense now|now i (get|understand) it)\b"
    )),
)


def classify_signal(message: str, feedback: Optional[SkillSignal] = None) -> SkillSignal:
    """Explicit feedback wins; otherwise match phrase heuristics."""
    if feedback is not None:
        return feedback
    text = (message or "").lower()
    for signal, pattern in _SIGNAL_PATTERNS:
        if pattern.search(text):
            return signal
    return SkillSignal.NEUTRAL


def _window(
    recent: Sequence[SignalRecord],
    domain: Domain,
    current: SkillLevel,
) -> List[SkillSignal]:
    return [r.signal for r in recent if r.domain == domain and r.level_at == current]


def next_level(
    current: SkillLevel,
    recent: Sequence[SignalRecord],
    new_signal: SkillSignal,
    *,
    domain: Domain,
    learning_mode_active: bool = False,
    promotion_window: int = 3,
) -> Tuple[SkillLevel, str]:
    """
    Compute the updated level for one domain.

    Args:
        current: Domain level before this turn.
        recent: Prior signal records (any domain, any level; filtered here).
        new_signal: This turn's classified signal.
        domain: Domain the signal applies to.
        learning_mode_active: Demote on a single confusion when True.
        promotion_window: K, the number of signals promotion looks at.

    Returns:
        (updated_level, rationale)
    """
    history = _window(recent, domain, current) + [new_signal]

    if new_signal == SkillSignal.CONFUSION:
        if current == SkillLevel.BEGINNER:
            return current, "Confusion noted; already at the lowest level"
        if learning_mode_active:
            return current.shift(-1), "Learning mode: one confusion signal lowers the level"
        if len(history) >= 2 and history[-2] == SkillSignal.CONFUSION:
            return current.shift(-1), "Two consecutive confusion signals lower the level"
        return current, "Single confusion outside learning mode; waiting for confirmation"

    last_k = history[-promotion_window:]
    if len(last_k) == promotion_window and SkillSignal.CONFUSION not in last_k:
        positives = sum(1 for s in last_k if s in POSITIVE_SIGNALS)
        if positives * 2 > promotion_window:
            if current == SkillLevel.EXPERT:
                return current, "Consistent success; already at the highest level"
            return current.shift(1), (
                f"{positives} of the last {promotion_window} signals show success"
            )

    return current, f"No change ({new_signal.value})"


class SkillAdaptationEngine:
    """
    Config-bound wrapper around `next_level`.

    Usage:
        engine = SkillAdaptationEngine(promotion_window=3)
        level, why = engine.next_level(SkillLevel.BEGINNER, records, signal,
                                       domain=Domain.CODE, learning_mode_active=False)
    """

    def __init__(self, promotion_window: int = 3):
        self.promotion_window = promotion_window

    def classify(self, message: str, feedback: Optional[SkillSignal] = None) -> SkillSignal:
        return classify_signal(message, feedback)

    def next_level(
        self,
        current: SkillLevel,
        recent: Sequence[SignalRecord],
        new_signal: SkillSignal,
        *,
        domain: Domain,
        learning_mode_active: bool = False,
    ) -> Tuple[SkillLevel, str]:
        level, rationale = next_level(
            current,
            recent,
            new_signal,
            domain=domain,
            learning_mode_active=learning_mode_active,
            promotion_window=self.promotion_window,
        )
        if level != current:
            logger.info(f"Skill [{domain.value}]: {current.value} → {level.value} ({rationale})")
        return level, rationale
