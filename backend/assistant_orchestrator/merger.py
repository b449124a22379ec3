"""
Response merging for multi-domain turns.

Policy:
- one domain        → its output passes through
- several domains   → concatenated in routing confidence order, each later
                      section opened by a short transition note; paragraphs
                      already shown (shared prerequisite explanations) and
                      repeated suggestions are dropped
- nothing succeeded → the limitation is stated up front, followed by
                      whatever fallback pointers are available
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Sequence

from .config import DOMAINS
from .models import Domain, DomainOutcome

_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")


@dataclass
class MergedContent:
    content: str
    suggestions: List[str] = field(default_factory=list)
    follow_ups: List[str] = field(default_factory=list)
    degraded: bool = False        # At least one section is a fallback
    all_failed: bool = False      # No provider answered normally


def _key(text: str) -> str:
    return " ".join(text.lower().split())


def _unique(items: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for item in items:
        k = _key(item)
        if k and k not in seen:
            seen.add(k)
            result.append(item)
    return result


class ResponseMerger:

    def merge(self, outcomes: Sequence[DomainOutcome], order: Sequence[Domain]) -> MergedContent:
        rank = {d: i for i, d in enumerate(order)}
        ordered = sorted(outcomes, key=lambda o: rank.get(o.domain, len(rank)))

        suggestions = _unique(s for o in ordered for s in o.suggestions)
        follow_ups = _unique(f for o in ordered for f in o.follow_ups)
        degraded = any(not o.ok for o in ordered)

        if ordered and not any(o.ok for o in ordered):
            return MergedContent(
                content=self._limitation(ordered),
                suggestions=suggestions,
                follow_ups=follow_ups,
                degraded=True,
                all_failed=True,
            )

        if len(ordered) == 1:
            only = ordered[0]
            return MergedContent(
                content=only.content,
                suggestions=suggestions,
                follow_ups=follow_ups,
                degraded=degraded,
            )

        seen_paragraphs = set()
        sections = []
        for outcome in ordered:
            paragraphs = []
            for para in _PARAGRAPH_SPLIT.split(outcome.content.strip()):
                k = _key(para)
                if k and k not in seen_paragraphs:
                    seen_paragraphs.add(k)
                    paragraphs.append(para.strip())
            if not paragraphs:
                continue
            body = "\n\n".join(paragraphs)
            if sections:
                body = f"{self._transition(outcome)}\n\n{body}"
            sections.append(body)

        return MergedContent(
            content="\n\n".join(sections),
            suggestions=suggestions,
            follow_ups=follow_ups,
            degraded=degraded,
        )

    @staticmethod
    def _transition(outcome: DomainOutcome) -> str:
        label = DOMAINS[outcome.domain].label
        if outcome.ok:
            return f"**{label}:**"
        return f"**{label}** (limited right now):"

    @staticmethod
    def _limitation(outcomes: Sequence[DomainOutcome]) -> str:
        labels = ", ".join(DOMAINS[o.domain].label.lower() for o in outcomes)
        lines = [
            f"I couldn't complete this request normally: {labels} "
            f"{'is' if len(outcomes) == 1 else 'are'} not fully available right now."
        ]
        for outcome in outcomes:
            lines.append(f"- {DOMAINS[outcome.domain].label}: {outcome.content}")
        return "\n".join(lines)
