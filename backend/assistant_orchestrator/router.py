"""
Request Router — Keyword/Intent Classification
================================================
NO LLM. NO RANDOMNESS. Deterministic scoring against the domain registry.

Scoring:
  Each domain carries phrase → evidence weights. Matched weights combine as a
  noisy-or:  score = 1 − Π(1 − w)  so every match raises confidence and the
  result stays in [0, 1].

Selection (priority order):
  1. Explicit request type  → that domain gets `explicit_hint_weight` evidence
  2. Active topic           → continuity bonus for the topic's domains; on a
                              score tie the last turn's domain ranks first
  3. Every domain > T       → selected, ordered by score desc
  4. Nothing > T            → best domain alone, if above `min_confidence`
  5. Nothing at all         → zero domains (caller asks for clarification)
"""

import logging
import re
from typing import Dict, Optional

from .config import DOMAINS, TOPIC_DOMAINS, DomainDefinition, OrchestratorConfig, topic_domains
from .models import Domain, RoutingDecision

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9][a-z0-9'+#./-]*")


def normalize(message: str) -> str:
    """Lowercase token string padded with spaces for whole-phrase matching."""
    tokens = [t.rstrip("./-'") for t in _TOKEN_RE.findall(message.lower())]
    tokens = [t for t in tokens if t]
    return f" {' '.join(tokens)} " if tokens else ""


class RequestRouter:
    """
    Classifies a message into one or more capability domains.

    Usage:
        router = RequestRouter(config)
        decision = router.route("explain recursion")
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        domains: Optional[Dict[Domain, DomainDefinition]] = None,
    ):
        self.config = config
        self.domains = domains or DOMAINS

    def score(self, message: str) -> Dict[Domain, float]:
        """Raw keyword evidence per domain, no hints or bonuses applied."""
        text = normalize(message)
        scores = {}
        for domain, definition in self.domains.items():
            miss = 1.0
            for phrase, weight in definition.keywords.items():
                if f" {phrase} " in text:
                    miss *= 1.0 - weight
            scores[domain] = round(1.0 - miss, 4)
        return scores

    def detect_topic(self, message: str) -> Optional[str]:
        text = normalize(message)
        for topic in TOPIC_DOMAINS:
            if f" {topic} " in text:
                return topic
        return None

    def route(
        self,
        message: str,
        explicit_type: Optional[Domain] = None,
        active_topic: Optional[str] = None,
        active_domain: Optional[Domain] = None,
    ) -> RoutingDecision:
        if not message or not normalize(message):
            logger.debug("Empty or unparseable message — no domains selected")
            return RoutingDecision()

        cfg = self.config
        scores = self.score(message)
        topic = self.detect_topic(message)

        if explicit_type is not None:
            prior = scores.get(explicit_type, 0.0)
            scores[explicit_type] = 1.0 - (1.0 - prior) * (1.0 - cfg.explicit_hint_weight)
        elif active_topic:
            for domain in topic_domains(active_topic):
                if domain in scores:
                    scores[domain] = min(1.0, scores[domain] + cfg.continuity_bonus)

        order = list(self.domains)
        ranked = sorted(
            scores.items(),
            key=lambda kv: (-kv[1], kv[0] != active_domain, order.index(kv[0])),
        )
        selected = [d for d, s in ranked if s > cfg.route_threshold][: cfg.max_domains]

        low_confidence = False
        if not selected:
            best, best_score = ranked[0]
            if best_score >= cfg.min_confidence:
                selected = [best]
                low_confidence = True

        cross_domain = (
            len(selected) >= 2
            and scores[selected[0]] - scores[selected[1]] <= cfg.route_epsilon
        )

        decision = RoutingDecision(
            domains=selected,
            confidence={d: round(s, 4) for d, s in scores.items() if s > 0},
            topic=topic,
            explicit=explicit_type is not None,
            cross_domain=cross_domain,
            low_confidence=low_confidence,
        )
        logger.debug(
            f"Routed → {[d.value for d in selected]} "
            f"(topic={topic}, explicit={decision.explicit}, cross_domain={cross_domain})"
        )
        return decision
