"""
Tests for the skill adaptation engine.
"""

import pytest

from assistant_orchestrator.adaptation import SkillAdaptationEngine, classify_signal, next_level
from assistant_orchestrator.models import Domain, SignalRecord, SkillLevel, SkillProfile, SkillSignal

B, I, A, E = SkillLevel.BEGINNER, SkillLevel.INTERMEDIATE, SkillLevel.ADVANCED, SkillLevel.EXPERT


def records(signals, domain=Domain.CODE, level=I):
    return [
        SignalRecord(turn_id=f"t{i}", domain=domain, signal=s, level_at=level)
        for i, s in enumerate(signals)
    ]


class TestLevelOrdering:

    def test_total_order(self):
        assert B < I < A < E
        assert sorted([E, B, A, I]) == [B, I, A, E]

    def test_shift_clamps(self):
        assert B.shift(-1) == B
        assert E.shift(1) == E
        assert I.shift(1) == A


class TestClassifySignal:

    @pytest.mark.parametrize("message,expected", [
        ("I don't get it", SkillSignal.CONFUSION),
        ("this is confusing", SkillSignal.CONFUSION),
        ("it still doesn't work", SkillSignal.INCORRECT_ATTEMPT),
        ("I already know this part", SkillSignal.MASTERY_DECLARED),
        ("that worked, thanks", SkillSignal.CORRECT_ATTEMPT),
        ("explain recursion", SkillSignal.NEUTRAL),
    ])
    def test_heuristics(self, message, expected):
        assert classify_signal(message) == expected

    def test_explicit_feedback_wins(self):
        assert classify_signal("I don't get it", SkillSignal.CORRECT_ATTEMPT) == SkillSignal.CORRECT_ATTEMPT


class TestPromotion:

    def test_three_correct_advance_exactly_one_step(self):
        prior = records([SkillSignal.CORRECT_ATTEMPT] * 2)
        level, why = next_level(I, prior, SkillSignal.CORRECT_ATTEMPT, domain=Domain.CODE)
        assert level == A
        assert "3 of the last 3" in why

    def test_long_success_streak_still_one_step(self):
        prior = records([SkillSignal.CORRECT_ATTEMPT] * 10)
        level, _ = next_level(I, prior, SkillSignal.MASTERY_DECLARED, domain=Domain.CODE)
        assert level == A

    def test_predominantly_positive_is_enough(self):
        prior = records([SkillSignal.CORRECT_ATTEMPT, SkillSignal.NEUTRAL])
        level, _ = next_level(I, prior, SkillSignal.CORRECT_ATTEMPT, domain=Domain.CODE)
        assert level == A

    def test_confusion_in_window_blocks(self):
        prior = records([SkillSignal.CONFUSION, SkillSignal.CORRECT_ATTEMPT])
        level, _ = next_level(I, prior, SkillSignal.CORRECT_ATTEMPT, domain=Domain.CODE)
        assert level == I

    def test_needs_a_full_window(self):
        prior = records([SkillSignal.CORRECT_ATTEMPT])
        level, _ = next_level(I, prior, SkillSignal.CORRECT_ATTEMPT, domain=Domain.CODE)
        assert level == I

    def test_other_domains_do_not_count(self):
        prior = records([SkillSignal.CORRECT_ATTEMPT] * 2, domain=Domain.DEBUG)
        level, _ = next_level(I, prior, SkillSignal.CORRECT_ATTEMPT, domain=Domain.CODE)
        assert level == I

    def test_evidence_from_previous_level_does_not_count(self):
        prior = records([SkillSignal.CORRECT_ATTEMPT] * 2, level=B)
        level, _ = next_level(I, prior, SkillSignal.CORRECT_ATTEMPT, domain=Domain.CODE)
        assert level == I

    def test_expert_stays_expert(self):
        prior = records([SkillSignal.CORRECT_ATTEMPT] * 2, level=E)
        level, _ = next_level(E, prior, SkillSignal.CORRECT_ATTEMPT, domain=Domain.CODE)
        assert level == E


class TestDemotion:

    def test_learning_mode_single_confusion_drops_one(self):
        level, _ = next_level(
            A, [], SkillSignal.CONFUSION, domain=Domain.CODE, learning_mode_active=True
        )
        assert level == I

    def test_normal_mode_single_confusion_holds(self):
        level, _ = next_level(I, [], SkillSignal.CONFUSION, domain=Domain.CODE)
        assert level == I

    def test_normal_mode_two_consecutive_confusions_drop_one(self):
        prior = records([SkillSignal.CONFUSION])
        level, _ = next_level(I, prior, SkillSignal.CONFUSION, domain=Domain.CODE)
        assert level == B

    def test_non_consecutive_confusions_hold(self):
        prior = records([SkillSignal.CONFUSION, SkillSignal.NEUTRAL])
        level, _ = next_level(I, prior, SkillSignal.CONFUSION, domain=Domain.CODE)
        assert level == I

    def test_beginner_floor(self):
        level, why = next_level(
            B, [], SkillSignal.CONFUSION, domain=Domain.CODE, learning_mode_active=True
        )
        assert level == B
        assert "lowest" in why


class TestOverall:

    def test_mode_of_domain_levels(self):
        profile = SkillProfile(levels={Domain.CODE: A, Domain.DEBUG: A, Domain.DOCS: B})
        assert profile.recompute_overall() == A

    def test_ties_go_lower(self):
        profile = SkillProfile(levels={Domain.CODE: A, Domain.DEBUG: B})
        assert profile.recompute_overall() == B

    def test_unknown_domain_falls_back_to_overall(self):
        profile = SkillProfile(overall=I)
        assert profile.level_for(Domain.DEPLOY) == I


class TestEngine:

    def test_engine_uses_configured_window(self):
        engine = SkillAdaptationEngine(promotion_window=1)
        level, _ = engine.next_level(B, [], SkillSignal.CORRECT_ATTEMPT, domain=Domain.CONCEPT)
        assert level == I
