"""
Tests for the settings-editing helpers and their tier caps.
"""

import random

import pytest

from chatkeep import features
from chatkeep.errors import LimitExceededError, NotFoundError, ValidationError
from chatkeep.settings import GiveawayEntry, Settings, merge_settings


def _apply(settings, partial):
    return merge_settings(settings, partial)


class TestFaq:

    def test_add_until_free_cap(self):
        settings = Settings()
        for i in range(3):
            settings = _apply(settings, features.add_faq_rule(settings, [f"q{i}"], "a"))
        assert len(settings.faq.rules) == 3
        with pytest.raises(LimitExceededError, match=r"FAQ rule limit reached \(3\)"):
            features.add_faq_rule(settings, ["q4"], "a")

    def test_unlimited_when_cap_is_none(self):
        settings = _apply(Settings(), {"faqRulesLimit": None})
        for i in range(12):
            settings = _apply(settings, features.add_faq_rule(settings, [f"q{i}"], "a"))
        assert len(settings.faq.rules) == 12

    def test_triggers_cleaned(self):
        partial = features.add_faq_rule(Settings(), [" ship ", "", 5], " 3 days ", case_sensitive=True)
        assert partial["faq"]["rules"] == [{"triggers": ["ship"], "reply": "3 days", "caseSensitive": True}]

    @pytest.mark.parametrize("triggers,reply", [([], "a"), (["q"], ""), ("q", "a")])
    def test_invalid_rule(self, triggers, reply):
        with pytest.raises(ValidationError):
            features.add_faq_rule(Settings(), triggers, reply)

    def test_remove(self):
        settings = _apply(Settings(), features.add_faq_rule(Settings(), ["a"], "1"))
        settings = _apply(settings, features.add_faq_rule(settings, ["b"], "2"))
        settings = _apply(settings, features.remove_faq_rule(settings, 0))
        assert [r.triggers for r in settings.faq.rules] == [["b"]]

    @pytest.mark.parametrize("index", [-1, 1, True])
    def test_remove_invalid_index(self, index):
        settings = _apply(Settings(), features.add_faq_rule(Settings(), ["a"], "1"))
        with pytest.raises(ValidationError):
            features.remove_faq_rule(settings, index)


class TestTimersAndTemplates:

    def test_timer_cap(self):
        settings = Settings()
        for i in range(2):
            settings = _apply(settings, features.add_timer_message(settings, f"msg {i}", 10))
        with pytest.raises(LimitExceededError, match="Timer limit reached"):
            features.add_timer_message(settings, "msg 3")

    def test_timer_interval(self):
        with pytest.raises(ValidationError):
            features.add_timer_message(Settings(), "x", interval=0)

    def test_remove_timer(self):
        settings = _apply(Settings(), features.add_timer_message(Settings(), "x"))
        assert _apply(settings, features.remove_timer_message(settings, 0)).timer.messages == []

    def test_template_duplicate_name(self):
        settings = _apply(Settings(), features.add_template(Settings(), "Thanks", "ty!"))
        with pytest.raises(ValidationError, match="already exists"):
            features.add_template(settings, "thanks", "again")

    def test_template_cap(self):
        settings = Settings()
        for i in range(5):
            settings = _apply(settings, features.add_template(settings, f"t{i}", "x"))
        with pytest.raises(LimitExceededError):
            features.add_template(settings, "t5", "x")

    def test_remove_template(self):
        settings = _apply(Settings(), features.add_template(Settings(), "Promo", "10% off"))
        assert _apply(settings, features.remove_template(settings, "promo")).templates == []
        with pytest.raises(NotFoundError):
            features.remove_template(settings, "missing")


class TestModerationAndGiveaway:

    def test_blocked_words_normalized(self):
        assert features.set_blocked_words(["Spam", "spam ", "", "SCAM"]) == {
            "moderation": {"blockedWords": ["spam", "scam"]},
        }

    def test_blocked_words_must_be_list(self):
        with pytest.raises(ValidationError):
            features.set_blocked_words("spam")

    def test_configure_giveaway(self):
        assert features.configure_giveaway(["win"], unique_only=False) == {
            "giveaway": {"keywords": ["win"], "uniqueOnly": False},
        }

    def test_remove_entry(self):
        settings = _apply(Settings(), {"giveaway": {"entries": [
            {"username": "Ana", "timestamp": 1}, {"username": "bo", "timestamp": 2},
        ]}})
        partial = features.remove_giveaway_entry(settings, "ana")
        assert partial == {"giveaway": {"entries": [{"username": "bo", "timestamp": 2}]}}
        with pytest.raises(NotFoundError):
            features.remove_giveaway_entry(settings, "zed")

    def test_reset_giveaway(self):
        assert features.reset_giveaway() == {"giveaway": {"entries": []}}


class TestPickWinners:

    ENTRIES = [GiveawayEntry(username=f"user{i}", timestamp=i) for i in range(10)]

    def test_distinct_winners(self):
        winners = features.pick_winners(self.ENTRIES, 4, rng=random.Random(3))
        assert len(winners) == 4
        assert len({w.username for w in winners}) == 4

    def test_all_entries_reachable(self):
        rng = random.Random(11)
        seen = {features.pick_winners(self.ENTRIES, 1, rng=rng)[0].username for _ in range(500)}
        assert seen == {e.username for e in self.ENTRIES}

    def test_too_many(self):
        with pytest.raises(LimitExceededError, match="Cannot pick 11 winners from 10 entries"):
            features.pick_winners(self.ENTRIES, 11)

    @pytest.mark.parametrize("count", [0, -2])
    def test_count_at_least_one(self, count):
        with pytest.raises(ValidationError):
            features.pick_winners(self.ENTRIES, count)
