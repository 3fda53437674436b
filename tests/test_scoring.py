"""Tests for dedup keys, ranking, filtering and featured selection."""

from __future__ import annotations

import random
import unittest

from newsstack_wx.common_types import AggregationQuery, NewsItem
from newsstack_wx.registry import FeedSourceConfig, SourceRegistry
from newsstack_wx.scoring import (
    dedup_key,
    deduplicate,
    is_similar_title,
    normalize_title,
    normalize_url,
    pick_featured,
    rank,
    score_item,
)

NOW = 1_700_000_000.0


def _item(title, *, url=None, source="a", priority="low", category="weather", age_h=1.0, image=None) -> NewsItem:
    url = url or f"https://{source}.example/{title.replace(' ', '-').lower()}"
    return NewsItem(
        id=dedup_key(url, title, source),
        title=title,
        url=url,
        source=source,
        category=category,
        priority=priority,
        timestamp=NOW - age_h * 3600,
        image_url=image,
    )


def _registry() -> SourceRegistry:
    def src(sid, weight):
        return FeedSourceConfig(
            id=sid, kind="rss", url=f"https://{sid}.example/rss",
            category_tags=("weather",), priority_weight=weight,
        )
    return SourceRegistry([src("a", 10), src("b", 10), src("c", 40)])


class TestNormalizeUrl(unittest.TestCase):

    def test_tracking_params_and_case(self):
        self.assertEqual(
            normalize_url("HTTPS://WWW.Fox.com/News/Storm/?utm_source=x&b=2&fbclid=z&a=1#top"),
            "https://www.fox.com/News/Storm?a=1&b=2",
        )

    def test_empty(self):
        self.assertEqual(normalize_url(None), "")
        self.assertEqual(normalize_url("   "), "")

    def test_dedup_key_falls_back_to_title_and_source(self):
        self.assertEqual(dedup_key(None, "Storm  ", "a"), dedup_key("", "storm", "a"))
        self.assertNotEqual(dedup_key(None, "Storm", "a"), dedup_key(None, "Storm", "b"))
        self.assertEqual(
            dedup_key("https://x.example/a?utm_medium=rss", "One", "a"),
            dedup_key("https://X.example/a/", "Other", "b"),
        )


class TestDeduplicate(unittest.TestCase):

    def test_first_seen_wins(self):
        first = _item("Hurricane Lee Update", url="https://news.example/lee?utm_source=a", source="a")
        second = _item("HURRICANE LEE UPDATE", url="https://NEWS.example/lee/", source="b", priority="high")
        out = deduplicate([first, second])
        self.assertEqual(len(out), 1)
        self.assertIs(out[0], first)

    def test_fuzzy_titles_opt_in(self):
        a = _item("Hurricane Lee strengthens rapidly over Atlantic waters", source="a")
        b = _item("Hurricane Lee strengthens rapidly over Atlantic", source="b")
        self.assertEqual(len(deduplicate([a, b])), 2)
        self.assertEqual(len(deduplicate([a, b], fuzzy=True)), 1)

    def test_similar_title_threshold(self):
        t1 = normalize_title("Major winter storm targets Denver tonight")
        t2 = normalize_title("Heat wave grips Phoenix this weekend")
        self.assertFalse(is_similar_title(t1, t2))
        self.assertTrue(is_similar_title(t1, t1))
        self.assertEqual(len(normalize_title("x" * 100)), 60)


class TestRank(unittest.TestCase):

    def test_score_formula(self):
        it = _item("t", priority="medium", age_h=5)
        self.assertAlmostEqual(score_item(it, 40, NOW), 200 + 40 - 5)

    def test_priority_dominates_then_weight_then_recency(self):
        reg = _registry()
        low_c = _item("low from trusted", source="c", priority="low", age_h=0)
        high_a_old = _item("high old", source="a", priority="high", age_h=20)
        high_a_new = _item("high new", source="a", priority="high", age_h=1)
        med_a = _item("medium", source="a", priority="medium", age_h=0)
        out = rank([low_c, med_a, high_a_old, high_a_new], AggregationQuery(), registry=reg, now=NOW)
        self.assertEqual([i.title for i in out], ["high new", "high old", "medium", "low from trusted"])

    def test_registry_order_breaks_ties(self):
        reg = _registry()
        from_b = _item("same score b", source="b", age_h=2)
        from_a = _item("same score a", source="a", age_h=2)
        out = rank([from_b, from_a], AggregationQuery(), registry=reg, now=NOW)
        self.assertEqual([i.source for i in out], ["a", "b"])

    def test_deterministic_under_shuffle(self):
        reg = _registry()
        items = [
            _item(f"item {i}", source="abc"[i % 3], priority=("high", "medium", "low")[i % 3], age_h=i % 4)
            for i in range(30)
        ]
        expected = rank(items, AggregationQuery(max_items=30), registry=reg, now=NOW)
        for seed in range(5):
            shuffled = items[:]
            random.Random(seed).shuffle(shuffled)
            self.assertEqual(rank(shuffled, AggregationQuery(max_items=30), registry=reg, now=NOW), expected)
        self.assertEqual(rank(expected, AggregationQuery(max_items=30), registry=reg, now=NOW), expected)

    def test_scores_are_non_increasing(self):
        reg = _registry()
        items = [_item(f"i{i}", source="abc"[i % 3], priority=("high", "low")[i % 2], age_h=i) for i in range(12)]
        out = rank(items, AggregationQuery(max_items=50), registry=reg, now=NOW)
        scores = [score_item(i, reg.get(i.source).priority_weight, NOW) for i in out]
        self.assertEqual(scores, sorted(scores, reverse=True))


class TestFilters(unittest.TestCase):

    def setUp(self):
        self.reg = _registry()
        self.items = [
            _item("h", priority="high", category="severe", source="a"),
            _item("m", priority="medium", category="tropical", source="b"),
            _item("l", priority="low", category="weather", source="c"),
        ]

    def _titles(self, **q):
        return {i.title for i in rank(self.items, AggregationQuery(**q), registry=self.reg, now=NOW)}

    def test_priority_levels(self):
        self.assertEqual(self._titles(priority="high"), {"h"})
        self.assertEqual(self._titles(priority="medium"), {"h", "m"})
        self.assertEqual(self._titles(priority="low"), {"l"})
        self.assertEqual(self._titles(priority="all"), {"h", "m", "l"})

    def test_equivalent_queries_share_a_fingerprint(self):
        a = AggregationQuery(max_age_hours=72, categories=["severe", "tropical"])
        b = AggregationQuery(max_age_hours=72.0, categories=("tropical", "severe"))
        self.assertEqual(a.fingerprint, b.fingerprint)
        self.assertEqual(a.max_age_hours, 72.0)

    def test_categories_and_sources(self):
        self.assertEqual(self._titles(categories={"severe", "tropical"}), {"h", "m"})
        self.assertEqual(self._titles(sources={"c"}), {"l"})

    def test_filter_after_rank_then_truncate(self):
        items = [_item(f"low {i}", priority="low", source="c", age_h=i) for i in range(5)]
        items.append(_item("the only high", priority="high", source="a", age_h=30))
        out = rank(items, AggregationQuery(max_items=2, priority="high"), registry=self.reg, now=NOW)
        self.assertEqual([i.title for i in out], ["the only high"])

    def test_age_filter(self):
        old = [_item("eighty", age_h=80)]
        self.assertEqual(rank(old, AggregationQuery(max_age_hours=72), registry=self.reg, now=NOW), [])
        self.assertEqual(len(rank(old, AggregationQuery(max_age_hours=96), registry=self.reg, now=NOW)), 1)


class TestPickFeatured(unittest.TestCase):

    def test_prefers_high_severe(self):
        low = _item("picnic", priority="low", category="general")
        high = _item("tornado", priority="high", category="severe", age_h=0)
        self.assertIs(pick_featured([low, high]), high)

    def test_image_preferred_within_tier(self):
        plain = _item("a", priority="high", category="breaking")
        pic = _item("b", priority="high", category="severe", image="https://img.example/b.jpg")
        self.assertIs(pick_featured([plain, pic]), pic)

    def test_high_outside_featured_categories(self):
        med = _item("m", priority="medium", category="severe")
        high = _item("h", priority="high", category="tropical")
        self.assertIs(pick_featured([med, high]), high)

    def test_fallback_and_empty(self):
        only = _item("x", priority="low")
        self.assertIs(pick_featured([only]), only)
        self.assertIsNone(pick_featured([]))


if __name__ == "__main__":
    unittest.main()
