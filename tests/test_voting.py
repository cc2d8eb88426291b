"""
Unit tests for the vote aggregation helpers and the expiry gate.
"""

import random
from datetime import datetime, timezone

import pytest

import voting

TIERS = [
    {"id": "B", "name": "B", "colour": "#FFFF7F", "order": 2},
    {"id": "S", "name": "S", "colour": "#FF7F7F", "order": 0},
    {"id": "A", "name": "A", "colour": "#FFBf7F", "order": 1},
]


def make_listing(listing_id, votes=None, user_votes=None):
    return {"id": listing_id, "votes": votes, "userVotes": user_votes}


def placed(buckets):
    return {entry["listing"]["id"]: tier for tier, entries in buckets.items() for entry in entries}


class TestDominantTier:
    """Community ranking: plurality with tier-order tie-break."""

    def test_tie_goes_to_earlier_tier(self):
        buckets = voting.listings_by_dominant_tier([make_listing("x", {"S": 2, "A": 2})], TIERS)

        [entry] = buckets["S"]
        assert entry["totalVotes"] == 4
        assert entry["topVotes"] == 2
        assert entry["percent"] == 50
        assert buckets["A"] == [] and buckets["B"] == []

    def test_deleted_tier_votes_are_ignored(self):
        buckets = voting.listings_by_dominant_tier([make_listing("x", {"DeletedTier": 5, "A": 1})], TIERS)

        [entry] = buckets["A"]
        assert entry["totalVotes"] == 1
        assert entry["percent"] == 100

    def test_tie_break_does_not_depend_on_map_order(self):
        forward = {"B": 3, "A": 3, "S": 1}
        backward = dict(reversed(list(forward.items())))

        for votes in (forward, backward):
            buckets = voting.listings_by_dominant_tier([make_listing("x", votes)], TIERS)
            assert placed(buckets) == {"x": "A"}

    def test_strict_majority_beats_order(self):
        buckets = voting.listings_by_dominant_tier([make_listing("x", {"S": 1, "B": 4})], TIERS)
        assert placed(buckets) == {"x": "B"}
        assert buckets["B"][0]["percent"] == 80

    def test_listings_without_valid_votes_are_skipped(self):
        listings = [
            make_listing("none"),
            make_listing("empty", {}),
            make_listing("stale", {"Z": 10}),
            make_listing("zero", {"S": 0}),
            make_listing("ok", {"B": 1}),
        ]
        assert placed(voting.listings_by_dominant_tier(listings, TIERS)) == {"ok": "B"}

    def test_every_tier_has_a_bucket(self):
        buckets = voting.listings_by_dominant_tier([], TIERS)
        assert list(buckets) == ["S", "A", "B"]

    def test_percent_rounds_half_up(self):
        buckets = voting.listings_by_dominant_tier([make_listing("x", {"S": 1, "A": 1, "B": 6})], TIERS)
        assert buckets["B"][0]["percent"] == 75
        assert voting.round_half_up(12.5) == 13
        assert voting.round_half_up(0.5) == 1

    def test_non_numeric_counts_count_as_zero(self):
        buckets = voting.listings_by_dominant_tier([make_listing("x", {"S": "7", "A": 2})], TIERS)
        assert buckets["A"][0]["totalVotes"] == 2

    def test_negative_counts_count_as_zero(self):
        buckets = voting.listings_by_dominant_tier([
            make_listing("neg", {"S": -1, "A": 2}),
            make_listing("kept", {"S": 1, "A": -1}),
        ], TIERS)

        assert placed(buckets) == {"neg": "A", "kept": "S"}
        assert buckets["A"][0]["totalVotes"] == 2
        assert buckets["A"][0]["percent"] == 100
        assert buckets["S"][0]["percent"] == 100

    def test_fractional_counts_are_kept(self):
        [entry] = voting.listings_by_dominant_tier([make_listing("x", {"S": 1.5, "A": 0.5})], TIERS)["S"]
        assert entry["totalVotes"] == 2.0
        assert entry["topVotes"] == 1.5
        assert entry["percent"] == 75

    def test_random_listings_hold_bucket_invariants(self):
        rng = random.Random(7)
        names = ["S", "A", "B", "Gone"]
        listings = []
        for i in range(200):
            votes = {n: rng.randint(0, 4) for n in rng.sample(names, rng.randint(0, 4))}
            listings.append(make_listing(f"l{i}", votes))

        buckets = voting.listings_by_dominant_tier(listings, TIERS)
        positions = voting.tier_positions(TIERS)

        expected = [l for l in listings if voting.valid_vote_total(l["votes"], positions) > 0]
        assert sum(len(entries) for entries in buckets.values()) == len(expected)

        for tier, entries in buckets.items():
            for entry in entries:
                votes = entry["listing"]["votes"]
                valid = {n: c for n, c in votes.items() if n in positions}
                assert entry["totalVotes"] == sum(valid.values())
                assert entry["topVotes"] == max(valid.values())
                assert 0 <= entry["percent"] <= 100
                assert entry["percent"] == voting.round_half_up(entry["topVotes"] / entry["totalVotes"] * 100)
                winners = [n for n, c in valid.items() if c == entry["topVotes"]]
                assert tier == min(winners, key=positions.get)


class TestUserTier:
    """Personal ranking: a listing sits in the tier the user picked."""

    def test_uses_users_own_vote(self):
        listing = make_listing("x", {"S": 3, "B": 1}, {"u1": "B", "u2": "S"})
        buckets = voting.listings_by_user_tier([listing], TIERS, "u1")

        [entry] = buckets["B"]
        assert entry["topVotes"] == 1
        assert entry["totalVotes"] == 4
        assert entry["percent"] == 25

    def test_skips_votes_for_removed_tiers(self):
        listing = make_listing("x", {"Gone": 1}, {"u1": "Gone"})
        buckets = voting.listings_by_user_tier([listing], TIERS, "u1")
        assert placed(buckets) == {}

    def test_no_user_gives_empty_buckets(self):
        listing = make_listing("x", {"S": 1}, {"u1": "S"})
        assert placed(voting.listings_by_user_tier([listing], TIERS, None)) == {}

    def test_zero_valid_total_gives_zero_percent(self):
        listing = make_listing("x", {}, {"u1": "S"})
        [entry] = voting.listings_by_user_tier([listing], TIERS, "u1")["S"]
        assert entry["percent"] == 0


class TestHelpers:

    def test_count_contributors(self):
        listings = [
            make_listing("a", {"S": 2}, {"u1": "S", "u2": "S"}),
            make_listing("b", {"A": 1}, {"u2": "A"}),
            make_listing("c", {"Gone": 1}, {"u3": "Gone"}),
        ]
        assert voting.count_contributors(listings, TIERS) == 2

    def test_filter_by_category(self):
        listings = [
            {"id": "1", "categoryId": "cat-1"},
            {"id": "2", "categoryId": "__others__", "category": "Others - Indie"},
            {"id": "3", "categoryId": "__others__"},
        ]
        assert len(voting.filter_by_category(listings, "all")) == 3
        assert len(voting.filter_by_category(listings, None)) == 3
        assert [l["id"] for l in voting.filter_by_category(listings, "cat-1")] == ["1"]
        assert [l["id"] for l in voting.filter_by_category(listings, "Others - Indie")] == ["2"]
        assert [l["id"] for l in voting.filter_by_category(listings, "__others__")] == ["2", "3"]


class TestExpiry:

    NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

    def test_no_expiry_never_expires(self):
        assert voting.is_expired(None) is False
        assert voting.is_expired("") is False

    @pytest.mark.parametrize("expiry, expected", [
        ("2026-03-10T11:59:59.000Z", True),
        ("2026-03-10T12:00:00Z", False),
        ("2026-03-11T00:00:00+00:00", False),
    ])
    def test_compares_against_now(self, expiry, expected):
        assert voting.is_expired(expiry, now=self.NOW) is expected

    def test_naive_datetimes_are_utc(self):
        assert voting.is_expired(datetime(2026, 3, 9), now=self.NOW) is True

    def test_presets_close_at_end_of_day(self):
        assert voting.expiry_from_preset("never", self.NOW) is None
        assert voting.expiry_from_preset(None, self.NOW) is None
        assert voting.expiry_from_preset("1day", self.NOW) == datetime(2026, 3, 11, 23, 59, tzinfo=timezone.utc)
        assert voting.expiry_from_preset("1week", self.NOW) == datetime(2026, 3, 17, 23, 59, tzinfo=timezone.utc)
        assert voting.expiry_from_preset("4weeks", self.NOW) == datetime(2026, 4, 7, 23, 59, tzinfo=timezone.utc)

    def test_unknown_preset_expires_now(self):
        assert voting.expiry_from_preset("fortnight", self.NOW) == self.NOW
