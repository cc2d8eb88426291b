"""
Vote aggregation for the tier list views.

Everything here is pure: listings and tiers come in as plain dicts (the
shape stored in the database), results go out as plain dicts.
"""

import math
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Union

from dateutil import parser as date_parser

OTHERS_CATEGORY_ID = "__others__"

EXPIRY_PRESET_DAYS = {
    "1day": 1,
    "3days": 3,
    "1week": 7,
    "2weeks": 14,
    "4weeks": 28,
}


def _count(value) -> Union[int, float]:
    """Vote counts are non-negative numbers; anything else counts as 0."""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        return 0
    return max(value, 0)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def sort_tiers(tiers: Iterable[dict]) -> List[dict]:
    return sorted(tiers, key=lambda t: t.get("order", 0))


def tier_positions(tiers: Iterable[dict]) -> Dict[str, int]:
    """Map tier name -> position in display order."""
    return {tier["name"]: index for index, tier in enumerate(sort_tiers(tiers))}


def valid_vote_total(votes: Optional[dict], positions: Dict[str, int]) -> float:
    return sum(_count(count) for name, count in (votes or {}).items() if name in positions)


def dominant_tier(votes: Optional[dict], positions: Dict[str, int]):
    """Return (tier name, count) of the most voted configured tier, or None.

    Ties go to the tier shown first.
    """
    best = None
    for name, raw in (votes or {}).items():
        if name not in positions:
            continue
        count = _count(raw)
        if best is None or count > best[1] or (count == best[1] and positions[name] < positions[best[0]]):
            best = (name, count)
    return best


def _empty_buckets(tiers: Iterable[dict]) -> Dict[str, List[dict]]:
    return {tier["name"]: [] for tier in sort_tiers(tiers)}


def listings_by_dominant_tier(listings: Iterable[dict], tiers: Iterable[dict]) -> Dict[str, List[dict]]:
    """Group listings under the tier the community voted for most."""
    tiers = list(tiers)
    positions = tier_positions(tiers)
    buckets = _empty_buckets(tiers)

    for listing in listings:
        votes = listing.get("votes") or {}
        total = valid_vote_total(votes, positions)
        if total == 0:
            continue
        best = dominant_tier(votes, positions)
        if best is None:
            continue
        name, top = best
        buckets[name].append({
            "listing": listing,
            "totalVotes": total,
            "topVotes": top,
            "percent": round_half_up(top / total * 100),
        })
    return buckets


def listings_by_user_tier(listings: Iterable[dict], tiers: Iterable[dict], user_id: Optional[str]) -> Dict[str, List[dict]]:
    """Group listings under the tier a single user picked for them."""
    tiers = list(tiers)
    positions = tier_positions(tiers)
    buckets = _empty_buckets(tiers)
    if not user_id:
        return buckets

    for listing in listings:
        user_tier = (listing.get("userVotes") or {}).get(user_id)
        if not user_tier or user_tier not in positions:
            continue
        votes = listing.get("votes") or {}
        total = valid_vote_total(votes, positions)
        top = _count(votes.get(user_tier, 0))
        buckets[user_tier].append({
            "listing": listing,
            "totalVotes": total,
            "topVotes": top,
            "percent": round_half_up(top / total * 100) if total else 0,
        })
    return buckets


def count_contributors(listings: Iterable[dict], tiers: Iterable[dict]) -> int:
    # Distinct voters only. Clients that also count the current viewer add 1 themselves.
    positions = tier_positions(tiers)
    voters = set()
    for listing in listings:
        if valid_vote_total(listing.get("votes"), positions) == 0:
            continue
        voters.update((listing.get("userVotes") or {}).keys())
    return len(voters)


def filter_by_category(listings: Iterable[dict], category_id: Optional[str]) -> List[dict]:
    if not category_id or category_id == "all":
        return list(listings)
    return [
        l for l in listings
        if l.get("categoryId") == category_id or l.get("category") == category_id
    ]


# ---------- Expiry gate ----------

def _as_utc(value: Union[str, datetime]) -> datetime:
    if isinstance(value, str):
        value = date_parser.isoparse(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def is_expired(expiry: Optional[Union[str, datetime]], now: Optional[datetime] = None) -> bool:
    """True once `now` is past the configured expiry; never without one."""
    if not expiry:
        return False
    now = _as_utc(now) if now is not None else datetime.now(timezone.utc)
    return now > _as_utc(expiry)


def expiry_from_preset(preset: Optional[str], now: Optional[datetime] = None) -> Optional[datetime]:
    """Voting closes at 23:59 UTC, N days from today."""
    if not preset or preset == "never":
        return None
    now = _as_utc(now) if now is not None else datetime.now(timezone.utc)
    days = EXPIRY_PRESET_DAYS.get(preset)
    if days is None:
        return now
    day = now + timedelta(days=days)
    return day.replace(hour=23, minute=59, second=0, microsecond=0)
