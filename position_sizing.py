"""
Position sizing: tier base allocation scaled by odds, confidence and source reliability.

    final_pct = min(base_pct * odds * confidence * source, base_pct * 2)
    contracts = round(base_contract_count * final_pct)

Zero contracts is a valid skip, not an error.
"""
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from loguru import logger

from market_resolver import team_code_for
from models import Tier, round_half_up
from ttl_cache import TTLCache

# Static per-source weights used until a source has enough resolved history
SOURCE_TIERS: Dict[str, float] = {
    # Tier 1 - act on confirmed news
    "ShamsCharania": 1.5,
    "TheSteinLine": 1.4,
    "WindhorstESPN": 1.2,
    "ZachLowe_NBA": 1.2,
    "ChrisBHaynes": 1.2,
    "JakeLFischer": 1.2,
    "ramonashelburne": 1.2,
    "BobbyMarks42": 1.1,
    # Tier 2 - aggregators, verify before acting
    "HoopsRumors": 0.7,
    "RealGM": 0.7,
    "BR_NBA": 0.8,
    "TheNBACentral": 0.5,
    "TheAthletic": 0.9,
}

DEFAULT_SOURCE_WEIGHT = 1.0
MIN_RESOLVED_SAMPLES = 3
RELIABILITY_CACHE_TTL = 300


def odds_multiplier(price: int) -> float:
    """Cheaper entries scale up, capped at 2x. An unknown price (0) is neutral."""
    if price <= 0:
        return 1.0
    return min(2.0, (100 - price) / 50)


def confidence_multiplier(score: int) -> float:
    return 0.5 + score / 100


def size_position_pct(base_pct: float, confidence_score: int, current_price: int, source_multiplier: float) -> float:
    """Final allocation as a fraction of the base contract count."""
    odds = odds_multiplier(current_price)
    conf = confidence_multiplier(confidence_score)
    final_pct = base_pct * odds * conf * source_multiplier
    logger.debug(
        f"Sizing: base {base_pct:.2f} x odds {odds:.2f} x conf {conf:.2f} x source {source_multiplier:.2f} "
        f"= {final_pct:.2f} (cap {base_pct * 2:.2f})"
    )
    return min(final_pct, base_pct * 2)


def contracts_for(base_contract_count: int, pct: float) -> int:
    return round_half_up(base_contract_count * pct)


def spike_contracts(position_limit: int, price: int) -> int:
    """Spike buys shrink with price: 50% of the limit near zero, never below 15%."""
    pct = max(0.15, 0.50 - (price / 100) * 0.55)
    return round_half_up(position_limit * pct)


def source_tier_weight(handle: str) -> float:
    return SOURCE_TIERS.get(handle, DEFAULT_SOURCE_WEIGHT)


def source_tier_label(weight: float) -> str:
    if weight >= 1.2:
        return "Tier 1"
    if weight >= 0.8:
        return "Tier 2"
    return "Tier 3"


def prediction_outcome(prediction: Dict[str, Any], traded: bool, team_code: Optional[str] = None) -> Optional[str]:
    """
    Score one pending prediction against a settled result.

    Trade predictions resolve on whether the player was traded. Destination
    predictions are wrong when no trade happened and otherwise wait for the
    settled team. Returns None to leave the prediction pending.
    """
    if prediction.get("prediction_type") != "destination":
        return "correct" if traded else "incorrect"
    if not traded:
        return "incorrect"
    if team_code is None:
        return None
    return "correct" if team_code_for(prediction.get("predicted_team")) == team_code else "incorrect"


@dataclass
class SizingResult:
    """Outcome of sizing one signal."""

    contracts: int
    pct: float
    source_multiplier: float
    price: int

    @property
    def is_skip(self) -> bool:
        return self.contracts <= 0


def size_signal(
    tier: Tier,
    score: int,
    price: int,
    source_multiplier: float,
    base_contract_count: int,
) -> SizingResult:
    pct = size_position_pct(tier.base_position_pct, score, price, source_multiplier)
    return SizingResult(
        contracts=contracts_for(base_contract_count, pct),
        pct=pct,
        source_multiplier=source_multiplier,
        price=price,
    )


class SourceReliabilityTracker:
    """
    Historical accuracy multiplier per source, with the static tier weight as fallback.

    History is used only when it has at least MIN_RESOLVED_SAMPLES resolved
    predictions and correct + incorrect accounts for at least half of them.
    """

    def __init__(self, db: Any = None, ttl_seconds: float = RELIABILITY_CACHE_TTL,
                 clock: Callable[[], float] = time.time):
        self.db = db
        self._cache: TTLCache[Dict[str, Dict[str, Any]]] = TTLCache(default_ttl=ttl_seconds, clock=clock)

    async def _rows(self) -> Dict[str, Dict[str, Any]]:
        rows = self._cache.get("all")
        if rows is not None:
            return rows
        entry = self._cache.get_entry("all")
        previous = entry.value if entry else {}
        if self.db is None:
            return previous
        try:
            fetched = await self.db.get_all_source_reliability()
        except Exception as e:
            logger.error(f"Error fetching source reliability: {e}")
            return previous
        rows = {r["source_username"]: r for r in fetched}
        self._cache.set("all", rows)
        return rows

    async def multiplier(self, handle: str) -> float:
        weight = source_tier_weight(handle)
        tier = source_tier_label(weight)
        row = (await self._rows()).get(handle)

        if row and (row.get("total_resolved") or 0) >= MIN_RESOLVED_SAMPLES:
            total_resolved = row.get("total_resolved") or 0
            actual = (row.get("correct_predictions") or 0) + (row.get("incorrect_predictions") or 0)
            if actual == 0 or actual < total_resolved * 0.5:
                logger.info(
                    f"@{handle}: {tier} source (data incomplete: {actual}/{total_resolved} resolved), "
                    f"using tier weight {weight}x"
                )
                return weight
            multiplier = float(row.get("reliability_multiplier") or DEFAULT_SOURCE_WEIGHT)
            logger.info(
                f"@{handle}: {row.get('correct_predictions', 0)}/{actual} correct, multiplier {multiplier}x"
            )
            return multiplier

        logger.debug(f"@{handle}: {tier} source, tier weight {weight}x")
        return weight

    async def track_prediction(
        self,
        handle: str,
        player_name: str,
        tier: Tier,
        tweet_id: str,
        destination: Optional[str] = None,
    ) -> None:
        """Record a pending prediction for later accuracy scoring. Failures are logged only."""
        if self.db is None:
            return
        try:
            await self.db.track_prediction({
                "tweet_id": tweet_id,
                "source_username": handle,
                "player_name": player_name,
                "prediction_type": "destination" if destination else "trade",
                "predicted_team": destination,
                "confidence_tier": tier.value,
            })
        except Exception as e:
            logger.error(f"Error tracking prediction for {player_name}: {e}")

    async def resolve(self, player_name: str, traded: bool, team_code: Optional[str] = None) -> int:
        """
        Score pending predictions on a player against a settled result and
        refresh each affected source's reliability row. Returns the number
        of predictions resolved.
        """
        if self.db is None:
            return 0
        resolved = 0
        sources = set()
        for prediction in await self.db.get_pending_predictions(player_name):
            outcome = prediction_outcome(prediction, traded, team_code)
            if outcome is None:
                continue
            await self.db.set_prediction_outcome(prediction["id"], outcome)
            sources.add(prediction["source_username"])
            resolved += 1

        for source in sorted(sources):
            row = await self.db.update_source_reliability(source)
            if row:
                logger.info(
                    f"@{source}: {row['correct_predictions']}/{row['total_resolved']} correct, "
                    f"multiplier now {row['reliability_multiplier']}x"
                )
        if sources:
            self._cache.invalidate("all")
        return resolved
