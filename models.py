"""
Core domain models for the trade/ad signal engine.

Includes:
- Tier / Side / OrderAction: enums driving sizing and order routing
- Instrument: a binary market with a derived NO price
- TextEvent / Signal: classified text and its trading implication
- Position / Fill: exchange-reported holdings, one leg per side
- SkipReason: why an order was not placed
- PlayerAnalysis / TradeAnalysis / AdMention / AdAnalysis: structured LLM output
"""
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Literal

from pydantic import BaseModel, Field


def round_half_up(value: float) -> int:
    """Round .5 away from zero for non-negative values (Python's round() is banker's)."""
    return int(math.floor(value + 0.5))


def clamp_price(price: float) -> int:
    """Clamp a price to the exchange's tradable range of 1-99 cents."""
    return max(1, min(99, round_half_up(price)))


def invert_price(price: int) -> int:
    """Convert a price between YES and NO basis."""
    return 100 - price


class Side(str, Enum):
    YES = "yes"
    NO = "no"

    @property
    def opposite(self) -> "Side":
        return Side.NO if self is Side.YES else Side.YES


class OrderAction(str, Enum):
    BUY = "buy"
    SELL = "sell"


class SignalAction(str, Enum):
    BUY_YES = "buy_yes"
    BUY_NO = "buy_no"
    HOLD = "hold"


class Tier(str, Enum):
    """
    Confidence tiers. Confirmed > Imminent > Serious > Exploring by strength;
    Negative is a separate polarity, not a rank.
    """
    CONFIRMED = "confirmed"
    IMMINENT = "imminent"
    SERIOUS = "serious"
    EXPLORING = "exploring"
    NEGATIVE = "negative"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    @property
    def action(self) -> SignalAction:
        if self is Tier.NEGATIVE:
            return SignalAction.BUY_NO
        if self is Tier.EXPLORING:
            return SignalAction.HOLD
        return SignalAction.BUY_YES

    @property
    def default_score(self) -> int:
        return _TIER_SCORE[self]

    @property
    def base_position_pct(self) -> float:
        return _TIER_POSITION_PCT[self]

    @classmethod
    def parse(cls, value: str) -> "Tier":
        return cls(str(value).strip().lower())


_TIER_RANK = {
    Tier.CONFIRMED: 1,
    Tier.IMMINENT: 2,
    Tier.SERIOUS: 3,
    Tier.EXPLORING: 4,
    Tier.NEGATIVE: 5,
}

_TIER_SCORE = {
    Tier.CONFIRMED: 95,
    Tier.IMMINENT: 80,
    Tier.SERIOUS: 60,
    Tier.EXPLORING: 30,
    Tier.NEGATIVE: 70,
}

_TIER_POSITION_PCT = {
    Tier.CONFIRMED: 1.0,
    Tier.IMMINENT: 0.5,
    Tier.SERIOUS: 0.25,
    Tier.EXPLORING: 0.0,
    Tier.NEGATIVE: 0.5,
}


class MarketKind(str, Enum):
    """Which family of Kalshi markets an instrument belongs to."""
    TRADE = "trade"
    NEXT_TEAM = "next_team"
    AD = "ad"


# =============================================================================
# Skip reasons
# =============================================================================
class SkipReason(str, Enum):
    """Reasons why an order was not placed."""
    KILL_SWITCH = "kill_switch"                # Global trading disabled
    DEDUPED = "deduped"                        # Bought this ticker inside cooldown
    PRICED_IN = "priced_in"                    # Reference price at near-certainty
    ABOVE_TIER_MAX = "above_tier_max"          # Reference price over the tier ceiling
    ZERO_CONTRACTS = "zero_contracts"          # Sizing rounded to nothing
    NO_INSTRUMENT = "no_instrument"            # Resolver found no unique match
    RESTING_ORDER = "resting_order"            # Sell already working on exchange
    PENDING_SELL = "pending_sell"              # Sell submitted recently in this process
    BLOCKED_BRAND = "blocked_brand"            # Brand on the block list
    EXCHANGE_ERROR = "exchange_error"          # Order submission failed


# =============================================================================
# Instruments and events
# =============================================================================
@dataclass
class Instrument:
    """A binary-outcome market. Prices are integer cents; NO is always derived."""

    ticker: str
    title: str
    entity_name: str
    yes_price: int = 0
    volume: int = 0
    open_interest: int = 0
    status: str = "open"
    kind: MarketKind = MarketKind.TRADE
    team_code: Optional[str] = None
    team_name: Optional[str] = None

    @property
    def no_price(self) -> int:
        return invert_price(self.yes_price)

    def price_for(self, side: Side) -> int:
        return self.yes_price if side is Side.YES else self.no_price

    @property
    def is_open(self) -> bool:
        return self.status in ("open", "active")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ticker": self.ticker,
            "title": self.title,
            "entity_name": self.entity_name,
            "yes_price": self.yes_price,
            "no_price": self.no_price,
            "volume": self.volume,
            "open_interest": self.open_interest,
            "kind": self.kind.value,
            "team_code": self.team_code,
        }


@dataclass
class TextEvent:
    """A single piece of text from a polled source."""

    id: str
    text: str
    author: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    stream: str = "trade"  # "trade" or "ad"


@dataclass
class Signal:
    """A classified trading implication for one entity."""

    event: TextEvent
    entity_name: str
    tier: Tier
    score: int
    destination: Optional[str] = None
    reasoning: str = ""
    sentiment: Optional[int] = None
    analysis_id: Optional[int] = None

    @property
    def action(self) -> SignalAction:
        return self.tier.action

    @property
    def side(self) -> Side:
        return Side.NO if self.action is SignalAction.BUY_NO else Side.YES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity_name,
            "tier": self.tier.value,
            "score": self.score,
            "action": self.action.value,
            "destination": self.destination,
            "event_id": self.event.id,
            "author": self.event.author,
            "reasoning": self.reasoning,
        }


def synthetic_signal(tier: Tier, entity_name: str, event_id: str, author: str = "bot",
                     score: Optional[int] = None) -> Signal:
    """Signal for bot-originated orders (spike buys, exits, deadline buys)."""
    event = TextEvent(id=event_id, text="", author=author)
    return Signal(
        event=event,
        entity_name=entity_name,
        tier=tier,
        score=tier.default_score if score is None else score,
    )


# =============================================================================
# Positions and fills
# =============================================================================
@dataclass
class Position:
    """
    One leg of an exchange holding. A ticker with both YES and NO contracts
    yields two Position objects; they are never netted.

    avg_entry is always expressed in this leg's own price basis.
    """

    ticker: str
    side: Side
    contracts: int
    avg_entry: Optional[float] = None
    current_price: Optional[int] = None
    entry_flagged: bool = False

    @classmethod
    def from_yes_basis(cls, ticker: str, side: Side, contracts: int, yes_entry: int) -> "Position":
        """Build a leg from an entry price that was recorded against YES."""
        entry = yes_entry if side is Side.YES else invert_price(yes_entry)
        return cls(ticker=ticker, side=side, contracts=contracts, avg_entry=entry)

    @property
    def profit_per_contract(self) -> Optional[float]:
        if self.avg_entry is None or self.current_price is None:
            return None
        return self.current_price - self.avg_entry

    @property
    def pnl_pct(self) -> Optional[float]:
        if not self.avg_entry or self.current_price is None:
            return None
        return (self.current_price - self.avg_entry) / self.avg_entry * 100

    @property
    def pnl_dollars(self) -> Optional[float]:
        ppc = self.profit_per_contract
        if ppc is None:
            return None
        return ppc * self.contracts / 100

    def to_dict(self) -> Dict[str, Any]:
        pnl_pct = self.pnl_pct
        pnl_dollars = self.pnl_dollars
        return {
            "ticker": self.ticker,
            "side": self.side.value,
            "contracts": self.contracts,
            "avg_entry": round(self.avg_entry, 1) if self.avg_entry is not None else None,
            "current_price": self.current_price,
            "pnl_pct": round(pnl_pct, 2) if pnl_pct is not None else None,
            "pnl_dollars": round(pnl_dollars, 2) if pnl_dollars is not None else None,
            "entry_flagged": self.entry_flagged,
        }


@dataclass
class Fill:
    """An executed fill. Prices on the exchange response are YES and NO cents."""

    ticker: str
    side: Side
    action: OrderAction
    count: int
    yes_price: int
    no_price: Optional[int] = None

    @property
    def side_price(self) -> int:
        if self.side is Side.YES:
            return self.yes_price
        return self.no_price if self.no_price is not None else invert_price(self.yes_price)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Fill":
        return cls(
            ticker=data.get("ticker", ""),
            side=Side(data.get("side", "yes")),
            action=OrderAction(data.get("action", "buy")),
            count=int(data.get("count", 0) or 0),
            yes_price=int(data.get("yes_price", 0) or 0),
            no_price=data.get("no_price"),
        )


# =============================================================================
# Structured LLM output
# =============================================================================
class PlayerAnalysis(BaseModel):
    """Per-player verdict from the text-analysis model."""
    name: str = Field(..., description="Player full name")
    is_being_traded: bool = Field(False, description="True only if this player is the one moving")
    confidence: Literal["confirmed", "imminent", "serious", "exploring", "negative"] = Field(
        "exploring", description="Confidence tier"
    )
    confidence_score: Optional[int] = Field(None, ge=0, le=100, description="0-100 certainty")
    sentiment_score: Optional[int] = Field(None, ge=-100, le=100, description="-100 very negative to 100 very positive")
    reasoning: str = Field("", description="One-line justification")
    destination_team: Optional[str] = Field(None, description="Team the player is going TO, if stated")


class TradeAnalysis(BaseModel):
    """Structured extraction of trade facts from a single post."""
    players: List[PlayerAnalysis] = Field(default_factory=list, description="Players mentioned as trade subjects")


class AdMention(BaseModel):
    """A single brand advertising claim."""
    brand: str = Field(..., description="Exact brand shown in the ad")
    confidence: Literal["confirmed", "likely", "rumor"] = Field("rumor", description="Certainty of the ad")
    exact_brand_shown: bool = Field(True, description="False if only a parent or related brand was named")


class AdAnalysis(BaseModel):
    """Structured extraction of Super Bowl ad mentions."""
    ads: List[AdMention] = Field(default_factory=list, description="Brands confirmed or rumored to air")
