"""
Market resolver: named entity -> tradable instrument.

Precision over recall. A match is either an exact normalized name or an
agreement on both first and last name (last name of 4+ characters). Anything
ambiguous resolves to None. Team aliases go through a closed vocabulary;
unknown aliases fail closed.
"""
import re
import time
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from models import Instrument, MarketKind
from ttl_cache import TTLCache

TRADE_SERIES = "KXNBATRADE"
NEXT_TEAM_SERIES = ("KXNEXTTEAMNBA", "KXNEXTTEAMGIANNIS")
AD_SERIES = "KXSUPERBOWLAD"

_SUFFIXES = {"jr", "sr", "ii", "iii", "iv"}

# (code, city, nickname, extra aliases)
_TEAMS = [
    ("ATL", "atlanta", "hawks", []),
    ("BOS", "boston", "celtics", []),
    ("BKN", "brooklyn", "nets", []),
    ("CHA", "charlotte", "hornets", []),
    ("CHI", "chicago", "bulls", []),
    ("CLE", "cleveland", "cavaliers", ["cavs"]),
    ("DAL", "dallas", "mavericks", ["mavs"]),
    ("DEN", "denver", "nuggets", []),
    ("DET", "detroit", "pistons", []),
    ("GSW", "golden state", "warriors", ["dubs"]),
    ("HOU", "houston", "rockets", []),
    ("IND", "indiana", "pacers", []),
    ("LAC", "la", "clippers", ["la clippers", "los angeles clippers"]),
    ("LAL", "la", "lakers", ["la lakers", "los angeles lakers"]),
    ("MEM", "memphis", "grizzlies", []),
    ("MIA", "miami", "heat", []),
    ("MIL", "milwaukee", "bucks", []),
    ("MIN", "minnesota", "timberwolves", ["wolves"]),
    ("NOP", "new orleans", "pelicans", []),
    ("NYK", "new york", "knicks", []),
    ("OKC", "oklahoma city", "thunder", []),
    ("ORL", "orlando", "magic", []),
    ("PHI", "philadelphia", "76ers", ["sixers"]),
    ("PHX", "phoenix", "suns", []),
    ("POR", "portland", "trail blazers", ["blazers"]),
    ("SAC", "sacramento", "kings", []),
    ("SAS", "san antonio", "spurs", []),
    ("TOR", "toronto", "raptors", []),
    ("UTA", "utah", "jazz", []),
    ("WAS", "washington", "wizards", []),
]


def _build_team_codes() -> Dict[str, str]:
    codes: Dict[str, str] = {}
    for code, city, nickname, extras in _TEAMS:
        codes[nickname] = code
        codes[code.lower()] = code
        if city != "la":
            codes[city] = code
            codes[f"{city} {nickname}"] = code
        for alias in extras:
            codes[alias] = code
    return codes


TEAM_CODES: Dict[str, str] = _build_team_codes()

PLAYER_TITLE_PATTERNS = [
    re.compile(r"will\s+(.+?)\s+be\s+traded", re.IGNORECASE),
    re.compile(r"^(.+?)\s+traded\s+before", re.IGNORECASE),
    re.compile(r"what\s+will\s+be\s+(.+?)'s\s+next\s+team", re.IGNORECASE),
]
BRAND_TITLE_PATTERN = re.compile(r"Will\s+(.+?)\s+run an ad", re.IGNORECASE)


def normalize_name(name: str) -> str:
    """Lowercase, strip punctuation, collapse whitespace."""
    cleaned = re.sub(r"[^\w\s]", "", (name or "").lower())
    return re.sub(r"\s+", " ", cleaned).strip()


def _name_parts(name: str) -> List[str]:
    parts = normalize_name(name).split()
    while parts and parts[-1] in _SUFFIXES:
        parts.pop()
    return parts


def names_match(a: str, b: str) -> bool:
    """Exact normalized match, or first and last name both equal (last name 4+ chars)."""
    if normalize_name(a) == normalize_name(b) and normalize_name(a):
        return True
    pa, pb = _name_parts(a), _name_parts(b)
    if len(pa) < 2 or len(pb) < 2:
        return False
    return pa[0] == pb[0] and pa[-1] == pb[-1] and len(pa[-1]) >= 4


def team_code_for(alias: Optional[str]) -> Optional[str]:
    """Team code for a controlled alias, or None for anything not in the table."""
    if not alias:
        return None
    key = normalize_name(alias)
    key = re.sub(r"^the\s+", "", key)
    return TEAM_CODES.get(key)


def extract_player_name(title: str) -> Optional[str]:
    for pattern in PLAYER_TITLE_PATTERNS:
        match = pattern.search(title or "")
        if match:
            return match.group(1).strip()
    return None


def extract_brand_name(title: str) -> Optional[str]:
    match = BRAND_TITLE_PATTERN.search(title or "")
    return match.group(1).strip() if match else None


def _market_price(market: Dict[str, Any]) -> int:
    return int(market.get("last_price") or market.get("yes_bid") or 0)


def instrument_from_market(market: Dict[str, Any], kind: MarketKind) -> Instrument:
    """Build an Instrument from a raw exchange market."""
    title = market.get("title", "") or ""
    ticker = market.get("ticker", "") or ""
    subtitle = market.get("yes_sub_title", "") or ""

    team_code = team_name = None
    if kind is MarketKind.AD:
        entity = extract_brand_name(title) or subtitle
    else:
        entity = extract_player_name(title) or subtitle
    if kind is MarketKind.NEXT_TEAM:
        team_code = ticker.rsplit("-", 1)[-1].upper() if "-" in ticker else None
        team_name = (market.get("custom_strike") or {}).get("Team") or subtitle

    return Instrument(
        ticker=ticker,
        title=title,
        entity_name=entity,
        yes_price=_market_price(market),
        volume=int(market.get("volume", 0) or 0),
        open_interest=int(market.get("open_interest", 0) or 0),
        status=market.get("status", "open") or "open",
        kind=kind,
        team_code=team_code,
        team_name=team_name,
    )


class MarketResolver:
    """Strict entity -> instrument lookup."""

    def resolve(self, entity_name: str, instruments: List[Instrument]) -> Optional[Instrument]:
        exact = [i for i in instruments if normalize_name(i.entity_name) == normalize_name(entity_name)]
        if len(exact) == 1:
            return exact[0]
        if len(exact) > 1:
            logger.warning(f"Ambiguous exact match for '{entity_name}': {[i.ticker for i in exact]}")
            return None

        matches = [i for i in instruments if names_match(entity_name, i.entity_name)]
        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            logger.warning(f"Ambiguous match for '{entity_name}': {[i.ticker for i in matches]}")
        else:
            logger.debug(f"No instrument for '{entity_name}'")
        return None

    def resolve_next_team(
        self, entity_name: str, team: str, instruments: List[Instrument]
    ) -> Optional[Instrument]:
        code = team_code_for(team)
        if code is None:
            logger.info(f"Unknown team alias '{team}'; no next-team instrument")
            return None
        for_team = [i for i in instruments if i.kind is MarketKind.NEXT_TEAM and i.team_code == code]
        return self.resolve(entity_name, for_team)


class MarketCache:
    """
    Instrument lists per series with TTL refresh. Only open instruments are kept.
    """

    SERIES = {
        MarketKind.TRADE: (TRADE_SERIES,),
        MarketKind.NEXT_TEAM: NEXT_TEAM_SERIES,
        MarketKind.AD: (AD_SERIES,),
    }

    def __init__(
        self,
        kalshi: Any,
        ttl_seconds: float = 60.0,
        ad_ttl_seconds: float = 30.0,
        kinds: Optional[List[MarketKind]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.kalshi = kalshi
        self.kinds = kinds or [MarketKind.TRADE, MarketKind.NEXT_TEAM, MarketKind.AD]
        self._ttl = {kind: (ad_ttl_seconds if kind is MarketKind.AD else ttl_seconds) for kind in self.kinds}
        self._cache: TTLCache[List[Instrument]] = TTLCache(default_ttl=ttl_seconds, clock=clock)

    async def refresh(self, force: bool = False) -> int:
        """Re-fetch stale series. Returns the number of series refreshed."""
        refreshed = 0
        for kind in self.kinds:
            if not force and not self._cache.is_stale(kind):
                continue
            instruments: List[Instrument] = []
            for series in self.SERIES[kind]:
                markets = await self.kalshi.get_markets(series_ticker=series, status="open", limit=200)
                instruments.extend(instrument_from_market(m, kind) for m in markets)
            instruments = [i for i in instruments if i.is_open]
            if not instruments and self._cache.get_entry(kind) is not None:
                # Keep the previous list on an empty or failed fetch, retry on the next tick
                logger.warning(f"No {kind.value} markets returned; keeping previous cache")
                previous = self._cache.get_entry(kind).value
                self._cache.set(kind, previous, ttl=self._ttl[kind])
                continue
            self._cache.set(kind, instruments, ttl=self._ttl[kind])
            refreshed += 1
            logger.debug(f"Market cache refreshed: {len(instruments)} {kind.value} instruments")
        return refreshed

    def instruments(self, kind: MarketKind) -> List[Instrument]:
        entry = self._cache.get_entry(kind)
        return list(entry.value) if entry else []

    def all_instruments(self) -> List[Instrument]:
        result: List[Instrument] = []
        for kind in self.kinds:
            result.extend(self.instruments(kind))
        return result

    def get(self, ticker: str) -> Optional[Instrument]:
        for instrument in self.all_instruments():
            if instrument.ticker == ticker:
                return instrument
        return None

    def last_price(self, ticker: str) -> Optional[int]:
        instrument = self.get(ticker)
        if instrument is None or instrument.yes_price <= 0:
            return None
        return instrument.yes_price
