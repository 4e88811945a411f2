"""
Super Bowl ad classifier: text -> brand ad signals.

Only an exact brand name counts. Parent companies and related brands
("ChatGPT" for OpenAI, "Doritos" for Pepsi) never produce a signal for the
brand's market. Blocked brands are never traded.
"""
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

import openai
from loguru import logger

from config import LLMConfig
from market_resolver import normalize_name
from models import AdAnalysis, Instrument, Signal, TextEvent, Tier
from openai_utils import build_client, parse_pydantic_response

AD_TICKER_PREFIX = "KXSUPERBOWLAD-SB2026-"

BLOCKED_BRANDS = {"ANTHROPIC"}


@dataclass(frozen=True)
class BrandMatch:
    key: str
    ticker_suffix: str
    exact_names: Tuple[str, ...]
    parent: Optional[str] = None
    related: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def ticker(self) -> str:
        return f"{AD_TICKER_PREFIX}{self.ticker_suffix}"

    @property
    def display_name(self) -> str:
        return self.exact_names[0]


BRANDS: List[BrandMatch] = [
    BrandMatch("OPENAI", "OPENAI", ("OpenAI",), related=("ChatGPT", "GPT-4", "DALL-E", "Sora")),
    BrandMatch("GEMINI", "GEMI", ("Gemini", "Google Gemini"), parent="Google", related=("Bard",)),
    BrandMatch("PERPLEXITY", "PERP", ("Perplexity", "Perplexity AI")),
    BrandMatch("GROK", "GROK", ("Grok", "xAI Grok"), parent="xAI"),
    BrandMatch("NVIDIA", "NVIDIA", ("NVIDIA",), related=("GeForce", "RTX", "CUDA")),
    BrandMatch("COINBASE", "COIN", ("Coinbase",)),
    BrandMatch("PEPSI", "PEPSI", ("Pepsi", "Pepsi-Cola"), parent="PepsiCo",
               related=("Lay's", "Doritos", "Mountain Dew", "Gatorade")),
    BrandMatch("TMOBILE", "TMOBILE", ("T-Mobile", "TMobile")),
    BrandMatch("LIQUID_DEATH", "LIQU", ("Liquid Death",)),
    BrandMatch("AMAZON_PRIME", "AMAZ", ("Amazon Prime", "Prime Video"), parent="Amazon",
               related=("AWS", "Alexa", "Ring", "Whole Foods")),
    BrandMatch("HIMS", "HIMS", ("Hims & Hers", "Hims", "Hers")),
    BrandMatch("NETFLIX", "NETF", ("Netflix",)),
    BrandMatch("TEMU", "TEMU", ("Temu",), parent="PDD Holdings"),
    BrandMatch("ALLSTATE", "ALLS", ("Allstate",)),
    BrandMatch("DISNEY_PLUS", "DISN", ("Disney+", "Disney Plus"), parent="Disney",
               related=("Hulu", "ESPN+", "Marvel", "Pixar")),
    BrandMatch("PARAMOUNT_PLUS", "PARA", ("Paramount+", "Paramount Plus")),
    BrandMatch("NIKE", "NIKE", ("Nike",), related=("Jordan", "Air Jordan", "Converse")),
    BrandMatch("DOORDASH", "DOOR", ("DoorDash",)),
    BrandMatch("JEEP", "JEEP", ("Jeep",), parent="Stellantis", related=("Dodge", "Ram", "Chrysler")),
    BrandMatch("TESLA", "TESL", ("Tesla",), related=("SpaceX", "X", "xAI")),
    BrandMatch("YEEZY", "YEEZ", ("Yeezy",)),
    BrandMatch("SPOTIFY", "SPOT", ("Spotify",)),
    BrandMatch("VUORI", "VUOR", ("Vuori",)),
    BrandMatch("ZYN", "ZYN", ("Zyn",)),
    BrandMatch("SHEIN", "SHEI", ("Shein",)),
    BrandMatch("BLUECHEW", "BLUE", ("BlueChew",)),
    BrandMatch("ATHLETIC_GREENS", "ATHL", ("Athletic Greens", "AG1")),
    BrandMatch("ANTHROPIC", "ANTH", ("Anthropic",), related=("Claude",)),
]

_CONFIRMED_RE = re.compile(r"confirm|official|will air|airing|bought|purchased|secured|running", re.IGNORECASE)
_LIKELY_RE = re.compile(r"likely|expected|planning|set to|will run", re.IGNORECASE)

AD_TIER = {
    "confirmed": Tier.CONFIRMED,
    "likely": Tier.IMMINENT,
    "rumor": Tier.EXPLORING,
}

AD_ANALYSIS_PROMPT = """You read advertising-industry news about Super Bowl commercials.
List brands that are reported to be running a Super Bowl ad.
- brand: the exact brand named (not its parent company or a sibling product)
- confidence: confirmed (announced, bought, airing) | likely (expected, planning) | rumor
- exact_brand_shown: false if the post only names a parent company or related product
Return {"ads": []} if no brand is reported."""


def _name_regex(name: str) -> "re.Pattern[str]":
    return re.compile(rf"(?<![\w-]){re.escape(name)}(?![\w+-])", re.IGNORECASE)


def find_brand(name: str) -> Optional[BrandMatch]:
    """Brand whose key or exact names match the given name exactly (normalized)."""
    key = normalize_name(name)
    for brand in BRANDS:
        if key == normalize_name(brand.key) or any(key == normalize_name(n) for n in brand.exact_names):
            return brand
    return None


def mentioned_brands(text: str) -> List[BrandMatch]:
    """Brands whose exact names appear in the text. Related names do not count."""
    found = []
    for brand in BRANDS:
        if any(_name_regex(name).search(text) for name in brand.exact_names):
            found.append(brand)
    return found


def keyword_ad_tier(text: str) -> Tuple[str, str]:
    """confirmed / likely / rumor with the matched phrase."""
    match = _CONFIRMED_RE.search(text)
    if match:
        return "confirmed", match.group(0)
    match = _LIKELY_RE.search(text)
    if match:
        return "likely", match.group(0)
    return "rumor", ""


def resolve_ad_instrument(brand: BrandMatch, instruments: List[Instrument]) -> Optional[Instrument]:
    """Ticker match first, then exact brand name on the market title."""
    for instrument in instruments:
        if instrument.ticker == brand.ticker:
            return instrument
    names = {normalize_name(n) for n in brand.exact_names}
    matches = [i for i in instruments if normalize_name(i.entity_name) in names]
    return matches[0] if len(matches) == 1 else None


class AdClassifier:
    """Maps a text event to brand ad signals (Confirmed or Imminent only)."""

    def __init__(self, config: Optional[LLMConfig] = None, client: Any = None):
        self.config = config
        if client is not None:
            self.client = client
        elif config is not None and config.enabled:
            self.client = build_client(config)
        else:
            self.client = None

    def classify_keywords(self, event: TextEvent) -> List[Signal]:
        signals = []
        level, phrase = keyword_ad_tier(event.text)
        for brand in mentioned_brands(event.text):
            signal = self._signal(event, brand, level, f"keyword '{phrase}'" if phrase else "no certainty keywords")
            if signal:
                signals.append(signal)
        return signals

    async def classify(self, event: TextEvent) -> List[Signal]:
        if self.client is not None:
            try:
                analysis = await parse_pydantic_response(
                    self.client,
                    model=self.config.model,
                    messages=[
                        {"role": "system", "content": AD_ANALYSIS_PROMPT},
                        {"role": "user", "content": f"Post by @{event.author}:\n{event.text}"},
                    ],
                    response_format=AdAnalysis,
                    temperature=self.config.temperature,
                    max_tokens=self.config.max_tokens,
                )
            except (RuntimeError, openai.OpenAIError) as e:
                logger.warning(f"Ad analysis failed for {event.id}, using keywords: {e}")
            else:
                if analysis.ads:
                    signals = []
                    for ad in analysis.ads:
                        if not ad.exact_brand_shown:
                            logger.debug(f"Ignoring {ad.brand}: only a parent/related brand was named")
                            continue
                        brand = find_brand(ad.brand)
                        if brand is None:
                            logger.debug(f"Unknown brand '{ad.brand}'")
                            continue
                        signal = self._signal(event, brand, ad.confidence, "llm")
                        if signal:
                            signals.append(signal)
                    return signals
        return self.classify_keywords(event)

    @staticmethod
    def _signal(event: TextEvent, brand: BrandMatch, level: str, reason: str) -> Optional[Signal]:
        if brand.key in BLOCKED_BRANDS:
            logger.info(f"Brand {brand.key} is blocked; no signal")
            return None
        tier = AD_TIER.get(level, Tier.EXPLORING)
        if tier is Tier.EXPLORING:
            logger.debug(f"{brand.display_name}: rumor only, no trade")
            return None
        return Signal(
            event=event,
            entity_name=brand.display_name,
            tier=tier,
            score=tier.default_score,
            reasoning=f"ad {level}: {reason}",
        )
