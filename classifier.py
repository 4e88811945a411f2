"""
Confidence classifier: free text -> per-entity trade signals.

Pipeline:
1. Tier rules: an ordered list of (tier, predicate) tested first-match-wins.
   Negative polarity is first, then Confirmed -> Imminent -> Serious -> Exploring;
   no match defaults to Exploring.
2. Candidates: one per mentioned entity, from the keyword rules or from the
   delegated LLM analysis when it is available and returns players.
3. Negative-context post-filter: an entity named only as a rejected
   alternative ("instead of X", "chose Y over X", ...) is turned Negative
   regardless of the tier found elsewhere in the text.
4. Exploring (and anything else that maps to hold) never leaves this module.
"""
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

import openai
from loguru import logger

from config import LLMConfig
from market_resolver import normalize_name, team_code_for
from models import PlayerAnalysis, Signal, SignalAction, TextEvent, Tier, TradeAnalysis
from openai_utils import build_client, parse_pydantic_response

# =============================================================================
# Vocabulary
# =============================================================================
TIER_KEYWORDS = {
    Tier.CONFIRMED: [
        "traded to", "has been traded", "is being traded", "deal done", "deal is done",
        "trade complete", "sending", "just in:", "breaking:", "trade finalized",
        "officially traded", "deal agreed",
    ],
    Tier.IMMINENT: [
        "finalizing", "close to done", "expected to", "on verge of", "imminent",
        "agreement in place", "will be traded", "set to acquire", "poised to",
        "working to finalize", "nearing completion",
    ],
    Tier.SERIOUS: [
        "ramped up", "serious discussions", "pushing hard", "engaged in talks",
        "in deep negotiations", "progressing", "gaining momentum", "intensifying",
        "advanced talks", "significant progress",
    ],
    Tier.EXPLORING: [
        "interested in", "exploring", "could", "might", "discussing", "monitoring",
        "keeping an eye on", "on their radar",
    ],
    Tier.NEGATIVE: [
        "no longer", "not trading", "staying", "removed from", "off the table",
        "talks stalled", "unlikely", "not happening", "will not be traded",
        "committed to staying", "ruled out", "deal fell through",
    ],
}

# Phrases that mark some entity as the road not taken. They are resolved per
# entity by the negative-context post-filter, not by the tier rules.
ALTERNATIVE_KEYWORDS = [
    "pivoted to", "pivoted away", "instead of", "rather than", "passed on",
    "went with", "chose", "opted for",
]

KNOWN_PLAYERS = [
    "James Harden", "Darius Garland", "Giannis Antetokounmpo", "Ja Morant",
    "Jaren Jackson Jr", "Jonathan Kuminga", "Klay Thompson", "Karl-Anthony Towns",
    "Tyler Herro", "Coby White", "Zach LaVine", "RJ Barrett", "Pascal Siakam",
    "Domantas Sabonis", "Benedict Mathurin", "Kyle Kuzma", "Chris Paul",
    "Anthony Davis", "LaMelo Ball", "Zion Williamson", "Paul George",
    "Kawhi Leonard", "Lauri Markkanen", "Nikola Vucevic", "Jaden Ivey",
    "Mike Conley", "Tobias Harris", "Nic Claxton", "Michael Porter Jr",
    "Grayson Allen", "Trey Murphy", "Herbert Jones", "Daniel Gafford",
    "Donte DiVincenzo", "Ivica Zubac", "Malik Monk", "Dyson Daniels",
    "Jimmy Butler", "Brandon Ingram", "Bradley Beal", "De'Aaron Fox",
    "Dejounte Murray", "Scottie Barnes", "Jalen Brunson", "Donovan Mitchell",
    "Devin Booker", "Trae Young", "Tyrese Haliburton", "Jaylen Brown",
    "Jayson Tatum", "Bam Adebayo", "Julius Randle", "OG Anunoby", "Bruce Brown",
    "Cameron Johnson", "Mikal Bridges", "Jerami Grant", "Bobby Portis",
    "Brook Lopez", "Alex Caruso", "Demar DeRozan", "Rudy Gobert", "Jakob Poeltl",
    "Harrison Barnes", "Norman Powell", "Marcus Smart", "Terry Rozier",
    "Monte Morris", "Cam Reddish", "Keldon Johnson", "Walker Kessler",
    "Keegan Murray", "Onyeka Okongwu",
]

_NAME = r"[A-Z][a-z]+\s+[A-Z][a-z]+"

PLAYER_PATTERNS = [
    re.compile(rf"trading\s+(?:center\s+|forward\s+|guard\s+|star\s+)?({_NAME}(?:\s+Jr\.?)?)"),
    re.compile(rf"({_NAME})\s+(?:has been|is being|will be)\s+traded"),
    re.compile(rf"(?:acquiring|acquired)\s+({_NAME})"),
    re.compile(rf"sends?\s+({_NAME})"),
    re.compile(rf"deal\s+(?:that\s+)?sends?\s+({_NAME})"),
    re.compile(rf"landing\s+(?:.*?\s+)?({_NAME})"),
    re.compile(rf"({_NAME})\s+(?:traded|dealt)\s+to"),
    re.compile(rf"conversations?\s+on\s+(?:a\s+)?({_NAME})"),
    re.compile(rf"discussing\s+({_NAME})"),
    re.compile(rf"({_NAME})[,\s]+({_NAME})\s+package"),
    re.compile(rf"package\s+(?:with|of|including)\s+({_NAME})"),
    re.compile(rf"({_NAME})\s+and\s+({_NAME})"),
]

FALSE_POSITIVES = {
    "the bulls", "the lakers", "pro basketball", "nba today", "all star",
    "star forward", "star guard", "star center",
}

TEAM_PATTERNS = [
    re.compile(r"traded\s+to\s+(?:the\s+)?([A-Z][a-z0-9]+(?:\s+[A-Z][a-z]+)?)"),
    re.compile(r"acquiring\s+.+?\s+from\s+(?:the\s+)?([A-Z][a-z0-9]+)"),
    re.compile(r"to\s+(?:the\s+)?([A-Z][a-z0-9]+(?:\s+[A-Z][a-z]+)?)\s+for"),
    re.compile(r"landing\s+.+?\s+from\s+(?:the\s+)?([A-Z][a-z0-9]+)"),
    re.compile(r"(?:the\s+)?([A-Z][a-z0-9]+(?:\s+[A-Z][a-z]+)?)\s+(?:are|is)\s+acquiring"),
    re.compile(r"deal\s+with\s+(?:the\s+)?([A-Z][a-z0-9]+)"),
]

TARGET_PATTERNS = [
    re.compile(r"acquired\s+(?:the\s+)?(?:\w+\s+)?([A-Z][a-z]+\s+[A-Z][a-zčćžšđ]+)"),
    re.compile(r"([A-Z][a-z]+\s+[A-Z][a-zčćžšđ]+)\s+(?:is being|has been|will be)\s+traded"),
]

TRADE_ANALYSIS_PROMPT = """You analyze NBA news posts for a trading system.
Identify ONLY players involved in ACTUAL trades or trade negotiations. Ignore injuries,
All-Star selections, contract extensions, game performance and historical references.

For each player return:
- name: full name
- is_being_traded: true only if THIS player is the one moving teams
- confidence: one of confirmed | imminent | serious | exploring | negative
  (negative = the trade is off, the player is staying, or the team picked someone else)
- confidence_score: 0-100
- sentiment_score: -100 to 100
- reasoning: one short sentence
- destination_team: the team the player is going TO, or null. In swap trades this is the
  team receiving the player, not the team sending him.

Return {"players": []} when no real trade news is present."""


def _keyword_regex(keyword: str) -> "re.Pattern[str]":
    return re.compile(rf"(?<!\w){re.escape(keyword)}(?!\w)")


# =============================================================================
# Tier rules
# =============================================================================
@dataclass(frozen=True)
class TierRule:
    """A single (predicate, tier) rule. The predicate returns the matched phrase or None."""

    tier: Tier
    predicate: Callable[[str], Optional[str]]
    label: str


def keyword_predicate(keywords: List[str]) -> Callable[[str], Optional[str]]:
    patterns = [(kw, _keyword_regex(kw)) for kw in keywords]

    def predicate(text_lower: str) -> Optional[str]:
        for kw, pattern in patterns:
            if pattern.search(text_lower):
                return kw
        return None

    return predicate


# Order is priority: Negative polarity first, then positive tiers strongest first.
TIER_RULES: List[TierRule] = [
    TierRule(Tier.NEGATIVE, keyword_predicate(TIER_KEYWORDS[Tier.NEGATIVE]), "negative keywords"),
    TierRule(Tier.CONFIRMED, keyword_predicate(TIER_KEYWORDS[Tier.CONFIRMED]), "confirmed keywords"),
    TierRule(Tier.IMMINENT, keyword_predicate(TIER_KEYWORDS[Tier.IMMINENT]), "imminent keywords"),
    TierRule(Tier.SERIOUS, keyword_predicate(TIER_KEYWORDS[Tier.SERIOUS]), "serious keywords"),
    TierRule(Tier.EXPLORING, keyword_predicate(TIER_KEYWORDS[Tier.EXPLORING]), "exploring keywords"),
]
DEFAULT_TIER = Tier.EXPLORING


def match_tier(text: str, rules: List[TierRule] = TIER_RULES) -> Tuple[Tier, str]:
    """First matching rule wins; returns (tier, explanation)."""
    text_lower = text.lower()
    for rule in rules:
        matched = rule.predicate(text_lower)
        if matched:
            return rule.tier, f"{rule.label}: '{matched}'"
    return DEFAULT_TIER, "no tier keywords (default exploring)"


# =============================================================================
# Entity extraction
# =============================================================================
def extract_players(text: str) -> List[str]:
    """Known players plus regex-captured names, deduplicated case-insensitively."""
    found: List[str] = []
    seen = set()
    text_lower = text.lower()

    def add(name: str) -> None:
        key = normalize_name(name)
        if key and key not in seen and name.lower() not in FALSE_POSITIVES:
            seen.add(key)
            found.append(name)

    for player in KNOWN_PLAYERS:
        variants = [player.lower()]
        stripped = re.sub(r"\s+jr\.?$", "", player.lower())
        if stripped != variants[0]:
            variants.append(stripped)
        if any(_keyword_regex(v).search(text_lower) for v in variants):
            add(player)

    for pattern in PLAYER_PATTERNS:
        for match in pattern.finditer(text):
            for group in match.groups():
                if group:
                    name = re.sub(r"\s+Jr\.?$", "", group.strip())
                    # Skip captures that are a known player's suffix-stripped form
                    if normalize_name(name) in seen or any(
                        normalize_name(name) == normalize_name(re.sub(r"\s+Jr\.?$", "", p)) for p in found
                    ):
                        continue
                    add(name)

    return found


def extract_destination(text: str) -> Optional[str]:
    """Team named as the destination, only if it is in the team alias table."""
    for pattern in TEAM_PATTERNS:
        match = pattern.search(text)
        if match:
            team = match.group(1).strip()
            if team_code_for(team):
                return team
    return None


def extract_actual_trade_target(text: str) -> Optional[str]:
    """The player a post says was actually acquired/traded, if stated explicitly."""
    for pattern in TARGET_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1).strip()
    return None


# =============================================================================
# Negative-context post-filter
# =============================================================================
def _name_alternation(player: str) -> str:
    full = player.lower()
    parts = re.sub(r"\s+jr\.?$", "", full).split()
    options = [re.escape(full)]
    if len(parts) >= 2 and len(parts[-1]) >= 4:
        options.append(re.escape(parts[-1]))
    return "(?:" + "|".join(options) + ")"


def negative_context_reason(text: str, player: str) -> Optional[str]:
    """Why `player` reads as a rejected alternative in `text`, or None."""
    t = text.lower()
    p = _name_alternation(player)
    if not re.search(p, t):
        return None

    checks = [
        ("instead of", rf"instead\s+of\s+[^.,;]{{0,40}}?{p}"),
        ("rather than", rf"rather\s+than\s+[^.,;]{{0,40}}?{p}"),
        ("passed on", rf"passed\s+(?:on|over)\s+[^.,;]{{0,40}}?{p}"),
        ("chose over", rf"(?:chose|opted\s+for|went\s+with)\b[^.;]{{0,80}}?\bover\s+[^.,;]{{0,20}}?{p}"),
        ("pivoted away", rf"pivoted\s+away\s+from\s+[^.,;]{{0,30}}?{p}"),
        ("previously", rf"previously\b[^.;]{{0,50}}?{p}|{p}[^.;]{{0,50}}?\bpreviously\b"),
        ("hoped to land", rf"hoped\s+to\s+(?:land|acquire|get|add)\s+[^.,;]{{0,20}}?{p}"),
    ]
    for label, pattern in checks:
        if re.search(pattern, t):
            return label

    # "X talks ... pivoted to Y": the player was the earlier target
    pivot = t.find("pivoted to")
    if pivot >= 0:
        mentions = [m.start() for m in re.finditer(p, t)]
        if mentions and all(pos < pivot for pos in mentions):
            return "pivoted to another target"

    if "suitor" in t and "hoped" in t:
        return "hoped-for suitor"

    return None


@dataclass
class Candidate:
    """An entity verdict before post-filtering."""

    entity: str
    tier: Tier
    score: int
    reason: str
    destination: Optional[str] = None
    sentiment: Optional[int] = None


def apply_negative_context(text: str, candidates: List[Candidate]) -> List[Candidate]:
    """Turn rejected-alternative entities Negative, then drop anything that maps to hold."""
    filtered: List[Candidate] = []
    for candidate in candidates:
        reason = negative_context_reason(text, candidate.entity)
        if reason and candidate.tier is not Tier.NEGATIVE:
            logger.info(f"Negative context for {candidate.entity} ({reason}); {candidate.tier.value} -> negative")
            candidate = Candidate(
                entity=candidate.entity,
                tier=Tier.NEGATIVE,
                score=Tier.NEGATIVE.default_score,
                reason=f"negative context: {reason}",
                destination=None,
                sentiment=candidate.sentiment,
            )
        if candidate.tier.action is SignalAction.HOLD:
            logger.debug(f"Dropping {candidate.entity}: {candidate.tier.value} ({candidate.reason})")
            continue
        filtered.append(candidate)
    return filtered


# =============================================================================
# Keyword path
# =============================================================================
def keyword_candidates(text: str, entities: List[str]) -> List[Candidate]:
    tier, reason = match_tier(text)
    target = extract_actual_trade_target(text)
    destination = extract_destination(text)

    candidates: List[Candidate] = []
    for entity in entities:
        if target and normalize_name(target) != normalize_name(entity):
            if negative_context_reason(text, entity):
                candidates.append(Candidate(entity, tier, tier.default_score, reason))
            else:
                logger.debug(f"Skipping {entity}: post names {target} as the player traded")
            continue
        candidates.append(Candidate(entity, tier, tier.default_score, reason, destination=destination))
    return candidates


def _llm_candidates(analysis: TradeAnalysis) -> List[Candidate]:
    candidates = []
    for player in analysis.players:
        tier = Tier.parse(player.confidence)
        if tier is Tier.EXPLORING:
            continue
        if not player.is_being_traded and tier is not Tier.NEGATIVE:
            continue
        candidates.append(Candidate(
            entity=player.name,
            tier=tier,
            score=player.confidence_score if player.confidence_score is not None else 70,
            reason=f"llm: {player.reasoning}" if player.reasoning else "llm",
            destination=player.destination_team if tier is not Tier.NEGATIVE else None,
            sentiment=player.sentiment_score,
        ))
    return candidates


# =============================================================================
# Delegated analysis
# =============================================================================
class LLMTradeAnalyzer:
    """Structured trade extraction through an OpenAI-compatible endpoint."""

    def __init__(self, config: LLMConfig, db: Any = None, client: Any = None):
        self.config = config
        self.db = db
        self.client = client if client is not None else (build_client(config) if config.enabled else None)

    @property
    def available(self) -> bool:
        return self.client is not None

    async def analyze(self, event: TextEvent) -> Tuple[TradeAnalysis, Optional[int]]:
        """Returns the parsed analysis and the stored analysis row id (if stored)."""
        started = time.monotonic()
        analysis = await parse_pydantic_response(
            self.client,
            model=self.config.model,
            messages=[
                {"role": "system", "content": TRADE_ANALYSIS_PROMPT},
                {"role": "user", "content": f"Post by @{event.author}:\n{event.text}"},
            ],
            response_format=TradeAnalysis,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
        )
        latency_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"LLM analysis for {event.id}: {len(analysis.players)} player(s) in {latency_ms}ms")

        analysis_id = None
        if self.db is not None:
            try:
                analysis_id = await self.db.insert_llm_analysis({
                    "tweet_id": event.id,
                    "author": event.author,
                    "text": event.text,
                    "model": self.config.model,
                    "latency_ms": latency_ms,
                    "raw_response": analysis.model_dump_json(),
                    "players": [p.model_dump() for p in analysis.players],
                })
            except Exception as e:
                logger.error(f"Failed to store LLM analysis: {e}")
        return analysis, analysis_id


class ConfidenceClassifier:
    """
    Maps a text event to Signals. Never returns Exploring/hold signals.

    Usage:
        classifier = ConfidenceClassifier(analyzer)
        signals = await classifier.classify(event)
    """

    def __init__(self, analyzer: Optional[LLMTradeAnalyzer] = None):
        self.analyzer = analyzer
        self.last_analysis: Optional[TradeAnalysis] = None
        self.stats = {"llm": 0, "keyword": 0, "llm_failures": 0}

    def classify_keywords(self, event: TextEvent, entity_candidates: Optional[List[str]] = None) -> List[Signal]:
        entities = entity_candidates if entity_candidates is not None else extract_players(event.text)
        if not entities:
            logger.debug(f"No entities in {event.id}; no signals")
            return []
        candidates = apply_negative_context(event.text, keyword_candidates(event.text, entities))
        self.stats["keyword"] += 1
        return [self._to_signal(event, c) for c in candidates]

    async def classify(self, event: TextEvent, entity_candidates: Optional[List[str]] = None) -> List[Signal]:
        """Delegated analysis when available, keyword rules otherwise or on failure."""
        self.last_analysis = None
        if self.analyzer is not None and self.analyzer.available:
            try:
                analysis, analysis_id = await self.analyzer.analyze(event)
            except (RuntimeError, openai.OpenAIError) as e:
                self.stats["llm_failures"] += 1
                logger.warning(f"LLM analysis failed for {event.id}, using keywords: {e}")
            else:
                self.last_analysis = analysis
                if analysis.players:
                    candidates = apply_negative_context(event.text, _llm_candidates(analysis))
                    if entity_candidates is not None:
                        allowed = {normalize_name(e) for e in entity_candidates}
                        candidates = [c for c in candidates if normalize_name(c.entity) in allowed]
                    self.stats["llm"] += 1
                    signals = [self._to_signal(event, c, analysis_id) for c in candidates]
                    logger.info(f"LLM verdict for {event.id}: {[s.to_dict() for s in signals]}")
                    return signals
                logger.info(f"LLM found no players in {event.id}; falling back to keywords")

        signals = self.classify_keywords(event, entity_candidates)
        if signals:
            logger.info(f"Keyword verdict for {event.id}: {[(s.entity_name, s.tier.value) for s in signals]}")
        return signals

    @staticmethod
    def _to_signal(event: TextEvent, candidate: Candidate, analysis_id: Optional[int] = None) -> Signal:
        return Signal(
            event=event,
            entity_name=candidate.entity,
            tier=candidate.tier,
            score=candidate.score,
            destination=candidate.destination,
            reasoning=candidate.reason,
            sentiment=candidate.sentiment,
            analysis_id=analysis_id,
        )


def summarize_analysis(analysis: TradeAnalysis) -> str:
    """Per-player one-liners for the trade-detected notification."""
    lines = []
    for p in analysis.players:
        lines.append(_player_line(p))
    return "\n".join(lines)


def _player_line(p: PlayerAnalysis) -> str:
    dest = f" -> {p.destination_team}" if p.destination_team else ""
    score = f" ({p.confidence_score})" if p.confidence_score is not None else ""
    moving = "TRADED" if p.is_being_traded else "mentioned"
    return f"{p.name}{dest}: {p.confidence.upper()}{score} [{moving}]"
