"""
Tiered Twitter v2 timeline poller.

Each source is polled on its tier's interval (5s / 30s / 90s by default).
The newest tweet id per source is kept as since_id and persisted to the
bot_state table so restarts pick up where they left off; without one the
poll looks back backfill_minutes.
"""
import json
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
from loguru import logger

from config import TwitterConfig
from models import TextEvent

STATE_KEY = "last_tweet_ids"


@dataclass(frozen=True)
class TextSource:
    handle: str
    user_id: str
    tier: int = 3
    stream: str = "trade"


def _sources(stream: str, tier: int, entries: Dict[str, str]) -> List[TextSource]:
    return [TextSource(handle, user_id, tier, stream) for handle, user_id in entries.items()]


TRADE_SOURCES: List[TextSource] = (
    _sources("trade", 1, {
        "ShamsCharania": "178580925",
        "TheSteinLine": "48488561",
    })
    + _sources("trade", 2, {
        "WindhorstESPN": "193095044",
        "ZachLowe_NBA": "23378774",
        "ChrisBHaynes": "57710919",
        "JakeLFischer": "279252839",
        "ramonashelburne": "17507250",
        "BobbyMarks42": "299267941",
    })
    + _sources("trade", 3, {
        "HoopsRumors": "338159612",
        "RealGM": "46677640",
        "BR_NBA": "36724576",
        "TheNBACentral": "3316207295",
        "TheAthletic": "1985451134",
        "mcten": "22494516",
        "jovanbuha": "42820745",
        "LawMurrayTheNU": "66042578",
        "anthonyVslater": "77577780",
        "ByJayKing": "38032945",
        "JaredWeissNBA": "33816689",
        "IraHeatBeat": "39346451",
        "eric_nehm": "139936969",
        "DuaneRankin": "126500061",
        "tim_cato": "560447335",
        "IanBegley": "164076105",
        "FredKatz": "73834352",
        "Alex__Schiffer": "262952138",
        "BlakeMurphyODC": "14872954",
        "KCJHoop": "17106279",
        "WillGuillory": "201105510",
        "JonKrawczynski": "38251431",
        "joe_mussatto": "178418316",
        "James_HamNBA": "24591063",
    })
)

AD_SOURCES: List[TextSource] = (
    _sources("ad", 1, {
        "AdAge": "12480582",
        "AdWeek": "30205586",
        "SBCommercials": "19797772",
    })
    + _sources("ad", 2, {
        "Variety": "17525171",
        "THR": "17446621",
        "WSJ": "3108351",
        "CNBC": "20402945",
        "business": "34713362",
    })
    + _sources("ad", 3, {
        "digiday": "20640328",
        "marketingweek": "15277515",
        "SBAdvertising": "41457393",
    })
)


def expand_tweet_text(tweet: Dict[str, Any], referenced: Dict[str, str]) -> str:
    """Full text for retweets ("RT: ...") and quote tweets ("... [Quoted]: ...")."""
    text = tweet.get("text", "")
    refs = tweet.get("referenced_tweets") or []
    for ref in refs:
        if ref.get("type") == "retweeted" and ref.get("id") in referenced:
            text = f"RT: {referenced[ref['id']]}"
    for ref in refs:
        if ref.get("type") == "quoted" and ref.get("id") in referenced:
            text = f"{tweet.get('text', '')}\n\n[Quoted]: {referenced[ref['id']]}"
    return text


def _parse_created_at(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return datetime.now(timezone.utc)


class TweetPoller:
    """
    Produces TextEvents from trusted timelines.

    Usage:
        poller = TweetPoller(config.twitter, db)
        await poller.load_state()
        events = await poller.poll()
    """

    def __init__(
        self,
        config: TwitterConfig,
        db: Any = None,
        sources: Optional[List[TextSource]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.db = db
        self.sources = sources if sources is not None else TRADE_SOURCES + AD_SOURCES
        self._transport = transport
        self._clock = clock
        self.last_ids: Dict[str, str] = {}
        self._last_poll: Dict[str, float] = {}
        self._last_save = clock()
        self._stats = {"polls": 0, "failed": 0, "rate_limited": 0, "events": 0}

    @property
    def stats(self) -> Dict[str, int]:
        return self._stats.copy()

    def interval_for(self, source: TextSource) -> int:
        if source.tier == 1:
            return self.config.tier1_interval_seconds
        if source.tier == 2:
            return self.config.tier2_interval_seconds
        return self.config.tier3_interval_seconds

    def due_sources(self, streams: Optional[List[str]] = None) -> List[TextSource]:
        now = self._clock()
        due = []
        for source in self.sources:
            if streams is not None and source.stream not in streams:
                continue
            if now - self._last_poll.get(source.handle, 0) >= self.interval_for(source):
                due.append(source)
        return due

    async def load_state(self) -> None:
        if self.db is None:
            return
        try:
            raw = await self.db.get_state(STATE_KEY)
        except Exception as e:
            logger.error(f"Error loading tweet ids: {e}")
            return
        if raw:
            self.last_ids.update(json.loads(raw))
            logger.info(f"Restored last tweet ids for {len(self.last_ids)} sources")

    async def save_state(self) -> None:
        if self.db is None:
            return
        try:
            await self.db.set_state(STATE_KEY, json.dumps(self.last_ids))
        except Exception as e:
            logger.error(f"Error saving tweet ids: {e}")

    def _params(self, source: TextSource) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "max_results": self.config.max_results,
            "tweet.fields": "created_at,text,referenced_tweets",
            "expansions": "referenced_tweets.id",
        }
        since_id = self.last_ids.get(source.user_id)
        if since_id:
            params["since_id"] = since_id
        else:
            start = datetime.now(timezone.utc) - timedelta(minutes=self.config.backfill_minutes)
            params["start_time"] = start.strftime("%Y-%m-%dT%H:%M:%SZ")
            params["max_results"] = self.config.backfill_max_results
        return params

    async def poll(self, streams: Optional[List[str]] = None) -> List[TextEvent]:
        """Poll every due source once. Errors are logged per source and skipped."""
        if not self.config.enabled:
            return []

        due = self.due_sources(streams)
        if not due:
            return []

        events: List[TextEvent] = []
        headers = {"Authorization": f"Bearer {self.config.bearer_token}"}
        async with httpx.AsyncClient(
            base_url=self.config.api_base,
            headers=headers,
            timeout=self.config.timeout_seconds,
            transport=self._transport,
        ) as client:
            for source in due:
                self._last_poll[source.handle] = self._clock()
                events.extend(await self._poll_source(client, source))

        if self._clock() - self._last_save >= self.config.save_state_interval_seconds:
            self._last_save = self._clock()
            await self.save_state()

        self._stats["events"] += len(events)
        if events:
            logger.info(f"Polled {len(due)} sources, {len(events)} new posts")
        return events

    async def _poll_source(self, client: httpx.AsyncClient, source: TextSource) -> List[TextEvent]:
        self._stats["polls"] += 1
        try:
            response = await client.get(f"/users/{source.user_id}/tweets", params=self._params(source))
        except httpx.HTTPError as e:
            self._stats["failed"] += 1
            logger.error(f"Twitter request failed for @{source.handle}: {e}")
            return []

        if response.status_code != 200:
            self._stats["failed"] += 1
            if response.status_code == 429:
                self._stats["rate_limited"] += 1
                logger.warning(f"Rate limited on @{source.handle}")
            elif response.status_code == 401:
                logger.error("Twitter unauthorized (401) - check TWITTER_BEARER_TOKEN")
            elif response.status_code == 403:
                logger.error(f"Twitter forbidden (403) on @{source.handle} - API access issue")
            else:
                logger.error(f"Twitter error {response.status_code} on @{source.handle}")
            return []

        data = response.json()
        newest = (data.get("meta") or {}).get("newest_id")
        if newest:
            self.last_ids[source.user_id] = newest

        referenced = {t["id"]: t.get("text", "") for t in (data.get("includes") or {}).get("tweets", [])}
        events = []
        # API returns newest first; process in receipt order (oldest first)
        for tweet in reversed(data.get("data") or []):
            events.append(TextEvent(
                id=tweet["id"],
                text=expand_tweet_text(tweet, referenced),
                author=source.handle,
                timestamp=_parse_created_at(tweet.get("created_at")),
                stream=source.stream,
            ))
        return events
