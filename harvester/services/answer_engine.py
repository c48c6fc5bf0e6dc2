# harvester/services/answer_engine.py
import asyncio
import aiohttp
import json
import logging
import re
from typing import Dict, List, Optional

from pydantic import BaseModel

from harvester.config.settings import settings
from harvester.models.internal import SourceType
from harvester.core.exceptions import FallbackError

logger = logging.getLogger(__name__)

class AnswerEngineHit(BaseModel):
    title: str = ""
    url: str
    themes: List[str] = []
    summary: str = ""
    influence_reason: Optional[str] = None

    def as_metadata(self) -> Dict[str, object]:
        data = {"themes": self.themes, "summary": self.summary}
        if self.influence_reason:
            data["influence_reason"] = self.influence_reason
        return data

_PIECE_SCHEMA = {
    "type": "object",
    "properties": {
        "pieces": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "title": {"type": "string"},
                    "url": {"type": "string"},
                    "themes": {"type": "array", "items": {"type": "string"}},
                    "summary": {"type": "string"},
                    "influence_reason": {"type": "string"}
                },
                "required": ["title", "url"]
            }
        }
    },
    "required": ["pieces"]
}

_SOURCES_SCHEMA = {
    "type": "object",
    "properties": {
        "blog_url": {"type": ["string", "null"]},
        "newsletter_url": {"type": ["string", "null"]},
        "substack_url": {"type": ["string", "null"]},
        "twitter_handle": {"type": ["string", "null"]},
        "linkedin_url": {"type": ["string", "null"]}
    }
}

_KIND_NOUNS = {
    SourceType.BLOG: "blog posts/articles",
    SourceType.NEWSLETTER: "newsletter issues",
}

_FENCE_RE = re.compile(r'```(?:json)?\s*(.*?)\s*```', re.DOTALL)
_CITATION_RE = re.compile(r'\[\d+\]$')

def _load_json(content):
    if isinstance(content, (dict, list)):
        return content
    if not isinstance(content, str):
        return None
    text = content.strip()
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1)
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        # answer engines sometimes wrap JSON in prose; take the outermost block
        for opener, closer in (("[", "]"), ("{", "}")):
            start, end = text.find(opener), text.rfind(closer)
            if start != -1 and end > start:
                try:
                    return json.loads(text[start:end + 1])
                except json.JSONDecodeError:
                    continue
    return None

def parse_pieces(content: str) -> List[AnswerEngineHit]:
    """Hits from an answer; accepts a bare array or an object wrapping one"""
    data = _load_json(content)
    if isinstance(data, dict):
        for key in ("pieces", "posts", "results", "articles", "items"):
            if isinstance(data.get(key), list):
                data = data[key]
                break
    if not isinstance(data, list):
        return []

    hits = []
    seen = set()
    for entry in data:
        if not isinstance(entry, dict):
            continue
        url = _CITATION_RE.sub("", str(entry.get("url") or "").strip())
        if not url.startswith(("http://", "https://")) or url in seen:
            continue
        seen.add(url)
        themes = entry.get("themes") or []
        if isinstance(themes, str):
            themes = [t.strip() for t in themes.split(",") if t.strip()]
        hits.append(AnswerEngineHit(
            title=str(entry.get("title") or ""),
            url=url,
            themes=[str(t) for t in themes],
            summary=str(entry.get("summary") or ""),
            influence_reason=str(entry["influence_reason"]) if entry.get("influence_reason") else None
        ))
    return hits

def parse_sources(content: str) -> Dict[SourceType, str]:
    data = _load_json(content)
    if not isinstance(data, dict):
        return {}

    def clean(value) -> Optional[str]:
        if not value or not isinstance(value, str) or value.strip().lower() in ("null", "none"):
            return None
        return _CITATION_RE.sub("", value.strip())

    found = {
        SourceType.BLOG: clean(data.get("blog_url")),
        SourceType.NEWSLETTER: clean(data.get("newsletter_url")) or clean(data.get("substack_url")),
        SourceType.TWITTER: clean(data.get("twitter_handle")),
        SourceType.LINKEDIN: clean(data.get("linkedin_url")),
    }
    return {source: value for source, value in found.items() if value}

class AnswerEngine:
    """General-purpose search/answer service used when primary discovery fails"""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 model: Optional[str] = None, timeout: Optional[int] = None):
        self.api_key = settings.PERPLEXITY_API_KEY if api_key is None else api_key
        self.base_url = (base_url or settings.PERPLEXITY_BASE_URL).rstrip("/")
        self.model = model or settings.ANSWER_ENGINE_MODEL
        self.temperature = settings.ANSWER_ENGINE_TEMPERATURE
        self.timeout = timeout or settings.FALLBACK_SCRAPE_TIMEOUT
        self.session = None

    async def _get_session(self):
        """Lazy initialization of HTTP session"""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"Content-Type": "application/json"}
            )
        return self.session

    async def find_top_pieces(self, root_url: str, creator_name: str, kind: SourceType,
                              count: int = 5, popular_only: bool = False) -> List[AnswerEngineHit]:
        noun = _KIND_NOUNS.get(kind, "pieces of writing")
        ranking = "most popular, influential, or important" if popular_only else "most popular or recent"
        prompt = f"""Find the {count} {ranking} {noun} from {root_url} by {creator_name}.
For each piece provide:
1. Title
2. URL (the full URL of the piece itself, not the homepage)
3. Key themes/topics
4. Brief summary
5. Why it is influential (influence_reason)

Return a JSON object {{"pieces": [...]}} where each entry has these exact keys: title, url, themes, summary, influence_reason"""

        content = await self._chat(prompt, _PIECE_SCHEMA)
        hits = parse_pieces(content)[:count]
        logger.info(f"Answer engine returned {len(hits)} {kind.value} candidates for {creator_name}")
        return hits

    async def discover_sources(self, creator_name: str, hints: Optional[Dict[str, str]] = None) -> Dict[SourceType, str]:
        hint_text = ""
        if hints:
            hint_text = "\nKnown hints: " + ", ".join(f"{k}={v}" for k, v in hints.items() if v)
        prompt = f"""Find official content sources for {creator_name}.{hint_text}
Return a JSON object with these exact keys:
{{
  "newsletter_url": "full URL or null",
  "twitter_handle": "@handle or null",
  "linkedin_url": "full URL or null",
  "blog_url": "full URL or null",
  "substack_url": "full URL or null"
}}
If you cannot find a specific source, set it to null. Always provide complete URLs, not just domain names."""

        content = await self._chat(prompt, _SOURCES_SCHEMA)
        return parse_sources(content)

    async def _chat(self, prompt: str, schema: Dict) -> str:
        if not self.api_key:
            raise FallbackError("Answer engine API key is not configured")

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": "You are a research assistant helping to find online content by creators. Answer with JSON only."},
                {"role": "user", "content": prompt}
            ],
            "temperature": self.temperature,
            "response_format": {"type": "json_schema", "json_schema": {"schema": schema}}
        }

        try:
            session = await self._get_session()
            async with session.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"}
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise FallbackError(f"Answer engine error {response.status}: {error_text[:200]}")
                try:
                    data = await response.json()
                except ValueError as e:
                    raise FallbackError(f"Answer engine returned a non-JSON body: {e}")
        except asyncio.TimeoutError:
            raise FallbackError(f"Answer engine timed out after {self.timeout}s")
        except aiohttp.ClientError as e:
            raise FallbackError(f"Answer engine request failed: {type(e).__name__}: {e}")

        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            raise FallbackError("Answer engine response missing choices")

    async def close(self):
        """Close HTTP session"""
        if self.session:
            await self.session.close()
            self.session = None
