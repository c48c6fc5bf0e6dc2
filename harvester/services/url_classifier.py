# harvester/services/url_classifier.py
import asyncio
import aiohttp
import json
import logging
import re
import time
from typing import Dict, List, Optional
from urllib.parse import urlparse

from harvester.config.settings import settings
from harvester.models.internal import SourceType
from harvester.core.exceptions import ClassificationError

logger = logging.getLogger(__name__)

# Reproducible runs need the same ranked subset for the same input.
CLASSIFIER_TEMPERATURE = 0.0

KIND_RESPONSE_KEYS: Dict[SourceType, str] = {
    SourceType.BLOG: "blog_posts",
    SourceType.NEWSLETTER: "newsletter_issues",
}

KIND_LABELS: Dict[SourceType, str] = {
    SourceType.BLOG: "blog posts/articles/essays",
    SourceType.NEWSLETTER: "individual newsletter issues/posts",
}

POSITIVE_CRITERIA: Dict[SourceType, List[str]] = {
    SourceType.BLOG: [
        "URLs with dates (2024/08/, 2025-01-15)",
        "Article slugs (how-to-xyz, my-thoughts-on)",
        "Essay pages (for sites like paulgraham.com where .html files are essays)",
        "Blog post patterns (/blog/, /posts/, /articles/, /essays/)",
    ],
    SourceType.NEWSLETTER: [
        "URLs with dates (2024/08/, 2025-01-15)",
        "Issue slugs (/p/some-title on Substack, /issues/42, /newsletter/some-title)",
        "Numbered issue pages (issue-12, edition-3)",
        "Post patterns (/posts/, /letters/, /editions/)",
    ],
}

NEGATIVE_CRITERIA: Dict[SourceType, List[str]] = {
    SourceType.BLOG: [
        "Sitemap files (.xml)",
        "Navigation pages (about, contact, privacy, terms)",
        "Category/tag/archive pages",
        "Media files (images, PDFs)",
        "Homepage/index pages",
    ],
    SourceType.NEWSLETTER: [
        "Sitemap files (.xml)",
        "Navigation pages (about, contact, privacy, terms)",
        "Subscribe/account/login pages",
        "Archive/index pages listing many issues",
        "Media files (images, PDFs)",
        "Homepage/index pages",
    ],
}

_MEDIA_EXTENSION_RE = re.compile(
    r'\.(xml|rss|atom|jpe?g|png|gif|svg|webp|ico|pdf|mp3|mp4|mov|zip|css|js|json|txt)$',
    re.IGNORECASE
)
_NAVIGATION_SEGMENTS = {
    "about", "about-me", "about-us", "contact", "contact-us", "privacy", "privacy-policy",
    "terms", "terms-of-service", "terms-of-use", "legal", "cookies", "cookie-policy",
    "login", "signin", "sign-in", "signup", "sign-up", "subscribe", "account", "search",
    "feed", "rss", "archive", "archives", "index.html", "index.htm",
}
_TAXONOMY_RE = re.compile(r'/(tag|tags|category|categories|topics?|author|authors)/|/page/\d+/?$', re.IGNORECASE)

def is_obvious_non_content(url: str) -> bool:
    """Rule-based negatives that never need a model call"""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return True
    path = parsed.path.rstrip("/")
    if not path:
        return True
    if _MEDIA_EXTENSION_RE.search(path):
        return True
    if _TAXONOMY_RE.search(parsed.path):
        return True
    last_segment = path.split("/")[-1].lower()
    return last_segment in _NAVIGATION_SEGMENTS

def prefilter_urls(urls: List[str]) -> List[str]:
    kept = [u for u in dict.fromkeys(u.strip() for u in urls if u and u.strip())
            if not is_obvious_non_content(u)]
    logger.debug(f"Prefilter kept {len(kept)}/{len(urls)} URLs")
    return kept

def build_classification_prompt(urls: List[str], creator_name: str, kind: SourceType, cap: int) -> str:
    positives = "\n".join(f"- {item}" for item in POSITIVE_CRITERIA[kind])
    negatives = "\n".join(f"- {item}" for item in NEGATIVE_CRITERIA[kind])
    url_list = "\n".join(urls)
    return f"""Given these URLs from {creator_name}'s website, identify which are {KIND_LABELS[kind]}.
Look for:
{positives}

Exclude:
{negatives}

URLs to classify:
{url_list}

Return a JSON object {{"urls": [...]}} with up to {cap} matching URLs, ordered by recency if dates are visible."""

def build_system_prompt(kind: SourceType, cap: int) -> str:
    return (
        f"You are a URL classifier. Respond with ONLY a single JSON object of the exact shape "
        f'{{"urls": [...]}} listing {KIND_LABELS[kind]}.\n'
        f"No explanation. No formatting. Maximum {cap} URLs."
    )

_FENCE_RE = re.compile(r'^```(?:json)?\s*(.*?)\s*```$', re.DOTALL)

def parse_classifier_response(content: Optional[str], kind: SourceType) -> List[str]:
    """Normalize the accepted response shapes into a URL list.

    Accepted: a bare JSON array, ``{"urls": [...]}``, or the kind-specific key
    (``blog_posts`` / ``newsletter_issues``). Anything else is a
    ClassificationError.
    """
    if not isinstance(content, str):
        raise ClassificationError(f"Unrecognized classifier content type: {type(content).__name__}")
    if not content.strip():
        raise ClassificationError("Empty classifier response")

    text = content.strip()
    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1)

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ClassificationError(f"Classifier response is not JSON: {e}")

    if isinstance(data, list):
        candidates = data
    elif isinstance(data, dict):
        candidates = None
        for key in ("urls", KIND_RESPONSE_KEYS[kind]):
            if isinstance(data.get(key), list):
                candidates = data[key]
                break
        if candidates is None:
            raise ClassificationError(f"Unrecognized classifier response keys: {sorted(data.keys())}")
    else:
        raise ClassificationError(f"Unrecognized classifier response type: {type(data).__name__}")

    return [c.strip() for c in candidates if isinstance(c, str) and c.strip()]

class URLClassifier:
    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 model: Optional[str] = None, chunk_size: Optional[int] = None,
                 timeout: Optional[int] = None):
        self.api_key = settings.OPENAI_API_KEY if api_key is None else api_key
        self.base_url = (base_url or settings.OPENAI_BASE_URL).rstrip("/")
        self.model = model or settings.CLASSIFIER_MODEL
        self.chunk_size = chunk_size or settings.CLASSIFIER_CHUNK_SIZE
        self.max_tokens = settings.CLASSIFIER_MAX_TOKENS
        self.timeout = timeout or settings.LLM_TIMEOUT
        self.session = None

    async def _get_session(self):
        """Lazy initialization of HTTP session"""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"Content-Type": "application/json"}
            )
        return self.session

    def cap_for(self, kind: SourceType) -> int:
        if kind == SourceType.NEWSLETTER:
            return settings.NEWSLETTER_URL_CAP
        return settings.BLOG_URL_CAP

    async def classify(self, urls: List[str], creator_name: str, kind: SourceType,
                       cap: Optional[int] = None) -> List[str]:
        """Relevant URLs for ``kind``, ranked and capped; an empty list on any failure"""
        cap = cap or self.cap_for(kind)
        start_time = time.time()

        candidates = prefilter_urls(urls)
        if not candidates:
            return []

        chunks = [candidates[i:i + self.chunk_size] for i in range(0, len(candidates), self.chunk_size)]
        results = await asyncio.gather(
            *(self._classify_chunk(chunk, creator_name, kind, cap) for chunk in chunks),
            return_exceptions=True
        )
        for index, chunk_result in enumerate(results):
            if isinstance(chunk_result, BaseException):
                logger.warning(f"Classification chunk {index + 1} failed: {type(chunk_result).__name__}: {chunk_result}")
                results[index] = []

        merged = list(dict.fromkeys(url for chunk_result in results for url in chunk_result))[:cap]
        logger.info(
            f"Classified {len(merged)} {kind.value} URLs from {len(urls)} candidates "
            f"({len(chunks)} chunks) in {time.time() - start_time:.2f}s"
        )
        return merged

    async def _classify_chunk(self, chunk: List[str], creator_name: str,
                              kind: SourceType, cap: int) -> List[str]:
        try:
            content = await self._complete(
                build_system_prompt(kind, cap),
                build_classification_prompt(chunk, creator_name, kind, cap)
            )
            urls = parse_classifier_response(content, kind)
        except ClassificationError as e:
            logger.warning(f"Classification chunk treated as empty: {e}")
            return []
        except asyncio.TimeoutError:
            logger.warning(f"Classification chunk timed out after {self.timeout}s")
            return []
        except aiohttp.ClientError as e:
            logger.warning(f"Classification request failed: {type(e).__name__}: {e}")
            return []

        allowed = set(chunk)
        return [url for url in urls if url in allowed]

    async def _complete(self, system_prompt: str, user_prompt: str) -> str:
        if not self.api_key:
            raise ClassificationError("Classifier API key is not configured")

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt}
            ],
            "temperature": CLASSIFIER_TEMPERATURE,
            "max_tokens": self.max_tokens,
            "response_format": {"type": "json_object"}
        }

        session = await self._get_session()
        async with session.post(
            f"{self.base_url}/chat/completions",
            json=payload,
            headers={"Authorization": f"Bearer {self.api_key}"}
        ) as response:
            if response.status != 200:
                error_text = await response.text()
                raise ClassificationError(f"Classifier API error {response.status}: {error_text[:200]}")
            try:
                data = await response.json()
            except ValueError as e:
                raise ClassificationError(f"Classifier API returned a non-JSON body: {e}")

        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            raise ClassificationError("Classifier response missing choices")

    async def close(self):
        """Close HTTP session"""
        if self.session:
            await self.session.close()
            self.session = None
