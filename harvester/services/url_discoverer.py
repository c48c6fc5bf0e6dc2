# harvester/services/url_discoverer.py
import asyncio
import aiohttp
import logging
import time
from typing import List, Optional

from harvester.config.settings import settings
from harvester.core.exceptions import DiscoveryError

logger = logging.getLogger(__name__)

class URLDiscoverer:
    """Site mapper adapter: one bounded map call per root URL, no crawling, no retries"""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[int] = None, scrape_timeout: Optional[int] = None):
        self.api_key = settings.FIRECRAWL_API_KEY if api_key is None else api_key
        self.base_url = (base_url or settings.FIRECRAWL_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.DISCOVERY_TIMEOUT
        self.scrape_timeout = scrape_timeout or settings.FALLBACK_SCRAPE_TIMEOUT
        self.session = None

    async def _get_session(self):
        """Lazy initialization of HTTP session"""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self.session

    def _headers(self):
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }

    async def discover(self, root_url: str, limit: int = 100) -> List[str]:
        """Return up to ``limit`` URLs found on the site of ``root_url``"""
        if not self.api_key:
            raise DiscoveryError("Site mapper API key is not configured")

        start_time = time.time()
        payload = {
            "url": root_url,
            "search": "",
            "limit": limit,
            "ignoreSitemap": False
        }

        try:
            session = await self._get_session()
            async with session.post(f"{self.base_url}/v1/map", json=payload, headers=self._headers()) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise DiscoveryError(f"Site map failed: HTTP {response.status} {error_text[:200]}")
                data = await response.json()
        except asyncio.TimeoutError:
            raise DiscoveryError(f"Site map timed out after {self.timeout}s")
        except aiohttp.ClientError as e:
            raise DiscoveryError(f"Site map request failed: {type(e).__name__}: {e}")
        except ValueError as e:
            raise DiscoveryError(f"Site map returned a non-JSON body: {e}")

        links = extract_links(data)[:limit]
        if not links:
            raise DiscoveryError(f"Site map returned no URLs for {root_url}")

        logger.info(f"Discovered {len(links)} URLs on {root_url} in {time.time() - start_time:.2f}s")
        return links

    async def scrape(self, url: str) -> Optional[str]:
        """Markdown of a single page, or None when the scrape fails"""
        if not self.api_key:
            return None

        payload = {
            "url": url,
            "formats": ["markdown"],
            "onlyMainContent": True,
            "waitFor": 5000,
            "timeout": self.scrape_timeout * 1000
        }

        try:
            session = await self._get_session()
            async with session.post(
                f"{self.base_url}/v1/scrape",
                json=payload,
                headers=self._headers(),
                timeout=aiohttp.ClientTimeout(total=self.scrape_timeout)
            ) as response:
                if response.status != 200:
                    logger.warning(f"Scrape failed with status {response.status} for: {url}")
                    return None
                data = await response.json()
                return (data.get("data") or {}).get("markdown") or None
        except asyncio.TimeoutError:
            logger.warning(f"Scrape timed out after {self.scrape_timeout}s for: {url}")
            return None
        except aiohttp.ClientError as e:
            logger.warning(f"Scrape error for {url}: {e}")
            return None
        except ValueError as e:
            logger.warning(f"Scrape returned a non-JSON body for {url}: {e}")
            return None

    async def close(self):
        """Close HTTP session"""
        if self.session:
            await self.session.close()
            self.session = None

def extract_links(data) -> List[str]:
    """Links from a map response; entries may be plain strings or ``{"url": ...}`` objects"""
    if not isinstance(data, dict):
        return []
    raw_links = data.get("links") or []
    links = []
    for entry in raw_links:
        if isinstance(entry, str):
            link = entry
        elif isinstance(entry, dict):
            link = entry.get("url") or ""
        else:
            continue
        link = link.strip()
        if link:
            links.append(link)
    return list(dict.fromkeys(links))
