# harvester/services/content_heuristics.py
"""Best-effort title and publish-date derivation for extracted pages.

Nothing here raises: an unknown title becomes a slug-derived string and an
unknown date becomes ``None``.
"""
import re
import logging
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

_HEADING_RE = re.compile(r'^#[ \t]+(.+?)[ \t#]*$', re.MULTILINE)
_TITLE_LINE_RE = re.compile(r'^Title:[ \t]*(.+)$', re.MULTILINE)

_NUMERIC_DATE_RE = re.compile(r'(?<!\d)(\d{4})[-/](\d{1,2})[-/](\d{1,2})(?!\d)')
_YEAR_MONTH_RE = re.compile(r'/(\d{4})/(\d{1,2})/')
_NAMED_DATE_RE = re.compile(r'([a-z]+)[-_](\d{1,2})[-_](\d{4})', re.IGNORECASE)

_MONTHS = {
    "jan": 1, "january": 1, "feb": 2, "february": 2, "mar": 3, "march": 3,
    "apr": 4, "april": 4, "may": 5, "jun": 6, "june": 6, "jul": 7, "july": 7,
    "aug": 8, "august": 8, "sep": 9, "sept": 9, "september": 9, "oct": 10,
    "october": 10, "nov": 11, "november": 11, "dec": 12, "december": 12,
}

def title_from_markdown(text: str) -> Optional[str]:
    """First ``# heading`` line, or the reader proxy's ``Title:`` header"""
    if not text:
        return None
    match = _TITLE_LINE_RE.search(text) or _HEADING_RE.search(text)
    if match:
        title = match.group(1).strip()
        return title or None
    return None

def title_from_url(url: str, default: str = "Untitled") -> str:
    path = urlparse(url).path.rstrip("/")
    last_part = path.split("/")[-1] if path else ""
    last_part = re.sub(r'\.html?$', '', last_part, flags=re.IGNORECASE)
    last_part = re.sub(r'[-_]+', ' ', last_part)
    last_part = re.sub(r'^\d+\s*', '', last_part).strip()
    if not last_part:
        return default
    return " ".join(word[:1].upper() + word[1:] for word in last_part.split())

def derive_title(text: str, url: str) -> str:
    return title_from_markdown(text) or title_from_url(url)

def _safe_date(year: int, month: int, day: int) -> Optional[datetime]:
    try:
        return datetime(year, month, day, tzinfo=timezone.utc)
    except ValueError:
        return None

def date_from_url(url: str) -> Optional[datetime]:
    """Date-shaped URL segment: 2024-08-15, 2024/08/15, /2024/08/, aug-15-2024"""
    if not url:
        return None
    path = urlparse(url).path

    match = _NUMERIC_DATE_RE.search(path)
    if match:
        parsed = _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        if parsed:
            return parsed

    match = _NAMED_DATE_RE.search(path)
    if match:
        month = _MONTHS.get(match.group(1).lower())
        if month:
            parsed = _safe_date(int(match.group(3)), month, int(match.group(2)))
            if parsed:
                return parsed

    match = _YEAR_MONTH_RE.search(path)
    if match:
        return _safe_date(int(match.group(1)), int(match.group(2)), 1)

    return None

def parse_timestamp(value) -> Optional[datetime]:
    """Parse the assorted timestamp shapes social scrapers return"""
    if value is None or value == "":
        return None
    try:
        if isinstance(value, (int, float)):
            # millisecond epochs are common in scraper output
            seconds = value / 1000 if value > 1e11 else value
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        text = str(value).strip()
        if text.isdigit():
            return parse_timestamp(int(text))
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            # Twitter's legacy format: "Wed Oct 10 20:19:24 +0000 2018"
            parsed = datetime.strptime(text, "%a %b %d %H:%M:%S %z %Y")
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    except (ValueError, OverflowError, OSError) as e:
        logger.debug(f"Unparseable timestamp {value!r}: {e}")
        return None

def truncate(text: str, cap: int) -> str:
    if not text:
        return ""
    return text[:cap] if len(text) > cap else text
