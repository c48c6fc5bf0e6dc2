# harvester/services/social_sources.py
"""Twitter/X and LinkedIn extraction through hosted scraper actors.

Neither actor can sort by popularity, so everything is scraped and ranked
client-side by a weighted engagement score.
"""
import logging
import re
from typing import Any, Dict, List, Optional

from harvester.config.settings import settings
from harvester.models.internal import ContentSource, ExtractionMethod, SourceType
from harvester.services.content_heuristics import parse_timestamp, truncate
from harvester.core.exceptions import JobSubmitError

logger = logging.getLogger(__name__)

def twitter_engagement(likes: float, retweets: float, replies: float) -> float:
    return likes + 2 * retweets + replies

def linkedin_engagement(reactions: float, comments: float, reposts: float) -> float:
    return reactions + 2 * comments + 3 * reposts

def rank_by_engagement(items: List[ContentSource], top_n: int) -> List[ContentSource]:
    """Highest engagement first, ties kept in input order; input is not modified"""
    ranked = sorted(items, key=lambda item: item.engagement_score or 0, reverse=True)
    return ranked[:top_n]

def _first_number(data: Dict[str, Any], *keys: str) -> float:
    for key in keys:
        value = data.get(key)
        if isinstance(value, (int, float)):
            return value
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
    return 0

def _first_text(data: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""

def _title_from_text(text: str, limit: int = 80) -> str:
    first_line = text.strip().splitlines()[0] if text.strip() else ""
    return first_line if len(first_line) <= limit else first_line[:limit - 3].rstrip() + "..."

class SocialSource:
    source_type: SourceType
    actor_id: str = ""
    top_n: int = 20
    max_wait: int = 1800
    estimated_duration: int = 600
    content_cap: int = 5000

    def build_input(self, handle: str) -> Dict[str, Any]:
        raise NotImplementedError

    def normalize(self, raw_items: List[Dict[str, Any]], handle: str, creator_name: str) -> List[ContentSource]:
        raise NotImplementedError

    def rank(self, items: List[ContentSource]) -> List[ContentSource]:
        return rank_by_engagement(items, self.top_n)

class TwitterSource(SocialSource):
    source_type = SourceType.TWITTER

    def __init__(self, actor_id: Optional[str] = None, top_n: Optional[int] = None,
                 max_items: Optional[int] = None):
        self.actor_id = actor_id or settings.TWITTER_ACTOR_ID
        self.top_n = top_n or settings.TWITTER_TOP_N
        self.max_items = max_items or settings.TWITTER_MAX_ITEMS
        self.max_wait = settings.TWITTER_MAX_WAIT
        self.estimated_duration = settings.TWITTER_ESTIMATED_DURATION
        self.content_cap = settings.SOCIAL_CONTENT_CAP

    @staticmethod
    def clean_handle(handle: str) -> str:
        handle = handle.strip()
        match = re.search(r'(?:twitter\.com|x\.com)/([A-Za-z0-9_]+)', handle)
        if match:
            return match.group(1)
        return handle.lstrip("@")

    def build_input(self, handle: str) -> Dict[str, Any]:
        clean = self.clean_handle(handle)
        if not clean:
            raise JobSubmitError("Empty Twitter handle")
        return {
            "searchTerms": [f"from:{clean}"],
            "lang": "en",
            "tweetLanguage": "en",
            "maxItems": self.max_items,
            "addUserInfo": True,
            "onlyVerifiedUsers": False,
            "proxy": {"useApifyProxy": True, "apifyProxyGroups": ["RESIDENTIAL"]},
            "timeoutSecs": 1200
        }

    def normalize(self, raw_items: List[Dict[str, Any]], handle: str, creator_name: str) -> List[ContentSource]:
        clean = self.clean_handle(handle)
        items = []
        for tweet in raw_items:
            text = _first_text(tweet, "text", "full_text", "tweetText")
            tweet_id = str(tweet.get("id") or tweet.get("tweetId") or "")
            url = _first_text(tweet, "url", "twitterUrl")
            if not url and tweet_id:
                url = f"https://x.com/{clean}/status/{tweet_id}"
            if not text or not url:
                continue

            likes = _first_number(tweet, "likeCount", "favorite_count", "likes")
            retweets = _first_number(tweet, "retweetCount", "retweet_count", "retweets")
            replies = _first_number(tweet, "replyCount", "reply_count", "replies")

            items.append(ContentSource(
                source_type=SourceType.TWITTER,
                url=url,
                title=_title_from_text(text),
                body=truncate(text, self.content_cap),
                published_at=parse_timestamp(
                    tweet.get("createdAt") or tweet.get("created_at") or tweet.get("tweetCreatedAt")
                ),
                engagement_score=twitter_engagement(likes, retweets, replies),
                extraction_method=ExtractionMethod.PRIMARY,
                metadata={
                    "id": tweet_id,
                    "engagement": {"likes": likes, "retweets": retweets, "replies": replies}
                }
            ))
        return items

class LinkedInSource(SocialSource):
    source_type = SourceType.LINKEDIN

    def __init__(self, actor_id: Optional[str] = None, top_n: Optional[int] = None,
                 max_posts: Optional[int] = None):
        self.actor_id = actor_id or settings.LINKEDIN_ACTOR_ID
        self.top_n = top_n or settings.LINKEDIN_TOP_N
        self.max_posts = max_posts or settings.LINKEDIN_MAX_POSTS
        self.max_wait = settings.LINKEDIN_MAX_WAIT
        self.estimated_duration = settings.LINKEDIN_ESTIMATED_DURATION
        self.content_cap = settings.SOCIAL_CONTENT_CAP

    @staticmethod
    def username_from_url(profile_url: str) -> Optional[str]:
        match = re.search(r'linkedin\.com/in/([^/?#]+)', profile_url)
        return match.group(1) if match else None

    def build_input(self, handle: str) -> Dict[str, Any]:
        username = self.username_from_url(handle)
        if not username:
            raise JobSubmitError(f"Invalid LinkedIn URL format: {handle}")
        return {
            "profileUrl": handle,
            "username": username,
            "maxPosts": self.max_posts,
            "sortBy": "recent",
            "proxy": {"useApifyProxy": True, "apifyProxyGroups": ["RESIDENTIAL"]}
        }

    @staticmethod
    def _flatten(raw_items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        posts = []
        for item in raw_items:
            nested = (item.get("data") or {}).get("posts") if isinstance(item.get("data"), dict) else None
            nested = nested or item.get("posts")
            if isinstance(nested, list):
                posts.extend(p for p in nested if isinstance(p, dict))
            else:
                posts.append(item)
        return posts

    @staticmethod
    def keep_post(post: Dict[str, Any]) -> bool:
        """Regular posts, plus reshares carrying real commentary"""
        post_type = post.get("post_type")
        if post_type == "quote":
            return len(post.get("text") or "") > 50
        return post_type == "regular"

    def normalize(self, raw_items: List[Dict[str, Any]], handle: str, creator_name: str) -> List[ContentSource]:
        items = []
        for post in self._flatten(raw_items):
            if not self.keep_post(post):
                continue
            text = (post.get("text") or "").strip()
            urn = post.get("urn") or post.get("full_urn")
            url = post.get("url") or (f"https://www.linkedin.com/feed/update/{urn}" if urn else "")
            if not text or not url:
                continue

            stats = post.get("stats") or {}
            reactions = _first_number(stats, "total_reactions")
            comments = _first_number(stats, "comments")
            reposts = _first_number(stats, "reposts")
            posted_at = post.get("posted_at") or {}
            if isinstance(posted_at, dict):
                posted_at = posted_at.get("timestamp") or posted_at.get("date")

            items.append(ContentSource(
                source_type=SourceType.LINKEDIN,
                url=url,
                title=_title_from_text(text),
                body=truncate(text, self.content_cap),
                published_at=parse_timestamp(posted_at),
                engagement_score=linkedin_engagement(reactions, comments, reposts),
                extraction_method=ExtractionMethod.PRIMARY,
                metadata={
                    "id": urn,
                    "post_type": post.get("post_type"),
                    "author": creator_name,
                    "engagement": {"reactions": reactions, "comments": comments, "reposts": reposts},
                    "has_media": bool(post.get("media")),
                    "has_article": bool(post.get("article"))
                }
            ))
        return items
