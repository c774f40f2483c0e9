"""Feed collaborator — fetch a podcast/RSS feed and pull out its enclosures."""
import logging
import xml.etree.ElementTree as ET
from typing import Optional

import httpx

from .config import FEED_TIMEOUT
from .errors import FeedUnavailable
from .models import FeedEntry

logger = logging.getLogger(__name__)


async def fetch_feed(url: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> list[FeedEntry]:
    """Single attempt: the caller decides whether to retry."""
    try:
        async with httpx.AsyncClient(timeout=FEED_TIMEOUT, transport=transport, follow_redirects=True) as client:
            r = await client.get(url)
    except httpx.HTTPError as e:
        raise FeedUnavailable(f"Fetching {url} failed: {e}") from e

    if r.status_code != 200:
        raise FeedUnavailable(f"Fetching {url} failed: HTTP {r.status_code}")

    entries = parse_feed(r.text)
    logger.info("Feed %s: %d playable item(s)", url, len(entries))
    return entries


def parse_feed(xml_text: str) -> list[FeedEntry]:
    """Items with an <enclosure url> become entries; the rest are skipped."""
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise FeedUnavailable(f"Feed is not valid XML: {e}") from e

    entries = []
    for item in root.iter("item"):
        enclosure = item.find("enclosure")
        url = enclosure.get("url", "").strip() if enclosure is not None else ""
        if not url:
            continue
        title = (item.findtext("title") or "").strip() or "Unknown Track"
        entries.append(FeedEntry(name=title, remote_url=url))
    return entries
