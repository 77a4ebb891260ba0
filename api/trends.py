"""
Trending example prompts for the workflow builder.

Pulls the current Google Trends RSS feed and turns trending searches into
"Study brain activity related to ..." prompts, mixed with a fixed list of
neuroscience examples. Any failure falls back to the fixed list.
"""

from __future__ import annotations

import random
import re
from datetime import datetime, timezone
from typing import Any

import httpx
from fastapi import APIRouter

from api.shared.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["trends"])

TRENDS_RSS_URL = "https://trends.google.com/trending/rss?geo=US"
USER_AGENT = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36"
REQUEST_TIMEOUT = 10.0
MAX_TREND_TITLES = 10
FALLBACK_MIX = 5
MAX_EXAMPLES = 15

NEURO_FALLBACKS = [
    "Analyze fMRI data for Alzheimer's detection",
    "Study hippocampus activity during memory tasks",
    "Compare EEG patterns in meditation vs rest",
    "Detect early signs of Parkinson's from brain scans",
    "Analyze prefrontal cortex in ADHD patients",
    "Study amygdala response to emotional stimuli",
    "Map neural pathways in autism spectrum disorder",
    "Analyze brain connectivity in depression",
    "Study motor cortex in stroke rehabilitation",
    "Detect TBI patterns from CT scans",
    "Analyze sleep stage transitions from EEG",
    "Study visual cortex response to stimuli",
    "Compare brain activity in bilingual speakers",
    "Analyze neural markers of anxiety disorders",
    "Study brain plasticity in learning tasks",
]

_CDATA_TITLE_RE = re.compile(r"<title><!\[CDATA\[(.*?)\]\]></title>")
_PLAIN_TITLE_RE = re.compile(r"<title>([^<]+)</title>")


def parse_trend_titles(xml_text: str, limit: int = MAX_TREND_TITLES) -> list[str]:
    """Item titles from an RSS document, without the channel title."""
    for pattern in (_CDATA_TITLE_RE, _PLAIN_TITLE_RE):
        matches = pattern.findall(xml_text)
        if len(matches) > 1:
            titles = [t.strip() for t in matches[1 : limit + 1] if t.strip()]
            if titles:
                return titles
    return []


def trend_prompt(title: str) -> str:
    return f"Study brain activity related to {title}"


def _shuffled(items: list[str]) -> list[str]:
    items = list(items)
    random.shuffle(items)
    return items


async def fetch_trend_titles(debug: dict[str, Any]) -> list[str]:
    """Fetch the trends feed and return its item titles.

    Records the attempt in ``debug``; raises on transport errors.
    """
    async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
        response = await client.get(TRENDS_RSS_URL, headers={"User-Agent": USER_AGENT})

    debug["attempts"].append(
        {
            "source": "google-trends",
            "url": TRENDS_RSS_URL,
            "status": response.status_code,
            "ok": response.is_success,
        }
    )
    if not response.is_success:
        return []

    titles = parse_trend_titles(response.text)
    debug["trendsFound"] = len(titles)
    return titles


@router.get("/trends")
async def get_trends():
    """Example prompts built from current trends."""
    debug: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "attempts": [],
    }

    try:
        titles = await fetch_trend_titles(debug)
        if not titles:
            raise RuntimeError("All external sources failed")
    except (httpx.HTTPError, RuntimeError) as e:
        debug["error"] = str(e)
        logger.info("Using fallback trend examples: %s", e)
        return {
            "examples": _shuffled(NEURO_FALLBACKS),
            "source": "fallback",
            "debug": debug,
        }

    mixed = [trend_prompt(t) for t in titles] + NEURO_FALLBACKS[:FALLBACK_MIX]
    return {
        "examples": _shuffled(mixed)[:MAX_EXAMPLES],
        "source": "google-trends",
        "debug": debug,
    }
