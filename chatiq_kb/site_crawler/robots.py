import logging
from typing import Tuple

from chatiq_kb.errors import FetchError
from chatiq_kb.site_crawler.fetch import ROBOTS_AGENT_TOKEN
from chatiq_kb.site_crawler.types import RobotsRules

logger = logging.getLogger(__name__)


def parse_robots_txt(body: str, user_agent: str = ROBOTS_AGENT_TOKEN) -> RobotsRules:
    """Collect Disallow rules from the `*` group and the group for our own agent token."""
    agent = user_agent.lower()
    active_agent = None
    disallow = []

    for line in body.splitlines():
        trimmed = line.split("#", 1)[0].strip()
        if not trimmed or ":" not in trimmed:
            continue
        raw_key, _, raw_value = trimmed.partition(":")
        key = raw_key.strip().lower()
        value = raw_value.strip()

        if key == "user-agent":
            active_agent = value.lower()
            continue

        if key == "disallow" and active_agent in ("*", agent):
            # an empty Disallow allows everything
            if value:
                disallow.append(value)

    return RobotsRules(disallow=disallow)


def is_path_blocked(path: str, rules: RobotsRules) -> bool:
    for pattern in rules.disallow:
        if pattern == "/":
            return True
        if pattern and path.startswith(pattern):
            return True
    return False


async def fetch_robots_rules(fetcher, origin: str) -> Tuple[RobotsRules, bool]:
    """
    Fetch and parse {origin}/robots.txt.

    Returns:
        (rules, ok). When ok is False the rules are empty and the caller
        decides whether an unrestricted crawl is acceptable.
    """
    robots_url = f"{origin}/robots.txt"
    try:
        result = await fetcher.fetch(robots_url, html_only=False)
    except FetchError as e:
        logger.warning(f"Could not read robots.txt: {e.reason}")
        return RobotsRules(), False

    if not result.ok or result.text is None:
        logger.info(f"No robots.txt at {robots_url} (HTTP {result.status})")
        return RobotsRules(), False

    rules = parse_robots_txt(result.text)
    logger.info(f"Successfully read robots.txt: {len(rules.disallow)} disallow rules")
    return rules, True
