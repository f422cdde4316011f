from chatiq_kb.site_crawler.crawl import CrawlSession, discover_urls
from chatiq_kb.site_crawler.fetch import USER_AGENT, PageFetcher
from chatiq_kb.site_crawler.types import CrawlOptions, CrawlResult, RobotsRules, UrlNode

__all__ = [
    "CrawlOptions",
    "CrawlResult",
    "CrawlSession",
    "PageFetcher",
    "RobotsRules",
    "USER_AGENT",
    "UrlNode",
    "discover_urls",
]
