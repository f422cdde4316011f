class ChatIQError(Exception):
    """Base class for errors raised by chatiq_kb."""


class CrawlError(ChatIQError):
    """A crawl could not be started."""


class InvalidBaseUrlError(CrawlError, ValueError):
    pass


class BlockedHostError(CrawlError):
    pass


class FetchError(ChatIQError):
    """A single page could not be fetched or read."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


class RetrievalError(ChatIQError):
    pass


class EmbeddingError(RetrievalError):
    """The query could not be embedded, so nothing can be retrieved for it."""
