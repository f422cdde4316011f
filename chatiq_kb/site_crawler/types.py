from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_MAX_DEPTH = 3
DEFAULT_DELAY_MS = 300
DEFAULT_TIMEOUT_MS = 15000
DEFAULT_MAX_PAGES = 200


class UrlNode(BaseModel):
    url: str
    title: Optional[str] = None
    description: Optional[str] = None
    children: List["UrlNode"] = []

    def walk(self):
        """Yield this node and every descendant, depth first."""
        yield self
        for child in self.children:
            yield from child.walk()


class RobotsRules(BaseModel):
    disallow: List[str] = []


class PageMetadata(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None


class FetchResult(BaseModel):
    url: str
    status: int
    content_type: str = ""
    text: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def is_html(self) -> bool:
        return "text/html" in self.content_type.lower()


class CrawlOptions(BaseModel):
    base_url: str
    max_depth: int = Field(DEFAULT_MAX_DEPTH, ge=0)
    allow_path_prefix: Optional[str] = None
    use_sitemap: bool = True
    delay_ms: int = Field(DEFAULT_DELAY_MS, ge=0)
    timeout_ms: int = Field(DEFAULT_TIMEOUT_MS, gt=0)
    max_pages: int = Field(DEFAULT_MAX_PAGES, ge=1)


class CrawlResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    root: UrlNode
    total: int
    errors: List[str] = []
    cancelled: bool = False
