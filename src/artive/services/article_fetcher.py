"""Client for the WeChat article API (fetches original article HTML by URL)."""

from urllib.parse import urlparse

import httpx
from pydantic import ValidationError

from artive.models.config import FetcherConfig
from artive.models.rewrite import FetchedArticle
from artive.utils.logging import get_logger


logger = get_logger(__name__)

WECHAT_ARTICLE_HOST = "mp.weixin.qq.com"

_SUCCESS_CODES = (0, 200)


def is_wechat_article_url(url: str | None) -> bool:
    """
    Check whether a URL points at a WeChat official-account article.

    Accepted shapes are https://mp.weixin.qq.com/s/xxxx and
    https://mp.weixin.qq.com/s?__biz=xxxx; anything else (other hosts,
    other paths, malformed URLs) is rejected.

    Example:
        >>> is_wechat_article_url("https://mp.weixin.qq.com/s/abc")
        True
        >>> is_wechat_article_url("https://example.com/s/abc")
        False
    """
    if not url:
        return False
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.hostname == WECHAT_ARTICLE_HOST and parsed.path.startswith("/s")


class ArticleFetchError(Exception):
    """Raised when the article API cannot return an article."""


class ArticleFetcher:
    """
    Fetch article HTML through the article API.

    The API takes {key, url, verifycode} as JSON and answers with
    {code, msk, data: {...article fields...}}; a code of 0 or 200 means success.
    """

    def __init__(self, config: FetcherConfig):
        """
        Initialize article fetcher.

        Args:
            config: Article API configuration (endpoint, key, verify code)
        """
        self.config = config
        self.timeout = httpx.Timeout(config.timeout, connect=10.0)

    async def fetch(self, url: str) -> FetchedArticle:
        """
        Fetch one article.

        Args:
            url: WeChat article URL

        Returns:
            Article title, HTML and metadata

        Raises:
            ArticleFetchError: Missing API key, HTTP failure, non-success API code
                or malformed response body
        """
        if not self.config.api_key:
            raise ArticleFetchError("article API key not configured")

        payload = {
            "key": self.config.api_key,
            "url": url,
            "verifycode": self.config.verify_code or "",
        }

        logger.info("article_fetch_started", url=url, endpoint=str(self.config.endpoint))

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    str(self.config.endpoint),
                    json=payload,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            logger.error("article_fetch_transport_error", url=url, error=str(e))
            raise ArticleFetchError(f"request failed: {e}") from e

        if response.status_code < 200 or response.status_code >= 300:
            logger.error("article_fetch_http_error", url=url, status_code=response.status_code)
            raise ArticleFetchError(f"获取文章失败: {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            logger.error("article_fetch_invalid_json", url=url, error=str(e))
            raise ArticleFetchError("article API returned invalid JSON") from e

        code = body.get("code") if isinstance(body, dict) else None
        if code not in _SUCCESS_CODES:
            message = body.get("msk") if isinstance(body, dict) else None
            logger.error("article_fetch_api_error", url=url, code=code, message=message)
            raise ArticleFetchError(message or "获取文章内容失败")

        data = body.get("data")
        if not isinstance(data, dict):
            raise ArticleFetchError("article API response has no data")

        try:
            article = FetchedArticle.model_validate(data)
        except ValidationError as e:
            logger.error("article_fetch_invalid_data", url=url, error=str(e))
            raise ArticleFetchError("article API returned malformed article data") from e

        logger.info(
            "article_fetch_completed",
            url=url,
            title=article.title,
            html_length=len(article.html),
        )
        return article
