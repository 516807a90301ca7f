"""Resolve the original article text for a content item, fetching on cache miss."""

from artive.models.rewrite import OriginalSource, ResolvedSource
from artive.services.article_fetcher import ArticleFetchError, ArticleFetcher, is_wechat_article_url
from artive.services.exceptions import SourceUnavailable, UnsupportedSource
from artive.services.task_store import TaskStore
from artive.utils.html import clean_article_html
from artive.utils.logging import get_logger


logger = get_logger(__name__)


class SourceResolver:
    """
    Look up the cached original for a content item, or fetch and cache it.

    A cached original is authoritative and never refreshed. Only WeChat
    article URLs are fetched; the URL check happens before any network call.
    """

    def __init__(self, store: TaskStore, fetcher: ArticleFetcher):
        self.store = store
        self.fetcher = fetcher

    async def resolve(self, content_id: str, url: str | None) -> ResolvedSource:
        """
        Return the original title and sanitized HTML for a content item.

        Args:
            content_id: Content item identifier (cache key)
            url: Article URL used on cache miss

        Returns:
            ResolvedSource (from_cache tells whether the fetcher was skipped)

        Raises:
            UnsupportedSource: Cache miss and the URL is missing or not a WeChat article
            SourceUnavailable: The article API failed
        """
        cached = await self.store.get_original(content_id)
        if cached is not None:
            logger.info("source_cache_hit", content_id=content_id)
            return ResolvedSource(title=cached.title, html=cached.html, from_cache=True)

        if not is_wechat_article_url(url):
            logger.warning("source_url_unsupported", content_id=content_id, url=url)
            raise UnsupportedSource(url)

        logger.info("source_cache_miss", content_id=content_id, url=url)

        try:
            article = await self.fetcher.fetch(url)
        except ArticleFetchError as e:
            raise SourceUnavailable(url, str(e)) from e

        html = clean_article_html(article.html)

        inserted = await self.store.insert_original(
            OriginalSource(
                content_id=content_id,
                title=article.title,
                html=html,
                author=article.author,
                source_url=url,
            )
        )
        logger.info("source_cached", content_id=content_id, inserted=inserted)

        return ResolvedSource(title=article.title, html=html, from_cache=False)
