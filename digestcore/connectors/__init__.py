"""Feed connector and article text fetcher."""

from digestcore.connectors.content_fetcher import ArticleFetcher
from digestcore.connectors.rss import RSSConnector

__all__ = ["ArticleFetcher", "RSSConnector"]
