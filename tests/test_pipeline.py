"""Tests for the ingestion orchestrator, failed-source registry, logging and CLI."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List

import pytest
import yaml
from click.testing import CliRunner

from digestcore.observability.logging import JsonFormatter
from digestcore.observability.metrics import RSS_FETCH, InMemoryMetrics
from digestcore.pipeline.orchestrator import (
    FailedSourceRegistry,
    IngestOrchestrator,
    _parse_datetime,
)
from digestcore.storage.db import DatabaseManager
from digestcore.storage.models import Source


# --- Fixtures ---

@pytest.fixture
async def db(tmp_path):
    manager = DatabaseManager(str(tmp_path / "test.db"))
    await manager.initialize()
    yield manager
    await manager.close()


@pytest.fixture
def metrics():
    return InMemoryMetrics()


@pytest.fixture
def registry():
    return FailedSourceRegistry()


def make_raw_items(count: int = 5) -> List[Dict[str, Any]]:
    """Create raw item dicts as a connector would return, newest first."""
    return [
        {
            "url": f"https://example.com/article-{i}",
            "title": f"Test Article {i}",
            "content": f"<p>Content for article {i} about feeds.</p>",
            "published_at": f"2026-03-0{9 - i}T10:00:00Z",
        }
        for i in range(count)
    ]


async def add_source(db, name: str, channel_id: str = "general", enabled: bool = True) -> Source:
    source = Source.create(channel_id, name, f"https://{name.lower()}.example.com/feed.xml")
    source.enabled = enabled
    await db.upsert_source(source)
    return source


class MockConnector:
    """Mock connector that returns pre-configured items."""

    def __init__(self, items: List[Dict[str, Any]]):
        self._items = items
        self.fetched: List[str] = []

    async def fetch(self, source: Source) -> List[Dict[str, Any]]:
        self.fetched.append(source.name)
        return self._items


class FailingConnector:
    """Mock connector that raises for the named sources only."""

    def __init__(self, failing=("Broken",), items=None):
        self.failing = set(failing)
        self.items = items or make_raw_items(2)

    async def fetch(self, source: Source) -> List[Dict[str, Any]]:
        if source.name in self.failing:
            raise ConnectionError("Simulated network failure")
        return self.items


class SlowConnector:
    async def fetch(self, source: Source) -> List[Dict[str, Any]]:
        await asyncio.sleep(5)
        return []


# --- Registry Tests ---

class TestFailedSourceRegistry:
    def test_record_and_clear(self):
        registry = FailedSourceRegistry()
        a = Source.create("general", "A", "https://a.com/feed")
        b = Source.create("other", "B", "https://b.com/feed")

        info = registry.record(a, "HTTP 500")
        registry.record(b, "timeout")

        assert info.name == "A"
        assert registry.for_channel("general") == [info]
        assert len(registry) == 2

        registry.clear(a.id)
        assert registry.for_channel("general") == []
        registry.clear("unknown")
        assert len(registry) == 1

    def test_latest_failure_wins(self):
        registry = FailedSourceRegistry()
        a = Source.create("general", "A", "https://a.com/feed")
        registry.record(a, "first")
        registry.record(a, "second")
        assert [f.reason for f in registry.for_channel("general")] == ["second"]


# --- Orchestrator Tests ---

class TestIngestOrchestrator:
    @pytest.mark.asyncio
    async def test_new_sources_capped(self, db, metrics):
        await add_source(db, "A")
        await add_source(db, "B")
        connector = MockConnector(make_raw_items(5))

        summary = await IngestOrchestrator(db, connector, metrics).ingest_channel("general")

        assert summary.total_fetched == 10
        assert summary.total_inserted == 6
        assert summary.total_errors == 0
        assert await db.count_items() == 6

    @pytest.mark.asyncio
    async def test_known_source_gets_everything_and_dedups(self, db, metrics):
        source = await add_source(db, "A")
        raw = make_raw_items(5)
        orchestrator = IngestOrchestrator(db, MockConnector(raw), metrics)

        first = await orchestrator.ingest_channel("general")
        assert first.total_inserted == 3
        assert (await db.get_source(source.id)).last_fetched_at is not None

        second = await orchestrator.ingest_channel("general")
        assert second.total_inserted == 2
        assert second.total_duplicates == 3

    @pytest.mark.asyncio
    async def test_disabled_and_other_channel_sources_skipped(self, db):
        await add_source(db, "A")
        await add_source(db, "Off", enabled=False)
        await add_source(db, "Elsewhere", channel_id="other")
        connector = MockConnector(make_raw_items(1))

        await IngestOrchestrator(db, connector).ingest_channel("general")

        assert connector.fetched == ["A"]

    @pytest.mark.asyncio
    async def test_empty_channel(self, db):
        summary = await IngestOrchestrator(db, MockConnector([])).ingest_channel("general")
        assert summary.results == []

    @pytest.mark.asyncio
    async def test_failure_isolated_and_registered(self, db, metrics, registry):
        good = await add_source(db, "Good")
        broken = await add_source(db, "Broken")
        orchestrator = IngestOrchestrator(db, FailingConnector(), metrics, registry)

        summary = await orchestrator.ingest_channel("general")

        assert summary.total_errors == 1
        assert summary.total_inserted == 2
        by_source = {r.source_id: r for r in summary.results}
        assert by_source[broken.id].error_message == "Simulated network failure"
        assert by_source[good.id].success

        [failed] = registry.for_channel("general")
        assert (failed.source_id, failed.reason) == (broken.id, "Simulated network failure")
        assert (await db.get_source(broken.id)).last_fetched_at is None

        statuses = {m.operation: (m.status, m.metadata) for m in metrics.of_type(RSS_FETCH)}
        assert statuses[good.id] == ("success", {"itemCount": 2, "sourceUrl": good.url})
        assert statuses[broken.id][0] == "failure"
        assert statuses[broken.id][1]["error"] == "Simulated network failure"

    @pytest.mark.asyncio
    async def test_success_clears_registry(self, db, registry):
        source = await add_source(db, "Broken")
        await IngestOrchestrator(db, FailingConnector(), failed_sources=registry).ingest_channel("general")
        assert len(registry) == 1

        await IngestOrchestrator(db, FailingConnector(failing=()), failed_sources=registry).ingest_channel("general")
        assert registry.for_channel(source.channel_id) == []

    @pytest.mark.asyncio
    async def test_fetch_timeout(self, db, registry):
        await add_source(db, "Slow")
        orchestrator = IngestOrchestrator(db, SlowConnector(), failed_sources=registry, request_timeout=0.05)

        summary = await orchestrator.ingest_channel("general")

        assert summary.total_errors == 1
        assert "timed out" in summary.results[0].error_message
        assert "timed out" in registry.for_channel("general")[0].reason

    def test_from_config(self, tmp_path):
        orchestrator = IngestOrchestrator.from_config(
            {"ingest": {"max_concurrent": 2, "request_timeout": 7, "new_source_max_items": 10}},
            db=None,
            connector=MockConnector([]),
        )
        assert orchestrator.max_concurrent == 2
        assert orchestrator.request_timeout == 7.0
        assert orchestrator.new_source_max_items == 10

        defaults = IngestOrchestrator.from_config({}, db=None, connector=MockConnector([]))
        assert defaults.new_source_max_items == 3


# --- Normalization Tests ---

class TestNormalization:
    def _orchestrator(self):
        return IngestOrchestrator(db=None, connector=MockConnector([]))

    def test_normalize_items(self):
        source = Source.create("general", "Test", "https://example.com/feed")
        raw = [
            {
                "url": "https://www.example.com/article/?utm_medium=rss",
                "title": "  Test\n Title ",
                "content": "<p>Hello <b>world</b></p>",
                "published_at": "2025-01-15T10:00:00Z",
            }
        ]

        [item] = self._orchestrator()._normalize_items(raw, source)

        assert item.url == "https://www.example.com/article"
        assert item.title == "Test Title"
        assert item.content_snippet == "Hello world"
        assert item.published_at == datetime(2025, 1, 15, 10, tzinfo=timezone.utc)
        assert item.source_id == source.id

    def test_normalize_skips_empty_urls_and_defaults_title(self):
        source = Source.create("general", "Test", "https://example.com/feed")
        raw = [{"url": "", "title": "No URL"}, {"url": "https://example.com/a", "title": ""}]

        items = self._orchestrator()._normalize_items(raw, source)

        assert len(items) == 1
        assert items[0].title == "Untitled"
        assert items[0].content_snippet is None

    def test_parse_datetime(self):
        assert _parse_datetime(None) is None
        assert _parse_datetime("not a date") is None
        assert _parse_datetime("Sun, 01 Mar 2026 12:00:00 +0000") == datetime(2026, 3, 1, 12, tzinfo=timezone.utc)


# --- Logging Tests ---

class TestJsonLogging:
    def test_json_formatter_includes_extra_fields(self):
        record = logging.LogRecord("digestcore.test", logging.WARNING, __file__, 1, "Fetched %d items", (3,), None)
        record.channel_id = "general"

        payload = json.loads(JsonFormatter().format(record))

        assert payload["level"] == "warning"
        assert payload["service"] == "digestcore"
        assert payload["message"] == "Fetched 3 items"
        assert payload["channel_id"] == "general"


# --- CLI Tests ---

class TestCLI:
    def _invoke(self, tmp_path, *args, config=None):
        from digestcore.pipeline.cli import cli

        config_path = tmp_path / "config.yaml"
        if config is not None:
            config_path.write_text(yaml.dump(config))
        return CliRunner().invoke(
            cli, ["--db", str(tmp_path / "digest.db"), "--config", str(config_path), *args]
        )

    def test_cli_group_exists(self):
        from digestcore.pipeline.cli import cli, main

        assert main is not None
        assert {"init", "add-source", "ingest", "digest", "status", "set-quota"} <= set(cli.commands)

    def test_init_and_add_source(self, tmp_path):
        assert self._invoke(tmp_path, "init").exit_code == 0

        result = self._invoke(tmp_path, "add-source", "general", "Example", "https://example.com/feed.xml")
        assert result.exit_code == 0, result.output

        conn = sqlite3.connect(str(tmp_path / "digest.db"))
        rows = conn.execute("SELECT channel_id, name, url, enabled FROM sources").fetchall()
        conn.close()
        assert rows == [("general", "Example", "https://example.com/feed.xml", 1)]

    def test_set_quota(self, tmp_path):
        result = self._invoke(tmp_path, "set-quota", "team-a", "200")
        assert result.exit_code == 0, result.output
        assert "0/200 used" in result.output

    def test_digest_with_no_items(self, tmp_path):
        self._invoke(tmp_path, "add-source", "general", "Example", "https://example.com/feed.xml")

        result = self._invoke(
            tmp_path, "digest", "--channel", "general", "--hours", "24", "--json",
            config={"digest": {"timezone": "UTC"}},
        )

        assert result.exit_code == 0, result.output
        assert '"channel_id": "general"' in result.output
        assert "No new items today." in result.output
        assert '"fallback_reason": "llm-disabled"' in result.output

    def test_status(self, tmp_path):
        self._invoke(tmp_path, "add-source", "general", "Example", "https://example.com/feed.xml")
        result = self._invoke(tmp_path, "status")
        assert result.exit_code == 0, result.output
        assert "Sources: 1" in result.output
