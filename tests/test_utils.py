"""Tests for the shared helpers and the health-check server."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

import pytest
import requests

from cloudbot import web_server
from cloudbot.utils import as_utc, display_name, escape_html, fire_and_forget, format_file_size


class TestFormatting:
    def test_escape_html(self) -> None:
        assert escape_html('<b>"A&B"</b>') == "&lt;b&gt;&quot;A&amp;B&quot;&lt;/b&gt;"
        assert escape_html(None) == ""
        assert escape_html(42) == "42"

    @pytest.mark.parametrize(
        "size, expected",
        [(None, "0 B"), (0, "0 B"), (512, "512 B"), (1536, "1.5 KB"), (5 * 1024 ** 3, "5.0 GB")],
    )
    def test_file_size(self, size, expected) -> None:
        assert format_file_size(size) == expected

    def test_display_name(self) -> None:
        assert display_name({"first_name": "Ann", "last_name": "Lee"}) == "Ann Lee"
        assert display_name({"username": "ann"}) == "@ann"
        assert display_name({"user_id": 7}) == "7"
        assert display_name(None) == "Unknown"

    def test_as_utc(self) -> None:
        naive = datetime(2026, 1, 1, 12, 0)
        assert as_utc(naive).tzinfo is timezone.utc
        aware = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert as_utc(aware) is aware


class TestFireAndForget:
    @pytest.mark.asyncio
    async def test_runs_in_background(self) -> None:
        done = []

        async def work():
            done.append(True)

        await fire_and_forget(work())
        assert done == [True]

    @pytest.mark.asyncio
    async def test_failure_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        async def boom():
            raise RuntimeError("lost connection")

        with caplog.at_level(logging.WARNING):
            task = fire_and_forget(boom(), "touch_user 7")
            await asyncio.wait([task])

        assert "touch_user 7 failed: lost connection" in caplog.text


class TestWebServer:
    def test_routes(self) -> None:
        http = web_server.app.test_client()
        assert http.get("/").status_code == 200
        assert http.get("/hello").data == b"hello"

    def test_ping_once(self, monkeypatch: pytest.MonkeyPatch) -> None:
        urls = []
        monkeypatch.setattr(web_server.requests, "get", lambda url, timeout: urls.append(url))

        assert web_server.ping_once("https://bot.example.com/") is True
        assert urls == ["https://bot.example.com/hello"]

    def test_ping_failure(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def refuse(url, timeout):
            raise requests.ConnectionError("refused")

        monkeypatch.setattr(web_server.requests, "get", refuse)
        assert web_server.ping_once("https://bot.example.com") is False
