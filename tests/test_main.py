"""End-to-end runs of the collector against a mocked WakaTime API."""

import asyncio
import json
import os
import signal
from datetime import date

import httpx
import pytest

from rankcrawl.config import Settings
from rankcrawl.main import (
    EXIT_FATAL,
    EXIT_INTERRUPTED,
    EXIT_OK,
    EXIT_USAGE,
    build_cache_store,
    main,
    parse_args,
    run,
    run_dir,
    settings_from_args,
)
from rankcrawl.utils.cache import DiskCacheStore, MemoryCacheStore, RedisCacheStore

TODAY = date(2024, 5, 17)


def _settings(tmp_path, **overrides):
    values = {
        "wakatime_api_key": "secret",
        "wakatime_base_url": "https://api.test/api/v1",
        "data_dir": str(tmp_path),
        "flush_interval_seconds": 3600,
    }
    values.update(overrides)
    return Settings(**values)


def _api(leaderboard_page, details=None, leaders_status=200):
    details = details or {}

    def handler(request):
        path = request.url.path
        if path.endswith("/users/current"):
            return httpx.Response(200, json={"data": {"id": "me", "username": "me"}})
        if path.endswith("/leaders"):
            if leaders_status != 200:
                return httpx.Response(leaders_status)
            return httpx.Response(200, json=leaderboard_page(["alice", "bob"]))
        user_id = path.split("/")[-3]
        status = details.get(user_id, 200)
        return httpx.Response(status, json={"data": {"user": user_id}})

    return handler


def _checkpoint(tmp_path):
    path = run_dir(_settings(tmp_path), TODAY) / "users.json"
    return json.loads(path.read_text())["working_set"]


def test_parse_args_overrides_only_given_flags():
    base = Settings(wakatime_api_key="from-env", http_timeout=3.0)
    args = parse_args(["30", "-k", "cli-key", "--concurrency", "4"])
    settings = settings_from_args(args, base)

    assert settings.range_name == "last_30_days"
    assert settings.wakatime_api_key == "cli-key"
    assert settings.concurrency == 4
    assert settings.http_timeout == 3.0
    assert base.wakatime_api_key == "from-env"


def test_unknown_range_falls_back_to_seven_days():
    settings = settings_from_args(parse_args(["12"]), Settings())
    assert settings.range_name == "last_7_days"


def test_missing_api_key_exits(capsys):
    with pytest.raises(SystemExit) as info:
        main(["-k", ""])
    assert info.value.code == EXIT_USAGE
    assert "API key" in capsys.readouterr().err


def test_run_dir_is_dated(tmp_path):
    assert run_dir(_settings(tmp_path), TODAY) == tmp_path / ".cache-2024-05-17"


def test_build_cache_store(tmp_path):
    assert isinstance(build_cache_store(_settings(tmp_path), tmp_path), DiskCacheStore)
    assert isinstance(build_cache_store(_settings(tmp_path, cache_backend="memory"), tmp_path), MemoryCacheStore)
    assert isinstance(build_cache_store(_settings(tmp_path, cache_backend="redis"), tmp_path), RedisCacheStore)
    with pytest.raises(ValueError):
        build_cache_store(_settings(tmp_path, cache_backend="s3"), tmp_path)


@pytest.mark.asyncio
async def test_run_collects_and_writes_checkpoint(tmp_path, leaderboard_page):
    handler = _api(leaderboard_page, details={"alice": 404})
    code = await run(_settings(tmp_path), transport=httpx.MockTransport(handler), today=TODAY)

    assert code == EXIT_OK
    assert _checkpoint(tmp_path) == {"alice": False, "bob": True}
    assert json.loads((tmp_path / "allusers.json").read_text()) == ["alice", "bob"]
    cache_dir = run_dir(_settings(tmp_path), TODAY) / "last_7_days"
    assert any(cache_dir.iterdir())


@pytest.mark.asyncio
async def test_second_run_resumes_from_cache_and_checkpoint(tmp_path, leaderboard_page):
    calls = []
    inner = _api(leaderboard_page, details={"alice": 404})

    def handler(request):
        calls.append(request.url.path)
        return inner(request)

    transport = httpx.MockTransport(handler)
    assert await run(_settings(tmp_path), transport=transport, today=TODAY) == EXIT_OK
    first_run = len(calls)
    assert await run(_settings(tmp_path), transport=transport, today=TODAY) == EXIT_OK

    # only alice's 404 is asked again, the rest is served from disk or skipped
    assert calls[first_run:] == ["/api/v1/users/alice/stats/last_7_days"]


@pytest.mark.asyncio
async def test_discovery_failure_exits_fatal_and_saves(tmp_path, leaderboard_page):
    handler = _api(leaderboard_page, leaders_status=500)
    code = await run(_settings(tmp_path), transport=httpx.MockTransport(handler), today=TODAY)

    assert code == EXIT_FATAL
    assert _checkpoint(tmp_path) == {}


@pytest.mark.asyncio
async def test_corrupt_checkpoint_exits_fatal(tmp_path, leaderboard_page):
    path = run_dir(_settings(tmp_path), TODAY) / "users.json"
    path.parent.mkdir(parents=True)
    path.write_text("{broken")
    code = await run(_settings(tmp_path), transport=httpx.MockTransport(_api(leaderboard_page)), today=TODAY)
    assert code == EXIT_FATAL


@pytest.mark.asyncio
async def test_signal_saves_checkpoint_and_exits_interrupted(tmp_path, leaderboard_page):
    inner = _api(leaderboard_page)

    async def handler(request):
        if request.url.path.endswith("/users/bob/stats/last_7_days"):
            os.kill(os.getpid(), signal.SIGTERM)
            await asyncio.sleep(30)
        return inner(request)

    code = await run(_settings(tmp_path), transport=httpx.MockTransport(handler), today=TODAY)

    assert code == EXIT_INTERRUPTED
    assert _checkpoint(tmp_path) == {"alice": True, "bob": False}
