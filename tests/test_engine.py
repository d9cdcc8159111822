from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from laminar.config import EngineConfig
from laminar.engine import (
    EngineJobState,
    RcloneClient,
    bind_account,
    classify_error_text,
    escape_glob,
    parse_job_status,
    path_filter,
)
from laminar.errors import EngineError, ErrorKind


def build_client(handler) -> RcloneClient:
    transport = httpx.MockTransport(handler)
    client = httpx.Client(base_url="http://rclone.test", transport=transport)
    return RcloneClient(EngineConfig(url="http://rclone.test"), client=client)


def test_start_async_copy_sends_config_and_returns_job_id():
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"jobid": 42})

    with build_client(handler) as engine:
        job_id = engine.start_async_copy("src:", "dst:", {"_config": {"Transfers": 4}, "laminar": {"lane": "express"}})
    assert job_id == "42"
    assert seen["path"] == "/sync/copy"
    assert seen["body"] == {"srcFs": "src:", "dstFs": "dst:", "_async": True, "_config": {"Transfers": 4}}


def test_list_files_and_remotes():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/config/listremotes":
            return httpx.Response(200, json={"remotes": ["gdrive", "onedrive"]})
        body = json.loads(request.content)
        assert body["opt"]["recurse"] is True
        return httpx.Response(200, json={"list": [{"Path": "a.txt", "Name": "a.txt", "Size": 1, "IsDir": False}]})

    engine = build_client(handler)
    assert engine.list_remotes() == ["gdrive", "onedrive"]
    assert engine.list_files("gdrive:")[0]["Path"] == "a.txt"


def test_get_job_status_combines_status_and_stats():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/job/status":
            return httpx.Response(200, json={"finished": False, "success": False})
        return httpx.Response(200, json={"bytes": 50, "totalBytes": 200, "speed": 12.5, "eta": 3})

    status = build_client(handler).get_job_status("7")
    assert status.status is EngineJobState.RUNNING
    assert status.percentage == 25.0
    assert status.speed == 12.5
    assert status.eta == 3.0
    assert not status.finished


@pytest.mark.parametrize(
    "response,kind",
    [
        (httpx.Response(404, json={"error": "job not found"}), ErrorKind.NOT_FOUND),
        (httpx.Response(429, text="slow down"), ErrorKind.RATE_LIMITED),
        (httpx.Response(500, json={"error": "googleapi: userRateLimitExceeded"}), ErrorKind.RATE_LIMITED),
        (httpx.Response(500, json={"error": "boom"}), ErrorKind.ENGINE_ERROR),
    ],
)
def test_http_errors_map_to_kinds(response, kind):
    engine = build_client(lambda request: response)
    with pytest.raises(EngineError) as excinfo:
        engine.stop_job("1")
    assert excinfo.value.kind is kind


def test_transport_errors_map_to_kinds():
    def timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    def refused(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(EngineError) as excinfo:
        build_client(timeout).set_bandwidth_limit("0")
    assert excinfo.value.kind is ErrorKind.CONNECTION_TIMEOUT
    with pytest.raises(EngineError) as excinfo:
        build_client(refused).list_remotes()
    assert excinfo.value.kind is ErrorKind.CONNECTION_REFUSED


def test_missing_job_id_is_an_engine_error():
    engine = build_client(lambda request: httpx.Response(200, json={}))
    with pytest.raises(EngineError):
        engine.start_async_copy("a:", "b:", {})


def test_parse_job_status_terminal_states():
    done = parse_job_status("1", {"finished": True, "success": True}, {"bytes": 10, "totalBytes": 20})
    assert done.status is EngineJobState.FINISHED
    assert done.percentage == 100.0
    failed = parse_job_status("1", {"finished": True, "success": False, "error": "timeout"})
    assert failed.status is EngineJobState.FAILED
    assert failed.error == "timeout"
    assert failed.eta is None


def test_classify_error_text():
    assert classify_error_text("i/o timeout") is ErrorKind.CONNECTION_TIMEOUT
    assert classify_error_text("directory not found") is ErrorKind.NOT_FOUND
    assert classify_error_text("dial tcp: connection refused") is ErrorKind.CONNECTION_REFUSED
    assert classify_error_text(None) is ErrorKind.ENGINE_ERROR


def test_bind_account_rewrites_remote():
    assert bind_account("gdrive:backup/2024", Path("/keys/sa.json")) == (
        'gdrive,service_account_file="/keys/sa.json":backup/2024'
    )
    assert bind_account("gdrive:backup", None) == "gdrive:backup"
    assert bind_account("/local/path", Path("/keys/sa.json")) == "/local/path"


def test_path_filter_escapes_glob_characters():
    assert escape_glob("a*b?c") == "a\\*b\\?c"
    assert path_filter(["music/[live] song?.wav", "/docs/{draft}.txt"]) == {
        "IncludeRule": ["/music/\\[live\\] song\\?.wav", "/docs/\\{draft\\}.txt"],
        "ExcludeRule": ["**"],
    }
