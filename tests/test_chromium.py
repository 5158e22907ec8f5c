import asyncio
import base64
import json
from datetime import datetime, timezone

import pytest

from turnproxy.chromium import (
    MAX_POST_DATA_SIZE,
    ChromiumSession,
    DevToolsError,
    decode_observed_body,
    new_chromium_session,
)
from turnproxy.stages import BrowserStageObservation, BrowserStageRequest

SESSION = "session-1"
TOKEN_URL = "https://api.vk.ru/method/calls.getAnonymousToken?v=5.275&client_id=6287487"
TOKEN_PREFIX = "https://api.vk.ru/method/calls.getAnonymousToken"


class FakeConnection:
    def __init__(self, handlers=None):
        self.handlers = handlers or {}
        self.calls = []
        self.listeners = []
        self.closed = 0

    async def call(self, method, params=None, session_id=None):
        params = params or {}
        self.calls.append((method, params, session_id))
        handler = self.handlers.get(method, {})
        result = handler(params) if callable(handler) else handler
        if isinstance(result, BaseException):
            raise result
        return result

    def add_listener(self, listener):
        self.listeners.append(listener)

    def remove_listener(self, listener):
        self.listeners.remove(listener)

    async def close(self):
        self.closed += 1

    def emit(self, method, params, session_id=SESSION):
        for listener in list(self.listeners):
            listener(method, params, session_id)

    def methods(self):
        return [call[0] for call in self.calls]


def make_session(conn, **kwargs):
    kwargs.setdefault("settle_delay", 0.05)
    return ChromiumSession(conn, SESSION, "target-1", **kwargs)


def token_observation():
    return BrowserStageObservation(
        stage="vk_calls_get_anonymous_token", method="POST", url_prefix=TOKEN_PREFIX
    )


def request_event(request_id, url, form=b"name=123&access_token=token"):
    return {
        "requestId": request_id,
        "request": {
            "method": "POST",
            "url": url,
            "hasPostData": True,
            "postDataEntries": [{"bytes": base64.b64encode(form).decode()}],
        },
    }


async def observe(session, observations, script):
    confirmed = asyncio.Event()
    ready = asyncio.Event()
    task = asyncio.ensure_future(session.observe_stage_results(observations, confirmed, ready))
    await asyncio.wait_for(ready.wait(), 5)
    script()
    await asyncio.sleep(0.01)
    confirmed.set()
    return await asyncio.wait_for(task, 5)


def test_decode_observed_body_plain_json():
    assert decode_observed_body(b'{"response": {"token": "token"}}') == {
        "response": {"token": "token"}
    }


def test_decode_observed_body_base64_json():
    encoded = base64.b64encode(b'{"ok": true}')
    assert decode_observed_body(encoded) == {"ok": True}


def test_decode_observed_body_null_is_none():
    assert decode_observed_body("null") is None


def test_decode_observed_body_rejects_bad_base64():
    with pytest.raises(ValueError, match="decode browser-observed stage response"):
        decode_observed_body(b"not json at all!")


@pytest.mark.parametrize("body", [b"", b"[1, 2]", base64.b64encode(b"plain text")])
def test_decode_observed_body_rejects_non_object(body):
    with pytest.raises(ValueError, match="decode browser-observed stage payload"):
        decode_observed_body(body)


@pytest.mark.asyncio
async def test_open_enables_network_and_navigates():
    conn = FakeConnection()

    def navigate(params):
        conn.emit("Page.loadEventFired", {"timestamp": 1.0})
        return {"frameId": "frame", "loaderId": "loader"}

    conn.handlers = {
        "Page.navigate": navigate,
        "Runtime.evaluate": {"result": {"type": "boolean", "value": True}},
    }
    session = make_session(conn)

    await session.open("https://example.test/challenge")

    assert conn.methods() == ["Network.enable", "Page.enable", "Page.navigate", "Runtime.evaluate"]
    assert conn.calls[0][1]["maxPostDataSize"] == MAX_POST_DATA_SIZE
    assert conn.calls[2][1] == {"url": "https://example.test/challenge"}
    assert all(call[2] == SESSION for call in conn.calls)
    assert conn.listeners == []


@pytest.mark.asyncio
async def test_open_requires_url():
    session = make_session(FakeConnection())
    with pytest.raises(ValueError, match="challenge URL is required"):
        await session.open("   ")


@pytest.mark.asyncio
async def test_open_reports_navigation_error():
    conn = FakeConnection({"Page.navigate": {"frameId": "frame", "errorText": "net::ERR_NAME_NOT_RESOLVED"}})
    session = make_session(conn)
    with pytest.raises(RuntimeError, match="net::ERR_NAME_NOT_RESOLVED"):
        await session.open("https://example.test/challenge")
    assert conn.listeners == []


@pytest.mark.asyncio
async def test_cookies_are_converted():
    conn = FakeConnection(
        {
            "Network.getCookies": {
                "cookies": [
                    {
                        "name": "remixsid",
                        "value": "secret",
                        "domain": ".vk.ru",
                        "path": "/",
                        "expires": -1,
                        "session": True,
                        "httpOnly": True,
                        "secure": True,
                    },
                    {
                        "name": "persistent",
                        "value": "token",
                        "domain": "vk.com",
                        "path": "/",
                        "expires": 1700000000.0,
                        "session": False,
                    },
                ]
            }
        }
    )
    session = make_session(conn)

    cookies = await session.cookies(["https://api.vk.ru/", "https://vk.com/"])

    assert conn.calls[0][1] == {"urls": ["https://api.vk.ru/", "https://vk.com/"]}
    assert [cookie.name for cookie in cookies] == ["remixsid", "persistent"]
    assert cookies[0].expires is None
    assert cookies[0].http_only and cookies[0].secure
    assert cookies[1].expires == datetime.fromtimestamp(1700000000, timezone.utc)
    assert cookies[1].domain == "vk.com"


@pytest.mark.asyncio
async def test_cookies_without_urls_asks_for_all():
    conn = FakeConnection({"Network.getCookies": {"cookies": []}})
    session = make_session(conn)
    assert await session.cookies([]) == []
    assert conn.calls[0][1] == {}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("method", "url", "message"),
    [
        ("", TOKEN_URL, "method is required"),
        ("GET", TOKEN_URL, 'unsupported browser stage request method "GET"'),
        ("POST", "  ", "URL is required"),
    ],
)
async def test_execute_stage_requests_validates(method, url, message):
    conn = FakeConnection()
    session = make_session(conn)
    request = BrowserStageRequest(stage="stage", method=method, url=url)
    with pytest.raises(ValueError, match=message):
        await session.execute_stage_requests([request])
    assert conn.calls == []


@pytest.mark.asyncio
async def test_execute_stage_requests_returns_results():
    value = {
        "method": "POST",
        "url": TOKEN_URL,
        "statusCode": 200,
        "body": {"response": {"token": "token"}},
    }
    conn = FakeConnection({"Runtime.evaluate": {"result": {"type": "object", "value": value}}})
    session = make_session(conn)
    request = BrowserStageRequest(
        stage="vk_calls_get_anonymous_token",
        method="post",
        url=TOKEN_URL,
        form={"vk_join_link": "https://vk.com/call/join/test-token", "name": "123", "access_token": "token"},
    )

    results = await session.execute_stage_requests([request])

    assert len(results) == 1
    result = results[0]
    assert result.stage == "vk_calls_get_anonymous_token"
    assert result.method == "POST"
    assert result.url == TOKEN_URL
    assert result.status_code == 200
    assert result.body == {"response": {"token": "token"}}
    assert result.form_keys == ["access_token", "name", "vk_join_link"]
    params = conn.calls[0][1]
    assert params["awaitPromise"] is True
    assert params["returnByValue"] is True
    assert json.dumps(TOKEN_URL) in params["expression"]


@pytest.mark.asyncio
async def test_execute_stage_requests_surfaces_page_exception():
    conn = FakeConnection(
        {
            "Runtime.evaluate": {
                "result": {"type": "object"},
                "exceptionDetails": {
                    "text": "Uncaught (in promise)",
                    "exception": {"description": "Error: browser stage response is not valid JSON"},
                },
            }
        }
    )
    session = make_session(conn)
    request = BrowserStageRequest(stage="stage", method="POST", url=TOKEN_URL)
    with pytest.raises(RuntimeError, match="execute browser stage request.*not valid JSON"):
        await session.execute_stage_requests([request])


@pytest.mark.asyncio
async def test_execute_stage_requests_wraps_protocol_error():
    conn = FakeConnection({"Runtime.evaluate": DevToolsError(-32000, "Target closed")})
    session = make_session(conn)
    request = BrowserStageRequest(stage="stage", method="POST", url=TOKEN_URL)
    with pytest.raises(RuntimeError, match="execute browser stage request: Target closed"):
        await session.execute_stage_requests([request])


@pytest.mark.asyncio
async def test_observe_stage_results_captures_matching_request():
    conn = FakeConnection(
        {"Network.getResponseBody": {"body": '{"response": {"token": "token"}}', "base64Encoded": False}}
    )
    session = make_session(conn)

    def script():
        conn.emit("Network.requestWillBeSent", request_event("other", TOKEN_URL), session_id="elsewhere")
        conn.emit("Network.loadingFinished", {"requestId": "other"}, session_id="elsewhere")
        conn.emit("Network.requestWillBeSent", request_event("1", TOKEN_URL))
        conn.emit("Network.requestWillBeSent", {"requestId": "2", "request": {"method": "GET", "url": TOKEN_URL}})
        conn.emit("Network.responseReceived", {"requestId": "1", "response": {"status": 200}})
        conn.emit("Network.loadingFinished", {"requestId": "1"})
        conn.emit("Network.loadingFinished", {"requestId": "2"})

    results = await observe(session, [token_observation()], script)

    assert len(results) == 1
    result = results[0]
    assert result.stage == "vk_calls_get_anonymous_token"
    assert result.method == "POST"
    assert result.url == TOKEN_URL
    assert result.status_code == 200
    assert result.form_keys == ["access_token", "name"]
    assert result.body == {"response": {"token": "token"}}
    assert conn.listeners == []


@pytest.mark.asyncio
async def test_observe_stage_results_keeps_request_order():
    first = TOKEN_PREFIX + "?attempt=a"
    second = TOKEN_PREFIX + "?attempt=b"
    bodies = {"1": '{"n": "a"}', "2": base64.b64encode(b'{"n": "b"}').decode()}
    conn = FakeConnection(
        {
            "Network.getResponseBody": lambda params: {
                "body": bodies[params["requestId"]],
                "base64Encoded": params["requestId"] == "2",
            }
        }
    )
    session = make_session(conn)

    def script():
        conn.emit("Network.requestWillBeSent", request_event("1", first))
        conn.emit("Network.requestWillBeSent", request_event("2", second))
        conn.emit("Network.loadingFinished", {"requestId": "2"})
        conn.emit("Network.loadingFinished", {"requestId": "1"})

    results = await observe(session, [token_observation()], script)

    assert [result.url for result in results] == [first, second]
    assert [result.body for result in results] == [{"n": "a"}, {"n": "b"}]


@pytest.mark.asyncio
async def test_observe_stage_results_reports_failed_request():
    conn = FakeConnection()
    session = make_session(conn)
    confirmed = asyncio.Event()
    ready = asyncio.Event()
    task = asyncio.ensure_future(
        session.observe_stage_results([token_observation()], confirmed, ready)
    )
    await asyncio.wait_for(ready.wait(), 5)
    conn.emit("Network.requestWillBeSent", request_event("1", TOKEN_URL))
    conn.emit("Network.loadingFailed", {"requestId": "1", "errorText": "net::ERR_FAILED"})

    with pytest.raises(RuntimeError, match="browser-observed stage request failed: net::ERR_FAILED"):
        await asyncio.wait_for(task, 5)
    assert conn.listeners == []


@pytest.mark.asyncio
async def test_observe_stage_results_reports_undecodable_body():
    conn = FakeConnection({"Network.getResponseBody": {"body": "<html>", "base64Encoded": False}})
    session = make_session(conn)
    confirmed = asyncio.Event()
    task = asyncio.ensure_future(session.observe_stage_results([token_observation()], confirmed))
    await asyncio.sleep(0)
    conn.emit("Network.requestWillBeSent", request_event("1", TOKEN_URL))
    conn.emit("Network.loadingFinished", {"requestId": "1"})

    with pytest.raises(ValueError, match="decode browser-observed stage response") as excinfo:
        await asyncio.wait_for(task, 5)
    assert "decode browser-observed stage response" in str(excinfo.value)
    assert ("Network.getResponseBody", {"requestId": "1"}, SESSION) in conn.calls
    assert conn.listeners == []


@pytest.mark.asyncio
async def test_observe_stage_results_validates_arguments():
    session = make_session(FakeConnection())
    with pytest.raises(ValueError, match="observations are required"):
        await session.observe_stage_results([], asyncio.Event())
    with pytest.raises(ValueError, match="confirmation is required"):
        await session.observe_stage_results([token_observation()], None)


@pytest.mark.asyncio
async def test_close_removes_profile_and_is_idempotent(tmp_path):
    profile = tmp_path / "profile"
    profile.mkdir()
    (profile / "Preferences").write_text("{}")
    conn = FakeConnection()
    session = make_session(conn, user_data_dir=str(profile))

    await session.close()
    await session.close()

    assert not profile.exists()
    assert conn.closed == 1
    assert conn.calls == [("Target.closeTarget", {"targetId": "target-1"}, None)]
    with pytest.raises(RuntimeError, match="closed"):
        await session.cookies([])


@pytest.mark.asyncio
async def test_close_reports_protocol_error_but_still_cleans_up(tmp_path):
    profile = tmp_path / "profile"
    profile.mkdir()
    conn = FakeConnection({"Target.closeTarget": DevToolsError(-32602, "No target with given id")})
    session = make_session(conn, user_data_dir=str(profile))

    with pytest.raises(DevToolsError, match="No target with given id"):
        await session.close()
    assert not profile.exists()
    assert conn.closed == 1


@pytest.mark.asyncio
async def test_new_chromium_session_reports_missing_browser(tmp_path, monkeypatch):
    monkeypatch.setenv("VK_PROVIDER_BROWSER", str(tmp_path / "no-such-browser"))
    with pytest.raises(RuntimeError, match="start chromium"):
        await new_chromium_session()