"""Driving a Chromium browser over the DevTools protocol."""

from __future__ import annotations

import asyncio
import base64
import contextlib
import itertools
import json
import logging
import shutil
import tempfile
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import websockets

from .launch import (
    BROWSER_STAGE_TIMEOUT,
    BROWSER_STARTUP_TIMEOUT,
    chromium_launch_args,
    reserve_tcp_port,
    resolve_browser_path,
    startup_log_suffix,
    submit_stage_request_script,
    wait_for_devtools,
)
from .matching import extract_observed_form_values, match_observation, sorted_keys
from .stages import (
    BrowserStageObservation,
    BrowserStageRequest,
    BrowserStageResult,
    Cookie,
)

_LOGGER = logging.getLogger(__name__)

SETTLE_DELAY = 1.0
MAX_POST_DATA_SIZE = 1 << 20
MAX_RESOURCE_BUFFER_SIZE = 1 << 20
MAX_TOTAL_BUFFER_SIZE = 8 << 20

_READY_POLL_INTERVAL = 0.05
_LAUNCH_LOG_LIMIT = 64 * 1024

EventListener = Callable[[str, dict, "str | None"], None]


class DevToolsError(RuntimeError):
    """An error reply to a DevTools protocol command."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        self.code = code
        self.message = message
        self.data = data
        text = f"{message} ({code})"
        if data:
            text += f": {data}"
        super().__init__(text)


class _DevToolsConnection:
    """A DevTools protocol connection over a websocket."""

    def __init__(self, websocket: Any) -> None:
        self._ws = websocket
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future] = {}
        self._listeners: list[EventListener] = []
        self._reader = asyncio.ensure_future(self._read_loop())

    @classmethod
    async def connect(cls, url: str) -> _DevToolsConnection:
        websocket = await websockets.connect(url, max_size=None)
        return cls(websocket)

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    async def call(self, method: str, params: dict | None = None, session_id: str | None = None) -> dict:
        if self._reader.done():
            raise ConnectionError("devtools connection is closed")
        message_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[message_id] = future
        message: dict[str, Any] = {"id": message_id, "method": method, "params": params or {}}
        if session_id:
            message["sessionId"] = session_id
        try:
            await self._ws.send(json.dumps(message))
            return await future
        finally:
            self._pending.pop(message_id, None)

    async def _read_loop(self) -> None:
        reason = "devtools connection closed"
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except ValueError:
                    continue
                if not isinstance(message, dict):
                    continue
                if "id" in message:
                    self._resolve(message)
                    continue
                method = message.get("method")
                if not method:
                    continue
                params = message.get("params") or {}
                session_id = message.get("sessionId")
                for listener in list(self._listeners):
                    try:
                        listener(method, params, session_id)
                    except Exception:
                        _LOGGER.exception("devtools event listener failed for %s", method)
        except Exception as exc:
            reason = f"devtools connection failed: {exc}"
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(ConnectionError(reason))

    def _resolve(self, message: dict) -> None:
        future = self._pending.get(message["id"])
        if future is None or future.done():
            return
        error = message.get("error")
        if error:
            future.set_exception(
                DevToolsError(int(error.get("code", 0)), str(error.get("message", "")), error.get("data"))
            )
        else:
            future.set_result(message.get("result") or {})

    async def close(self) -> None:
        try:
            await self._ws.close()
        finally:
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON constant {name}")


def _loads_strict(text: bytes) -> Any:
    return json.loads(text.decode("utf-8"), parse_constant=_reject_constant)


def _is_valid_json(body: bytes) -> bool:
    try:
        _loads_strict(body)
    except ValueError:
        return False
    return True


def decode_observed_body(body: bytes | str) -> dict[str, Any] | None:
    """Decode the JSON object of an observed response, base64-wrapped or not.

    A JSON ``null`` gives ``None``; anything else that is not an object raises
    ValueError.
    """
    raw = body.encode("utf-8") if isinstance(body, str) else bytes(body)
    if raw and not _is_valid_json(raw):
        try:
            raw = base64.b64decode(raw, validate=True)
        except ValueError as exc:
            raise ValueError(f"decode browser-observed stage response: {exc}") from exc
    try:
        payload = _loads_strict(raw)
    except ValueError as exc:
        raise ValueError(f"decode browser-observed stage payload: {exc or 'empty body'}") from exc
    if payload is None:
        return None
    if not isinstance(payload, dict):
        raise ValueError(
            f"decode browser-observed stage payload: expected a JSON object, got {type(payload).__name__}"
        )
    return payload


def _to_cookie(raw: dict[str, Any]) -> Cookie:
    expires = None
    raw_expires = raw.get("expires", -1)
    if not raw.get("session") and raw_expires is not None and raw_expires >= 0:
        expires = datetime.fromtimestamp(int(raw_expires), timezone.utc)
    return Cookie(
        name=raw.get("name", ""),
        value=raw.get("value", ""),
        domain=raw.get("domain", ""),
        path=raw.get("path", ""),
        expires=expires,
        http_only=bool(raw.get("httpOnly", False)),
        secure=bool(raw.get("secure", False)),
    )


def _exception_text(details: dict[str, Any]) -> str:
    text = details.get("text", "")
    line = details.get("lineNumber", 0)
    column = details.get("columnNumber", 0)
    description = ""
    exception = details.get("exception")
    if isinstance(exception, dict):
        description = exception.get("description") or ""
    message = f'exception "{text}" ({line}:{column})'
    return f"{message}: {description}" if description else message


@dataclass
class _RequestMeta:
    observation: BrowserStageObservation
    method: str
    url: str
    order: int
    form_keys: list[str] = field(default_factory=list)
    status: int = 0


@dataclass(frozen=True)
class _Observed:
    order: int
    result: BrowserStageResult


class ChromiumSession:
    """One browser tab reached over DevTools, with the browser process it owns."""

    def __init__(
        self,
        connection: Any,
        session_id: str,
        target_id: str = "",
        *,
        process: asyncio.subprocess.Process | None = None,
        user_data_dir: str | None = None,
        debug_url: str = "",
        log_reader: asyncio.Future | None = None,
        settle_delay: float = SETTLE_DELAY,
    ) -> None:
        self._connection = connection
        self._session_id = session_id
        self._target_id = target_id
        self._process = process
        self._user_data_dir = user_data_dir
        self.debug_url = debug_url
        self._log_reader = log_reader
        self.settle_delay = settle_delay

    async def _call(self, method: str, params: dict | None = None) -> dict:
        if self._connection is None:
            raise RuntimeError("browser session is closed")
        return await self._connection.call(method, params, self._session_id)

    async def open(self, challenge_url: str) -> None:
        """Navigate the tab to ``challenge_url`` and wait for its body."""
        if not (challenge_url or "").strip():
            raise ValueError("challenge URL is required")
        if self._connection is None:
            raise RuntimeError("browser session is closed")

        loaded = asyncio.Event()

        def on_event(method: str, params: dict, session_id: str | None) -> None:
            if session_id == self._session_id and method == "Page.loadEventFired":
                loaded.set()

        self._connection.add_listener(on_event)
        try:
            await self._call(
                "Network.enable",
                {
                    "maxPostDataSize": MAX_POST_DATA_SIZE,
                    "maxResourceBufferSize": MAX_RESOURCE_BUFFER_SIZE,
                    "maxTotalBufferSize": MAX_TOTAL_BUFFER_SIZE,
                },
            )
            await self._call("Page.enable")
            navigated = await self._call("Page.navigate", {"url": challenge_url})
            if error_text := navigated.get("errorText"):
                raise RuntimeError(f"navigate to {challenge_url}: {error_text}")
            if navigated.get("loaderId"):
                await loaded.wait()
            await self._wait_ready("body")
        finally:
            self._connection.remove_listener(on_event)

    async def _wait_ready(self, selector: str) -> None:
        expression = f"document.querySelector({json.dumps(selector)}) !== null"
        while True:
            try:
                reply = await self._call(
                    "Runtime.evaluate", {"expression": expression, "returnByValue": True}
                )
            except DevToolsError:
                reply = {}
            result = reply.get("result") or {}
            if result.get("value") is True:
                return
            await asyncio.sleep(_READY_POLL_INTERVAL)

    async def cookies(self, urls: Iterable[str] | None = None) -> list[Cookie]:
        """Cookies the browser holds, limited to ``urls`` when any are given."""
        params: dict[str, Any] = {}
        url_list = list(urls or ())
        if url_list:
            params["urls"] = url_list
        reply = await self._call("Network.getCookies", params)
        return [_to_cookie(raw) for raw in reply.get("cookies") or [] if raw]

    async def execute_stage_requests(
        self, requests: Iterable[BrowserStageRequest]
    ) -> list[BrowserStageResult]:
        """Submit each stage request from inside the page, in order."""
        if self._connection is None:
            raise RuntimeError("browser session is closed")
        return [await self._execute_stage_request(request) for request in requests]

    async def _execute_stage_request(self, request: BrowserStageRequest) -> BrowserStageResult:
        if not (request.method or "").strip():
            raise ValueError("browser stage request method is required")
        if request.method.casefold() != "post":
            raise ValueError(f"unsupported browser stage request method {json.dumps(request.method)}")
        if not (request.url or "").strip():
            raise ValueError("browser stage request URL is required")

        script = submit_stage_request_script(request)
        try:
            async with asyncio.timeout(BROWSER_STAGE_TIMEOUT):
                response = await self._evaluate_stage(script)
        except TimeoutError as exc:
            raise TimeoutError("wait browser stage response: timed out") from exc

        return BrowserStageResult(
            stage=request.stage,
            method=response["method"],
            url=response["url"],
            form_keys=sorted_keys(request.form),
            status_code=response["status_code"],
            body=response["body"],
        )

    async def _evaluate_stage(self, script: str) -> dict[str, Any]:
        try:
            reply = await self._call(
                "Runtime.evaluate",
                {"expression": script, "awaitPromise": True, "returnByValue": True},
            )
        except (DevToolsError, ConnectionError) as exc:
            raise RuntimeError(f"execute browser stage request: {exc}") from exc

        details = reply.get("exceptionDetails")
        if details:
            raise RuntimeError(f"execute browser stage request: {_exception_text(details)}")
        result = reply.get("result")
        if not result:
            raise RuntimeError("execute browser stage request: browser stage response is empty")

        value = result.get("value")
        if value is None:
            value = {}
        body = value.get("body") if isinstance(value, dict) else None
        if not isinstance(value, dict) or (body is not None and not isinstance(body, dict)):
            raise RuntimeError(
                "execute browser stage request: decode browser stage result: unexpected value shape"
            )
        try:
            status_code = int(value.get("statusCode") or 0)
        except (TypeError, ValueError) as exc:
            raise RuntimeError(
                f"execute browser stage request: decode browser stage result: {exc}"
            ) from exc
        return {
            "method": str(value.get("method") or ""),
            "url": str(value.get("url") or ""),
            "status_code": status_code,
            "body": body,
        }

    async def observe_stage_results(
        self,
        observations: Iterable[BrowserStageObservation],
        confirmed: asyncio.Event,
        ready: asyncio.Event | None = None,
    ) -> list[BrowserStageResult]:
        """Capture responses to matching requests the page sends by itself.

        ``ready`` is set once listening has begun. After ``confirmed`` is set,
        results are returned once no new one arrived for the settle delay; if
        none arrived at all, the wait ends after the stage timeout.
        """
        observation_list = list(observations or ())
        if not observation_list:
            raise ValueError("browser stage observations are required")
        if confirmed is None:
            raise ValueError("browser stage observation confirmation is required")
        if self._connection is None:
            raise RuntimeError("browser session is closed")

        queue: asyncio.Queue = asyncio.Queue()
        matched: dict[str, _RequestMeta] = {}
        fetches: set[asyncio.Future] = set()
        orders = itertools.count()

        async def fetch(request_id: str, meta: _RequestMeta) -> None:
            try:
                reply = await self._call("Network.getResponseBody", {"requestId": request_id})
                text = reply.get("body") or ""
                body = base64.b64decode(text) if reply.get("base64Encoded") else text.encode("utf-8")
            except Exception as exc:
                queue.put_nowait(RuntimeError(f"read browser-observed stage response: {exc}"))
                return
            try:
                payload = decode_observed_body(body)
            except ValueError as exc:
                queue.put_nowait(exc)
                return
            queue.put_nowait(
                _Observed(
                    meta.order,
                    BrowserStageResult(
                        stage=meta.observation.stage,
                        method=meta.method,
                        url=meta.url,
                        form_keys=meta.form_keys,
                        status_code=meta.status,
                        body=payload,
                    ),
                )
            )

        def on_event(method: str, params: dict, session_id: str | None) -> None:
            if session_id != self._session_id:
                return
            request_id = params.get("requestId")
            match method:
                case "Network.requestWillBeSent":
                    request = params.get("request")
                    if not isinstance(request, dict):
                        return
                    form_values = (
                        extract_observed_form_values(request.get("postDataEntries"))
                        if request.get("hasPostData")
                        else None
                    )
                    request_method = request.get("method", "")
                    request_url = request.get("url", "")
                    observation = match_observation(
                        observation_list, request_method, request_url, form_values
                    )
                    if observation is None:
                        return
                    matched[request_id] = _RequestMeta(
                        observation=observation,
                        method=request_method,
                        url=request_url,
                        order=next(orders),
                        form_keys=sorted_keys(form_values),
                    )
                case "Network.responseReceived":
                    meta = matched.get(request_id)
                    response = params.get("response")
                    if meta is not None and isinstance(response, dict):
                        meta.status = int(response.get("status") or 0)
                case "Network.loadingFailed":
                    if request_id in matched:
                        queue.put_nowait(
                            RuntimeError(
                                f"browser-observed stage request failed: {params.get('errorText', '')}"
                            )
                        )
                case "Network.loadingFinished":
                    meta = matched.get(request_id)
                    if meta is None:
                        return
                    task = asyncio.ensure_future(fetch(request_id, meta))
                    fetches.add(task)
                    task.add_done_callback(fetches.discard)

        connection = self._connection
        connection.add_listener(on_event)
        if ready is not None:
            ready.set()

        loop = asyncio.get_running_loop()
        results: list[_Observed] = []
        post_confirm = False
        deadline: float | None = None
        getter = asyncio.ensure_future(queue.get())
        confirm_waiter = asyncio.ensure_future(confirmed.wait())
        try:
            while True:
                waiters = {getter} if post_confirm else {getter, confirm_waiter}
                timeout = None if deadline is None else max(0.0, deadline - loop.time())
                done, _ = await asyncio.wait(
                    waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
                )
                if getter in done:
                    item = getter.result()
                    getter = asyncio.ensure_future(queue.get())
                    if isinstance(item, BaseException):
                        raise item
                    results.append(item)
                    if post_confirm:
                        deadline = loop.time() + self.settle_delay
                    continue
                if confirm_waiter in done and not post_confirm:
                    post_confirm = True
                    delay = self.settle_delay if results else BROWSER_STAGE_TIMEOUT
                    deadline = loop.time() + delay
                    continue
                if not results:
                    raise TimeoutError("browser-observed stage result was not captured")
                results.sort(key=lambda observed: observed.order)
                return [observed.result for observed in results]
        finally:
            connection.remove_listener(on_event)
            leftovers = [getter, confirm_waiter, *fetches]
            for task in leftovers:
                task.cancel()
            await asyncio.gather(*leftovers, return_exceptions=True)

    async def close(self) -> None:
        """Close the tab, stop the browser and remove its profile directory."""
        errors: list[Exception] = []
        if self._connection is not None:
            connection, self._connection = self._connection, None
            if self._target_id:
                try:
                    await connection.call("Target.closeTarget", {"targetId": self._target_id})
                except DevToolsError as exc:
                    errors.append(exc)
                except (ConnectionError, OSError):
                    pass
            try:
                await connection.close()
            except Exception as exc:
                errors.append(exc)
        if self._log_reader is not None:
            self._log_reader.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await self._log_reader
            self._log_reader = None
        if self._process is not None:
            process, self._process = self._process, None
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                except OSError as exc:
                    errors.append(exc)
            await process.wait()
        if self._user_data_dir:
            directory, self._user_data_dir = self._user_data_dir, None
            try:
                shutil.rmtree(directory)
            except FileNotFoundError:
                pass
            except OSError as exc:
                errors.append(exc)

        if len(errors) == 1:
            raise errors[0]
        if errors:
            raise ExceptionGroup("close browser session", errors)

    async def __aenter__(self) -> ChromiumSession:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


async def _collect_output(stream: asyncio.StreamReader | None, buffer: bytearray) -> None:
    if stream is None:
        return
    while chunk := await stream.read(4096):
        buffer.extend(chunk)
        if len(buffer) > _LAUNCH_LOG_LIMIT:
            del buffer[:-_LAUNCH_LOG_LIMIT]


async def _abandon(
    process: asyncio.subprocess.Process, log_reader: asyncio.Future, user_data_dir: str
) -> None:
    log_reader.cancel()
    with contextlib.suppress(asyncio.CancelledError, Exception):
        await log_reader
    if process.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
    await process.wait()
    shutil.rmtree(user_data_dir, ignore_errors=True)


async def new_chromium_session() -> ChromiumSession:
    """Launch a browser with a fresh profile and attach to a new blank tab."""
    browser_path = resolve_browser_path()
    try:
        debug_port = reserve_tcp_port()
    except OSError as exc:
        raise OSError(f"reserve browser debug port: {exc}") from exc
    try:
        user_data_dir = tempfile.mkdtemp(prefix="vk-provider-browser-")
    except OSError as exc:
        raise OSError(f"create browser profile dir: {exc}") from exc

    try:
        process = await asyncio.create_subprocess_exec(
            browser_path,
            *chromium_launch_args(user_data_dir, debug_port),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as exc:
        shutil.rmtree(user_data_dir, ignore_errors=True)
        raise RuntimeError(f"start chromium: {exc}") from exc

    launch_log = bytearray()
    log_reader = asyncio.ensure_future(_collect_output(process.stdout, launch_log))
    debug_url = f"http://127.0.0.1:{debug_port}"

    try:
        websocket_url = await wait_for_devtools(debug_url, BROWSER_STARTUP_TIMEOUT)
    except BaseException as exc:
        await _abandon(process, log_reader, user_data_dir)
        if isinstance(exc, Exception):
            detail = str(exc) or type(exc).__name__
            suffix = startup_log_suffix(launch_log.decode("utf-8", errors="replace"))
            raise RuntimeError(f"wait for browser devtools: {detail}{suffix}") from exc
        raise

    connection: _DevToolsConnection | None = None
    try:
        connection = await _DevToolsConnection.connect(websocket_url)
        created = await connection.call("Target.createTarget", {"url": "about:blank"})
        target_id = created["targetId"]
        attached = await connection.call(
            "Target.attachToTarget", {"targetId": target_id, "flatten": True}
        )
        session_id = attached["sessionId"]
    except BaseException as exc:
        if connection is not None:
            with contextlib.suppress(Exception):
                await connection.close()
        await _abandon(process, log_reader, user_data_dir)
        if isinstance(exc, Exception):
            raise RuntimeError(f"attach to browser target: {exc}") from exc
        raise

    return ChromiumSession(
        connection,
        session_id,
        target_id,
        process=process,
        user_data_dir=user_data_dir,
        debug_url=debug_url,
        log_reader=log_reader,
    )