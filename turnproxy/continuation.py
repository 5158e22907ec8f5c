"""Keeping a controlled browser open while an operator completes a challenge.

A challenge offers ``prompt()`` and ``open_url()`` and may also offer
``cookie_urls()``, ``browser_stage_requests()`` or
``browser_stage_observations()``. A browser session offers async ``open``,
``cookies``, ``execute_stage_requests`` and ``observe_stage_results``, and a
``close`` that may be plain or async.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import inspect
from collections.abc import Callable, Iterable
from typing import Any

from .stages import BrowserContinuation, Cookie


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _method(obj: Any, name: str) -> Callable[..., Any] | None:
    attr = getattr(obj, name, None)
    return attr if callable(attr) else None


class ContinuationSession:
    """A browser session held open between showing a challenge and its completion."""

    def __init__(self, session: Any, challenge: Any, cookie_urls: Iterable[str]) -> None:
        self._session = session
        self.challenge = challenge
        self.cookie_urls = list(cookie_urls)
        self._confirmed: asyncio.Event | None = None
        self._observation: asyncio.Future | None = None

    async def complete(self) -> BrowserContinuation:
        """Collect what the browser produced once the operator has confirmed."""
        if self._session is None:
            raise RuntimeError("provider continuation browser session is required")

        result = BrowserContinuation()
        if self._confirmed is not None:
            self._confirmed.set()

        if self._observation is not None:
            try:
                stage_results = await asyncio.shield(self._observation)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                raise RuntimeError(f"observe browser continuation stage: {exc}") from exc
            result.stage_results.extend(stage_results)
            return result

        requests_fn = _method(self.challenge, "browser_stage_requests")
        if requests_fn is not None:
            try:
                stage_results = await self._session.execute_stage_requests(requests_fn())
            except Exception as exc:
                raise RuntimeError(f"execute browser continuation stage: {exc}") from exc
            result.stage_results.extend(stage_results)
            return result

        try:
            cookies = await self._session.cookies(self.cookie_urls)
        except Exception as exc:
            raise RuntimeError(f"collect browser continuation cookies: {exc}") from exc
        result.cookies.extend(cookies)
        return result

    async def close(self) -> None:
        """Stop any observation and close the browser session."""
        observation = self._observation
        if observation is not None and not observation.done():
            observation.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await observation
        if self._session is not None:
            await _maybe_await(self._session.close())

    async def __aenter__(self) -> ContinuationSession:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


async def start_continuation(challenge: Any, new_browser_session: Callable[[], Any] | None = None) -> ContinuationSession:
    """Open a controlled browser on the challenge page.

    When the challenge names observations, watching for them starts before
    the page is opened.
    """
    if challenge is None:
        raise ValueError("interactive provider challenge is required")
    challenge_url = continuation_open_url(challenge)
    if not challenge_url:
        raise ValueError("interactive provider challenge URL is required")

    factory = new_browser_session
    if factory is None:
        from .chromium import new_chromium_session

        factory = new_chromium_session

    try:
        session = await _maybe_await(factory())
    except Exception as exc:
        raise RuntimeError(f"start provider browser session: {exc}") from exc

    cookie_urls = [challenge_url]
    cookie_urls_fn = _method(challenge, "cookie_urls")
    if cookie_urls_fn is not None:
        urls = list(cookie_urls_fn() or [])
        if urls:
            cookie_urls = urls

    continuation = ContinuationSession(session, challenge, cookie_urls)

    observations_fn = _method(challenge, "browser_stage_observations")
    if observations_fn is not None:
        confirmed = asyncio.Event()
        ready = asyncio.Event()
        continuation._confirmed = confirmed
        observation = asyncio.ensure_future(
            session.observe_stage_results(observations_fn(), confirmed, ready)
        )
        continuation._observation = observation
        ready_waiter = asyncio.ensure_future(ready.wait())
        try:
            await asyncio.wait({ready_waiter, observation}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            await continuation.close()
            raise
        finally:
            ready_waiter.cancel()

        if observation.done() and not observation.cancelled():
            error = observation.exception()
            if error is not None:
                await continuation.close()
                raise RuntimeError(f"observe browser continuation stage: {error}") from error

    try:
        await session.open(challenge_url)
    except Exception as exc:
        await continuation.close()
        raise RuntimeError(f"open controlled browser challenge: {exc}") from exc

    return continuation


def continuation_prompt(challenge: Any) -> str:
    """The challenge's prompt text, trimmed."""
    if challenge is None:
        return ""
    return (challenge.prompt() or "").strip()


def continuation_open_url(challenge: Any) -> str:
    """The challenge's page URL, trimmed."""
    if challenge is None:
        return ""
    return (challenge.open_url() or "").strip()


def continuation_cookie_urls(challenge: Any) -> list[str]:
    """URLs whose cookies should be collected after the challenge."""
    if challenge is None:
        return []
    cookie_urls_fn = _method(challenge, "cookie_urls")
    if cookie_urls_fn is not None:
        return [url.strip() for url in cookie_urls_fn() or [] if url and url.strip()]
    open_url = continuation_open_url(challenge)
    return [open_url] if open_url else []


def continuation_cookies(cookies: Iterable[Cookie | None]) -> list[Cookie]:
    """Independent copies of the given cookies, skipping missing ones."""
    return [dataclasses.replace(cookie) for cookie in cookies if cookie is not None]