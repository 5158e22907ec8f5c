"""Locating, launching and probing a Chromium browser."""

from __future__ import annotations

import asyncio
import json
import os
import shutil
import socket
import urllib.request
from typing import Any

from .stages import BrowserStageRequest

BROWSER_STARTUP_TIMEOUT = 15.0
BROWSER_STAGE_TIMEOUT = 20.0
BROWSER_ENV = "VK_PROVIDER_BROWSER"
BROWSER_HEADLESS_ENV = "VK_PROVIDER_BROWSER_HEADLESS"

_BROWSER_CANDIDATES = ("chromium", "chromium-browser", "google-chrome", "google-chrome-stable")
_POLL_INTERVAL = 0.1
_PROBE_TIMEOUT = 2.0

_STAGE_SCRIPT = """(async function () {
  const method = %s;
  const action = %s;
  const fields = %s;
  const body = new URLSearchParams();
  for (const [key, value] of Object.entries(fields || {})) {
    body.append(key, value == null ? "" : String(value));
  }
  const response = await fetch(action, {
    method,
    credentials: "include",
    headers: {
      "Content-Type": "application/x-www-form-urlencoded"
    },
    body
  });
  let payload;
  try {
    payload = await response.json();
  } catch (error) {
    throw new Error("browser stage response is not valid JSON");
  }
  return {
    method,
    url: action,
    statusCode: response.status,
    body: payload
  };
})()"""


def parse_truthy_env(raw: str | None) -> bool:
    """True for 1, true, yes or on, in any case and surrounding space."""
    return (raw or "").strip().lower() in {"1", "true", "yes", "on"}


def should_launch_headless() -> bool:
    """Headless when explicitly asked for, or by default on CI."""
    raw = os.environ.get(BROWSER_HEADLESS_ENV)
    if raw is not None and raw.strip():
        return parse_truthy_env(raw)
    return any(parse_truthy_env(os.environ.get(name)) for name in ("CI", "GITHUB_ACTIONS", "ACT"))


def chromium_launch_args(user_data_dir: str, debug_port: int) -> list[str]:
    """Command-line arguments for a debuggable Chromium instance."""
    args = [
        "--no-first-run",
        "--no-default-browser-check",
        f"--user-data-dir={user_data_dir}",
        f"--remote-debugging-port={debug_port}",
    ]
    if should_launch_headless():
        args += ["--headless=new", "--disable-gpu", "--no-sandbox", "--disable-dev-shm-usage"]
    else:
        args.append("--new-window")
    args.append("about:blank")
    return args


def startup_log_suffix(logs: str) -> str:
    """The last eight lines of a browser's startup output, ready to append to an error."""
    trimmed = logs.strip()
    if not trimmed:
        return ""
    lines = trimmed.split("\n")[-8:]
    return "\nstartup log tail:\n" + "\n".join(lines)


def resolve_browser_path() -> str:
    """Path of the browser to launch, from the environment or the PATH."""
    configured = os.environ.get(BROWSER_ENV, "").strip()
    if configured:
        return configured
    for candidate in _BROWSER_CANDIDATES:
        path = shutil.which(candidate)
        if path:
            return path
    raise FileNotFoundError("no supported browser executable found")


def _js_json(value: Any) -> str:
    text = json.dumps(value, ensure_ascii=False, separators=(",", ":"), sort_keys=True)
    return (
        text.replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("&", "\\u0026")
        .replace("\u2028", "\\u2028")
        .replace("\u2029", "\\u2029")
    )


def submit_stage_request_script(request: BrowserStageRequest) -> str:
    """JavaScript that submits ``request`` as a form from inside the page."""
    return _STAGE_SCRIPT % (
        _js_json(request.method.upper()),
        _js_json(request.url),
        _js_json(request.form),
    )


def reserve_tcp_port() -> int:
    """A loopback TCP port that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _probe_devtools(version_url: str) -> str:
    try:
        with urllib.request.urlopen(version_url, timeout=_PROBE_TIMEOUT) as response:
            body = json.load(response)
    except (OSError, ValueError):
        return ""
    if not isinstance(body, dict):
        return ""
    url = body.get("webSocketDebuggerUrl")
    return url.strip() if isinstance(url, str) else ""


async def wait_for_devtools(base_url: str, timeout: float = BROWSER_STARTUP_TIMEOUT) -> str:
    """Poll the DevTools endpoint until it reports a debugger URL and return it.

    Raises TimeoutError when ``timeout`` seconds pass first.
    """
    version_url = base_url.rstrip("/") + "/json/version"
    async with asyncio.timeout(timeout):
        while True:
            url = await asyncio.to_thread(_probe_devtools, version_url)
            if url:
                return url
            await asyncio.sleep(_POLL_INTERVAL)