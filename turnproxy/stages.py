"""Value types exchanged between a provider challenge and a controlled browser."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class Cookie:
    """A browser cookie collected after a challenge was completed."""

    name: str
    value: str
    domain: str = ""
    path: str = ""
    expires: datetime | None = None
    http_only: bool = False
    secure: bool = False


@dataclass
class BrowserStageRequest:
    """A form POST that the browser itself should submit for a stage."""

    stage: str
    method: str
    url: str
    form: dict[str, str] = field(default_factory=dict)


@dataclass
class BrowserStageObservation:
    """A request the browser is expected to send, and how to recognise it."""

    stage: str
    method: str
    url_prefix: str
    required_form_keys: list[str] = field(default_factory=list)
    required_form_values: dict[str, str] = field(default_factory=dict)
    required_form_value_alternatives: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class BrowserStageResult:
    """The decoded JSON response of a stage request made in the browser."""

    stage: str
    method: str
    url: str
    form_keys: list[str] = field(default_factory=list)
    status_code: int = 0
    body: dict[str, Any] | None = None


@dataclass
class BrowserContinuation:
    """What a completed browser continuation hands back to the provider."""

    cookies: list[Cookie] = field(default_factory=list)
    stage_results: list[BrowserStageResult] = field(default_factory=list)