"""Recognising browser requests that belong to an observed stage."""

from __future__ import annotations

import base64
import binascii
import re
from collections.abc import Iterable, Mapping
from typing import Any
from urllib.parse import unquote_plus

from .stages import BrowserStageObservation

_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


def _matches_form_keys(required: Iterable[str], observed: Mapping[str, str]) -> bool:
    return all(key in observed for key in required)


def _matches_form_values(required: Mapping[str, str], observed: Mapping[str, str]) -> bool:
    return all(key in observed and observed[key] == want for key, want in required.items())


def _matches_alternatives(required: Mapping[str, list[str]], observed: Mapping[str, str]) -> bool:
    return all(key in observed and observed[key] in allowed for key, allowed in required.items())


def match_observation(
    observations: Iterable[BrowserStageObservation],
    method: str,
    request_url: str,
    form_values: Mapping[str, str] | None,
) -> BrowserStageObservation | None:
    """Return the first observation the request satisfies, or ``None``."""
    observed = form_values or {}
    for observation in observations:
        if observation.method.casefold() != method.casefold():
            continue
        if not request_url.startswith(observation.url_prefix):
            continue
        if not _matches_form_keys(observation.required_form_keys or [], observed):
            continue
        if not _matches_form_values(observation.required_form_values or {}, observed):
            continue
        if not _matches_alternatives(observation.required_form_value_alternatives or {}, observed):
            continue
        return observation
    return None


def _unescape(text: str) -> str:
    if _BAD_ESCAPE.search(text):
        raise ValueError(f"invalid URL escape in {text!r}")
    return unquote_plus(text, errors="replace")


def _parse_query(raw: str) -> dict[str, list[str]]:
    values: dict[str, list[str]] = {}
    for part in raw.split("&"):
        if ";" in part:
            raise ValueError("invalid semicolon separator in query")
        if not part:
            continue
        key, _, value = part.partition("=")
        values.setdefault(_unescape(key), []).append(_unescape(value))
    return values


def _decode_entry(raw: str) -> str:
    try:
        decoded = base64.b64decode(raw.replace("\r", "").replace("\n", ""), validate=True)
    except (binascii.Error, ValueError):
        return raw
    return decoded.decode("utf-8", errors="replace")


def extract_observed_form_values(post_data_entries: Iterable[Any] | None) -> dict[str, str] | None:
    """Collect form fields from request post-data entries.

    Each entry is the entry's text or a mapping with a ``bytes`` key; base64
    payloads are decoded first. Entries that do not parse as a query are
    skipped. Returns ``None`` when no field was found.
    """
    form_values: dict[str, str] = {}
    for entry in post_data_entries or ():
        raw = entry.get("bytes") if isinstance(entry, Mapping) else entry
        if not raw:
            continue
        try:
            parsed = _parse_query(_decode_entry(raw))
        except ValueError:
            continue
        for key, values in parsed.items():
            if values:
                form_values[key] = values[0]
    return form_values or None


def sorted_keys(values: Mapping[str, Any] | None) -> list[str]:
    """Keys of ``values`` in sorted order."""
    return sorted(values or {})


def unique_sorted(values: Iterable[str] | None) -> list[str]:
    """Distinct values in sorted order."""
    return sorted(set(values or ()))