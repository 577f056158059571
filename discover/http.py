"""HTTP client with retry/backoff and per-invocation request budgeting."""
from __future__ import annotations

import json
import logging
import random
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import requests

logger = logging.getLogger(__name__)

REQUEST_KINDS = ("places", "enrichment", "ranking")


class BudgetExceededError(RuntimeError):
    pass


def redact(text: str, secret: Optional[str]) -> str:
    if not text:
        return text
    redacted = text.replace(secret, "[REDACTED]") if secret else text
    return re.sub(r"((?:api_)?key=)[^&\s()]+", r"\1[REDACTED]", redacted)


def _check_kind(kind: str) -> None:
    if kind not in REQUEST_KINDS:
        raise ValueError(f"Unknown request kind: {kind}")


@dataclass
class RequestMetrics:
    network: Dict[str, int] = field(default_factory=lambda: {k: 0 for k in REQUEST_KINDS})
    cache_hits: Dict[str, int] = field(default_factory=lambda: {k: 0 for k in REQUEST_KINDS})
    dedup_skips: Dict[str, int] = field(default_factory=lambda: {k: 0 for k in REQUEST_KINDS})

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def inc_network(self, kind: str) -> None:
        _check_kind(kind)
        with self._lock:
            self.network[kind] += 1

    def inc_cache_hit(self, kind: str) -> None:
        _check_kind(kind)
        with self._lock:
            self.cache_hits[kind] += 1

    def inc_dedup_skip(self, kind: str) -> None:
        _check_kind(kind)
        with self._lock:
            self.dedup_skips[kind] += 1

    def as_dict(self) -> Dict[str, Dict[str, int]]:
        return {
            "network": dict(self.network),
            "cache_hits": dict(self.cache_hits),
            "dedup_skips": dict(self.dedup_skips),
        }


class RequestBudget:
    """Hard caps on upstream requests for a single Discover invocation."""

    def __init__(
        self,
        max_places: int,
        max_enrichment: int,
        max_ranking: int = 1,
        on_consume: Optional[Callable[[str, int], None]] = None,
        metrics: Optional[RequestMetrics] = None,
    ) -> None:
        self.limits = {
            "places": max_places,
            "enrichment": max_enrichment,
            "ranking": max_ranking,
        }
        self.on_consume = on_consume
        self.metrics = metrics
        self._counts = {k: 0 for k in REQUEST_KINDS}
        self._lock = threading.Lock()

    def count(self, kind: str) -> int:
        _check_kind(kind)
        return self._counts[kind]

    def remaining(self, kind: str) -> int:
        return max(0, self.limits[kind] - self.count(kind))

    def consume(self, kind: str) -> None:
        _check_kind(kind)
        with self._lock:
            used = self.count(kind)
            if used >= self.limits[kind]:
                raise BudgetExceededError(
                    f"{kind.capitalize()} request budget exceeded: {used} >= {self.limits[kind]}"
                )
            self._counts[kind] += 1
            used = self._counts[kind]
        if self.metrics is not None:
            self.metrics.inc_network(kind)
        if self.on_consume:
            self.on_consume(kind, used)


class HttpClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: int = 20,
        retry_max: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
    ) -> None:
        self.api_key = api_key
        self.timeout = timeout
        self.retry_max = retry_max
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.session = requests.Session()

    def _google_headers(self, field_mask: Optional[str]) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.api_key:
            headers["X-Goog-Api-Key"] = self.api_key
        if field_mask:
            headers["X-Goog-FieldMask"] = field_mask
        return headers

    def post_json(
        self,
        url: str,
        body: Dict[str, Any],
        field_mask: Optional[str] = None,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        headers = self._google_headers(field_mask)
        headers["Content-Type"] = "application/json"
        if extra_headers:
            headers.update(extra_headers)
        payload = json.dumps(body)
        return self._request(
            url,
            lambda: self.session.post(url, data=payload, headers=headers, timeout=self.timeout),
        )

    def get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        field_mask: Optional[str] = None,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        headers = self._google_headers(field_mask)
        if extra_headers:
            headers.update(extra_headers)
        return self._request(
            url,
            lambda: self.session.get(url, params=params, headers=headers, timeout=self.timeout),
        )

    def _request(self, url: str, send: Callable[[], requests.Response]) -> Dict[str, Any]:
        for attempt in range(1, self.retry_max + 1):
            try:
                resp = send()
            except requests.RequestException:
                if attempt >= self.retry_max:
                    raise
                self._sleep_backoff(attempt)
                continue

            status = resp.status_code
            if status == 200:
                try:
                    return resp.json()
                except ValueError:
                    logger.error("Non-JSON response from %s", url)
                    raise

            if status in (429, 500, 502, 503, 504):
                logger.warning("HTTP %s from %s (attempt %s)", status, url, attempt)
                if attempt >= self.retry_max:
                    resp.raise_for_status()
                if not self._sleep_retry_after(resp):
                    self._sleep_backoff(attempt)
                continue

            # Non-retryable
            logger.error("HTTP %s from %s", status, url)
            resp.raise_for_status()

        raise RuntimeError("Unexpected HTTP retry loop exit")

    def _sleep_backoff(self, attempt: int) -> None:
        base = min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)
        jitter = random.uniform(0, self.backoff_base)
        time.sleep(base + jitter)

    def _sleep_retry_after(self, resp: requests.Response) -> bool:
        retry_after = resp.headers.get("Retry-After")
        if not retry_after:
            return False
        try:
            delay = float(retry_after)
        except ValueError:
            return False
        delay = max(0.0, min(delay, self.backoff_max))
        time.sleep(delay)
        return True


def response_error_text(exc: requests.HTTPError) -> str:
    """Best-effort extraction of the provider's error message from an HTTPError."""
    resp = exc.response
    if resp is None:
        return str(exc)
    try:
        data = resp.json()
    except ValueError:
        return (resp.text or "").strip() or str(exc)
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            return str(err.get("message") or err.get("status") or data)
        if isinstance(err, str):
            return err
        if data.get("error_message"):
            return str(data["error_message"])
    return (resp.text or "").strip() or str(exc)
