"""Gemini client with a safe no-op fallback.

This module never hard-fails when GEMINI_API_KEY is missing. Instead callers
get a NoopGeminiClient whose `enabled` flag is False, and Discover ranks
deterministically.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional

import requests

from . import config
from .errors import RankingError
from .http import redact

logger = logging.getLogger(__name__)

GEMINI_API_URL_TEMPLATE = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
GEMINI_STREAM_URL_TEMPLATE = (
    "https://generativelanguage.googleapis.com/v1beta/models/{model}:streamGenerateContent"
)
DEFAULT_GEMINI_MODEL = "gemini-2.5-flash-lite"
DEFAULT_TIMEOUT_SECONDS = 60
DEFAULT_MODEL_CHAIN = [
    "gemini-2.5-flash-lite",
    "gemini-2.5-flash",
]

Validator = Callable[[Dict[str, Any]], None]


@dataclass(frozen=True)
class GeminiCallResult:
    status: str
    raw_text: str
    data: Optional[Dict[str, Any]]
    model: str
    prompt_name: str
    prompt_hash: str
    error: Optional[str] = None


def hash_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _strip_code_fences(text: str) -> str:
    stripped = text.strip()
    if not stripped.startswith("```"):
        return stripped
    stripped = re.sub(r"^```(?:json)?", "", stripped, flags=re.IGNORECASE).strip()
    stripped = re.sub(r"```$", "", stripped).strip()
    return stripped


def _extract_json_candidate(text: str) -> str:
    """Best-effort extraction of a JSON object or array from model output."""
    candidate = _strip_code_fences(text)
    if candidate.startswith("{") or candidate.startswith("["):
        return candidate
    obj_start = candidate.find("{")
    obj_end = candidate.rfind("}")
    arr_start = candidate.find("[")
    arr_end = candidate.rfind("]")
    if arr_start != -1 and arr_end > arr_start and (obj_start == -1 or arr_start < obj_start):
        return candidate[arr_start : arr_end + 1]
    if obj_start != -1 and obj_end > obj_start:
        return candidate[obj_start : obj_end + 1]
    return candidate


def _parse_json_loose(text: str) -> tuple[Optional[Dict[str, Any]], Optional[str]]:
    candidate = _extract_json_candidate(text)
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError as exc:
        return None, f"json_decode_error: {exc}"
    if isinstance(parsed, list):
        # A bare array of selections is accepted as {"suggestions": [...]}.
        return {"suggestions": parsed}, None
    if not isinstance(parsed, dict):
        return None, f"json_not_object: {type(parsed).__name__}"
    return parsed, None


class ArrayElementScanner:
    """Incrementally yields objects that are direct elements of a JSON array.

    Text arrives in arbitrary chunks; an element is emitted as soon as its
    closing brace is seen. Works for a bare array or an array nested in an
    object such as {"suggestions": [...]}.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._pos = 0
        self._stack: List[str] = []
        self._in_string = False
        self._escape = False
        self._element_start: Optional[int] = None
        self._element_depth = 0

    def feed(self, chunk: str) -> List[Dict[str, Any]]:
        self._buffer += chunk
        found: List[Dict[str, Any]] = []
        while self._pos < len(self._buffer):
            ch = self._buffer[self._pos]
            if self._in_string:
                if self._escape:
                    self._escape = False
                elif ch == "\\":
                    self._escape = True
                elif ch == '"':
                    self._in_string = False
            elif ch == '"':
                self._in_string = True
            elif ch in "[{":
                if (
                    ch == "{"
                    and self._element_start is None
                    and self._stack
                    and self._stack[-1] == "["
                ):
                    self._element_start = self._pos
                    self._element_depth = len(self._stack)
                self._stack.append(ch)
            elif ch in "]}":
                if self._stack:
                    self._stack.pop()
                if (
                    ch == "}"
                    and self._element_start is not None
                    and len(self._stack) == self._element_depth
                ):
                    raw = self._buffer[self._element_start : self._pos + 1]
                    self._element_start = None
                    try:
                        parsed = json.loads(raw)
                    except json.JSONDecodeError:
                        parsed = None
                    if isinstance(parsed, dict):
                        found.append(parsed)
            self._pos += 1
        return found


class BaseGeminiClient:
    enabled = True

    def generate_json(
        self,
        prompt_name: str,
        prompt_text: str,
        prompt_hash: str,
        validator: Optional[Validator] = None,
        response_schema: Optional[Dict[str, Any]] = None,
    ) -> GeminiCallResult:
        raise NotImplementedError

    def stream_json_elements(
        self,
        prompt_name: str,
        prompt_text: str,
        response_schema: Optional[Dict[str, Any]] = None,
    ) -> Iterator[Dict[str, Any]]:
        raise NotImplementedError


class NoopGeminiClient(BaseGeminiClient):
    enabled = False

    def __init__(self, reason: str = "skipped_no_api_key") -> None:
        self.reason = reason

    def generate_json(
        self,
        prompt_name: str,
        prompt_text: str,
        prompt_hash: str,
        validator: Optional[Validator] = None,
        response_schema: Optional[Dict[str, Any]] = None,
    ) -> GeminiCallResult:
        return GeminiCallResult(
            status=self.reason,
            raw_text="",
            data={"status": self.reason},
            model="noop",
            prompt_name=prompt_name,
            prompt_hash=prompt_hash,
            error=None,
        )

    def stream_json_elements(
        self,
        prompt_name: str,
        prompt_text: str,
        response_schema: Optional[Dict[str, Any]] = None,
    ) -> Iterator[Dict[str, Any]]:
        return iter(())


class GeminiClient(BaseGeminiClient):
    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_GEMINI_MODEL,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
        max_attempts: Optional[int] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        # Each model tried is one upstream ranking request.
        self.max_attempts = (
            max_attempts if max_attempts is not None else config.RANKING_REQUESTS_PER_INVOCATION
        )

    @classmethod
    def from_env(cls) -> BaseGeminiClient:
        api_key = (os.environ.get("GEMINI_API_KEY") or "").strip()
        if not api_key:
            return NoopGeminiClient("skipped_no_api_key")
        model = os.environ.get("GEMINI_MODEL", DEFAULT_GEMINI_MODEL)
        return cls(api_key=api_key, model=model)

    def _redact(self, text: str) -> str:
        return redact(text, self.api_key)

    def _payload(self, prompt_text: str, response_schema: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        generation_config: Dict[str, Any] = {
            "temperature": 0.2,
            "responseMimeType": "application/json",
        }
        if response_schema:
            generation_config["responseSchema"] = response_schema
        return {
            "contents": [
                {
                    "role": "user",
                    "parts": [{"text": prompt_text}],
                }
            ],
            "generationConfig": generation_config,
        }

    def _call_api(
        self, prompt_text: str, model: str, response_schema: Optional[Dict[str, Any]] = None
    ) -> tuple[str, Optional[str], Optional[str]]:
        url = GEMINI_API_URL_TEMPLATE.format(model=model)
        try:
            resp = self.session.post(
                url,
                params={"key": self.api_key},
                json=self._payload(prompt_text, response_schema),
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            return "", "request_error", f"request_error: {exc}"
        if resp.status_code >= 400:
            return resp.text, "http_error", f"http_error: {resp.status_code}"
        try:
            data = resp.json()
        except ValueError as exc:
            return resp.text, "invalid_json", f"non_json_response: {exc}"
        text = _candidate_text(data)
        if text is None:
            return json.dumps(data, ensure_ascii=False), "invalid_json", "missing_text_part"
        return text, None, None

    def _model_chain(self) -> list[str]:
        primary = (self.model or "").strip()
        chain: list[str] = []
        if primary:
            chain.append(primary)
        for model in DEFAULT_MODEL_CHAIN:
            if model not in chain:
                chain.append(model)
        return chain[: max(1, self.max_attempts)]

    def generate_json(
        self,
        prompt_name: str,
        prompt_text: str,
        prompt_hash: str,
        validator: Optional[Validator] = None,
        response_schema: Optional[Dict[str, Any]] = None,
    ) -> GeminiCallResult:
        last_raw_text = ""
        last_error_type: Optional[str] = None
        last_error_detail: Optional[str] = None
        used_model = self.model

        for model in self._model_chain():
            used_model = model
            raw_text, error_type, error_detail = self._call_api(prompt_text, model, response_schema)
            if error_type in {"http_error", "request_error"}:
                logger.warning("Gemini %s failed on %s: %s", prompt_name, model, self._redact(error_detail or ""))
                last_raw_text = raw_text
                last_error_type = error_type
                last_error_detail = error_detail
                continue
            if error_type:
                return GeminiCallResult(
                    status=error_type,
                    raw_text=self._redact(raw_text),
                    data=None,
                    model=model,
                    prompt_name=prompt_name,
                    prompt_hash=prompt_hash,
                    error=self._redact(error_detail or error_type),
                )

            last_raw_text = raw_text
            last_error_type = None
            last_error_detail = None
            break

        if last_error_type in {"http_error", "request_error"}:
            return GeminiCallResult(
                status=last_error_type,
                raw_text=self._redact(last_raw_text),
                data=None,
                model=used_model,
                prompt_name=prompt_name,
                prompt_hash=prompt_hash,
                error=self._redact(last_error_detail or last_error_type),
            )

        raw_text = self._redact(last_raw_text)
        parsed, parse_error = _parse_json_loose(raw_text)
        if parse_error:
            return GeminiCallResult(
                status="invalid_json",
                raw_text=raw_text,
                data=None,
                model=used_model,
                prompt_name=prompt_name,
                prompt_hash=prompt_hash,
                error=parse_error,
            )
        if validator is not None:
            try:
                validator(parsed)
            except Exception as exc:  # validators are project code
                return GeminiCallResult(
                    status="invalid_json",
                    raw_text=raw_text,
                    data=None,
                    model=used_model,
                    prompt_name=prompt_name,
                    prompt_hash=prompt_hash,
                    error=f"validation_error: {exc}",
                )
        return GeminiCallResult(
            status="ok",
            raw_text=raw_text,
            data=parsed,
            model=used_model,
            prompt_name=prompt_name,
            prompt_hash=prompt_hash,
            error=None,
        )

    def stream_json_elements(
        self,
        prompt_name: str,
        prompt_text: str,
        response_schema: Optional[Dict[str, Any]] = None,
    ) -> Iterator[Dict[str, Any]]:
        """Yield array elements of the model's JSON output as they complete.

        Closing the generator closes the underlying HTTP response, so a caller
        that stops early stops the upstream generation too.
        """
        url = GEMINI_STREAM_URL_TEMPLATE.format(model=self.model)
        try:
            resp = self.session.post(
                url,
                params={"key": self.api_key, "alt": "sse"},
                json=self._payload(prompt_text, response_schema),
                timeout=self.timeout_seconds,
                stream=True,
            )
        except requests.RequestException as exc:
            raise RankingError(self._redact(f"request_error: {exc}")) from exc

        try:
            if resp.status_code >= 400:
                raise RankingError(f"http_error: {resp.status_code}")
            scanner = ArrayElementScanner()
            for line in resp.iter_lines():
                if isinstance(line, bytes):
                    line = line.decode("utf-8", errors="replace")
                if not line or not line.startswith("data:"):
                    continue
                payload = line[len("data:") :].strip()
                if not payload:
                    continue
                try:
                    event = json.loads(payload)
                except json.JSONDecodeError:
                    logger.debug("Skipping non-JSON stream event for %s", prompt_name)
                    continue
                text = _candidate_text(event)
                if not text:
                    continue
                for element in scanner.feed(text):
                    yield element
        except requests.RequestException as exc:
            raise RankingError(self._redact(f"stream_error: {exc}")) from exc
        finally:
            resp.close()


def _candidate_text(data: Dict[str, Any]) -> Optional[str]:
    candidates = data.get("candidates") or []
    if not candidates:
        return None
    content = candidates[0].get("content") or {}
    parts = content.get("parts") or []
    texts = [p.get("text") for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str)]
    if not texts:
        return None
    return "".join(texts)


def selection_schema(limit: int) -> Dict[str, Any]:
    """Response schema for ranked selections: {suggestions: [{candidateId, whyItFits}]}."""
    return {
        "type": "OBJECT",
        "properties": {
            "suggestions": {
                "type": "ARRAY",
                "maxItems": str(limit),
                "items": {
                    "type": "OBJECT",
                    "properties": {
                        "candidateId": {"type": "STRING"},
                        "whyItFits": {"type": "STRING", "maxLength": str(config.RANKING_WHY_MAX_CHARS)},
                    },
                    "required": ["candidateId", "whyItFits"],
                },
            }
        },
        "required": ["suggestions"],
    }
