"""OpenAI-compatible chat completions client with classified failures."""

from __future__ import annotations

import json
from dataclasses import dataclass
from http.client import HTTPException
from pathlib import Path
from typing import Any, Union
from urllib import error, request

DEFAULT_MODEL = "qwen/qwen-2.5-coder:free"
OPENROUTER_BASE = "https://openrouter.ai/api/v1"
DEFAULT_TIMEOUT_SECONDS = 60

TEMPERATURE = 0.15
MAX_TOKENS = 900
TOP_P = 0.9

MAX_FAILURE_BODY_LEN = 300


def read_secret(secrets_dir: Path, filename: str) -> str | None:
    """Read first line of a secret file; return None if missing or empty."""
    path = secrets_dir / filename
    if not path.exists():
        return None
    raw = path.read_text(encoding="utf-8").strip()
    return raw if raw else None


@dataclass(frozen=True)
class TransportFailure:
    """The completion service could not be reached or timed out."""

    reason: str

    def describe(self) -> str:
        return f"connection error: {self.reason}"


@dataclass(frozen=True)
class ServiceFailure:
    """The completion service answered with a non-success status."""

    status: int
    body: str

    def describe(self) -> str:
        body = self.body.strip()
        if len(body) > MAX_FAILURE_BODY_LEN:
            body = body[: MAX_FAILURE_BODY_LEN - 3] + "..."
        return f"HTTP {self.status}: {body}"


@dataclass(frozen=True)
class EmptyResponse(ServiceFailure):
    """Success status, but no usable text in the first choice."""

    def describe(self) -> str:
        return "No response from model"


CompletionFailure = Union[TransportFailure, ServiceFailure]


@dataclass(frozen=True)
class CompletionResult:
    content: str | None = None
    failure: CompletionFailure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None and self.content is not None


def extract_content(data: Any) -> str | None:
    """Return the first choice's message text, or None if there is none."""
    if not isinstance(data, dict):
        return None
    choices = data.get("choices") or []
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    message = first.get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str) or not content.strip():
        return None
    return content


class CompletionClient:
    def __init__(
        self,
        api_key: str,
        *,
        base_url: str | None = None,
        model: str = DEFAULT_MODEL,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._api_key = api_key
        self._base_url = (base_url or OPENROUTER_BASE).rstrip("/")
        self._model = model
        self._timeout_seconds = timeout_seconds

    @property
    def model(self) -> str:
        return self._model

    def request_body(self, messages: list[dict[str, str]]) -> dict[str, Any]:
        return {
            "model": self._model,
            "messages": messages,
            "temperature": TEMPERATURE,
            "max_tokens": MAX_TOKENS,
            "top_p": TOP_P,
        }

    def complete(self, messages: list[dict[str, str]]) -> CompletionResult:
        """
        Call the chat completions endpoint.
        Never raises for service or network problems; those come back as
        CompletionResult.failure.
        """
        encoded = json.dumps(self.request_body(messages)).encode("utf-8")
        headers: dict[str, str] = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }
        req = request.Request(
            self._base_url + "/chat/completions",
            data=encoded,
            headers=headers,
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=self._timeout_seconds) as response:  # noqa: S310
                raw = response.read().decode("utf-8", errors="replace")
        except error.HTTPError as exc:
            try:
                body_read = exc.read().decode("utf-8", errors="replace")
            except (HTTPException, OSError) as read_exc:
                body_read = f"(body unreadable: {read_exc!r})"
            return CompletionResult(failure=ServiceFailure(status=exc.code, body=body_read))
        except (error.URLError, TimeoutError, OSError, HTTPException) as exc:
            reason = getattr(exc, "reason", None) or exc
            return CompletionResult(failure=TransportFailure(reason=str(reason)))

        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return CompletionResult(failure=EmptyResponse(status=200, body=raw))
        content = extract_content(data)
        if content is None:
            return CompletionResult(failure=EmptyResponse(status=200, body=raw))
        return CompletionResult(content=content)
