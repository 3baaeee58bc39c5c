"""Remote multimodal classification through the Ollama ``/api/chat`` endpoint.

Servers differ in what they accept, so requests walk a ladder: a JSON schema
``format`` first, then ``"json"`` mode, then no format at all. Servers that
reject the ``think`` field get the whole ladder again without it.
"""

from __future__ import annotations

import copy
import json
import re
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from photo_sorter.cancellation import CancellationToken
from photo_sorter.categories import CATEGORY_KEYS, CategoryKey, Scores
from utils.logging import get_logger

LOGGER = get_logger(__name__)

DEFAULT_TAG = "기타"
DEFAULT_CAPTION = "설명 없음"
CONNECTION_OK = "연결 성공"
LOG_CONTENT_LIMIT = 20000

_CATEGORY_NAMES = [key.value for key in CATEGORY_KEYS]

JSON_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "category": {"type": "string", "enum": _CATEGORY_NAMES},
        "scores": {
            "type": "object",
            "additionalProperties": False,
            "properties": {name: {"type": "number", "minimum": 0, "maximum": 1} for name in _CATEGORY_NAMES},
            "required": _CATEGORY_NAMES,
        },
        "tags_ko": {"type": "array", "minItems": 0, "maxItems": 12, "items": {"type": "string"}},
        "caption_ko": {"type": "string"},
        "text_in_image_ko": {"type": "string"},
    },
    "required": ["category", "scores", "tags_ko", "caption_ko", "text_in_image_ko"],
}

SYSTEM_PROMPT = (
    "You are a strict JSON generator. Return ONLY a JSON object, no markdown, no prose, no code fences. "
    "IMPORTANT: For tags_ko, caption_ko, text_in_image_ko you MUST output Korean only (Hangul). "
    "Do NOT use Chinese characters(Hanja), Japanese, or English. If any non-Korean text appears in the image, "
    "translate it to Korean; if you cannot translate reliably, output an empty string for text_in_image_ko."
)

USER_PROMPT = (
    "Analyze the image and output JSON with EXACT keys: "
    '{"category": "' + "|".join(_CATEGORY_NAMES) + '", '
    '"scores": {' + ", ".join(f'"{name}": number' for name in _CATEGORY_NAMES) + "}, "
    '"tags_ko": string[], "caption_ko": string, "text_in_image_ko": string}. '
    "tags_ko and caption_ko MUST be Korean(Hangul) only. scores must be between 0 and 1 and sum to 1."
)

_FORMAT_HINTS = ("format", "json schema", "schema", "expected", "unknown field")
_NON_KOREAN = re.compile(
    r"[^ᄀ-ᇿ㄰-㆏가-힣0-9 \n\t.,!?:;\-_/\\()\[\]{}\"'“”’‘·…—]"
)


class OllamaError(RuntimeError):
    """Raised for HTTP or protocol failures talking to Ollama."""


class OllamaParseError(ValueError):
    """Raised when model output is not the expected JSON object."""


@dataclass(frozen=True)
class ModelOutput:
    """Parsed model answer."""

    category: CategoryKey
    scores: Scores
    tags_ko: list[str] = field(default_factory=list)
    caption_ko: str = DEFAULT_CAPTION
    text_in_image_ko: str = ""


def strip_code_fences(text: str) -> str:
    trimmed = text.strip()
    for prefix in ("```json", "```JSON", "```"):
        if trimmed.startswith(prefix):
            trimmed = trimmed[len(prefix) :]
            break
    if trimmed.endswith("```"):
        trimmed = trimmed[:-3]
    return trimmed.strip()


def extract_first_json_object(text: str) -> str | None:
    """Return the first balanced ``{...}`` span, ignoring braces before it."""

    start: int | None = None
    depth = 0
    for index, char in enumerate(text):
        if char == "{":
            if start is None:
                start = index
            depth += 1
        elif char == "}" and start is not None:
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def sanitize_korean_only(text: str) -> str:
    """Keep Hangul, digits, whitespace, and basic punctuation."""

    return _NON_KOREAN.sub("", text).strip()


def parse_model_output(content: str) -> ModelOutput:
    """Parse the model's JSON answer into a :class:`ModelOutput`."""

    content = strip_code_fences(content)
    candidate = extract_first_json_object(content) or content
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise OllamaParseError(f"parse model json: {exc} | head: {content[:220]}") from exc
    if not isinstance(parsed, dict):
        raise OllamaParseError(f"model json is not an object | head: {content[:220]}")

    raw_category = parsed.get("category")
    raw_scores = parsed.get("scores")
    if isinstance(raw_scores, dict):
        scores = Scores(
            {
                key: value
                for key, value in raw_scores.items()
                if isinstance(value, (int, float)) and not isinstance(value, bool)
            }
        )
    elif isinstance(raw_category, str):
        scores = Scores.one_hot(CategoryKey.parse(raw_category))
    else:
        raise OllamaParseError("scores missing")

    category = CategoryKey.parse(raw_category) if isinstance(raw_category, str) else scores.top()[0]

    raw_tags = parsed.get("tags_ko")
    tags = [sanitize_korean_only(tag) for tag in raw_tags if isinstance(tag, str)] if isinstance(raw_tags, list) else []
    tags = [tag for tag in tags if tag] or [DEFAULT_TAG]

    raw_caption = parsed.get("caption_ko")
    caption = sanitize_korean_only(raw_caption) if isinstance(raw_caption, str) else ""
    raw_text = parsed.get("text_in_image_ko")
    text_in_image = sanitize_korean_only(raw_text) if isinstance(raw_text, str) else ""

    return ModelOutput(
        category=category,
        scores=scores,
        tags_ko=tags,
        caption_ko=caption or DEFAULT_CAPTION,
        text_in_image_ko=text_in_image,
    )


def _message_content(payload: Any) -> str | None:
    """``message.content`` of a chat payload, or None when the shape is wrong."""

    if not isinstance(payload, dict):
        return None
    message = payload.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    return content if isinstance(content, str) else None


def _truncate(text: str, limit: int = LOG_CONTENT_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "\n…(truncated)…"


def _is_format_problem(body: str) -> bool:
    lowered = body.lower()
    return any(hint in lowered for hint in _FORMAT_HINTS)


def _is_think_unsupported(body: str) -> bool:
    lowered = body.lower()
    return "unknown field" in lowered and "think" in lowered


def _error_for(status_code: int, body: str, model: str) -> OllamaError:
    lowered = body.lower()
    if status_code == 404 and "model" in lowered:
        return OllamaError(f"ollama model not found ({model}). Run `ollama pull {model}` then retry. raw: {body}")
    if "does not support image" in lowered or "images are not supported" in lowered:
        return OllamaError(
            f"ollama model does not support images ({model}). Choose a vision model (e.g. llava / qwen2.5vl). raw: {body}"
        )
    return OllamaError(f"ollama error {status_code}: {body}")


def build_chat_body(model: str, base64_jpeg: str, *, stream: bool, send_think_false: bool) -> dict[str, Any]:
    """Build the request body without a ``format`` field.

    ``send_think_false`` adds ``"think": false`` to switch reasoning off; when
    reasoning is wanted the field is simply omitted.
    """

    body: dict[str, Any] = {
        "model": model,
        "stream": stream,
        "options": {"temperature": 0},
        "messages": [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": USER_PROMPT, "images": [base64_jpeg]},
        ],
    }
    if send_think_false:
        body["think"] = False
    return body


def _with_format(body: dict[str, Any], fmt: Any) -> dict[str, Any]:
    variant = copy.deepcopy(body)
    if fmt is not None:
        variant["format"] = fmt
    return variant


async def _next_line(lines: AsyncIterator[str]) -> str | None:
    try:
        return await lines.__anext__()
    except StopAsyncIteration:
        return None


class OllamaClient:
    """Async client for the subset of the Ollama API used here."""

    def __init__(
        self,
        base_url: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    def _client(self, timeout: float | None) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, transport=self._transport, timeout=timeout)

    @property
    def chat_url(self) -> str:
        return f"{self.base_url}/api/chat"

    async def _post(
        self, client: httpx.AsyncClient, body: dict[str, Any], token: CancellationToken
    ) -> httpx.Response:
        return await token.race(client.post("/api/chat", json=body))

    async def _post_ladder(
        self, client: httpx.AsyncClient, body: dict[str, Any], token: CancellationToken
    ) -> httpx.Response:
        response = await self._post(client, _with_format(body, JSON_SCHEMA), token)
        if response.is_success or not _is_format_problem(response.text):
            return response
        LOGGER.info("ollama_format_retry", extra={"format": "json", "status": response.status_code})
        response = await self._post(client, _with_format(body, "json"), token)
        if response.is_success:
            return response
        LOGGER.info("ollama_format_retry", extra={"format": None, "status": response.status_code})
        return await self._post(client, body, token)

    async def classify(
        self,
        model: str,
        think: bool,
        base64_jpeg: str,
        token: CancellationToken,
    ) -> tuple[ModelOutput, str]:
        """Classify one image and return the parsed output plus a diagnostic log."""

        if not model.strip():
            raise OllamaError("ollama model is empty")

        body = build_chat_body(model, base64_jpeg, stream=False, send_think_false=not think)
        async with self._client(timeout=None) as client:
            response = await self._post_ladder(client, body, token)
            if not response.is_success and "think" in body and _is_think_unsupported(response.text):
                LOGGER.info("ollama_think_retry", extra={"model": model})
                body = build_chat_body(model, base64_jpeg, stream=False, send_think_false=False)
                response = await self._post_ladder(client, body, token)

        if not response.is_success:
            raise _error_for(response.status_code, response.text, model)

        try:
            outer = response.json()
        except json.JSONDecodeError as exc:
            raise OllamaError(f"invalid ollama response: {exc}") from exc
        content = _message_content(outer)
        if not isinstance(content, str):
            raise OllamaError("missing message content")

        try:
            output = parse_model_output(content)
        except OllamaParseError:
            output = parse_model_output(response.text.strip())

        log = f"url: {self.chat_url}\nmodel: {model}\nthink: {str(think).lower()}\n\nmessage.content:\n{_truncate(content)}\n"
        return output, log

    async def _open_stream(
        self, client: httpx.AsyncClient, body: dict[str, Any], token: CancellationToken
    ) -> httpx.Response:
        request = client.build_request("POST", "/api/chat", json=body)
        return await token.race(client.send(request, stream=True))

    async def _read_error(self, response: httpx.Response, token: CancellationToken) -> str:
        try:
            await token.race(response.aread())
        finally:
            await response.aclose()
        return response.text

    async def _stream_ladder(
        self, client: httpx.AsyncClient, body: dict[str, Any], token: CancellationToken
    ) -> tuple[httpx.Response | None, int, str]:
        """Open a successful stream or return the last failure status and body."""

        response = await self._open_stream(client, _with_format(body, JSON_SCHEMA), token)
        if response.is_success:
            return response, response.status_code, ""
        text = await self._read_error(response, token)

        if _is_format_problem(text):
            response = await self._open_stream(client, _with_format(body, "json"), token)
            if response.is_success:
                return response, response.status_code, ""
            await self._read_error(response, token)

        response = await self._open_stream(client, body, token)
        if response.is_success:
            return response, response.status_code, ""
        return None, response.status_code, await self._read_error(response, token)

    async def classify_streaming(
        self,
        model: str,
        think: bool,
        base64_jpeg: str,
        token: CancellationToken,
        on_delta: Callable[[str], None],
    ) -> tuple[ModelOutput, str]:
        """Stream the answer, forwarding each content delta to ``on_delta``."""

        if not model.strip():
            raise OllamaError("ollama model is empty")

        body = build_chat_body(model, base64_jpeg, stream=True, send_think_false=not think)
        async with self._client(timeout=None) as client:
            response, status_code, error_text = await self._stream_ladder(client, body, token)
            if response is None and "think" in body and _is_think_unsupported(error_text):
                LOGGER.info("ollama_think_retry", extra={"model": model, "stream": True})
                body = build_chat_body(model, base64_jpeg, stream=True, send_think_false=False)
                response, status_code, error_text = await self._stream_ladder(client, body, token)
            if response is None:
                raise _error_for(status_code, error_text, model)

            accumulated: list[str] = []
            try:
                lines = response.aiter_lines()
                while True:
                    line = await token.race(_next_line(lines))
                    if line is None:
                        break
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if not isinstance(chunk, dict):
                        continue
                    delta = _message_content(chunk) or ""
                    if delta:
                        accumulated.append(delta)
                        on_delta(delta)
                    if chunk.get("done") is True:
                        content = "".join(accumulated).strip()
                        output = parse_model_output(content)
                        log = (
                            f"url: {self.chat_url}\nmodel: {model}\nthink: {str(think).lower()}\nstream: true\n\n"
                            f"message.content(accumulated):\n{_truncate(content)}\n"
                        )
                        return output, log
            finally:
                await response.aclose()

        raise OllamaError("ollama stream ended unexpectedly")

    async def test_connection(self) -> str:
        """Check that the server answers ``/api/tags``."""

        async with self._client(timeout=5.0) as client:
            response = await client.get("/api/tags")
        if not response.is_success:
            raise OllamaError(f"ollama error {response.status_code}: {response.text}")
        return CONNECTION_OK

    async def list_models(self) -> list[str]:
        """Return the sorted, de-duplicated names of installed models."""

        async with self._client(timeout=10.0) as client:
            response = await client.get("/api/tags")
        if not response.is_success:
            raise OllamaError(f"ollama error {response.status_code}: {response.text}")

        payload = response.json()
        models = payload.get("models") if isinstance(payload, dict) else None
        if not isinstance(models, list):
            raise OllamaError("missing models field")

        names: set[str] = set()
        for entry in models:
            if not isinstance(entry, dict):
                continue
            name = entry.get("name") or entry.get("model")
            if isinstance(name, str):
                names.add(name)
        return sorted(names)


__all__ = [
    "CONNECTION_OK",
    "DEFAULT_CAPTION",
    "DEFAULT_TAG",
    "JSON_SCHEMA",
    "ModelOutput",
    "OllamaClient",
    "OllamaError",
    "OllamaParseError",
    "build_chat_body",
    "extract_first_json_object",
    "parse_model_output",
    "sanitize_korean_only",
    "strip_code_fences",
]
