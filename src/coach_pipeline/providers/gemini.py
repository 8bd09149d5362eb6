from __future__ import annotations

import io
from collections.abc import Iterator
from typing import Any

from google import genai
from google.genai import types

from coach_pipeline.errors import ConfigurationError, ProviderError, RateLimitError
from coach_pipeline.providers.base import Completion, RemoteFile, StreamFragment, Usage
from coach_pipeline.utils.log import logger

_RATE_LIMIT_KEYWORDS = (
    "rate limit",
    "quota",
    "429",
    "resource exhausted",
    "resource_exhausted",
    "too many requests",
)


def is_rate_limit_error(ex: BaseException) -> bool:
    if getattr(ex, "code", None) == 429 or getattr(ex, "status_code", None) == 429:
        return True
    s = str(ex).lower()
    return any(kw in s for kw in _RATE_LIMIT_KEYWORDS)


def _translate(ex: Exception, what: str) -> ProviderError:
    if is_rate_limit_error(ex):
        return RateLimitError(f"{what}: {ex}")
    return ProviderError(f"{what}: {ex}")


def _usage(resp: Any) -> Usage | None:
    um = getattr(resp, "usage_metadata", None)
    if um is None:
        return None
    return Usage(
        input_tokens=int(getattr(um, "prompt_token_count", 0) or 0),
        output_tokens=int(getattr(um, "candidates_token_count", 0) or 0),
    )


def _stop_reason(resp: Any) -> str | None:
    cands = getattr(resp, "candidates", None) or []
    if not cands:
        return None
    fr = getattr(cands[0], "finish_reason", None)
    if fr is None:
        return None
    return str(getattr(fr, "name", fr))


def _remote(f: Any) -> RemoteFile:
    state = getattr(f, "state", None)
    return RemoteFile(
        name=str(getattr(f, "name", "") or ""),
        uri=str(getattr(f, "uri", "") or ""),
        mime_type=str(getattr(f, "mime_type", "") or ""),
        state=str(getattr(state, "name", state) or "ACTIVE"),
    )


class GeminiProvider:
    """AnalysisProvider backed by the google-genai client."""

    def __init__(self, *, api_key: str, model: str, client: Any | None = None) -> None:
        if not api_key and client is None:
            raise ConfigurationError("GEMINI_API_KEY is not configured")
        self.model = model
        self.client = client if client is not None else genai.Client(api_key=api_key)
        logger.info("gemini_provider_initialized", model=model)

    def _contents(self, prompt: str, audio: RemoteFile | None) -> list[types.Content]:
        parts: list[types.Part] = []
        if audio is not None:
            parts.append(types.Part.from_uri(file_uri=audio.uri, mime_type=audio.mime_type))
        parts.append(types.Part.from_text(text=prompt))
        return [types.Content(role="user", parts=parts)]

    def upload(self, data: bytes, *, mime_type: str, display_name: str) -> RemoteFile:
        try:
            f = self.client.files.upload(
                file=io.BytesIO(data),
                config=types.UploadFileConfig(mime_type=mime_type, display_name=display_name),
            )
        except Exception as ex:
            raise _translate(ex, "file upload failed") from ex
        return _remote(f)

    def get_file(self, name: str) -> RemoteFile:
        try:
            return _remote(self.client.files.get(name=name))
        except Exception as ex:
            raise _translate(ex, "file lookup failed") from ex

    def delete_file(self, name: str) -> None:
        try:
            self.client.files.delete(name=name)
        except Exception as ex:
            raise _translate(ex, "file delete failed") from ex

    def generate(
        self,
        *,
        prompt: str,
        audio: RemoteFile | None,
        temperature: float,
        max_output_tokens: int,
    ) -> Completion:
        try:
            resp = self.client.models.generate_content(
                model=self.model,
                contents=self._contents(prompt, audio),
                config=types.GenerateContentConfig(
                    temperature=float(temperature),
                    max_output_tokens=int(max_output_tokens),
                ),
            )
        except Exception as ex:
            raise _translate(ex, "generate_content failed") from ex
        return Completion(text=str(resp.text or ""), usage=_usage(resp), stop_reason=_stop_reason(resp))

    def generate_stream(
        self,
        *,
        prompt: str,
        audio: RemoteFile | None,
        temperature: float,
        max_output_tokens: int,
        json_mode: bool = False,
    ) -> Iterator[StreamFragment]:
        cfg = types.GenerateContentConfig(
            temperature=float(temperature),
            max_output_tokens=int(max_output_tokens),
            response_mime_type=("application/json" if json_mode else None),
        )
        try:
            stream = self.client.models.generate_content_stream(
                model=self.model,
                contents=self._contents(prompt, audio),
                config=cfg,
            )
            for chunk in stream:
                yield StreamFragment(
                    text=str(getattr(chunk, "text", "") or ""),
                    usage=_usage(chunk),
                    stop_reason=_stop_reason(chunk),
                )
        except Exception as ex:
            raise _translate(ex, "generate_content_stream failed") from ex
