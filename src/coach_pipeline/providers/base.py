from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from typing import Protocol

# Stop reasons that mean the model finished on its own.
NORMAL_STOP_REASONS = frozenset({"STOP", "FINISH_REASON_UNSPECIFIED", "END_TURN"})


@dataclass(frozen=True, slots=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return int(self.input_tokens) + int(self.output_tokens)


@dataclass(frozen=True, slots=True)
class StreamFragment:
    text: str = ""
    # Usage is cumulative when present; absent on most fragments.
    usage: Usage | None = None
    stop_reason: str | None = None


@dataclass(frozen=True, slots=True)
class Completion:
    text: str
    usage: Usage | None = None
    stop_reason: str | None = None


@dataclass(frozen=True, slots=True)
class RemoteFile:
    """A file staged on the provider side, referenced by later generate calls."""

    name: str
    uri: str
    mime_type: str
    state: str = "ACTIVE"


class AnalysisProvider(Protocol):
    """
    The generative-AI capability the pipeline depends on:
    stage audio, ask for text or a JSON document, report token usage.

    Rate limits surface as `coach_pipeline.errors.RateLimitError`;
    everything else as `ProviderError` (or any exception).
    """

    model: str

    def upload(self, data: bytes, *, mime_type: str, display_name: str) -> RemoteFile: ...

    def get_file(self, name: str) -> RemoteFile: ...

    def delete_file(self, name: str) -> None: ...

    def generate(
        self,
        *,
        prompt: str,
        audio: RemoteFile | None,
        temperature: float,
        max_output_tokens: int,
    ) -> Completion: ...

    def generate_stream(
        self,
        *,
        prompt: str,
        audio: RemoteFile | None,
        temperature: float,
        max_output_tokens: int,
        json_mode: bool = False,
    ) -> Iterator[StreamFragment]: ...
