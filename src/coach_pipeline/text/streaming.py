from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass

from coach_pipeline.providers.base import NORMAL_STOP_REASONS, Completion, StreamFragment, Usage
from coach_pipeline.utils.log import logger


@dataclass(frozen=True, slots=True)
class StreamResult:
    text: str
    usage: Usage | None
    stop_reason: str | None
    fragments: int = 0

    @property
    def truncated(self) -> bool:
        return bool(self.stop_reason) and str(self.stop_reason).upper() not in NORMAL_STOP_REASONS

    @property
    def warning(self) -> str | None:
        if not self.truncated:
            return None
        return f"Model output stopped early ({self.stop_reason}); result may be incomplete"


def progress_message(label: str, chars: int) -> str:
    return f"{label}... {chars / 1000:.1f}k chars received"


class StreamAccumulator:
    """
    Folds a provider's fragment stream into one StreamResult.

    `on_checkpoint(message)` fires every `checkpoint_every` fragments with the
    running length, so long generations show progress on the job record.
    """

    def __init__(
        self,
        *,
        checkpoint_every: int = 5,
        on_checkpoint: Callable[[str], None] | None = None,
        label: str = "Generating",
    ) -> None:
        self.checkpoint_every = max(1, int(checkpoint_every))
        self.on_checkpoint = on_checkpoint
        self.label = label

    def consume(self, fragments: Iterable[StreamFragment]) -> StreamResult:
        parts: list[str] = []
        chars = 0
        usage: Usage | None = None
        stop_reason: str | None = None
        n = 0
        for frag in fragments:
            n += 1
            if frag.text:
                parts.append(frag.text)
                chars += len(frag.text)
            if frag.usage is not None:
                usage = frag.usage
            if frag.stop_reason:
                stop_reason = str(frag.stop_reason)
            if self.on_checkpoint is not None and n % self.checkpoint_every == 0:
                self.on_checkpoint(progress_message(self.label, chars))
        result = StreamResult(text="".join(parts), usage=usage, stop_reason=stop_reason, fragments=n)
        if result.truncated:
            logger.warning("stream_truncated", stop_reason=stop_reason, chars=chars, fragments=n)
        return result

    def consume_completion(self, completion: Completion) -> StreamResult:
        return self.consume(
            [
                StreamFragment(
                    text=completion.text or "",
                    usage=completion.usage,
                    stop_reason=completion.stop_reason,
                )
            ]
        )
