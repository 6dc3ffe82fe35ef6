"""Per-step accumulation of streamed output fragments."""

from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType


class StreamingTokenBuffer:
    """Concatenated text per step id, alive only while the step is mid-execution."""

    def __init__(self) -> None:
        self._chunks: dict[str, str] = {}
        self._view = MappingProxyType(self._chunks)

    def append(self, step_id: str, chunk: str) -> None:
        self._chunks[step_id] = self._chunks.get(step_id, "") + chunk

    def clear(self, step_id: str) -> None:
        self._chunks.pop(step_id, None)

    def clear_all(self) -> None:
        self._chunks.clear()

    def get(self, step_id: str) -> str | None:
        return self._chunks.get(step_id)

    @property
    def entries(self) -> Mapping[str, str]:
        """Read-only live view for consumers."""
        return self._view

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._chunks

    def __len__(self) -> int:
        return len(self._chunks)
