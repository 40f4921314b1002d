"""Incremental decoding of ``data: <json>`` event streams into unified chunks."""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx

from llm_endpoint_router.errors import StreamUnreadableError
from llm_endpoint_router.schemas import CompletionChunk

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"

StreamTransform = Callable[[dict[str, Any], str], CompletionChunk | None]


class StreamDecoder:
    """Turns raw stream bytes into CompletionChunks.

    Reads may split a frame, or a multi-byte character, at any byte; the
    trailing partial line is held back until the next ``feed`` or ``flush``.
    One decoder serves exactly one stream.
    """

    def __init__(self, transform: StreamTransform, model: str) -> None:
        self._transform = transform
        self._model = model
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._finished = False
        self.frames_seen = 0
        self.frames_skipped = 0

    def feed(self, data: bytes) -> list[CompletionChunk]:
        if self._finished:
            raise RuntimeError("StreamDecoder cannot be reused after flush().")
        self._buffer += self._decoder.decode(data)
        *lines, self._buffer = self._buffer.split("\n")
        return self._decode_lines(lines)

    def flush(self) -> list[CompletionChunk]:
        if self._finished:
            return []
        self._finished = True
        self._buffer += self._decoder.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        return self._decode_lines(remainder.split("\n"))

    async def decode(self, stream: AsyncIterator[bytes]) -> AsyncIterator[CompletionChunk]:
        try:
            async for data in stream:
                for chunk in self.feed(data):
                    yield chunk
        except httpx.TransportError as exc:
            raise StreamUnreadableError(
                f"Upstream stream could not be read: {exc}",
                details={"frames_seen": self.frames_seen},
            ) from exc
        for chunk in self.flush():
            yield chunk

    def _decode_lines(self, lines: list[str]) -> list[CompletionChunk]:
        chunks: list[CompletionChunk] = []
        for line in lines:
            chunk = self._decode_line(line.strip())
            if chunk is not None:
                chunks.append(chunk)
        return chunks

    def _decode_line(self, line: str) -> CompletionChunk | None:
        if not line or not line.startswith("data:"):
            return None
        payload = line[5:].strip()
        if not payload or payload == DONE_SENTINEL:
            return None

        self.frames_seen += 1
        try:
            event = json.loads(payload)
        except ValueError as exc:
            self.frames_skipped += 1
            logger.warning(
                "stream_frame_unparseable model=%s error=%s frame=%s",
                self._model,
                exc,
                payload[:200],
            )
            return None
        if not isinstance(event, dict):
            self.frames_skipped += 1
            logger.warning(
                "stream_frame_not_object model=%s type=%s",
                self._model,
                type(event).__name__,
            )
            return None

        try:
            return self._transform(event, self._model)
        except (TypeError, ValueError) as exc:
            # pydantic.ValidationError is a ValueError.
            self.frames_skipped += 1
            logger.warning(
                "stream_frame_transform_failed model=%s error=%s", self._model, exc
            )
            return None
