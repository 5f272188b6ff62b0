"""JSONL readers and sinks for messages entering and leaving the pipeline."""
from __future__ import annotations

from pathlib import Path
from typing import BinaryIO, Iterator, Optional

import orjson
from pydantic import ValidationError

from geofix.observability.metrics import MetricsRegistry
from geofix.storage.models import Message


def read_messages(path: Path, *, metrics: Optional[MetricsRegistry] = None) -> Iterator[Message]:
    """Yield messages from a JSONL file, one per non-blank line."""
    with path.open("rb") as handle:
        for lineno, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                message = Message.model_validate(orjson.loads(line))
            except (orjson.JSONDecodeError, ValidationError) as exc:
                raise ValueError(f"Invalid message on line {lineno} of {path}: {exc}") from exc
            if metrics is not None:
                metrics.incr("messages_read")
            yield message


class JsonlSink:
    """Downstream observer that writes each message as it arrives."""

    def __init__(self, path: Path, *, metrics: Optional[MetricsRegistry] = None) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self.path = path
        self.count = 0
        self.completed = False
        self.error: Optional[BaseException] = None
        self._metrics = metrics
        self._handle: Optional[BinaryIO] = path.open("wb")

    def on_next(self, message: Message) -> None:
        if self._handle is None:
            raise RuntimeError(f"Sink for {self.path} is closed")
        payload = message.model_dump(mode="json", exclude_unset=True)
        self._handle.write(orjson.dumps(payload))
        self._handle.write(b"\n")
        self.count += 1
        if self._metrics is not None:
            self._metrics.incr("messages_written")
            if message.has_coordinates:
                self._metrics.incr("messages_located")

    def on_completed(self) -> None:
        self.completed = True
        self.close()

    def on_error(self, error: BaseException) -> None:
        self.error = error
        self.close()

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None
