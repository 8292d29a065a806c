"""One byte stream per request carrying both progress status lines and the reply body.

Wire format: body text is written as-is; a status event is a full line

    __STATUS__:<status text><space padding up to STATUS_LINE_WIDTH>\\n

The padding pushes small writes past proxies that buffer them. StreamParser is
the consumer side: it separates status events from body text no matter how the
bytes are chunked, including a marker or a UTF-8 sequence split across chunks.
"""

import asyncio
import codecs
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Iterable, List, Optional, Tuple, Union

from .concurrency import CancelToken
from .config import INITIAL_PADDING, STATUS_LINE_WIDTH

logger = logging.getLogger(__name__)

STATUS_MARKER = "__STATUS__:"
_CLOSE = object()
_ESCAPED_MARKER = "\\u005f" + STATUS_MARKER[1:]


def escape_marker(json_text: str) -> str:
    """Escape the marker's first character; only valid where it sits inside JSON strings."""
    return json_text.replace(STATUS_MARKER, _ESCAPED_MARKER)


class StreamWriter:
    """Producer side. Every write first checks the request's cancel token."""

    def __init__(self, token: CancelToken, status_width: int = STATUS_LINE_WIDTH) -> None:
        self._token = token
        self._queue: "asyncio.Queue[object]" = asyncio.Queue()
        self._closed = False
        self._pending = ""
        self.status_width = status_width

    @property
    def closed(self) -> bool:
        return self._closed

    async def _put(self, text: str) -> None:
        self._token.raise_if_cancelled()
        if self._closed or not text:
            return
        await self._queue.put(text.encode("utf-8"))

    async def write(self, text: str) -> None:
        """Body text, with status markers removed across write boundaries.

        A tail that could be the start of a marker is held back until the next
        write, status line or close decides what it is.
        """
        data = self._pending + str(text)
        while STATUS_MARKER in data:
            data = data.replace(STATUS_MARKER, "")
        keep = _partial_marker_suffix(data, STATUS_MARKER)
        self._pending = data[len(data) - keep:] if keep else ""
        await self._put(data[:len(data) - keep])

    async def write_json(self, text: str) -> None:
        """JSON text, sent unsanitised except that markers inside strings are \\u-escaped.

        Decoding yields exactly the encoded values. Valid JSON text cannot start
        with the rest of a marker, so a held-back tail is released first.
        """
        await self._release_pending()
        await self._put(escape_marker(text))

    async def _release_pending(self) -> None:
        pending, self._pending = self._pending, ""
        await self._put(pending)

    async def status(self, text: str) -> None:
        await self._release_pending()
        status = " ".join(str(text or "").split())
        pad = max(0, self.status_width - len(status))
        await self._put(f"{STATUS_MARKER}{status}{' ' * pad}\n")
        await self.flush()

    async def padding(self, size: int = INITIAL_PADDING) -> None:
        await self._release_pending()
        await self._put(" " * size + "\n")
        await self.flush()

    async def flush(self) -> None:
        # Yield to the event loop so the server can push queued bytes out.
        await asyncio.sleep(0)

    async def close(self) -> None:
        if self._closed:
            return
        if self._pending and not self._token.cancelled:
            await self._release_pending()
        self._closed = True
        await self._queue.put(_CLOSE)

    async def chunks(
        self,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
        poll_interval: float = 1.0,
    ) -> AsyncIterator[bytes]:
        """Yield written bytes until close; a detected disconnect cancels the token."""
        while True:
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=poll_interval)
            except asyncio.TimeoutError:
                if is_disconnected is not None and await is_disconnected():
                    logger.info("[Stream] Client disconnected")
                    self._token.cancel()
                    return
                continue
            if item is _CLOSE:
                return
            yield item


@dataclass
class StreamEvent:
    kind: str  # "status" | "body"
    text: str


def _partial_marker_suffix(text: str, marker: str) -> int:
    """Length of the longest tail of ``text`` that is a proper prefix of ``marker``."""
    for size in range(min(len(marker) - 1, len(text)), 0, -1):
        if text.endswith(marker[:size]):
            return size
    return 0


class StreamParser:
    """Incremental splitter of a status-multiplexed stream into StreamEvents."""

    def __init__(self, marker: str = STATUS_MARKER) -> None:
        self.marker = marker
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._in_status = False

    def feed(self, chunk: Union[bytes, str]) -> List[StreamEvent]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        return self._drain(final=False)

    def close(self) -> List[StreamEvent]:
        self._buffer += self._decoder.decode(b"", final=True)
        return self._drain(final=True)

    def _drain(self, final: bool) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        while self._buffer:
            if self._in_status:
                end = self._buffer.find("\n")
                if end < 0:
                    if final:
                        events.append(StreamEvent("status", self._buffer.rstrip()))
                        self._buffer = ""
                        self._in_status = False
                    break
                events.append(StreamEvent("status", self._buffer[:end].rstrip()))
                self._buffer = self._buffer[end + 1:]
                self._in_status = False
                continue

            start = self._buffer.find(self.marker)
            if start >= 0:
                if start:
                    events.append(StreamEvent("body", self._buffer[:start]))
                self._buffer = self._buffer[start + len(self.marker):]
                self._in_status = True
                continue

            keep = 0 if final else _partial_marker_suffix(self._buffer, self.marker)
            body = self._buffer[:len(self._buffer) - keep]
            if body:
                events.append(StreamEvent("body", body))
            self._buffer = self._buffer[len(self._buffer) - keep:]
            break
        return events


def parse_stream(chunks: Iterable[Union[bytes, str]]) -> Tuple[List[str], str]:
    """Statuses and the concatenated body of a complete stream."""
    parser = StreamParser()
    events: List[StreamEvent] = []
    for chunk in chunks:
        events.extend(parser.feed(chunk))
    events.extend(parser.close())
    statuses = [e.text for e in events if e.kind == "status"]
    body = "".join(e.text for e in events if e.kind == "body")
    return statuses, body
