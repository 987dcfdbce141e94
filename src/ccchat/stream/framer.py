"""Line framing — turn arbitrary stdout chunks into newline-delimited records."""

from __future__ import annotations

import codecs
import logging
from collections.abc import AsyncIterable, AsyncIterator

logger = logging.getLogger(__name__)


class LineFramer:
    """Incremental splitter for newline-delimited text.

    Chunks may end anywhere: inside a record or inside a multi-byte
    UTF-8 sequence.  Complete records are returned without their
    trailing ``\\n``; the unterminated tail is held until more data
    arrives.  Only ``close()`` gives up on a tail that never got its
    newline.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self._closed = False

    @property
    def pending(self) -> str:
        """Decoded characters waiting for a newline."""
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[str]:
        """Add *chunk* and return every record it completed, in order."""
        if self._closed:
            msg = "LineFramer is closed"
            raise RuntimeError(msg)
        if isinstance(chunk, bytes):
            text = self._decoder.decode(chunk)
        else:
            text = chunk
        if not text:
            return []
        self._buffer += text
        if "\n" not in text:
            return []
        *records, self._buffer = self._buffer.split("\n")
        return records

    def close(self) -> list[str]:
        """Signal end of stream.

        Flushes the decoder and discards any trailing partial record.
        Returns records completed by the flush (normally none).
        """
        if self._closed:
            return []
        self._closed = True
        records: list[str] = []
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._buffer += tail
            *records, self._buffer = self._buffer.split("\n")
        if self._buffer:
            logger.debug(
                "discarding %d chars of unterminated output at end of stream",
                len(self._buffer),
            )
            self._buffer = ""
        return records


async def frame_records(
    chunks: AsyncIterable[bytes | str],
    framer: LineFramer | None = None,
) -> AsyncIterator[str]:
    """Lazily yield complete records from an async chunk source."""
    framer = framer if framer is not None else LineFramer()
    async for chunk in chunks:
        for record in framer.feed(chunk):
            yield record
    for record in framer.close():
        yield record
