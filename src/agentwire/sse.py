"""Server-Sent Events frame codec.

Both sides of the chat stream speak the same line format: every payload is
a ``data: <payload>`` line followed by a blank line, and the stream closes
with ``data: [DONE]``.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE = "[DONE]"


def encode_frame(payload: str) -> str:
    """Wrap a payload string in a single SSE data frame."""
    return f"{DATA_PREFIX}{payload}\n\n"


def encode_json_frame(obj: Any) -> str:
    return encode_frame(json.dumps(obj, ensure_ascii=False, default=str))


def encode_terminal() -> str:
    """Return the frame that closes a stream."""
    return encode_frame(DONE)


def _extract_payload(line: str) -> str | None:
    if line.endswith("\r"):
        line = line[:-1]
    if not line.startswith(DATA_PREFIX):
        return None
    return line[len(DATA_PREFIX):].strip()


async def decode_frames(
    byte_chunks: AsyncIterable[bytes | str],
) -> AsyncIterator[str]:
    """Yield payload strings from a chunked SSE byte stream.

    Chunk boundaries carry no meaning: text is buffered until a newline
    arrives, and the trailing partial line waits for the next chunk.  Lines
    without the ``data: `` prefix are ignored.  The sequence ends at the
    ``[DONE]`` sentinel (not yielded) or when the transport closes; a
    partial line left over at close is discarded.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    async for chunk in byte_chunks:
        if not chunk:
            continue
        if isinstance(chunk, str):
            buffer += chunk
        else:
            buffer += decoder.decode(chunk)
        *lines, buffer = buffer.split("\n")
        for line in lines:
            payload = _extract_payload(line)
            if not payload:
                continue
            if payload == DONE:
                return
            yield payload
    if buffer:
        logger.debug("Discarding %d buffered characters at stream close", len(buffer))
