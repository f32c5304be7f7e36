"""Unit tests for the SSE frame codec."""

import json

import pytest

from agentwire.sse import decode_frames, encode_frame, encode_json_frame, encode_terminal


async def _chunks(*items):
    for item in items:
        yield item


async def _collect(*items) -> list[str]:
    return [p async for p in decode_frames(_chunks(*items))]


class TestEncode:
    def test_encode_frame(self):
        assert encode_frame("abc") == "data: abc\n\n"

    def test_encode_json_frame_keeps_unicode(self):
        frame = encode_json_frame({"text": "héllo"})
        assert frame == 'data: {"text": "héllo"}\n\n'

    def test_terminal(self):
        assert encode_terminal() == "data: [DONE]\n\n"


class TestDecode:
    @pytest.mark.asyncio
    async def test_single_chunk_multiple_frames(self):
        result = await _collect(b'data: {"a": 1}\n\ndata: {"b": 2}\n\n')
        assert result == ['{"a": 1}', '{"b": 2}']

    @pytest.mark.asyncio
    async def test_frame_split_across_chunks(self):
        result = await _collect(b'data: {"a"', b": 1}\n", b"\n")
        assert result == ['{"a": 1}']

    @pytest.mark.asyncio
    async def test_multibyte_character_split_across_chunks(self):
        encoded = 'data: {"t": "日本"}\n\n'.encode()
        # Cut inside the first three-byte character
        cut = encoded.index("日".encode()) + 1
        result = await _collect(encoded[:cut], encoded[cut:])
        assert json.loads(result[0]) == {"t": "日本"}

    @pytest.mark.asyncio
    async def test_stops_at_done_sentinel(self):
        result = await _collect(b"data: one\n\ndata: [DONE]\n\ndata: two\n\n")
        assert result == ["one"]

    @pytest.mark.asyncio
    async def test_ignores_lines_without_prefix(self):
        result = await _collect(b": keepalive\nevent: ping\ndata: x\n\n")
        assert result == ["x"]

    @pytest.mark.asyncio
    async def test_skips_empty_payloads(self):
        result = await _collect(b"data: \n\ndata: y\n\n")
        assert result == ["y"]

    @pytest.mark.asyncio
    async def test_strips_carriage_returns(self):
        result = await _collect(b"data: z\r\n\r\n")
        assert result == ["z"]

    @pytest.mark.asyncio
    async def test_partial_line_at_close_is_discarded(self):
        result = await _collect(b"data: a\n", b"data: incomplete")
        assert result == ["a"]

    @pytest.mark.asyncio
    async def test_accepts_text_chunks(self):
        result = await _collect("data: s\n\n")
        assert result == ["s"]

    @pytest.mark.asyncio
    async def test_empty_chunks_are_skipped(self):
        result = await _collect(b"", b"data: q\n\n", b"")
        assert result == ["q"]
