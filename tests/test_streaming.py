"""
Tests for the status/body multiplexed stream: writer framing and the incremental parser.
"""

import json

import pytest

from booth_agent.concurrency import CancelToken, RequestCancelled
from booth_agent.streaming import STATUS_MARKER, StreamParser, StreamWriter, parse_stream
from booth_agent.utils import extract_items


async def written_bytes(writer: StreamWriter) -> bytes:
    await writer.close()
    return b"".join([chunk async for chunk in writer.chunks()])


async def sample_stream() -> bytes:
    writer = StreamWriter(CancelToken())
    await writer.status("收到请求，正在处理...")
    await writer.padding(64)
    await writer.status("Searching Booth for \"猫耳\", page 1...")
    await writer.write("Here are **three** picks 🐱\n")
    await writer.status("late status")
    await writer.write("tail without newline")
    return await written_bytes(writer)


class TestStreamWriter:

    @pytest.mark.asyncio
    async def test_status_line_is_padded_to_width(self):
        writer = StreamWriter(CancelToken(), status_width=2048)
        await writer.status("hello\nworld")

        data = (await written_bytes(writer)).decode("utf-8")

        assert data.startswith(f"{STATUS_MARKER}hello world")
        assert data.endswith("\n")
        assert data.count("\n") == 1
        assert len(data) == len(STATUS_MARKER) + 2048 + 1

    @pytest.mark.asyncio
    async def test_body_cannot_forge_a_status_line(self):
        writer = StreamWriter(CancelToken())
        await writer.write(f"evil {STATUS_MARKER}fake\n")

        statuses, body = parse_stream([await written_bytes(writer)])

        assert statuses == []
        assert body == "evil fake\n"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "parts, expected_body",
        [
            (["__STAT", "US__:x\n"], "x\n"),
            (["Note: __STAT", "US__:fake status\nreal body"], "Note: fake status\nreal body"),
            (["_", "_", "STATUS_", "_:", "y"], "y"),
            (["__STA__STATUS__:", "TUS__:z"], "z"),
        ],
    )
    async def test_marker_split_across_writes_is_removed(self, parts, expected_body):
        writer = StreamWriter(CancelToken())
        for part in parts:
            await writer.write(part)

        statuses, body = parse_stream([await written_bytes(writer)])

        assert statuses == []
        assert body == expected_body

    @pytest.mark.asyncio
    async def test_held_back_tail_is_released_in_order(self):
        writer = StreamWriter(CancelToken())
        await writer.write("before __")
        await writer.status("step")
        await writer.write("after _")

        text = (await written_bytes(writer)).decode("utf-8")

        assert text.startswith(f"before __{STATUS_MARKER}step ")
        assert text.endswith("\nafter _")
        assert parse_stream([text]) == (["step"], "before __after _")

    @pytest.mark.asyncio
    async def test_json_keeps_marker_text_in_values(self):
        items = [{"title": "Pack __STATUS__: edition", "tags": ["__STATUS__:"]}]
        writer = StreamWriter(CancelToken())
        await writer.write("```json\n")
        await writer.write_json(json.dumps(items, ensure_ascii=False))
        await writer.write("\n```")

        statuses, body = parse_stream([await written_bytes(writer)])

        assert statuses == []
        assert extract_items(body) == items

    @pytest.mark.asyncio
    async def test_writes_after_cancel_raise(self):
        token = CancelToken()
        writer = StreamWriter(token)
        token.cancel()

        with pytest.raises(RequestCancelled):
            await writer.write("late")
        with pytest.raises(RequestCancelled):
            await writer.status("late")

    @pytest.mark.asyncio
    async def test_writes_after_close_are_dropped(self):
        writer = StreamWriter(CancelToken())
        await writer.write("a")
        await writer.close()
        await writer.write("b")

        chunks = [chunk async for chunk in writer.chunks()]

        assert chunks == [b"a"]

    @pytest.mark.asyncio
    async def test_disconnect_cancels_token(self):
        token = CancelToken()
        writer = StreamWriter(token)

        async def gone():
            return True

        chunks = [chunk async for chunk in writer.chunks(gone, poll_interval=0.01)]

        assert chunks == []
        assert token.cancelled


class TestStreamParser:

    @pytest.mark.asyncio
    async def test_single_chunk(self):
        statuses, body = parse_stream([await sample_stream()])

        assert statuses == ["收到请求，正在处理...", 'Searching Booth for "猫耳", page 1...', "late status"]
        assert body.strip() == "Here are **three** picks 🐱\ntail without newline"

    @pytest.mark.asyncio
    async def test_byte_at_a_time_matches_single_chunk(self):
        data = await sample_stream()
        expected = parse_stream([data])

        split = parse_stream([data[i:i + 1] for i in range(len(data))])

        assert split == expected

    @pytest.mark.asyncio
    @pytest.mark.parametrize("size", [2, 3, 5, 7, 11, 100, 2049])
    async def test_any_chunk_size_matches_single_chunk(self, size):
        data = await sample_stream()

        assert parse_stream([data[i:i + size] for i in range(0, len(data), size)]) == parse_stream([data])

    def test_marker_split_across_chunks(self):
        parser = StreamParser()
        events = parser.feed(b"body text__STA")
        assert [(e.kind, e.text) for e in events] == [("body", "body text")]

        events = parser.feed(b"TUS__:work")
        assert events == []

        events = parser.feed(b"ing   \nmore")
        events += parser.close()
        assert [(e.kind, e.text) for e in events] == [("status", "working"), ("body", "more")]

    def test_partial_marker_at_end_of_stream_is_body(self):
        parser = StreamParser()
        events = parser.feed("ends with __STAT") + parser.close()
        assert "".join(e.text for e in events if e.kind == "body") == "ends with __STAT"

    def test_unterminated_status_is_flushed_on_close(self):
        parser = StreamParser()
        events = parser.feed(f"{STATUS_MARKER}almost") + parser.close()
        assert [(e.kind, e.text) for e in events] == [("status", "almost")]

    def test_multibyte_characters_split_mid_sequence(self):
        data = f"{STATUS_MARKER}检索中\n猫耳の衣装".encode("utf-8")
        chunks = [data[i:i + 1] for i in range(len(data))]

        statuses, body = parse_stream(chunks)

        assert statuses == ["检索中"]
        assert body == "猫耳の衣装"
