"""Unit tests for event framing."""

import asyncio

import pytest

from coach_stream.core.framing import (
    EventFramer,
    EventKind,
    EventRecord,
    iter_event_records,
    parse_event_record,
)

STREAM = (
    'event: data\ndata: {"messages": [{"type": "ai", "content": "héllo 👋"}]}\n\n'
    'event: metadata\ndata: {"run_id": "r1"}\n\n'
    ": keep-alive comment\n\n"
    "event: custom\ndata: ignored-by-dispatch\n\n"
    "event: end\ndata: {}\n\n"
)


def _frame(chunks):
    framer = EventFramer()
    records = []
    for chunk in chunks:
        records.extend(framer.feed(chunk))
    records.extend(framer.flush())
    return records


def _bytes_one_at_a_time(data: bytes):
    return [data[i : i + 1] for i in range(len(data))]


class TestParseEventRecord:
    def test_event_and_data(self):
        record = parse_event_record('event: metadata\ndata: {"a": 1}')
        assert record == EventRecord(kind=EventKind.METADATA, event="metadata", payload='{"a": 1}')

    def test_field_names_are_case_insensitive(self):
        record = parse_event_record("EVENT: End\nDATA: x")
        assert record.kind == EventKind.END
        assert record.payload == "x"

    def test_multiple_data_lines_are_joined(self):
        record = parse_event_record("event: data\ndata: first\ndata: second")
        assert record.payload == "first\nsecond"

    def test_default_event_is_data(self):
        record = parse_event_record("data: {}")
        assert record.event == "message"
        assert record.kind == EventKind.DATA

    def test_no_data_lines_yields_none(self):
        assert parse_event_record("event: data\nid: 7\nretry: 100") is None

    def test_comments_and_unknown_fields_ignored(self):
        record = parse_event_record(": ping\nid: 3\nevent: data\nretry: 10\ndata: ok")
        assert record.payload == "ok"

    def test_unknown_event_name(self):
        assert parse_event_record("event: values\ndata: {}").kind == EventKind.UNKNOWN


class TestEventFramer:
    def test_single_chunk(self):
        records = _frame([STREAM.encode()])
        assert [r.event for r in records] == ["data", "metadata", "custom", "end"]

    def test_chunking_invariance(self):
        data = STREAM.encode()
        expected = _frame([data])
        assert _frame(_bytes_one_at_a_time(data)) == expected
        for size in (2, 3, 7, 16, 64):
            chunks = [data[i : i + size] for i in range(0, len(data), size)]
            assert _frame(chunks) == expected

    def test_crlf_stream_matches_lf_stream(self):
        crlf = STREAM.replace("\n", "\r\n").encode()
        expected = _frame([STREAM.encode()])
        assert _frame([crlf]) == expected
        assert _frame(_bytes_one_at_a_time(crlf)) == expected

    def test_multibyte_character_split_across_chunks(self):
        data = 'data: {"t": "👋"}\n\n'.encode()
        split = data.index("👋".encode()) + 2
        records = _frame([data[:split], data[split:]])
        assert records[0].payload == '{"t": "👋"}'

    def test_partial_record_is_buffered(self):
        framer = EventFramer()
        assert framer.feed(b"event: data\ndata: {") == []
        assert framer.buffered == "event: data\ndata: {"
        records = framer.feed(b"}\n\n")
        assert [r.payload for r in records] == ["{}"]
        assert framer.record_count == 1

    def test_flush_parses_unterminated_tail(self):
        framer = EventFramer()
        records = framer.feed(b"event: data\ndata: 1\n\nevent: end\ndata: {}")
        assert [r.payload for r in records] == ["1"]
        tail = framer.flush()
        assert [r.kind for r in tail] == [EventKind.END]
        assert framer.flush() == []

    def test_blank_records_are_skipped(self):
        assert _frame([b"\n\n\n\ndata: x\n\n\n\n"])[0].payload == "x"


async def _aiter(chunks):
    for chunk in chunks:
        await asyncio.sleep(0)
        yield chunk


class TestIterEventRecords:
    @pytest.mark.asyncio
    async def test_yields_records_in_order(self):
        records = [r async for r in iter_event_records(_aiter([STREAM.encode()]))]
        assert [r.event for r in records] == ["data", "metadata", "custom", "end"]

    @pytest.mark.asyncio
    async def test_stops_when_cancelled(self):
        cancel = asyncio.Event()
        seen = []
        async for record in iter_event_records(_aiter([STREAM.encode()]), cancel):
            seen.append(record)
            cancel.set()
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_cancelled_stream_does_not_flush_tail(self):
        cancel = asyncio.Event()

        async def chunks():
            yield b"data: 1\n\n"
            cancel.set()
            yield b"data: 2"

        records = [r async for r in iter_event_records(chunks(), cancel)]
        assert [r.payload for r in records] == ["1"]

    @pytest.mark.asyncio
    async def test_transport_errors_propagate(self):
        async def chunks():
            yield b"data: 1\n\n"
            raise ConnectionError("reset by peer")

        with pytest.raises(ConnectionError):
            async for _ in iter_event_records(chunks()):
                pass
