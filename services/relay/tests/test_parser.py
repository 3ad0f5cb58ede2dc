import pytest

from services.relay.app.framing import StreamFormat
from services.relay.app.models import UpstreamChunk, UpstreamChunkKind
from services.relay.app.parser import UpstreamChunkParser
from services.relay.tests.mock_upstream import ndjson_body, sse_body

RECORDS = [
    {"type": "begin"},
    {"type": "chunk", "content": "Héllo ✓"},
    {"type": "item", "content": {"rows": [1, 2]}},
    {"type": "chunk", "content": None},
    {"type": "end"},
]


def _parse_pieces(parser, pieces):
    chunks = []
    for piece in pieces:
        chunks.extend(parser.feed(piece))
    chunks.extend(parser.finish())
    return chunks


def _expected():
    return [UpstreamChunk.from_record(r) for r in RECORDS]


@pytest.mark.parametrize("encode", [sse_body, ndjson_body], ids=["event-stream", "ndjson"])
def test_order_preserved_for_every_split_offset(encode):
    data = encode(RECORDS)
    for offset in range(len(data) + 1):
        parser = UpstreamChunkParser()
        assert _parse_pieces(parser, [data[:offset], data[offset:]]) == _expected(), offset


@pytest.mark.parametrize("encode", [sse_body, ndjson_body], ids=["event-stream", "ndjson"])
def test_byte_at_a_time(encode):
    data = encode(RECORDS)
    parser = UpstreamChunkParser()
    assert _parse_pieces(parser, [data[i:i + 1] for i in range(len(data))]) == _expected()


def test_format_detected_from_first_text():
    sse = UpstreamChunkParser()
    sse.feed(b"\n\ndata: {\"type\":\"begin\"}\n\n")
    assert sse.format == StreamFormat.EVENT_STREAM

    nd = UpstreamChunkParser()
    nd.feed(b'{"type":"begin"}\n')
    assert nd.format == StreamFormat.NDJSON


def test_event_stream_opening_with_keep_alive_comment():
    parser = UpstreamChunkParser()
    body = b': keep-alive\n\nevent: message\ndata: {"type":"chunk","content":"a"}\n\ndata: {"type":"end"}\n\n'
    chunks = _parse_pieces(parser, [body])
    assert parser.format == StreamFormat.EVENT_STREAM
    assert [c.kind for c in chunks] == [UpstreamChunkKind.CHUNK, UpstreamChunkKind.END]
    assert parser.malformed_records == 0


def test_ndjson_final_record_without_newline():
    parser = UpstreamChunkParser()
    chunks = _parse_pieces(parser, [b'{"type":"chunk","content":"a"}\n{"type":"end"}'])
    assert [c.kind for c in chunks] == [UpstreamChunkKind.CHUNK, UpstreamChunkKind.END]


def test_malformed_record_is_skipped():
    parser = UpstreamChunkParser()
    chunks = _parse_pieces(parser, [b'{"type":"chunk","content":"a"}\nnot json\n{"type":"end"}\n'])
    assert [c.kind for c in chunks] == [UpstreamChunkKind.CHUNK, UpstreamChunkKind.END]
    assert parser.malformed_records == 1


def test_unknown_record_types_are_ignored():
    parser = UpstreamChunkParser()
    chunks = _parse_pieces(parser, [b'{"type":"ping"}\n[1,2]\n{"content":"x"}\n{"type":"end"}\n'])
    assert [c.kind for c in chunks] == [UpstreamChunkKind.END]
    assert parser.ignored_records == 3
    assert parser.malformed_records == 0


def test_format_is_not_switched_midstream():
    parser = UpstreamChunkParser()
    chunks = _parse_pieces(parser, [b'{"type":"chunk","content":"a"}\n', b'data: {"type":"chunk","content":"b"}\n\n'])
    assert parser.format == StreamFormat.NDJSON
    assert [c.content for c in chunks] == ["a"]
    assert parser.malformed_records == 1


def test_null_and_missing_content_are_distinguished():
    parser = UpstreamChunkParser()
    chunks = _parse_pieces(parser, [b'{"type":"chunk","content":null}\n{"type":"chunk"}\n'])
    assert chunks[0].has_content and chunks[0].content is None
    assert not chunks[1].has_content


@pytest.mark.asyncio
async def test_parse_async_stream():
    async def source():
        yield b'data: {"type":"chunk","content":"x"}\n'
        yield b'\ndata: {"type":"end"}'

    chunks = [chunk async for chunk in UpstreamChunkParser().parse(source())]
    assert chunks == [
        UpstreamChunk(UpstreamChunkKind.CHUNK, "x", True),
        UpstreamChunk(UpstreamChunkKind.END, None, False),
    ]
