import struct
import zlib

import pytest
import snappy

from mongotape.compression import CompressedOp, Compressor, compress, decompress
from mongotape.data_stream import HEADER_SIZE
from mongotape.exceptions import NotAMessage, UnsupportedCompressor
from mongotape.opcode import OpCode
from mongotape.ops import BodySection, MsgOp, QueryOp
from mongotape.stream_reader import parse_message


def compressed_message(original_opcode: int, compressor_id: int, body: bytes, size: int) -> bytes:
    payload = struct.pack("<iiB", original_opcode, size, compressor_id) + body
    header = struct.pack("<iiii", HEADER_SIZE + len(payload), 1, 0, OpCode.OP_COMPRESSED)
    return header + payload


@pytest.mark.parametrize(
    "compressor_id", [Compressor.NOOP, Compressor.SNAPPY, Compressor.ZLIB, Compressor.ZSTD]
)
def test_compressed_msg(compressor_id: int):
    msg = MsgOp(flags=0, sections=[BodySection({"find": "coll", "filter": {}, "$db": "test"})])
    op = CompressedOp(original_opcode=OpCode.OP_MSG, compressor_id=compressor_id, op=msg)
    decoded = parse_message(op.to_bytes())
    assert isinstance(decoded, CompressedOp)
    assert decoded.compressor_id == compressor_id
    assert isinstance(decoded.op, MsgOp)
    assert decoded.equals(msg)
    assert msg.equals(decoded)
    assert decoded.meta().op == "query"
    assert decoded.abbreviated(200) == msg.abbreviated(200)


def test_snappy_query():
    query = QueryOp(flags=0, ns="admin.$cmd", skip=0, limit=-1, query={"ping": 1})
    body = query.to_bytes()[HEADER_SIZE:]
    data = compressed_message(
        OpCode.OP_QUERY, Compressor.SNAPPY, snappy.compress(body), len(body)
    )
    decoded = parse_message(data)
    assert isinstance(decoded, CompressedOp)
    assert decoded.equals(query)
    assert decoded.meta().command == "ping"


def test_unknown_compressor():
    body = QueryOp(flags=0, ns="a.b", skip=0, limit=0, query={}).to_bytes()[HEADER_SIZE:]
    data = compressed_message(OpCode.OP_QUERY, 9, body, len(body))
    with pytest.raises(UnsupportedCompressor) as excinfo:
        parse_message(data)
    assert excinfo.value.compressor_id == 9
    with pytest.raises(UnsupportedCompressor):
        compress(9, body)


def test_corrupt_compressed_body():
    with pytest.raises(NotAMessage):
        decompress(Compressor.ZLIB, b"not zlib data", 100)
    with pytest.raises(NotAMessage):
        decompress(Compressor.SNAPPY, b"\x05\x00", 100)
    data = compressed_message(OpCode.OP_QUERY, Compressor.ZLIB, b"not zlib data", 100)
    with pytest.raises(NotAMessage):
        parse_message(data)


def test_size_mismatch():
    body = QueryOp(flags=0, ns="a.b", skip=0, limit=0, query={}).to_bytes()[HEADER_SIZE:]
    data = compressed_message(OpCode.OP_QUERY, Compressor.NOOP, body, len(body) + 1)
    with pytest.raises(NotAMessage):
        parse_message(data)


def test_nested_compression_is_not_a_message():
    data = compressed_message(OpCode.OP_COMPRESSED, Compressor.NOOP, b"", 0)
    with pytest.raises(NotAMessage):
        parse_message(data)


def test_zlib_output_is_bounded_by_declared_size():
    body = b"\x00" * 1_000_000
    assert len(decompress(Compressor.ZLIB, zlib.compress(body), 100)) == 101
    data = compressed_message(OpCode.OP_QUERY, Compressor.ZLIB, zlib.compress(body), 100)
    with pytest.raises(NotAMessage):
        parse_message(data)
