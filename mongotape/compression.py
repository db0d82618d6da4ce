import zlib
from dataclasses import dataclass
from enum import IntEnum
from io import BytesIO
from typing import TYPE_CHECKING

import snappy
import zstandard

from .data_stream import HEADER_SIZE, MessageBuilder, ReadDataStream
from .exceptions import NotAMessage, UnsupportedCompressor
from .op import Op, OpMetadata, MsgHeader
from .opcode import OpCode
from .reply import ReplyContainer

if TYPE_CHECKING:
    from pymongo import MongoClient


class Compressor(IntEnum):
    NOOP = 0
    SNAPPY = 1
    ZLIB = 2
    ZSTD = 3


def decompress(compressor_id: int, data: bytes, uncompressed_size: int) -> bytes:
    try:
        if compressor_id == Compressor.NOOP:
            return data
        if compressor_id == Compressor.SNAPPY:
            return snappy.uncompress(data)
        if compressor_id == Compressor.ZLIB:
            # one byte past the declared size is enough to detect a mismatch
            return zlib.decompressobj().decompress(data, uncompressed_size + 1)
        if compressor_id == Compressor.ZSTD:
            return zstandard.decompress(data, max_output_size=uncompressed_size)
    except (snappy.UncompressError, zlib.error, zstandard.ZstdError) as e:
        raise NotAMessage(f"corrupt compressed body: {e}") from e
    raise UnsupportedCompressor(compressor_id)


def compress(compressor_id: int, data: bytes) -> bytes:
    if compressor_id == Compressor.NOOP:
        return data
    if compressor_id == Compressor.SNAPPY:
        return snappy.compress(data)
    if compressor_id == Compressor.ZLIB:
        return zlib.compress(data)
    if compressor_id == Compressor.ZSTD:
        return zstandard.compress(data)
    raise UnsupportedCompressor(compressor_id)


@dataclass
class CompressedOp(Op):
    """OP_COMPRESSED wrapping any other message.

    Everything but encoding is delegated to the wrapped ``op``, so a compressed
    message compares equal to the same message sent uncompressed.
    """

    opcode = OpCode.OP_COMPRESSED

    original_opcode: int
    compressor_id: int
    op: Op

    def write(self, stream: MessageBuilder):
        inner = MessageBuilder()
        self.op.write(inner)
        body = inner.end()[HEADER_SIZE:]
        self._start(stream)
        stream.write_int32(self.original_opcode)
        stream.write_int32(len(body))
        stream.write_uint8(self.compressor_id)
        stream.write(compress(self.compressor_id, body))
        stream.finish_message()

    @staticmethod
    def read(stream: ReadDataStream):
        from .stream_reader import read_op

        original_opcode = stream.read_int32()
        uncompressed_size = stream.read_int32()
        compressor_id = stream.read_uint8()
        if original_opcode == OpCode.OP_COMPRESSED:
            raise NotAMessage("OP_COMPRESSED cannot wrap itself")
        if uncompressed_size < 0:
            raise NotAMessage(f"negative uncompressed size {uncompressed_size}")
        remaining = stream.remaining
        if remaining is None:
            raise NotAMessage("OP_COMPRESSED needs a bounded stream")
        body = decompress(compressor_id, stream.read(remaining), uncompressed_size)
        if len(body) != uncompressed_size:
            raise NotAMessage(
                f"decompressed {len(body)} bytes, header declared {uncompressed_size}"
            )
        op = read_op(original_opcode, ReadDataStream(BytesIO(body), limit=len(body)))
        op.header = MsgHeader(
            message_length=HEADER_SIZE + len(body),
            request_id=0,
            response_to=0,
            opcode=original_opcode,
        )
        return CompressedOp(
            original_opcode=original_opcode, compressor_id=compressor_id, op=op
        )

    def unwrap(self) -> Op:
        return self.op.unwrap()

    def meta(self) -> OpMetadata:
        return self.op.meta()

    def execute(self, session: "MongoClient") -> ReplyContainer:
        return self.op.execute(session)

    def abbreviated(self, max_len: int) -> str:
        return self.op.abbreviated(max_len)
