import struct
from io import BytesIO
from typing import IO, Any, Mapping, Optional

import bson
from bson.errors import InvalidBSON

from .exceptions import NotAMessage
from .opcode import OpCode

HEADER_SIZE = 16
MIN_DOCUMENT_SIZE = 5


class ReadDataStream:
    """Little-endian reader that never reads past ``limit`` bytes.

    Every short read, whether the underlying stream ran dry or the limit was
    reached, raises :py:class:`~mongotape.exceptions.NotAMessage`.
    """

    def __init__(self, stream: IO[bytes], limit: Optional[int] = None):
        self._count = 0
        self._stream = stream
        self._limit = limit

    @property
    def count(self) -> int:
        return self._count

    @property
    def remaining(self) -> Optional[int]:
        if self._limit is None:
            return None
        return self._limit - self._count

    def at_end(self) -> bool:
        return self._limit is not None and self._count >= self._limit

    def read(self, length: int) -> bytes:
        if length == 0:
            return b""
        if length < 0:
            raise NotAMessage(f"negative length {length}")
        if self._limit is not None and self._count + length > self._limit:
            raise NotAMessage(
                f"read of {length} bytes at offset {self._count} "
                f"passes message end {self._limit}"
            )

        data = self._stream.read(length)
        self._count += len(data)
        if len(data) < length:
            raise NotAMessage(f"wanted {length} bytes, got {len(data)}")
        return data

    def read_uint8(self) -> int:
        [value] = struct.unpack("<B", self.read(1))
        return value

    def read_int32(self) -> int:
        [value] = struct.unpack("<i", self.read(4))
        return value

    def read_uint32(self) -> int:
        [value] = struct.unpack("<I", self.read(4))
        return value

    def read_int64(self) -> int:
        [value] = struct.unpack("<q", self.read(8))
        return value

    def read_cstring(self) -> str:
        chunks = []
        while True:
            byte = self.read(1)
            if byte == b"\x00":
                break
            chunks.append(byte)
        try:
            return b"".join(chunks).decode("utf-8")
        except UnicodeDecodeError as e:
            raise NotAMessage(f"invalid cstring: {e}") from e

    def read_document(self) -> dict:
        prefix = self.read(4)
        [length] = struct.unpack("<i", prefix)
        if length < MIN_DOCUMENT_SIZE:
            raise NotAMessage(f"document length {length} is too small")
        data = prefix + self.read(length - 4)
        try:
            return bson.decode(data)
        except InvalidBSON as e:
            raise NotAMessage(f"invalid document: {e}") from e


class MessageBuilder:
    def __init__(self) -> None:
        self._buffer = BytesIO()

    @property
    def count(self) -> int:
        return self._buffer.tell()

    def start_message(self, opcode: OpCode, request_id: int = 0, response_to: int = 0):
        self._message_start_offset = self._buffer.tell()
        # placeholder length
        self._buffer.write(struct.pack("<iiii", 0, request_id, response_to, opcode))

    def finish_message(self):
        pos = self._buffer.tell()
        length = pos - self._message_start_offset
        self._buffer.seek(self._message_start_offset)
        self._buffer.write(struct.pack("<i", length))
        self._buffer.seek(pos)

    def end(self) -> bytes:
        buf = self._buffer.getvalue()
        self._buffer.close()
        self._buffer = BytesIO()
        return buf

    def write(self, data: bytes):
        self._buffer.write(data)

    def write_uint8(self, value: int):
        self.write(struct.pack("<B", value))

    def write_int32(self, value: int):
        self.write(struct.pack("<i", value))

    def write_uint32(self, value: int):
        self.write(struct.pack("<I", value))

    def write_int64(self, value: int):
        self.write(struct.pack("<q", value))

    def write_cstring(self, value: str):
        self.write(value.encode())
        self.write(b"\x00")

    def write_document(self, document: Mapping[str, Any]):
        self.write(bson.encode(document))
