import logging
from io import BufferedReader, BytesIO, RawIOBase
from typing import IO, Dict, Iterator, Optional, Type, Union

from .compression import CompressedOp
from .data_stream import HEADER_SIZE, ReadDataStream
from .exceptions import MessageSizeLimitExceeded, NotAMessage, UnknownOpcode
from .op import MsgHeader, Op
from .opcode import OpCode
from .ops import (
    CommandOp,
    DeleteOp,
    GetMoreOp,
    InsertOp,
    KillCursorsOp,
    MsgOp,
    QueryOp,
    UpdateOp,
)
from .reply import CommandReplyOp, ReplyOp

logger = logging.getLogger(__name__)

# maxMessageSizeBytes of every MongoDB server release
DEFAULT_MAX_MESSAGE_SIZE = 48_000_000

OP_TYPES: Dict[int, Type[Op]] = {
    OpCode.OP_REPLY: ReplyOp,
    OpCode.OP_UPDATE: UpdateOp,
    OpCode.OP_INSERT: InsertOp,
    OpCode.OP_QUERY: QueryOp,
    OpCode.OP_GET_MORE: GetMoreOp,
    OpCode.OP_DELETE: DeleteOp,
    OpCode.OP_KILL_CURSORS: KillCursorsOp,
    OpCode.OP_COMMAND: CommandOp,
    OpCode.OP_COMMANDREPLY: CommandReplyOp,
    OpCode.OP_COMPRESSED: CompressedOp,
    OpCode.OP_MSG: MsgOp,
}


def register_op(opcode: int, op_type: Type[Op]) -> None:
    """Teach :py:func:`read_op` a new message shape."""
    OP_TYPES[opcode] = op_type


def read_op(opcode: int, stream: ReadDataStream) -> Op:
    """Populate the op registered for ``opcode`` from a stream positioned after
    the message header.

    :param stream: should be bounded to the body length; ops with a trailing
        list of documents read until the bound.
    :raises UnknownOpcode: if no op is registered for ``opcode``.
    :raises NotAMessage: if the stream ends before the op's fields are read.
    """
    op_type = OP_TYPES.get(opcode)
    if op_type is None:
        raise UnknownOpcode(opcode)
    return op_type.read(stream)  # type: ignore


def _check_header(header: MsgHeader, max_message_size: Optional[int]) -> None:
    if header.message_length < HEADER_SIZE:
        raise NotAMessage(f"declared length {header.message_length} is shorter than a header")
    if max_message_size is not None and header.message_length > max_message_size:
        raise MessageSizeLimitExceeded(
            header.opcode, header.message_length, max_message_size
        )


def _read_body(header: MsgHeader, body: bytes) -> Op:
    op = read_op(header.opcode, ReadDataStream(BytesIO(body), limit=len(body)))
    op.header = header
    logger.debug(
        "decoded %s request_id=%d response_to=%d",
        type(op).__name__,
        header.request_id,
        header.response_to,
    )
    return op


def parse_message(
    data: bytes, max_message_size: Optional[int] = DEFAULT_MAX_MESSAGE_SIZE
) -> Op:
    """Decode one complete wire message, header included.

    Bytes past the header-declared length are ignored.

    :param max_message_size: upper bound on the declared message length, or
        None for no limit.
    """
    if len(data) < HEADER_SIZE:
        raise NotAMessage(f"{len(data)} bytes is shorter than a header")
    header = MsgHeader.read(ReadDataStream(BytesIO(data[:HEADER_SIZE])))
    _check_header(header, max_message_size)
    if header.message_length > len(data):
        raise NotAMessage(
            f"declared length {header.message_length} exceeds buffer of {len(data)}"
        )
    return _read_body(header, data[HEADER_SIZE : header.message_length])


class StreamReader:
    """
    Reads wire messages sequentially from an input stream.

    :param input: A filename or stream holding consecutive wire messages.
    :param skip_unknown: Log and skip messages with unregistered opcodes instead
        of raising :py:class:`~mongotape.exceptions.UnknownOpcode`.
    :param skip_malformed: Log and skip messages whose header frames them correctly
        but whose body cannot be decoded, instead of raising
        :py:class:`~mongotape.exceptions.NotAMessage`.
    :param max_message_size: An upper bound on the declared length of a message.
        Set to None for no limit.
    """

    def __init__(
        self,
        input: Union[str, BytesIO, RawIOBase, BufferedReader, IO[bytes]],
        skip_unknown: bool = False,
        skip_malformed: bool = False,
        max_message_size: Optional[int] = DEFAULT_MAX_MESSAGE_SIZE,
    ):
        self._owned = isinstance(input, str)
        if isinstance(input, str):
            self._stream: IO[bytes] = open(input, "rb")
        elif isinstance(input, RawIOBase):
            self._stream = BufferedReader(input)
        else:
            self._stream = input
        self._skip_unknown = skip_unknown
        self._skip_malformed = skip_malformed
        self._max_message_size = max_message_size
        self.skipped = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def close(self) -> None:
        if self._owned:
            self._stream.close()

    @property
    def ops(self) -> Iterator[Op]:
        """
        Returns ops in the order their messages appear in the stream.
        """
        while True:
            raw_header = self._stream.read(HEADER_SIZE)
            if raw_header == b"":
                return
            if len(raw_header) < HEADER_SIZE:
                raise NotAMessage("stream ends inside a message header")
            header = MsgHeader.read(ReadDataStream(BytesIO(raw_header)))
            _check_header(header, self._max_message_size)
            body = self._stream.read(header.body_length)
            if len(body) < header.body_length:
                raise NotAMessage(
                    f"stream ends {header.body_length - len(body)} bytes into a message"
                )
            try:
                op = _read_body(header, body)
            except UnknownOpcode as e:
                if not self._skip_unknown:
                    raise
                self.skipped += 1
                logger.warning("skipping message %d: %s", header.request_id, e)
                continue
            except NotAMessage as e:
                if not self._skip_malformed:
                    raise
                self.skipped += 1
                logger.warning(
                    "skipping malformed message %d: %s", header.request_id, e
                )
                continue
            yield op


__all__ = [
    "DEFAULT_MAX_MESSAGE_SIZE",
    "OP_TYPES",
    "StreamReader",
    "parse_message",
    "read_op",
    "register_op",
]
