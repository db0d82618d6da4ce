from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar, Dict, Mapping, Optional

from bson import json_util

from .data_stream import HEADER_SIZE, MessageBuilder, ReadDataStream
from .opcode import OpCode

if TYPE_CHECKING:
    from pymongo import MongoClient

    from .reply import ReplyContainer

# assigned by the server at execution time, never compared
NONDETERMINISTIC_FIELDS = frozenset(
    ["$clusterTime", "operationTime", "lsid", "localTime", "connectionId"]
)

ELLIPSIS = "..."


@dataclass
class MsgHeader:
    message_length: int
    request_id: int
    response_to: int
    opcode: int

    @staticmethod
    def read(stream: ReadDataStream):
        message_length = stream.read_int32()
        request_id = stream.read_int32()
        response_to = stream.read_int32()
        opcode = stream.read_int32()
        return MsgHeader(
            message_length=message_length,
            request_id=request_id,
            response_to=response_to,
            opcode=opcode,
        )

    @property
    def body_length(self) -> int:
        return self.message_length - HEADER_SIZE


@dataclass
class OpMetadata:
    # Op is the logical operation being performed, so this may be "insert" or
    # "update" even when the wire message was OP_QUERY or OP_MSG.
    op: str
    # blank when not applicable
    ns: str = ""
    # only set when op == "command", e.g. "getLastError" or "serverStatus"
    command: str = ""
    # query selector, documents, update document, cursor ids or full command
    data: Any = None


def abbreviate(data: str, max_len: int) -> str:
    """Truncate ``data`` to at most ``max_len`` characters."""
    if max_len < 0:
        max_len = 0
    if len(data) <= max_len:
        return data
    if max_len <= len(ELLIPSIS):
        return data[:max_len]
    return data[: max_len - len(ELLIPSIS)] + ELLIPSIS


def to_json(value: Any) -> str:
    return json_util.dumps(value)


def strip_nondeterministic(value: Any) -> Any:
    """Copy of ``value`` without server-assigned fields, for comparisons.

    Removes the fields in NONDETERMINISTIC_FIELDS at any depth and the ``id``
    of any ``cursor`` sub-document.
    """
    if isinstance(value, Mapping):
        stripped = {}
        for k, v in value.items():
            if k in NONDETERMINISTIC_FIELDS:
                continue
            if k == "cursor" and isinstance(v, Mapping):
                v = {ck: cv for ck, cv in v.items() if ck != "id"}
            stripped[k] = strip_nondeterministic(v)
        return stripped
    if isinstance(value, list):
        return [strip_nondeterministic(v) for v in value]
    return value


class Op:
    """A decoded wire protocol message.

    Subclasses are dataclasses holding exactly the fields of one wire shape.
    The transport header is a plain attribute set by the reader, so it is
    never part of dataclass equality.
    """

    opcode: ClassVar[OpCode]
    header: Optional[MsgHeader] = None

    def write(self, stream: MessageBuilder) -> None:
        raise NotImplementedError()

    def execute(self, session: "MongoClient") -> "ReplyContainer":
        raise NotImplementedError(f"{type(self).__name__} cannot be executed")

    def meta(self) -> OpMetadata:
        raise NotImplementedError()

    def abbreviated(self, max_len: int) -> str:
        raise NotImplementedError()

    def equals(self, other: "Op") -> bool:
        """Semantic equality, ignoring transport and server-assigned fields."""
        return self.unwrap()._equals(other.unwrap())

    def unwrap(self) -> "Op":
        return self

    def _equals(self, other: "Op") -> bool:
        return type(self) is type(other) and self == other

    def reply_document(self) -> Optional[Dict[str, Any]]:
        """The command reply document carried by this op, if it is one."""
        return None

    def to_bytes(self) -> bytes:
        builder = MessageBuilder()
        self.write(builder)
        return builder.end()

    def _start(self, stream: MessageBuilder) -> None:
        if self.header is None:
            stream.start_message(self.opcode)
        else:
            stream.start_message(
                self.opcode, self.header.request_id, self.header.response_to
            )


def same_reply_document(a: Op, b: Op) -> bool:
    """Compares two command replies regardless of the wire shape carrying them."""
    document_a = a.reply_document()
    document_b = b.reply_document()
    if document_a is None or document_b is None:
        return False
    return strip_nondeterministic(document_a) == strip_nondeterministic(document_b)
