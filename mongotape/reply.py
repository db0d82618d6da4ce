import logging
import time
from dataclasses import dataclass, field
from enum import IntFlag
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Tuple,
    TypeVar,
    Union,
)

from .data_stream import MessageBuilder, ReadDataStream
from .op import (
    Op,
    OpMetadata,
    abbreviate,
    same_reply_document,
    strip_nondeterministic,
    to_json,
)
from .opcode import OpCode

if TYPE_CHECKING:
    from pymongo import MongoClient

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ReplyFlags(IntFlag):
    CURSOR_NOT_FOUND = 1
    QUERY_FAILURE = 1 << 1
    SHARD_CONFIG_STALE = 1 << 2
    AWAIT_CAPABLE = 1 << 3


# set by the server about itself, not about the result
_TRANSPORT_REPLY_FLAGS = ReplyFlags.SHARD_CONFIG_STALE | ReplyFlags.AWAIT_CAPABLE


@dataclass
class ReplyOp(Op):
    opcode = OpCode.OP_REPLY

    flags: int
    cursor_id: int = field(compare=False)
    starting_from: int
    number_returned: int
    documents: List[Dict[str, Any]]

    def write(self, stream: MessageBuilder):
        self._start(stream)
        stream.write_int32(self.flags)
        stream.write_int64(self.cursor_id)
        stream.write_int32(self.starting_from)
        stream.write_int32(self.number_returned)
        for doc in self.documents:
            stream.write_document(doc)
        stream.finish_message()

    @staticmethod
    def read(stream: ReadDataStream):
        flags = stream.read_int32()
        cursor_id = stream.read_int64()
        starting_from = stream.read_int32()
        number_returned = stream.read_int32()
        documents: List[Dict[str, Any]] = []
        while not stream.at_end():
            documents.append(stream.read_document())
        return ReplyOp(
            flags=flags,
            cursor_id=cursor_id,
            starting_from=starting_from,
            number_returned=number_returned,
            documents=documents,
        )

    def _equals(self, other: Op) -> bool:
        if not isinstance(other, ReplyOp):
            return False
        mask = ~int(_TRANSPORT_REPLY_FLAGS)
        return (
            self.flags & mask == other.flags & mask
            and self.starting_from == other.starting_from
            and self.number_returned == other.number_returned
            and strip_nondeterministic(self.documents)
            == strip_nondeterministic(other.documents)
        )

    def meta(self) -> OpMetadata:
        return OpMetadata(op="reply", data=self.documents)

    def abbreviated(self, max_len: int) -> str:
        return abbreviate(
            f"OpReply flags:{self.flags} returned:{self.number_returned} "
            f"{to_json(self.documents)}",
            max_len,
        )


@dataclass
class CommandReplyOp(Op):
    opcode = OpCode.OP_COMMANDREPLY

    metadata: Dict[str, Any]
    command_reply: Dict[str, Any]
    output_docs: List[Dict[str, Any]] = field(default_factory=list)

    def write(self, stream: MessageBuilder):
        self._start(stream)
        stream.write_document(self.metadata)
        stream.write_document(self.command_reply)
        for doc in self.output_docs:
            stream.write_document(doc)
        stream.finish_message()

    @staticmethod
    def read(stream: ReadDataStream):
        metadata = stream.read_document()
        command_reply = stream.read_document()
        output_docs: List[Dict[str, Any]] = []
        while not stream.at_end():
            output_docs.append(stream.read_document())
        return CommandReplyOp(
            metadata=metadata,
            command_reply=command_reply,
            output_docs=output_docs,
        )

    def _equals(self, other: Op) -> bool:
        if not isinstance(other, CommandReplyOp):
            return same_reply_document(self, other)
        return strip_nondeterministic(
            [self.metadata, self.command_reply, self.output_docs]
        ) == strip_nondeterministic(
            [other.metadata, other.command_reply, other.output_docs]
        )

    def reply_document(self) -> Optional[Dict[str, Any]]:
        return self.command_reply

    def meta(self) -> OpMetadata:
        return OpMetadata(op="commandreply", data=self.command_reply)

    def abbreviated(self, max_len: int) -> str:
        return abbreviate(f"CommandReply {to_json(self.command_reply)}", max_len)


@dataclass
class ReplyContainer:
    """The response to an executed operation and how long the database took.

    ``reply`` is the legacy OP_REPLY shape for find batches, or the command
    reply shape for anything run as a command.
    """

    reply: Union[ReplyOp, CommandReplyOp]
    latency: float

    def __post_init__(self):
        if not isinstance(self.reply, (ReplyOp, CommandReplyOp)):
            raise TypeError(
                f"reply must be a ReplyOp or CommandReplyOp, not {type(self.reply).__name__}"
            )

    @property
    def legacy_reply(self) -> Optional[ReplyOp]:
        return self.reply if isinstance(self.reply, ReplyOp) else None

    @property
    def command_reply(self) -> Optional[CommandReplyOp]:
        return self.reply if isinstance(self.reply, CommandReplyOp) else None


def timed(call: Callable[[], T]) -> Tuple[T, float]:
    """Run ``call`` and return its result with the elapsed seconds."""
    start = time.perf_counter()
    result = call()
    return result, time.perf_counter() - start


def run_command(
    session: "MongoClient", database: str, command: Mapping[str, Any]
) -> ReplyContainer:
    db = session[database]
    # the driver annotates the command it sends, so never hand it ours
    spec = dict(command)
    result, latency = timed(lambda: db.command(spec))
    logger.debug(
        "ran command %s on %s in %.6fs", next(iter(spec), ""), database, latency
    )
    reply = CommandReplyOp(metadata={}, command_reply=dict(result), output_docs=[])
    return ReplyContainer(reply=reply, latency=latency)
