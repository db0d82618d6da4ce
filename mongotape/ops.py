import logging
from dataclasses import dataclass, field
from enum import IntFlag
from itertools import islice
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

import bson
from bson.int64 import Int64
from pymongo import CursorType

from .command import (
    collection_of,
    command_metadata,
    database_of,
    extract_op_type,
    is_command_namespace,
    is_known_command,
)
from .data_stream import MessageBuilder, ReadDataStream
from .exceptions import NotAMessage
from .op import (
    Op,
    OpMetadata,
    abbreviate,
    same_reply_document,
    strip_nondeterministic,
    to_json,
)
from .opcode import OpCode
from .reply import ReplyContainer, ReplyOp, run_command, timed

if TYPE_CHECKING:
    from pymongo import MongoClient

logger = logging.getLogger(__name__)

# batch size the server uses when OP_QUERY asks for numberToReturn 0
DEFAULT_BATCH_SIZE = 101

# fields drivers add to commands for their own session bookkeeping
_DRIVER_FIELDS = frozenset(
    [
        "$db",
        "$clusterTime",
        "$readPreference",
        "lsid",
        "txnNumber",
        "autocommit",
        "startTransaction",
    ]
)

# legacy write commands take their documents under these fields
_FIELD_MAP = {"insert": "documents", "update": "updates", "delete": "deletes"}


class QueryFlags(IntFlag):
    TAILABLE_CURSOR = 1 << 1
    SLAVE_OK = 1 << 2
    OPLOG_REPLAY = 1 << 3
    NO_CURSOR_TIMEOUT = 1 << 4
    AWAIT_DATA = 1 << 5
    EXHAUST = 1 << 6
    PARTIAL = 1 << 7


class UpdateFlags(IntFlag):
    UPSERT = 1
    MULTI_UPDATE = 1 << 1


class InsertFlags(IntFlag):
    CONTINUE_ON_ERROR = 1


class DeleteFlags(IntFlag):
    SINGLE_REMOVE = 1


class MsgFlags(IntFlag):
    CHECKSUM_PRESENT = 1
    MORE_TO_COME = 1 << 1
    EXHAUST_ALLOWED = 1 << 16


def _read_zero(stream: ReadDataStream) -> None:
    # reserved int32, always 0 on the wire
    stream.read_int32()


def _strip_driver_fields(document: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in document.items() if k not in _DRIVER_FIELDS}


def _cursor_type(flags: int) -> int:
    if flags & QueryFlags.TAILABLE_CURSOR:
        if flags & QueryFlags.AWAIT_DATA:
            return CursorType.TAILABLE_AWAIT
        return CursorType.TAILABLE
    return CursorType.NON_TAILABLE


@dataclass
class QueryOp(Op):
    opcode = OpCode.OP_QUERY

    flags: int
    ns: str
    skip: int
    limit: int
    query: Dict[str, Any]
    fields: Optional[Dict[str, Any]] = None

    def write(self, stream: MessageBuilder):
        self._start(stream)
        stream.write_int32(self.flags)
        stream.write_cstring(self.ns)
        stream.write_int32(self.skip)
        stream.write_int32(self.limit)
        stream.write_document(self.query)
        if self.fields is not None:
            stream.write_document(self.fields)
        stream.finish_message()

    @staticmethod
    def read(stream: ReadDataStream):
        flags = stream.read_int32()
        ns = stream.read_cstring()
        skip = stream.read_int32()
        limit = stream.read_int32()
        query = stream.read_document()
        fields = None
        if not stream.at_end():
            fields = stream.read_document()
        return QueryOp(
            flags=flags, ns=ns, skip=skip, limit=limit, query=query, fields=fields
        )

    def _command_document(self) -> Dict[str, Any]:
        # mongos-bound commands arrive wrapped with a read preference
        if is_command_namespace(self.ns) and isinstance(self.query.get("$query"), dict):
            return self.query["$query"]
        return self.query

    def is_command(self) -> bool:
        op_type, command_name = extract_op_type(self._command_document())
        if op_type != "command":
            return False
        return is_command_namespace(self.ns) or is_known_command(command_name)

    def meta(self) -> OpMetadata:
        if self.is_command():
            return command_metadata(
                database_of(self.ns), self._command_document(), self.ns
            )
        return OpMetadata(op="query", ns=self.ns, data=self.query)

    def execute(self, session: "MongoClient") -> ReplyContainer:
        if is_command_namespace(self.ns):
            return run_command(
                session, database_of(self.ns), self._command_document()
            )
        return self._execute_find(session)

    def _execute_find(self, session: "MongoClient") -> ReplyContainer:
        query = self.query
        modifiers: Dict[str, Any] = {}
        for wrapper, orderby in (("$query", "$orderby"), ("query", "orderby")):
            if wrapper in query:
                modifiers = query
                query = query[wrapper]
                if orderby in modifiers:
                    modifiers = dict(modifiers, sort=list(modifiers[orderby].items()))
                break

        # numberToReturn 1 and -1 both ask for a single document and no cursor
        single_batch = self.limit < 0 or self.limit == 1
        batch_size = abs(self.limit) or DEFAULT_BATCH_SIZE
        kwargs: Dict[str, Any] = {
            "projection": self.fields,
            "skip": self.skip,
            "limit": batch_size if single_batch else 0,
            "batch_size": batch_size,
            "cursor_type": _cursor_type(self.flags),
            "no_cursor_timeout": bool(self.flags & QueryFlags.NO_CURSOR_TIMEOUT),
            "allow_partial_results": bool(self.flags & QueryFlags.PARTIAL),
        }
        if "sort" in modifiers:
            kwargs["sort"] = modifiers["sort"]
        if "$hint" in modifiers:
            hint = modifiers["$hint"]
            kwargs["hint"] = list(hint.items()) if isinstance(hint, dict) else hint
        if "$comment" in modifiers:
            kwargs["comment"] = modifiers["$comment"]
        if "$maxTimeMS" in modifiers:
            kwargs["max_time_ms"] = modifiers["$maxTimeMS"]

        collection = session[database_of(self.ns)][collection_of(self.ns)]
        cursor = collection.find(query, **kwargs)
        documents, latency = timed(lambda: list(islice(cursor, batch_size)))
        logger.debug("find on %s returned %d in %.6fs", self.ns, len(documents), latency)
        reply = ReplyOp(
            flags=0,
            cursor_id=cursor.cursor_id or 0,
            starting_from=0,
            number_returned=len(documents),
            documents=documents,
        )
        return ReplyContainer(reply=reply, latency=latency)

    def abbreviated(self, max_len: int) -> str:
        return abbreviate(
            f"OpQuery ns:{self.ns} skip:{self.skip} limit:{self.limit} "
            f"query:{to_json(self.query)}",
            max_len,
        )


@dataclass
class UpdateOp(Op):
    opcode = OpCode.OP_UPDATE

    ns: str
    flags: int
    selector: Dict[str, Any]
    update: Dict[str, Any]

    def write(self, stream: MessageBuilder):
        self._start(stream)
        stream.write_int32(0)
        stream.write_cstring(self.ns)
        stream.write_int32(self.flags)
        stream.write_document(self.selector)
        stream.write_document(self.update)
        stream.finish_message()

    @staticmethod
    def read(stream: ReadDataStream):
        _read_zero(stream)
        ns = stream.read_cstring()
        flags = stream.read_int32()
        selector = stream.read_document()
        update = stream.read_document()
        return UpdateOp(ns=ns, flags=flags, selector=selector, update=update)

    @property
    def upsert(self) -> bool:
        return bool(self.flags & UpdateFlags.UPSERT)

    @property
    def multi(self) -> bool:
        return bool(self.flags & UpdateFlags.MULTI_UPDATE)

    def meta(self) -> OpMetadata:
        return OpMetadata(
            op="update",
            ns=self.ns,
            data={
                "selector": self.selector,
                "update": self.update,
                "upsert": self.upsert,
                "multi": self.multi,
            },
        )

    def execute(self, session: "MongoClient") -> ReplyContainer:
        statement = {
            "q": self.selector,
            "u": self.update,
            "upsert": self.upsert,
            "multi": self.multi,
        }
        return run_command(
            session,
            database_of(self.ns),
            {"update": collection_of(self.ns), "updates": [statement]},
        )

    def abbreviated(self, max_len: int) -> str:
        return abbreviate(
            f"OpUpdate ns:{self.ns} selector:{to_json(self.selector)} "
            f"update:{to_json(self.update)}",
            max_len,
        )


@dataclass
class InsertOp(Op):
    opcode = OpCode.OP_INSERT

    flags: int
    ns: str
    documents: List[Dict[str, Any]]

    def write(self, stream: MessageBuilder):
        self._start(stream)
        stream.write_int32(self.flags)
        stream.write_cstring(self.ns)
        for doc in self.documents:
            stream.write_document(doc)
        stream.finish_message()

    @staticmethod
    def read(stream: ReadDataStream):
        flags = stream.read_int32()
        ns = stream.read_cstring()
        # at least one document is required
        documents = [stream.read_document()]
        while not stream.at_end():
            documents.append(stream.read_document())
        return InsertOp(flags=flags, ns=ns, documents=documents)

    def meta(self) -> OpMetadata:
        return OpMetadata(op="insert", ns=self.ns, data=self.documents)

    def execute(self, session: "MongoClient") -> ReplyContainer:
        ordered = not self.flags & InsertFlags.CONTINUE_ON_ERROR
        return run_command(
            session,
            database_of(self.ns),
            {
                "insert": collection_of(self.ns),
                "documents": self.documents,
                "ordered": ordered,
            },
        )

    def abbreviated(self, max_len: int) -> str:
        return abbreviate(
            f"OpInsert ns:{self.ns} documents:{to_json(self.documents)}", max_len
        )


@dataclass
class DeleteOp(Op):
    opcode = OpCode.OP_DELETE

    ns: str
    flags: int
    selector: Dict[str, Any]

    def write(self, stream: MessageBuilder):
        self._start(stream)
        stream.write_int32(0)
        stream.write_cstring(self.ns)
        stream.write_int32(self.flags)
        stream.write_document(self.selector)
        stream.finish_message()

    @staticmethod
    def read(stream: ReadDataStream):
        _read_zero(stream)
        ns = stream.read_cstring()
        flags = stream.read_int32()
        selector = stream.read_document()
        return DeleteOp(ns=ns, flags=flags, selector=selector)

    @property
    def single(self) -> bool:
        return bool(self.flags & DeleteFlags.SINGLE_REMOVE)

    def meta(self) -> OpMetadata:
        return OpMetadata(
            op="delete",
            ns=self.ns,
            data={"selector": self.selector, "single": self.single},
        )

    def execute(self, session: "MongoClient") -> ReplyContainer:
        statement = {"q": self.selector, "limit": 1 if self.single else 0}
        return run_command(
            session,
            database_of(self.ns),
            {"delete": collection_of(self.ns), "deletes": [statement]},
        )

    def abbreviated(self, max_len: int) -> str:
        return abbreviate(
            f"OpDelete ns:{self.ns} selector:{to_json(self.selector)}", max_len
        )


@dataclass
class GetMoreOp(Op):
    opcode = OpCode.OP_GET_MORE

    ns: str
    limit: int
    cursor_id: int = field(compare=False)

    def write(self, stream: MessageBuilder):
        self._start(stream)
        stream.write_int32(0)
        stream.write_cstring(self.ns)
        stream.write_int32(self.limit)
        stream.write_int64(self.cursor_id)
        stream.finish_message()

    @staticmethod
    def read(stream: ReadDataStream):
        _read_zero(stream)
        ns = stream.read_cstring()
        limit = stream.read_int32()
        cursor_id = stream.read_int64()
        return GetMoreOp(ns=ns, limit=limit, cursor_id=cursor_id)

    def meta(self) -> OpMetadata:
        return OpMetadata(
            op="getmore",
            ns=self.ns,
            data={"cursor_id": self.cursor_id, "limit": self.limit},
        )

    def execute(self, session: "MongoClient") -> ReplyContainer:
        command: Dict[str, Any] = {
            "getMore": Int64(self.cursor_id),
            "collection": collection_of(self.ns),
        }
        if self.limit:
            command["batchSize"] = abs(self.limit)
        return run_command(session, database_of(self.ns), command)

    def abbreviated(self, max_len: int) -> str:
        return abbreviate(
            f"OpGetMore ns:{self.ns} cursor:{self.cursor_id} limit:{self.limit}",
            max_len,
        )


@dataclass
class KillCursorsOp(Op):
    """OP_KILL_CURSORS.

    The legacy message names no collection, but the killCursors command does;
    ``target_ns`` is not on the wire and must be filled in by whoever replays
    the message before calling :py:meth:`execute`.
    """

    opcode = OpCode.OP_KILL_CURSORS

    cursor_ids: List[int] = field(compare=False)
    target_ns: str = field(default="", compare=False)

    def write(self, stream: MessageBuilder):
        self._start(stream)
        stream.write_int32(0)
        stream.write_int32(len(self.cursor_ids))
        for cursor_id in self.cursor_ids:
            stream.write_int64(cursor_id)
        stream.finish_message()

    @staticmethod
    def read(stream: ReadDataStream):
        _read_zero(stream)
        count = stream.read_int32()
        if count < 0:
            raise NotAMessage(f"negative cursor count {count}")
        cursor_ids = [stream.read_int64() for _ in range(count)]
        return KillCursorsOp(cursor_ids=cursor_ids)

    def _equals(self, other: Op) -> bool:
        # cursor ids are server-assigned, only their number is comparable
        return isinstance(other, KillCursorsOp) and len(self.cursor_ids) == len(
            other.cursor_ids
        )

    def meta(self) -> OpMetadata:
        return OpMetadata(op="killcursors", data=self.cursor_ids)

    def execute(self, session: "MongoClient") -> ReplyContainer:
        if not self.target_ns:
            raise ValueError("OP_KILL_CURSORS names no collection, set target_ns")
        return run_command(
            session,
            database_of(self.target_ns),
            {
                "killCursors": collection_of(self.target_ns),
                "cursors": [Int64(cursor_id) for cursor_id in self.cursor_ids],
            },
        )

    def abbreviated(self, max_len: int) -> str:
        return abbreviate(f"OpKillCursors cursors:{self.cursor_ids}", max_len)


@dataclass
class CommandOp(Op):
    opcode = OpCode.OP_COMMAND

    database: str
    command_name: str
    metadata: Dict[str, Any]
    command_args: Dict[str, Any]
    input_docs: List[Dict[str, Any]] = field(default_factory=list)

    def write(self, stream: MessageBuilder):
        self._start(stream)
        stream.write_cstring(self.database)
        stream.write_cstring(self.command_name)
        stream.write_document(self.metadata)
        stream.write_document(self.command_args)
        for doc in self.input_docs:
            stream.write_document(doc)
        stream.finish_message()

    @staticmethod
    def read(stream: ReadDataStream):
        database = stream.read_cstring()
        command_name = stream.read_cstring()
        metadata = stream.read_document()
        command_args = stream.read_document()
        input_docs: List[Dict[str, Any]] = []
        while not stream.at_end():
            input_docs.append(stream.read_document())
        return CommandOp(
            database=database,
            command_name=command_name,
            metadata=metadata,
            command_args=command_args,
            input_docs=input_docs,
        )

    def command_document(self) -> Dict[str, Any]:
        command = dict(self.command_args)
        if self.input_docs and self.command_name in _FIELD_MAP:
            command[_FIELD_MAP[self.command_name]] = self.input_docs
        return command

    def meta(self) -> OpMetadata:
        return command_metadata(
            self.database, self.command_document(), f"{self.database}.$cmd"
        )

    def execute(self, session: "MongoClient") -> ReplyContainer:
        return run_command(
            session, self.database, _strip_driver_fields(self.command_document())
        )

    def abbreviated(self, max_len: int) -> str:
        return abbreviate(
            f"OpCommand db:{self.database} command:{self.command_name} "
            f"args:{to_json(self.command_args)}",
            max_len,
        )


@dataclass
class BodySection:
    document: Dict[str, Any]


@dataclass
class DocumentSequence:
    identifier: str
    documents: List[Dict[str, Any]]


Section = Union[BodySection, DocumentSequence]


@dataclass
class MsgOp(Op):
    """OP_MSG, the only request and reply shape modern servers speak.

    The trailing CRC-32C is carried through unchanged, never verified.
    """

    opcode = OpCode.OP_MSG

    flags: int
    sections: List[Section]
    checksum: Optional[int] = field(default=None, compare=False)

    def write(self, stream: MessageBuilder):
        self._start(stream)
        stream.write_uint32(self.flags)
        for section in self.sections:
            if isinstance(section, BodySection):
                stream.write_uint8(0)
                stream.write_document(section.document)
            else:
                encoded = [bson.encode(doc) for doc in section.documents]
                identifier = section.identifier.encode()
                stream.write_uint8(1)
                stream.write_int32(4 + len(identifier) + 1 + sum(map(len, encoded)))
                stream.write_cstring(section.identifier)
                for doc in encoded:
                    stream.write(doc)
        if self.flags & MsgFlags.CHECKSUM_PRESENT:
            stream.write_uint32(self.checksum or 0)
        stream.finish_message()

    @staticmethod
    def read(stream: ReadDataStream):
        flags = stream.read_uint32()
        trailer = 4 if flags & MsgFlags.CHECKSUM_PRESENT else 0
        remaining = stream.remaining
        if remaining is None:
            raise NotAMessage("OP_MSG needs a bounded stream")
        sections_end = stream.count + remaining - trailer
        sections: List[Section] = []
        while stream.count < sections_end:
            kind = stream.read_uint8()
            if kind == 0:
                sections.append(BodySection(stream.read_document()))
            elif kind == 1:
                start = stream.count
                size = stream.read_int32()
                identifier = stream.read_cstring()
                documents: List[Dict[str, Any]] = []
                while stream.count < start + size:
                    documents.append(stream.read_document())
                if stream.count != start + size:
                    raise NotAMessage(f"document sequence {identifier} overruns its size")
                sections.append(DocumentSequence(identifier, documents))
            else:
                raise NotAMessage(f"unknown OP_MSG section kind {kind}")
        if not any(isinstance(s, BodySection) for s in sections):
            raise NotAMessage("OP_MSG has no body section")
        checksum = stream.read_uint32() if trailer else None
        return MsgOp(flags=flags, sections=sections, checksum=checksum)

    @property
    def body(self) -> Dict[str, Any]:
        for section in self.sections:
            if isinstance(section, BodySection):
                return section.document
        return {}

    @property
    def database(self) -> str:
        return self.body.get("$db", "")

    def command_document(self) -> Dict[str, Any]:
        command = dict(self.body)
        for section in self.sections:
            if isinstance(section, DocumentSequence):
                command[section.identifier] = section.documents
        return command

    def is_reply(self) -> bool:
        _, name = extract_op_type(self.body)
        return not is_known_command(name) and "ok" in self.body

    def reply_document(self) -> Optional[Dict[str, Any]]:
        return self.command_document() if self.is_reply() else None

    def _equals(self, other: Op) -> bool:
        if not isinstance(other, MsgOp):
            return same_reply_document(self, other)
        mask = ~int(MsgFlags.CHECKSUM_PRESENT)
        return self.flags & mask == other.flags & mask and strip_nondeterministic(
            self.command_document()
        ) == strip_nondeterministic(other.command_document())

    def meta(self) -> OpMetadata:
        if self.is_reply():
            return OpMetadata(op="commandreply", data=self.body)
        database = self.database
        ns = f"{database}.$cmd" if database else ""
        return command_metadata(database, self.command_document(), ns)

    def execute(self, session: "MongoClient") -> ReplyContainer:
        if self.is_reply():
            raise NotImplementedError("OP_MSG replies cannot be executed")
        return run_command(
            session,
            self.database or "admin",
            _strip_driver_fields(self.command_document()),
        )

    def abbreviated(self, max_len: int) -> str:
        sequences = "".join(
            f" {s.identifier}:{len(s.documents)} docs"
            for s in self.sections
            if isinstance(s, DocumentSequence)
        )
        return abbreviate(
            f"OpMsg flags:{self.flags} body:{to_json(self.body)}{sequences}", max_len
        )
