from io import BytesIO

import pytest

from mongotape.compression import CompressedOp, Compressor
from mongotape.data_stream import HEADER_SIZE, ReadDataStream
from mongotape.exceptions import NotAMessage
from mongotape.op import MsgHeader, Op
from mongotape.ops import (
    BodySection,
    CommandOp,
    DeleteOp,
    DocumentSequence,
    GetMoreOp,
    InsertOp,
    KillCursorsOp,
    MsgFlags,
    MsgOp,
    QueryOp,
    UpdateFlags,
    UpdateOp,
)
from mongotape.reply import CommandReplyOp, ReplyFlags, ReplyOp
from mongotape.stream_reader import parse_message, read_op


def sample_ops():
    return [
        ReplyOp(
            flags=8,
            cursor_id=1234567890123,
            starting_from=0,
            number_returned=2,
            documents=[{"_id": 1, "a": "x"}, {"_id": 2, "a": "y"}],
        ),
        UpdateOp(
            ns="test.coll",
            flags=UpdateFlags.UPSERT,
            selector={"_id": 1},
            update={"$set": {"a": 2}},
        ),
        InsertOp(flags=0, ns="test.coll", documents=[{"_id": 1}, {"_id": 2}]),
        QueryOp(
            flags=0,
            ns="test.coll",
            skip=5,
            limit=10,
            query={"a": {"$gt": 1}},
            fields={"a": 1},
        ),
        GetMoreOp(ns="test.coll", limit=100, cursor_id=987654321),
        DeleteOp(ns="test.coll", flags=1, selector={"a": 1}),
        KillCursorsOp(cursor_ids=[11, 22, 33]),
        CommandOp(
            database="test",
            command_name="insert",
            metadata={},
            command_args={"insert": "coll"},
            input_docs=[{"_id": 1}],
        ),
        CommandReplyOp(
            metadata={},
            command_reply={"ok": 1.0, "n": 1},
            output_docs=[{"_id": 1}],
        ),
        MsgOp(
            flags=0,
            sections=[
                BodySection({"insert": "coll", "$db": "test"}),
                DocumentSequence("documents", [{"_id": 1}, {"_id": 2}]),
            ],
        ),
        CompressedOp(
            original_opcode=2004,
            compressor_id=Compressor.ZLIB,
            op=QueryOp(flags=0, ns="test.$cmd", skip=0, limit=-1, query={"ping": 1}),
        ),
    ]


def minimal_ops():
    return [
        ReplyOp(flags=0, cursor_id=0, starting_from=0, number_returned=0, documents=[]),
        UpdateOp(ns="test.coll", flags=0, selector={}, update={"$set": {"a": 1}}),
        InsertOp(flags=0, ns="test.coll", documents=[{"_id": 1}]),
        QueryOp(flags=0, ns="test.coll", skip=0, limit=0, query={"a": 1}),
        GetMoreOp(ns="test.coll", limit=0, cursor_id=1),
        DeleteOp(ns="test.coll", flags=0, selector={}),
        KillCursorsOp(cursor_ids=[1, 2]),
        CommandOp(database="test", command_name="ping", metadata={}, command_args={"ping": 1}),
        CommandReplyOp(metadata={}, command_reply={"ok": 1.0}),
        MsgOp(flags=0, sections=[BodySection({"ping": 1, "$db": "admin"})]),
        CompressedOp(
            original_opcode=2013,
            compressor_id=Compressor.NOOP,
            op=MsgOp(flags=0, sections=[BodySection({"ping": 1})]),
        ),
    ]


def _body(op: Op) -> bytes:
    return op.to_bytes()[HEADER_SIZE:]


@pytest.mark.parametrize("op", sample_ops(), ids=lambda op: type(op).__name__)
def test_decode_encoded_op(op: Op):
    data = op.to_bytes()
    decoded = parse_message(data)
    assert type(decoded) is type(op)
    assert decoded.opcode == op.opcode
    assert decoded.equals(op)
    assert op.equals(decoded)
    assert decoded.header is not None
    assert decoded.header.message_length == len(data)


@pytest.mark.parametrize("op", minimal_ops(), ids=lambda op: type(op).__name__)
def test_truncated_body_is_not_a_message(op: Op):
    body = _body(op)
    for cut in range(len(body)):
        stream = ReadDataStream(BytesIO(body[:cut]), limit=cut)
        with pytest.raises(NotAMessage):
            read_op(op.opcode, stream)


def test_header_length_bounds_the_read():
    query = QueryOp(flags=0, ns="test.coll", skip=0, limit=0, query={"a": 1})
    data = query.to_bytes()
    # a following message must not be taken for the optional fields selector
    trailing = QueryOp(flags=0, ns="x.y", skip=0, limit=0, query={"b": 2}).to_bytes()
    decoded = parse_message(data + trailing)
    assert isinstance(decoded, QueryOp)
    assert decoded.fields is None


def test_header_survives_encoding():
    query = QueryOp(flags=0, ns="test.coll", skip=0, limit=0, query={"a": 1})
    query.header = MsgHeader(message_length=0, request_id=17, response_to=4, opcode=2004)
    decoded = parse_message(query.to_bytes())
    assert decoded.header is not None
    assert decoded.header.request_id == 17
    assert decoded.header.response_to == 4


def test_equals_is_reflexive():
    for op in sample_ops():
        assert op.equals(op)


def test_equals_ignores_request_id():
    def query_with_request_id(request_id: int) -> Op:
        query = QueryOp(flags=0, ns="test.coll", skip=0, limit=0, query={"a": 1})
        query.header = MsgHeader(0, request_id, 0, 2004)
        return parse_message(query.to_bytes())

    a = query_with_request_id(1)
    b = query_with_request_id(2)
    assert a.header.request_id != b.header.request_id  # type: ignore
    assert a.equals(b)


def test_equals_compares_selector():
    a = QueryOp(flags=0, ns="test.coll", skip=0, limit=0, query={"a": 1})
    b = QueryOp(flags=0, ns="test.coll", skip=0, limit=0, query={"a": 2})
    assert not a.equals(b)


def test_equals_requires_same_kind():
    query = QueryOp(flags=0, ns="test.coll", skip=0, limit=0, query={"a": 1})
    delete = DeleteOp(ns="test.coll", flags=0, selector={"a": 1})
    assert not query.equals(delete)
    assert not delete.equals(query)


def test_equals_ignores_cursor_ids():
    a = ReplyOp(flags=0, cursor_id=1, starting_from=0, number_returned=1, documents=[{"a": 1}])
    b = ReplyOp(flags=0, cursor_id=2, starting_from=0, number_returned=1, documents=[{"a": 1}])
    assert a.equals(b)
    assert GetMoreOp(ns="t.c", limit=0, cursor_id=1).equals(GetMoreOp(ns="t.c", limit=0, cursor_id=2))
    assert KillCursorsOp(cursor_ids=[1]).equals(KillCursorsOp(cursor_ids=[2]))
    assert not KillCursorsOp(cursor_ids=[1]).equals(KillCursorsOp(cursor_ids=[1, 2]))


def test_equals_ignores_server_assigned_reply_fields():
    a = CommandReplyOp(
        metadata={},
        command_reply={
            "ok": 1.0,
            "cursor": {"id": 5, "ns": "test.coll", "firstBatch": [{"a": 1}]},
            "operationTime": 1,
            "$clusterTime": {"clusterTime": 1},
        },
    )
    b = CommandReplyOp(
        metadata={},
        command_reply={
            "ok": 1.0,
            "cursor": {"id": 9, "ns": "test.coll", "firstBatch": [{"a": 1}]},
            "operationTime": 2,
            "$clusterTime": {"clusterTime": 2},
        },
    )
    assert a.equals(b)
    c = CommandReplyOp(
        metadata={},
        command_reply={"ok": 1.0, "cursor": {"id": 5, "ns": "test.coll", "firstBatch": []}},
    )
    assert not a.equals(c)


def test_msg_equals_ignores_session_and_checksum():
    a = MsgOp(
        flags=MsgFlags.CHECKSUM_PRESENT,
        sections=[BodySection({"find": "coll", "lsid": {"id": 1}, "$db": "test"})],
        checksum=123,
    )
    b = MsgOp(flags=0, sections=[BodySection({"find": "coll", "lsid": {"id": 2}, "$db": "test"})])
    assert a.equals(b)


def test_msg_checksum_round_trip():
    msg = MsgOp(
        flags=MsgFlags.CHECKSUM_PRESENT,
        sections=[BodySection({"ping": 1, "$db": "admin"})],
        checksum=0xDEADBEEF,
    )
    decoded = parse_message(msg.to_bytes())
    assert isinstance(decoded, MsgOp)
    assert decoded.checksum == 0xDEADBEEF
    assert decoded.body == {"ping": 1, "$db": "admin"}


def test_msg_without_body_is_not_a_message():
    msg = MsgOp(flags=0, sections=[DocumentSequence("documents", [{"_id": 1}])])
    with pytest.raises(NotAMessage):
        parse_message(msg.to_bytes())


def test_msg_unknown_section_kind():
    body = MsgOp(flags=0, sections=[BodySection({"ping": 1})]).to_bytes()
    # flags are 4 bytes, the section kind follows
    corrupt = bytearray(body)
    corrupt[HEADER_SIZE + 4] = 7
    with pytest.raises(NotAMessage):
        parse_message(bytes(corrupt))


def test_kill_cursors_negative_count():
    data = bytearray(KillCursorsOp(cursor_ids=[]).to_bytes())
    data[HEADER_SIZE + 4 : HEADER_SIZE + 8] = (-1).to_bytes(4, "little", signed=True)
    with pytest.raises(NotAMessage):
        parse_message(bytes(data))


def test_invalid_document_is_not_a_message():
    data = bytearray(DeleteOp(ns="test.coll", flags=0, selector={"a": 1}).to_bytes())
    # clobber the element type byte of the selector
    selector_start = HEADER_SIZE + 4 + len(b"test.coll\x00") + 4
    data[selector_start + 4] = 0x99
    with pytest.raises(NotAMessage):
        parse_message(bytes(data))


@pytest.mark.parametrize("op", sample_ops(), ids=lambda op: type(op).__name__)
def test_abbreviated_is_bounded(op: Op):
    full = op.abbreviated(10_000)
    assert full
    for n in range(0, 64):
        assert len(op.abbreviated(n)) <= n
    assert op.abbreviated(len(full)) == full


def test_abbreviated_marks_truncation():
    insert = InsertOp(flags=0, ns="test.coll", documents=[{"_id": i} for i in range(50)])
    short = insert.abbreviated(40)
    assert short.startswith("OpInsert ns:test.coll")
    assert short.endswith("...")
    assert len(short) == 40


def test_update_flags():
    update = UpdateOp(
        ns="test.coll",
        flags=UpdateFlags.UPSERT | UpdateFlags.MULTI_UPDATE,
        selector={},
        update={},
    )
    assert update.upsert
    assert update.multi
    assert not DeleteOp(ns="test.coll", flags=0, selector={}).single


def test_reply_equals_ignores_server_capability_flags():
    captured = ReplyOp(
        flags=ReplyFlags.AWAIT_CAPABLE,
        cursor_id=7,
        starting_from=0,
        number_returned=1,
        documents=[{"a": 1}],
    )
    replayed = ReplyOp(flags=0, cursor_id=0, starting_from=0, number_returned=1, documents=[{"a": 1}])
    assert captured.equals(replayed)
    assert replayed.equals(captured)
    failed = ReplyOp(
        flags=ReplyFlags.QUERY_FAILURE,
        cursor_id=0,
        starting_from=0,
        number_returned=1,
        documents=[{"a": 1}],
    )
    assert not failed.equals(replayed)


def test_command_reply_equals_msg_reply():
    captured = parse_message(
        MsgOp(
            flags=0,
            sections=[BodySection({"n": 1, "ok": 1.0, "operationTime": 5, "$clusterTime": {"clusterTime": 5}})],
        ).to_bytes()
    )
    replayed = CommandReplyOp(metadata={}, command_reply={"n": 1, "ok": 1.0, "operationTime": 9})
    assert captured.equals(replayed)
    assert replayed.equals(captured)
    other = CommandReplyOp(metadata={}, command_reply={"n": 2, "ok": 1.0})
    assert not captured.equals(other)
    assert not other.equals(captured)


def test_command_reply_never_equals_msg_request():
    request = MsgOp(flags=0, sections=[BodySection({"ping": 1, "$db": "admin"})])
    reply = CommandReplyOp(metadata={}, command_reply={"ping": 1, "$db": "admin"})
    assert not request.equals(reply)
    assert not reply.equals(request)
