"""Classification of command documents.

MongoDB dispatches commands through several wire shapes: an OP_QUERY against
``<db>.$cmd``, OP_COMMAND, and the OP_MSG body document. In every shape the
command name is the leading key of the document, so everything here works on
plain documents and is shared by all of those shapes.
"""
from typing import Any, Mapping, Optional, Tuple

from .op import OpMetadata

KNOWN_COMMANDS = frozenset(
    [
        "abortTransaction",
        "aggregate",
        "authenticate",
        "buildInfo",
        "collMod",
        "collStats",
        "commitTransaction",
        "compact",
        "connPoolStats",
        "connectionStatus",
        "count",
        "create",
        "createIndexes",
        "createUser",
        "currentOp",
        "dbStats",
        "delete",
        "distinct",
        "drop",
        "dropDatabase",
        "dropIndexes",
        "dropUser",
        "endSessions",
        "explain",
        "find",
        "findAndModify",
        "fsync",
        "geoNear",
        "getCmdLineOpts",
        "getLastError",
        "getLog",
        "getMore",
        "getParameter",
        "getPrevError",
        "getnonce",
        "grantRolesToUser",
        "group",
        "hello",
        "hostInfo",
        "insert",
        "isMaster",
        "killCursors",
        "killOp",
        "listCollections",
        "listCommands",
        "listDatabases",
        "listIndexes",
        "logout",
        "mapReduce",
        "ping",
        "profile",
        "reIndex",
        "renameCollection",
        "replSetGetStatus",
        "resetError",
        "rolesInfo",
        "saslContinue",
        "saslStart",
        "serverStatus",
        "setParameter",
        "shardingState",
        "shutdown",
        "top",
        "update",
        "updateUser",
        "usersInfo",
        "validate",
        "whatsmyuri",
    ]
)

_CANONICAL_NAMES = {name.lower(): name for name in KNOWN_COMMANDS}

# commands that are the command-shaped encoding of a legacy operation
_COMMAND_OP_NAMES = {
    "insert": "insert",
    "update": "update",
    "delete": "delete",
    "find": "query",
    "getMore": "getmore",
    "killCursors": "killcursors",
}


def extract_op_type(document: Optional[Mapping[str, Any]]) -> Tuple[str, str]:
    """Classify a query-shaped payload as ``("query", name)`` or ``("command", name)``.

    ``name`` is always the leading key. A document led by a known command is a
    command even when it carries a ``query`` argument (count, distinct,
    findAndModify). Otherwise a document wrapped in ``$query``/``query`` is a
    query with modifiers, and anything else is a command named by its leading
    key.
    """
    if not document:
        return "command", ""
    name = next(iter(document))
    if is_known_command(name):
        return "command", name
    if "query" in document or "$query" in document:
        return "query", name
    return "command", name


def is_known_command(name: str) -> bool:
    return name.lower() in _CANONICAL_NAMES


def canonical_command_name(name: str) -> str:
    """``ismaster`` -> ``isMaster``; unknown names pass through unchanged."""
    return _CANONICAL_NAMES.get(name.lower(), name)


def is_command_namespace(ns: str) -> bool:
    return ns.endswith(".$cmd")


def database_of(ns: str) -> str:
    return ns.split(".", 1)[0]


def collection_of(ns: str) -> str:
    parts = ns.split(".", 1)
    return parts[1] if len(parts) == 2 else ""


def command_metadata(database: str, document: Mapping[str, Any], ns: str) -> OpMetadata:
    """Metadata for a command document executed against ``database``.

    Write, find and cursor commands normalize onto the name of the legacy
    operation they replace and target ``<database>.<collection>``.
    """
    name = next(iter(document), "")
    canonical = canonical_command_name(name)
    op_name = _COMMAND_OP_NAMES.get(canonical)
    if op_name is None:
        return OpMetadata(op="command", ns=ns, command=canonical, data=document)

    if canonical == "getMore":
        collection = document.get("collection")
    else:
        collection = document.get(name)
    if isinstance(collection, str) and database:
        ns = f"{database}.{collection}"
    return OpMetadata(op=op_name, ns=ns, command="", data=document)
