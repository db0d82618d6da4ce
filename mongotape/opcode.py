from enum import IntEnum, unique


@unique
class OpCode(IntEnum):
    OP_REPLY = 1
    OP_UPDATE = 2001
    OP_INSERT = 2002
    RESERVED = 2003
    OP_QUERY = 2004
    OP_GET_MORE = 2005
    OP_DELETE = 2006
    OP_KILL_CURSORS = 2007
    OP_COMMAND = 2010
    OP_COMMANDREPLY = 2011
    OP_COMPRESSED = 2012
    OP_MSG = 2013
