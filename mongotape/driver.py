from .command import extract_op_type
from .op import Op
from .ops import QueryOp

# handshake, auth and liveness commands drivers send on their own
DRIVER_COMMANDS = frozenset(
    ["isMaster", "ismaster", "getnonce", "ping", "saslStart", "saslContinue"]
)


def is_driver_op(op: Op) -> bool:
    """Checks if an operation is one of the types generated by the driver.

    Only OP_QUERY messages whose payload is a handshake, auth or liveness
    command match; anything else, including the same commands sent over
    OP_MSG, is application traffic. Compressed messages are judged by the
    message they wrap.
    """
    op = op.unwrap()
    if not isinstance(op, QueryOp):
        return False
    op_type, command_name = extract_op_type(op.query)
    if op_type != "command":
        return False
    return command_name in DRIVER_COMMANDS
