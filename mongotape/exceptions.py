from mongotape.opcode import OpCode


class MongotapeError(Exception):
    pass


class NotAMessage(MongotapeError):
    def __init__(self, detail: str = ""):
        message = "buffer is too small to be a Mongo message"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class UnknownOpcode(MongotapeError):
    def __init__(self, opcode: int):
        self.opcode = opcode
        super().__init__(f"Unknown opcode {opcode}")


class MessageSizeLimitExceeded(MongotapeError):
    def __init__(self, opcode: int, length: int, limit: int):
        self.opcode = opcode
        self.length = length
        self.limit = limit
        opcode_name = f"unknown (opcode {opcode})"
        try:
            opcode_name = OpCode(opcode).name
        except ValueError:
            # unknown opcode will trigger a ValueError
            pass
        super().__init__(
            f"{opcode_name} message has length {length} that exceeds limit {limit}",
        )


class UnsupportedCompressor(MongotapeError):
    def __init__(self, compressor_id: int):
        self.compressor_id = compressor_id
        super().__init__(f"unsupported compressor id {compressor_id}")
