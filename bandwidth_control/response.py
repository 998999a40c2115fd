from __future__ import annotations

import enum
import io
import typing


class ResponseCode(enum.IntEnum):
    TETHERING_STATS_LIST_RESULT = 114
    COMMAND_OKAY = 200
    QUOTA_COUNTER_RESULT = 220
    TETHERING_STATS_RESULT = 221
    OPERATION_FAILED = 400
    COMMAND_SYNTAX_ERROR = 500
    COMMAND_PARAMETER_ERROR = 501


Response = typing.Tuple[ResponseCode, str]


def format_responses(responses: typing.Iterable[Response]) -> str:
    buf = io.StringIO()
    for code, message in responses:
        buf.write(f'{int(code)} {message}\n')
    return buf.getvalue()


class ResponseWriter:
    """
    Writes status lines to a client's byte stream.

    The whole response is formatted before anything is written, so a failure
    while building it never leaves half a response on the wire.
    """

    def __init__(self, stream: typing.BinaryIO) -> None:
        self.stream = stream

    def send(self, code: ResponseCode, message: str) -> None:
        self.send_all([(code, message)])

    def send_all(self, responses: typing.Iterable[Response]) -> None:
        data = format_responses(responses).encode('utf-8')
        if not data:
            return
        self.stream.write(data)
        self.stream.flush()
