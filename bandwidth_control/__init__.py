from __future__ import annotations

import enum
import re
import typing


BW_INPUT = "bw_INPUT"
BW_OUTPUT = "bw_OUTPUT"
BW_FORWARD = "bw_FORWARD"
BW_HAPPY_BOX = "bw_happy_box"
BW_PENALTY_BOX = "bw_penalty_box"
BW_DATA_SAVER = "bw_data_saver"
BW_COSTLY_PREFIX = "bw_costly_"
BW_COSTLY_SHARED = "bw_costly_shared"
BW_RAW_PREROUTING = "bw_raw_PREROUTING"
BW_MANGLE_POSTROUTING = "bw_mangle_POSTROUTING"

SHARED_QUOTA_NAME = "shared"
GLOBAL_ALERT_NAME = "globalAlert"

# uids below this are system services and always exempt from penalties
FIRST_APPLICATION_UID = 10000

MAX_BYTES = (1 << 64) - 1

MAX_IFACE_NAME_LEN = 15
IFACE_NAME_RE = re.compile(r'^[A-Za-z0-9_.:-]+$')


class IptablesTarget(enum.Enum):
    V4 = "v4"
    V6 = "v6"
    V4V6 = "v4v6"

    @property
    def families(self) -> typing.Tuple["IptablesTarget", ...]:
        if self is IptablesTarget.V4V6:
            return (IptablesTarget.V4, IptablesTarget.V6)
        return (self,)


class IptOp(enum.Enum):
    INSERT = "-I"
    APPEND = "-A"
    DELETE = "-D"
    REPLACE = "-R"

    def __str__(self) -> str:
        return self.value


class IptJump(enum.Enum):
    REJECT = " --jump REJECT"
    RETURN = " --jump RETURN"

    def __str__(self) -> str:
        return self.value


class BandwidthError(Exception):
    """Base class for anything a bandwidth operation can fail with"""


class InvalidArgument(BandwidthError, ValueError):
    pass


class SinkSubmissionFailure(BandwidthError):
    pass


class TopologyInconsistency(BandwidthError):
    pass


class StatsParseFailure(BandwidthError):
    def __init__(self, message: str, payload: str = "") -> None:
        super().__init__(message)
        # raw counter text; only useful for diagnostics
        self.payload = payload


class EmptyResultError(BandwidthError):
    pass


def is_iface_name(name: str) -> bool:
    return (bool(name) and len(name) <= MAX_IFACE_NAME_LEN
            and IFACE_NAME_RE.match(name) is not None)


def check_iface_name(name: str) -> str:
    if not is_iface_name(name):
        raise InvalidArgument(f'Invalid interface name: {name!r}')
    return name


def check_bytes(value: int) -> int:
    """Byte counts are unsigned 64-bit; -1 is passed through to mean none."""
    if value != -1 and not 0 < value <= MAX_BYTES:
        raise InvalidArgument(
            f"Invalid bytes value {value}. -1 or 1..{MAX_BYTES}.")
    return value


def check_alert_bytes(value: int) -> int:
    if check_bytes(value) == -1:
        raise InvalidArgument(
            f"Invalid bytes value {value}. 1..{MAX_BYTES}.")
    return value


TRUE_VALUES = {'true', '1', 'yes', 'on', 't', 'y'}


def config_true_value(value: typing.Any) -> bool:
    return value is True or (
        isinstance(value, str) and value.lower() in TRUE_VALUES)
