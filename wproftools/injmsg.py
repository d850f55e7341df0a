"""Messages and shared state exchanged with the injected tracee library."""

from __future__ import annotations

import enum
import struct
from dataclasses import astuple, dataclass

MAX_UDS_FD_CNT = 16
LIBWPROFINJ_SETUP_SYM = "__libwprof_inj_setup"
LIBWPROFINJ_VERSION = 1
EXIT_HINT_MSG_SIZE = 1024


class InjExitHint(enum.IntEnum):
    HINT_UNSET = 0
    HINT_CUPTI_BUSY = 1
    HINT_ERROR = 2


class InjSetupState(enum.IntEnum):
    INJ_SETUP_PENDING = 0
    INJ_SETUP_READY = 1
    INJ_SETUP_FAILED = 2


class InjMsgKind(enum.IntEnum):
    INVALID = 0
    SETUP = 1
    CUDA_SESSION = 2
    SHUTDOWN = 3


_MSG_NAMES = {
    InjMsgKind.SETUP: "SETUP",
    InjMsgKind.CUDA_SESSION: "CUDA_SESSION",
    InjMsgKind.SHUTDOWN: "SHUTDOWN",
}


def inj_msg_str(kind: int) -> str:
    try:
        return _MSG_NAMES[InjMsgKind(kind)]
    except (ValueError, KeyError):
        return "???"


_SETUP_CTX = struct.Struct("=iiqiiiiii")


@dataclass
class SetupCtx:
    """Parameters handed to the injected library when it is set up."""

    version: int = LIBWPROFINJ_VERSION
    mmap_sz: int = 0
    lib_handle: int = 0
    parent_pid: int = 0
    tracee_pid: int = 0
    stderr_verbosity: int = 0
    filelog_verbosity: int = 0
    uds_fd: int = 0
    uds_parent_fd: int = 0

    def pack(self) -> bytes:
        return _SETUP_CTX.pack(*astuple(self))

    @classmethod
    def unpack(cls, data: bytes) -> "SetupCtx":
        if len(data) != _SETUP_CTX.size:
            raise ValueError(
                f"setup context must be {_SETUP_CTX.size} bytes, got {len(data)}"
            )
        return cls(*_SETUP_CTX.unpack(data))


@dataclass
class RunCtx:
    """Run-time state reported back by the injected library."""

    worker_thread_done: bool = False
    sess_start_ts: int = 0
    sess_end_ts: int = 0
    setup_state: InjSetupState = InjSetupState.INJ_SETUP_PENDING
    exit_hint: InjExitHint = InjExitHint.HINT_UNSET
    exit_hint_msg: str = ""
    cupti_rec_cnt: int = 0
    cupti_drop_cnt: int = 0
    cupti_err_cnt: int = 0
    cupti_ignore_cnt: int = 0
    cupti_data_sz: int = 0
    cupti_buf_cnt: int = 0

    def __post_init__(self) -> None:
        if len(self.exit_hint_msg.encode()) >= EXIT_HINT_MSG_SIZE:
            raise ValueError(
                f"exit hint message must be shorter than {EXIT_HINT_MSG_SIZE} bytes"
            )


_INJ_MSG = struct.Struct("=i4xq")


@dataclass(frozen=True)
class InjMsg:
    """A control message sent to the injected library over a UNIX socket."""

    kind: InjMsgKind
    session_timeout_ms: int = 0

    @classmethod
    def setup(cls) -> "InjMsg":
        return cls(InjMsgKind.SETUP)

    @classmethod
    def cuda_session(cls, timeout_ms: int) -> "InjMsg":
        return cls(InjMsgKind.CUDA_SESSION, timeout_ms)

    @classmethod
    def shutdown(cls) -> "InjMsg":
        return cls(InjMsgKind.SHUTDOWN)

    def pack(self) -> bytes:
        timeout = self.session_timeout_ms if self.kind == InjMsgKind.CUDA_SESSION else 0
        return _INJ_MSG.pack(int(self.kind), timeout)

    @classmethod
    def unpack(cls, data: bytes) -> "InjMsg":
        if len(data) != _INJ_MSG.size:
            raise ValueError(f"message must be {_INJ_MSG.size} bytes, got {len(data)}")
        raw_kind, timeout = _INJ_MSG.unpack(data)
        try:
            kind = InjMsgKind(raw_kind)
        except ValueError:
            raise ValueError(f"unknown message kind {raw_kind}") from None
        if kind == InjMsgKind.INVALID:
            raise ValueError("invalid message kind")
        if kind != InjMsgKind.CUDA_SESSION:
            timeout = 0
        return cls(kind, timeout)