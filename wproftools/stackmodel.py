"""Data model of captured stack traces and of the symbolized stack dump."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Optional


class FrameFlags(enum.IntFlag):
    """Properties of a symbolized stack frame."""

    KERNEL = 0x1
    INLINED = 0x2
    UNSYMBOLIZED = 0x4


class StackKind(enum.IntFlag):
    """Kinds of stack traces an event can carry; events hold a mask of them."""

    TIMER = 0x1
    OFFCPU = 0x2
    WAKER = 0x4


@dataclass(frozen=True)
class InlinedFn:
    """A function inlined into a symbol, with its source location."""

    name: Optional[str]
    file: Optional[str] = None
    line: int = 0


@dataclass(frozen=True)
class Symbol:
    """Result of symbolizing a single address."""

    name: Optional[str]
    addr: int = 0
    offset: int = 0
    file: Optional[str] = None
    line: int = 0
    module: Optional[str] = None
    inlined: tuple[InlinedFn, ...] = ()

    @property
    def frame_count(self) -> int:
        """Number of frames the symbol expands into, itself plus inlined ones."""
        return 1 + len(self.inlined)


@dataclass(eq=False)
class StackTrace:
    """A raw stack trace attached to an event; ``stack_id`` is set once deduplicated."""

    kind: StackKind
    pid: int = 0
    kaddrs: list[int] = field(default_factory=list)
    uaddrs: list[int] = field(default_factory=list)
    stack_id: int = 0


@dataclass(frozen=True)
class StackFrameRecord:
    """One frame of the stack dump; string fields are offsets into its string set."""

    func_offset: int = 0
    flags: FrameFlags = FrameFlags(0)
    func_name_stroff: int = 0
    src_path_stroff: int = 0
    line_num: int = 0
    addr: int = 0


@dataclass(frozen=True)
class StackTraceRecord:
    """One unique callstack: a run of frame ids in the dump's frame mappings."""

    frame_mapping_idx: int = 0
    frame_mapping_cnt: int = 0


class StringSet:
    """Deduplicated NUL-terminated strings addressed by byte offset.

    The empty string always lives at offset 0.
    """

    def __init__(self) -> None:
        self._data = bytearray(b"\0")
        self._offsets: dict[str, int] = {"": 0}

    def add(self, s: str) -> int:
        """Return the offset of ``s``, adding it if it is not yet present."""
        if "\0" in s:
            raise ValueError("strings must not contain NUL characters")
        offset = self._offsets.get(s)
        if offset is None:
            offset = len(self._data)
            self._data += s.encode("utf-8", "surrogateescape") + b"\0"
            self._offsets[s] = offset
        return offset

    def get(self, offset: int) -> str:
        """Return the string starting at ``offset``."""
        if not 0 <= offset < len(self._data):
            raise IndexError(f"string offset {offset} out of range")
        end = self._data.index(b"\0", offset)
        return self._data[offset:end].decode("utf-8", "surrogateescape")

    @property
    def data(self) -> bytes:
        return bytes(self._data)

    def __len__(self) -> int:
        return len(self._data)


def _dummy_frames() -> list[StackFrameRecord]:
    return [StackFrameRecord()]


def _dummy_stacks() -> list[StackTraceRecord]:
    return [StackTraceRecord()]


@dataclass
class StackDump:
    """Symbolized frames and deduplicated callstacks.

    Frame 0 and stack 0 are all-zero placeholders, so that real ids are
    positive and zero can mean "none".
    """

    frames: list[StackFrameRecord] = field(default_factory=_dummy_frames)
    frame_mappings: list[int] = field(default_factory=list)
    stacks: list[StackTraceRecord] = field(default_factory=_dummy_stacks)
    strings: StringSet = field(default_factory=StringSet)

    def frame(self, frame_id: int) -> StackFrameRecord:
        if not 0 <= frame_id < len(self.frames):
            raise IndexError(f"frame id {frame_id} out of range")
        return self.frames[frame_id]

    def stack_frame_ids(self, stack_id: int) -> list[int]:
        """Frame ids of a callstack, outermost first."""
        if not 0 <= stack_id < len(self.stacks):
            raise IndexError(f"stack id {stack_id} out of range")
        rec = self.stacks[stack_id]
        end = rec.frame_mapping_idx + rec.frame_mapping_cnt
        if rec.frame_mapping_idx < 0 or end > len(self.frame_mappings):
            raise IndexError(f"stack {stack_id} refers past the frame mappings")
        return self.frame_mappings[rec.frame_mapping_idx : end]

    def string(self, offset: int) -> str:
        return self.strings.get(offset)