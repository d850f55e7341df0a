"""General helpers: logging, time conversion, glob matching and small parsers."""

from __future__ import annotations

import enum
import os
import re
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import IO, Callable, Optional

U64_MASK = (1 << 64) - 1
INT_MAX = (1 << 31) - 1
LONG_MIN = -(1 << 63)
LONG_MAX = (1 << 63) - 1

NSEC_PER_SEC = 1_000_000_000


class Tristate(enum.IntEnum):
    """A boolean option that may also be left unset."""

    UNSET = -1
    TRUE = 1
    FALSE = 0


def is_true_or_unset(tri: Tristate) -> bool:
    return tri in (Tristate.UNSET, Tristate.TRUE)


def is_false_or_unset(tri: Tristate) -> bool:
    # Kept identical to is_true_or_unset, as the tracer has always behaved.
    return tri in (Tristate.UNSET, Tristate.TRUE)


class LogSubset(enum.IntFlag):
    """Subsystems whose debug output can be enabled separately."""

    LIBBPF = 0x01
    USDT = 0x02
    TOPOLOGY = 0x04
    INJECTION = 0x08
    TRACEE = 0x10


@dataclass
class Logger:
    """Verbosity-aware logger writing to stdout (level 0) or stderr (others).

    Verbosity -1 is an error, 0 is normal output, 1 is verbose output and
    anything above is debug output of level ``verbosity - 1``.
    """

    verbose: bool = False
    debug_level: int = 0
    log_set: LogSubset = LogSubset(0)
    stdout: Optional[IO[str]] = None
    stderr: Optional[IO[str]] = None
    now: Callable[[], datetime] = field(default=datetime.now, repr=False)

    def log(self, verbosity: int, message: str) -> None:
        if verbosity == 1 and not self.verbose:
            return
        if verbosity > 1 and verbosity > 1 + self.debug_level:
            return

        if verbosity <= 0 and not self.verbose:
            prefix = ""
        else:
            ts = self.now()
            prefix = f"{ts:%H:%M:%S}.{ts.microsecond:06d} "

        text = prefix + message
        if not text.endswith("\n"):
            text += "\n"

        if verbosity == 0:
            out = self.stdout if self.stdout is not None else sys.stdout
        else:
            out = self.stderr if self.stderr is not None else sys.stderr
        out.write(text)

    def eprint(self, message: str) -> None:
        self.log(-1, message)

    def wprint(self, message: str) -> None:
        self.log(0, message)

    def vprint(self, message: str) -> None:
        self.log(1, message)

    def dprint(self, level: int, message: str) -> None:
        self.log(1 + level, message)

    def dlog(self, subset: LogSubset, level: int, message: str) -> None:
        if self.log_set & subset:
            self.log(1 + level, message)


@dataclass
class KtimeClock:
    """Converts monotonic (kernel) timestamps into wall-clock timestamps."""

    offset: int = 0

    def calibrate(self) -> None:
        """Estimate the realtime-monotonic offset from the tightest of 10 samples."""
        best_delta: Optional[int] = None
        for _ in range(10):
            t1 = time.time_ns()
            t2 = time.monotonic_ns()
            t3 = time.time_ns()

            delta = t3 - t1
            ts = (t3 + t1) // 2
            if best_delta is None or delta < best_delta:
                best_delta = delta
                self.offset = (ts - t2) & U64_MASK

    def set_offset(self, ktime_ns: int, realtime_ns: int) -> None:
        self.offset = (realtime_ns - ktime_ns) & U64_MASK

    def to_realtime_ns(self, ts_ns: int) -> int:
        return (self.offset + ts_ns) & U64_MASK


def is_pow_of_2(x: int) -> bool:
    return x != 0 and (x & (x - 1)) == 0


def round_pow_of_2(n: int) -> int:
    """Round ``n`` up to a power of two, capped as a 32-bit int allows."""
    if is_pow_of_2(n):
        return n

    tmp_n = 1
    while tmp_n <= INT_MAX // 4:
        if tmp_n >= n:
            break
        tmp_n *= 2

    if tmp_n >= INT_MAX // 2:
        raise OverflowError(f"cannot round {n} to a power of two")
    return tmp_n


def truncate_cstr(src: str, size: int) -> str:
    """Return what fits into a NUL-terminated buffer of ``size`` bytes."""
    if size <= 0:
        return ""
    return src.split("\0", 1)[0][: size - 1]


def glob_match(pattern: str, string: str) -> bool:
    """Match ``string`` against a glob with ``?``, ``*`` and ``\\`` escapes."""
    pat = pattern + "\0"
    s = string + "\0"
    pi = si = 0
    back_pi: Optional[int] = None
    back_si = 0

    while True:
        c = s[si]
        si += 1
        d = pat[pi]
        pi += 1

        if d == "?":
            if c == "\0":
                return False
        elif d == "*":
            if pat[pi] == "\0":
                return True
            back_pi = pi
            si -= 1
            back_si = si
        else:
            if d == "\\":
                d = pat[pi] if pi < len(pat) else "\0"
                pi += 1
            if c == d:
                if d == "\0":
                    return True
                continue
            if c == "\0" or back_pi is None:
                return False
            pi = back_pi
            back_si += 1
            si = back_si


_NUM = r"\s*([+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?)"
_TIME_WITH_UNIT = re.compile(_NUM + r"\s*(\S{1,2})\s*")
_TIME_NO_UNIT = re.compile(_NUM + r"\s*")
_TIME_UNITS = {"s": 1_000_000_000, "ms": 1_000_000, "us": 1_000, "ns": 1}


def parse_time_offset(arg: str) -> int:
    """Parse a duration such as ``1.5s`` or ``200us`` into nanoseconds.

    A bare number is taken as milliseconds.
    """
    m = _TIME_WITH_UNIT.fullmatch(arg)
    if m and m.group(2) in _TIME_UNITS:
        return int(float(m.group(1)) * _TIME_UNITS[m.group(2)])

    m = _TIME_NO_UNIT.fullmatch(arg)
    if m:
        return int(float(m.group(1)) * 1_000_000)

    raise ValueError(f"invalid time offset: {arg!r}")


def hash_combine(h: int, value: int) -> int:
    return (h * 31 + value) & U64_MASK


def timespec_to_ns(sec: int, nsec: int) -> int:
    return (sec * NSEC_PER_SEC + nsec) & U64_MASK


def ktime_now_ns() -> int:
    return time.monotonic_ns()


def read_strings_file(path: str | os.PathLike) -> list[str]:
    """Return the whitespace-separated words of a file."""
    with open(path, "r") as f:
        return f.read().split()


def parse_pid(arg: str) -> int:
    """Parse a PID the way strtol() would, rejecting negative values."""
    m = re.match(r"\s*([+-]?\d+)", arg)
    value = int(m.group(1)) if m else 0
    if value < LONG_MIN or value > LONG_MAX:
        raise ValueError(f"invalid PID: {arg!r}")
    pid = ((value + (1 << 31)) % (1 << 32)) - (1 << 31)
    if pid < 0:
        raise ValueError(f"invalid PID: {pid}")
    return pid


def parse_int_from_file(path: str | os.PathLike) -> int:
    """Read the leading integer of a file."""
    text = Path(path).read_text()
    m = re.match(r"\s*([+-]?\d+)", text)
    if not m:
        raise ValueError(f"no integer found in {os.fspath(path)!r}")
    return int(m.group(1))


def parse_str_from_file(path: str | os.PathLike, max_len: int) -> str:
    """Read the first word of a file, at most ``max_len`` characters of it."""
    words = Path(path).read_text().split(None, 1)
    if not words:
        raise ValueError(f"no string found in {os.fspath(path)!r}")
    return words[0][:max_len]


def parse_cpu_mask_file(path: str | os.PathLike) -> list[bool]:
    """Parse a CPU list such as ``0-3,8`` into a per-CPU boolean mask."""
    text = Path(path).read_text().strip()
    if not text:
        raise ValueError(f"empty CPU list in {os.fspath(path)!r}")

    cpus: set[int] = set()
    for part in text.split(","):
        m = re.fullmatch(r"\s*(\d+)(?:\s*-\s*(\d+))?\s*", part)
        if not m:
            raise ValueError(f"invalid CPU list entry {part!r}")
        start = int(m.group(1))
        end = int(m.group(2)) if m.group(2) is not None else start
        if end < start:
            raise ValueError(f"invalid CPU range {part!r}")
        cpus.update(range(start, end + 1))

    mask = [False] * (max(cpus) + 1)
    for cpu in cpus:
        mask[cpu] = True
    return mask


def file_size(f: IO) -> int:
    """Flush ``f`` and return the size of its underlying file."""
    f.flush()
    return os.fstat(f.fileno()).st_size