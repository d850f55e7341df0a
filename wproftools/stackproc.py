"""Symbolization and deduplication of captured stack traces into a stack dump."""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from operator import attrgetter
from typing import Callable, Iterable, Optional, Sequence

from .stackmodel import (
    FrameFlags,
    StackDump,
    StackFrameRecord,
    StackTrace,
    StackTraceRecord,
    StringSet,
    Symbol,
)
from .utils import NSEC_PER_SEC, U64_MASK, Logger, ktime_now_ns

log = Logger()

Symbolizer = Callable[[int, Sequence[int]], Optional[Sequence[Optional[Symbol]]]]
"""Symbolizes unique addresses of one process (PID 0 is the kernel).

Returns one symbol per address, or None if symbolization failed as a whole.
"""


@dataclass
class _FrameIdx:
    orig_idx: int
    pid: int
    orig_pid: int
    addr: int
    sym: Optional[Symbol] = None
    frame_ids: list[int] = field(default_factory=list)


@dataclass
class _TraceIdx:
    strace: StackTrace
    pid: int
    start: int
    frame_cnt: int
    combine: bool
    kframe_cnt: int = 0


def _append_frames(frames: list[_FrameIdx], pid: int, orig_pid: int, addrs: Sequence[int]) -> None:
    # Frames go outermost first; the leaf address is moved back by one byte
    # so that it resolves to the instruction rather than what follows it.
    for pos, addr in reversed(list(enumerate(addrs))):
        adjusted = (addr - 1 if pos == 0 else addr) & U64_MASK
        frames.append(_FrameIdx(len(frames), pid, orig_pid, adjusted))


def _collect(
    events: Iterable[tuple[int, Iterable[StackTrace]]],
) -> tuple[list[_FrameIdx], list[_TraceIdx]]:
    frames: list[_FrameIdx] = []
    traces: list[_TraceIdx] = []
    for task_pid, event_traces in events:
        for tr in event_traces:
            # user stack must precede the kernel one for callstack merging
            if tr.uaddrs:
                traces.append(_TraceIdx(tr, tr.pid, len(frames), len(tr.uaddrs), False))
                _append_frames(frames, task_pid, task_pid, tr.uaddrs)
            if tr.kaddrs:
                traces.append(
                    _TraceIdx(tr, 0, len(frames), len(tr.kaddrs), bool(tr.uaddrs))
                )
                _append_frames(frames, 0, task_pid, tr.kaddrs)
    return frames, traces


def _symbol_frames(
    sym: Symbol, addr: int, is_kernel: bool, strings: StringSet
) -> list[StackFrameRecord]:
    base = FrameFlags.KERNEL if is_kernel else FrameFlags(0)
    records = [
        StackFrameRecord(
            func_offset=sym.offset,
            flags=base,
            func_name_stroff=strings.add(sym.name or ""),
            src_path_stroff=strings.add(sym.file or ""),
            line_num=sym.line,
            addr=addr,
        )
    ]
    for fn in sym.inlined:
        records.append(
            StackFrameRecord(
                func_offset=0,
                flags=base | FrameFlags.INLINED,
                func_name_stroff=strings.add(fn.name or ""),
                src_path_stroff=strings.add(fn.file or ""),
                line_num=fn.line,
                addr=addr,
            )
        )
    return records


def _symbolize(ordered: list[_FrameIdx], symbolizer: Symbolizer, dump: StackDump) -> None:
    uaddr_cnt = kaddr_cnt = unkn_cnt = 0
    start_ns = ktime_now_ns()

    for pid, group_iter in itertools.groupby(ordered, key=attrgetter("pid")):
        group = list(group_iter)
        addrs = [addr for addr, _ in itertools.groupby(f.addr for f in group)]
        is_kernel = pid == 0

        result = symbolizer(pid, addrs)
        syms: Optional[list[Optional[Symbol]]] = None
        if result is not None:
            syms = list(result)
            if len(syms) != len(addrs):
                raise ValueError(
                    f"symbolizer returned {len(syms)} symbols for {len(addrs)} addresses"
                )

        if is_kernel:
            kaddr_cnt += len(addrs)
        else:
            uaddr_cnt += len(addrs)

        if syms is None:
            unkn_cnt += len(addrs)
            log.vprint(
                f"Symbolization failed for PID {pid}, skipping {len(addrs)} unique addrs"
            )

        sym_iter = iter(syms) if syms is not None else None
        prev: Optional[_FrameIdx] = None
        for f in group:
            if prev is not None and prev.addr == f.addr:
                f.sym = prev.sym
                prev = f
                continue
            if sym_iter is not None:
                sym = next(sym_iter) or Symbol(name=None)
                dump.frames.extend(_symbol_frames(sym, f.addr, is_kernel, dump.strings))
                f.sym = sym
            else:
                flags = FrameFlags.UNSYMBOLIZED
                if is_kernel:
                    flags |= FrameFlags.KERNEL
                dump.frames.append(StackFrameRecord(func_offset=f.addr, flags=flags))
            prev = f

    log.wprint(
        f"Symbolized {uaddr_cnt} user and {kaddr_cnt} kernel UNIQUE addresses "
        f"({uaddr_cnt + kaddr_cnt} total, failed {unkn_cnt}) in "
        f"{(ktime_now_ns() - start_ns) / NSEC_PER_SEC:.3f}s."
    )


def _assign_frame_ids(ordered: list[_FrameIdx]) -> tuple[int, int, int]:
    next_id = 1
    total = deduped = failed = 0
    prev: Optional[_FrameIdx] = None
    for f in ordered:
        unknown = f.sym is None or f.sym.name is None
        if prev is not None and prev.pid == f.pid and prev.addr == f.addr:
            f.frame_ids = prev.frame_ids
            deduped += len(f.frame_ids)
            total += len(f.frame_ids)
            if unknown:
                failed += len(f.frame_ids)
        else:
            cnt = f.sym.frame_count if f.sym is not None else 1
            f.frame_ids = list(range(next_id, next_id + cnt))
            next_id += cnt
            total += cnt
            if unknown:
                failed += 1
        prev = f
    return total, deduped, failed


def process_stack_traces(
    events: Iterable[tuple[int, Iterable[StackTrace]]],
    symbolizer: Symbolizer,
) -> StackDump:
    """Symbolize and deduplicate the stack traces of events.

    ``events`` yields ``(task_pid, stack_traces)`` pairs. Every trace gets
    its ``stack_id`` set to a positive id of the returned dump; identical
    callstacks share one id.
    """
    start_ns = ktime_now_ns()
    log.wprint("Symbolizing...")

    frames, traces = _collect(events)
    dump = StackDump()

    ordered = sorted(frames, key=lambda f: (f.pid, f.addr, f.orig_idx))
    _symbolize(ordered, symbolizer, dump)
    frames_total, frames_deduped, frames_failed = _assign_frame_ids(ordered)

    combined: list[_TraceIdx] = []
    for t in traces:
        if t.combine:
            c = combined[-1]
            c.kframe_cnt = t.frame_cnt
            c.frame_cnt += t.frame_cnt
        else:
            combined.append(t)

    def content(t: _TraceIdx) -> tuple[int, int, tuple[int, ...]]:
        addrs = tuple(f.addr for f in frames[t.start : t.start + t.frame_cnt])
        return (t.pid, t.frame_cnt, addrs)

    keyed = sorted(((content(t), t) for t in combined), key=lambda kt: (kt[0], kt[1].start))

    callstacks_deduped = 0
    prev_key = None
    prev_id = 0
    for key, t in keyed:
        if key == prev_key:
            t.strace.stack_id = prev_id
            callstacks_deduped += 1
            continue
        mapping_idx = len(dump.frame_mappings)
        for f in frames[t.start : t.start + t.frame_cnt]:
            dump.frame_mappings.extend(f.frame_ids)
        dump.stacks.append(
            StackTraceRecord(mapping_idx, len(dump.frame_mappings) - mapping_idx)
        )
        prev_id = len(dump.stacks) - 1
        prev_key = key
        t.strace.stack_id = prev_id

    log.wprint(
        f"Symbolized {len(combined)} stack traces with {frames_total} frames "
        f"({callstacks_deduped} traces and {frames_deduped} frames deduped, "
        f"{frames_failed} unknown frames) in "
        f"{(ktime_now_ns() - start_ns) / NSEC_PER_SEC:.3f}s."
    )
    return dump