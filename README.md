# wproftools

Building blocks for a wall-clock profiler on Linux: grouping CPUs by cache
and NUMA layout, finding the executables to probe for request tracking,
encoding protobuf messages, and symbolizing and deduplicating stack traces.

It uses only the Python standard library.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Modules

- `wproftools.utils`: `glob_match` (glob with `?`, `*` and `\` escapes),
  `parse_time_offset` (durations such as `1.5s`, `200us`; a bare number is
  milliseconds), `is_pow_of_2` / `round_pow_of_2`, `truncate_cstr`,
  `hash_combine`, small file parsers (`read_strings_file`, `parse_pid`,
  `parse_int_from_file`, `parse_str_from_file`, `parse_cpu_mask_file`,
  `file_size`), the `Tristate` and `LogSubset` enums, a verbosity-aware
  `Logger`, and a `KtimeClock` that converts monotonic timestamps to
  wall-clock time.
- `wproftools.injmsg`: fixed-layout structures exchanged with a library
  injected into a traced process: `SetupCtx` and `InjMsg` (with `pack` /
  `unpack`), `RunCtx`, the `InjMsgKind`, `InjSetupState` and `InjExitHint`
  enums, and `inj_msg_str`.
- `wproftools.topology`: `determine_cpu_topology` reads NUMA node and L1–L3
  cache ids from sysfs (the root is a parameter, so a fake tree works);
  `compute_ringbuf_mapping` merges CPUs level by level into the requested
  number of ring buffers; `setup_cpu_to_ringbuf_mapping` does both.
- `wproftools.requests`: `BinaryRegistry` keeps unique binaries by device
  and inode; `discover_pid_binaries` adds a process's executable file
  mappings (attached through its `map_files` links);
  `setup_req_tracking_discovery` combines all-process discovery, explicit
  paths and explicit PIDs, reporting and skipping failures.
- `wproftools.wire`: protobuf wire format: `encode_varint`,
  `decode_varint`, `iter_fields` and a chaining `MessageWriter`.
- `wproftools.stackmodel`: `StackTrace`, `Symbol`, `InlinedFn`,
  `FrameFlags`, `StackKind`, a deduplicating `StringSet`, and the
  `StackDump` of symbolized frames and callstacks (frame 0 and stack 0 are
  all-zero placeholders).
- `wproftools.stackproc`: `process_stack_traces` symbolizes each unique
  address once through a caller-supplied symbolizer, expands inlined
  functions into frames, joins user and kernel stacks, deduplicates
  identical callstacks and sets each trace's `stack_id`.

## Examples

```python
from wproftools.utils import glob_match, parse_time_offset

assert glob_match("*ac*ae*ag*", "abacadaeafag")
assert not glob_match("*abcd*", "abcabcabcabcefg")
assert parse_time_offset("1.5s") == 1_500_000_000
assert parse_time_offset("250") == 250_000_000  # bare number is milliseconds
```

Building a protobuf message and reading it back:

```python
from wproftools.wire import MessageWriter, iter_fields

data = MessageWriter().varint(1, 150).string(2, "hi").to_bytes()
assert [(f.number, f.value) for f in iter_fields(data)] == [(1, 150), (2, b"hi")]
```

Deduplicating stack traces with your own symbolizer (called with a PID,
0 for the kernel, and the unique addresses of that PID):

```python
from wproftools.stackmodel import StackKind, StackTrace, Symbol
from wproftools.stackproc import process_stack_traces

def symbolize(pid, addrs):
    return [Symbol(name=f"fn_{addr:x}") for addr in addrs]

a = StackTrace(kind=StackKind.TIMER, pid=42, uaddrs=[0x1000, 0x2000])
b = StackTrace(kind=StackKind.TIMER, pid=42, uaddrs=[0x1000, 0x2000])
dump = process_stack_traces([(42, [a]), (42, [b])], symbolize)
assert a.stack_id == b.stack_id == 1
assert dump.stack_frame_ids(1) == [2, 1]  # outermost frame first
```

`process_stack_traces` reports its progress through a `Logger`, so it
prints a few lines to standard output.

## What this package does not do

- It provides no command-line program; everything is a library call.
- It does not write trace files: there are no trace packets, interned
  string tables or debug annotations, only the generic `MessageWriter`.
- It does not capture anything itself. Stack traces, CPU counts and process
  lists come from the caller, and symbolization is done by the callable the
  caller passes in.
- It does not attach probes or load an injected library; `injmsg` only
  defines the messages and `requests` only finds the binaries.