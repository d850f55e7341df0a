"""Discovery of binaries that request-tracking probes are attached to."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, Optional

from .utils import Logger, hash_combine

log = Logger()


@dataclass(frozen=True)
class UprobeBinary:
    """A binary identified by device and inode; paths are informational."""

    dev: int
    inode: int
    path: str = field(compare=False)
    attach_path: Optional[str] = field(default=None, compare=False)

    @property
    def key(self) -> tuple[int, int]:
        return (self.dev, self.inode)

    def __hash__(self) -> int:
        return hash_combine(self.dev, self.inode)


class BinaryRegistry:
    """Unique binaries in the order they were first seen."""

    def __init__(self) -> None:
        self._binaries: dict[tuple[int, int], UprobeBinary] = {}

    def add(
        self, dev: int, inode: int, path: str, attach_path: Optional[str] = None
    ) -> bool:
        """Record a binary unless one with the same dev/inode is known.

        Returns whether the binary was new.
        """
        key = (dev, inode)
        if key in self._binaries:
            return False
        self._binaries[key] = UprobeBinary(dev, inode, path, attach_path)
        return True

    def __len__(self) -> int:
        return len(self._binaries)

    def __iter__(self) -> Iterator[UprobeBinary]:
        return iter(self._binaries.values())


def _exec_file_vmas(maps_text: str) -> Iterator[tuple[int, int, int, int, int, str]]:
    """Yield (start, end, major, minor, inode, name) of executable file mappings."""
    for line in maps_text.splitlines():
        parts = line.split(None, 5)
        if len(parts) < 5:
            continue
        addrs, perms, _offset, dev, inode_str = parts[:5]
        name = parts[5] if len(parts) > 5 else ""
        if len(perms) < 3 or perms[2] != "x":
            continue
        inode = int(inode_str)
        if inode == 0:
            continue
        start_str, end_str = addrs.split("-", 1)
        major_str, minor_str = dev.split(":", 1)
        yield int(start_str, 16), int(end_str, 16), int(major_str, 16), int(minor_str, 16), inode, name


def discover_pid_binaries(
    registry: BinaryRegistry, pid: int, proc_root: str | os.PathLike = "/proc"
) -> None:
    """Add every executable file mapped by ``pid`` to ``registry``.

    Binaries are attached through the process's map_files links, which
    bypass mount namespaces and work even for deleted files. A process
    that no longer exists contributes nothing.
    """
    pid_dir = Path(proc_root) / str(pid)
    try:
        text = (pid_dir / "maps").read_text(errors="surrogateescape")
    except (FileNotFoundError, ProcessLookupError):
        return

    for start, end, major, minor, inode, name in _exec_file_vmas(text):
        if not name.startswith("/"):
            continue  # special mapping
        attach_path = str(pid_dir / "map_files" / f"{start:x}-{end:x}")
        registry.add(os.makedev(major, minor), inode, name, attach_path)


def _all_pids(proc_root: str | os.PathLike) -> list[int]:
    try:
        names = os.listdir(proc_root)
    except OSError as exc:
        log.eprint(f"Failed to list processes in '{os.fspath(proc_root)}': {exc}")
        return []
    return sorted(int(n) for n in names if n.isdigit())


def setup_req_tracking_discovery(
    paths: Iterable[str] = (),
    pids: Iterable[int] = (),
    global_discovery: bool = False,
    proc_root: str | os.PathLike = "/proc",
) -> BinaryRegistry:
    """Collect binaries from all processes, explicit paths and explicit PIDs.

    Failures for individual processes or paths are reported and skipped.
    """
    registry = BinaryRegistry()

    if global_discovery:
        for pid in _all_pids(proc_root):
            try:
                discover_pid_binaries(registry, pid, proc_root)
            except (OSError, ValueError) as exc:
                log.eprint(
                    f"Failed to discover request tracking binaries for PID {pid}: "
                    f"{exc} (skipping...)"
                )

    for path in paths:
        try:
            st = os.stat(path)
        except OSError as exc:
            log.eprint(
                f"Failed to stat() binary '{path}' for request tracking: {exc} (skipping...)"
            )
            continue
        registry.add(st.st_dev, st.st_ino, path, None)

    for pid in pids:
        try:
            discover_pid_binaries(registry, pid, proc_root)
        except (OSError, ValueError) as exc:
            log.eprint(
                f"Failed to discover request tracking binaries for PID {pid}: "
                f"{exc} (skipping...)"
            )

    return registry