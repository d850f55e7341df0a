"""CPU topology discovery and CPU-to-ringbuffer assignment."""

from __future__ import annotations

import enum
import itertools
import os
import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

from .utils import (
    U64_MASK,
    Logger,
    LogSubset,
    parse_cpu_mask_file,
    parse_int_from_file,
    parse_str_from_file,
)

UNKNOWN = U64_MASK
"""Topology id of a domain that could not be determined."""

CACHE_TYPE_MAX_LEN = 63

log = Logger()


class TopoKind(enum.IntEnum):
    """Topology domains, from the narrowest to the widest."""

    L1 = 0
    L2 = 1
    L3 = 2
    NUMA = 3
    COMMON = 4  # every CPU belongs to the same single domain


_KIND_NAMES = {
    TopoKind.NUMA: "NUMA",
    TopoKind.L3: "L3",
    TopoKind.L2: "L2",
    TopoKind.L1: "L1",
}


def _unknown_topo() -> list[int]:
    return [UNKNOWN] * len(TopoKind)


@dataclass
class CpuTopo:
    """Topology domain ids of a single CPU."""

    cpu: int
    group: int = -1
    rnd: int = 0
    topo: list[int] = field(default_factory=_unknown_topo)


def determine_cpu_topology(cpu_cnt: int, sysfs_root: str | os.PathLike = "/sys") -> list[CpuTopo]:
    """Read NUMA node and cache ids of each CPU from sysfs."""
    root = Path(sysfs_root)
    topo = [CpuTopo(cpu=cpu, rnd=random.randrange(1 << 31)) for cpu in range(cpu_cnt)]
    for t in topo:
        t.topo[TopoKind.COMMON] = 0

    for node in itertools.count():
        path = root / "devices" / "system" / "node" / f"node{node}" / "cpulist"
        if not path.exists():
            break
        try:
            mask = parse_cpu_mask_file(path)
        except (OSError, ValueError) as exc:
            log.eprint(f"Failed to parse CPU list from '{path}': {exc}")
            continue
        for cpu, present in enumerate(mask[:cpu_cnt]):
            if present:
                topo[cpu].topo[TopoKind.NUMA] = node

    for t in topo:
        if all(t.topo[k] != UNKNOWN for k in (TopoKind.L3, TopoKind.L2, TopoKind.L1)):
            continue

        cache_dir = root / "devices" / "system" / "cpu" / f"cpu{t.cpu}" / "cache"
        for index in itertools.count():
            index_dir = cache_dir / f"index{index}"
            type_path = index_dir / "type"
            if not type_path.exists():
                break

            try:
                cache_type = parse_str_from_file(type_path, CACHE_TYPE_MAX_LEN)
            except (OSError, ValueError) as exc:
                log.eprint(f"Failed to parse cache type from '{type_path}': {exc}")
                continue
            if cache_type == "Instruction":
                continue

            level_path = index_dir / "level"
            try:
                level = parse_int_from_file(level_path)
            except (OSError, ValueError) as exc:
                log.eprint(f"Failed to parse cache level from '{level_path}': {exc}")
                continue
            if not 1 <= level <= 3:
                continue

            id_path = index_dir / "id"
            try:
                cache_id = parse_int_from_file(id_path)
            except (OSError, ValueError) as exc:
                log.eprint(f"Failed to parse cache id from '{id_path}': {exc}")
                continue

            t.topo[TopoKind.L1 + level - 1] = cache_id & U64_MASK

    return topo


class _DisjointSets:
    """Union-find over CPU ids, tracking member counts."""

    def __init__(self, size: int):
        self.parent = list(range(size))
        self.cnt = [1] * size

    def copy(self) -> "_DisjointSets":
        other = _DisjointSets(0)
        other.parent = list(self.parent)
        other.cnt = list(self.cnt)
        return other

    def find(self, item: int) -> int:
        root = item
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[item] != root:
            self.parent[item], item = root, self.parent[item]
        return root

    def count(self, item: int) -> int:
        return self.cnt[self.find(item)]

    def union(self, a: int, b: int) -> bool:
        """Merge two sets; return whether they were disjoint."""
        sa, sb = self.find(a), self.find(b)
        if sa == sb:
            return False
        self.parent[sa] = sb
        self.cnt[sb] += self.cnt[sa]
        return True


def _topo_key(t: CpuTopo) -> tuple[int, ...]:
    return (*reversed(t.topo), t.cpu)


def _regroup(order: Sequence[CpuTopo], sets: _DisjointSets) -> None:
    """Number groups 0, 1, ... in the order their first member appears."""
    groups: dict[int, int] = {}
    for t in order:
        t.group = groups.setdefault(sets.find(t.cpu), len(groups))


def _grouping_debug_enabled() -> bool:
    return bool(log.log_set & LogSubset.TOPOLOGY) and log.debug_level >= 2


def _print_grouping(topo: Sequence[CpuTopo], sets: _DisjointSets) -> None:
    for t in sorted(topo, key=lambda t: t.cpu):
        log.wprint(
            f"CPU #{t.cpu} -> GROUP {t.group} SET {sets.find(t.cpu)} "
            f"MEMBER_CNT {sets.count(t.cpu)}"
        )


def _log_combine(a: int, b: int, cnt1: int, cnt2: int, total: int, kind: TopoKind) -> None:
    log.dlog(
        LogSubset.TOPOLOGY,
        2,
        f"COMBINING CPU {a} and CPU {b} -> {cnt1} + {cnt2} = {total} "
        f"({_KIND_NAMES.get(kind, '???')})",
    )


def compute_ringbuf_mapping(
    topo: Sequence[CpuTopo], rb_cnt: int, rng: Optional[random.Random] = None
) -> list[int]:
    """Assign each CPU to one of ``rb_cnt`` ringbuffers, keeping neighbours together.

    CPUs are merged level by level (L1, L2, L3, NUMA, all) while there are
    more groups than ringbuffers; the last level is then balanced by
    merging random groups with the smallest group of the same domain.
    Returns the ringbuffer index of each CPU, indexed by CPU id.
    """
    if rb_cnt < 1:
        raise ValueError(f"ringbuffer count must be positive, got {rb_cnt}")
    cpu_cnt = len(topo)
    if sorted(t.cpu for t in topo) != list(range(cpu_cnt)):
        raise ValueError("CPU ids must be 0 .. N-1, each exactly once")
    if rng is None:
        rng = random.Random()

    order = sorted(topo, key=_topo_key)
    sets = _DisjointSets(cpu_cnt)
    last_sets = sets.copy()
    set_cnt = last_set_cnt = cpu_cnt
    balance_kind: Optional[TopoKind] = None

    for kind in TopoKind:
        last_sets = sets.copy()

        for prev, cur in zip(order, order[1:]):
            if cur.topo[kind] != prev.topo[kind]:
                continue
            cnt1 = sets.count(prev.cpu)
            cnt2 = sets.count(cur.cpu)
            if not sets.union(prev.cpu, cur.cpu):
                continue
            set_cnt -= 1
            _log_combine(prev.cpu, cur.cpu, cnt1, cnt2, sets.count(cur.cpu), kind)

        _regroup(order, sets)

        if last_set_cnt != set_cnt and _grouping_debug_enabled():
            _print_grouping(order, sets)

        if set_cnt == rb_cnt:
            break
        if set_cnt < rb_cnt:
            balance_kind = kind
            break

        last_set_cnt = set_cnt

    by_cpu = sorted(order, key=lambda t: t.cpu)

    if balance_kind is not None:
        sets = last_sets
        set_cnt = last_set_cnt

        while set_cnt > rb_cnt:
            cpu = rng.randrange(cpu_cnt)
            root = sets.find(cpu)
            domain = by_cpu[cpu].topo[balance_kind]
            best_cpu: Optional[int] = None
            best_cnt = 0

            for t in by_cpu:
                if sets.find(t.cpu) == root:
                    continue
                if t.topo[balance_kind] != domain:
                    continue
                cnt = sets.count(t.cpu)
                if best_cpu is None or cnt < best_cnt:
                    best_cpu, best_cnt = t.cpu, cnt

            # the whole domain may already be a single group
            if best_cpu is None:
                continue

            cnt1 = sets.count(cpu)
            cnt2 = sets.count(best_cpu)
            if sets.union(cpu, best_cpu):
                _log_combine(cpu, best_cpu, cnt1, cnt2, sets.count(cpu), balance_kind)
                set_cnt -= 1

        _regroup(by_cpu, sets)
        if _grouping_debug_enabled():
            _print_grouping(by_cpu, sets)

    return [t.group for t in by_cpu]


def setup_cpu_to_ringbuf_mapping(
    rb_cnt: int,
    cpu_cnt: int,
    sysfs_root: str | os.PathLike = "/sys",
    rng: Optional[random.Random] = None,
) -> list[int]:
    """Return the ringbuffer index for each of ``cpu_cnt`` CPUs."""
    try:
        topo = determine_cpu_topology(cpu_cnt, sysfs_root)
    except OSError:
        log.eprint(
            "Failed to determine CPU topology, falling back to modulo-based "
            "ringbuf distribution strategy!"
        )
        topo = [CpuTopo(cpu=cpu) for cpu in range(cpu_cnt)]
        mapping = [cpu % rb_cnt for cpu in range(cpu_cnt)]
    else:
        mapping = compute_ringbuf_mapping(topo, rb_cnt, rng)

    if (log.log_set & LogSubset.TOPOLOGY) and log.debug_level >= 1:
        log.wprint("CPU topology and CPU-to-ringbuf mapping:")
        log.wprint("========================================")
        for t in sorted(topo, key=lambda t: t.cpu):
            log.wprint(
                f"CPU #{t.cpu:3d} (NUMA={t.topo[TopoKind.NUMA]}, L3={t.topo[TopoKind.L3]}, "
                f"L2={t.topo[TopoKind.L2]}, L1={t.topo[TopoKind.L1]}) "
                f"-> ringbuf #{mapping[t.cpu]}"
            )

    return mapping