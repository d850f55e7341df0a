import random

import pytest

from wproftools.topology import (
    UNKNOWN,
    CpuTopo,
    TopoKind,
    compute_ringbuf_mapping,
    determine_cpu_topology,
    setup_cpu_to_ringbuf_mapping,
)


def _make_sysfs(root, nodes, caches):
    for node, cpulist in nodes.items():
        d = root / "devices" / "system" / "node" / f"node{node}"
        d.mkdir(parents=True)
        (d / "cpulist").write_text(cpulist + "\n")
    for cpu, entries in caches.items():
        for index, (ctype, level, cid) in enumerate(entries):
            d = root / "devices" / "system" / "cpu" / f"cpu{cpu}" / "cache" / f"index{index}"
            d.mkdir(parents=True)
            (d / "type").write_text(ctype + "\n")
            (d / "level").write_text(f"{level}\n")
            (d / "id").write_text(f"{cid}\n")


def _two_node_sysfs(root, cpu_cnt):
    half = cpu_cnt // 2
    nodes = {0: f"0-{half - 1}", 1: f"{half}-{cpu_cnt - 1}"}
    caches = {}
    for cpu in range(cpu_cnt):
        node = 0 if cpu < half else 1
        caches[cpu] = [
            ("Data", 1, cpu),
            ("Instruction", 1, 100 + cpu),
            ("Unified", 2, cpu // 2),
            ("Unified", 3, node),
        ]
    _make_sysfs(root, nodes, caches)


def _cpu(cpu, l1, l2, l3, numa):
    return CpuTopo(cpu=cpu, topo=[l1, l2, l3, numa, 0])


def _two_node_topo(cpu_cnt):
    half = cpu_cnt // 2
    return [
        _cpu(c, c, c // 2, 0 if c < half else 1, 0 if c < half else 1)
        for c in range(cpu_cnt)
    ]


def test_determine_reads_numa_and_caches(tmp_path):
    _two_node_sysfs(tmp_path, 4)
    topo = determine_cpu_topology(4, tmp_path)

    assert [t.cpu for t in topo] == [0, 1, 2, 3]
    assert [t.topo[TopoKind.NUMA] for t in topo] == [0, 0, 1, 1]
    assert [t.topo[TopoKind.L3] for t in topo] == [0, 0, 1, 1]
    assert all(t.topo[TopoKind.COMMON] == 0 for t in topo)


def test_instruction_caches_are_skipped(tmp_path):
    _two_node_sysfs(tmp_path, 4)
    topo = determine_cpu_topology(4, tmp_path)
    assert [t.topo[TopoKind.L1] for t in topo] == [0, 1, 2, 3]


def test_missing_sysfs_leaves_domains_unknown(tmp_path):
    topo = determine_cpu_topology(3, tmp_path)
    assert len(topo) == 3
    for t in topo:
        assert t.topo[TopoKind.COMMON] == 0
        for kind in (TopoKind.L1, TopoKind.L2, TopoKind.L3, TopoKind.NUMA):
            assert t.topo[kind] == UNKNOWN


def test_out_of_range_cache_level_ignored(tmp_path):
    _make_sysfs(tmp_path, {}, {0: [("Unified", 4, 7)]})
    topo = determine_cpu_topology(1, tmp_path)
    assert topo[0].topo[TopoKind.L3] == UNKNOWN
    assert topo[0].topo[TopoKind.L1] == UNKNOWN


def test_cache_entry_without_level_file_is_skipped(tmp_path):
    _make_sysfs(tmp_path, {}, {0: [("Data", 1, 5), ("Unified", 2, 9)]})
    (tmp_path / "devices/system/cpu/cpu0/cache/index0/level").unlink()
    topo = determine_cpu_topology(1, tmp_path)
    assert topo[0].topo[TopoKind.L1] == UNKNOWN
    assert topo[0].topo[TopoKind.L2] == 9


def test_cpulist_wider_than_cpu_count(tmp_path):
    _make_sysfs(tmp_path, {0: "0-7"}, {})
    topo = determine_cpu_topology(2, tmp_path)
    assert len(topo) == 2
    assert [t.topo[TopoKind.NUMA] for t in topo] == [0, 0]


def test_one_ringbuf_gets_everything():
    mapping = compute_ringbuf_mapping(_two_node_topo(4), 1, random.Random(0))
    assert mapping == [0, 0, 0, 0]


def test_ringbuf_per_cpu():
    mapping = compute_ringbuf_mapping(_two_node_topo(4), 4, random.Random(0))
    assert mapping == [0, 1, 2, 3]


def test_two_ringbufs_split_by_node():
    mapping = compute_ringbuf_mapping(_two_node_topo(4), 2, random.Random(0))
    assert mapping[0] == mapping[1]
    assert mapping[2] == mapping[3]
    assert mapping[0] != mapping[2]
    assert set(mapping) == {0, 1}


def test_balancing_merges_within_domain():
    mapping = compute_ringbuf_mapping(_two_node_topo(4), 3, random.Random(1))
    assert len(set(mapping)) == 3
    shared = [c for c in range(4) if mapping.count(mapping[c]) == 2]
    assert sorted(shared) in ([0, 1], [2, 3])


def test_more_ringbufs_than_cpus():
    mapping = compute_ringbuf_mapping(_two_node_topo(4), 8, random.Random(0))
    assert sorted(mapping) == [0, 1, 2, 3]


def test_unknown_topology_is_balanced():
    topo = [CpuTopo(cpu=c, topo=[UNKNOWN, UNKNOWN, UNKNOWN, UNKNOWN, 0]) for c in range(5)]
    mapping = compute_ringbuf_mapping(topo, 2, random.Random(3))
    assert set(mapping) == {0, 1}
    assert len(mapping) == 5


@pytest.mark.parametrize("rb_cnt", range(1, 9))
def test_every_ringbuf_is_used(rb_cnt):
    topo = _two_node_topo(8)
    mapping = compute_ringbuf_mapping(topo, rb_cnt, random.Random(rb_cnt))
    assert set(mapping) == set(range(rb_cnt))
    if rb_cnt >= 2:
        nodes = {c: topo[c].topo[TopoKind.NUMA] for c in range(8)}
        for a in range(8):
            for b in range(8):
                if mapping[a] == mapping[b]:
                    assert nodes[a] == nodes[b]


def test_same_seed_same_mapping():
    first = compute_ringbuf_mapping(_two_node_topo(8), 5, random.Random(42))
    second = compute_ringbuf_mapping(_two_node_topo(8), 5, random.Random(42))
    assert first == second


def test_invalid_ringbuf_count():
    with pytest.raises(ValueError):
        compute_ringbuf_mapping(_two_node_topo(4), 0)


def test_non_contiguous_cpu_ids_rejected():
    with pytest.raises(ValueError):
        compute_ringbuf_mapping([_cpu(0, 0, 0, 0, 0), _cpu(2, 2, 1, 0, 0)], 1)


def test_setup_from_sysfs(tmp_path):
    _two_node_sysfs(tmp_path, 8)
    mapping = setup_cpu_to_ringbuf_mapping(2, 8, tmp_path, random.Random(0))
    assert len(mapping) == 8
    assert len(set(mapping[:4])) == 1
    assert len(set(mapping[4:])) == 1
    assert mapping[0] != mapping[4]