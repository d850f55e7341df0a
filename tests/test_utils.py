import io
import re
import time

import pytest

from wproftools.utils import (
    KtimeClock,
    Logger,
    LogSubset,
    Tristate,
    file_size,
    glob_match,
    hash_combine,
    is_false_or_unset,
    is_pow_of_2,
    is_true_or_unset,
    ktime_now_ns,
    parse_cpu_mask_file,
    parse_int_from_file,
    parse_pid,
    parse_str_from_file,
    parse_time_offset,
    read_strings_file,
    round_pow_of_2,
    timespec_to_ns,
    truncate_cstr,
)

GLOB_CASES = [
    (True, "a", "a"),
    (False, "a", "b"),
    (False, "a", "aa"),
    (False, "a", ""),
    (True, "", ""),
    (False, "", "a"),
    (True, "?", "a"),
    (False, "?", "aa"),
    (False, "??", "a"),
    (True, "?x?", "axb"),
    (False, "?x?", "abx"),
    (False, "?x?", "xab"),
    (False, "*??", "a"),
    (True, "*??", "ab"),
    (True, "*??", "abc"),
    (True, "*??", "abcd"),
    (False, "??*", "a"),
    (True, "??*", "ab"),
    (True, "??*", "abc"),
    (True, "??*", "abcd"),
    (False, "?*?", "a"),
    (True, "?*?", "ab"),
    (True, "?*?", "abc"),
    (True, "?*?", "abcd"),
    (True, "*b", "b"),
    (True, "*b", "ab"),
    (False, "*b", "ba"),
    (True, "*b", "bb"),
    (True, "*b", "abb"),
    (True, "*b", "bab"),
    (True, "*bc", "abbc"),
    (True, "*bc", "bc"),
    (True, "*bc", "bbc"),
    (True, "*bc", "bcbc"),
    (True, "*ac*", "abacadaeafag"),
    (True, "*ac*ae*ag*", "abacadaeafag"),
    (True, "*abcd*", "abcabcabcabcdefg"),
    (True, "*ab*cd*", "abcabcabcabcdefg"),
    (True, "*abcd*abcdef*", "abcabcdabcdeabcdefg"),
    (False, "*abcd*", "abcabcabcabcefg"),
    (False, "*ab*cd*", "abcabcabcabcefg"),
]


@pytest.mark.parametrize("expected,pattern,string", GLOB_CASES)
def test_glob_match_cases(expected, pattern, string):
    assert glob_match(pattern, string) is expected


def test_glob_escape_matches_literal_star():
    assert glob_match("a\\*", "a*") is True
    assert glob_match("a\\*", "ab") is False


def test_tristate_helpers():
    assert is_true_or_unset(Tristate.TRUE) is True
    assert is_true_or_unset(Tristate.UNSET) is True
    assert is_true_or_unset(Tristate.FALSE) is False
    assert is_false_or_unset(Tristate.UNSET) is True


def test_is_pow_of_2():
    assert is_pow_of_2(0) is False
    assert is_pow_of_2(1) is True
    assert is_pow_of_2(1024) is True
    assert is_pow_of_2(6) is False


def test_round_pow_of_2_invariant():
    for n in range(1, 2000):
        r = round_pow_of_2(n)
        assert is_pow_of_2(r)
        assert n <= r < 2 * n


def test_truncate_cstr():
    assert truncate_cstr("hello", 3) == "he"
    assert truncate_cstr("hello", 100) == "hello"
    assert truncate_cstr("a\0b", 10) == "a"
    assert truncate_cstr("abc", 0) == ""


def test_parse_time_offset_units():
    assert parse_time_offset("1s") == 1000000000
    assert parse_time_offset("1ms") == 1000000
    assert parse_time_offset("1us") == 1000
    assert parse_time_offset("7ns") == 7


def test_parse_time_offset_default_is_ms():
    assert parse_time_offset("2") == parse_time_offset("2ms")
    assert parse_time_offset("2.5 ") == parse_time_offset("2.5ms")


@pytest.mark.parametrize("arg", ["", "abc", "1sec", "1xx", "1 s s"])
def test_parse_time_offset_invalid(arg):
    with pytest.raises(ValueError):
        parse_time_offset(arg)


def test_hash_combine():
    assert hash_combine(0, 5) == 5
    assert hash_combine(1, 0) == 31
    assert 0 <= hash_combine(2**64 - 1, 2**64 - 1) < 2**64


def test_timespec_to_ns():
    assert timespec_to_ns(1, 0) == 1000000000
    assert timespec_to_ns(0, 123) == 123


def test_ktime_now_is_monotonic():
    a = ktime_now_ns()
    b = ktime_now_ns()
    assert b >= a


def test_ktime_clock_offset_round_trip():
    clock = KtimeClock()
    clock.set_offset(500, 9000)
    assert clock.to_realtime_ns(500) == 9000


def test_ktime_clock_calibrate():
    clock = KtimeClock()
    clock.calibrate()
    diff = abs(clock.to_realtime_ns(time.monotonic_ns()) - time.time_ns())
    assert diff < 1_000_000_000


def test_logger_normal_output_plain():
    out, err = io.StringIO(), io.StringIO()
    log = Logger(stdout=out, stderr=err)
    log.wprint("hello")
    assert out.getvalue() == "hello\n"
    assert err.getvalue() == ""


def test_logger_verbose_gating():
    err = io.StringIO()
    quiet = Logger(stderr=err)
    quiet.vprint("v")
    assert err.getvalue() == ""

    loud = Logger(verbose=True, stderr=err)
    loud.vprint("v")
    assert err.getvalue().endswith(" v\n")


def test_logger_debug_levels():
    err = io.StringIO()
    log = Logger(debug_level=0, stderr=err)
    log.dprint(1, "dbg")
    assert err.getvalue() == ""
    log.debug_level = 1
    log.dprint(1, "dbg")
    assert err.getvalue().endswith(" dbg\n")


def test_logger_dlog_respects_subset():
    err = io.StringIO()
    log = Logger(debug_level=2, log_set=LogSubset.USDT, stderr=err)
    log.dlog(LogSubset.TOPOLOGY, 1, "topo")
    assert err.getvalue() == ""
    log.dlog(LogSubset.USDT, 1, "usdt")
    assert err.getvalue().endswith(" usdt\n")


def test_read_strings_file(tmp_path):
    p = tmp_path / "words"
    p.write_text("alpha beta\n  gamma\n")
    assert read_strings_file(p) == ["alpha", "beta", "gamma"]


def test_read_strings_file_missing(tmp_path):
    with pytest.raises(OSError):
        read_strings_file(tmp_path / "nope")


def test_parse_pid():
    assert parse_pid("42") == 42
    with pytest.raises(ValueError):
        parse_pid("-1")


def test_parse_int_from_file(tmp_path):
    p = tmp_path / "n"
    p.write_text("17\n")
    assert parse_int_from_file(p) == 17
    p.write_text("")
    with pytest.raises(ValueError):
        parse_int_from_file(p)


def test_parse_str_from_file(tmp_path):
    p = tmp_path / "type"
    p.write_text("Data\n")
    assert parse_str_from_file(p, 63) == "Data"
    assert parse_str_from_file(p, 2) == "Da"
    p.write_text("  \n")
    with pytest.raises(ValueError):
        parse_str_from_file(p, 63)


def test_parse_cpu_mask_file(tmp_path):
    p = tmp_path / "cpulist"
    p.write_text("0-2,4\n")
    assert parse_cpu_mask_file(p) == [True, True, True, False, True]


@pytest.mark.parametrize("content", ["", "3-1", "x"])
def test_parse_cpu_mask_file_invalid(tmp_path, content):
    p = tmp_path / "cpulist"
    p.write_text(content)
    with pytest.raises(ValueError):
        parse_cpu_mask_file(p)


def test_file_size(tmp_path):
    data = b"abcdef"
    with open(tmp_path / "f", "wb") as f:
        f.write(data)
        assert file_size(f) == len(data)