import pytest

from minicontainer.container import Container
from minicontainer.scheduler import (
    DEFAULT_SHARES,
    FairnessRow,
    Scheduler,
    SchedulerFullError,
    cpu_max_value,
    cpu_weight,
    enforce_resource_limits,
    parse_cpu_stat,
    read_cpu_usage,
    setup_cpu_cgroup,
)
from minicontainer.storage import StorageError

SAMPLE_STAT = (
    "usage_usec 12345678\n"
    "user_usec 8000000\n"
    "system_usec 4345678\n"
    "nr_periods 100\n"
    "nr_throttled 5\n"
    "throttled_usec 234567\n"
)


def _write_usage(base, container_id, usage):
    directory = base / f"container-{container_id}"
    directory.mkdir(exist_ok=True)
    (directory / "cpu.stat").write_text(f"usage_usec {usage}\nuser_usec 0\n")


def test_cpu_weight_default_maps_to_100():
    assert cpu_weight(DEFAULT_SHARES) == 100


def test_cpu_weight_is_proportional():
    assert cpu_weight(2048) == 2 * cpu_weight(1024)
    assert cpu_weight(1024) == 2 * cpu_weight(512)


def test_cpu_weight_clamped():
    assert cpu_weight(0) == 1
    assert cpu_weight(-5) == 1
    assert cpu_weight(10**9) == 10000


def test_cpu_max_value_limited():
    assert cpu_max_value(70000, 100000) == "70000 100000"


def test_cpu_max_value_unlimited():
    assert cpu_max_value(0, 0) == "max 100000"
    assert cpu_max_value(0, 50000) == "max 50000"


def test_setup_cpu_cgroup_writes_controls(tmp_path):
    cgroup = tmp_path / "container-sched-A"
    cgroup.mkdir()
    (cgroup / "cpu.weight").write_text("")
    (cgroup / "cpu.max").write_text("")
    result = setup_cpu_cgroup("sched-A", 2048, 70000, 100000, tmp_path)
    assert result == cgroup
    assert (cgroup / "cpu.weight").read_text() == str(cpu_weight(2048))
    assert (cgroup / "cpu.max").read_text() == "70000 100000"


def test_setup_cpu_cgroup_creates_directory(tmp_path):
    result = setup_cpu_cgroup("sched-B", 1024, 0, 0, tmp_path)
    assert result.is_dir()
    assert result.name == "container-sched-B"


def test_setup_cpu_cgroup_fails_without_parent(tmp_path):
    with pytest.raises(StorageError):
        setup_cpu_cgroup("x", 1024, 0, 0, tmp_path / "missing" / "deeper")


def test_parse_cpu_stat_sample():
    assert parse_cpu_stat(SAMPLE_STAT) == 12345678


def test_parse_cpu_stat_missing_key():
    assert parse_cpu_stat("user_usec 5\nsystem_usec 6\n") is None
    assert parse_cpu_stat("") is None


def test_parse_cpu_stat_stops_at_bad_value():
    assert parse_cpu_stat("user_usec abc\nusage_usec 10\n") is None


def test_read_cpu_usage(tmp_path):
    assert read_cpu_usage("nope", tmp_path) is None
    _write_usage(tmp_path, "c1", 4242)
    assert read_cpu_usage("c1", tmp_path) == 4242


def test_enforce_resource_limits_reports_usage(tmp_path):
    _write_usage(tmp_path, "enf", 777)
    assert enforce_resource_limits(Container(id="enf"), tmp_path) == 777
    assert enforce_resource_limits(Container(id="other"), tmp_path) is None


def test_add_defaults_nonpositive_shares(tmp_path):
    sched = Scheduler(cgroup_base=tmp_path)
    entry = sched.add("a", 0)
    assert entry.shares == DEFAULT_SHARES
    assert entry.active


def test_add_raises_when_full(tmp_path):
    sched = Scheduler(cgroup_base=tmp_path)
    for n in range(16):
        sched.add(f"c{n}", 1024)
    with pytest.raises(SchedulerFullError):
        sched.add("overflow", 1024)


def test_removed_entries_still_occupy_slots(tmp_path):
    sched = Scheduler(cgroup_base=tmp_path, capacity=2)
    sched.add("a", 1024)
    sched.add("b", 1024)
    sched.remove("a")
    with pytest.raises(SchedulerFullError):
        sched.add("c", 1024)


def test_remove_unknown_raises(tmp_path):
    sched = Scheduler(cgroup_base=tmp_path)
    with pytest.raises(KeyError):
        sched.remove("ghost")


def test_next_empty_is_none(tmp_path):
    sched = Scheduler(cgroup_base=tmp_path)
    assert sched.next() is None
    sched.add("a", 1024)
    sched.remove("a")
    assert sched.next() is None


def test_next_prefers_highest_shares_when_idle(tmp_path):
    sched = Scheduler(cgroup_base=tmp_path)
    sched.add("sched-B", 1024)
    sched.add("sched-A", 2048)
    sched.add("sched-C", 512)
    assert sched.next() == "sched-A"


def test_next_prefers_container_behind(tmp_path):
    _write_usage(tmp_path, "A", 900000)
    _write_usage(tmp_path, "B", 0)
    sched = Scheduler(cgroup_base=tmp_path)
    sched.add("A", 2048)
    sched.add("B", 1024)
    assert sched.next() == "B"
    assert sched.entries[0].cpu_used_us == 900000


def test_next_skips_removed(tmp_path):
    sched = Scheduler(cgroup_base=tmp_path)
    sched.add("A", 2048)
    sched.add("B", 1024)
    sched.remove("A")
    assert sched.next() == "B"


def test_fairness_report_fair_when_usage_matches(tmp_path):
    _write_usage(tmp_path, "A", 200)
    _write_usage(tmp_path, "B", 100)
    sched = Scheduler(cgroup_base=tmp_path)
    sched.add("A", 2048)
    sched.add("B", 1024)
    rows = sched.fairness_report()
    assert [row.id for row in rows] == ["A", "B"]
    assert sum(row.expected_pct for row in rows) == pytest.approx(100.0)
    assert sum(row.actual_pct for row in rows) == pytest.approx(100.0)
    assert all(row.fair for row in rows)


def test_fairness_report_skewed(tmp_path):
    _write_usage(tmp_path, "A", 0)
    _write_usage(tmp_path, "B", 100)
    sched = Scheduler(cgroup_base=tmp_path)
    sched.add("A", 1024)
    sched.add("B", 1024)
    rows = sched.fairness_report()
    assert not any(row.fair for row in rows)
    assert rows[1].actual_pct == pytest.approx(100.0)


def test_fairness_no_usage_gives_zero_actual(tmp_path):
    sched = Scheduler(cgroup_base=tmp_path)
    sched.add("A", 1024)
    rows = sched.fairness_report()
    assert rows[0].actual_pct == 0.0
    assert rows[0].expected_pct == pytest.approx(100.0)


def test_fairness_row_deviation():
    row = FairnessRow(id="x", shares=1024, expected_pct=50.0, actual_pct=47.0)
    assert row.deviation == pytest.approx(3.0)
    assert row.fair


def test_format_fairness_table(tmp_path):
    _write_usage(tmp_path, "good", 100)
    _write_usage(tmp_path, "bad", 0)
    sched = Scheduler(cgroup_base=tmp_path)
    sched.add("good", 1024)
    sched.add("bad", 1024)
    text = sched.format_fairness()
    good_line = next(line for line in text.splitlines() if "good" in line)
    assert "SKEWED" in good_line
    assert text.startswith("┌")
    assert "Fairness target: deviation < 5%" in text


def test_format_fairness_marks_fair(tmp_path):
    _write_usage(tmp_path, "solo", 50)
    sched = Scheduler(cgroup_base=tmp_path)
    sched.add("solo", 2048)
    lines = sched.format_fairness().splitlines()
    solo_line = next(line for line in lines if "solo" in line)
    assert "FAIR ✓" in solo_line
    assert "2048" in solo_line