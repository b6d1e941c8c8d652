import asyncio
import ipaddress
import tracemalloc

import pytest

import sniscan


def test_missing_resume_log_loads_empty(tmp_path):
    record = sniscan.ScanRecord.load(str(tmp_path / "absent.log"))
    assert len(record) == 0
    assert "10.0.0.1" not in record


def test_reload_is_last_write_wins(tmp_path):
    path = tmp_path / "resume.log"
    path.write_text("10.0.0.1,Failure\n10.0.0.2,OK\n\n10.0.0.1,OK\n", encoding="utf-8")

    record = sniscan.ScanRecord.load(str(path))

    assert len(record) == 2
    assert record.outcome_for("10.0.0.1") == "OK"
    assert record.outcome_for(ipaddress.IPv4Address("10.0.0.2")) == "OK"
    assert ipaddress.IPv4Address("10.0.0.1") in record


@pytest.mark.parametrize(
    "content",
    [
        "10.0.0.1\n",
        "10.0.0.1,OK,extra\n",
        "10.0.0.1,Maybe\n",
        "not-an-ip,OK\n",
        "10.0.0.1,OK\ngarbage\n",
    ],
)
def test_corrupt_resume_log_is_treated_as_empty(tmp_path, content):
    path = tmp_path / "resume.log"
    path.write_text(content, encoding="utf-8")

    record = sniscan.ScanRecord.load(str(path))

    assert len(record) == 0


def test_parse_reports_line_number():
    with pytest.raises(sniscan.ResumeLoadError, match="line 2"):
        sniscan.parse_scan_record_lines(["10.0.0.1,OK", "10.0.0.2;OK"])


def test_append_writes_one_line_per_outcome(tmp_path):
    path = tmp_path / "nested" / "resume.log"
    with sniscan.ScanRecord(str(path)) as record:
        record.append(ipaddress.IPv4Address("10.0.0.1"), True)
        record.append("10.0.0.2", False)
        assert record.appended == 2

    assert path.read_text(encoding="utf-8") == "10.0.0.1,OK\n10.0.0.2,Failure\n"
    reloaded = sniscan.ScanRecord.load(str(path))
    assert reloaded.outcome_for("10.0.0.2") == "Failure"


def test_append_keeps_existing_lines(tmp_path):
    path = tmp_path / "resume.log"
    path.write_text("10.0.0.1,OK\n", encoding="utf-8")

    record = sniscan.ScanRecord.load(str(path)).open()
    record.append("10.0.0.2", True)
    record.close()

    assert path.read_text(encoding="utf-8").splitlines() == ["10.0.0.1,OK", "10.0.0.2,OK"]


def test_lookup_map_is_not_changed_by_appends(tmp_path):
    record = sniscan.ScanRecord.load(str(tmp_path / "resume.log")).open()
    record.append("10.0.0.9", True)
    record.close()
    assert "10.0.0.9" not in record


def test_dedup_filter_skips_recorded_and_expanded_addresses():
    record = sniscan.ScanRecord(outcomes={int(ipaddress.IPv4Address("10.0.0.1")): "Failure"})
    dedup = sniscan.DedupFilter(record)

    assert not dedup.admit(ipaddress.IPv4Address("10.0.0.1"))
    assert dedup.admit(ipaddress.IPv4Address("10.0.0.2"))
    dedup.remember(*sniscan.parse_range_token("10.0.0.2"))
    assert not dedup.admit(ipaddress.IPv4Address("10.0.0.2"))
    assert dedup.admit(ipaddress.IPv4Address("10.0.0.3"))


def test_dedup_filter_merges_intervals():
    dedup = sniscan.DedupFilter(sniscan.ScanRecord())
    dedup.remember(*sniscan.parse_range_token("10.0.0.0/30"))
    dedup.remember(*sniscan.parse_range_token("10.0.0.8-10"))
    assert len(dedup) == 2

    dedup.remember(*sniscan.parse_range_token("10.0.0.4-7"))

    assert len(dedup) == 1
    assert all(not dedup.admit(ipaddress.IPv4Address(f"10.0.0.{n}")) for n in range(11))
    assert dedup.admit(ipaddress.IPv4Address("10.0.0.11"))


def test_dedup_memory_does_not_grow_with_range_size():
    async def drain():
        statistics = sniscan.ScanStatistics()
        targets = sniscan.iter_scan_targets(
            sniscan.iter_tokens_from_lines(["10.0.0.0/12", "10.8.0.0/16"]),
            sniscan.DedupFilter(sniscan.ScanRecord()),
            statistics,
        )
        count = 0
        async for _address in targets:
            count += 1
        return count, statistics

    tracemalloc.start()
    try:
        count, statistics = asyncio.run(drain())
        _current, peak = tracemalloc.get_traced_memory()
    finally:
        tracemalloc.stop()

    assert count == 1 << 20
    assert statistics.skipped == 1 << 16
    assert peak < 10 * 1024 * 1024


def test_default_resume_path_is_named_after_working_directory(tmp_path):
    directory = tmp_path / "sweep"
    directory.mkdir()
    assert sniscan.default_resume_path(str(directory)) == str(directory / "sweep.sniscan-resume.log")
