# tests/test_progress.py

import os
import pytest

from services import (
    ProgressTracker,
    compute_percent,
    count_resources,
    count_total,
    iter_candidate_files,
    iter_json_files,
)
from conftest import patient, bundle


def test_count_resources():
    assert count_resources(bundle(patient("1"), patient("2"), {"foo": 1})) == 3
    assert count_resources(patient("1")) == 1
    assert count_resources({"foo": "bar"}) == 0
    assert count_resources({"resourceType": "Bundle"}) == 0
    assert count_resources([patient("1")]) == 0


@pytest.mark.parametrize("total", [1, 3, 7, 29, 100, 333])
def test_percent_is_floor_and_monotonic(total):
    previous = -1
    for seen in range(total + 1):
        percent = compute_percent(seen, total)
        assert percent == (seen * 100) // total
        assert percent >= previous
        previous = percent
    assert previous == 100


def test_percent_with_zero_total():
    assert compute_percent(0, 0) == 0
    assert compute_percent(5, 0) == 0


def test_percent_may_exceed_100():
    assert compute_percent(3, 2) == 150


def test_tracker_keeps_last_percent():
    tracker = ProgressTracker(4)
    assert tracker.percent == 0
    assert tracker.update(1) == 25
    assert tracker.percent == 25


def test_count_total_skips_broken_files(corpus):
    root = corpus({
        "a.json": bundle(patient("1"), patient("2")),
        "b.json": patient("3"),
        "c.json": "{not json",
        "d.json": {"foo": "bar"},
    })
    paths = [str(root / name) for name in ("a.json", "b.json", "c.json", "d.json")]
    assert count_total(paths) == 3


def test_count_total_does_not_modify_files(corpus):
    root = corpus({"a.json": patient("1")})
    before = (root / "a.json").read_text(encoding='utf-8')
    count_total([str(root / "a.json")])
    assert (root / "a.json").read_text(encoding='utf-8') == before


def test_iter_json_files_filters(corpus):
    root = corpus({
        "b.json": patient("1"),
        "A.JSON": patient("2"),
        "notes.txt": "hello",
        "sub/c.json": patient("3"),
        "Temp/skip.json": patient("4"),
        "sub/_Temp/skip.json": patient("5"),
    })
    (root / "empty.json").write_text("", encoding='utf-8')
    found = [os.path.relpath(p, root) for p in iter_json_files(str(root))]
    assert found == ["A.JSON", "b.json", os.path.join("sub", "c.json")]


def test_iter_candidate_files_reports_size_and_type(corpus):
    root = corpus({"a.json": patient("1")})
    (root / "dir").mkdir()
    entries = list(iter_candidate_files(str(root)))
    assert entries == [(str(root / "a.json"), (root / "a.json").stat().st_size, True)]


def test_skip_until(corpus):
    root = corpus({"1.json": patient("1"), "2.json": patient("2"), "3.json": patient("3")})
    found = [os.path.basename(p) for p in iter_json_files(str(root), skip_until="2.json")]
    assert found == ["2.json", "3.json"]
    assert list(iter_json_files(str(root), skip_until="missing.json")) == []
