import json

import pytest

from exam_quiz.meta import MetaManager


def test_load_creates_skeleton(tmp_path):
    mm = MetaManager(str(tmp_path / "meta.json"))
    mm.load()

    assert mm.meta["usage"] == {
        "total_questions": 0,
        "external_questions": 0,
        "store_questions": 0,
        "generated_questions": 0,
    }
    assert mm.meta["last_backfill"] is None
    assert mm.meta["coverage"] == {}
    assert not (tmp_path / "meta.json").exists()


def test_missing_keys_are_filled_on_load(tmp_path):
    path = tmp_path / "meta.json"
    path.write_text(json.dumps({"version": 1, "usage": {"total_questions": 7}}), encoding="utf-8")

    mm = MetaManager(str(path))
    mm.load()

    assert mm.meta["usage"]["total_questions"] == 7
    assert mm.meta["usage"]["generated_questions"] == 0
    assert mm.meta["rate_limit"]["last_429_at"] is None


def test_record_acquisition_counts_per_tier_and_subject(tmp_path):
    mm = MetaManager(str(tmp_path / "meta.json"))
    mm.load()
    mm.record_acquisition("Physics", {"external": 2, "store": 3, "generated": 0})
    mm.record_acquisition("Physics", {"generated": 1})
    mm.save()

    reloaded = MetaManager(str(tmp_path / "meta.json"))
    reloaded.load()
    assert reloaded.meta["usage"]["total_questions"] == 6
    assert reloaded.meta["subject_stats"]["Physics"] == {
        "total_questions": 6,
        "external_questions": 2,
        "store_questions": 3,
        "generated_questions": 1,
    }


def test_unknown_tier_is_rejected(tmp_path):
    mm = MetaManager(str(tmp_path / "meta.json"))
    mm.load()
    with pytest.raises(ValueError):
        mm.record_usage("Physics", "offline")


def test_coverage_and_rate_limit_snapshots(tmp_path):
    mm = MetaManager(str(tmp_path / "meta.json"))
    mm.load()
    mm.record_coverage({"subject": "Physics", "exam_type": "JAMB", "coverage_percent": 50.0})
    mm.record_rate_limit({"total_calls": 4, "last_429_at": "2024-01-01T00:00:00Z", "last_error": None})
    mm.record_rate_limit({"total_calls": 2, "last_429_at": None, "last_error": "HTTP 503"})

    assert mm.get_coverage("Physics", "JAMB")["coverage_percent"] == 50.0
    assert mm.get_coverage("Physics", "WAEC") is None
    assert mm.meta["rate_limit"] == {
        "total_calls": 6,
        "last_429_at": "2024-01-01T00:00:00Z",
        "last_error": "HTTP 503",
    }
