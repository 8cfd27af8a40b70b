import threading

import pytest

from conftest import FakeSource, make_raw
from exam_quiz.backfill import BackfillScheduler
from exam_quiz.config import EXAM_TYPES, SUBJECTS
from exam_quiz.errors import (
    SourceMalformed,
    SourceRateLimited,
    SourceUnavailable,
    UnsupportedSelection,
)


class RecordingWait:
    def __init__(self, on_call=None):
        self.waits = []
        self.on_call = on_call

    def __call__(self, seconds):
        self.waits.append(seconds)
        if self.on_call:
            self.on_call(len(self.waits))


def make_scheduler(source, bank, normalizer, wait=None, **kwargs):
    kwargs.setdefault("subjects", ["Mathematics"])
    kwargs.setdefault("exam_types", ["JAMB"])
    return BackfillScheduler(source, normalizer, bank, wait=wait or RecordingWait(), **kwargs)


def test_failing_year_does_not_stop_the_run(bank, normalizer):
    source = FakeSource({
        ("Mathematics", "JAMB", 2020): [make_raw(), make_raw()],
        ("Mathematics", "JAMB", 2021): SourceUnavailable("down"),
        ("Mathematics", "JAMB", 2022): [make_raw()],
    })
    report = make_scheduler(source, bank, normalizer).run(2020, 2022)

    assert report.attempted == 3
    assert report.successful == 2
    assert report.failed == 1
    assert [c.year for c in source.calls] == [2020, 2021, 2022]
    assert [e["year"] for e in report.errors] == [2021]
    assert report.success_rate == pytest.approx(2 / 3)

    stats = report.subjects["Mathematics"]["JAMB"]
    assert (stats.fetched, stats.inserted) == (3, 3)
    assert len(bank) == 3
    assert all(q.year in (2020, 2022) for q in bank.all_questions())


def test_every_unit_is_attempted_once_even_if_all_fail(bank, normalizer):
    source = FakeSource(default=SourceUnavailable("down"))
    scheduler = BackfillScheduler(
        source, normalizer, bank, wait=RecordingWait(), rate_limit_backoff=0
    )
    report = scheduler.run(2015, 2018)

    expected = len(SUBJECTS) * len(EXAM_TYPES) * 4
    assert report.attempted == expected == scheduler.units(2015, 2018)
    assert report.successful == 0
    assert report.error_count == expected
    assert report.success_rate == 0.0
    assert len(source.calls) == expected
    assert set(report.subjects) == set(SUBJECTS)
    assert all(set(pairs) == set(EXAM_TYPES) for pairs in report.subjects.values())


def test_iteration_order_is_deterministic(bank, normalizer):
    source = FakeSource()
    make_scheduler(
        source, bank, normalizer, subjects=["Physics", "Biology"], exam_types=["WAEC", "NECO"]
    ).run(2019, 2020)

    assert [(c.subject, c.exam_type, c.year) for c in source.calls] == [
        ("Physics", "WAEC", 2019), ("Physics", "WAEC", 2020),
        ("Physics", "NECO", 2019), ("Physics", "NECO", 2020),
        ("Biology", "WAEC", 2019), ("Biology", "WAEC", 2020),
        ("Biology", "NECO", 2019), ("Biology", "NECO", 2020),
    ]


def test_fixed_delays_between_calls(bank, normalizer):
    wait = RecordingWait()
    make_scheduler(
        FakeSource(), bank, normalizer, wait=wait,
        exam_types=["JAMB", "WAEC"], year_delay=3, pair_delay=5,
    ).run(2020, 2022)

    assert wait.waits == [3, 3, 5, 3, 3]


def test_rate_limit_adds_backoff(bank, normalizer):
    wait = RecordingWait()
    source = FakeSource({("Mathematics", "JAMB", 2020): SourceRateLimited("429", retry_after=2)})
    report = make_scheduler(source, bank, normalizer, wait=wait, rate_limit_backoff=30).run(2020, 2021)

    assert wait.waits == [30, 3]
    assert report.errors[0]["kind"] == "SourceRateLimited"


def test_malformed_unit_fails_but_bad_records_do_not(bank, normalizer):
    source = FakeSource({
        ("Mathematics", "JAMB", 2020): SourceMalformed("junk"),
        ("Mathematics", "JAMB", 2021): [make_raw(), make_raw(answer="X")],
    })
    report = make_scheduler(source, bank, normalizer).run(2020, 2021)

    assert report.successful == 1
    assert report.failed == 1
    assert report.error_count == 2
    assert {e["kind"] for e in report.errors} == {"SourceMalformed", "NormalizationFailure"}
    assert report.subjects["Mathematics"]["JAMB"].inserted == 1


def test_duplicates_are_counted_not_failed(bank, normalizer):
    raw = make_raw()
    source = FakeSource(default=[raw])
    report = make_scheduler(source, bank, normalizer).run(2020, 2021)

    stats = report.subjects["Mathematics"]["JAMB"]
    assert (stats.inserted, stats.duplicates) == (1, 1)
    assert report.error_count == 0
    assert len(bank) == 1


def test_dry_run_does_not_write(bank, normalizer):
    source = FakeSource(default=[make_raw()])
    report = make_scheduler(source, bank, normalizer).run(2020, 2020, dry_run=True)

    assert report.dry_run
    assert report.subjects["Mathematics"]["JAMB"].fetched == 1
    assert len(bank) == 0


def test_cancel_returns_partial_report(bank, normalizer):
    event = threading.Event()
    wait = RecordingWait(on_call=lambda n: event.set() if n == 2 else None)
    scheduler = make_scheduler(
        FakeSource(), bank, normalizer, wait=wait,
        exam_types=list(EXAM_TYPES), cancel_event=event,
    )
    report = scheduler.run(2015, 2025)

    assert report.cancelled
    assert report.attempted == 2
    assert report.finished_at is not None


def test_default_wait_returns_immediately_once_cancelled(bank, normalizer):
    scheduler = BackfillScheduler(
        FakeSource(), normalizer, bank, subjects=["Mathematics"], exam_types=["JAMB"],
        year_delay=3600,
    )
    scheduler.cancel()
    report = scheduler.run(2020, 2024)
    assert report.cancelled
    assert report.attempted == 0


def test_report_serialises(bank, normalizer):
    source = FakeSource(default=[make_raw()])
    data = make_scheduler(source, bank, normalizer).run(2020, 2020).to_dict()

    assert data["attempted"] == 1
    assert data["success_rate"] == 1.0
    assert data["total_inserted"] == 1
    assert data["subjects"]["Mathematics"]["JAMB"]["inserted"] == 1


def test_inverted_range_is_rejected(bank, normalizer):
    with pytest.raises(UnsupportedSelection):
        make_scheduler(FakeSource(), bank, normalizer).run(2022, 2020)


def test_cancel_during_the_last_unit_is_not_reported_as_cancelled(bank, normalizer):
    event = threading.Event()

    class CancellingSource(FakeSource):
        def fetch(self, query):
            if query.year == 2021:
                event.set()
            return super().fetch(query)

    scheduler = make_scheduler(CancellingSource(default=[make_raw()]), bank, normalizer, cancel_event=event)
    report = scheduler.run(2020, 2021)

    assert report.attempted == 2
    assert not report.cancelled
