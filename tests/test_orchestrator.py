import random

import pytest

from conftest import (
    FakeClock,
    FakeCompletion,
    FakeResponse,
    FakeSession,
    FakeSource,
    make_question,
    make_raw,
)
from exam_quiz.errors import (
    NoQuestionsAvailable,
    NoTemplateAvailable,
    SourceMalformed,
    SourceRateLimited,
    SourceUnavailable,
    StoreWriteFailure,
    UnsupportedSelection,
)
from exam_quiz.models import AcquisitionRequest
from exam_quiz.normalizer import Normalizer
from exam_quiz.orchestrator import AcquisitionOrchestrator
from exam_quiz.question_bank import QuestionBank
from exam_quiz.quota import RateLimiter
from exam_quiz.seed import SEED_QUESTIONS
from exam_quiz.source_client import SourceClient

MATH_JAMB = ("Mathematics", "JAMB")


def make_orchestrator(source=None, bank=None, completion=None, **kwargs):
    return AcquisitionOrchestrator(
        source or FakeSource(),
        Normalizer(),
        bank if bank is not None else QuestionBank(rng=random.Random(1)),
        completion,
        current_year=2024,
        **kwargs,
    )


def request(count=10, **kwargs):
    return AcquisitionRequest.build("Mathematics", "JAMB", count, **kwargs)


def fill(bank, n, **kwargs):
    return [bank.insert(make_question(**kwargs)) for _ in range(n)]


# ----------------------------------------------------------------------
#  ティアの順序
# ----------------------------------------------------------------------
def test_seed_template_only_yields_at_most_the_generation_cap():
    source = FakeSource()
    completion = FakeCompletion()
    orch = make_orchestrator(source, completion=completion)

    result = orch.acquire(request(20))

    assert 1 <= len(result) <= 5
    assert all((q.subject, q.exam_type) == MATH_JAMB for q in result)
    assert completion.calls == 5
    assert all(t.provenance == "seed-fixture" for t in completion.templates)
    assert [c.year for c in source.calls] == [None, 2024, 2023, 2022]


def test_store_fills_the_request_when_source_is_unavailable(bank):
    stored = {q.id for q in fill(bank, 15)}
    source = FakeSource(default=SourceUnavailable("down"))
    completion = FakeCompletion()

    result = make_orchestrator(source, bank, completion).acquire(request(10))

    assert len(result) == 10
    assert {q.id for q in result} <= stored
    assert len({q.id for q in result}) == 10
    assert completion.calls == 0
    assert len(source.calls) == 1


def test_external_items_are_persisted_and_delivered(bank):
    raws = [make_raw() for _ in range(4)]
    source = FakeSource({MATH_JAMB + (None,): raws})

    result = make_orchestrator(source, bank).acquire(request(4))

    assert len(result) == 4
    assert len(bank) == 4
    assert all(q.provenance == "external" and bank.get(q.id) == q for q in result)


def test_external_duplicate_resolves_to_stored_question(bank, normalizer):
    raw = make_raw()
    existing = bank.insert(normalizer.normalize(raw, *MATH_JAMB))
    source = FakeSource({MATH_JAMB + (None,): [raw]})

    result = make_orchestrator(source, bank).acquire(request(1))

    assert [q.id for q in result] == [existing.id]
    assert len(bank) == 1


def test_external_then_store_then_generation(bank):
    fill(bank, 2)
    source = FakeSource({MATH_JAMB + (None,): [make_raw(), make_raw()]})
    completion = FakeCompletion()

    orch = make_orchestrator(source, bank, completion)
    result = orch.acquire_with_report(request(8))

    assert result.by_tier == {"external": 2, "store": 2, "generated": 4}
    assert len({q.id for q in result.questions}) == 8
    # 外部から来た最初の問題がテンプレートになる
    assert all(t.provenance == "external" for t in completion.templates)


def test_falls_back_to_recent_years_when_undated_call_is_malformed(bank):
    source = FakeSource({
        MATH_JAMB + (None,): SourceMalformed("bad"),
        MATH_JAMB + (2023,): [make_raw()],
    })
    result = make_orchestrator(source, bank).acquire(request(1))

    assert len(result) == 1
    assert [c.year for c in source.calls] == [None, 2024, 2023]


def test_rate_limit_stops_the_external_tier(bank):
    fill(bank, 3)
    source = FakeSource(default=SourceRateLimited("slow down", retry_after=5))

    result = make_orchestrator(source, bank).acquire(request(3))

    assert len(result) == 3
    assert len(source.calls) == 1


def test_unpersistable_items_get_ephemeral_ids():
    class ReadOnlyBank(QuestionBank):
        def insert(self, q):
            raise StoreWriteFailure("disk full")

    bank = ReadOnlyBank()
    source = FakeSource({MATH_JAMB + (None,): [make_raw() for _ in range(3)]})

    result = make_orchestrator(source, bank).acquire(request(3))

    assert len(result) == 3
    assert all(q.id for q in result)
    assert len({q.id for q in result}) == 3
    assert len(bank) == 0


# ----------------------------------------------------------------------
#  フィルタ
# ----------------------------------------------------------------------
def test_excluded_ids_are_never_returned(bank):
    seen = {q.id for q in fill(bank, 10)}
    fill(bank, 3)

    result = make_orchestrator(bank=bank, completion=FakeCompletion()).acquire(
        request(10, exclude_ids=seen)
    )

    assert result
    assert not ({q.id for q in result} & seen)
    assert len({q.id for q in result}) == len(result)


def test_topic_filter_is_case_insensitive_and_applies_to_every_tier(bank):
    fill(bank, 5, topic="Algebra")
    fill(bank, 5, topic="Geometry")
    source = FakeSource({MATH_JAMB + (None,): [make_raw() for _ in range(3)]})

    result = make_orchestrator(source, bank, FakeCompletion()).acquire(
        request(12, topics=["algebra"])
    )

    assert result
    assert all(q.topic.lower() == "algebra" for q in result)


def test_difficulty_filter_applies_to_every_tier(bank):
    fill(bank, 4, difficulty="easy")
    fill(bank, 4, difficulty="hard")
    source = FakeSource({MATH_JAMB + (None,): [make_raw() for _ in range(3)]})

    result = make_orchestrator(source, bank, FakeCompletion()).acquire(
        request(12, difficulty="hard")
    )

    assert result
    assert all(q.difficulty == "hard" for q in result)
    # 条件外の外部問題も保存はされる
    assert len(bank) == 8 + 3 + sum(1 for q in result if q.provenance == "generated")


def test_template_is_adjusted_to_the_request(bank):
    bank.insert(make_question(exam_type="WAEC", topic="Algebra", difficulty="easy"))

    result = make_orchestrator(bank=bank, completion=FakeCompletion()).acquire(
        request(3, difficulty="hard", topics=["Geometry"])
    )

    assert len(result) == 3
    for q in result:
        assert (q.exam_type, q.difficulty, q.topic) == ("JAMB", "hard", "Geometry")


# ----------------------------------------------------------------------
#  不足・失敗
# ----------------------------------------------------------------------
def test_partial_fill_is_not_an_error(bank):
    fill(bank, 3)
    assert len(make_orchestrator(bank=bank).acquire(request(20))) == 3


def test_generation_failures_only_reduce_the_count():
    completion = FakeCompletion(fail_every=2)
    result = make_orchestrator(completion=completion).acquire(request(5))
    assert completion.calls == 5
    assert len(result) == 3


def test_generation_cap_is_configurable():
    completion = FakeCompletion()
    result = make_orchestrator(completion=completion, max_generations=2).acquire(request(10))
    assert completion.calls == 2
    assert len(result) == 2


def test_no_template_available():
    orch = make_orchestrator(completion=FakeCompletion(), fixtures=[])
    with pytest.raises(NoTemplateAvailable):
        orch.acquire(request(5))


def test_seed_templates_can_come_from_another_exam_type():
    english = [q for q in SEED_QUESTIONS if q.subject == "English"]
    assert english and all(q.exam_type == "WAEC" for q in english)

    result = make_orchestrator(completion=FakeCompletion()).acquire(
        AcquisitionRequest.build("English", "NECO", 2)
    )
    assert [q.exam_type for q in result] == ["NECO", "NECO"]


def test_nothing_anywhere_is_no_questions_available():
    with pytest.raises(NoQuestionsAvailable):
        make_orchestrator().acquire(request(5))


@pytest.mark.parametrize(
    "req",
    [
        AcquisitionRequest.build("Economics", "JAMB", 5),
        AcquisitionRequest.build("Mathematics", "SAT", 5),
        AcquisitionRequest.build("Mathematics", "JAMB", 0),
        AcquisitionRequest.build("Mathematics", "JAMB", 5, difficulty="extreme"),
    ],
)
def test_invalid_requests_are_rejected(req):
    with pytest.raises(UnsupportedSelection):
        make_orchestrator().acquire(req)


def test_acquire_for_signature(bank):
    fill(bank, 4)
    result = make_orchestrator(bank=bank).acquire_for("Mathematics", "JAMB", 2)
    assert len(result) == 2


# ----------------------------------------------------------------------
#  性質
# ----------------------------------------------------------------------
@pytest.mark.parametrize("seed", range(10))
def test_results_are_bounded_unique_and_match_filters(seed):
    rng = random.Random(seed)
    bank = QuestionBank(rng=random.Random(seed))
    for _ in range(rng.randint(1, 30)):
        bank.insert(
            make_question(
                topic=rng.choice(["Algebra", "Geometry", "Statistics"]),
                difficulty=rng.choice(["easy", "medium", "hard"]),
            )
        )
    excluded = {q.id for q in bank.sample_random("Mathematics", "JAMB", rng.randint(0, 5))}
    topics = rng.choice([None, ["Algebra"], ["geometry", "STATISTICS"]])
    difficulty = rng.choice([None, "easy", "hard"])
    count = rng.randint(1, 15)
    raws = [make_raw() for _ in range(rng.randint(0, 4))]

    orch = make_orchestrator(
        FakeSource({MATH_JAMB + (None,): raws}), bank, FakeCompletion(fail_every=rng.choice([0, 3]))
    )
    result = orch.acquire(
        request(count, topics=topics, difficulty=difficulty, exclude_ids=excluded)
    )

    assert 1 <= len(result) <= count
    assert len({q.id for q in result}) == len(result)
    assert not ({q.id for q in result} & excluded)
    for q in result:
        if topics:
            assert q.topic.lower() in {t.lower() for t in topics}
        if difficulty:
            assert q.difficulty == difficulty


# ----------------------------------------------------------------------
#  実際の SourceClient を通した失敗
# ----------------------------------------------------------------------
def test_unhashable_record_ids_fall_through_to_the_store(bank):
    session = FakeSession(FakeResponse(200, {"data": [{"id": [1], "question": "q"}]}))
    client = SourceClient(access_token="tok", session=session)
    fill(bank, 3)

    result = make_orchestrator(client, bank).acquire_with_report(request(3))

    assert result.by_tier == {"external": 0, "store": 3, "generated": 0}
    assert len(session.requests) == 4


def test_long_rate_limit_cooldown_does_not_block_delivery(bank):
    clock = FakeClock()
    limiter = RateLimiter(rate_per_minute=20, clock=clock, sleep=clock.sleep)
    limiter.register_429(retry_after=600)
    session = FakeSession(FakeResponse(200, {"data": [make_raw()]}))
    client = SourceClient(access_token="tok", session=session, rate_limiter=limiter, max_wait=3.0)
    fill(bank, 3)

    result = make_orchestrator(client, bank).acquire_with_report(request(3))

    assert result.by_tier["store"] == 3
    assert clock.sleeps == []
    assert session.requests == []
