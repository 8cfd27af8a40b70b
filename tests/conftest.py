"""Pytest configuration and shared fakes."""

import itertools
import random
import threading
from typing import Any, Dict, List, Optional

import pytest

from exam_quiz.config import AppConfig
from exam_quiz.errors import GenerationFailure, SourceEmpty
from exam_quiz.models import PROVENANCE_GENERATED, Question, SourceQuery
from exam_quiz.normalizer import Normalizer
from exam_quiz.question_bank import QuestionBank

_counter = itertools.count(1)


def make_question(
    subject: str = "Mathematics",
    exam_type: str = "JAMB",
    text: Optional[str] = None,
    topic: str = "Algebra",
    difficulty: str = "medium",
    **kwargs: Any,
) -> Question:
    n = next(_counter)
    return Question(
        subject=subject,
        exam_type=exam_type,
        question=text or f"Question number {n} about {topic}?",
        options={"A": f"a{n}", "B": f"b{n}", "C": f"c{n}", "D": f"d{n}"},
        answer=kwargs.pop("answer", "A"),
        topic=topic,
        difficulty=difficulty,
        explanation=kwargs.pop("explanation", "because"),
        **kwargs,
    )


def make_raw(text: Optional[str] = None, answer: str = "a", **overrides: Any) -> Dict[str, Any]:
    n = next(_counter)
    raw = {
        "id": n,
        "question": text or f"Solve the equation number {n}",
        "option": {"a": "1", "b": "2", "c": "3", "d": "4"},
        "answer": answer,
        "solution": "",
        "examyear": "2019",
    }
    raw.update(overrides)
    return raw


class FakeSource:
    """
    SourceClient の代わり。

    responses: {(subject, exam_type, year): list または例外} 。
    year=None のキーは「年指定なし」の呼び出しに対応する。
    """

    def __init__(self, responses: Optional[Dict[tuple, Any]] = None, default: Any = None):
        self.responses = responses or {}
        self.default = default if default is not None else []
        self.calls: List[SourceQuery] = []
        self._lock = threading.Lock()

    def fetch(self, query: SourceQuery):
        with self._lock:
            self.calls.append(query)
        result = self.responses.get((query.subject, query.exam_type, query.year), self.default)
        if isinstance(result, Exception):
            raise result
        return list(result)[:query.count]

    def fetch_required(self, query: SourceQuery):
        items = self.fetch(query)
        if not items:
            raise SourceEmpty("empty")
        return items

    def test_connection(self) -> bool:
        return False


class FakeCompletion:
    """テンプレートを写した新しい問題を返す。fail_every 回に 1 回失敗する。"""

    def __init__(self, fail_every: int = 0):
        self.fail_every = fail_every
        self.templates: List[Question] = []
        self._lock = threading.Lock()

    @property
    def calls(self) -> int:
        return len(self.templates)

    def complete(self, template: Question) -> Question:
        with self._lock:
            self.templates.append(template)
            n = len(self.templates)
        if self.fail_every and n % self.fail_every == 0:
            raise GenerationFailure("scripted failure")
        return Question(
            subject=template.subject,
            exam_type=template.exam_type,
            question=f"Generated variant {n} of {template.question}",
            options={"A": "w", "B": "x", "C": "y", "D": "z"},
            answer="B",
            topic=template.topic,
            difficulty=template.difficulty,
            explanation="generated",
            provenance=PROVENANCE_GENERATED,
            template_ref={"id": template.id, "topic": template.topic, "difficulty": template.difficulty},
        )


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeResponse:
    def __init__(self, status_code: int = 200, body: Any = None, headers: Optional[Dict[str, str]] = None):
        self.status_code = status_code
        self._body = body
        self.headers = headers or {}

    def json(self):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class FakeSession:
    """requests.Session.get の代わり。responses を順に返す（最後の 1 つは繰り返す）。"""

    def __init__(self, *responses: Any):
        self.responses = list(responses)
        self.requests: List[Dict[str, Any]] = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.requests.append({"url": url, "params": params, "headers": headers, "timeout": timeout})
        result = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def bank() -> QuestionBank:
    return QuestionBank(rng=random.Random(7))


@pytest.fixture
def normalizer() -> Normalizer:
    return Normalizer()


@pytest.fixture
def cfg(tmp_path, monkeypatch) -> AppConfig:
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("ALOC_ACCESS_TOKEN", raising=False)
    return AppConfig(
        aloc_access_token="test-token",
        gemini_api_key="",
        question_bank_path=tmp_path / "question_bank.jsonl",
        meta_json_path=tmp_path / "meta.json",
        config_toml_path=tmp_path / "config.toml",
    )
