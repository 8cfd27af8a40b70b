"""
models.py
======================

パイプラインで扱うデータ型。

- Question:           正規化・永続化された 1 問（生成後は不変）
- RawQuestion:        外部問題バンクが返す生レコード（dict のまま扱う）
- SourceQuery:        外部問題バンクへの問い合わせ記述子
- AcquisitionRequest: 出題リクエスト（科目・試験種別・問題数・任意フィルタ）

Question の不変条件:
- answer は A〜D のいずれか
- 4 つの選択肢はすべて空でない
- provenance が generated の場合、template_ref にテンプレートの topic / difficulty を残す
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, Literal, Optional

OPTION_LETTERS = ("A", "B", "C", "D")

Provenance = Literal["external", "generated", "seed-fixture"]
PROVENANCE_EXTERNAL: Provenance = "external"
PROVENANCE_GENERATED: Provenance = "generated"
PROVENANCE_SEED: Provenance = "seed-fixture"
PROVENANCES = (PROVENANCE_EXTERNAL, PROVENANCE_GENERATED, PROVENANCE_SEED)

DEFAULT_TOPIC = "General"
DEFAULT_DIFFICULTY = "medium"

# 外部 API の生レコード。キー名・大文字小文字は取得元によって揺れる。
RawQuestion = Dict[str, Any]

_NON_WORD = re.compile(r"[\W_]+", re.UNICODE)


def now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def normalize_text(text: str) -> str:
    """重複判定用に、記号・空白・大文字小文字の差を吸収する。"""
    return _NON_WORD.sub(" ", text.lower()).strip()


# ----------------------------------------------------------------------
#  Question
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class Question:
    subject: str
    exam_type: str
    question: str
    options: Dict[str, str]
    answer: str
    topic: str = DEFAULT_TOPIC
    difficulty: str = DEFAULT_DIFFICULTY
    explanation: str = ""
    year: Optional[int] = None
    provenance: Provenance = PROVENANCE_EXTERNAL
    template_ref: Optional[Dict[str, Any]] = None
    id: Optional[str] = None
    created_at: str = field(default_factory=now_iso)

    # ------------------------------------------------------------
    # 不変条件
    # ------------------------------------------------------------
    def validate(self) -> None:
        """不変条件を満たさなければ ValueError。"""
        if not isinstance(self.question, str) or not self.question.strip():
            raise ValueError("問題文が空です。")
        for letter in OPTION_LETTERS:
            if not str(self.options.get(letter, "")).strip():
                raise ValueError(f"選択肢 {letter} が空です。")
        if set(self.options) != set(OPTION_LETTERS):
            raise ValueError(f"選択肢のキーが A〜D ではありません: {sorted(self.options)}")
        if self.answer not in OPTION_LETTERS:
            raise ValueError(f"正解記号が不正です: {self.answer!r}")
        if self.provenance not in PROVENANCES:
            raise ValueError(f"provenance が不正です: {self.provenance!r}")
        if self.provenance == PROVENANCE_GENERATED:
            ref = self.template_ref or {}
            if "topic" not in ref or "difficulty" not in ref:
                raise ValueError("生成問題には template_ref(topic, difficulty) が必要です。")

    @property
    def dedup_key(self) -> tuple:
        return (self.subject, self.exam_type, normalize_text(self.question))

    # ------------------------------------------------------------
    # シリアライズ
    # ------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Question":
        if not isinstance(data, dict):
            raise ValueError(f"dict ではありません: {type(data).__name__}")
        for key in ("subject", "exam_type", "question", "answer"):
            if not isinstance(data.get(key), str):
                raise ValueError(f"{key} が文字列ではありません: {data.get(key)!r}")
        year = data.get("year")
        return cls(
            id=data.get("id"),
            subject=data["subject"],
            exam_type=data["exam_type"],
            question=data["question"],
            options={k: str(v) for k, v in dict(data["options"]).items()},
            answer=data["answer"],
            topic=data.get("topic") or DEFAULT_TOPIC,
            difficulty=data.get("difficulty") or DEFAULT_DIFFICULTY,
            explanation=data.get("explanation") or "",
            year=int(year) if year is not None else None,
            provenance=data.get("provenance", PROVENANCE_EXTERNAL),
            template_ref=data.get("template_ref"),
            created_at=data.get("created_at") or now_iso(),
        )


# ----------------------------------------------------------------------
#  リクエスト記述子
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class SourceQuery:
    subject: str
    exam_type: str
    year: Optional[int] = None
    count: int = 1


@dataclass(frozen=True)
class AcquisitionRequest:
    subject: str
    exam_type: str = "JAMB"
    count: int = 20
    difficulty: Optional[str] = None
    topics: Optional[FrozenSet[str]] = None
    exclude_ids: FrozenSet[str] = frozenset()

    @classmethod
    def build(
        cls,
        subject: str,
        exam_type: str = "JAMB",
        count: int = 20,
        difficulty: Optional[str] = None,
        topics: Optional[Iterable[str]] = None,
        exclude_ids: Optional[Iterable[str]] = None,
    ) -> "AcquisitionRequest":
        """list などをそのまま渡せるようにする生成ヘルパー。"""
        return cls(
            subject=subject,
            exam_type=exam_type,
            count=count,
            difficulty=difficulty or None,
            topics=frozenset(topics) if topics else None,
            exclude_ids=frozenset(exclude_ids or ()),
        )

    @property
    def has_filters(self) -> bool:
        return bool(self.difficulty or self.topics or self.exclude_ids)

    @property
    def topic_keys(self) -> Optional[FrozenSet[str]]:
        if not self.topics:
            return None
        return frozenset(t.lower() for t in self.topics)

    def allows(self, q: Question) -> bool:
        """difficulty / topics / exclude_ids をすべて満たすか。"""
        if q.subject != self.subject or q.exam_type != self.exam_type:
            return False
        if self.difficulty and q.difficulty != self.difficulty:
            return False
        keys = self.topic_keys
        if keys is not None and (q.topic or "").lower() not in keys:
            return False
        if q.id is not None and q.id in self.exclude_ids:
            return False
        return True
