"""
normalizer.py
======================

外部問題バンクの生レコードを正規 Question に変換するモジュール。

- 選択肢キーの揺れ（option.a / options.A / optionA / 配列）を A〜D に寄せる
- 正解記号は前後空白を除いて大文字化する。それでも A〜D でなければ拒否
- topic / difficulty はキーワード表によるヒューリスティックで推定する

推定器はあくまで近似であり、精度は保証しない。
TopicClassifier / DifficultyClassifier を差し替えれば学習済み分類器に置き換えられる。
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from .config import EXAM_TYPES, SUBJECTS
from .errors import NormalizationFailure
from .models import (
    DEFAULT_DIFFICULTY,
    DEFAULT_TOPIC,
    OPTION_LETTERS,
    PROVENANCE_EXTERNAL,
    Question,
    RawQuestion,
)

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
#  推定器インターフェース
# ----------------------------------------------------------------------
class TopicClassifier(Protocol):
    def classify(self, text: str, subject: str) -> str:
        ...


class DifficultyClassifier(Protocol):
    def classify(self, text: str) -> str:
        ...


# ----------------------------------------------------------------------
#  キーワード表
# ----------------------------------------------------------------------
# 科目ごとに上から順に評価し、最初に当たったトピックを採用する。
TOPIC_KEYWORDS: Dict[str, List[Tuple[str, Sequence[str]]]] = {
    "Mathematics": [
        ("Logarithms", ("log", "logarithm", "logarithms")),
        ("Ratio and Proportion", ("ratio", "proportion")),
        ("Algebra", ("algebra", "equation", "equations", "quadratic")),
        ("Geometry", ("geometry", "triangle", "circle", "angle")),
        ("Statistics", ("mean", "median", "mode", "probability")),
    ],
    "English": [
        ("Grammar", ("grammar", "tense", "verb", "verbs")),
        ("Vocabulary", ("vocabulary", "meaning", "synonym", "antonym", "nearest in meaning")),
        ("Comprehension", ("comprehension", "passage")),
    ],
    "Physics": [
        ("Motion", ("motion", "speed", "velocity", "acceleration")),
        ("Forces", ("force", "forces", "newton")),
        ("Energy", ("energy", "work", "power")),
        ("Waves", ("wave", "waves", "sound", "light")),
        ("Electricity", ("current", "resistance", "voltage", "circuit")),
    ],
    "Chemistry": [
        ("Organic Chemistry", ("organic", "carbon", "hydrocarbon", "alkane", "alkene")),
        ("Acids and Bases", ("acid", "acids", "base", "bases", "salt", "ph")),
        ("Periodic Table", ("periodic", "element", "elements")),
    ],
    "Biology": [
        ("Cell Biology", ("cell", "cells", "organelle")),
        ("Plant Biology", ("plant", "plants", "photosynthesis")),
        ("Human Biology", ("human", "anatomy")),
        ("Evolution and Genetics", ("evolution", "genetics", "gene", "heredity")),
    ],
}

HARD_KEYWORDS = ("calculate", "determine", "evaluate", "analyze", "analyse", "derive", "prove")
MEDIUM_KEYWORDS = ("find", "solve", "explain", "simplify")
RECALL_KEYWORDS = ("define", "name", "state", "list", "which of the following", "what is")


def _compile(words: Iterable[str]) -> "re.Pattern[str]":
    alternation = "|".join(re.escape(w) for w in words)
    return re.compile(rf"\b(?:{alternation})\b", re.IGNORECASE)


class KeywordTopicClassifier:
    """科目ごとのキーワード → トピック表による分類。当たらなければ General。"""

    def __init__(
        self,
        table: Optional[Dict[str, List[Tuple[str, Sequence[str]]]]] = None,
        default: str = DEFAULT_TOPIC,
    ):
        self.default = default
        self._patterns = {
            subject: [(topic, _compile(words)) for topic, words in rows]
            for subject, rows in (table or TOPIC_KEYWORDS).items()
        }

    def classify(self, text: str, subject: str) -> str:
        for topic, pattern in self._patterns.get(subject, []):
            if pattern.search(text):
                return topic
        return self.default


class KeywordDifficultyClassifier:
    """
    計算・導出系の動詞 → hard、求める・解く系 → medium、
    想起系 → easy、どれにも当たらなければ medium。
    """

    def __init__(self):
        self._hard = _compile(HARD_KEYWORDS)
        self._medium = _compile(MEDIUM_KEYWORDS)
        self._recall = _compile(RECALL_KEYWORDS)

    def classify(self, text: str) -> str:
        if self._hard.search(text):
            return "hard"
        if self._medium.search(text):
            return "medium"
        if self._recall.search(text):
            return "easy"
        return DEFAULT_DIFFICULTY


# ----------------------------------------------------------------------
#  生レコードの読み取り
# ----------------------------------------------------------------------
def _lower_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    return {str(k).lower().replace("_", ""): v for k, v in data.items()}


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def extract_options(raw: RawQuestion) -> Dict[str, str]:
    """
    選択肢を {"A": ..., "B": ..., "C": ..., "D": ...} に揃える。
    欠けているものは空文字のまま返す（判定は呼び出し側）。
    """
    flat = _lower_keys(raw)
    container = _first(flat, "option", "options", "choices")
    options = {letter: "" for letter in OPTION_LETTERS}

    if isinstance(container, dict):
        lowered = _lower_keys(container)
        for letter in OPTION_LETTERS:
            key = letter.lower()
            value = _first(lowered, key, f"option{key}")
            options[letter] = "" if value is None else str(value).strip()
    elif isinstance(container, (list, tuple)):
        for letter, value in zip(OPTION_LETTERS, container):
            options[letter] = "" if value is None else str(value).strip()
    else:
        for letter in OPTION_LETTERS:
            value = _first(flat, f"option{letter.lower()}")
            options[letter] = "" if value is None else str(value).strip()

    return options


def extract_answer(raw: RawQuestion) -> str:
    flat = _lower_keys(raw)
    value = _first(flat, "answer", "correctanswer", "correct")
    if value is None:
        return ""
    return str(value).strip().strip("().").upper()


# ----------------------------------------------------------------------
#  Normalizer
# ----------------------------------------------------------------------
class Normalizer:
    """生レコード → Question。不変条件を満たせない場合は NormalizationFailure。"""

    def __init__(
        self,
        topic_classifier: Optional[TopicClassifier] = None,
        difficulty_classifier: Optional[DifficultyClassifier] = None,
    ):
        self.topic_classifier = topic_classifier or KeywordTopicClassifier()
        self.difficulty_classifier = difficulty_classifier or KeywordDifficultyClassifier()

    def normalize(
        self,
        raw: RawQuestion,
        subject: str,
        exam_type: str,
        year: Optional[int] = None,
    ) -> Question:
        """
        year を渡した場合はレコードの examyear より優先する
        （バックフィルで問い合わせた年を正とするため）。
        """
        if subject not in SUBJECTS:
            raise NormalizationFailure(f"対応外の科目です: {subject}")
        if exam_type not in EXAM_TYPES:
            raise NormalizationFailure(f"対応外の試験種別です: {exam_type}")
        if not isinstance(raw, dict):
            raise NormalizationFailure(f"生レコードが dict ではありません: {type(raw).__name__}")

        flat = _lower_keys(raw)
        text = str(_first(flat, "question", "questiontext", "text") or "").strip()
        if not text:
            raise NormalizationFailure("問題文がありません。")

        options = extract_options(raw)
        answer = extract_answer(raw)
        if answer not in OPTION_LETTERS:
            raise NormalizationFailure(f"正解記号が不正です: {answer!r}")

        solution = str(_first(flat, "solution", "explanation") or "").strip()
        explanation = solution or f"The correct answer is {answer}."

        question = Question(
            subject=subject,
            exam_type=exam_type,
            question=text,
            options=options,
            answer=answer,
            topic=self.topic_classifier.classify(text, subject),
            difficulty=self.difficulty_classifier.classify(text),
            explanation=explanation,
            year=year if year is not None else _parse_year(_first(flat, "examyear", "year")),
            provenance=PROVENANCE_EXTERNAL,
        )

        try:
            question.validate()
        except ValueError as e:
            raise NormalizationFailure(str(e)) from e
        return question

    def normalize_many(
        self,
        raws: Iterable[RawQuestion],
        subject: str,
        exam_type: str,
        year: Optional[int] = None,
    ) -> Tuple[List[Question], List[str]]:
        """正規化できたものと、失敗理由の一覧を返す。"""
        questions: List[Question] = []
        failures: List[str] = []
        for raw in raws:
            try:
                questions.append(self.normalize(raw, subject, exam_type, year=year))
            except NormalizationFailure as e:
                logger.debug("正規化できないレコードをスキップ: %s", e)
                failures.append(str(e))
        return questions, failures


def _parse_year(value: Any) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None
