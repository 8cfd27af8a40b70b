"""
seed.py
======================

初期問題（seed-fixture）と、問題バンクの初期投入。

SEED_QUESTIONS の用途:
- 外部 API もバンクも空のときの、生成ティア用テンプレート
- 外部 API に届かない環境での問題バンクの最低限の中身
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Iterable, List, Optional

from .errors import NormalizationFailure, SourceError, StoreDuplicate, StoreWriteFailure
from .models import PROVENANCE_SEED, Question, SourceQuery
from .normalizer import Normalizer
from .question_bank import QuestionBank
from .source_client import SourceClient

logger = logging.getLogger(__name__)


def _seed(subject, exam_type, topic, difficulty, text, options, answer, explanation) -> Question:
    return Question(
        subject=subject,
        exam_type=exam_type,
        question=text,
        options=dict(zip("ABCD", options)),
        answer=answer,
        topic=topic,
        difficulty=difficulty,
        explanation=explanation,
        year=2024,
        provenance=PROVENANCE_SEED,
    )


SEED_QUESTIONS: List[Question] = [
    _seed(
        "Mathematics", "JAMB", "Logarithms", "hard",
        "If log₁₀2 = 0.3010, find log₁₀8",
        ["0.9030", "0.9020", "0.9010", "0.9000"], "A",
        "log₁₀8 = log₁₀(2³) = 3log₁₀2 = 3(0.3010) = 0.9030",
    ),
    _seed(
        "Mathematics", "JAMB", "Ratio and Proportion", "medium",
        "The ages of Kemi and Tolu are in the ratio 2:3. If Kemi is 12 years old, how old is Tolu?",
        ["18 years", "15 years", "20 years", "16 years"], "A",
        "If Kemi:Tolu = 2:3 and Kemi = 12, then 2x = 12, so x = 6. Therefore Tolu = 3x = 18 years",
    ),
    _seed(
        "English", "WAEC", "Vocabulary", "medium",
        "Choose the option that best completes the gap: The principal _____ the students for their poor performance.",
        ["berated", "bereaved", "betrayed", "beloved"], "A",
        "Berated means to scold or criticize angrily, which fits the context of poor performance",
    ),
    _seed(
        "English", "WAEC", "Grammar", "hard",
        "Which of the following sentences is correct?",
        [
            "Neither John nor his friends were present",
            "Neither John nor his friends was present",
            "Either John or his friends were present",
            "Neither John or his friends were present",
        ], "B",
        "With 'neither...nor' the verb agrees with the subject closest to it.",
    ),
    _seed(
        "Physics", "JAMB", "Motion", "medium",
        "A car travels 60km in the first hour and 40km in the second hour. Calculate the average speed.",
        ["50 km/h", "100 km/h", "60 km/h", "40 km/h"], "A",
        "Average speed = Total distance / Total time = (60 + 40) / 2 = 50 km/h",
    ),
    _seed(
        "Chemistry", "JAMB", "Organic Chemistry", "easy",
        "What is the molecular formula of glucose?",
        ["C₆H₁₂O₆", "C₆H₁₀O₅", "C₅H₁₂O₆", "C₆H₁₂O₅"], "A",
        "Glucose is a simple sugar with 6 carbon, 12 hydrogen and 6 oxygen atoms.",
    ),
    _seed(
        "Biology", "JAMB", "Cell Biology", "easy",
        "Which organelle is responsible for photosynthesis in plant cells?",
        ["Chloroplast", "Mitochondria", "Nucleus", "Ribosome"], "A",
        "Chloroplasts contain chlorophyll and are the sites of photosynthesis in plant cells.",
    ),
]


def seed_templates(
    subject: str,
    exam_type: Optional[str] = None,
    fixtures: Optional[Iterable[Question]] = None,
) -> List[Question]:
    """科目が一致する seed を、試験種別も一致するものから順に返す。"""
    pool = [q for q in (SEED_QUESTIONS if fixtures is None else fixtures) if q.subject == subject]
    return sorted(pool, key=lambda q: q.exam_type != exam_type)


# ----------------------------------------------------------------------
#  初期投入
# ----------------------------------------------------------------------
def seed_initial_questions(
    bank: QuestionBank,
    source: SourceClient,
    normalizer: Normalizer,
    subjects: Iterable[str],
    exam_types: Iterable[str],
    min_bank_size: int = 100,
    per_pair: int = 3,
    delay: float = 2.0,
    wait: Callable[[float], None] = time.sleep,
) -> Dict[str, int]:
    """
    バンクが min_bank_size 未満のときだけ動く。

    1. 接続確認に成功したら、科目 × 試験種別ごとに per_pair 問ずつ控えめに取得する
    2. 1 問も取れなかった場合は SEED_QUESTIONS を投入する
    """
    result = {"existing": len(bank), "fetched": 0, "seeded": 0}
    if len(bank) >= min_bank_size:
        logger.info("問題バンクは投入済みです（%d 問）", len(bank))
        return result

    exam_types = list(exam_types)
    if source.test_connection():
        for subject in subjects:
            for exam_type in exam_types:
                try:
                    raws = source.fetch(SourceQuery(subject, exam_type, count=per_pair))
                except SourceError as e:
                    logger.info("%s %s を取得できません: %s", subject, exam_type, e)
                    raws = []

                for raw in raws:
                    try:
                        bank.insert(normalizer.normalize(raw, subject, exam_type))
                        result["fetched"] += 1
                    except (NormalizationFailure, StoreDuplicate):
                        continue
                    except StoreWriteFailure as e:
                        logger.warning("保存に失敗: %s", e)

                wait(delay)

    if result["fetched"] == 0:
        logger.info("外部 API から取得できなかったため、初期問題を投入します。")
        counts = bank.insert_many(SEED_QUESTIONS)
        result["seeded"] = counts["inserted"]

    return result
