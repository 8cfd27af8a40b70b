"""
exam_quiz
======================

JAMB / WAEC / NECO 過去問の取得パイプライン。

外部問題バンク → 問題バンク（JSONL）→ Gemini による生成 の順で
出題リクエストを満たし、管理用にバックフィルとカバレッジ分析を提供する。
"""

from .config import AppConfig, setup_logging
from .errors import ExamQuizError, NoQuestionsAvailable, NoTemplateAvailable, UnsupportedSelection
from .models import AcquisitionRequest, Question, SourceQuery
from .service import QuestionService

__all__ = [
    "AcquisitionRequest",
    "AppConfig",
    "ExamQuizError",
    "NoQuestionsAvailable",
    "NoTemplateAvailable",
    "Question",
    "QuestionService",
    "SourceQuery",
    "UnsupportedSelection",
    "setup_logging",
]
