"""
coverage.py
======================

外部問題バンクに、年ごとの問題が存在するかを調べる。

各年につき 1 問だけ問い合わせ、エラーまたは 0 件なら False。
analyze() は決して例外を投げない（範囲の指定ミスを除く）。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .errors import ExamQuizError, UnsupportedSelection
from .models import SourceQuery, now_iso
from .source_client import SourceClient

logger = logging.getLogger(__name__)


@dataclass
class CoverageReport:
    subject: str
    exam_type: str
    years: Dict[int, bool]
    checked_at: str = field(default_factory=now_iso)

    @property
    def available_years(self) -> List[int]:
        return sorted(y for y, ok in self.years.items() if ok)

    @property
    def missing_years(self) -> List[int]:
        return sorted(y for y, ok in self.years.items() if not ok)

    @property
    def coverage_percent(self) -> float:
        if not self.years:
            return 0.0
        return 100.0 * len(self.available_years) / len(self.years)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject": self.subject,
            "exam_type": self.exam_type,
            "checked_at": self.checked_at,
            # JSON のキーは文字列になる
            "years": {str(y): ok for y, ok in sorted(self.years.items())},
            "available_years": self.available_years,
            "coverage_percent": round(self.coverage_percent, 1),
        }


class CoverageAnalyzer:
    def __init__(self, source: SourceClient):
        self.source = source

    def analyze(self, subject: str, exam_type: str, start_year: int, end_year: int) -> Dict[int, bool]:
        if start_year > end_year:
            raise UnsupportedSelection(f"年の範囲が不正です: {start_year}〜{end_year}")

        result: Dict[int, bool] = {}
        for year in range(start_year, end_year + 1):
            try:
                self.source.fetch_required(SourceQuery(subject, exam_type, year=year, count=1))
                result[year] = True
            except ExamQuizError as e:
                logger.debug("%s %s %d: 問題なし（%s）", subject, exam_type, year, e)
                result[year] = False
            except Exception:
                # 想定外の失敗でも分析は止めない
                logger.exception("%s %s %d: 確認中に想定外のエラー", subject, exam_type, year)
                result[year] = False
        return result

    def report(self, subject: str, exam_type: str, start_year: int, end_year: int) -> CoverageReport:
        years = self.analyze(subject, exam_type, start_year, end_year)
        report = CoverageReport(subject=subject, exam_type=exam_type, years=years)
        logger.info(
            "%s %s: %d/%d 年に問題あり（%.1f%%）",
            subject, exam_type, len(report.available_years), len(years), report.coverage_percent,
        )
        return report
