"""
backfill.py
======================

外部問題バンクを 科目 × 試験種別 × 年 の全組み合わせで巡回し、
問題バンクへまとめて取り込むバッチ処理。

- 巡回順は固定（科目 → 試験種別 → 年）。ログを再現できるようにするため
- 1 単位（科目, 試験種別, 年）の失敗はレポートに積むだけで、処理は止めない
- 呼び出しの間に固定の待ち時間を入れる（年ごと / 組み合わせごと）
- 429 を受けたら追加で rate_limit_backoff 秒待つ
- cancel() されたら新しい呼び出しを出さず、途中までのレポートを返す

待ち関数 wait は差し替え可能（テストでは待ち時間を記録するだけにする）。
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from .config import EXAM_TYPES, SUBJECTS
from .errors import (
    SourceError,
    SourceRateLimited,
    StoreDuplicate,
    StoreWriteFailure,
    UnsupportedSelection,
)
from .models import SourceQuery, now_iso
from .normalizer import Normalizer
from .question_bank import QuestionBank
from .source_client import SourceClient

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, str, int], None]


# ----------------------------------------------------------------------
#  レポート
# ----------------------------------------------------------------------
@dataclass
class ExamTypeStats:
    attempted: int = 0
    successful: int = 0
    fetched: int = 0
    inserted: int = 0
    duplicates: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class BackfillReport:
    start_year: int
    end_year: int
    started_at: str = field(default_factory=now_iso)
    finished_at: Optional[str] = None
    subjects: Dict[str, Dict[str, ExamTypeStats]] = field(default_factory=dict)
    attempted: int = 0
    successful: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    cancelled: bool = False
    dry_run: bool = False

    @property
    def failed(self) -> int:
        return self.attempted - self.successful

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def success_rate(self) -> float:
        if self.attempted == 0:
            return 0.0
        return self.successful / self.attempted

    @property
    def total_fetched(self) -> int:
        return sum(s.fetched for pairs in self.subjects.values() for s in pairs.values())

    @property
    def total_inserted(self) -> int:
        return sum(s.inserted for pairs in self.subjects.values() for s in pairs.values())

    def stats_for(self, subject: str, exam_type: str) -> ExamTypeStats:
        return self.subjects.setdefault(subject, {}).setdefault(exam_type, ExamTypeStats())

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.update(
            failed=self.failed,
            error_count=self.error_count,
            success_rate=round(self.success_rate, 4),
            total_fetched=self.total_fetched,
            total_inserted=self.total_inserted,
        )
        return data


# ----------------------------------------------------------------------
#  BackfillScheduler
# ----------------------------------------------------------------------
class BackfillScheduler:
    """
    run(start_year, end_year) で 1 回分の巡回を行う。

    wait を渡さない場合は内部の Event で待つため、
    cancel() すると待ち時間の途中でも即座に戻る。
    """

    def __init__(
        self,
        source: SourceClient,
        normalizer: Normalizer,
        bank: QuestionBank,
        *,
        subjects: Sequence[str] = SUBJECTS,
        exam_types: Sequence[str] = EXAM_TYPES,
        questions_per_year: int = 5,
        year_delay: float = 3.0,
        pair_delay: float = 5.0,
        rate_limit_backoff: float = 30.0,
        wait: Optional[Callable[[float], Any]] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.source = source
        self.normalizer = normalizer
        self.bank = bank
        self.subjects = tuple(subjects)
        self.exam_types = tuple(exam_types)
        self.questions_per_year = questions_per_year
        self.year_delay = year_delay
        self.pair_delay = pair_delay
        self.rate_limit_backoff = rate_limit_backoff
        self._cancel = cancel_event or threading.Event()
        self._wait = wait or self._cancel.wait

    # ------------------------------------------------------------------
    #  キャンセル
    # ------------------------------------------------------------------
    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _sleep(self, seconds: float) -> None:
        if seconds > 0 and not self.cancelled:
            self._wait(seconds)

    # ------------------------------------------------------------------
    #  実行
    # ------------------------------------------------------------------
    def units(self, start_year: int, end_year: int) -> int:
        """巡回する作業単位の数。"""
        return len(self.subjects) * len(self.exam_types) * (end_year - start_year + 1)

    def run(
        self,
        start_year: int,
        end_year: int,
        progress: Optional[ProgressCallback] = None,
        dry_run: bool = False,
    ) -> BackfillReport:
        """
        dry_run=True の場合は取得と正規化だけ行い、バンクには書き込まない。
        """
        if start_year > end_year:
            raise UnsupportedSelection(f"年の範囲が不正です: {start_year}〜{end_year}")

        report = BackfillReport(start_year=start_year, end_year=end_year, dry_run=dry_run)
        years = list(range(start_year, end_year + 1))
        total = self.units(start_year, end_year)
        logger.info("バックフィル開始: %d〜%d（%d 単位）", start_year, end_year, total)

        pairs = [(s, e) for s in self.subjects for e in self.exam_types]
        for pair_index, (subject, exam_type) in enumerate(pairs):
            stats = report.stats_for(subject, exam_type)

            for year_index, year in enumerate(years):
                if self.cancelled:
                    break
                if progress is not None:
                    progress(subject, exam_type, year)

                self._run_unit(report, stats, subject, exam_type, year, dry_run)

                if year_index < len(years) - 1:
                    self._sleep(self.year_delay)

            # 最後の単位の実行中に止められた場合は全単位を終えている
            if self.cancelled and report.attempted < total:
                report.cancelled = True
                logger.info("バックフィルはキャンセルされました（%d 単位まで実行）", report.attempted)
                break

            logger.info(
                "%s %s: 取得 %d / 追加 %d / 重複 %d / エラー %d",
                subject, exam_type, stats.fetched, stats.inserted, stats.duplicates, len(stats.errors),
            )
            if pair_index < len(pairs) - 1:
                self._sleep(self.pair_delay)

        report.finished_at = now_iso()
        logger.info(
            "バックフィル終了: %d/%d 単位成功（%.1f%%）、追加 %d 問",
            report.successful, report.attempted, report.success_rate * 100, report.total_inserted,
        )
        return report

    def _run_unit(
        self,
        report: BackfillReport,
        stats: ExamTypeStats,
        subject: str,
        exam_type: str,
        year: int,
        dry_run: bool,
    ) -> None:
        """1 単位（科目, 試験種別, 年）。必ず attempted を 1 増やす。"""
        report.attempted += 1
        stats.attempted += 1

        query = SourceQuery(subject, exam_type, year=year, count=self.questions_per_year)
        try:
            raws = self.source.fetch(query)
        except SourceError as e:
            message = f"{year}: {type(e).__name__}: {e}"
            stats.errors.append(message)
            report.errors.append(
                {"subject": subject, "exam_type": exam_type, "year": year, "error": str(e),
                 "kind": type(e).__name__}
            )
            logger.warning("%s %s %s", subject, exam_type, message)
            if isinstance(e, SourceRateLimited):
                self._sleep(max(self.rate_limit_backoff, e.retry_after or 0.0))
            return

        report.successful += 1
        stats.successful += 1
        stats.fetched += len(raws)

        questions, failures = self.normalizer.normalize_many(raws, subject, exam_type, year=year)
        for reason in failures:
            stats.errors.append(f"{year}: 正規化失敗: {reason}")
            report.errors.append(
                {"subject": subject, "exam_type": exam_type, "year": year, "error": reason,
                 "kind": "NormalizationFailure"}
            )

        if dry_run:
            return

        for q in questions:
            try:
                self.bank.insert(q)
                stats.inserted += 1
            except StoreDuplicate:
                stats.duplicates += 1
            except StoreWriteFailure as e:
                stats.errors.append(f"{year}: 保存失敗: {e}")
                report.errors.append(
                    {"subject": subject, "exam_type": exam_type, "year": year, "error": str(e),
                     "kind": "StoreWriteFailure"}
                )
