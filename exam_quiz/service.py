"""
service.py
======================

AppConfig から各部品を組み立て、出題側と管理側の入口をまとめる。

- acquire():            出題リクエスト（UI / API 層から呼ぶ）
- run_backfill():       バックフィル（管理用）
- coverage_report():    カバレッジ分析（管理用）
- seed_initial_questions(): 空のバンクへの初期投入

Gemini API キーが無ければ生成ティアは無効、
ALOC のトークンが無ければ外部ティアは常に「利用不可」として動く。
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional

from .backfill import BackfillReport, BackfillScheduler, ProgressCallback
from .completion import CompletionService
from .config import AppConfig
from .coverage import CoverageAnalyzer, CoverageReport
from .errors import GenerationFailure
from .llm import ModelManager
from .meta import MetaManager
from .models import AcquisitionRequest, Question
from .normalizer import Normalizer
from .orchestrator import AcquisitionOrchestrator, AcquisitionResult
from .question_bank import QuestionBank
from .quota import RateLimiter
from .seed import seed_initial_questions
from .source_client import SourceClient

logger = logging.getLogger(__name__)


class QuestionService:
    def __init__(
        self,
        cfg: AppConfig,
        source: SourceClient,
        bank: QuestionBank,
        normalizer: Optional[Normalizer] = None,
        completion: Optional[CompletionService] = None,
        meta: Optional[MetaManager] = None,
        rate_limiter: Optional[RateLimiter] = None,
        request_source: Optional[SourceClient] = None,
    ):
        self.cfg = cfg
        self.source = source
        # 出題側は待ち時間に上限のあるクライアントを使う
        self.request_source = request_source or source
        self.bank = bank
        self.normalizer = normalizer or Normalizer()
        self.completion = completion
        self.rate_limiter = rate_limiter
        self._recorded_calls = 0

        if meta is None:
            meta = MetaManager(str(cfg.meta_json_path))
            meta.load()
        self.meta = meta

        self.orchestrator = AcquisitionOrchestrator(
            self.request_source,
            self.normalizer,
            bank,
            completion,
            subjects=cfg.subjects,
            exam_types=cfg.exam_types,
            recent_years_window=cfg.recent_years_window,
            max_generations=cfg.max_generations,
            generation_workers=cfg.generation_workers,
        )
        self.coverage = CoverageAnalyzer(source)

    @classmethod
    def from_config(cls, cfg: AppConfig) -> "QuestionService":
        limiter = RateLimiter(cfg.rate_limit_per_minute, cfg.rate_limit_burst)
        source = SourceClient(
            access_token=cfg.aloc_access_token,
            base_url=cfg.aloc_base_url,
            timeout=cfg.source_timeout,
            batch_ceiling=cfg.source_batch_ceiling,
            rate_limiter=limiter,
        )
        bank = QuestionBank(cfg.question_bank_path)

        completion = None
        if cfg.has_gemini:
            try:
                completion = CompletionService(
                    ModelManager(cfg.gemini_api_key, cfg.model_failover_priority)
                )
            except GenerationFailure as e:
                logger.warning("生成ティアを無効にします: %s", e)
        else:
            logger.info("GEMINI_API_KEY が無いため、生成ティアは無効です。")

        return cls(
            cfg,
            source,
            bank,
            completion=completion,
            rate_limiter=limiter,
            request_source=source.with_wait_budget(cfg.request_wait_budget),
        )

    # ------------------------------------------------------------------
    # 出題
    # ------------------------------------------------------------------
    def acquire(
        self,
        subject: str,
        exam_type: str = "JAMB",
        count: int = 20,
        difficulty: Optional[str] = None,
        topics: Optional[Iterable[str]] = None,
        exclude_ids: Optional[Iterable[str]] = None,
    ) -> List[Question]:
        return self.acquire_with_report(
            subject, exam_type, count, difficulty, topics, exclude_ids
        ).questions

    def acquire_with_report(
        self,
        subject: str,
        exam_type: str = "JAMB",
        count: int = 20,
        difficulty: Optional[str] = None,
        topics: Optional[Iterable[str]] = None,
        exclude_ids: Optional[Iterable[str]] = None,
    ) -> AcquisitionResult:
        request = AcquisitionRequest.build(
            subject, exam_type, count,
            difficulty=difficulty, topics=topics, exclude_ids=exclude_ids,
        )
        result = self.orchestrator.acquire_with_report(request)
        self.meta.record_acquisition(subject, result.by_tier)
        self.save_meta()
        return result

    # ------------------------------------------------------------------
    # 管理用
    # ------------------------------------------------------------------
    def make_backfill_scheduler(
        self,
        wait: Optional[Callable[[float], Any]] = None,
        cancel_event: Optional[threading.Event] = None,
        questions_per_year: Optional[int] = None,
    ) -> BackfillScheduler:
        cfg = self.cfg
        return BackfillScheduler(
            self.source,
            self.normalizer,
            self.bank,
            subjects=cfg.subjects,
            exam_types=cfg.exam_types,
            questions_per_year=questions_per_year or cfg.backfill_questions_per_year,
            year_delay=cfg.backfill_year_delay,
            pair_delay=cfg.backfill_pair_delay,
            rate_limit_backoff=cfg.backfill_rate_limit_backoff,
            wait=wait,
            cancel_event=cancel_event,
        )

    def run_backfill(
        self,
        start_year: Optional[int] = None,
        end_year: Optional[int] = None,
        scheduler: Optional[BackfillScheduler] = None,
        progress: Optional[ProgressCallback] = None,
        dry_run: bool = False,
    ) -> BackfillReport:
        scheduler = scheduler or self.make_backfill_scheduler()
        report = scheduler.run(
            start_year if start_year is not None else self.cfg.backfill_start_year,
            end_year if end_year is not None else self.cfg.backfill_end_year,
            progress=progress,
            dry_run=dry_run,
        )
        if not dry_run:
            self.meta.record_backfill(report.to_dict())
            self.save_meta()
        return report

    def coverage_report(
        self, subject: str, exam_type: str, start_year: int, end_year: int
    ) -> CoverageReport:
        report = self.coverage.report(subject, exam_type, start_year, end_year)
        self.meta.record_coverage(report.to_dict())
        self.save_meta()
        return report

    def seed_initial_questions(self, min_bank_size: int = 100) -> Dict[str, int]:
        return seed_initial_questions(
            self.bank,
            self.source,
            self.normalizer,
            self.cfg.subjects,
            self.cfg.exam_types,
            min_bank_size=min_bank_size,
        )

    # ------------------------------------------------------------------
    # 状態
    # ------------------------------------------------------------------
    def status(self) -> Dict[str, Any]:
        return {
            "bank_size": len(self.bank),
            "skipped_lines": self.bank.skipped_lines,
            "source_configured": self.cfg.has_source_credentials,
            "generation_enabled": self.completion is not None,
            "rate_limit": self.rate_limiter.get_status() if self.rate_limiter else None,
            "usage": dict(self.meta.meta["usage"]),
        }

    def save_meta(self) -> None:
        if self.rate_limiter is not None:
            status = self.rate_limiter.get_status()
            # 前回保存からの増分だけを加算する
            delta = dict(status, total_calls=status["total_calls"] - self._recorded_calls)
            self._recorded_calls = status["total_calls"]
            self.meta.record_rate_limit(delta)
        self.meta.save()
