"""
orchestrator.py
======================

出題リクエストを満たすための取得ポリシー本体。

ティアを優先順に試し、目標数に達した時点で打ち切る:

1. 外部ティア:   ALOC API（年指定なし → 直近数年を新しい順に）
                 取得したものは正規化してバンクへ保存（重複は既存の問題に読み替え）
2. ストアティア: 問題バンクから不足分をランダム抽出（既に選んだ id は除外）
3. 生成ティア:   テンプレート 1 問から CompletionService で不足分を生成（上限つき・並列）

各ティアの失敗はログに残して次へ進む。
1 問も集まらなかった場合だけ NoQuestionsAvailable を呼び出し元へ投げる。

ティア間で共有する状態は Accumulator に集約し、各ティアへ明示的に渡す。
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .completion import CompletionService
from .config import DIFFICULTIES, EXAM_TYPES, SUBJECTS
from .errors import (
    GenerationFailure,
    NoQuestionsAvailable,
    NoTemplateAvailable,
    SourceMalformed,
    SourceRateLimited,
    SourceUnavailable,
    StoreDuplicate,
    StoreError,
    StoreWriteFailure,
    UnsupportedSelection,
)
from .models import AcquisitionRequest, Question, RawQuestion, SourceQuery
from .normalizer import Normalizer
from .question_bank import QuestionBank, new_question_id
from .seed import seed_templates
from .source_client import SourceClient

logger = logging.getLogger(__name__)

TIER_EXTERNAL = "external"
TIER_STORE = "store"
TIER_GENERATED = "generated"


# ----------------------------------------------------------------------
#  Accumulator
# ----------------------------------------------------------------------
@dataclass
class Accumulator:
    """1 リクエスト分の結果の蓄積。同一 id・同一問題文は 2 度入らない。"""

    request: AcquisitionRequest
    items: List[Question] = field(default_factory=list)
    ids: Set[str] = field(default_factory=set)
    keys: Set[tuple] = field(default_factory=set)
    by_tier: Dict[str, int] = field(
        default_factory=lambda: {TIER_EXTERNAL: 0, TIER_STORE: 0, TIER_GENERATED: 0}
    )

    @property
    def shortfall(self) -> int:
        return max(self.request.count - len(self.items), 0)

    @property
    def is_full(self) -> bool:
        return self.shortfall == 0

    def excluded_ids(self) -> Set[str]:
        return set(self.request.exclude_ids) | self.ids

    def offer(self, q: Question, tier: str) -> bool:
        if self.is_full or q.id is None:
            return False
        if q.id in self.ids or q.dedup_key in self.keys:
            return False
        if not self.request.allows(q):
            return False
        self.items.append(q)
        self.ids.add(q.id)
        self.keys.add(q.dedup_key)
        self.by_tier[tier] += 1
        return True


@dataclass
class AcquisitionResult:
    questions: List[Question]
    by_tier: Dict[str, int]
    requested: int

    @property
    def shortfall(self) -> int:
        return max(self.requested - len(self.questions), 0)


# ----------------------------------------------------------------------
#  Orchestrator
# ----------------------------------------------------------------------
class AcquisitionOrchestrator:
    """
    外部 API → 問題バンク → 生成 の順に問題を集める。

    completion が None の場合、生成ティアは使わない。
    fixtures はバンクも空のときのテンプレート候補（既定は seed.SEED_QUESTIONS）。
    """

    def __init__(
        self,
        source: SourceClient,
        normalizer: Normalizer,
        bank: QuestionBank,
        completion: Optional[CompletionService] = None,
        *,
        subjects: Sequence[str] = SUBJECTS,
        exam_types: Sequence[str] = EXAM_TYPES,
        recent_years_window: int = 3,
        max_generations: int = 5,
        generation_workers: int = 5,
        fixtures: Optional[Iterable[Question]] = None,
        current_year: Optional[int] = None,
    ):
        self.source = source
        self.normalizer = normalizer
        self.bank = bank
        self.completion = completion
        self.subjects = tuple(subjects)
        self.exam_types = tuple(exam_types)
        self.recent_years_window = max(int(recent_years_window), 0)
        self.max_generations = max(int(max_generations), 0)
        self.generation_workers = max(int(generation_workers), 1)
        self.fixtures = list(fixtures) if fixtures is not None else None
        self._current_year = current_year

    # ------------------------------------------------------------------
    #  公開 API
    # ------------------------------------------------------------------
    def acquire(self, request: AcquisitionRequest) -> List[Question]:
        return self.acquire_with_report(request).questions

    def acquire_for(
        self,
        subject: str,
        exam_type: str = "JAMB",
        count: int = 20,
        difficulty: Optional[str] = None,
        topics: Optional[Iterable[str]] = None,
        exclude_ids: Optional[Iterable[str]] = None,
    ) -> List[Question]:
        """UI / API 層から呼ぶ形のシグネチャ。"""
        request = AcquisitionRequest.build(
            subject, exam_type, count,
            difficulty=difficulty, topics=topics, exclude_ids=exclude_ids,
        )
        return self.acquire(request)

    def acquire_with_report(self, request: AcquisitionRequest) -> AcquisitionResult:
        self._validate(request)
        acc = Accumulator(request)

        self._external_tier(acc)
        if not acc.is_full:
            self._store_tier(acc)
        if not acc.is_full:
            self._generative_tier(acc)

        if not acc.items:
            raise NoQuestionsAvailable(
                f"{request.subject} / {request.exam_type} の問題を用意できませんでした。"
            )

        if acc.shortfall:
            logger.info(
                "%s/%s: %d/%d 問のみ用意できました %s",
                request.subject, request.exam_type, len(acc.items), request.count, acc.by_tier,
            )
        return AcquisitionResult(
            questions=acc.items[:request.count],
            by_tier=dict(acc.by_tier),
            requested=request.count,
        )

    # ------------------------------------------------------------------
    #  入力チェック
    # ------------------------------------------------------------------
    def _validate(self, request: AcquisitionRequest) -> None:
        if request.subject not in self.subjects:
            raise UnsupportedSelection(f"対応外の科目です: {request.subject}")
        if request.exam_type not in self.exam_types:
            raise UnsupportedSelection(f"対応外の試験種別です: {request.exam_type}")
        if request.count < 1:
            raise UnsupportedSelection(f"出題数は 1 以上にしてください: {request.count}")
        if request.difficulty is not None and request.difficulty not in DIFFICULTIES:
            raise UnsupportedSelection(f"対応外の難易度です: {request.difficulty}")

    # ------------------------------------------------------------------
    #  1. 外部ティア
    # ------------------------------------------------------------------
    def recent_years(self) -> List[int]:
        year = self._current_year or datetime.now(timezone.utc).year
        return [year - i for i in range(self.recent_years_window)]

    def _fetch_external(self, request: AcquisitionRequest) -> Tuple[List[RawQuestion], Optional[int]]:
        """
        年指定なし → 直近の年を新しい順に試し、最初に 0 件でなかった結果を返す。
        サービス停止・429 の場合はそこで外部ティアを打ち切る。
        """
        attempts: List[Optional[int]] = [None] + self.recent_years()
        for year in attempts:
            query = SourceQuery(request.subject, request.exam_type, year=year, count=request.count)
            try:
                raws = self.source.fetch(query)
            except SourceMalformed as e:
                logger.warning("ALOC API の応答が不正です（%s）: %s", year or "年指定なし", e)
                continue
            except SourceRateLimited as e:
                logger.warning("ALOC API のレート制限に達しました。外部ティアを打ち切ります: %s", e)
                break
            except SourceUnavailable as e:
                logger.info("ALOC API が利用できません。問題バンクへフォールバックします: %s", e)
                break

            if raws:
                logger.info(
                    "%s %s: ALOC API から %d 件取得（%s）",
                    request.subject, request.exam_type, len(raws), year or "年指定なし",
                )
                return raws, year
        return [], None

    def _external_tier(self, acc: Accumulator) -> None:
        request = acc.request
        raws, _year = self._fetch_external(request)
        if not raws:
            return

        questions, failures = self.normalizer.normalize_many(raws, request.subject, request.exam_type)
        if failures:
            logger.info("%d 件のレコードを正規化できずスキップしました", len(failures))

        for q in questions:
            stored = self._persist(q)
            if stored is not None:
                acc.offer(stored, TIER_EXTERNAL)

    # ------------------------------------------------------------------
    #  2. ストアティア
    # ------------------------------------------------------------------
    def _store_tier(self, acc: Accumulator) -> None:
        request = acc.request
        need = acc.shortfall
        try:
            if not request.has_filters and not acc.items:
                rows = self.bank.sample_random(request.subject, request.exam_type, need)
            else:
                rows = self.bank.sample_filtered(
                    request.subject,
                    need,
                    exam_type=request.exam_type,
                    difficulty=request.difficulty,
                    topics=request.topics,
                    exclude_ids=acc.excluded_ids(),
                )
        except StoreError as e:
            logger.warning("問題バンクからの抽出に失敗しました: %s", e)
            return

        for q in rows:
            acc.offer(q, TIER_STORE)

    # ------------------------------------------------------------------
    #  3. 生成ティア
    # ------------------------------------------------------------------
    def _generative_tier(self, acc: Accumulator) -> None:
        if self.completion is None or self.max_generations == 0:
            logger.info("生成ティアは無効です。")
            return

        template = self._pick_template(acc)
        attempts = min(acc.shortfall, self.max_generations)
        workers = min(attempts, self.generation_workers)
        logger.info(
            "%s %s: テンプレート（%s / %s）から最大 %d 問を生成します",
            template.subject, template.exam_type, template.topic, template.difficulty, attempts,
        )

        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(self.completion.complete, template) for _ in range(attempts)]
            for future in as_completed(futures):
                try:
                    generated = future.result()
                except GenerationFailure as e:
                    logger.warning("問題生成に失敗しました: %s", e)
                    continue

                stored = self._persist(generated)
                if stored is not None and not acc.offer(stored, TIER_GENERATED):
                    logger.debug("生成問題を採用しませんでした（重複または条件外）")

    def _pick_template(self, acc: Accumulator) -> Question:
        """
        1・2 で得た最初の問題。無ければバンク内の同科目の問題、さらに無ければ seed。
        どれも無ければ NoTemplateAvailable。
        """
        request = acc.request
        if acc.items:
            template = acc.items[0]
        else:
            candidates = (
                self.bank.sample_random(request.subject, request.exam_type, 1)
                or self.bank.sample_random(request.subject, None, 1)
                or seed_templates(request.subject, request.exam_type, self.fixtures)[:1]
            )
            if not candidates:
                raise NoTemplateAvailable(
                    f"{request.subject} にはテンプレートにできる問題がありません。"
                )
            template = candidates[0]
        return self._fit_template(template, request)

    @staticmethod
    def _fit_template(template: Question, request: AcquisitionRequest) -> Question:
        """生成結果がリクエストの条件を満たすよう、テンプレート側を寄せる。"""
        changes = {}
        if template.exam_type != request.exam_type:
            changes["exam_type"] = request.exam_type
        if request.difficulty and template.difficulty != request.difficulty:
            changes["difficulty"] = request.difficulty
        keys = request.topic_keys
        if keys is not None and (template.topic or "").lower() not in keys:
            changes["topic"] = sorted(request.topics)[0]
        return replace(template, **changes) if changes else template

    # ------------------------------------------------------------------
    #  保存（ベストエフォート）
    # ------------------------------------------------------------------
    def _persist(self, q: Question) -> Optional[Question]:
        """
        保存できれば id 付きの問題、重複なら既存の問題を返す。
        書き込みに失敗した場合も、一時 id を振って返す（出題は妨げない）。
        """
        try:
            return self.bank.insert(q)
        except StoreDuplicate as e:
            logger.debug("重複のためスキップ: %s", e.existing_id)
            return self.bank.get(e.existing_id) if e.existing_id else None
        except StoreWriteFailure as e:
            logger.warning("問題の保存に失敗しました（一時 id で出題します）: %s", e)
            return replace(q, id=new_question_id())
