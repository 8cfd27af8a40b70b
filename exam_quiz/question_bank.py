"""
question_bank.py
===========================

JSONL 形式の問題バンク（永続ストア）。

目的:
- 重複排除つき insert（科目 + 試験種別 + ほぼ同一の問題文 を重複とみなす）
- 条件つきランダム抽出（sample_random / sample_filtered）
- 破損行への耐性（壊れている行は skip）
- 複数スレッドからの同時 insert に対する安全性

insert の「重複チェック → 採番 → 追記」は 1 つのロックの中で行う。
同じ問題を同時に insert した 2 つの呼び出しのうち、後の方は StoreDuplicate になる。
"""

from __future__ import annotations

import json
import logging
import random
import threading
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .errors import StoreDuplicate, StoreWriteFailure
from .models import Question

logger = logging.getLogger(__name__)


def new_question_id() -> str:
    return str(uuid.uuid4())


class QuestionBank:
    """
    問題バンク本体。

    path=None の場合はメモリのみ（テスト・試行用）。
    rng を渡すと抽出順を再現できる。
    """

    def __init__(self, path: Optional[Path] = None, rng: Optional[random.Random] = None):
        self.path = Path(path) if path is not None else None
        self._rng = rng or random.Random()
        self._lock = threading.RLock()
        self._by_id: Dict[str, Question] = {}
        self._by_key: Dict[tuple, str] = {}
        self._skipped_lines = 0

        if self.path is not None and self.path.exists():
            self._load()

    # ------------------------------------------------------------------
    #  JSONL 読み込み
    # ------------------------------------------------------------------
    def _load(self) -> None:
        """壊れた行・不変条件を満たさない行は数えてスキップする。"""
        with self.path.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    q = Question.from_dict(json.loads(line))
                    q.validate()
                except (ValueError, KeyError, TypeError) as e:
                    self._skipped_lines += 1
                    logger.debug("壊れた行をスキップ: %s", e)
                    continue
                if q.id is None or q.dedup_key in self._by_key:
                    self._skipped_lines += 1
                    continue
                self._index(q)

        if self._skipped_lines:
            logger.warning("%s: %d 行を読み飛ばしました", self.path, self._skipped_lines)

    def _index(self, q: Question) -> None:
        self._by_id[q.id] = q
        self._by_key[q.dedup_key] = q.id

    def _append(self, q: Question) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(q.to_dict(), ensure_ascii=False))
                f.write("\n")
        except OSError as e:
            raise StoreWriteFailure(f"問題バンクへの書き込みに失敗しました: {e}") from e

    # ------------------------------------------------------------------
    #  insert
    # ------------------------------------------------------------------
    def insert(self, q: Question) -> Question:
        """
        採番して永続化し、id 付きの Question を返す。
        重複なら StoreDuplicate（existing_id に既存の id）。
        """
        try:
            q.validate()
        except ValueError as e:
            raise StoreWriteFailure(f"不正な問題は保存できません: {e}") from e

        with self._lock:
            existing = self._by_key.get(q.dedup_key)
            if existing is not None:
                raise StoreDuplicate("同じ問題が既に存在します。", existing_id=existing)

            stored = replace(q, id=new_question_id())
            self._append(stored)
            self._index(stored)
            return stored

    def insert_many(self, questions: Iterable[Question]) -> Dict[str, int]:
        """まとめて insert し、inserted / duplicates / failed の件数を返す。"""
        counts = {"inserted": 0, "duplicates": 0, "failed": 0}
        for q in questions:
            try:
                self.insert(q)
                counts["inserted"] += 1
            except StoreDuplicate:
                counts["duplicates"] += 1
            except StoreWriteFailure as e:
                logger.warning("保存に失敗: %s", e)
                counts["failed"] += 1
        return counts

    # ------------------------------------------------------------------
    #  単純ヘルパー
    # ------------------------------------------------------------------
    def __len__(self) -> int:
        return len(self._by_id)

    @property
    def skipped_lines(self) -> int:
        return self._skipped_lines

    def get(self, qid: str) -> Optional[Question]:
        """id で 1問取得"""
        return self._by_id.get(qid)

    def all_questions(self) -> List[Question]:
        """全問題のリスト"""
        with self._lock:
            return list(self._by_id.values())

    def count_by(self, subject: str, exam_type: Optional[str] = None) -> int:
        return len(self._matching(subject, exam_type))

    def _matching(
        self,
        subject: str,
        exam_type: Optional[str] = None,
        difficulty: Optional[str] = None,
    ) -> List[Question]:
        """完全一致で絞れる条件だけを適用する。"""
        with self._lock:
            return [
                q for q in self._by_id.values()
                if q.subject == subject
                and (exam_type is None or q.exam_type == exam_type)
                and (difficulty is None or q.difficulty == difficulty)
            ]

    # ------------------------------------------------------------------
    #  ランダム抽出（条件なし）
    # ------------------------------------------------------------------
    def sample_random(
        self,
        subject: str,
        exam_type: Optional[str] = None,
        count: int = 1,
    ) -> List[Question]:
        """科目（と試験種別）が一致するものから最大 count 問をランダムに返す。"""
        if count <= 0:
            return []
        pool = self._matching(subject, exam_type)
        if len(pool) <= count:
            self._rng.shuffle(pool)
            return pool
        return self._rng.sample(pool, count)

    # ------------------------------------------------------------------
    #  ランダム抽出（条件つき）
    # ------------------------------------------------------------------
    def sample_filtered(
        self,
        subject: str,
        count: int,
        exam_type: Optional[str] = None,
        difficulty: Optional[str] = None,
        topics: Optional[Iterable[str]] = None,
        exclude_ids: Optional[Iterable[str]] = None,
    ) -> List[Question]:
        """
        subject / exam_type / difficulty は完全一致で絞り込み、
        topics（大文字小文字無視）と exclude_ids はオーバーサンプルしてから
        メモリ上で除外する。

        最初の取り出し幅は max(2×count, count)。
        絞り込み後に足りず、まだ候補が残っていれば幅を倍にして取り直す。
        候補を使い切った場合は count 未満で返す（呼び出し側で不足を扱う）。
        """
        if count <= 0:
            return []

        topic_keys = {t.lower() for t in topics} if topics else None
        excluded = set(exclude_ids or ())

        candidates = self._matching(subject, exam_type, difficulty)
        self._rng.shuffle(candidates)

        picked: List[Question] = []
        cursor = 0
        batch = max(2 * count, count)
        while len(picked) < count and cursor < len(candidates):
            for q in candidates[cursor:cursor + batch]:
                if q.id in excluded:
                    continue
                if topic_keys is not None and (q.topic or "").lower() not in topic_keys:
                    continue
                picked.append(q)
            cursor += batch
            batch *= 2

        if len(picked) < count:
            logger.debug(
                "sample_filtered: %s/%s で %d/%d 問しか見つかりません",
                subject, exam_type, len(picked), count,
            )
        return picked[:count]
