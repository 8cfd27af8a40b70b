"""
meta.py
======================

bank/meta.json の読み書きをまとめて扱うモジュール。

meta.json の想定構造（抜粋）:

{
  "version": 1,
  "created_at": "1970-01-01T00:00:00Z",
  "updated_at": "1970-01-01T00:00:00Z",
  "usage": {
    "total_questions": 0,
    "external_questions": 0,
    "store_questions": 0,
    "generated_questions": 0
  },
  "subject_stats": {
    "Mathematics": {"total_questions": 3, "external_questions": 1, ...},
    ...
  },
  "rate_limit": {
    "total_calls": 0,
    "last_429_at": null,
    "last_error": null
  },
  "last_backfill": null,          # BackfillReport.to_dict()
  "coverage": {
    "Mathematics/JAMB": { ... }   # CoverageReport.to_dict()
  }
}
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .models import now_iso

USAGE_TIERS = ("external", "store", "generated")


def _empty_usage() -> Dict[str, int]:
    usage = {"total_questions": 0}
    for tier in USAGE_TIERS:
        usage[f"{tier}_questions"] = 0
    return usage


class MetaManager:
    """
    bank/meta.json を扱うユーティリティクラス。

    主な責務:
    - meta.json のロード／セーブ
    - 出題ティア別の usage カウンタ（全体・科目別）
    - 直近のバックフィル結果 / カバレッジ結果の保存
    - RateLimiter の状態スナップショット
    """

    def __init__(self, path: str = "bank/meta.json"):
        self.path = Path(path)
        self.meta: Dict[str, Any] = {}

    # ------------------------------------------------------------------
    # ロード / セーブ
    # ------------------------------------------------------------------
    def load(self) -> None:
        """meta.json を読み込む。存在しない場合は基本骨格を作る。"""
        if self.path.exists():
            with self.path.open("r", encoding="utf-8") as f:
                self.meta = json.load(f)
        else:
            now = now_iso()
            self.meta = {
                "version": 1,
                "created_at": now,
                "updated_at": now,
            }

        # 足りないキーを安全に補完
        self._ensure_structure()

    def save(self) -> None:
        """meta.json を保存する。更新日時を自動で進める。"""
        if not self.meta:
            return

        self.meta["updated_at"] = now_iso()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as f:
            json.dump(self.meta, f, ensure_ascii=False, indent=2)

    # ------------------------------------------------------------------
    # 内部構造の補完
    # ------------------------------------------------------------------
    def _ensure_structure(self) -> None:
        m = self.meta

        m.setdefault("version", 1)
        m.setdefault("created_at", now_iso())
        m.setdefault("updated_at", now_iso())
        m.setdefault("usage", {})
        m.setdefault("subject_stats", {})
        m.setdefault("rate_limit", {})
        m.setdefault("last_backfill", None)
        m.setdefault("coverage", {})

        for key, value in _empty_usage().items():
            m["usage"].setdefault(key, value)

        rate = m["rate_limit"]
        rate.setdefault("total_calls", 0)
        rate.setdefault("last_429_at", None)
        rate.setdefault("last_error", None)

        if not isinstance(m["subject_stats"], dict):
            m["subject_stats"] = {}
        if not isinstance(m["coverage"], dict):
            m["coverage"] = {}

    # ------------------------------------------------------------------
    # usage
    # ------------------------------------------------------------------
    def record_usage(self, subject: str, tier: str, count: int = 1) -> None:
        """
        出題した問題数をティア別に加算する。

        tier: "external" / "store" / "generated"
        """
        if count <= 0:
            return
        if tier not in USAGE_TIERS:
            raise ValueError(f"未知のティアです: {tier}")

        usage = self.meta["usage"]
        usage["total_questions"] += count
        usage[f"{tier}_questions"] += count

        stats = self.meta["subject_stats"]
        if subject not in stats or not isinstance(stats[subject], dict):
            stats[subject] = _empty_usage()
        entry = stats[subject]
        for key, value in _empty_usage().items():
            entry.setdefault(key, value)
        entry["total_questions"] += count
        entry[f"{tier}_questions"] += count

    def record_acquisition(self, subject: str, by_tier: Mapping[str, int]) -> None:
        for tier, count in by_tier.items():
            self.record_usage(subject, tier, count)

    # ------------------------------------------------------------------
    # バックフィル / カバレッジ
    # ------------------------------------------------------------------
    def record_backfill(self, report: Dict[str, Any]) -> None:
        self.meta["last_backfill"] = report

    def record_coverage(self, report: Dict[str, Any]) -> None:
        key = f"{report['subject']}/{report['exam_type']}"
        self.meta["coverage"][key] = report

    def get_coverage(self, subject: str, exam_type: str) -> Optional[Dict[str, Any]]:
        return self.meta["coverage"].get(f"{subject}/{exam_type}")

    # ------------------------------------------------------------------
    # レート制限
    # ------------------------------------------------------------------
    def record_rate_limit(self, status: Dict[str, Any]) -> None:
        """RateLimiter.get_status() の内容を保存する（前回値は必要なものだけ残す）。"""
        rate = self.meta["rate_limit"]
        rate["total_calls"] = rate.get("total_calls", 0) + int(status.get("total_calls", 0))
        if status.get("last_429_at"):
            rate["last_429_at"] = status["last_429_at"]
        if status.get("last_error"):
            rate["last_error"] = status["last_error"]
