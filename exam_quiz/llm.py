"""
llm.py
======================

Google Gemini API のモデル管理クラス。

要件:
- 利用可能なモデル一覧を API から動的に取得（generateContent 対応のみ）
- 最新モデルを自動選択 (バージョン番号と pro/flash で優先度判定)
- モデル呼び出しに失敗した場合は順番にフェールオーバー
- 429 (ResourceExhausted) はフェールオーバーせず、その場で GenerationFailure
- CompletionService からは ModelManager.generate() だけ使えばよい
"""

from __future__ import annotations

import logging
import threading
import time
from typing import List, Optional

import google.generativeai as genai
from google.api_core.exceptions import GoogleAPIError, ResourceExhausted

from .errors import GenerationFailure

logger = logging.getLogger(__name__)


class ModelManager:
    """
    Gemini モデルの管理クラス。

    主な機能:
    - list_models(): 利用可能モデル一覧を取得（キャッシュつき）
    - select_best_model(): 最新モデルを自動判定
    - generate(): モデル呼び出し (フェールオーバー付き)
    """

    def __init__(self, api_key: str, failover_priority: Optional[List[str]] = None):
        if not api_key:
            raise GenerationFailure("GEMINI_API_KEY が設定されていません。")
        self.api_key = api_key
        genai.configure(api_key=api_key)
        self.failover_priority = failover_priority or ["latest"]
        self._cached_models: List[str] = []
        self._lock = threading.Lock()
        self._last_selected_model: Optional[str] = None

    # ------------------------------------------------------------
    # モデル一覧取得
    # ------------------------------------------------------------
    def list_models(self, refresh: bool = False) -> List[str]:
        """
        Gemini API から利用可能なモデル一覧を取得し、文字列リストで返す。
        一覧取得に失敗した場合は空リスト（呼び出し側は priority の名前を直接試す）。
        """
        with self._lock:
            if self._cached_models and not refresh:
                return list(self._cached_models)

            try:
                response = genai.list_models()
                models = [
                    m.name for m in response
                    if "generateContent" in getattr(m, "supported_generation_methods", [])
                ]
            except GoogleAPIError as e:
                logger.warning("Gemini モデル一覧の取得に失敗: %s", e)
                return []

            if models:
                self._cached_models = models
            return list(models)

    # ------------------------------------------------------------
    # 最新モデルの自動選択
    # ------------------------------------------------------------
    @staticmethod
    def score(model_name: str) -> tuple:
        """例: models/gemini-2.0-pro → (2, 0, 1)"""
        name = model_name.split("/")[-1]
        try:
            version_str = name.split("-")[1]
            major, minor = version_str.split(".")[:2]
            version = (int(major), int(minor))
        except (IndexError, ValueError):
            version = (0, 0)

        # pro > flash
        priority = 1 if "pro" in name else 0
        return version + (priority,)

    def select_best_model(self) -> Optional[str]:
        models = self.list_models()
        if not models:
            return None
        best = sorted(models, key=self.score, reverse=True)[0]
        self._last_selected_model = best
        return best

    def candidate_models(self) -> List[str]:
        """failover_priority に従った試行順。"latest" は select_best_model() に置き換える。"""
        available = self.list_models()
        ordered: List[str] = []
        for name in self.failover_priority:
            if name == "latest":
                best = self.select_best_model()
                if best:
                    ordered.append(best)
                continue
            full = name if name.startswith("models/") else f"models/{name}"
            if not available or full in available:
                ordered.append(full)

        seen = set()
        return [m for m in ordered if not (m in seen or seen.add(m))]

    # ------------------------------------------------------------
    # generate(): フェールオーバーつき生成
    # ------------------------------------------------------------
    def generate(self, prompt: str) -> str:
        """
        応答テキストを返す。
        すべてのモデルで失敗した場合、または 429 の場合は GenerationFailure。
        """
        candidates = self.candidate_models()
        if not candidates:
            raise GenerationFailure("利用可能な Gemini モデルが見つかりません。")

        last_error: Optional[Exception] = None
        for model_name in candidates:
            try:
                model = genai.GenerativeModel(model_name)
                response = model.generate_content(prompt)
                return response.text
            except ResourceExhausted as e:
                # クォータ上限（429）
                raise GenerationFailure(f"Gemini quota exhausted (429): {e}") from e
            except (GoogleAPIError, ValueError) as e:
                # API エラー・ブロックされた応答 → 次のモデルへフェールオーバー
                logger.info("Gemini %s で失敗、次のモデルへ: %s", model_name, e)
                last_error = e
                time.sleep(0.3)
                continue

        raise GenerationFailure(f"すべての Gemini モデルで生成に失敗しました: {last_error}")

    @property
    def last_selected_model(self) -> Optional[str]:
        return self._last_selected_model
