"""
source_client.py
======================

外部問題バンク (ALOC API) の薄いクライアント。

要件:
- 科目・試験種別を API 側のキーに変換して問い合わせる
- 1 回の呼び出し上限（既定 40 問）を超える要求は複数回に分けて連結し、要求数で切り詰める
- 失敗を分類して投げる
    SourceUnavailable  ネットワーク断・タイムアウト・5xx・認証なし/不正
    SourceRateLimited  429（呼び出し側が待ってから再試行するかを決める）
    SourceMalformed    応答の形が想定と違う
  0 件は失敗ではない（空リストを返す）
- 永続化も正規化も行わない
"""

from __future__ import annotations

import copy
import logging
import math
from typing import Any, Dict, List, Optional

import requests

from .config import EXAM_TYPE_MAPPING, SUBJECT_MAPPING
from .errors import (
    SourceEmpty,
    SourceError,
    SourceMalformed,
    SourceRateLimited,
    SourceUnavailable,
    UnsupportedSelection,
)
from .models import RawQuestion, SourceQuery
from .quota import RateLimiter

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://questions.aloc.com.ng/api/v2"


class SourceClient:
    """
    ALOC API クライアント。

    access_token が空の場合は、どの呼び出しも SourceUnavailable になる
    （外部サービスが無い環境でもパイプラインは動く）。
    """

    def __init__(
        self,
        access_token: str = "",
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10.0,
        batch_ceiling: int = 40,
        rate_limiter: Optional[RateLimiter] = None,
        session: Optional[requests.Session] = None,
        max_wait: Optional[float] = None,
    ):
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.batch_ceiling = max(int(batch_ceiling), 1)
        self.rate_limiter = rate_limiter
        self.session = session or requests.Session()
        # None ならレート制限の枠が空くまで待つ（バックフィル向け）
        self.max_wait = max_wait

    def with_wait_budget(self, max_wait: Optional[float]) -> "SourceClient":
        """同じセッションと RateLimiter を共有し、待ち時間の上限だけ変えた複製。"""
        clone = copy.copy(self)
        clone.max_wait = max_wait
        return clone

    # ------------------------------------------------------------
    # 対応一覧
    # ------------------------------------------------------------
    @staticmethod
    def supported_subjects() -> List[str]:
        return list(SUBJECT_MAPPING)

    @staticmethod
    def supported_exam_types() -> List[str]:
        return list(EXAM_TYPE_MAPPING)

    # ------------------------------------------------------------
    # fetch
    # ------------------------------------------------------------
    def fetch(self, query: SourceQuery) -> List[RawQuestion]:
        """
        query.count 件までの生レコードを返す。
        上限を超える場合は batch_ceiling ずつ呼び出し、id で重複を除いて連結する。
        2 回目以降の呼び出しが失敗した場合は、それまでに得た分を返す。
        """
        params = self._build_params(query)
        if not self.access_token:
            raise SourceUnavailable("ALOC_ACCESS_TOKEN が設定されていません。")
        if query.count <= 0:
            return []

        collected: List[RawQuestion] = []
        seen_ids = set()
        calls = math.ceil(query.count / self.batch_ceiling)

        for i in range(calls):
            size = min(query.count - len(collected), self.batch_ceiling)
            try:
                items = self._request(params, size)
            except SourceError:
                if i == 0 or not collected:
                    raise
                logger.warning(
                    "%s/%s: %d 回目の呼び出しに失敗したため %d 件で打ち切ります",
                    query.subject, query.exam_type, i + 1, len(collected),
                )
                break

            added = 0
            for item in items:
                raw_id = item.get("id")
                if raw_id is not None:
                    if raw_id in seen_ids:
                        continue
                    seen_ids.add(raw_id)
                collected.append(item)
                added += 1

            if added == 0 or len(collected) >= query.count:
                break

        return collected[:query.count]

    def fetch_required(self, query: SourceQuery) -> List[RawQuestion]:
        """0 件を SourceEmpty として扱いたい呼び出し元向け。"""
        items = self.fetch(query)
        if not items:
            raise SourceEmpty(
                f"{query.subject}/{query.exam_type}/{query.year or 'any'} に問題がありません。"
            )
        return items

    def test_connection(self) -> bool:
        """接続確認。例外は投げない。"""
        try:
            self.fetch_required(SourceQuery(subject="Mathematics", exam_type="JAMB", count=1))
            return True
        except SourceError as e:
            logger.info("ALOC API 接続確認に失敗: %s", e)
            return False

    # ------------------------------------------------------------
    # 内部関数
    # ------------------------------------------------------------
    @staticmethod
    def _build_params(query: SourceQuery) -> Dict[str, str]:
        subject_key = SUBJECT_MAPPING.get(query.subject)
        if subject_key is None:
            raise UnsupportedSelection(f"科目 {query.subject} は ALOC API では扱えません。")
        exam_key = EXAM_TYPE_MAPPING.get(query.exam_type)
        if exam_key is None:
            raise UnsupportedSelection(f"試験種別 {query.exam_type} は ALOC API では扱えません。")

        params = {"subject": subject_key, "type": exam_key}
        if query.year is not None:
            params["year"] = str(query.year)
        return params

    def _headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "AccessToken": self.access_token,
        }

    def _request(self, params: Dict[str, str], size: int) -> List[RawQuestion]:
        """1 回分の HTTP 呼び出しと応答の分類。"""
        endpoint = "/q" if size == 1 else f"/q/{size}"
        url = f"{self.base_url}{endpoint}"

        self._wait_for_slot()

        logger.debug("GET %s %s", url, params)
        try:
            response = self.session.get(
                url, params=params, headers=self._headers(), timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            self._note_error(str(e))
            raise SourceUnavailable(f"ALOC API is currently unavailable: {e}") from e

        status = response.status_code
        if status == 429:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            if self.rate_limiter is not None:
                self.rate_limiter.register_429(retry_after, message=f"429 {url}")
            raise SourceRateLimited("ALOC API rate limit exceeded", retry_after=retry_after)
        if status == 404:
            return []
        if status >= 400:
            self._note_error(f"HTTP {status} {url}")
            raise SourceUnavailable(f"ALOC API error: HTTP {status}")

        try:
            body = response.json()
        except ValueError as e:
            raise SourceMalformed(f"ALOC API の応答が JSON ではありません: {e}") from e

        return _parse_body(body)

    def _wait_for_slot(self) -> None:
        limiter = self.rate_limiter
        if limiter is None:
            return
        if self.max_wait is None:
            limiter.acquire()
            return
        if not limiter.try_acquire(self.max_wait):
            remaining = limiter.cooldown_remaining()
            raise SourceRateLimited(
                f"レート制限の待ち時間が上限 {self.max_wait:.1f} 秒を超えます",
                retry_after=remaining or None,
            )

    def _note_error(self, message: str) -> None:
        if self.rate_limiter is not None:
            self.rate_limiter.register_error(message)


# ----------------------------------------------------------------------
#  応答の解釈
# ----------------------------------------------------------------------
def _parse_body(body: Any) -> List[RawQuestion]:
    """
    {"status": true, "data": [...]} または {"data": {...}}（1 件）を想定する。
    """
    if not isinstance(body, dict):
        raise SourceMalformed(f"想定外の応答形式です: {type(body).__name__}")
    if body.get("status") is False:
        raise SourceMalformed(body.get("message") or "ALOC API returned error")

    data = body.get("data")
    if data is None:
        return []
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise SourceMalformed(f"data の形式が不正です: {type(data).__name__}")
    if not all(isinstance(item, dict) for item in data):
        raise SourceMalformed("data に dict 以外の要素が含まれています。")
    for item in data:
        raw_id = item.get("id")
        if raw_id is not None and not isinstance(raw_id, (str, int)):
            raise SourceMalformed(f"id の形式が不正です: {type(raw_id).__name__}")
    return data


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None
