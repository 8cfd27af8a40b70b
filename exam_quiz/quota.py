"""
quota.py
======================

外部問題バンクの呼び出しレートを管理するモジュール。

前提:
- 外部サービスのレート制限はプロセス全体で共有される（グローバル）
- 同じ RateLimiter を SourceClient に注入し、
  リクエスト処理・バックフィル・カバレッジ分析のすべてで共有する

このモジュールの役割:
- トークンバケットで呼び出し間隔をならす（acquire）
- 429(Rate limited) を検出したら、その後しばらく呼び出しを止める（register_429）
- UI / meta.json 向けに状態サマリを返す（get_status）

clock / sleep を差し替えれば、実時間を待たずにテストできる。
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Optional


class RateLimiter:
    """
    トークンバケット。

    rate_per_minute: 1 分あたりに補充されるトークン数
    burst:           バケット容量（連続で即時に打てる回数）
    """

    def __init__(
        self,
        rate_per_minute: float = 20.0,
        burst: int = 1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if rate_per_minute <= 0:
            raise ValueError("rate_per_minute は正の値にしてください。")
        self.rate_per_second = rate_per_minute / 60.0
        self.capacity = max(int(burst), 1)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()

        self._tokens = float(self.capacity)
        self._updated_at = clock()
        self._blocked_until = 0.0

        self._total_calls = 0
        self._total_wait = 0.0
        self._last_429_at: Optional[str] = None
        self._last_error: Optional[str] = None

    # ------------------------------------------------------------------
    # トークン取得
    # ------------------------------------------------------------------
    def _refill(self, now: float) -> None:
        elapsed = max(now - self._updated_at, 0.0)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate_per_second)
        self._updated_at = now

    def _reserve(self, max_wait: Optional[float] = None) -> Optional[float]:
        """
        トークンを 1 つ予約し、待つべき秒数を返す。
        待ち時間が max_wait を超える場合は予約せずに None を返す。
        """
        with self._lock:
            now = self._clock()
            self._refill(now)
            wait = max(self._blocked_until - now, 0.0)
            if self._tokens < 1.0:
                wait = max(wait, (1.0 - self._tokens) / self.rate_per_second)
            if max_wait is not None and wait > max_wait:
                return None

            self._tokens -= 1.0

            self._total_calls += 1
            self._total_wait += wait
            return wait

    def acquire(self) -> float:
        """
        呼び出し 1 回分の枠を確保する。必要なら待ってから戻る。
        実際に待った秒数を返す。
        """
        wait = self._reserve()
        if wait > 0:
            self._sleep(wait)
        return wait

    def try_acquire(self, max_wait: float) -> bool:
        """
        max_wait 秒以内に枠が取れるなら待って True。
        取れないなら待たずに False（トークンは消費しない）。
        """
        wait = self._reserve(max_wait)
        if wait is None:
            return False
        if wait > 0:
            self._sleep(wait)
        return True

    def cooldown_remaining(self) -> float:
        with self._lock:
            return max(self._blocked_until - self._clock(), 0.0)

    # ------------------------------------------------------------------
    # 429 / エラー
    # ------------------------------------------------------------------
    def register_429(self, retry_after: Optional[float] = None, message: Optional[str] = None) -> None:
        """
        429 を検出したときに呼び出す。

        - last_429_at を現在時刻(UTC)で更新
        - retry_after 秒（未指定なら補充 1 回分）だけ次の acquire を待たせる
        """
        with self._lock:
            now = self._clock()
            cooldown = retry_after if retry_after is not None else 1.0 / self.rate_per_second
            self._blocked_until = max(self._blocked_until, now + max(cooldown, 0.0))
            self._tokens = min(self._tokens, 0.0)
            self._last_429_at = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
            if message:
                self._last_error = message

    def register_error(self, message: str) -> None:
        """429 以外のエラーも、様子を記録したい場合に利用する。"""
        with self._lock:
            self._last_error = message

    # ------------------------------------------------------------------
    # 状態参照
    # ------------------------------------------------------------------
    def get_status(self) -> Dict[str, Any]:
        """UI や meta.json から参照するための状態サマリ。"""
        with self._lock:
            now = self._clock()
            return {
                "total_calls": self._total_calls,
                "total_wait_seconds": round(self._total_wait, 3),
                "rate_per_minute": self.rate_per_second * 60.0,
                "cooldown_remaining": round(max(self._blocked_until - now, 0.0), 3),
                "last_429_at": self._last_429_at,
                "last_error": self._last_error,
            }

    def is_cooling_down(self) -> bool:
        with self._lock:
            return self._clock() < self._blocked_until
