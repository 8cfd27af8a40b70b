"""
errors.py
======================

問題取得パイプラインの例外階層。

ほとんどの例外はティア / 作業単位の境界で捕捉され、
「次のティアへ進む」あるいは「レポートのエラー一覧に積む」に変換される。
呼び出し元まで届くのは NoQuestionsAvailable と UnsupportedSelection のみ。
"""

from __future__ import annotations

from typing import Optional


class ExamQuizError(Exception):
    """本パッケージの全例外の基底。"""


# ----------------------------------------------------------------------
#  外部問題バンク
# ----------------------------------------------------------------------
class SourceError(ExamQuizError):
    """外部問題バンク呼び出しの失敗。"""


class SourceUnavailable(SourceError):
    """ネットワーク断・DNS・サービス停止・タイムアウト・認証情報なし。"""


class SourceRateLimited(SourceError):
    """429。呼び出し側は retry_after 秒ほど待つべき。"""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class SourceMalformed(SourceError):
    """応答が想定した形をしていない。ルーティング上は「空」と同じ扱い。"""


class SourceEmpty(SourceError):
    """
    呼び出しは成功したが 0 件。

    fetch() は空リストを返すだけでこれを投げない。
    fetch_required() のように「空」を分岐として扱いたい場合のみ使う。
    """


# ----------------------------------------------------------------------
#  正規化
# ----------------------------------------------------------------------
class NormalizationFailure(ExamQuizError):
    """生レコードを正規 Question にできなかった。永続化してはならない。"""


# ----------------------------------------------------------------------
#  ストア
# ----------------------------------------------------------------------
class StoreError(ExamQuizError):
    pass


class StoreDuplicate(StoreError):
    """重複キー衝突。パイプライン失敗ではなく「スキップ」の合図。"""

    def __init__(self, message: str, existing_id: Optional[str] = None):
        super().__init__(message)
        self.existing_id = existing_id


class StoreWriteFailure(StoreError):
    pass


# ----------------------------------------------------------------------
#  生成
# ----------------------------------------------------------------------
class GenerationFailure(ExamQuizError):
    """生成呼び出しの失敗、または構造的に不正な生成結果。"""


# ----------------------------------------------------------------------
#  終端エラー（呼び出し元へ伝播する）
# ----------------------------------------------------------------------
class NoQuestionsAvailable(ExamQuizError):
    """全ティアを使い切っても 1 問も得られなかった。"""


class NoTemplateAvailable(NoQuestionsAvailable):
    """生成ティアが必要だが、テンプレートにできる問題が 1 つも存在しない。"""


class UnsupportedSelection(ExamQuizError, ValueError):
    """対応外の科目・試験種別、または不正な出題数。"""
