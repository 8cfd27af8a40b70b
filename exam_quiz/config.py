"""
config.py
=========

問題取得パイプライン全体で利用する設定値を一元管理する。
外部問題バンク (ALOC)、Gemini API、ファイルパス、レート制限、
バックフィルの待ち時間などはすべてこのクラスを通じて取得する。

本ファイルは app.py と tools/*.py の共通設定でもある。

読み込み順:
1. dataclass のデフォルト値
2. ルートの config.toml（存在すれば上書き）
3. 環境変数 / .env の API キー
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
import json
import logging
import os

import toml


# ------------------------------------------------------------
# 基本パス定義
# ------------------------------------------------------------

ROOT_DIR = Path(__file__).resolve().parent.parent
BANK_DIR = ROOT_DIR / "bank"


# ------------------------------------------------------------
# 対応科目・試験種別（固定）
# ------------------------------------------------------------

SUBJECTS = ("Mathematics", "English", "Physics", "Chemistry", "Biology")
EXAM_TYPES = ("JAMB", "WAEC", "NECO")

# ALOC API 側のキー（小文字）
SUBJECT_MAPPING = {s: s.lower() for s in SUBJECTS}
EXAM_TYPE_MAPPING = {
    "JAMB": "utme",
    "WAEC": "wassce",
    "NECO": "neco",
}

DIFFICULTIES = ("easy", "medium", "hard")


# ------------------------------------------------------------
# AppConfig
# ------------------------------------------------------------

@dataclass
class AppConfig:
    """
    アプリ設定クラス。

    - APIキーの読み取り（ALOC / Gemini）
    - QuestionBank / Meta のパス
    - 外部 API の呼び出し制約（タイムアウト・1回あたり上限・レート）
    - 生成ティアの上限
    - バックフィルの待ち時間
    """

    # ---------- API ----------
    aloc_access_token: str = ""
    aloc_base_url: str = "https://questions.aloc.com.ng/api/v2"
    gemini_api_key: str = ""

    # ---------- ファイルパス ----------
    question_bank_path: Path = BANK_DIR / "question_bank.jsonl"
    meta_json_path: Path = BANK_DIR / "meta.json"
    config_toml_path: Path = ROOT_DIR / "config.toml"

    # ---------- 外部 API ----------
    source_timeout: float = 10.0
    source_batch_ceiling: int = 40
    rate_limit_per_minute: float = 20.0
    rate_limit_burst: int = 1

    # ---------- 取得ポリシー ----------
    recent_years_window: int = 3
    request_wait_budget: float = 3.0
    max_generations: int = 5
    generation_workers: int = 5

    # ---------- バックフィル ----------
    backfill_start_year: int = 2015
    backfill_end_year: int = 2025
    backfill_questions_per_year: int = 5
    backfill_year_delay: float = 3.0
    backfill_pair_delay: float = 5.0
    backfill_rate_limit_backoff: float = 30.0

    # ---------- モデルフェールオーバー設定 ----------
    model_failover_priority: List[str] = field(default_factory=list)

    # ---------- ログ ----------
    log_level: str = "INFO"

    # ============================================================
    # 初期化処理
    # ============================================================

    def __post_init__(self):
        self._apply_toml(self.read_toml(self.config_toml_path))

        # APIキーのロード（明示指定が優先）
        if not self.aloc_access_token:
            self.aloc_access_token = self._load_secret("ALOC_ACCESS_TOKEN")
        if not self.gemini_api_key:
            self.gemini_api_key = self._load_secret("GEMINI_API_KEY")

        if not self.model_failover_priority:
            self.model_failover_priority = [
                # 最新モデルは実行時に ModelManager が API から動的取得
                "latest",
                "gemini-1.5-flash",
                "gemini-1.5-pro",
            ]

    # ============================================================
    # 参照用プロパティ
    # ============================================================

    @property
    def subjects(self) -> tuple:
        return SUBJECTS

    @property
    def exam_types(self) -> tuple:
        return EXAM_TYPES

    @property
    def has_source_credentials(self) -> bool:
        return bool(self.aloc_access_token)

    @property
    def has_gemini(self) -> bool:
        return bool(self.gemini_api_key)

    # ============================================================
    # 内部関数
    # ============================================================

    def _load_secret(self, name: str) -> str:
        """
        環境変数 → ルートの .env の順に探す。
        見つからなければ空文字（その協調先は「利用不可」として扱う）。
        """
        value = os.environ.get(name)
        if value:
            return value

        env_path = ROOT_DIR / ".env"
        if env_path.exists():
            for line in env_path.read_text().splitlines():
                if line.startswith(f"{name}="):
                    return line.split("=", 1)[1].strip()

        return ""

    def _apply_toml(self, cfg: Dict[str, Any]) -> None:
        """config.toml のセクションを対応するフィールドへ反映する。"""
        sections = {
            "source": {
                "base_url": "aloc_base_url",
                "timeout": "source_timeout",
                "batch_ceiling": "source_batch_ceiling",
                "rate_limit_per_minute": "rate_limit_per_minute",
                "rate_limit_burst": "rate_limit_burst",
            },
            "acquisition": {
                "recent_years_window": "recent_years_window",
                "wait_budget": "request_wait_budget",
            },
            "generation": {
                "max_generations": "max_generations",
                "workers": "generation_workers",
                "model_failover_priority": "model_failover_priority",
            },
            "backfill": {
                "start_year": "backfill_start_year",
                "end_year": "backfill_end_year",
                "questions_per_year": "backfill_questions_per_year",
                "year_delay": "backfill_year_delay",
                "pair_delay": "backfill_pair_delay",
                "rate_limit_backoff": "backfill_rate_limit_backoff",
            },
            "logging": {
                "level": "log_level",
            },
        }
        for section, keys in sections.items():
            values = cfg.get(section)
            if not isinstance(values, dict):
                continue
            for key, attr in keys.items():
                if key in values:
                    setattr(self, attr, values[key])

    # ============================================================
    # TOML / JSON 読み取りユーティリティ
    # ============================================================

    @staticmethod
    def read_toml(path: Optional[Path]) -> Dict[str, Any]:
        if path is None or not Path(path).exists():
            return {}
        return toml.load(str(path))

    @staticmethod
    def read_json(path: Path):
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    @staticmethod
    def write_json(path: Path, data: dict):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")


# ------------------------------------------------------------
# ログ設定
# ------------------------------------------------------------

def setup_logging(level: str = "INFO") -> None:
    """CLI / Streamlit から 1 回だけ呼ぶ。"""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
