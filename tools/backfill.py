"""
tools/backfill.py
===========================

ALOC API を 科目 × 試験種別 × 年 で巡回し、
bank/question_bank.jsonl に問題をまとめて取り込むスクリプト。

主な役割:
- config.toml / 環境変数から AppConfig を組み立てる
- BackfillScheduler を実行し、科目・試験種別ごとの結果を表示する
- 結果を bank/meta.json の last_backfill に保存する（--dry-run 以外）

Ctrl-C で中断した場合も、それまでの結果を表示・保存する。

前提:
- 環境変数 ALOC_ACCESS_TOKEN に ALOC API のトークンが設定されている
"""

from __future__ import annotations

import argparse
import json
import signal
import threading
from typing import List, Optional

from exam_quiz.backfill import BackfillReport
from exam_quiz.config import AppConfig, setup_logging
from exam_quiz.service import QuestionService


# -------------------------------------------------------------
#  結果表示
# -------------------------------------------------------------
def print_report(report: BackfillReport) -> None:
    data = report.to_dict()
    if report.cancelled:
        print("[CANCELLED] 途中までの結果です。")
    if report.dry_run:
        print("[DRY RUN] 問題バンクには書き込んでいません。")

    print(f"期間: {report.start_year}〜{report.end_year}")
    for subject, pairs in report.subjects.items():
        print(f"{subject}:")
        for exam_type, stats in pairs.items():
            print(
                f"  {exam_type:<5} 成功 {stats.successful}/{stats.attempted}"
                f"  取得 {stats.fetched}  追加 {stats.inserted}"
                f"  重複 {stats.duplicates}  エラー {len(stats.errors)}"
            )

    print(
        f"合計: 試行 {data['attempted']} / 成功 {data['successful']} / 失敗 {data['failed']}"
        f" / エラー {data['error_count']} / 成功率 {data['success_rate'] * 100:.1f}%"
    )


# -------------------------------------------------------------
#  メイン処理
# -------------------------------------------------------------
def run_backfill(
    cfg: AppConfig,
    start_year: int,
    end_year: int,
    per_year: Optional[int] = None,
    dry_run: bool = False,
    as_json: bool = False,
) -> BackfillReport:
    service = QuestionService.from_config(cfg)
    cancel_event = threading.Event()
    scheduler = service.make_backfill_scheduler(
        cancel_event=cancel_event, questions_per_year=per_year
    )

    # Ctrl-C で新しい呼び出しを止め、途中結果を返させる
    def _on_sigint(signum, frame):
        print("\n中断しています...")
        cancel_event.set()

    previous = signal.signal(signal.SIGINT, _on_sigint)
    try:
        report = service.run_backfill(start_year, end_year, scheduler=scheduler, dry_run=dry_run)
    finally:
        signal.signal(signal.SIGINT, previous)

    if as_json:
        print(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
    else:
        print_report(report)
    return report


# -------------------------------------------------------------
#  CLI エントリーポイント
# -------------------------------------------------------------
def build_parser(cfg: AppConfig) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="ALOC API から問題バンクへ過去問を一括取り込みするスクリプト",
    )
    parser.add_argument(
        "--start-year",
        type=int,
        default=cfg.backfill_start_year,
        help=f"開始年（デフォルト: {cfg.backfill_start_year}）",
    )
    parser.add_argument(
        "--end-year",
        type=int,
        default=cfg.backfill_end_year,
        help=f"終了年（デフォルト: {cfg.backfill_end_year}）",
    )
    parser.add_argument(
        "--per-year",
        type=int,
        default=None,
        help=f"1 年あたりの取得数（デフォルト: {cfg.backfill_questions_per_year}）",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="取得と正規化だけ行い、問題バンクと meta.json には書き込まない",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="結果を JSON で出力する",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    cfg = AppConfig()
    setup_logging(cfg.log_level)
    args = build_parser(cfg).parse_args(argv)

    if args.start_year > args.end_year:
        raise SystemExit("--start-year は --end-year 以下にしてください。")

    run_backfill(
        cfg,
        start_year=args.start_year,
        end_year=args.end_year,
        per_year=args.per_year,
        dry_run=args.dry_run,
        as_json=args.json,
    )


if __name__ == "__main__":
    main()
