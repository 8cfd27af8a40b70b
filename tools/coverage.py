"""
tools/coverage.py
===========================

ALOC API に、指定した科目・試験種別の問題がどの年に存在するかを調べるスクリプト。

例:
    python tools/coverage.py Mathematics JAMB --start-year 2010 --end-year 2024
"""

from __future__ import annotations

import argparse
import json
from typing import List, Optional

from exam_quiz.config import EXAM_TYPES, SUBJECTS, AppConfig, setup_logging
from exam_quiz.coverage import CoverageReport
from exam_quiz.service import QuestionService


def print_report(report: CoverageReport) -> None:
    print(f"{report.subject} / {report.exam_type}")
    for year, ok in sorted(report.years.items()):
        print(f"  {year}: {'○' if ok else '×'}")
    available = ", ".join(map(str, report.available_years)) or "なし"
    print(f"問題がある年: {available}")
    print(f"カバー率: {report.coverage_percent:.1f}% ({len(report.available_years)}/{len(report.years)})")


def main(argv: Optional[List[str]] = None) -> None:
    cfg = AppConfig()
    setup_logging(cfg.log_level)

    parser = argparse.ArgumentParser(
        description="ALOC API の年ごとの問題の有無を調べるスクリプト",
    )
    parser.add_argument("subject", choices=SUBJECTS, help="科目")
    parser.add_argument("exam_type", choices=EXAM_TYPES, help="試験種別")
    parser.add_argument("--start-year", type=int, default=cfg.backfill_start_year)
    parser.add_argument("--end-year", type=int, default=cfg.backfill_end_year)
    parser.add_argument("--json", action="store_true", help="結果を JSON で出力する")
    args = parser.parse_args(argv)

    if args.start_year > args.end_year:
        raise SystemExit("--start-year は --end-year 以下にしてください。")

    service = QuestionService.from_config(cfg)
    report = service.coverage_report(args.subject, args.exam_type, args.start_year, args.end_year)

    if args.json:
        print(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
    else:
        print_report(report)


if __name__ == "__main__":
    main()
