"""
app.py
======================

過去問取得パイプラインの管理コンソール（Streamlit）エントリーポイント。

ページ:
- 出題プレビュー: 出題リクエストを試し、どのティアから何問来たかを見る
- カバレッジ:     科目 × 試験種別ごとに、ALOC に問題がある年を調べる
- バックフィル:   年の範囲を指定して問題バンクへ一括取り込み
- 状態:           問題バンク・レート制限・出題カウンタ

前提:
- 環境変数 ALOC_ACCESS_TOKEN が設定されていれば外部ティアが有効
- 環境変数 GEMINI_API_KEY が設定されていれば生成ティアが有効
- bank/ 以下のファイルは無ければ自動で作られる
"""

from __future__ import annotations

from datetime import datetime, timezone

import pandas as pd
import streamlit as st

from exam_quiz.config import DIFFICULTIES, AppConfig, setup_logging
from exam_quiz.errors import NoQuestionsAvailable, UnsupportedSelection
from exam_quiz.normalizer import TOPIC_KEYWORDS
from exam_quiz.service import QuestionService
from exam_quiz.ui import (
    acquisition_summary_frame,
    coverage_frame,
    inject_css,
    render_backfill_report,
    render_header,
    render_question_block,
)

PAGES = {
    "preview": "🎯 出題プレビュー",
    "coverage": "🗓 カバレッジ",
    "backfill": "📥 バックフィル",
    "status": "📊 状態",
}


# ----------------------------------------------------------------------
#  セッションに保持する部品
# ----------------------------------------------------------------------
def get_service() -> QuestionService:
    """QuestionService をセッションに保持して返す。"""
    if "service" not in st.session_state:
        cfg = AppConfig()
        setup_logging(cfg.log_level)
        service = QuestionService.from_config(cfg)
        service.seed_initial_questions()
        st.session_state["service"] = service
    return st.session_state["service"]  # type: ignore[return-value]


def get_seen_ids() -> set:
    """プレビューで既に出した問題の id（同じセッション内で重複させない）。"""
    return st.session_state.setdefault("seen_ids", set())


def _year_range(cfg: AppConfig, key: str):
    this_year = datetime.now(timezone.utc).year
    return st.slider(
        "年の範囲",
        min_value=2000,
        max_value=this_year,
        value=(cfg.backfill_start_year, min(cfg.backfill_end_year, this_year)),
        key=key,
    )


# ----------------------------------------------------------------------
#  ページ: 出題プレビュー
# ----------------------------------------------------------------------
def render_preview_page(service: QuestionService) -> None:
    cfg = service.cfg
    st.markdown("## 🎯 出題プレビュー")

    col1, col2 = st.columns(2)
    with col1:
        subject = st.selectbox("科目", cfg.subjects)
        count = st.number_input("問題数", min_value=1, max_value=100, value=20)
    with col2:
        exam_type = st.selectbox("試験", cfg.exam_types)
        difficulty = st.selectbox("難易度", ("指定なし",) + DIFFICULTIES)

    topic_choices = [topic for topic, _ in TOPIC_KEYWORDS.get(subject, [])] + ["General"]
    topics = st.multiselect("トピック（任意）", topic_choices)
    exclude_seen = st.checkbox("このセッションで出した問題を除外する", value=True)

    if st.button("問題を取得", use_container_width=True):
        seen = get_seen_ids()
        try:
            with st.spinner("取得中..."):
                result = service.acquire_with_report(
                    subject,
                    exam_type,
                    int(count),
                    difficulty=None if difficulty == "指定なし" else difficulty,
                    topics=topics or None,
                    exclude_ids=seen if exclude_seen else None,
                )
        except NoQuestionsAvailable as e:
            st.error(f"この条件で出題できる問題がありません: {e}")
            return
        except UnsupportedSelection as e:
            st.error(str(e))
            return

        seen.update(q.id for q in result.questions)
        if result.shortfall:
            st.info(f"{result.requested} 問中 {len(result.questions)} 問を用意しました。")
        st.dataframe(acquisition_summary_frame(result.by_tier), use_container_width=True)

        for i, q in enumerate(result.questions, start=1):
            render_question_block(q, index=i)


# ----------------------------------------------------------------------
#  ページ: カバレッジ
# ----------------------------------------------------------------------
def render_coverage_page(service: QuestionService) -> None:
    cfg = service.cfg
    st.markdown("## 🗓 カバレッジ")

    col1, col2 = st.columns(2)
    with col1:
        subject = st.selectbox("科目", cfg.subjects, key="cov_subject")
    with col2:
        exam_type = st.selectbox("試験", cfg.exam_types, key="cov_exam")
    start_year, end_year = _year_range(cfg, "cov_years")

    if st.button("調べる", use_container_width=True):
        with st.spinner("ALOC に問い合わせ中..."):
            report = service.coverage_report(subject, exam_type, start_year, end_year)
        st.metric("カバー率", f"{report.coverage_percent:.1f}%")
        st.write("問題がある年: " + (", ".join(map(str, report.available_years)) or "なし"))
        st.dataframe(coverage_frame(report.years), use_container_width=True)
        return

    last = service.meta.get_coverage(subject, exam_type)
    if last:
        st.caption(f"前回の結果（{last.get('checked_at')}）")
        st.metric("カバー率", f"{last.get('coverage_percent', 0.0):.1f}%")
        st.dataframe(coverage_frame(last.get("years", {})), use_container_width=True)


# ----------------------------------------------------------------------
#  ページ: バックフィル
# ----------------------------------------------------------------------
def render_backfill_page(service: QuestionService) -> None:
    cfg = service.cfg
    st.markdown("## 📥 バックフィル")
    st.caption(
        f"1 年あたり {cfg.backfill_questions_per_year} 問・"
        f"年ごとに {cfg.backfill_year_delay:.0f} 秒、組み合わせごとに {cfg.backfill_pair_delay:.0f} 秒待ちます。"
    )

    start_year, end_year = _year_range(cfg, "bf_years")
    dry_run = st.checkbox("dry-run（バンクに書き込まない）")

    if not cfg.has_source_credentials:
        st.warning("ALOC_ACCESS_TOKEN が設定されていないため、すべての呼び出しが失敗します。")

    if st.button("実行", use_container_width=True):
        scheduler = service.make_backfill_scheduler()
        total = scheduler.units(start_year, end_year)
        bar = st.progress(0.0)
        done = {"n": 0}

        def on_progress(subject: str, exam_type: str, year: int) -> None:
            done["n"] += 1
            bar.progress(min(done["n"] / total, 1.0), text=f"{subject} {exam_type} {year}")

        report = service.run_backfill(
            start_year, end_year, scheduler=scheduler, progress=on_progress, dry_run=dry_run
        )
        render_backfill_report(report.to_dict())
        return

    last = service.meta.meta.get("last_backfill")
    if last:
        st.caption(f"前回の実行（{last.get('started_at')} 〜 {last.get('finished_at')}）")
        render_backfill_report(last)


# ----------------------------------------------------------------------
#  ページ: 状態
# ----------------------------------------------------------------------
def render_status_page(service: QuestionService) -> None:
    meta = service.meta.meta
    st.markdown("## 📊 状態")

    usage = meta.get("usage", {})
    st.write(f"- 累計出題数: **{usage.get('total_questions', 0)} 問**")
    st.write(f"- ALOC から: **{usage.get('external_questions', 0)} 問**")
    st.write(f"- 問題バンクから: **{usage.get('store_questions', 0)} 問**")
    st.write(f"- 生成: **{usage.get('generated_questions', 0)} 問**")

    st.write("---")
    st.markdown("### 科目ごとの出題数")
    subject_stats = meta.get("subject_stats", {})
    if not subject_stats:
        st.info("まだ出題統計はありません。")
    else:
        rows = [
            {
                "科目": subject,
                "合計": stat.get("total_questions", 0),
                "ALOC": stat.get("external_questions", 0),
                "バンク": stat.get("store_questions", 0),
                "生成": stat.get("generated_questions", 0),
            }
            for subject, stat in subject_stats.items()
            if isinstance(stat, dict)
        ]
        df = pd.DataFrame(rows).sort_values("合計", ascending=False)
        st.dataframe(df, use_container_width=True)

    st.write("---")
    st.markdown("### 問題バンク")
    bank = service.bank
    rows = [
        {"科目": s, "試験": e, "問題数": bank.count_by(s, e)}
        for s in service.cfg.subjects
        for e in service.cfg.exam_types
    ]
    st.dataframe(pd.DataFrame(rows), use_container_width=True)

    st.write("---")
    st.markdown("### レート制限")
    st.json(meta.get("rate_limit", {}))


# ----------------------------------------------------------------------
#  メイン
# ----------------------------------------------------------------------
def main() -> None:
    st.set_page_config(
        page_title="Exam-Quiz Admin",
        page_icon="🧠",
        layout="centered",
    )
    inject_css()

    service = get_service()
    render_header(service.status())

    page = st.sidebar.radio(
        "メニュー",
        list(PAGES),
        format_func=lambda k: PAGES[k],
    )

    if page == "coverage":
        render_coverage_page(service)
    elif page == "backfill":
        render_backfill_page(service)
    elif page == "status":
        render_status_page(service)
    else:
        render_preview_page(service)


if __name__ == "__main__":
    main()
