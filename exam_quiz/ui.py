"""
ui.py
======================

Streamlit ベースの管理コンソール用 UI コンポーネント。

責務:
- ヘッダー（バンク件数・外部 API / 生成の有効状態・レートメーター）
- 問題プレビューの描画（問題文・選択肢・正解・出どころ）
- カバレッジ結果 / バックフィル結果の表

ここでは「見た目」だけを扱い、取得や保存などの処理は app.py 側から service を呼ぶ。
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import pandas as pd
import streamlit as st

from .models import OPTION_LETTERS, Question

# ----------------------------------------------------------------------
#  スタイル
# ----------------------------------------------------------------------
THEME: Dict[str, str] = {
    "bg": "#ffffff",
    "text": "#1c1c1e",
    "surface": "#f2f2f7",
    "border": "#d1d1d6",
    "primary": "#007aff",
    "correct": "#34c759",
    "warning": "#ff9500",
}

PROVENANCE_LABELS = {
    "external": "ALOC",
    "generated": "生成",
    "seed-fixture": "初期問題",
}


def _generate_css(theme: Dict[str, str]) -> str:
    return f"""
    <style>
    .eq-header {{
        display: flex;
        flex-wrap: wrap;
        gap: 0.3rem;
        font-size: 0.8rem;
        margin-bottom: 0.5rem;
    }}

    .eq-tag {{
        padding: 0.1rem 0.5rem;
        border-radius: 999px;
        background: {theme['surface']};
        border: 1px solid {theme['border']};
    }}

    .eq-rate {{
        display: flex;
        align-items: center;
        gap: 0.5rem;
        font-size: 0.75rem;
    }}

    .eq-rate-bar {{
        flex: 1;
        height: 8px;
        background: {theme['border']}55;
        border-radius: 4px;
        overflow: hidden;
    }}

    .eq-rate-fill {{
        height: 8px;
        border-radius: 4px;
    }}

    .eq-question-box {{
        background: {theme['bg']};
        padding: 0.9rem;
        border-radius: 12px;
        border: 1px solid {theme['border']};
        line-height: 1.6;
        margin: 0.5rem 0;
    }}

    .eq-option {{
        padding: 0.2rem 0.5rem;
    }}

    .eq-option-correct {{
        background: {theme['correct']}22;
        border-left: 3px solid {theme['correct']};
    }}
    </style>
    """


def inject_css() -> None:
    st.markdown(_generate_css(THEME), unsafe_allow_html=True)


# ----------------------------------------------------------------------
#  ヘッダー
# ----------------------------------------------------------------------
def render_header(status: Dict[str, Any]) -> None:
    """QuestionService.status() の内容を 1 行のタグとメーターで表示する。"""
    tags = [
        f"問題バンク {status.get('bank_size', 0)} 問",
        "ALOC: 有効" if status.get("source_configured") else "ALOC: トークンなし",
        "生成: 有効" if status.get("generation_enabled") else "生成: 無効",
    ]
    if status.get("skipped_lines"):
        tags.append(f"破損行 {status['skipped_lines']}")

    st.markdown(
        "<div class='eq-header'>"
        + "".join(f"<span class='eq-tag'>{t}</span>" for t in tags)
        + "</div>",
        unsafe_allow_html=True,
    )

    rate = status.get("rate_limit")
    if rate:
        _render_rate_meter(THEME, rate)


def _render_rate_meter(theme: Dict[str, str], rate: Dict[str, Any]) -> None:
    """429 後の待機時間をメーターで表示する。待機していなければ満タン。"""
    cooldown = float(rate.get("cooldown_remaining") or 0.0)
    per_minute = float(rate.get("rate_per_minute") or 0.0)

    if cooldown > 0:
        percent = max(100 - int(cooldown / 60.0 * 100), 0)
        color = theme["warning"]
        label = f"429 待機中 残り {cooldown:.0f} 秒"
    else:
        percent = 100
        color = theme["primary"]
        label = f"ALOC {per_minute:.0f} 回/分・累計 {rate.get('total_calls', 0)} 回"

    if rate.get("last_429_at"):
        label += f"・最終 429: {rate['last_429_at']}"

    st.markdown(
        "<div class='eq-rate'>"
        f"<div>{label}</div>"
        "<div class='eq-rate-bar'>"
        f"<div class='eq-rate-fill' style='width:{percent}%; background:{color}'></div>"
        "</div>"
        "</div>",
        unsafe_allow_html=True,
    )


# ----------------------------------------------------------------------
#  問題プレビュー
# ----------------------------------------------------------------------
def render_question_block(q: Question, index: Optional[int] = None) -> None:
    title = f"Q{index}. " if index is not None else ""
    source = PROVENANCE_LABELS.get(q.provenance, q.provenance)
    st.markdown(
        f"**{title}{q.subject} / {q.exam_type}** "
        f"<span class='eq-tag'>{q.topic}</span> "
        f"<span class='eq-tag'>{q.difficulty}</span> "
        f"<span class='eq-tag'>{source}</span>"
        + (f" <span class='eq-tag'>{q.year}</span>" if q.year else ""),
        unsafe_allow_html=True,
    )
    st.markdown(f"<div class='eq-question-box'>{q.question}</div>", unsafe_allow_html=True)

    for letter in OPTION_LETTERS:
        css = "eq-option eq-option-correct" if letter == q.answer else "eq-option"
        st.markdown(
            f"<div class='{css}'>{letter}) {q.options.get(letter, '')}</div>",
            unsafe_allow_html=True,
        )

    with st.expander("解説"):
        st.write(q.explanation)
        st.caption(f"id: {q.id}")


# ----------------------------------------------------------------------
#  表
# ----------------------------------------------------------------------
def acquisition_summary_frame(by_tier: Dict[str, int]) -> pd.DataFrame:
    rows = [{"ティア": tier, "問題数": count} for tier, count in by_tier.items()]
    return pd.DataFrame(rows)


def coverage_frame(years: Dict[Any, bool]) -> pd.DataFrame:
    rows = [{"年": int(y), "問題あり": bool(ok)} for y, ok in years.items()]
    return pd.DataFrame(rows).sort_values("年") if rows else pd.DataFrame(rows)


def backfill_frame(report: Dict[str, Any]) -> pd.DataFrame:
    """BackfillReport.to_dict() の科目 × 試験種別の統計を 1 行ずつの表にする。"""
    rows: List[Dict[str, Any]] = []
    for subject, pairs in (report.get("subjects") or {}).items():
        for exam_type, stats in pairs.items():
            rows.append(
                {
                    "科目": subject,
                    "試験": exam_type,
                    "成功/試行": f"{stats.get('successful', 0)}/{stats.get('attempted', 0)}",
                    "取得": stats.get("fetched", 0),
                    "追加": stats.get("inserted", 0),
                    "重複": stats.get("duplicates", 0),
                    "エラー": len(stats.get("errors", [])),
                }
            )
    return pd.DataFrame(rows)


def render_backfill_report(report: Dict[str, Any]) -> None:
    col1, col2, col3 = st.columns(3)
    col1.metric("試行", report.get("attempted", 0))
    col2.metric("成功率", f"{report.get('success_rate', 0.0) * 100:.1f}%")
    col3.metric("追加", report.get("total_inserted", 0))

    if report.get("cancelled"):
        st.warning("途中でキャンセルされました（ここまでの結果）。")

    df = backfill_frame(report)
    if not df.empty:
        st.dataframe(df, use_container_width=True)

    errors = report.get("errors") or []
    if errors:
        with st.expander(f"エラー一覧（{len(errors)} 件）"):
            st.dataframe(pd.DataFrame(errors), use_container_width=True)
