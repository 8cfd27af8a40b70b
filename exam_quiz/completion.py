"""
completion.py
======================

テンプレート問題 1 問から、同じ科目・試験種別・トピック・難易度の新しい問題を 1 問生成する。

- 1 呼び出し = 1 問。内部で再試行はしない（回数と上限は Orchestrator が決める）
- 生成に失敗した場合、または結果が構造的に不正な場合（選択肢の欠け・正解が曖昧）は
  黙って劣化させず GenerationFailure を投げる
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Protocol

from .errors import GenerationFailure
from .models import OPTION_LETTERS, PROVENANCE_GENERATED, Question

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class TextGenerator(Protocol):
    """ModelManager と同じ形の生成器。"""

    def generate(self, prompt: str) -> str:
        ...


# -------------------------------------------------------------
#  プロンプト
# -------------------------------------------------------------
def build_prompt(template: Question) -> str:
    """
    テンプレートと同じ形式・トピック・難易度の四択問題を 1 問だけ作らせる。
    """
    options = "\n".join(f"{k}) {template.options.get(k, '')}" for k in OPTION_LETTERS)
    return f"""
You are an expert setter of Nigerian {template.exam_type} past questions in {template.subject}.

Write ONE new multiple-choice question that tests the same topic at the same difficulty
as the example below. Do not copy the example.

# Example
- Topic: {template.topic}
- Difficulty: {template.difficulty}
- Question: {template.question}
{options}
- Correct answer: {template.answer}

# Output rules
- Exactly four options labelled A, B, C, D. Exactly one of them is correct.
- Output a single JSON object and nothing else:

{{
  "question": "question text",
  "options": {{"A": "...", "B": "...", "C": "...", "D": "..."}},
  "answer": "A|B|C|D",
  "explanation": "why the answer is correct"
}}
"""


# -------------------------------------------------------------
#  応答の解釈
# -------------------------------------------------------------
def parse_generation(text: str) -> Dict[str, Any]:
    """
    生成テキストを {"question", "options", "answer", "explanation"} に解釈する。
    構造的に不正なら GenerationFailure。
    """
    cleaned = _FENCE.sub("", (text or "").strip())
    try:
        data = json.loads(cleaned)
    except ValueError as e:
        raise GenerationFailure(f"生成結果が JSON ではありません: {e}") from e
    if not isinstance(data, dict):
        raise GenerationFailure("生成結果が JSON オブジェクトではありません。")

    question = str(data.get("question") or "").strip()
    if not question:
        raise GenerationFailure("生成結果に問題文がありません。")

    raw_options = data.get("options")
    if isinstance(raw_options, list) and len(raw_options) == 4:
        raw_options = dict(zip(OPTION_LETTERS, raw_options))
    if not isinstance(raw_options, dict):
        raise GenerationFailure("生成結果の options が不正です。")
    options = {str(k).strip().upper(): str(v).strip() for k, v in raw_options.items() if v is not None}
    missing = [k for k in OPTION_LETTERS if not options.get(k)]
    if missing or len(options) != 4:
        raise GenerationFailure(f"生成結果の選択肢が欠けています: {missing or sorted(options)}")

    answer = str(data.get("answer") or "").strip().upper()
    if answer not in OPTION_LETTERS:
        raise GenerationFailure(f"生成結果の正解が曖昧です: {answer!r}")
    correct_text = options[answer].lower()
    if sum(1 for v in options.values() if v.lower() == correct_text) > 1:
        raise GenerationFailure("正解と同じ文言の選択肢が複数あります。")

    return {
        "question": question,
        "options": options,
        "answer": answer,
        "explanation": str(data.get("explanation") or "").strip(),
    }


# -------------------------------------------------------------
#  CompletionService
# -------------------------------------------------------------
class CompletionService:
    """ステートレス。generator だけを保持する。"""

    def __init__(self, generator: TextGenerator):
        self.generator = generator

    def complete(self, template: Question) -> Question:
        prompt = build_prompt(template)
        try:
            text = self.generator.generate(prompt)
        except GenerationFailure:
            raise
        except Exception as e:
            # 生成器側の想定外の例外も「1 問減る」扱いにするため変換する
            raise GenerationFailure(f"生成呼び出しに失敗しました: {e}") from e

        data = parse_generation(text)
        question = Question(
            subject=template.subject,
            exam_type=template.exam_type,
            question=data["question"],
            options=data["options"],
            answer=data["answer"],
            topic=template.topic,
            difficulty=template.difficulty,
            explanation=data["explanation"] or f"The correct answer is {data['answer']}.",
            year=datetime.now(timezone.utc).year,
            provenance=PROVENANCE_GENERATED,
            template_ref={
                "id": template.id,
                "topic": template.topic,
                "difficulty": template.difficulty,
            },
        )
        try:
            question.validate()
        except ValueError as e:
            raise GenerationFailure(str(e)) from e
        return question
