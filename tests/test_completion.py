import json

import pytest

from conftest import make_question
from exam_quiz.completion import CompletionService, build_prompt, parse_generation
from exam_quiz.errors import GenerationFailure


class ScriptedGenerator:
    def __init__(self, reply):
        self.reply = reply
        self.prompts = []

    def generate(self, prompt):
        self.prompts.append(prompt)
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply


GOOD = {
    "question": "Find log 27 given log 3 = 0.4771",
    "options": {"A": "1.4313", "B": "1.4771", "C": "0.9542", "D": "1.9084"},
    "answer": "a",
    "explanation": "3 log 3",
}


def test_complete_keeps_template_context():
    template = make_question(topic="Logarithms", difficulty="hard", id="tpl-1")
    generator = ScriptedGenerator("```json\n" + json.dumps(GOOD) + "\n```")

    q = CompletionService(generator).complete(template)

    assert (q.subject, q.exam_type, q.topic, q.difficulty) == ("Mathematics", "JAMB", "Logarithms", "hard")
    assert q.answer == "A"
    assert q.provenance == "generated"
    assert q.template_ref == {"id": "tpl-1", "topic": "Logarithms", "difficulty": "hard"}
    assert q.id is None
    assert "Logarithms" in generator.prompts[0]


def test_options_may_come_as_a_list():
    data = dict(GOOD, options=["1", "2", "3", "4"])
    assert parse_generation(json.dumps(data))["options"] == {"A": "1", "B": "2", "C": "3", "D": "4"}


@pytest.mark.parametrize(
    "data",
    [
        dict(GOOD, options={"A": "1", "B": "2", "C": "3"}),
        dict(GOOD, options={"A": "1", "B": "2", "C": "3", "D": ""}),
        dict(GOOD, answer="E"),
        dict(GOOD, answer="A or B"),
        dict(GOOD, options={"A": "same", "B": "Same", "C": "3", "D": "4"}),
        dict(GOOD, question=""),
    ],
)
def test_structurally_invalid_output_is_a_failure(data):
    with pytest.raises(GenerationFailure):
        CompletionService(ScriptedGenerator(json.dumps(data))).complete(make_question())


def test_non_json_output_is_a_failure():
    with pytest.raises(GenerationFailure):
        CompletionService(ScriptedGenerator("Sure! Here is a question...")).complete(make_question())


def test_generator_errors_become_generation_failures():
    with pytest.raises(GenerationFailure):
        CompletionService(ScriptedGenerator(RuntimeError("boom"))).complete(make_question())


def test_prompt_includes_the_example():
    template = make_question(text="What is the unit of force?", subject="Physics", topic="Forces")
    prompt = build_prompt(template)
    assert "What is the unit of force?" in prompt
    assert "Physics" in prompt
    assert "Forces" in prompt
