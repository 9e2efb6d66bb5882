"""
Read-only exam definitions, answer collection and scoring.

Scoring runs once per session, when the session completes.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Option:
    id: str
    text: str
    is_correct: bool = False


@dataclass(frozen=True)
class Question:
    id: str
    text: str
    points: int
    options: Tuple[Option, ...]

    def option(self, option_id: str) -> Optional[Option]:
        for option in self.options:
            if option.id == option_id:
                return option
        return None


@dataclass(frozen=True)
class ExamDefinition:
    id: str
    title: str
    duration_seconds: int
    questions: Tuple[Question, ...]

    def question(self, question_id: str) -> Optional[Question]:
        for question in self.questions:
            if question.id == question_id:
                return question
        return None

    def to_dict(self, include_answers: bool = False) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "duration": self.duration_seconds,
            "questions": [
                {
                    "id": question.id,
                    "text": question.text,
                    "points": question.points,
                    "options": [
                        dict(
                            {"id": option.id, "text": option.text},
                            **({"isCorrect": option.is_correct} if include_answers else {}),
                        )
                        for option in question.options
                    ],
                }
                for question in self.questions
            ],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExamDefinition":
        questions = []
        for q_idx, raw_question in enumerate(data.get("questions", []), start=1):
            question_id = str(raw_question.get("id", f"q{q_idx}"))
            options = tuple(
                Option(
                    id=str(raw_option.get("id", f"{question_id}-o{o_idx}")),
                    text=str(raw_option["text"]),
                    is_correct=bool(
                        raw_option.get("isCorrect", raw_option.get("is_correct", False))
                    ),
                )
                for o_idx, raw_option in enumerate(raw_question.get("options", []), start=1)
            )
            questions.append(
                Question(
                    id=question_id,
                    text=str(raw_question["text"]),
                    points=int(raw_question.get("points", 1)),
                    options=options,
                )
            )
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", data["id"])),
            duration_seconds=int(data.get("duration", 3600)),
            questions=tuple(questions),
        )


SAMPLE_EXAM: Dict[str, Any] = {
    "id": "sample-cs",
    "title": "Advanced Computer Science",
    "duration": 7200,
    "questions": [
        {
            "id": "q1",
            "text": "What is the time complexity of quicksort in the worst case?",
            "points": 2,
            "options": [
                {"id": "q1-a", "text": "O(n)"},
                {"id": "q1-b", "text": "O(n log n)"},
                {"id": "q1-c", "text": "O(n^2)", "isCorrect": True},
                {"id": "q1-d", "text": "O(n!)"},
            ],
        },
        {
            "id": "q2",
            "text": "Which data structure is most efficient for a priority queue?",
            "points": 2,
            "options": [
                {"id": "q2-a", "text": "Array"},
                {"id": "q2-b", "text": "Linked list"},
                {"id": "q2-c", "text": "Binary search tree"},
                {"id": "q2-d", "text": "Heap", "isCorrect": True},
            ],
        },
        {
            "id": "q3",
            "text": "What does [n * 2 for n in [1, 2, 3, 4, 5] if n % 2 == 0] evaluate to?",
            "points": 3,
            "options": [
                {"id": "q3-a", "text": "[2, 4, 6, 8, 10]"},
                {"id": "q3-b", "text": "[4, 8]", "isCorrect": True},
                {"id": "q3-c", "text": "[2, 4]"},
                {"id": "q3-d", "text": "[1, 3, 5]"},
            ],
        },
    ],
}


class ExamCatalog:
    """
    Exam definitions keyed by id, loaded once and never modified.
    """

    def __init__(self, exams: Mapping[str, ExamDefinition]) -> None:
        self._exams = dict(exams)

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "ExamCatalog":
        """
        Load a JSON list (or single object) of exams; fall back to the
        bundled sample exam.
        """
        if path is None:
            raw: Any = [SAMPLE_EXAM]
        else:
            with Path(path).open("r", encoding="utf-8") as handle:
                raw = json.load(handle)
            if isinstance(raw, Mapping):
                raw = [raw]
        exams = {}
        for item in raw:
            exam = ExamDefinition.from_dict(item)
            exams[exam.id] = exam
        LOGGER.info("Exam catalog ready with %d exam(s)", len(exams))
        return cls(exams)

    def get(self, exam_id: str) -> Optional[ExamDefinition]:
        return self._exams.get(exam_id)

    def all(self) -> List[ExamDefinition]:
        return list(self._exams.values())


class AnswerSheet:
    """
    Selected option per question per session. Re-answering replaces.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._answers: Dict[str, Dict[str, str]] = {}

    def submit(self, session_id: str, question_id: str, option_id: str) -> None:
        with self._lock:
            self._answers.setdefault(session_id, {})[question_id] = option_id

    def answers(self, session_id: str) -> Dict[str, str]:
        with self._lock:
            return dict(self._answers.get(session_id, {}))


@dataclass(frozen=True)
class ScoreResult:
    score: int
    total_points: int
    percentage: int


def score_answers(exam: ExamDefinition, answers: Mapping[str, str]) -> ScoreResult:
    """
    Sum points for correctly answered questions over the answered ones.
    """
    score = 0
    total_points = 0
    for question_id, option_id in answers.items():
        question = exam.question(question_id)
        if question is None:
            LOGGER.warning("Ignoring answer for unknown question %s", question_id)
            continue
        total_points += question.points
        option = question.option(option_id)
        if option is not None and option.is_correct:
            score += question.points
    percentage = 0
    if total_points:
        # Halves round up, so 62.5 reports as 63.
        percentage = (score * 200 + total_points) // (2 * total_points)
    return ScoreResult(score=score, total_points=total_points, percentage=percentage)
