"""Score-banded feedback shown after a quiz submission."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Tuple


@dataclass(frozen=True)
class FeedbackDetail:
    title: str
    message: str
    encouragement: str


# (minimum score, title, message template, encouragement), highest band first
_BANDS: List[Tuple[int, str, str, str]] = [
    (
        90,
        "Excellent Work!",
        "You scored {correct} out of {total} correctly - that's exceptional!",
        "You're demonstrating mastery of this content. Your commitment to excellence shines through!",
    ),
    (
        75,
        "Great Job!",
        "You scored {correct} out of {total} correctly - well done!",
        "You're making excellent progress! Every question you got right shows your growing understanding.",
    ),
    (
        60,
        "Good Effort!",
        "You scored {correct} out of {total} correctly - keep going!",
        "You're on the right track! Each attempt helps you learn and improve.",
    ),
]


class FeedbackEngine:
    def generate_feedback(self, score: int, total_questions: int, correct_answers: int) -> FeedbackDetail:
        if score >= 100:
            return FeedbackDetail(
                title="Perfect Score!",
                message="Outstanding achievement! You've mastered this material completely!",
                encouragement="Your dedication to learning is truly stellar. Keep reaching for the stars!",
            )
        for minimum, title, template, encouragement in _BANDS:
            if score >= minimum:
                return FeedbackDetail(
                    title=title,
                    message=template.format(correct=correct_answers, total=total_questions),
                    encouragement=encouragement,
                )
        return FeedbackDetail(
            title="Keep Learning!",
            message=f"You scored {correct_answers} out of {total_questions} correctly.",
            encouragement=(
                "Every expert was once a beginner. Review the material and try again - "
                "you'll improve!"
            ),
        )
