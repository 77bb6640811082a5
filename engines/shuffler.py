"""Reproducible per-attempt question and option order.

The permutation shown to a learner is never stored. Scoring regenerates it
from ``(user_id, attempt_number, quiz_id)``, so the same inputs must always
yield the same order. Each shuffle uses its own :class:`random.Random`
instance and never touches the module-level generator.
"""

from __future__ import annotations

import hashlib
import random
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, TypeVar

from engines.normalizer import ByIndex, ById, CorrectAnswer, Option, Question

_T = TypeVar("_T")


@dataclass(frozen=True)
class ShuffledQuestion:
    """A question as presented for one attempt.

    ``correct_answer`` is re-resolved against the shuffled ``options``: an
    index reference points at the new position of the same logical option.
    ``correct_option`` is that option itself, or ``None`` when the stored
    reference matches nothing.
    """

    id: str
    type: str
    prompt: str
    options: Tuple[Option, ...]
    correct_answer: CorrectAnswer
    correct_option: Optional[Option]
    points: float
    explanation: Optional[str]


def _digest_int(text: str) -> int:
    return int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "big")


def derive_seed(user_id: str, attempt_number: int, quiz_id: str) -> int:
    """Stable 64-bit seed for one user's attempt at one quiz."""

    return _digest_int(f"{user_id}:{int(attempt_number)}:{quiz_id}")


def option_seed(seed: int, question_id: str) -> int:
    return _digest_int(f"{seed}:{question_id}")


def seeded_shuffle(items: Sequence[_T], rng: random.Random) -> List[_T]:
    """Fisher-Yates driven by ``rng.random()``, whose output per seed is stable across Python releases."""

    shuffled = list(items)
    for i in range(len(shuffled) - 1, 0, -1):
        j = int(rng.random() * (i + 1))
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def _resolve_correct(
    question: Question, indexed: Sequence[Tuple[int, Option]]
) -> Tuple[CorrectAnswer, Optional[Option]]:
    reference = question.correct_answer
    if isinstance(reference, ByIndex):
        for new_index, (original_index, option) in enumerate(indexed):
            if original_index == reference.index:
                return ByIndex(new_index), option
        return reference, None

    options = [option for _, option in indexed]
    if isinstance(reference, ById):
        match = next((opt for opt in options if opt.id == reference.value), None)
        if match is None:
            match = next((opt for opt in options if opt.is_correct), None)
        return reference, match

    return None, next((opt for opt in options if opt.is_correct), None)


class DeterministicShuffler:
    """Shuffle questions and options for one ``(user, attempt, quiz)`` triple."""

    def __init__(self, user_id: str, attempt_number: int, quiz_id: str) -> None:
        if attempt_number < 1:
            raise ValueError("attempt_number is 1-based")
        self.user_id = user_id
        self.attempt_number = int(attempt_number)
        self.quiz_id = quiz_id
        self.seed = derive_seed(user_id, attempt_number, quiz_id)

    def shuffle_options(self, question: Question) -> ShuffledQuestion:
        rng = random.Random(option_seed(self.seed, question.id))
        indexed = seeded_shuffle(list(enumerate(question.options)), rng)
        correct_answer, correct_option = _resolve_correct(question, indexed)
        return ShuffledQuestion(
            id=question.id,
            type=question.type,
            prompt=question.prompt,
            options=tuple(option for _, option in indexed),
            correct_answer=correct_answer,
            correct_option=correct_option,
            points=question.points,
            explanation=question.explanation,
        )

    def shuffle(
        self, questions: Sequence[Question], questions_to_show: Optional[int] = None
    ) -> List[ShuffledQuestion]:
        """Shuffle all questions, keep the first ``questions_to_show`` and shuffle their options.

        A cap of ``None``, zero, or at least the pool size shows every question.
        """

        ordered = seeded_shuffle(questions, random.Random(self.seed))
        if questions_to_show and 0 < questions_to_show < len(ordered):
            ordered = ordered[:questions_to_show]
        return [self.shuffle_options(question) for question in ordered]


def randomize_quiz(
    questions: Sequence[Question],
    questions_to_show: Optional[int],
    user_id: str,
    attempt_number: int,
    quiz_id: str,
) -> List[ShuffledQuestion]:
    return DeterministicShuffler(user_id, attempt_number, quiz_id).shuffle(
        questions, questions_to_show
    )
