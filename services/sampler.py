# ==================================================================
# services/sampler.py: pick the next unanswered question
# ==================================================================
import random
from typing import Iterable, Sequence

from errors import BusinessError


def pick_next_question(questions: Sequence, answered_nos: Iterable[int], rng: random.Random):
    """
    Random start offset into the (stable) ordering of `questions`, then a
    cyclic forward scan returning the first question whose `question_no`
    is not in `answered_nos`.

    The distribution over the remaining questions is not uniform: a
    question directly after an answered run is picked more often.
    """
    if not questions:
        raise BusinessError("contest has no active questions")

    answered = set(answered_nos)
    count = len(questions)
    offset = rng.randrange(count)

    for step in range(count):
        question = questions[(offset + step) % count]
        if question.question_no not in answered:
            return question

    raise BusinessError("all questions answered already")
