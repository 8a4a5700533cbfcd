"""
Linking generated questions back to stored words.

Fallback chain, first hit wins:

    1. correct answer == word text (case-insensitive)
    2. token quoted after "word" in the question text, e.g. word 'demonstrate'
    3. round-robin: words[(index // questions_per_word) % len(words)]
    4. first word
"""

import re
from typing import Dict, Optional, Sequence

from pipeline.schema import GeneratedQuestion, TestKind, Word

QUOTED_WORD_PATTERN = re.compile(r"word ['\"](.+?)['\"]", re.IGNORECASE)

# Vocabulary tests ask a sentence-completion and a definition question per word.
VOCABULARY_QUESTIONS_PER_WORD = 2
SPELLING_QUESTIONS_PER_WORD = 1


def build_word_index(words: Sequence[Word]) -> Dict[str, str]:
    """Lower-cased word text -> word id. A later duplicate wins."""
    return {w.word.lower(): w.id for w in words}


def questions_per_word(test_kind: TestKind) -> int:
    if test_kind == TestKind.SPELLING:
        return SPELLING_QUESTIONS_PER_WORD
    return VOCABULARY_QUESTIONS_PER_WORD


def resolve_word_id(
    question: GeneratedQuestion,
    question_index: int,
    words: Sequence[Word],
    test_kind: TestKind = TestKind.VOCABULARY,
    word_index: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Pick the word a generated question belongs to.

    Spelling questions only use the exact-answer match and may return None,
    since the correct answer of a spelling question is the word itself.
    For every other test kind the result is never None when ``words`` is
    non-empty.
    """
    if word_index is None:
        word_index = build_word_index(words)

    word_id = word_index.get(question.correct_answer.lower())
    if test_kind == TestKind.SPELLING or word_id:
        return word_id

    match = QUOTED_WORD_PATTERN.search(question.question_text)
    if match and match.group(1):
        word_id = word_index.get(match.group(1).lower())
        if word_id:
            return word_id

    if not words:
        return None

    per_word = questions_per_word(test_kind)
    candidate = words[(question_index // per_word) % len(words)]
    if candidate.id:
        return candidate.id

    return words[0].id
