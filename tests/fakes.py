"""
In-memory doubles for the record store, blob store and AI service.
"""

import itertools
from typing import Dict, List, Optional

from pipeline.schema import (
    ExtractionResult,
    GeneratedQuestion,
    Sheet,
    SheetStatus,
    TestKind,
    TestRecord,
    Word,
    WordInput,
)


class FakeRecordStore:
    def __init__(self):
        self.sheets: Dict[str, Sheet] = {}
        self.words: Dict[str, List[Word]] = {}
        self.tests: Dict[str, List[TestRecord]] = {}
        self.questions: List = []
        self.attempts: Dict[str, int] = {}
        self.assignments: Dict[str, int] = {}
        self.status_history: List = []
        self.calls: List[str] = []
        self._ids = itertools.count(1)

    def _id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def add_sheet(self, **fields) -> Sheet:
        values = {
            "id": "sheet-1",
            "owner_id": "teacher-1",
            "name": "Unit 4",
            "storage_key": "teacher-1/1700000000000-unit4.pdf",
            "mime_type": "application/pdf",
        }
        values.update(fields)
        sheet = Sheet(**values)
        self.sheets[sheet.id] = sheet
        return sheet

    def add_words(self, sheet_id: str, words: List[WordInput]) -> List[Word]:
        return self.create_words(sheet_id, words)

    def get_sheet(self, sheet_id, owner_id=None):
        sheet = self.sheets.get(sheet_id)
        if sheet is None or (owner_id and sheet.owner_id != owner_id):
            return None
        return sheet.model_copy()

    def create_sheet(self, values):
        sheet = Sheet(id=self._id("sheet"), **values)
        self.sheets[sheet.id] = sheet
        return sheet

    def update_sheet(self, sheet_id, updates):
        self.calls.append("update_sheet")
        if "status" in updates:
            self.status_history.append(SheetStatus(updates["status"]))
        self.sheets[sheet_id] = self.sheets[sheet_id].model_copy(update=updates)

    def mark_processing(self, sheet_id):
        self.update_sheet(sheet_id, {"status": SheetStatus.PROCESSING, "error_message": None})

    def mark_completed(self, sheet_id, processed_storage_key=None):
        updates = {"status": SheetStatus.COMPLETED, "processed_at": "2026-01-01T00:00:00+00:00", "error_message": None}
        if processed_storage_key:
            updates["processed_storage_key"] = processed_storage_key
        self.update_sheet(sheet_id, updates)

    def mark_failed(self, sheet_id, message):
        self.update_sheet(sheet_id, {"status": SheetStatus.FAILED, "error_message": message})

    def delete_sheet(self, sheet_id):
        self.calls.append("delete_sheet")
        self.sheets.pop(sheet_id, None)
        self.words.pop(sheet_id, None)
        self.tests.pop(sheet_id, None)

    def list_words(self, sheet_id):
        return list(self.words.get(sheet_id, []))

    def create_words(self, sheet_id, words):
        self.calls.append("create_words")
        created = [
            Word(id=self._id("word"), sheet_id=sheet_id, word=w.word, definition=w.definition, context=w.context)
            for w in words
        ]
        self.words.setdefault(sheet_id, []).extend(created)
        return created

    def delete_words(self, sheet_id):
        self.calls.append("delete_words")
        self.words.pop(sheet_id, None)

    def list_tests(self, sheet_id):
        return list(self.tests.get(sheet_id, []))

    def create_test(self, sheet_id, name, variant):
        self.calls.append("create_test")
        test = TestRecord(id=self._id("test"), sheet_id=sheet_id, name=name, variant=variant)
        self.tests.setdefault(sheet_id, []).append(test)
        return test

    def create_questions(self, questions):
        self.questions.extend(questions)

    def delete_tests(self, sheet_id):
        self.calls.append("delete_tests")
        removed = {t.id for t in self.tests.pop(sheet_id, [])}
        self.questions = [q for q in self.questions if q.test_id not in removed]

    def count_attempts(self, test_ids):
        return sum(self.attempts.get(t, 0) for t in test_ids)

    def count_assignments(self, test_ids):
        return sum(self.assignments.get(t, 0) for t in test_ids)

    def questions_for(self, test_id):
        return [q for q in self.questions if q.test_id == test_id]


class FakeBlobStore:
    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.fail_puts = False
        self.deleted: List[str] = []

    def put(self, key, data, content_type=None):
        if self.fail_puts:
            raise ConnectionError("storage unavailable")
        self.objects[key] = data
        return key

    def get(self, key):
        if key not in self.objects:
            raise FileNotFoundError(key)
        return self.objects[key]

    def delete(self, keys):
        for key in keys:
            if key:
                self.deleted.append(key)
                self.objects.pop(key, None)


def vocabulary_questions(words, variant) -> List[GeneratedQuestion]:
    """Two questions per word, the way the generation prompt asks for them."""
    questions = []
    for w in words:
        questions.append(GeneratedQuestion(
            question_text=f"Which word best fits in this sentence: We {w.word} every day ({variant})?",
            correct_answer=w.word,
            options=[w.word, "other", "another", "none"],
        ))
        questions.append(GeneratedQuestion(
            question_text=f"Which definition best matches the word '{w.word}'?",
            correct_answer=w.definition or "a meaning",
            options=[w.definition or "a meaning", "x", "y", "z"],
        ))
    return [q.model_copy(update={"order_index": i}) for i, q in enumerate(questions)]


def spelling_questions(words, variant) -> List[GeneratedQuestion]:
    return [
        GeneratedQuestion(
            question_text="Which is the correct spelling?",
            correct_answer=w,
            options=[w, w + "e", w[:-1], w + w[-1]],
            order_index=i,
        )
        for i, w in enumerate(words)
    ]


class FakeAIService:
    def __init__(self, extraction: Optional[ExtractionResult] = None):
        self.extraction = extraction or ExtractionResult()
        self.extract_error: Optional[Exception] = None
        self.empty_variants = set()
        self.generation_error: Optional[Exception] = None
        self.calls: List = []

    def extract_vocabulary(self, file_bytes, mime_type, test_kind=TestKind.VOCABULARY):
        self.calls.append(("extract", mime_type, test_kind))
        if self.extract_error:
            raise self.extract_error
        return self.extraction

    def generate_test_questions(self, words, variant, grade_level=None):
        self.calls.append(("vocabulary", variant, [w.word for w in words], grade_level))
        if self.generation_error:
            raise self.generation_error
        if variant in self.empty_variants:
            return []
        return vocabulary_questions(words, variant)

    def generate_spelling_test_questions(self, words, variant, grade_level=None):
        self.calls.append(("spelling", variant, list(words), grade_level))
        if self.generation_error:
            raise self.generation_error
        if variant in self.empty_variants:
            return []
        return spelling_questions(words, variant)


def defined_words(n: int) -> List[WordInput]:
    return [WordInput(word=f"word{i}", definition=f"meaning {i}") for i in range(1, n + 1)]


