"""
Supabase PostgreSQL storage for sheets, words, tests and questions.
Table definitions live in sql/schema.sql.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from pipeline.schema import QuestionRecord, Sheet, SheetStatus, TestRecord, Word, WordInput

logger = logging.getLogger(__name__)

SHEETS = "vocabulary_sheets"
WORDS = "vocabulary_words"
TESTS = "tests"
QUESTIONS = "test_questions"
ATTEMPTS = "test_attempts"
ASSIGNMENTS = "test_assignments"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SupabaseRecordStore:
    """Record store backed by PostgREST. Errors from the client propagate."""

    def __init__(self, client):
        self.client = client

    def _table(self, name: str):
        return self.client.table(name)

    # ------------------------------------------------------------------ sheets

    def get_sheet(self, sheet_id: str, owner_id: Optional[str] = None) -> Optional[Sheet]:
        query = self._table(SHEETS).select("*").eq("id", sheet_id)
        if owner_id:
            query = query.eq("owner_id", owner_id)
        result = query.limit(1).execute()
        if result.data:
            return Sheet.model_validate(result.data[0])
        return None

    def create_sheet(self, values: Dict[str, Any]) -> Sheet:
        row = dict(values)
        row.setdefault("status", SheetStatus.PENDING.value)
        row.setdefault("uploaded_at", _now())
        result = self._table(SHEETS).insert(row).execute()
        sheet = Sheet.model_validate(result.data[0])
        logger.info(f"✅ Created sheet {sheet.id} ({sheet.original_name})")
        return sheet

    def update_sheet(self, sheet_id: str, updates: Dict[str, Any]) -> None:
        updates = {k: (v.value if isinstance(v, SheetStatus) else v) for k, v in updates.items()}
        updates["updated_at"] = _now()
        result = self._table(SHEETS).update(updates).eq("id", sheet_id).execute()
        if not result.data:
            logger.warning(f"⚠️ Update returned no data for sheet {sheet_id}")

    def mark_processing(self, sheet_id: str) -> None:
        self.update_sheet(sheet_id, {"status": SheetStatus.PROCESSING, "error_message": None})

    def mark_completed(self, sheet_id: str, processed_storage_key: Optional[str] = None) -> None:
        updates: Dict[str, Any] = {"status": SheetStatus.COMPLETED, "processed_at": _now(), "error_message": None}
        if processed_storage_key:
            updates["processed_storage_key"] = processed_storage_key
        self.update_sheet(sheet_id, updates)

    def mark_failed(self, sheet_id: str, message: str) -> None:
        self.update_sheet(sheet_id, {"status": SheetStatus.FAILED, "error_message": message})

    def delete_sheet(self, sheet_id: str) -> None:
        """Words, tests, questions, attempts and assignments go with it (ON DELETE CASCADE)."""
        self._table(SHEETS).delete().eq("id", sheet_id).execute()

    # ------------------------------------------------------------------ words

    def list_words(self, sheet_id: str) -> List[Word]:
        result = self._table(WORDS).select("*").eq("sheet_id", sheet_id).order("position").execute()
        return [Word.model_validate(row) for row in result.data or []]

    def create_words(self, sheet_id: str, words: Sequence[WordInput]) -> List[Word]:
        if not words:
            return []
        rows = [
            {
                "sheet_id": sheet_id,
                "word": w.word,
                "definition": w.definition,
                "context": w.context,
                "position": i,
            }
            for i, w in enumerate(words)
        ]
        result = self._table(WORDS).insert(rows).execute()
        return [Word.model_validate(row) for row in result.data or []]

    def delete_words(self, sheet_id: str) -> None:
        self._table(WORDS).delete().eq("sheet_id", sheet_id).execute()

    # ------------------------------------------------------------------ tests

    def list_tests(self, sheet_id: str) -> List[TestRecord]:
        result = self._table(TESTS).select("*").eq("sheet_id", sheet_id).order("variant").execute()
        return [TestRecord.model_validate(row) for row in result.data or []]

    def create_test(self, sheet_id: str, name: str, variant: str) -> TestRecord:
        result = self._table(TESTS).insert({"sheet_id": sheet_id, "name": name, "variant": variant}).execute()
        return TestRecord.model_validate(result.data[0])

    def create_questions(self, questions: Sequence[QuestionRecord]) -> None:
        if not questions:
            return
        self._table(QUESTIONS).insert([q.model_dump() for q in questions]).execute()

    def delete_tests(self, sheet_id: str) -> None:
        """Questions, attempts and assignments of these tests cascade."""
        self._table(TESTS).delete().eq("sheet_id", sheet_id).execute()

    def _count(self, table: str, test_ids: Sequence[str]) -> int:
        if not test_ids:
            return 0
        result = (
            self._table(table)
            .select("id", count="exact", head=True)
            .in_("test_id", list(test_ids))
            .execute()
        )
        if getattr(result, "count", None) is not None:
            return int(result.count)
        return len(result.data) if result.data else 0

    def count_attempts(self, test_ids: Sequence[str]) -> int:
        return self._count(ATTEMPTS, test_ids)

    def count_assignments(self, test_ids: Sequence[str]) -> int:
        return self._count(ASSIGNMENTS, test_ids)
