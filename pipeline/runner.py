"""
Pipeline runner: drives one sheet through extraction and test generation.

PROCESS:    PENDING -> PROCESSING -> extract -> store words -> generate -> COMPLETED
REGENERATE: COMPLETED -> PROCESSING -> reuse stored words -> generate -> COMPLETED

Failures propagate to the caller (jobs/process_sheet.py), which owns the
FAILED write. Words persisted before a failure are kept.
"""

import json
import logging
from typing import Callable, List, Optional, Sequence

from pipeline.errors import ContentError, InvalidSheetState, RegenerationBlocked, SheetNotFound
from pipeline.linking import build_word_index, resolve_word_id
from pipeline.schema import (
    ExtractionResult,
    JobAction,
    PipelineResult,
    QuestionRecord,
    SafetyReport,
    Sheet,
    SheetStatus,
    TestKind,
    Word,
    WordInput,
)
from pipeline.supabase_storage import processed_key_for

logger = logging.getLogger(__name__)

VARIANT_LABELS = "ABCDEFGHIJ"
MAX_VARIANTS = len(VARIANT_LABELS)

NO_WORDS_EXTRACTED = "No words extracted from the vocabulary sheet"
NO_SPELLING_WORDS = "No spelling or vocabulary words found. Please upload a document with spelling words."
NO_DEFINED_WORDS = (
    "No vocabulary words with definitions found. Please upload a document with "
    "vocabulary words that include definitions or example sentences."
)

# Progress checkpoints reported to the job.
PROGRESS_START = 0
PROGRESS_EXTRACTED = 20
PROGRESS_WORDS_READY = 40
PROGRESS_GENERATED = 90
PROGRESS_DONE = 100


def variant_labels(requested: int) -> List[str]:
    """A, B, C, ... for min(requested, 10) variants."""
    return list(VARIANT_LABELS[:max(0, min(requested, MAX_VARIANTS))])


def has_definition(word) -> bool:
    return bool(word.definition and word.definition.strip())


def select_process_words(test_kind: TestKind, extraction: ExtractionResult) -> List[WordInput]:
    """Words used for generation right after extraction."""
    if test_kind == TestKind.SPELLING:
        if extraction.spelling:
            return [WordInput(word=w) for w in extraction.spelling]
        if extraction.vocabulary:
            logger.info(f"No spelling words found, using {len(extraction.vocabulary)} vocabulary words as fallback")
            return list(extraction.vocabulary)
        raise ContentError(NO_SPELLING_WORDS)

    words = [w for w in extraction.vocabulary if has_definition(w)]
    if not words:
        raise ContentError(NO_DEFINED_WORDS)
    if extraction.spelling:
        logger.info(f"{len(extraction.spelling)} spelling words saved but not used in {test_kind.value} tests")
    return words


def select_stored_words(test_kind: TestKind, words: Sequence[Word]) -> List[WordInput]:
    """Words used for generation when regenerating from stored rows."""
    if test_kind == TestKind.SPELLING:
        selected = [WordInput(word=w.word) for w in words]
        if not selected:
            raise ContentError(NO_SPELLING_WORDS)
        return selected

    selected = [WordInput(word=w.word, definition=w.definition, context=w.context) for w in words if has_definition(w)]
    if not selected:
        raise ContentError(NO_DEFINED_WORDS)
    return selected


def check_regeneration_safety(store, sheet_id: str) -> SafetyReport:
    """Count what deleting this sheet's tests would cascade into."""
    test_ids = [t.id for t in store.list_tests(sheet_id)]
    if not test_ids:
        return SafetyReport()
    return SafetyReport(
        attempts=store.count_attempts(test_ids),
        assignments=store.count_assignments(test_ids),
        affected_tests=len(test_ids),
    )


class SheetPipeline:
    """
    Runs PROCESS and REGENERATE for one sheet.

    Collaborators:
        store:    record store (see pipeline/supabase_db.py)
        blobs:    blob store with put/get/delete
        ai:       extraction and generation service (see pipeline/ai_service.py)
        progress: callable receiving 0-100; never sees a smaller value than before
    """

    def __init__(self, store, blobs, ai, progress: Optional[Callable[[int], None]] = None):
        self.store = store
        self.blobs = blobs
        self.ai = ai
        self._progress_cb = progress
        self._last_progress = -1

    def _progress(self, percent: float) -> None:
        percent = int(round(percent))
        if percent <= self._last_progress:
            return
        self._last_progress = percent
        if self._progress_cb:
            self._progress_cb(percent)

    def _load(self, sheet_id: str) -> Sheet:
        sheet = self.store.get_sheet(sheet_id)
        if sheet is None:
            raise SheetNotFound(sheet_id)
        return sheet

    def run(self, sheet_id: str, action: JobAction = JobAction.PROCESS,
            force: bool = False, redelivery: bool = False) -> PipelineResult:
        """
        Execute one action for a sheet.

        ``redelivery`` is True when the queue is retrying this same job; a
        regenerate retry then accepts the FAILED or PROCESSING state its
        previous attempt left behind.
        """
        action = JobAction(action)
        self._last_progress = -1
        if action == JobAction.REGENERATE:
            return self.regenerate(sheet_id, force=force, redelivery=redelivery)
        return self.process(sheet_id)

    # ------------------------------------------------------------------ PROCESS

    def process(self, sheet_id: str) -> PipelineResult:
        sheet = self._load(sheet_id)
        if sheet.status == SheetStatus.COMPLETED:
            logger.info(f"⏭️ Sheet {sheet_id} already COMPLETED, nothing to do")
            return PipelineResult(sheet_id=sheet_id, action=JobAction.PROCESS)

        self.store.mark_processing(sheet_id)
        self._progress(PROGRESS_START)

        logger.info(f"⬇️ Downloading {sheet.storage_key}")
        file_bytes = self.blobs.get(sheet.storage_key)

        logger.info(f"🤖 Extracting words from {sheet.original_name or sheet.storage_key} ({sheet.mime_type})")
        extraction = self.ai.extract_vocabulary(file_bytes, sheet.mime_type, sheet.test_type)
        self._progress(PROGRESS_EXTRACTED)
        logger.info(f"Extracted {len(extraction.vocabulary)} vocab words and {len(extraction.spelling)} spelling words")

        all_words = extraction.all_words()
        if not all_words:
            raise ContentError(NO_WORDS_EXTRACTED)

        processed_key = self._store_processed_image(sheet, extraction)
        if processed_key:
            self.store.update_sheet(sheet_id, {"processed_storage_key": processed_key})

        # A retried job may have stored words and some variants already.
        self.store.delete_tests(sheet_id)
        self.store.delete_words(sheet_id)
        self.store.create_words(sheet_id, all_words)
        logger.info(f"💾 Saved {len(all_words)} words for sheet {sheet_id}")
        self._progress(PROGRESS_WORDS_READY)

        selected = select_process_words(sheet.test_type, extraction)
        generated, skipped = self._generate_variants(sheet, selected)

        self._progress(PROGRESS_DONE)
        self.store.mark_completed(sheet_id)
        logger.info(f"✅ Sheet {sheet_id} completed: {generated} test(s)")
        return PipelineResult(
            sheet_id=sheet_id,
            action=JobAction.PROCESS,
            words_used=len(selected),
            tests_generated=generated,
            skipped_variants=skipped,
        )

    def _store_processed_image(self, sheet: Sheet, extraction: ExtractionResult) -> Optional[str]:
        image = extraction.processed_image
        if image is None:
            return None
        key = processed_key_for(sheet.storage_key, image.extension)
        try:
            self.blobs.put(key, image.data, image.mime_type)
        except Exception as e:
            logger.warning(f"⚠️ Could not save processed image {key}: {e}")
            return None
        logger.info(f"🖼️ Processed image saved: {key}")
        return key

    # ------------------------------------------------------------------ REGENERATE

    def regenerate(self, sheet_id: str, force: bool = False, redelivery: bool = False) -> PipelineResult:
        sheet = self._load(sheet_id)
        allowed = {SheetStatus.COMPLETED}
        if redelivery:
            allowed |= {SheetStatus.PROCESSING, SheetStatus.FAILED}
        if sheet.status not in allowed:
            raise InvalidSheetState(sheet_id, sheet.status.value, SheetStatus.COMPLETED.value)

        if not force:
            report = check_regeneration_safety(self.store, sheet_id)
            if not report.is_safe:
                raise RegenerationBlocked(sheet_id, report)

        self.store.mark_processing(sheet_id)
        self._progress(PROGRESS_START)

        stored = self.store.list_words(sheet_id)
        selected = select_stored_words(sheet.test_type, stored)
        logger.info(f"Using {len(selected)} of {len(stored)} stored words for regeneration ({sheet.test_type.value})")
        self._progress(PROGRESS_EXTRACTED)

        self.store.delete_tests(sheet_id)
        self._progress(PROGRESS_WORDS_READY)

        generated, skipped = self._generate_variants(sheet, selected, stored)

        self._progress(PROGRESS_DONE)
        self.store.mark_completed(sheet_id)
        logger.info(f"✅ Sheet {sheet_id} regenerated: {generated} test(s)")
        return PipelineResult(
            sheet_id=sheet_id,
            action=JobAction.REGENERATE,
            words_used=len(selected),
            tests_generated=generated,
            skipped_variants=skipped,
        )

    # ------------------------------------------------------------------ generation

    def _generate_variants(self, sheet: Sheet, selected: Sequence[WordInput],
                           stored: Optional[Sequence[Word]] = None):
        labels = variant_labels(sheet.tests_to_generate)
        logger.info(f"Generating {len(labels)} test variants")

        if stored is None:
            stored = self.store.list_words(sheet.id)
        word_index = build_word_index(stored)

        generated = 0
        skipped: List[str] = []
        for i, variant in enumerate(labels):
            if sheet.test_type == TestKind.SPELLING:
                questions = self.ai.generate_spelling_test_questions(
                    [w.word for w in selected], variant, sheet.grade_level
                )
            else:
                questions = self.ai.generate_test_questions(selected, variant, sheet.grade_level)

            if not questions:
                logger.warning(f"⚠️ No questions generated for variant {variant}, skipping")
                skipped.append(variant)
            else:
                test = self.store.create_test(sheet.id, f"{sheet.name} - Variant {variant}", variant)
                records = [
                    QuestionRecord(
                        test_id=test.id,
                        word_id=resolve_word_id(q, index, stored, sheet.test_type, word_index),
                        question_text=q.question_text,
                        question_type=q.question_type,
                        correct_answer=q.correct_answer,
                        options=json.dumps(q.options) if q.options is not None else None,
                        order_index=q.order_index or index,
                    )
                    for index, q in enumerate(questions)
                ]
                self.store.create_questions(records)
                generated += 1
                logger.info(f"Created test variant {variant} with {len(records)} questions")

            self._progress(PROGRESS_WORDS_READY + (i + 1) / len(labels) * (PROGRESS_GENERATED - PROGRESS_WORDS_READY))

        return generated, skipped
