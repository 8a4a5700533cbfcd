"""
Data models for vocabulary sheets and generated tests.
Uses Pydantic for validation and type safety.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, Field


class SheetStatus(str, Enum):
    """
    Lifecycle of one uploaded sheet. A run always goes
    PENDING -> PROCESSING -> COMPLETED | FAILED; a regenerate run
    re-enters PROCESSING from COMPLETED.
    """
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class TestKind(str, Enum):
    VOCABULARY = "VOCABULARY"
    SPELLING = "SPELLING"
    GENERAL_KNOWLEDGE = "GENERAL_KNOWLEDGE"

    __test__ = False  # not a pytest class


class JobAction(str, Enum):
    PROCESS = "process"
    REGENERATE = "regenerate"


class Sheet(BaseModel):
    """One uploaded worksheet and the fields the pipeline reads or writes."""
    id: str
    owner_id: str
    name: str = ""
    original_name: Optional[str] = None
    storage_key: str
    mime_type: str
    tests_to_generate: int = 3
    grade_level: Optional[int] = None
    test_type: TestKind = TestKind.VOCABULARY
    status: SheetStatus = SheetStatus.PENDING
    error_message: Optional[str] = None
    processed_storage_key: Optional[str] = None
    uploaded_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class Word(BaseModel):
    """A stored word. Words are created by PROCESS runs only."""
    id: str
    sheet_id: str
    word: str
    definition: Optional[str] = None
    context: Optional[str] = None


class WordInput(BaseModel):
    """A word as extracted or as fed to generation (no identity yet)."""
    word: str
    definition: Optional[str] = None
    context: Optional[str] = None


IMAGE_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/gif": "gif", "image/webp": "webp"}


class ProcessedImage(BaseModel):
    """The exact image sent to the extraction model, kept for teacher download."""
    data: bytes
    mime_type: str

    @property
    def extension(self) -> str:
        return IMAGE_EXTENSIONS.get(self.mime_type, "jpg")


class ExtractionResult(BaseModel):
    vocabulary: List[WordInput] = []
    spelling: List[str] = []
    processed_image: Optional[ProcessedImage] = None

    def all_words(self) -> List[WordInput]:
        """Vocabulary words followed by spelling words, the order they are stored in."""
        return list(self.vocabulary) + [WordInput(word=w) for w in self.spelling]


class GeneratedQuestion(BaseModel):
    """One question as returned by the generation service."""
    question_text: str = Field(alias="questionText")
    question_type: str = Field(default="MULTIPLE_CHOICE", alias="questionType")
    correct_answer: str = Field(alias="correctAnswer")
    options: Optional[List[str]] = None
    order_index: int = Field(default=0, alias="orderIndex")

    model_config = {"populate_by_name": True}


class TestRecord(BaseModel):
    id: str
    sheet_id: str
    name: str
    variant: str
    created_at: Optional[datetime] = None

    __test__ = False


class QuestionRecord(BaseModel):
    """A question row ready for bulk insert."""
    test_id: str
    word_id: Optional[str] = None
    question_text: str
    question_type: str
    correct_answer: str
    options: Optional[str] = None  # JSON-serialized list
    order_index: int


class SafetyReport(BaseModel):
    """What a regeneration would destroy."""
    attempts: int = 0
    assignments: int = 0
    affected_tests: int = 0

    @property
    def is_safe(self) -> bool:
        return self.attempts == 0 and self.assignments == 0


class PipelineResult(BaseModel):
    success: bool = True
    sheet_id: str
    action: JobAction
    words_used: int = 0
    tests_generated: int = 0
    skipped_variants: List[str] = []
