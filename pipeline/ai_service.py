"""
LLM-backed extraction and test generation.

Extraction needs a vision model (OpenAI). Generation prefers OpenAI and falls
back to Groq when only GROQ_API_KEY is configured.
Responses are expected as JSON; markdown code fences are stripped before
parsing.
"""

import base64
import json
import logging
import random
import re
from typing import List, Optional, Sequence

from pydantic import ValidationError

from pipeline.errors import MalformedResponseError, ServiceUnavailable
from pipeline.image_prep import prepare_image
from pipeline.schema import ExtractionResult, GeneratedQuestion, TestKind, WordInput

logger = logging.getLogger(__name__)

OPENAI_MODEL = "gpt-4o"
GROQ_MODEL = "llama-3.3-70b-versatile"

FENCE_OPEN = re.compile(r"^```(?:json)?\n?")
FENCE_CLOSE = re.compile(r"\n?```$")


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` block, if any."""
    text = (text or "").strip()
    if text.startswith("```"):
        text = FENCE_CLOSE.sub("", FENCE_OPEN.sub("", text)).strip()
    return text


def parse_json_response(text: str, what: str) -> dict:
    """
    Parse a model answer as a JSON object.

    Raises MalformedResponseError carrying the parser message verbatim.
    """
    cleaned = strip_code_fences(text)
    try:
        result = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse {what} response: {cleaned[:500]}")
        raise MalformedResponseError(f"Failed to parse {what} result: {e}")
    if not isinstance(result, dict):
        raise MalformedResponseError(f"Failed to parse {what} result: expected a JSON object")
    return result


def grade_level_guidance(grade_level: Optional[int]) -> str:
    if not grade_level:
        return ""
    if grade_level <= 3:
        bullets = [
            "Use simple, short sentences (under 10 words)",
            "Use very common, everyday vocabulary",
            "Avoid complex sentence structures",
            "Use concrete examples",
        ]
    elif grade_level <= 6:
        bullets = [
            "Use clear, straightforward language",
            "Moderate sentence length (10-15 words)",
            "Use grade-appropriate vocabulary",
            "Include some context clues",
        ]
    elif grade_level <= 9:
        bullets = [
            "Use more sophisticated vocabulary",
            "Longer, more complex sentences (15-20 words)",
            "Include abstract concepts where appropriate",
            "Require deeper comprehension",
        ]
    else:
        bullets = [
            "Use advanced academic language",
            "Complex sentence structures",
            "Sophisticated vocabulary and concepts",
            "Require critical thinking and nuanced understanding",
        ]
    lines = "\n".join(f"- {b}" for b in bullets)
    return (
        f"\nTARGET GRADE LEVEL: {grade_level}\n"
        f"Adjust question difficulty and language complexity for grade {grade_level} students:\n"
        f"{lines}\n"
    )


def _extraction_prompt(test_kind: TestKind) -> str:
    focus = ""
    if test_kind == TestKind.SPELLING:
        focus = "\nThe teacher wants a SPELLING test: make sure every plain word list is captured under \"spelling\".\n"
    return f"""Analyze this vocabulary/spelling sheet image.

TASK: Extract all words, identifying which are vocabulary (with definitions) and which are spelling words.
{focus}
INSTRUCTIONS:
1. Look for visual section markers: "Vocab", "Vocabulary", "Spelling", headers, boxes, etc.
2. Vocabulary words typically have definitions or example sentences
3. Spelling words are typically just word lists
4. Extract definitions and context where available
5. Handle handwritten and printed text
6. Preserve the distinction between vocab and spelling sections
7. If you see numbered/lettered words with explanations, those are vocabulary
8. If you see plain word lists, those are spelling words

Return ONLY valid JSON (no markdown code blocks, no explanation):
{{
  "vocabulary": [
    {{"word": "example", "definition": "a thing characteristic of its kind", "context": "optional example sentence"}}
  ],
  "spelling": ["word1", "word2"]
}}"""


def _clean(value) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _normalize_extraction(result: dict) -> ExtractionResult:
    vocabulary = result.get("vocabulary")
    spelling = result.get("spelling")
    if not isinstance(vocabulary, list):
        vocabulary = []
    if not isinstance(spelling, list):
        spelling = []

    words: List[WordInput] = []
    for item in vocabulary:
        if isinstance(item, str):
            item = {"word": item}
        if not isinstance(item, dict) or not _clean(item.get("word")):
            continue
        words.append(WordInput(
            word=_clean(item["word"]),
            definition=_clean(item.get("definition")),
            context=_clean(item.get("context")),
        ))

    spelling_words: List[str] = []
    for item in spelling:
        if isinstance(item, dict):
            item = item.get("word")
        if _clean(item):
            spelling_words.append(_clean(item))

    return ExtractionResult(vocabulary=words, spelling=spelling_words)


class AIService:
    """
    Thin wrapper over an OpenAI-compatible chat client.

    ``vision_client`` is used for extraction and must accept image parts;
    ``client`` is used for generation. Both default to the same client.
    """

    def __init__(self, client, model: str, provider: str = "openai",
                 vision_client=None, vision_model: Optional[str] = None,
                 rng: Optional[random.Random] = None):
        self.client = client
        self.model = model
        self.provider = provider
        self.vision_client = vision_client if vision_client is not None else (client if provider == "openai" else None)
        self.vision_model = vision_model or (model if provider == "openai" else None)
        self._rng = rng or random.Random()

    @classmethod
    def from_config(cls, config) -> "AIService":
        """Priority: OpenAI (vision + generation) > Groq (generation only)."""
        if config.openai_api_key:
            from openai import OpenAI
            client = OpenAI(api_key=config.openai_api_key)
            return cls(client, OPENAI_MODEL, "openai")
        if config.groq_api_key:
            from groq import Groq
            logger.warning("OPENAI_API_KEY not set; using Groq for generation, extraction unavailable")
            return cls(Groq(api_key=config.groq_api_key), GROQ_MODEL, "groq")
        raise ServiceUnavailable("No AI provider configured (set OPENAI_API_KEY or GROQ_API_KEY)")

    def _complete(self, client, model: str, content, max_tokens: int) -> str:
        response = client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": "You are an assistant for teachers. Return only valid JSON."},
                {"role": "user", "content": content},
            ],
            temperature=0.4,
            max_tokens=max_tokens,
            response_format={"type": "json_object"},
        )
        if not response.choices:
            raise MalformedResponseError(f"No text response from {self.provider}")
        text = response.choices[0].message.content
        if not text:
            raise MalformedResponseError(f"No text response from {self.provider}")
        return text

    # ------------------------------------------------------------------ extraction

    def extract_vocabulary(self, file_bytes: bytes, mime_type: str,
                           test_kind: TestKind = TestKind.VOCABULARY) -> ExtractionResult:
        """Extract vocabulary and spelling words from an image or PDF."""
        if self.vision_client is None:
            raise ServiceUnavailable("Vocabulary extraction requires OPENAI_API_KEY")

        image = prepare_image(file_bytes, mime_type)
        data_url = f"data:{image.mime_type};base64,{base64.b64encode(image.data).decode('utf-8')}"

        text = self._complete(
            self.vision_client,
            self.vision_model,
            [
                {"type": "image_url", "image_url": {"url": data_url}},
                {"type": "text", "text": _extraction_prompt(test_kind)},
            ],
            max_tokens=4096,
        )
        result = _normalize_extraction(parse_json_response(text, "vocabulary extraction"))
        result.processed_image = image
        logger.info(f"{self.provider.upper()} extraction: {len(result.vocabulary)} vocab, {len(result.spelling)} spelling")
        return result

    # ------------------------------------------------------------------ generation

    def generate_test_questions(self, words: Sequence[WordInput], variant: str,
                                grade_level: Optional[int] = None) -> List[GeneratedQuestion]:
        """Two multiple-choice questions per word: sentence completion and definition matching."""
        if not words:
            return []
        words_text = "\n".join(
            f"{i + 1}. {w.word}"
            + (f" - {w.definition}" if w.definition else "")
            + (f" (Context: {w.context})" if w.context else "")
            for i, w in enumerate(words)
        )
        prompt = f"""Generate test questions from these vocabulary words for Test Variant {variant}.

VOCABULARY WORDS:
{words_text}
{grade_level_guidance(grade_level)}
CRITICAL REQUIREMENTS:
1. Create EXACTLY 2 multiple choice questions per vocabulary word ({len(words) * 2} questions in total)
2. Question Type 1: SENTENCE COMPLETION
   - Format: "Which word best fits in this sentence: [sentence with blank]?"
   - The correct answer is the vocabulary word itself
3. Question Type 2: DEFINITION MATCHING
   - Format: "Which definition best matches the word '[word]'?"
   - Provide 4 definitions, one correct and 3 plausible but incorrect
4. For ALL questions:
   - Include exactly 4 options (1 correct + 3 distractors)
   - Make distractors plausible (use other words from the list when possible)
   - Correct answer must always be included in options array
5. Each test variant should have different sentences/distractors

Return ONLY valid JSON (no markdown, no explanation):
{{
  "questions": [
    {{
      "questionText": "Which word best fits in this sentence: The teacher asked students to _____ their understanding by explaining the concept?",
      "questionType": "MULTIPLE_CHOICE",
      "correctAnswer": "demonstrate",
      "options": ["demonstrate", "persuade", "analyze", "contemplate"]
    }},
    {{
      "questionText": "Which definition best matches the word 'demonstrate'?",
      "questionType": "MULTIPLE_CHOICE",
      "correctAnswer": "to show clearly or prove",
      "options": ["to show clearly or prove", "to convince someone of something", "to examine in detail", "to think deeply about"]
    }}
  ]
}}"""
        text = self._complete(self.client, self.model, prompt, max_tokens=8192)
        return self._finalize_questions(text, expected=len(words) * 2, what="test generation")

    def generate_spelling_test_questions(self, words: Sequence[str], variant: str,
                                         grade_level: Optional[int] = None) -> List[GeneratedQuestion]:
        """One question per word: pick the correct spelling among plausible misspellings."""
        if not words:
            return []
        words_text = "\n".join(f"{i + 1}. {w}" for i, w in enumerate(words))
        prompt = f"""Generate a spelling test for Test Variant {variant}.

SPELLING WORDS:
{words_text}
{grade_level_guidance(grade_level)}
CRITICAL REQUIREMENTS:
1. Create EXACTLY 1 multiple choice question per spelling word ({len(words)} questions in total)
2. Format: "Which is the correct spelling?"
3. Options: the correctly spelled word plus 3 plausible misspellings students commonly make
   (swapped vowels, doubled or dropped consonants, phonetic spellings)
4. "correctAnswer" must be the correctly spelled word, exactly as listed above
5. Correct answer must always be included in options array
6. Each test variant should use different misspellings

Return ONLY valid JSON (no markdown, no explanation):
{{
  "questions": [
    {{
      "questionText": "Which is the correct spelling?",
      "questionType": "MULTIPLE_CHOICE",
      "correctAnswer": "necessary",
      "options": ["necessary", "neccessary", "necesary", "neccesary"]
    }}
  ]
}}"""
        text = self._complete(self.client, self.model, prompt, max_tokens=4096)
        return self._finalize_questions(text, expected=len(words), what="spelling test generation")

    def _finalize_questions(self, text: str, expected: int, what: str) -> List[GeneratedQuestion]:
        """Validate, then shuffle options and question order for this variant."""
        result = parse_json_response(text, what)
        raw_questions = result.get("questions")
        if not isinstance(raw_questions, list):
            raise MalformedResponseError(f"Failed to parse {what} result: missing questions array")

        if len(raw_questions) != expected:
            logger.warning(f"Expected {expected} questions, got {len(raw_questions)}. Proceeding anyway.")

        questions: List[GeneratedQuestion] = []
        for raw in raw_questions:
            try:
                question = GeneratedQuestion.model_validate(raw)
            except ValidationError as e:
                raise MalformedResponseError(f"Failed to parse {what} result: {e}")
            if not question.options:
                raise MalformedResponseError(f"Question missing options array: {question.question_text}")
            if question.correct_answer not in question.options:
                raise MalformedResponseError(
                    f'Correct answer "{question.correct_answer}" not found in options for question: {question.question_text}'
                )
            options = list(question.options)
            self._rng.shuffle(options)
            questions.append(question.model_copy(update={"options": options}))

        self._rng.shuffle(questions)
        return [q.model_copy(update={"order_index": i}) for i, q in enumerate(questions)]
