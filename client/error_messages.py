"""
Turn a sheet's error message into something a teacher can act on.

Keyword sniffing only: the categories are advice for the UI, the raw message
stays available to whoever needs it.
"""

import re
from dataclasses import dataclass
from typing import Optional

GENERIC_LIMIT = 100


@dataclass(frozen=True)
class FriendlyError:
    title: str
    description: str


NO_CONTENT = FriendlyError(
    "No content found",
    "AI couldn't extract any words from your file. Make sure the image is clear and contains readable text.",
)
FILE_TOO_LARGE = FriendlyError(
    "File too large",
    "Please try a smaller file or reduce the image resolution.",
)
INVALID_FILE_TYPE = FriendlyError(
    "Invalid file type",
    "Please upload a PNG, JPG, WEBP, or PDF file.",
)
AI_SERVICE_ERROR = FriendlyError(
    "AI processing error",
    "The AI service encountered an issue. Please try again in a moment.",
)
IMAGE_QUALITY = FriendlyError(
    "Image quality issue",
    "The image quality is too low. Try taking a clearer photo with better lighting.",
)
UNKNOWN = FriendlyError(
    "Processing failed",
    "An unexpected error occurred. Please try again.",
)

# First match wins.
RULES = [
    (("no vocabulary", "no words", "0 words", "no spelling"), NO_CONTENT),
    (("file too large", "size"), FILE_TOO_LARGE),
    (("invalid file", "file type"), INVALID_FILE_TYPE),
    (("openai", "groq", "ai service", "ai provider"), AI_SERVICE_ERROR),
    (("blur", "quality", "unreadable"), IMAGE_QUALITY),
]

AI_WORD = re.compile(r"\bai\b")


def classify_error(message: Optional[str]) -> FriendlyError:
    if not message:
        return UNKNOWN

    lower = message.lower()
    for keywords, friendly in RULES:
        if any(k in lower for k in keywords):
            return friendly
        if friendly is AI_SERVICE_ERROR and AI_WORD.search(lower):
            return friendly

    if len(message) > GENERIC_LIMIT:
        message = message[:GENERIC_LIMIT] + "..."
    return FriendlyError(UNKNOWN.title, message)
