import io
import logging
from typing import Callable, List, Optional, Sequence

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, Field, ValidationError

from errors import (
    CredentialMissing,
    FallbackImageEncodingFailed,
    InvalidResponse,
    NetworkError,
    NoNamesFound,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash"
MAX_IMAGE_SIDE = 2048

NAME_PROMPT = """You are an OCR system that extracts handwritten names from classroom sign-in sheets.

RULES:
- Return ONLY the handwritten student names, one name per line
- Do NOT include numbering, bullets, headings, dates, signatures or any introductory text
- Do not hallucinate names that are not written on the sheet
- Preserve the order in which names appear on the sheet
"""

CONTEXT_TEMPLATE = """
These students have not been recognised yet. Names on the sheet are most likely
spelled like one of them, so use this list to disambiguate hard-to-read handwriting:
{names}
"""


# ── Response schema ───────────────────────────────────────────────────────────

class ReplyPart(BaseModel):
    text: Optional[str] = None


class ReplyContent(BaseModel):
    parts: List[ReplyPart] = Field(min_length=1)


class ReplyCandidate(BaseModel):
    content: ReplyContent


class GeminiReply(BaseModel):
    """The slice of a generate_content response we rely on."""
    candidates: List[ReplyCandidate] = Field(min_length=1)

    @property
    def text(self) -> str:
        return "".join(p.text or "" for p in self.candidates[0].content.parts)


def build_prompt(context_names: Sequence[str]) -> str:
    if not context_names:
        return NAME_PROMPT
    listing = "\n".join(f"- {n}" for n in context_names)
    return NAME_PROMPT + CONTEXT_TEMPLATE.format(names=listing)


def parse_names(text: str) -> List[str]:
    """One name per non-empty line."""
    return [ln.strip() for ln in text.splitlines() if ln.strip()]


def _prepare_image(image_bytes: bytes) -> Image.Image:
    if not image_bytes:
        raise FallbackImageEncodingFailed("no image data")
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img = img.convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        raise FallbackImageEncodingFailed(str(e)) from e
    img.thumbnail((MAX_IMAGE_SIDE, MAX_IMAGE_SIDE))
    return img


def _default_model_factory(api_key: str, model_name: str):
    genai.configure(api_key=api_key)
    return genai.GenerativeModel(model_name)


class GeminiNameService:
    """Fallback recogniser: Gemini Vision reads the names the local OCR missed."""

    def __init__(self, secrets, model_name: str = DEFAULT_MODEL,
                 model_factory: Callable = _default_model_factory):
        self.secrets = secrets
        self.model_name = model_name
        self.model_factory = model_factory

    def is_configured(self) -> bool:
        return bool(self.secrets.get_credential())

    def recognize_names(self, image_bytes: bytes, context_names: Sequence[str]) -> List[str]:
        api_key = self.secrets.get_credential()
        if not api_key:
            raise CredentialMissing()

        img = _prepare_image(image_bytes)
        model = self.model_factory(api_key, self.model_name)

        try:
            response = model.generate_content(
                [build_prompt(context_names), img],
                generation_config=genai.types.GenerationConfig(temperature=0.0),
            )
        except (google_exceptions.GoogleAPIError, OSError) as e:
            logger.warning("Gemini request failed: %s", e)
            raise NetworkError(str(e)) from e

        try:
            reply = GeminiReply.model_validate(response.to_dict())
        except (ValidationError, AttributeError, TypeError) as e:
            raise InvalidResponse(str(e)) from e

        names = parse_names(reply.text)
        if not names:
            raise NoNamesFound()

        logger.info("Gemini returned %d names (%d given as context)", len(names), len(context_names))
        return names
