"""Text Recognizer component backed by the Gemini API."""

import asyncio
import base64
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from .errors import ErrorKind, ScanError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = 'models/gemini-1.5-flash'
NO_TEXT_EXTRACTED = 'No text extracted'
NO_TEXT_FOUND = 'No text found in image'

# Preference order when several flash models are available
PREFERRED_MODEL_TAGS: list[str] = ['1.5-flash-002', '1.5-flash-latest']


@dataclass
class PromptIdea:
    """Image-generation prompt derived from extracted text."""
    title: str
    description: str
    prompt: str
    tags: list[str] = field(default_factory=list)


def pick_preferred_model(models: Iterable[Any]) -> Optional[str]:
    """Choose a model name from a capability listing.

    Keeps flash models that support ``generateContent``, then prefers
    each tag in PREFERRED_MODEL_TAGS in turn, else the first match.

    Args:
        models: Model descriptions with name, display_name and
            supported_generation_methods attributes.

    Returns:
        Selected model name or None if nothing qualifies.
    """
    flash_models = []
    for model in models:
        name = getattr(model, 'name', '') or ''
        display_name = (getattr(model, 'display_name', '') or '').lower()
        methods = getattr(model, 'supported_generation_methods', None) or []
        if ('flash' in name or 'flash' in display_name) and 'generateContent' in methods:
            flash_models.append(name)

    if not flash_models:
        return None

    for tag in PREFERRED_MODEL_TAGS:
        for name in flash_models:
            if tag in name:
                return name

    return flash_models[0]


def extract_response_text(response: Any) -> str:
    """Return the first candidate's first text part, or a placeholder."""
    candidates = getattr(response, 'candidates', None) or []
    if not candidates:
        return NO_TEXT_EXTRACTED

    content = getattr(candidates[0], 'content', None)
    parts = getattr(content, 'parts', None) or []
    if not parts:
        return NO_TEXT_EXTRACTED

    return getattr(parts[0], 'text', '') or NO_TEXT_EXTRACTED


def parse_prompt_idea(response_text: str) -> PromptIdea:
    """Parse the JSON object returned for a prompt request.

    Raises:
        ScanError: SERVICE_ERROR if the response holds no usable JSON.
    """
    try:
        json_match = re.search(r'\{.*\}', response_text, re.DOTALL)
        if not json_match:
            raise ValueError("No JSON found in response")
        data = json.loads(json_match.group())
    except (json.JSONDecodeError, ValueError) as e:
        raise ScanError(ErrorKind.SERVICE_ERROR, f"Invalid prompt response: {e}") from e

    tags = data.get('tags', [])
    if not isinstance(tags, list):
        tags = []

    return PromptIdea(
        title=str(data.get('title', '')),
        description=str(data.get('description', '')),
        prompt=str(data.get('prompt', '')),
        tags=[str(t) for t in tags]
    )


class TextRecognizer:
    """Extract text from images using Gemini."""

    EXTRACTION_PROMPT = (
        'Extract all text from this image. Provide the text exactly as it appears, '
        'maintaining the original formatting and structure as much as possible. '
        f'If there is no text in the image, say "{NO_TEXT_FOUND}".'
    )

    PROMPT_INSTRUCTION = """You are an expert prompt engineer for high-end image generation models.
Your task is to take text extracted from an OCR scan and turn it into a highly detailed, artistic and creative image generation prompt.

Strictly return a JSON object with the following fields:
- title: A creative title for the image in Traditional Chinese.
- description: A brief, artistic description of the scene in Traditional Chinese.
- prompt: A detailed English prompt for image generation.
- tags: An array of 5-8 relevant creative tags.

Analyze the tone, subject and keywords of the text provided to inspire the scene.

Extracted text to analyze:
{text}"""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        temperature: float = 0.1,
        max_output_tokens: int = 2048
    ) -> None:
        """Initialize text recognizer.

        Args:
            api_key: Gemini API key.
            model: Model name to use until select_model() picks another.
            temperature: Sampling temperature for extraction.
            max_output_tokens: Output length cap for extraction.
        """
        genai.configure(api_key=api_key)
        self.model = model
        self._temperature = temperature
        self._max_output_tokens = max_output_tokens

    async def select_model(self) -> str:
        """Pick the preferred flash model from the capability listing.

        Any failure keeps the current model.

        Returns:
            Model name now in use.
        """
        try:
            models = await asyncio.to_thread(lambda: list(genai.list_models()))
        except Exception as e:
            logger.error(f"Failed to fetch models: {e}")
            return self.model

        preferred = pick_preferred_model(models)
        if preferred:
            self.model = preferred
            logger.info(f"Selected model: {self.model}")
        return self.model

    async def extract(self, base64_payload: str, media_type: str) -> str:
        """Extract text from a base64-encoded image.

        Args:
            base64_payload: Image bytes, base64 encoded.
            media_type: MIME type of the image.

        Returns:
            Extracted text, or a placeholder if the response has none.

        Raises:
            ScanError: SERVICE_ERROR with the service's message.
        """
        contents = [
            self.EXTRACTION_PROMPT,
            {'mime_type': media_type, 'data': base64.b64decode(base64_payload)},
        ]
        generation_config = genai.GenerationConfig(
            temperature=self._temperature,
            max_output_tokens=self._max_output_tokens
        )

        response = await self._generate(contents, generation_config, 'API request failed')
        return extract_response_text(response)

    async def generate_prompt(self, text: str) -> PromptIdea:
        """Turn extracted text into an image-generation prompt.

        Args:
            text: Text from a previous scan.

        Returns:
            PromptIdea parsed from the model's JSON answer.
        """
        generation_config = genai.GenerationConfig(response_mime_type='application/json')
        response = await self._generate(
            self.PROMPT_INSTRUCTION.format(text=text),
            generation_config,
            'Failed to generate prompt'
        )
        return parse_prompt_idea(extract_response_text(response))

    async def _generate(self, contents: Any, generation_config: Any, fallback_message: str) -> Any:
        model = genai.GenerativeModel(self.model)
        try:
            return await model.generate_content_async(
                contents,
                generation_config=generation_config
            )
        except google_exceptions.GoogleAPICallError as e:
            logger.error(f"Gemini API error: {e}")
            raise ScanError(ErrorKind.SERVICE_ERROR, e.message or fallback_message) from e
        except Exception as e:
            logger.error(f"Gemini request failed: {e}")
            raise ScanError(ErrorKind.SERVICE_ERROR, str(e) or fallback_message) from e
