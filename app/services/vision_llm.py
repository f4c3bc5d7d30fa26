from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx
from loguru import logger

from app.core.config import settings
from app.core.errors import PromptGenerationError


FACE_SWAP_SYSTEM_PROMPT = (
    'You write simple face swap instructions for an image editing model.\n'
    'You will see reference images (faces to copy) and a target image (body/scene to keep).\n'
    'Write ONE sentence that tells the model to swap the {features} from the reference image onto the target image.\n'
    'For reference images: describe clothing or pose to identify the person.\n'
    "For target image: only mention simple setting or background, avoid describing the person's appearance.\n"
    'Use simple words. No technical terms. No bullet points or structured format.\n'
    'Example: "Take the {features} from the person in the first image who is wearing blue and perfectly put it '
    'on the person in the second image in the bedroom, keep everything else the same."'
)

TARGET_ONLY_SYSTEM_PROMPT = (
    'You write simple image enhancement instructions for an image editing model.\n'
    'You will see a target image that needs to be enhanced or edited.\n'
    'Write ONE sentence that tells the model to enhance or improve the image.\n'
    'Focus on general improvements like better lighting, clarity, composition, or style.\n'
    'Use simple words. No technical terms. No bullet points or structured format.'
)

ENHANCE_SYSTEM_PROMPT = (
    'You improve image editing prompts.\n'
    'You get an existing prompt and instructions from the user, and optionally the images it refers to.\n'
    'Rewrite the prompt so it follows the instructions while keeping its intent.\n'
    'Return only the new prompt as plain text, one or two sentences, no formatting.'
)

CAMERA_JARGON = ('lens', 'mm ', 'f/', 'iso ', 'bokeh', 'aperture', 'shutter', 'exposure', 'dof', 'hdr', 'anamorphic')
STRUCTURE_MARKERS = ('**', '###', 'Image Descriptions', 'Key Visual Features')


def _image_content(urls: List[str]) -> List[Dict[str, Any]]:
    return [{'type': 'image_url', 'image_url': {'url': u}} for u in urls]


def validate_generated_prompt(text: str):
    """
    Отбраковка ответов, которые ломают генерацию: жаргон камеры и markdown.
    """
    lowered = text.lower()
    jargon = [j.strip() for j in CAMERA_JARGON if j in lowered]
    if jargon:
        raise PromptGenerationError(f'Generated prompt contains camera jargon: {", ".join(jargon)}')
    if any(m in text for m in STRUCTURE_MARKERS):
        raise PromptGenerationError('Generated prompt is too detailed or structured')


class XaiVisionClient:
    def __init__(
            self,
            *,
            base_url: Optional[str] = None,
            api_key: Optional[str] = None,
            models: Optional[List[str]] = None,
            transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = (base_url or settings.XAI_API_BASE).rstrip('/')
        self.api_key = api_key if api_key is not None else settings.XAI_API_KEY
        self.models = models or list(settings.XAI_MODELS)
        self.transport = transport

    async def _complete(self, model: str, messages: List[Dict[str, Any]], *, temperature: float, max_tokens: int) -> str:
        timeout = httpx.Timeout(10.0, read=settings.PROMPT_LLM_TIMEOUT_S)
        async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
            response = await client.post(
                f'{self.base_url}/chat/completions',
                headers={'Authorization': f'Bearer {self.api_key}'},
                json={
                    'model': model,
                    'messages': messages,
                    'temperature': temperature,
                    'max_tokens': max_tokens,
                }
            )

        if response.status_code != 200:
            raise PromptGenerationError(f'{model} API error: {response.status_code} {response.text[:300]}')

        data = response.json()
        choices = data.get('choices') or []
        if not choices:
            raise PromptGenerationError(f'No response from {model} API')

        content = ((choices[0].get('message') or {}).get('content') or '').strip()
        if not content:
            raise PromptGenerationError(f'Empty prompt generated by {model}')
        return content

    async def _with_fallback(self, messages, *, temperature: float, max_tokens: int, validate: bool) -> str:
        if not self.api_key:
            raise PromptGenerationError('XAI_API_KEY is not set')

        errors = []
        for model in self.models:
            try:
                text = await self._complete(model, messages, temperature=temperature, max_tokens=max_tokens)
                if validate:
                    validate_generated_prompt(text)
                logger.info(f'[PromptQueue] {model} produced prompt ({len(text)} chars)')
                return text
            except (PromptGenerationError, httpx.RequestError, ValueError) as e:
                logger.warning(f'[PromptQueue] model {model} failed, trying next: {e}')
                errors.append(f'{model}: {e}')

        raise PromptGenerationError('Prompt generation failed: ' + '; '.join(errors))

    async def generate_prompt(
            self,
            *,
            ref_urls: List[str],
            target_url: str,
            swap_mode: str = 'face-hair'
    ) -> str:
        if not ref_urls:
            messages = [
                {'role': 'system', 'content': TARGET_ONLY_SYSTEM_PROMPT},
                {'role': 'user', 'content': [
                    {'type': 'text', 'text': 'Write one simple sentence for enhancing this image.'},
                    *_image_content([target_url]),
                ]},
            ]
            return await self._with_fallback(messages, temperature=0.7, max_tokens=100, validate=False)

        features = 'face' if swap_mode == 'face' else 'face and hair'
        plural = len(ref_urls) > 1
        instruction = (
            f'Write one simple sentence for face swapping. '
            f'The first {len(ref_urls)} image{"s" if plural else ""} '
            f'{"contain the faces" if plural else "contains the face"} to copy. '
            f'The last image is the target person. Mention {features} for better blending.'
        )
        messages = [
            {'role': 'system', 'content': FACE_SWAP_SYSTEM_PROMPT.format(features=features)},
            {'role': 'user', 'content': [
                {'type': 'text', 'text': instruction},
                *_image_content([*ref_urls, target_url]),
            ]},
        ]
        return await self._with_fallback(messages, temperature=0.3, max_tokens=600, validate=True)

    async def enhance_prompt(
            self,
            *,
            existing_prompt: str,
            user_instructions: str,
            ref_urls: Optional[List[str]] = None,
            target_url: Optional[str] = None
    ) -> str:
        images = [*(ref_urls or []), *([target_url] if target_url else [])]
        messages = [
            {'role': 'system', 'content': ENHANCE_SYSTEM_PROMPT},
            {'role': 'user', 'content': [
                {'type': 'text', 'text': f'Existing prompt: {existing_prompt}\nInstructions: {user_instructions}'},
                *_image_content(images),
            ]},
        ]
        return await self._with_fallback(messages, temperature=0.3, max_tokens=600, validate=False)
