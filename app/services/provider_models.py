"""
Модели провайдера и сборка тела запроса.

Каждое семейство моделей описывается отдельной стратегией, реестр
MODEL_BUILDERS выбирает её по generation_model.
"""
from dataclasses import dataclass, field
from math import gcd
from typing import Any, Dict, List, Optional, Protocol

from loguru import logger

from app.core.config import settings
from app.services.error_taxonomy import MIN_DIMENSION, MAX_DIMENSION


DEFAULT_DIMENSION = 4096

# (ratio, label) - сравнение с допуском 0.01
ASPECT_RATIOS = [
    (1.0, '1:1'),
    (1.5, '3:2'),
    (0.667, '2:3'),
    (0.75, '3:4'),
    (1.333, '4:3'),
    (0.8, '4:5'),
    (1.25, '5:4'),
    (0.5625, '9:16'),
    (1.778, '16:9'),
    (2.333, '21:9'),
]


def clamp_dimension(value: Optional[int]) -> int:
    if not value:
        value = DEFAULT_DIMENSION
    return max(MIN_DIMENSION, min(MAX_DIMENSION, int(value)))


def dimensions_to_aspect_ratio(width: int, height: int) -> str:
    divisor = gcd(width, height) or 1
    w, h = width // divisor, height // divisor
    ratio = w / h
    for target, label in ASPECT_RATIOS:
        if abs(ratio - target) < 0.01:
            return label
    return f'{w}:{h}'


def dimensions_to_resolution(width: int, height: int) -> str:
    longest = max(width, height)
    if longest <= 1024:
        return '1k'
    if longest <= 2048:
        return '2k'
    return '4k'


@dataclass
class ProviderRequest:
    endpoint: str
    body: Dict[str, Any] = field(default_factory=dict)


class PayloadBuilder(Protocol):
    model_id: str
    endpoint: str

    def build(self, *, prompt: str, images: List[str], width: int, height: int) -> ProviderRequest:
        ...


class ResolutionAspectPayload:
    """
    resolution (1k/2k/4k) + aspect_ratio.
    """

    def __init__(self, model_id: str, endpoint: str, output_format: str = 'png'):
        self.model_id = model_id
        self.endpoint = endpoint
        self.output_format = output_format

    def build(self, *, prompt: str, images: List[str], width: int, height: int) -> ProviderRequest:
        return ProviderRequest(
            endpoint=self.endpoint,
            body={
                'prompt': prompt,
                'images': images,
                'resolution': dimensions_to_resolution(width, height),
                'aspect_ratio': dimensions_to_aspect_ratio(width, height),
                'output_format': self.output_format,
                'enable_sync_mode': False,
                'enable_base64_output': False,
            }
        )


class SizePayload:
    """
    size = "W*H".
    """

    def __init__(self, model_id: str, endpoint: str):
        self.model_id = model_id
        self.endpoint = endpoint

    def build(self, *, prompt: str, images: List[str], width: int, height: int) -> ProviderRequest:
        return ProviderRequest(
            endpoint=self.endpoint,
            body={
                'prompt': prompt,
                'images': images,
                'size': f'{width}*{height}',
                'enable_sync_mode': False,
                'enable_base64_output': False,
            }
        )


MODEL_BUILDERS: Dict[str, PayloadBuilder] = {
    'nano-banana-pro-edit': ResolutionAspectPayload(
        'nano-banana-pro-edit',
        '/api/v3/google/nano-banana-pro/edit'
    ),
    'seedream-v4-edit': SizePayload(
        'seedream-v4-edit',
        '/api/v3/bytedance/seedream-v4/edit'
    ),
}


def get_payload_builder(model_id: Optional[str]) -> PayloadBuilder:
    builder = MODEL_BUILDERS.get(model_id or '')
    if builder:
        return builder
    if model_id:
        logger.warning(f'[WaveSpeed] unknown model {model_id!r}, using {settings.DEFAULT_GENERATION_MODEL}')
    return MODEL_BUILDERS[settings.DEFAULT_GENERATION_MODEL]


def build_provider_request(
        *,
        model_id: Optional[str],
        prompt: str,
        ref_urls: List[str],
        target_url: str,
        width: Optional[int],
        height: Optional[int]
) -> ProviderRequest:
    """
    Картинки всегда в порядке: референсы, затем target.
    """
    images = [*ref_urls, target_url]
    return get_payload_builder(model_id).build(
        prompt=prompt,
        images=images,
        width=clamp_dimension(width),
        height=clamp_dimension(height)
    )
