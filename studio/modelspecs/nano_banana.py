from __future__ import annotations

from typing import Any, Dict, List

from studio.modelspecs.base import ModelSpec, aspect_option, quality_option


def _resolution(options: Dict[str, Any]) -> str:
    return '4K' if options.get('quality') == '4k' else '2K'


def build_nano_banana_pro(
    spec: ModelSpec, prompt: str, options: Dict[str, Any], refs: List[str], extras: Dict[str, Any]
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        'prompt': prompt,
        'num_images': 1,
        'aspect_ratio': options.get('aspect_ratio', '1:1'),
        'resolution': _resolution(options),
        'output_format': 'png',
        'limit_generations': True,
    }
    if refs:
        payload['image_urls'] = refs
    return payload


def build_nano_banana(
    spec: ModelSpec, prompt: str, options: Dict[str, Any], refs: List[str], extras: Dict[str, Any]
) -> Dict[str, Any]:
    return {
        'prompt': prompt,
        'num_images': spec.outputs_per_call,
        'aspect_ratio': options.get('aspect_ratio', '1:1'),
        'resolution': _resolution(options),
    }


NANO_BANANA = ModelSpec(
    key='nano-banana',
    provider='fal',
    adapter='fal_queue',
    model_id='fal-ai/nano-banana',
    model_type='image',
    display_name='NanoBanana Cluster',
    tagline='Fast, artistic generation. Two images per run.',
    options=[aspect_option(), quality_option()],
    prices={'base': 2},
    outputs_per_call=2,
    payload_builder=build_nano_banana,
)


NANO_BANANA_PRO = ModelSpec(
    key='nano-banana-pro',
    provider='fal',
    adapter='fal_sync',
    model_id='fal-ai/nano-banana-pro',
    edit_model_id='fal-ai/nano-banana-pro/edit',
    model_type='image',
    display_name='NanoBanana Pro',
    tagline='Premium quality. Reference images supported.',
    options=[aspect_option(), quality_option()],
    prices={'quality_2k': 5, 'quality_4k': 10},
    supports_reference_images=True,
    max_reference_images=8,
    payload_builder=build_nano_banana_pro,
)
