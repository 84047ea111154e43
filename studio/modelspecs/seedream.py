from __future__ import annotations

from typing import Any, Dict, List

from studio.modelspecs.base import ModelSpec, aspect_option, quality_option


BASE_SIZES: Dict[str, Dict[str, int]] = {
    '1:1': {'width': 1024, 'height': 1024},
    '4:5': {'width': 896, 'height': 1152},
    '3:4': {'width': 896, 'height': 1152},
    '2:3': {'width': 896, 'height': 1344},
    '9:16': {'width': 768, 'height': 1344},
    '16:9': {'width': 1344, 'height': 768},
    '3:2': {'width': 1344, 'height': 896},
    '4:3': {'width': 1152, 'height': 896},
}


def image_size_for(aspect_ratio: str, quality: str) -> Dict[str, int]:
    multiplier = 2 if quality == '4k' else 1
    base = BASE_SIZES.get(aspect_ratio) or BASE_SIZES['1:1']
    return {'width': base['width'] * multiplier, 'height': base['height'] * multiplier}


def build_seedream(
    spec: ModelSpec, prompt: str, options: Dict[str, Any], refs: List[str], extras: Dict[str, Any]
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        'prompt': prompt,
        'image_size': image_size_for(options.get('aspect_ratio', '1:1'), options.get('quality', '2k')),
        'num_images': 1,
        'max_images': 1,
        'enable_safety_checker': False,
    }
    if refs:
        payload['image_urls'] = refs
    return payload


SEEDREAM_45 = ModelSpec(
    key='seedream-4.5',
    provider='fal',
    adapter='fal_sync',
    model_id='fal-ai/bytedance/seedream/v4.5/text-to-image',
    edit_model_id='fal-ai/bytedance/seedream/v4.5/edit',
    model_type='image',
    display_name='SeeDream 4.5',
    tagline='Premium quality with excellent text rendering.',
    options=[aspect_option(), quality_option()],
    prices={'quality_2k': 1, 'quality_4k': 2},
    supports_reference_images=True,
    payload_builder=build_seedream,
)
