from __future__ import annotations

from typing import Any, Dict, List

from studio.modelspecs.base import ModelSpec, aspect_option, quality_option


SIZE_ENUMS: Dict[str, str] = {
    '1:1': 'square_hd',
    '4:3': 'landscape_4_3',
    '3:4': 'portrait_4_3',
    '16:9': 'landscape_16_9',
    '9:16': 'portrait_16_9',
}

UHD_SIZES: Dict[str, Dict[str, int]] = {
    '1:1': {'width': 1536, 'height': 1536},
    '4:5': {'width': 1344, 'height': 1680},
    '3:4': {'width': 1344, 'height': 1792},
    '9:16': {'width': 1080, 'height': 1920},
    '16:9': {'width': 1920, 'height': 1080},
    '4:3': {'width': 1792, 'height': 1344},
    '3:2': {'width': 1920, 'height': 1280},
}


def build_flux(
    spec: ModelSpec, prompt: str, options: Dict[str, Any], refs: List[str], extras: Dict[str, Any]
) -> Dict[str, Any]:
    aspect = options.get('aspect_ratio', '1:1')
    if options.get('quality') == '4k':
        image_size: Any = dict(UHD_SIZES.get(aspect) or UHD_SIZES['1:1'])
    else:
        image_size = SIZE_ENUMS.get(aspect, 'square_hd')
    payload: Dict[str, Any] = {
        'prompt': prompt,
        'image_size': image_size,
        'num_images': 1,
        'output_format': 'png',
        'enable_safety_checker': False,
        'guidance_scale': 2.5,
        'num_inference_steps': 28,
    }
    if refs:
        payload['image_urls'] = refs
    return payload


FLUX_2 = ModelSpec(
    key='flux-2',
    provider='fal',
    adapter='fal_sync',
    model_id='fal-ai/flux-2',
    edit_model_id='fal-ai/flux-2/edit',
    model_type='image',
    display_name='FLUX 2',
    options=[aspect_option(), quality_option()],
    prices={'base': 1},
    supports_reference_images=True,
    max_reference_images=4,
    payload_builder=build_flux,
)
