from __future__ import annotations

from typing import Any, Dict, List

from studio.modelspecs.base import ModelSpec, aspect_option, quality_option


ASPECT_INSTRUCTIONS: Dict[str, str] = {
    '1:1': 'square format (1:1 aspect ratio)',
    '2:3': 'portrait format (2:3 aspect ratio)',
    '3:2': 'landscape format (3:2 aspect ratio)',
    '4:5': 'portrait format (4:5 aspect ratio)',
    '3:4': 'portrait format (3:4 aspect ratio)',
    '4:3': 'landscape format (4:3 aspect ratio)',
    '9:16': 'tall portrait format (9:16 aspect ratio)',
    '16:9': 'wide landscape format (16:9 aspect ratio)',
}


def enhanced_prompt(prompt: str, options: Dict[str, Any]) -> str:
    aspect = ASPECT_INSTRUCTIONS.get(options.get('aspect_ratio', '1:1'), 'square format')
    if options.get('quality') == '4k':
        quality = 'ultra high resolution, 4K quality, extremely detailed'
    else:
        quality = 'high resolution, detailed'
    return f'Generate an image in {aspect}, {quality}. {prompt}'


def build_gemini(
    spec: ModelSpec, prompt: str, options: Dict[str, Any], refs: List[str], extras: Dict[str, Any]
) -> Dict[str, Any]:
    # Reference URLs are resolved to inline bytes by the adapter.
    return {
        'prompt': enhanced_prompt(prompt, options),
        'reference_urls': refs,
    }


PRO_SCANNER_V3 = ModelSpec(
    key='pro-scanner-v3',
    provider='gemini',
    adapter='gemini',
    model_id='gemini-3-pro-image-preview',
    model_type='image',
    display_name='Pro Scanner v3',
    tagline='Direct Gemini API. 5 tickets at 2K, 10 at 4K.',
    options=[aspect_option(), quality_option()],
    prices={'quality_2k': 5, 'quality_4k': 10},
    supports_reference_images=True,
    payload_builder=build_gemini,
)


FLASH_SCANNER_V25 = ModelSpec(
    key='flash-scanner-v2.5',
    provider='gemini',
    adapter='gemini',
    model_id='gemini-2.5-flash-image',
    model_type='image',
    display_name='Flash Scanner v2.5',
    tagline='Direct Gemini API. Fast generation.',
    options=[aspect_option(), quality_option()],
    prices={'base': 1},
    supports_reference_images=True,
    payload_builder=build_gemini,
)
