from __future__ import annotations

from typing import Any, Dict, List

from studio.modelspecs.base import ModelSpec, OptionSpec, OptionValue, aspect_option, duration_option


KLING_DURATIONS = list(range(3, 16))


def audio_option() -> OptionSpec:
    return OptionSpec(
        key='generate_audio',
        label='Audio',
        default='off',
        values=[
            OptionValue('off', 'No audio', 'audio_off'),
            OptionValue('on', 'With audio', 'audio_on'),
        ],
    )


def build_wan(
    spec: ModelSpec, prompt: str, options: Dict[str, Any], refs: List[str], extras: Dict[str, Any]
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        'prompt': prompt,
        'image_url': refs[0] if refs else None,
        'resolution': options.get('resolution', '1080p'),
        'duration': options.get('duration', '5'),
        'enable_prompt_expansion': True,
        'enable_safety_checker': False,
    }
    if extras.get('audio_url'):
        payload['audio_url'] = extras['audio_url']
    return payload


def build_kling_o3(
    spec: ModelSpec, prompt: str, options: Dict[str, Any], refs: List[str], extras: Dict[str, Any]
) -> Dict[str, Any]:
    return {
        'prompt': prompt,
        'image_url': refs[0] if refs else None,
        'duration': str(options.get('duration', '5')),
        'generate_audio': options.get('generate_audio') == 'on',
    }


def build_kling_v3(
    spec: ModelSpec, prompt: str, options: Dict[str, Any], refs: List[str], extras: Dict[str, Any]
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        'prompt': prompt,
        'start_image_url': refs[0] if refs else None,
        'duration': str(options.get('duration', '5')),
        'aspect_ratio': options.get('aspect_ratio', '16:9'),
        'generate_audio': options.get('generate_audio') == 'on',
    }
    if extras.get('end_image_url'):
        payload['end_image_url'] = extras['end_image_url']
    return payload


WAN_25 = ModelSpec(
    key='wan-2.5',
    provider='fal',
    adapter='fal_video',
    model_id='fal-ai/wan-25-preview/image-to-video',
    model_type='video',
    display_name='WAN 2.5',
    options=[
        OptionSpec(
            key='resolution',
            label='Resolution',
            default='1080p',
            values=[
                OptionValue('480p', '480p', 'resolution_480p'),
                OptionValue('720p', '720p', 'resolution_720p'),
                OptionValue('1080p', '1080p', 'resolution_1080p'),
            ],
        ),
        duration_option([5, 10], default=5),
    ],
    prices={
        'bundle_480p_5': 7,
        'bundle_480p_10': 14,
        'bundle_720p_5': 13,
        'bundle_720p_10': 26,
        'bundle_1080p_5': 20,
        'bundle_1080p_10': 40,
    },
    bundle_options=['resolution', 'duration'],
    requires_reference_images=True,
    image_input_key='image_url',
    max_reference_images=1,
    passthrough_keys=['audio_url'],
    payload_builder=build_wan,
)


KLING_O3 = ModelSpec(
    key='kling-o3',
    provider='fal',
    adapter='fal_video',
    model_id='fal-ai/kling-video/o3/standard/image-to-video',
    model_type='video',
    display_name='Kling O3',
    options=[duration_option(KLING_DURATIONS, default=5), audio_option()],
    prices={
        'bundle_3': 15, 'bundle_4': 18, 'bundle_5': 20, 'bundle_6': 24, 'bundle_7': 28,
        'bundle_8': 32, 'bundle_9': 36, 'bundle_10': 40, 'bundle_11': 44, 'bundle_12': 48,
        'bundle_13': 52, 'bundle_14': 56, 'bundle_15': 60,
    },
    bundle_options=['duration'],
    requires_reference_images=True,
    image_input_key='image_url',
    max_reference_images=1,
    payload_builder=build_kling_o3,
)


KLING_V3 = ModelSpec(
    key='kling-v3',
    provider='fal',
    adapter='fal_video',
    model_id='fal-ai/kling-video/v3/pro/image-to-video',
    model_type='video',
    display_name='Kling V3 Pro',
    options=[
        duration_option(KLING_DURATIONS, default=5),
        audio_option(),
        aspect_option(default='16:9', values=['16:9', '9:16', '1:1']),
    ],
    prices={'audio_off': 6, 'audio_on': 8},
    per_second_option='duration',
    requires_reference_images=True,
    image_input_key='start_image_url',
    max_reference_images=1,
    passthrough_keys=['end_image_url'],
    payload_builder=build_kling_v3,
)
