from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional


@dataclass
class OptionValue:
    value: str
    label: str
    price_key: str


@dataclass
class OptionSpec:
    key: str
    label: str
    values: List[OptionValue]
    default: str
    required: bool = True


PayloadBuilder = Callable[['ModelSpec', str, Dict[str, Any], List[str], Dict[str, Any]], Dict[str, Any]]


@dataclass
class ModelSpec:
    key: str
    provider: str
    adapter: str
    model_id: str
    model_type: str
    display_name: str
    options: List[OptionSpec]
    prices: Dict[str, int]
    # Options whose selected values compose a ``bundle_<a>_<b>`` price key.
    bundle_options: List[str] = field(default_factory=list)
    # Option holding a duration in seconds that multiplies the unit price.
    per_second_option: Optional[str] = None
    edit_model_id: Optional[str] = None
    supports_reference_images: bool = False
    requires_reference_images: bool = False
    image_input_key: str = 'image_urls'
    max_reference_images: int = 8
    outputs_per_call: int = 1
    passthrough_keys: List[str] = field(default_factory=list)
    payload_builder: Optional[PayloadBuilder] = None
    tagline: str = ''

    def option_by_key(self, key: str) -> Optional[OptionSpec]:
        for opt in self.options:
            if opt.key == key:
                return opt
        return None

    def validate_options(self, options: Dict[str, Any]) -> Dict[str, str]:
        validated: Dict[str, str] = {}
        for opt in self.options:
            value = options.get(opt.key, opt.default)
            value = str(value) if value is not None else opt.default
            allowed = {v.value for v in opt.values}
            if value not in allowed:
                value = opt.default
            validated[opt.key] = value
        return validated

    def extract_extras(self, params: Dict[str, Any]) -> Dict[str, Any]:
        extras: Dict[str, Any] = {}
        for key in self.passthrough_keys:
            value = params.get(key)
            if isinstance(value, str) and value.strip():
                extras[key] = value.strip()
        return extras

    def limit_references(self, urls: List[str] | None) -> List[str]:
        if not (self.supports_reference_images or self.requires_reference_images):
            return []
        cleaned = [u.strip() for u in (urls or []) if isinstance(u, str) and u.strip()]
        return cleaned[: self.max_reference_images]

    def endpoint_for(self, image_inputs: List[str] | None) -> str:
        if image_inputs and self.edit_model_id:
            return self.edit_model_id
        return self.model_id

    def build_input(
        self,
        prompt: str,
        options: Dict[str, Any],
        image_inputs: Optional[List[str]] = None,
        extras: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        refs = list(image_inputs or [])
        if self.payload_builder is not None:
            return self.payload_builder(self, prompt, options, refs, dict(extras or {}))
        payload: Dict[str, Any] = {'prompt': prompt}
        for opt in self.options:
            payload[opt.key] = options.get(opt.key, opt.default)
        if (self.supports_reference_images or self.requires_reference_images) and refs:
            payload[self.image_input_key] = refs
        payload.update(extras or {})
        return payload


ASPECT_RATIOS = ['1:1', '2:3', '3:2', '3:4', '4:3', '4:5', '9:16', '16:9']


def aspect_option(default: str = '1:1', values: List[str] | None = None) -> OptionSpec:
    return OptionSpec(
        key='aspect_ratio',
        label='Aspect ratio',
        default=default,
        values=[OptionValue(v, v, f"aspect_{v.replace(':', '_')}") for v in (values or ASPECT_RATIOS)],
    )


def quality_option(default: str = '2k') -> OptionSpec:
    return OptionSpec(
        key='quality',
        label='Quality',
        default=default,
        values=[
            OptionValue('2k', '2K', 'quality_2k'),
            OptionValue('4k', '4K', 'quality_4k'),
        ],
    )


def duration_option(seconds: List[int], default: int) -> OptionSpec:
    return OptionSpec(
        key='duration',
        label='Duration',
        default=str(default),
        values=[OptionValue(str(s), f'{s}s', f'duration_{s}') for s in seconds],
    )
