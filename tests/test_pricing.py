from __future__ import annotations

from dataclasses import replace

import pytest

from studio.modelspecs.registry import get_model, list_models
from studio.services.pricing import PricingError, PricingService


pricing = PricingService()


def cost(model_key: str, **options) -> int:
    return pricing.estimate(get_model(model_key), options)


@pytest.mark.parametrize(
    'model_key, options, expected',
    [
        ('nano-banana', {}, 2),
        ('flux-2', {'quality': '4k'}, 1),
        ('flash-scanner-v2.5', {}, 1),
        ('nano-banana-pro', {'quality': '2k'}, 5),
        ('nano-banana-pro', {'quality': '4k'}, 10),
        ('pro-scanner-v3', {'quality': '4k'}, 10),
        ('seedream-4.5', {'quality': '2k'}, 1),
        ('seedream-4.5', {'quality': '4k'}, 2),
        ('wan-2.5', {'resolution': '480p', 'duration': '5'}, 7),
        ('wan-2.5', {'resolution': '720p', 'duration': '10'}, 26),
        ('wan-2.5', {'resolution': '1080p', 'duration': '10'}, 40),
        ('kling-o3', {'duration': '3'}, 15),
        ('kling-o3', {'duration': '15'}, 60),
        ('kling-v3', {'duration': '5', 'generate_audio': 'off'}, 30),
        ('kling-v3', {'duration': '10', 'generate_audio': 'on'}, 80),
    ],
)
def test_price_tables(model_key, options, expected):
    assert cost(model_key, **options) == expected


def test_unknown_option_values_fall_back_to_defaults():
    assert cost('nano-banana-pro', quality='8k') == 5
    assert cost('wan-2.5', resolution='4k', duration='7') == 20


def test_breakdown_records_units_for_per_second_models():
    breakdown = pricing.resolve_cost(get_model('kling-v3'), {'duration': '4', 'generate_audio': 'on'})
    assert breakdown.per_unit == 8
    assert breakdown.units == 4
    assert breakdown.total == 32
    assert breakdown.as_dict()['modifiers'] == [{'key': 'audio_on', 'amount': 8}]


def test_every_catalogue_model_has_a_positive_default_price():
    for model in list_models():
        assert pricing.estimate(model, {}) > 0, model.key


def test_model_without_prices_is_rejected():
    model = get_model('flux-2')
    broken = replace(model, prices={})
    with pytest.raises(PricingError):
        pricing.resolve_cost(broken, {})
