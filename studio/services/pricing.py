from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from studio.modelspecs.base import ModelSpec
from studio.utils.text import lowered


class PricingError(ValueError):
    pass


@dataclass
class PriceBreakdown:
    base: int
    modifiers: List[Tuple[str, int]] = field(default_factory=list)
    per_unit: int = 0
    units: int = 1
    total: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            'base': self.base,
            'modifiers': [{'key': key, 'amount': amount} for key, amount in self.modifiers],
            'per_unit': self.per_unit,
            'units': self.units,
            'total': self.total,
        }


class PricingService:
    """Deterministic ticket pricing from each model's static price table.

    The total is snapshotted onto the job at reservation time and never
    recomputed, so changing a table only affects new generations.
    """

    def resolve_cost(self, model: ModelSpec, options: Dict[str, Any]) -> PriceBreakdown:
        options = model.validate_options(options)
        prices = model.prices

        per_unit: int | None = None
        base = 0
        modifiers: List[Tuple[str, int]] = []

        if model.bundle_options:
            bundle_key = 'bundle_' + '_'.join(lowered(options.get(key)) for key in model.bundle_options)
            if bundle_key in prices:
                base = prices[bundle_key]
                per_unit = base

        if per_unit is None:
            base = prices.get('base', 0)
            for opt in model.options:
                val = options.get(opt.key, opt.default)
                price_key = None
                for v in opt.values:
                    if v.value == val:
                        price_key = v.price_key
                        break
                if price_key and price_key in prices:
                    modifiers.append((price_key, prices[price_key]))
            per_unit = base + sum(x[1] for x in modifiers)

        units = 1
        if model.per_second_option:
            try:
                units = int(options.get(model.per_second_option) or 0)
            except (TypeError, ValueError):
                units = 0
            if units <= 0:
                raise PricingError(f'invalid duration for {model.key}')

        total = per_unit * units
        if total <= 0:
            raise PricingError(f'no price configured for {model.key}')
        return PriceBreakdown(base=base, modifiers=modifiers, per_unit=per_unit, units=units, total=total)

    def estimate(self, model: ModelSpec, options: Dict[str, Any]) -> int:
        return self.resolve_cost(model, options).total
