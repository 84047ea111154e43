from __future__ import annotations

from typing import Dict, List

from studio.modelspecs.base import ModelSpec
from studio.modelspecs.flux import FLUX_2
from studio.modelspecs.gemini import FLASH_SCANNER_V25, PRO_SCANNER_V3
from studio.modelspecs.nano_banana import NANO_BANANA, NANO_BANANA_PRO
from studio.modelspecs.seedream import SEEDREAM_45
from studio.modelspecs.video import KLING_O3, KLING_V3, WAN_25


MODEL_SPECS: Dict[str, ModelSpec] = {
    NANO_BANANA.key: NANO_BANANA,
    NANO_BANANA_PRO.key: NANO_BANANA_PRO,
    SEEDREAM_45.key: SEEDREAM_45,
    FLUX_2.key: FLUX_2,
    PRO_SCANNER_V3.key: PRO_SCANNER_V3,
    FLASH_SCANNER_V25.key: FLASH_SCANNER_V25,
    WAN_25.key: WAN_25,
    KLING_O3.key: KLING_O3,
    KLING_V3.key: KLING_V3,
}


def list_models() -> List[ModelSpec]:
    return list(MODEL_SPECS.values())


def get_model(key: str) -> ModelSpec | None:
    return MODEL_SPECS.get(key)
