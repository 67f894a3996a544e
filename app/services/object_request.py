"""Validation and prompt composition for 3-D object requests."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping

from app.services.object_providers.errors import InvalidInput

MAX_PROMPT_CHARS = 1200
MAX_OPTION_CHARS = 80
DEFAULT_MATERIAL = "metallic"
DEFAULT_LIGHTING = "studio"
DEFAULT_DETAIL = 70
MIN_DETAIL = 20
MAX_DETAIL = 100

MATERIAL_HINTS = {
    "metallic": "polished metal surfaces with crisp specular highlights",
    "matte": "soft matte finish with diffuse, non-reflective surfaces",
    "glass": "transparent glass with subtle refraction and clean edges",
    "wood": "natural wood grain with warm satin finish",
    "plastic": "smooth injection-moulded plastic with even gloss",
    "ceramic": "glazed ceramic with gentle reflections",
    "fabric": "woven fabric with visible soft texture",
    "leather": "fine leather with stitched seams and subtle creases",
    "stone": "carved stone with natural porous texture",
    "holographic": "iridescent holographic coating shifting across the surface",
}

LIGHTING_HINTS = {
    "studio": "three-point studio lighting on a neutral backdrop",
    "natural": "soft natural daylight with gentle shadows",
    "dramatic": "high-contrast dramatic key light with deep shadows",
    "neon": "vibrant neon rim lights with coloured reflections",
    "sunset": "warm golden-hour sunlight",
    "soft": "diffuse softbox lighting with minimal shadows",
    "cinematic": "cinematic volumetric lighting",
}

STYLE_DIRECTIVES = (
    "Single centred object, physically based materials, clean watertight topology, "
    "high-fidelity textures, production-ready 3D asset."
)


@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    material: str
    lighting: str
    material_hint: str
    lighting_hint: str
    detail: int
    product_reference: str | None = None
    brand_reference: str | None = None

    @property
    def composed_prompt(self) -> str:
        return compose_prompt(self)


def _clean_option(value: Any, default: str) -> str:
    if not isinstance(value, str):
        return default
    text = " ".join(value.split()).lower()[:MAX_OPTION_CHARS].strip()
    return text or default


def _coerce_detail(value: Any) -> int:
    number: float
    if isinstance(value, bool):
        number = float("nan")
    elif isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            number = float("nan")
    else:
        number = float("nan")

    if not math.isfinite(number):
        number = DEFAULT_DETAIL
    clamped = min(max(number, MIN_DETAIL), MAX_DETAIL)
    return int(math.floor(clamped + 0.5))


def _clean_reference(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    text = value.strip()
    return text or None


def normalize_request(body: Any) -> GenerationRequest:
    """Build a :class:`GenerationRequest` from an untyped JSON body."""

    if not isinstance(body, Mapping):
        raise InvalidInput("Request body must be a JSON object.")

    raw_prompt = body.get("prompt")
    if not isinstance(raw_prompt, str):
        raise InvalidInput("Provide a valid prompt to generate the object.")
    prompt = " ".join(raw_prompt.split())[:MAX_PROMPT_CHARS].strip()
    if not prompt:
        raise InvalidInput("Provide a valid prompt to generate the object.")

    material = _clean_option(body.get("material"), DEFAULT_MATERIAL)
    lighting = _clean_option(body.get("lighting"), DEFAULT_LIGHTING)

    references = body.get("references")
    if not isinstance(references, Mapping):
        references = {}

    return GenerationRequest(
        prompt=prompt,
        material=material,
        lighting=lighting,
        material_hint=MATERIAL_HINTS.get(material, material),
        lighting_hint=LIGHTING_HINTS.get(lighting, lighting),
        detail=_coerce_detail(body.get("detail")),
        product_reference=_clean_reference(references.get("product")),
        brand_reference=_clean_reference(references.get("brand")),
    )


def compose_prompt(request: GenerationRequest) -> str:
    parts = [
        request.prompt,
        f"Material: {request.material_hint}.",
        f"Lighting: {request.lighting_hint}.",
        f"Detail level: {request.detail}/100.",
        STYLE_DIRECTIVES,
    ]
    return " ".join(parts)


__all__ = [
    "GenerationRequest",
    "InvalidInput",
    "LIGHTING_HINTS",
    "MATERIAL_HINTS",
    "compose_prompt",
    "normalize_request",
]
