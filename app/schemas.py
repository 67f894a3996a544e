from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _ApiModel(BaseModel):
    """Accept both snake_case and the camelCase names used on the wire."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ObjectReferences(_ApiModel):
    product: Optional[str] = Field(None, description="Product photo: http(s) URL or base64 data URI")
    brand: Optional[str] = Field(None, description="Brand logo: http(s) URL or base64 data URI")


class GenerateObjectRequest(_ApiModel):
    """Documented request shape; the handler validates the raw body itself."""

    prompt: str = Field(..., description="Description of the object to generate")
    material: Optional[str] = Field(None, description="Material preset, e.g. metallic")
    lighting: Optional[str] = Field(None, description="Lighting preset, e.g. studio")
    detail: Optional[float] = Field(None, description="Detail level, clamped to 20-100")
    references: Optional[ObjectReferences] = None


class RenderItemModel(_ApiModel):
    url: str
    provider: str
    format: Optional[str] = None
    angle: Optional[str] = None


class DownloadItemModel(_ApiModel):
    url: str
    type: str = Field(..., description="glb | gltf | obj | usdz | fbx | stl | zip | model")
    provider: str


class GenerateObjectResponse(_ApiModel):
    provider: str = Field(..., description="Provider whose result is returned")
    providers_tried: List[str] = Field(..., alias="providersTried")
    renders: List[RenderItemModel] = Field(default_factory=list)
    downloads: Optional[List[DownloadItemModel]] = None
    notes: Optional[List[str]] = None


class ErrorResponse(_ApiModel):
    error: str
    details: Optional[List[str]] = None


class GenerateImageRequest(_ApiModel):
    prompt: str = Field(..., description="Text prompt")
    provider: Optional[str] = Field(None, description="openai | flux | merse; anything else means openai")
    count: int = Field(1, description="Number of images, capped to 1-4")
    aspect_ratio: Optional[str] = Field(None, alias="aspectRatio", description="e.g. 1:1, 16:9")
    stylization: Optional[float] = Field(None, description="Creative intensity 0-100")
    reference_image: Optional[str] = Field(
        None, alias="referenceImage", description="Guide image: http(s) URL or base64 data URI"
    )


class GenerateImageResponse(_ApiModel):
    image_url: str = Field(..., alias="imageUrl")
    images: List[str]
    seeds: List[Any]
    provider: str


class GenerateVideoRequest(_ApiModel):
    prompt: str = Field(..., description="Text prompt")
    provider: Optional[str] = Field(None, description="veo | sora | merse; anything else means veo")
    aspect_ratio: Optional[str] = Field(None, alias="aspectRatio", description="16:9, 9:16 or any W:H ratio")
    duration: Optional[float] = Field(None, description="Requested length in seconds, snapped per provider")
    reference_image: Optional[str] = Field(
        None, alias="referenceImage", description="Guide image: http(s) URL or base64 data URI"
    )


class GenerateVideoResponse(_ApiModel):
    video_url: str = Field(..., alias="videoUrl")
    cover: Optional[str] = None
    duration: Optional[float] = None
    provider: str


def inline_json_schema(model: type[BaseModel]) -> dict[str, Any]:
    """JSON schema of *model* with every ``$defs`` reference expanded in place."""

    schema = model.model_json_schema(by_alias=True)
    definitions = schema.pop("$defs", {})

    def expand(node: Any) -> Any:
        if isinstance(node, dict):
            ref = node.get("$ref")
            if isinstance(ref, str) and ref.startswith("#/$defs/"):
                return expand(definitions[ref.rsplit("/", 1)[-1]])
            return {key: expand(value) for key, value in node.items()}
        if isinstance(node, list):
            return [expand(item) for item in node]
        return node

    return expand(schema)
