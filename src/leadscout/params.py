"""Per-platform job parameter variants.

Each source platform accepts its own parameter shape. Job definitions are
validated against the variant for their platform before they are stored, so
the scheduler and connectors only ever see well-formed params.
"""

from __future__ import annotations

from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError


class _StrictParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    country: str | None = None
    industry: Union[str, int, None] = None


class DirectoryParams(_StrictParams):
    category_ids: list[int] = Field(default_factory=list)


class MapListingParams(_StrictParams):
    search_terms: list[str] = Field(default_factory=list)
    location: str | None = None
    max_pages: int = Field(default=1, ge=1, le=3)


class ProfessionalNetworkParams(_StrictParams):
    keywords: list[str] = Field(default_factory=list)
    titles: list[str] = Field(default_factory=list)


class OtherParams(BaseModel):
    model_config = ConfigDict(extra="allow")


PARAMS_BY_PLATFORM: dict[str, type[BaseModel]] = {
    "directory": DirectoryParams,
    "map_listings": MapListingParams,
    "professional_network": ProfessionalNetworkParams,
    "other": OtherParams,
}


def validate_params(platform: str, params: Any) -> dict[str, Any]:
    model = PARAMS_BY_PLATFORM.get(platform)
    if model is None:
        raise ValidationError(f"unknown source_platform: {platform}")
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise ValidationError("params must be an object")
    try:
        parsed = model.model_validate(params)
    except PydanticValidationError as exc:
        problems = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ()))
            problems.append(f"params.{location}: {error.get('msg')}")
        raise ValidationError(f"invalid params for {platform}: " + "; ".join(problems)) from exc
    return parsed.model_dump(exclude_none=True, exclude_defaults=True)
