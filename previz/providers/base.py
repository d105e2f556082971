from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Type, TypeVar

from pydantic import BaseModel, Field

from previz.production.models import CharacterAppearance
from previz.utils.logging_setup import configure_logging


def setup_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)


class SceneOutline(BaseModel):
    order: int
    title: str
    description: str = ""

    class Config:
        extra = "ignore"


class ShotPlan(BaseModel):
    order: int
    visual_description: str = Field("", alias="visualDescription")
    camera_angle: str = Field("Medium Shot", alias="cameraAngle")
    movement: str = "Static"
    lighting: str = "Natural"
    lens: str = "Cinematic"
    audio_description: str = Field("", alias="audioDescription")

    class Config:
        extra = "ignore"
        populate_by_name = True


class IssueModel(BaseModel):
    frame_id: int = Field(0, alias="frameId")
    shot_number: int = Field(0, alias="shotNumber")
    issue: str
    severity: str = "medium"
    suggestion: str = ""

    class Config:
        extra = "ignore"
        populate_by_name = True


class ConsistencyVerdict(BaseModel):
    overall_score: float = Field(0, alias="overallScore")
    issues: List[IssueModel] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    appearance_profile: Dict[str, List[str]] = Field(default_factory=dict, alias="appearanceProfile")

    class Config:
        extra = "ignore"
        populate_by_name = True


class ComparisonVerdict(BaseModel):
    is_consistent: bool = Field(False, alias="isConsistent")
    score: float = 0
    differences: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)

    class Config:
        extra = "ignore"
        populate_by_name = True


class BrandContext(BaseModel):
    name: str
    voice: str = ""
    palette: List[str] = Field(default_factory=list)
    avoid: List[str] = Field(default_factory=list)
    aesthetic: str = ""

    def to_prompt(self) -> str:
        lines = [f"BRAND: {self.name}"]
        if self.voice:
            lines.append(f"VOICE: {self.voice}")
        if self.palette:
            lines.append(f"PALETTE: {', '.join(self.palette)}")
        if self.avoid:
            lines.append(f"AVOID: {', '.join(self.avoid)}")
        if self.aesthetic:
            lines.append(f"AESTHETIC: {self.aesthetic}")
        return "\n".join(lines)


M = TypeVar("M", bound=BaseModel)


def coerce_models(model: Type[M], items: Iterable[Any]) -> List[M]:
    """Accept model instances or plain dicts from a collaborator and validate them."""
    return [item if isinstance(item, model) else model.model_validate(item) for item in items]


class SegmentationService(Protocol):
    def segment(self, script_text: str, brand_hints: Optional[str] = None) -> Sequence[SceneOutline]: ...


class ShotPlanner(Protocol):
    def plan(
        self,
        scene_context: str,
        visual_style: str,
        character_persona: Optional[str] = None,
        brand_notes: Optional[str] = None,
    ) -> Sequence[ShotPlan]: ...


class ImageGenerator(Protocol):
    def generate(self, prompt: str, model: Optional[str] = None) -> str: ...


class ConsistencyAnalyzer(Protocol):
    def analyze(self, character_name: str, appearances: List[Dict[str, Any]]) -> ConsistencyVerdict: ...

    def compare(
        self,
        a: CharacterAppearance,
        b: CharacterAppearance,
        context: Optional[str] = None,
    ) -> ComparisonVerdict: ...


class TrainingService(Protocol):
    def resolve_destination(self, name: str) -> str: ...

    def submit(self, dataset_url: str, trigger_word: str, destination: str) -> str: ...

    def get_status(self, job_id: str) -> str: ...


class BrandContextProvider(Protocol):
    def get_brand_context(self, brand_id: str) -> Optional[BrandContext]: ...


class MappingBrandContext:
    """Brand lookups served from the `brands` section of providers.yaml."""

    def __init__(self, brands: Optional[Mapping[str, Any]] = None):
        self._brands: Dict[str, BrandContext] = {}
        for brand_id, data in (brands or {}).items():
            payload = dict(data or {})
            payload.setdefault("name", str(brand_id))
            self._brands[str(brand_id)] = BrandContext.model_validate(payload)

    def get_brand_context(self, brand_id: str) -> Optional[BrandContext]:
        return self._brands.get(str(brand_id))
