from __future__ import annotations

import json
import sqlite3
from dataclasses import asdict, dataclass, field, fields
from decimal import Decimal
from typing import Any, Dict, List, Optional

from previz.errors import PartialBatchFailure


def _from_row(cls, row: sqlite3.Row, **overrides: Any):
    data = dict(row)
    names = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in data.items() if k in names}
    kwargs.update(overrides)
    return cls(**kwargs)


@dataclass
class Project:
    id: int
    user_id: str
    name: str
    visual_style: str = ""
    brand_id: Optional[str] = None
    created_at: float = 0.0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Project":
        return _from_row(cls, row)


@dataclass
class Scene:
    id: int
    project_id: int
    order: int
    title: str
    description: str = ""
    status: str = "draft"

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Scene":
        return _from_row(cls, row, order=row["scene_order"])


@dataclass
class Shot:
    id: int
    scene_id: int
    order: int
    visual_description: str = ""
    camera_angle: str = ""
    movement: str = ""
    lighting: str = ""
    lens: str = ""
    audio_description: str = ""
    status: str = "planned"

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Shot":
        return _from_row(cls, row, order=row["shot_order"])


@dataclass
class Generation:
    id: int
    shot_id: int
    project_id: int
    image_url: str
    prompt: str
    model: str
    quality_tier: str
    cost: Decimal
    created_at: float

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Generation":
        return _from_row(cls, row, cost=Decimal(row["cost"]))


@dataclass
class CharacterAppearance:
    clothing: str = ""
    expression: str = ""
    pose: str = ""
    accessories: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def coerce(cls, value: Any) -> Optional["CharacterAppearance"]:
        if value is None or isinstance(value, cls):
            return value
        if isinstance(value, str):
            value = json.loads(value) if value.strip() else {}
        if not isinstance(value, dict):
            raise TypeError(f"Unsupported appearance value: {type(value).__name__}")
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in value.items() if k in names})

    def describe(self) -> str:
        parts = [f"Clothing: {self.clothing}", f"Expression: {self.expression}", f"Pose: {self.pose}"]
        if self.accessories:
            parts.append(f"Accessories: {self.accessories}")
        return ", ".join(parts)

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=True, sort_keys=True)


@dataclass
class Frame:
    id: int
    project_id: int
    shot_number: int
    image_url: str
    prompt: str = ""
    character_library_id: Optional[int] = None
    character_appearance: Optional[CharacterAppearance] = None
    consistency_score: Optional[float] = None
    consistency_notes: Optional[str] = None
    is_consistency_locked: bool = False

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Frame":
        return _from_row(
            cls,
            row,
            character_appearance=CharacterAppearance.coerce(row["character_appearance"]),
            is_consistency_locked=bool(row["is_consistency_locked"]),
        )


@dataclass
class CharacterLibraryEntry:
    id: int
    user_id: str
    name: str
    description: str = ""
    reference_image_url: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "CharacterLibraryEntry":
        return _from_row(cls, row)


@dataclass
class Actor:
    id: int
    user_id: str
    project_id: int
    name: str
    trigger_word: str
    dataset_url: str
    status: str = "pending"
    training_job_id: Optional[str] = None
    model_handle: Optional[str] = None
    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def is_terminal(self) -> bool:
        return self.status in ("ready", "failed")

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Actor":
        return _from_row(cls, row)


@dataclass
class UsageLedgerEntry:
    id: int
    project_id: int
    user_id: str
    action_type: str
    model_id: str
    quantity: int
    cost: Decimal
    timestamp: float

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "UsageLedgerEntry":
        return _from_row(cls, row, cost=Decimal(row["cost"]))


@dataclass
class FrameHistoryVersion:
    id: int
    project_id: int
    shot_number: int
    version_number: int
    is_active: bool
    image_url: str
    prompt: Optional[str] = None
    notes: Optional[str] = None
    created_at: float = 0.0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "FrameHistoryVersion":
        return _from_row(cls, row, is_active=bool(row["is_active"]))


@dataclass(frozen=True)
class FrameOrderEntry:
    project_id: int
    shot_number: int
    display_order: int


@dataclass
class CharacterBreakdown:
    character_id: int
    character_name: str
    frame_count: int
    average_score: float


@dataclass
class ConsistencyReport:
    total_frames: int
    frames_with_characters: int
    average_consistency_score: int
    locked_frames: int
    inconsistent_frames: int
    character_breakdown: List[CharacterBreakdown] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ConsistencyIssue:
    frame_id: int
    shot_number: int
    issue: str
    severity: str = "medium"
    suggestion: str = ""


@dataclass
class ConsistencyAnalysis:
    overall_score: float
    issues: List[ConsistencyIssue] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    appearance_profile: Dict[str, List[str]] = field(default_factory=dict)
    outlier_frame_ids: List[int] = field(default_factory=list)


@dataclass
class AppearanceComparison:
    is_consistent: bool
    score: float
    differences: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)


@dataclass
class BatchItemResult:
    shot_id: int
    success: bool
    image_url: Optional[str] = None
    error: Optional[str] = None


@dataclass
class BatchReport:
    results: List[BatchItemResult] = field(default_factory=list)
    chunk_sizes: List[int] = field(default_factory=list)

    @property
    def succeeded(self) -> List[BatchItemResult]:
        return [r for r in self.results if r.success]

    @property
    def failed(self) -> List[BatchItemResult]:
        return [r for r in self.results if not r.success]

    def raise_for_failures(self) -> None:
        if self.failed:
            raise PartialBatchFailure(self.results)
