from typing import Any, Dict, List, Optional

import pytest

from previz.production.store import StudioStore
from previz.providers.base import SceneOutline, ShotPlan
from previz.studio import Studio


class FakeSegmentation:
    def __init__(self, scenes: Optional[List[Any]] = None, error: Optional[Exception] = None):
        self.scenes = scenes if scenes is not None else [
            SceneOutline(order=1, title="EXT. HARBOR - DAWN", description="Mara waits on the pier."),
            SceneOutline(order=2, title="INT. CABIN - DAY", description="Mara reads the letter."),
        ]
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    def segment(self, script_text, brand_hints=None):
        self.calls.append({"script_text": script_text, "brand_hints": brand_hints})
        if self.error:
            raise self.error
        return list(self.scenes)


class FakePlanner:
    def __init__(self, shots: Optional[List[Any]] = None, error: Optional[Exception] = None):
        self.shots = shots if shots is not None else [
            ShotPlan(order=1, visual_description="Wide of the pier", camera_angle="Wide Shot"),
            ShotPlan(order=2, visual_description="Close on Mara's hands", lens="85mm"),
        ]
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    def plan(self, scene_context, visual_style, character_persona=None, brand_notes=None):
        self.calls.append(
            {
                "scene_context": scene_context,
                "visual_style": visual_style,
                "character_persona": character_persona,
                "brand_notes": brand_notes,
            }
        )
        if self.error:
            raise self.error
        return list(self.shots)


class FakeImageGenerator:
    def __init__(self, fail_prompts_containing: Optional[str] = None):
        self.fail_prompts_containing = fail_prompts_containing
        self.calls: List[Dict[str, Any]] = []

    def generate(self, prompt, model=None):
        self.calls.append({"prompt": prompt, "model": model})
        if self.fail_prompts_containing and self.fail_prompts_containing in prompt:
            raise RuntimeError("provider rejected prompt")
        return f"https://img.example.com/{len(self.calls)}.png"


class FakeTrainingService:
    def __init__(self, job_id: str = "job-1", submit_error: Optional[Exception] = None):
        self.job_id = job_id
        self.submit_error = submit_error
        self.status = "processing"
        self.status_error: Optional[Exception] = None
        self.submitted: List[Dict[str, Any]] = []

    def resolve_destination(self, name):
        return f"studio/char-{name.lower()}-1000"

    def submit(self, dataset_url, trigger_word, destination):
        self.submitted.append({"dataset_url": dataset_url, "trigger_word": trigger_word, "destination": destination})
        if self.submit_error:
            raise self.submit_error
        return self.job_id

    def get_status(self, job_id):
        if self.status_error:
            raise self.status_error
        return self.status


@pytest.fixture
def store(tmp_path):
    s = StudioStore.open(db_path=tmp_path / "previz.db")
    yield s
    s.close()


@pytest.fixture
def fakes():
    return {
        "segmentation": FakeSegmentation(),
        "planner": FakePlanner(),
        "image_generator": FakeImageGenerator(),
        "training_service": FakeTrainingService(),
    }


@pytest.fixture
def studio(store, fakes):
    return Studio.build(store=store, **fakes)
