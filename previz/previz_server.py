import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from previz.errors import (
    NotFoundError,
    PrevizError,
    StateConflictError,
    UpstreamServiceError,
    ValidationError,
)
from previz.studio import Studio

logger = logging.getLogger(__name__)

app = FastAPI(title="Previz Production API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

global_studio: Optional[Studio] = None


def get_studio() -> Studio:
    global global_studio
    if global_studio is None:
        global_studio = Studio.from_settings()
        logger.info("Global Studio initialized")
    return global_studio


def current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    return x_user_id or "local-user"


_STATUS_BY_ERROR = (
    (ValidationError, 422),
    (NotFoundError, 404),
    (StateConflictError, 409),
    (UpstreamServiceError, 502),
)


@app.exception_handler(PrevizError)
async def previz_error_handler(request: Request, exc: PrevizError):
    status = next((code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 500)
    body: Dict[str, Any] = {"error": type(exc).__name__, "detail": str(exc)}
    if isinstance(exc, UpstreamServiceError):
        body["service"] = exc.service
        if exc.actor_id is not None:
            body["actor_id"] = exc.actor_id
    log = logger.warning if status < 500 else logger.error
    log(f"{request.method} {request.url.path} -> {status}: {exc}")
    return JSONResponse(status_code=status, content=body)


class HealthResponse(BaseModel):
    status: str
    timestamp: str


class ProjectRequest(BaseModel):
    name: str
    visual_style: str = ""
    brand_id: Optional[str] = None


class ScriptRequest(BaseModel):
    script_text: str


class GenerateRequest(BaseModel):
    model: Optional[str] = None


class BatchRequest(BaseModel):
    shot_ids: List[int]
    concurrency: Optional[int] = None
    model: Optional[str] = None


class PromoteRequest(BaseModel):
    shot_number: Optional[int] = None


class CharacterRequest(BaseModel):
    name: str
    description: str = ""
    reference_image_url: Optional[str] = None


class BindCharacterRequest(BaseModel):
    character_library_id: int
    appearance: Optional[Dict[str, Any]] = None


class ScoreRequest(BaseModel):
    score: float
    notes: Optional[str] = None


class CompareRequest(BaseModel):
    appearance_a: Dict[str, Any]
    appearance_b: Dict[str, Any]
    context: Optional[str] = None


class TrainRequest(BaseModel):
    project_id: int
    name: str
    trigger_word: str
    dataset_url: str


class TrainingWebhook(BaseModel):
    id: str
    status: str


class VersionRequest(BaseModel):
    image_url: str
    prompt: Optional[str] = None
    notes: Optional[str] = None


class OrderEntry(BaseModel):
    shot_number: int
    display_order: int


class OrderRequest(BaseModel):
    entries: List[OrderEntry] = Field(default_factory=list)


# --- projects & decomposition ---
@app.post("/projects")
def create_project(request: ProjectRequest, user_id: str = Depends(current_user), studio: Studio = Depends(get_studio)):
    return jsonable_encoder(studio.pipeline.create_project(user_id, request.name, request.visual_style, request.brand_id))


@app.get("/projects/{project_id}/layout")
def production_layout(project_id: int, studio: Studio = Depends(get_studio)):
    return jsonable_encoder(studio.pipeline.production_layout(project_id))


@app.post("/projects/{project_id}/script")
def decompose_script(project_id: int, request: ScriptRequest, user_id: str = Depends(current_user), studio: Studio = Depends(get_studio)):
    scenes = studio.pipeline.decompose_script(project_id, request.script_text, user_id=user_id)
    return jsonable_encoder({"success": True, "scenes": scenes})


@app.post("/scenes/{scene_id}/shots")
def decompose_scene(scene_id: int, user_id: str = Depends(current_user), studio: Studio = Depends(get_studio)):
    shots = studio.pipeline.decompose_scene(scene_id, user_id=user_id)
    return jsonable_encoder({"success": True, "count": len(shots), "shots": shots})


# --- generation ---
@app.post("/shots/{shot_id}/generate")
def generate_shot_image(shot_id: int, request: GenerateRequest, user_id: str = Depends(current_user), studio: Studio = Depends(get_studio)):
    image_url = studio.pipeline.generate_shot_image(shot_id, user_id, model=request.model)
    return {"success": True, "image_url": image_url}


@app.post("/shots/batch")
async def generate_batch(request: BatchRequest, user_id: str = Depends(current_user), studio: Studio = Depends(get_studio)):
    report = await studio.pipeline.generate_batch(request.shot_ids, user_id, concurrency=request.concurrency, model=request.model)
    return jsonable_encoder({"results": report.results, "chunk_sizes": report.chunk_sizes, "failed": len(report.failed)})


@app.get("/shots/{shot_id}/generation")
def current_generation(shot_id: int, studio: Studio = Depends(get_studio)):
    return jsonable_encoder(studio.pipeline.current_generation(shot_id))


@app.post("/generations/{generation_id}/promote")
def promote_generation(generation_id: int, request: PromoteRequest, studio: Studio = Depends(get_studio)):
    return jsonable_encoder(studio.pipeline.promote_generation(generation_id, shot_number=request.shot_number))


@app.get("/shots/{shot_id}/actors")
def list_shot_actors(shot_id: int, studio: Studio = Depends(get_studio)):
    return jsonable_encoder(studio.pipeline.list_shot_actors(shot_id))


@app.post("/shots/{shot_id}/actors/{actor_id}")
def bind_actor(shot_id: int, actor_id: int, studio: Studio = Depends(get_studio)):
    return jsonable_encoder(studio.pipeline.bind_actor_to_shot(shot_id, actor_id))


@app.delete("/shots/{shot_id}/actors/{actor_id}")
def unbind_actor(shot_id: int, actor_id: int, studio: Studio = Depends(get_studio)):
    return {"success": studio.pipeline.unbind_actor_from_shot(shot_id, actor_id)}


# --- identity lock & consistency ---
@app.post("/characters")
def create_character(request: CharacterRequest, user_id: str = Depends(current_user), studio: Studio = Depends(get_studio)):
    return jsonable_encoder(studio.identity.create_character(user_id, request.name, request.description, request.reference_image_url))


@app.post("/frames/{frame_id}/character")
def bind_character(frame_id: int, request: BindCharacterRequest, studio: Studio = Depends(get_studio)):
    return jsonable_encoder(studio.identity.bind_character(frame_id, request.character_library_id, request.appearance))


@app.delete("/frames/{frame_id}/character")
def clear_binding(frame_id: int, studio: Studio = Depends(get_studio)):
    return jsonable_encoder(studio.identity.clear_binding(frame_id))


@app.put("/frames/{frame_id}/score")
def update_score(frame_id: int, request: ScoreRequest, studio: Studio = Depends(get_studio)):
    return jsonable_encoder(studio.identity.update_consistency_score(frame_id, request.score, request.notes))


@app.post("/frames/{frame_id}/lock")
def lock_frame(frame_id: int, studio: Studio = Depends(get_studio)):
    return jsonable_encoder(studio.identity.lock(frame_id))


@app.post("/frames/{frame_id}/unlock")
def unlock_frame(frame_id: int, studio: Studio = Depends(get_studio)):
    return jsonable_encoder(studio.identity.unlock(frame_id))


@app.get("/projects/{project_id}/consistency")
def consistency_report(project_id: int, threshold: Optional[float] = None, studio: Studio = Depends(get_studio)):
    return jsonable_encoder(studio.identity.consistency_report(project_id, threshold=threshold))


@app.get("/projects/{project_id}/consistency/inconsistent")
def inconsistent_frames(project_id: int, threshold: Optional[float] = None, studio: Studio = Depends(get_studio)):
    return jsonable_encoder(studio.identity.inconsistent_frames(project_id, threshold=threshold))


@app.get("/projects/{project_id}/characters/{character_id}/appearances")
def appearance_summary(project_id: int, character_id: int, studio: Studio = Depends(get_studio)):
    return jsonable_encoder(studio.identity.appearance_summary(project_id, character_id))


@app.post("/projects/{project_id}/characters/{character_id}/analyze")
def analyze_character(project_id: int, character_id: int, studio: Studio = Depends(get_studio)):
    return jsonable_encoder(studio.identity.analyze_character(project_id, character_id))


@app.post("/consistency/compare")
def compare_appearances(request: CompareRequest, studio: Studio = Depends(get_studio)):
    return jsonable_encoder(studio.identity.compare_appearances(request.appearance_a, request.appearance_b, request.context))


# --- actors / training ---
@app.post("/actors")
def train_actor(request: TrainRequest, user_id: str = Depends(current_user), studio: Studio = Depends(get_studio)):
    actor = studio.training.start(user_id, request.project_id, request.name, request.trigger_word, request.dataset_url)
    return jsonable_encoder(actor)


@app.get("/actors")
def list_actors(user_id: str = Depends(current_user), studio: Studio = Depends(get_studio)):
    return jsonable_encoder(studio.training.list_actors(user_id))


@app.get("/actors/{actor_id}")
def get_actor(actor_id: int, studio: Studio = Depends(get_studio)):
    return jsonable_encoder(studio.training.get_actor(actor_id))


@app.post("/actors/{actor_id}/poll")
def poll_actor(actor_id: int, studio: Studio = Depends(get_studio)):
    return {"actor_id": actor_id, "status": studio.training.poll_status(actor_id)}


@app.post("/webhooks/training")
def training_webhook(payload: TrainingWebhook, studio: Studio = Depends(get_studio)):
    return jsonable_encoder(studio.training.apply_webhook(payload.id, payload.status))


# --- ledger ---
@app.get("/projects/{project_id}/ledger")
def project_ledger(project_id: int, studio: Studio = Depends(get_studio)):
    breakdown = {
        action: {**bucket, "cost": str(bucket["cost"])}
        for action, bucket in studio.ledger.breakdown_by_action(project_id).items()
    }
    return {
        "total": str(studio.ledger.project_total(project_id)),
        "breakdown": breakdown,
        "entries": [{**asdict(e), "cost": str(e.cost)} for e in studio.ledger.list_entries(project_id)],
    }


# --- frame history & order ---
@app.post("/projects/{project_id}/frames/{shot_number}/versions")
def create_version(project_id: int, shot_number: int, request: VersionRequest, studio: Studio = Depends(get_studio)):
    version = studio.history.create_version(project_id, shot_number, request.image_url, request.prompt, request.notes)
    return jsonable_encoder(version)


@app.get("/projects/{project_id}/frames/{shot_number}/versions")
def list_history(project_id: int, shot_number: int, studio: Studio = Depends(get_studio)):
    return jsonable_encoder(studio.history.list_history(project_id, shot_number))


@app.post("/projects/{project_id}/frames/{shot_number}/versions/{version_number}/activate")
def activate_version(project_id: int, shot_number: int, version_number: int, studio: Studio = Depends(get_studio)):
    return jsonable_encoder(studio.history.activate_version(project_id, shot_number, version_number))


@app.put("/projects/{project_id}/frame-order")
def set_order(project_id: int, request: OrderRequest, studio: Studio = Depends(get_studio)):
    entries = studio.order.set_order(project_id, [e.model_dump() for e in request.entries])
    return jsonable_encoder(entries)


@app.get("/projects/{project_id}/frame-order")
def get_order(project_id: int, studio: Studio = Depends(get_studio)):
    return jsonable_encoder(studio.order.get_order(project_id))


@app.get("/health")
async def health():
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now().isoformat()
    )


@app.get("/")
async def root():
    return {"message": "Previz Production API is running"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
