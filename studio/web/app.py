from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

from studio.config import Settings, get_settings
from studio.db.session import create_sessionmaker
from studio.modelspecs.base import ModelSpec
from studio.modelspecs.registry import list_models
from studio.services.adapters import build_adapters, close_adapters
from studio.services.errors import GenerationError, InsufficientFunds, InvalidRequest
from studio.services.generation import GenerationService
from studio.services.poller import PollManager
from studio.services.poller_runtime import set_poller
from studio.services.storage import AssetStorage
from studio.utils.logging import get_logger
from studio.utils.time import as_utc


logger = get_logger("web")

STATUS_BY_CODE = {
    "insufficient_funds": 402,
    "no_credits": 402,
    "invalid_request": 400,
    "provider_rejected": 400,
    "content_policy": 400,
    "invalid_parameters": 400,
    "too_many_active_jobs": 429,
    "maintenance": 503,
    "provider_unavailable": 503,
    "tracking_failure": 503,
    "timeout": 504,
    "job_not_found": 404,
}


class QuoteBody(BaseModel):
    model: str
    options: Dict[str, Any] = Field(default_factory=dict)


class GenerateBody(BaseModel):
    model: str
    prompt: str = ""
    options: Dict[str, Any] = Field(default_factory=dict)
    reference_urls: List[str] = Field(default_factory=list)
    audio_url: Optional[str] = None
    end_image_url: Optional[str] = None


def _user_id(request: Request) -> int | None:
    raw = (request.headers.get("x-user-id") or "").strip()
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def _unauthorized() -> JSONResponse:
    return JSONResponse({"error": "unauthorized"}, status_code=401)


def error_response(exc: GenerationError) -> JSONResponse:
    body: Dict[str, Any] = {"error": exc.code, "message": str(exc), "refunded": exc.refunded}
    if isinstance(exc, InsufficientFunds):
        body["required"] = exc.required
        body["available"] = exc.available
    return JSONResponse(body, status_code=STATUS_BY_CODE.get(exc.code, 500))


def _model_payload(model: ModelSpec) -> Dict[str, Any]:
    return {
        "key": model.key,
        "name": model.display_name,
        "type": model.model_type,
        "provider": model.provider,
        "tagline": model.tagline,
        "async": model.adapter in ("fal_queue", "fal_video"),
        "supportsReferenceImages": model.supports_reference_images or model.requires_reference_images,
        "requiresReferenceImages": model.requires_reference_images,
        "maxReferenceImages": model.max_reference_images,
        "options": [
            {
                "key": opt.key,
                "label": opt.label,
                "default": opt.default,
                "values": [{"value": v.value, "label": v.label} for v in opt.values],
            }
            for opt in model.options
        ],
        "prices": dict(model.prices),
    }


def create_app(generation: GenerationService | None = None, settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="AI Design Studio")
    app.state.owns_generation = generation is None
    if generation is None:
        generation = GenerationService(create_sessionmaker(), build_adapters(), AssetStorage(), settings)
    app.state.generation = generation
    app.state.poller = None
    app.state.poller_task = None
    app.mount(
        "/assets",
        StaticFiles(directory=settings.asset_storage_path, check_dir=False),
        name="assets",
    )

    @app.on_event("startup")
    async def startup() -> None:
        if not settings.web_poll_enabled:
            return
        poller = PollManager(app.state.generation, settings)
        app.state.poller = poller
        set_poller(poller)
        await poller.restore_pending()
        app.state.poller_task = asyncio.create_task(poller.watch_pending())

    @app.on_event("shutdown")
    async def shutdown() -> None:
        task = app.state.poller_task
        if task:
            task.cancel()
        poller = app.state.poller
        if poller:
            await poller.shutdown()
            set_poller(None)
        if app.state.owns_generation:
            await close_adapters(app.state.generation.adapters)
            await app.state.generation.storage.close()

    @app.get("/api/models")
    async def api_models():
        return {"models": [_model_payload(model) for model in list_models()]}

    @app.post("/api/quote")
    async def api_quote(body: QuoteBody):
        try:
            breakdown = app.state.generation.quote(body.model, {"options": body.options})
        except GenerationError as exc:
            return error_response(exc)
        return {"model": body.model, "cost": breakdown.total, "breakdown": breakdown.as_dict()}

    @app.post("/api/generate")
    async def api_generate(request: Request, body: GenerateBody):
        user_id = _user_id(request)
        if user_id is None:
            return _unauthorized()
        params = body.model_dump(exclude={"model", "prompt"}, exclude_none=True)
        try:
            outcome = await app.state.generation.start_generation(user_id, body.model, body.prompt, params)
        except GenerationError as exc:
            logger.info("generate_rejected", user_id=user_id, model=body.model, error_code=exc.code)
            return error_response(exc)
        status_code = 202 if outcome.status == "queued" else 200
        return JSONResponse({"ok": True, **outcome.as_dict()}, status_code=status_code)

    @app.get("/api/jobs/{job_id}")
    async def api_job_status(request: Request, job_id: str):
        user_id = _user_id(request)
        if user_id is None:
            return _unauthorized()
        try:
            return await app.state.generation.get_job_status(job_id, user_id)
        except GenerationError as exc:
            return error_response(exc)

    @app.get("/api/jobs")
    async def api_jobs(request: Request, since: Optional[str] = None):
        user_id = _user_id(request)
        if user_id is None:
            return _unauthorized()
        since_dt = None
        if since:
            try:
                since_dt = as_utc(datetime.fromisoformat(since))
            except ValueError:
                return error_response(InvalidRequest("since must be an ISO timestamp"))
        return await app.state.generation.resume(user_id, since_dt)

    @app.get("/api/tickets")
    async def api_tickets(request: Request):
        user_id = _user_id(request)
        if user_id is None:
            return _unauthorized()
        snapshot = await app.state.generation.get_balance(user_id)
        return snapshot.as_dict()

    @app.post("/api/webhooks/fal")
    async def api_fal_webhook(request: Request):
        try:
            payload = await request.json()
        except ValueError:
            return JSONResponse({"ok": False, "error": "invalid_payload"}, status_code=400)
        if not isinstance(payload, dict):
            return JSONResponse({"ok": False, "error": "invalid_payload"}, status_code=400)
        try:
            status = await app.state.generation.handle_fal_webhook(payload)
        except InvalidRequest as exc:
            return JSONResponse({"ok": False, "error": str(exc)}, status_code=400)
        return {"ok": True, "status": status}

    return app
