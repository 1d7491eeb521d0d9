"""
FastAPI routes for the ASMR clip generation pipeline.

  GET  /asmr/models                    Capability registry
  GET  /asmr/models/{model_id}/config  One model's supported settings
  POST /asmr/generate                  Run the full pipeline, wait for the result
  POST /asmr/generate/async            Start the pipeline in the background
  GET  /asmr/jobs/{job_id}             Background job status
  GET  /asmr/status/{task_id}          Raw provider task status
  POST /asmr/merge                     Merge a video and an audio file
  POST /asmr/enhance                   Engineer a visual prompt from an idea
  POST /asmr/enhance-sound             Write or improve a sound prompt
"""

import time
import logging

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse
from starlette.background import BackgroundTask

from .. import metrics
from .. import rate_limiter
from ..provider_factory import ProviderFactory
from .capabilities import get_capability, list_capabilities, validate_settings
from .errors import PipelineError, SettingsValidationError
from .merge import merge_media
from .models import (
    EnhanceRequest,
    EnhanceResponse,
    ErrorKind,
    Failed,
    GenerationRequest,
    JobStatusResponse,
    MergeRequest,
    PipelineResult,
    SoundEnhanceRequest,
    TaskStatusResponse,
)
from .orchestrator import ClipGenerationService
from .prompt_engineer import enhance_sound_prompt, enrich_prompt
from .transcode import cleanup_media_file, is_remote_ref

logger = logging.getLogger(__name__)

asmr_router = APIRouter(prefix="/asmr", tags=["asmr"])

# HTTP status for each fatal error kind
ERROR_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.PROVIDER: 502,
    ErrorKind.TIMEOUT: 502,
    ErrorKind.UPLOAD: 500,
}

_service: ClipGenerationService | None = None


def get_service() -> ClipGenerationService:
    """Lazily build the singleton service from the configured providers."""
    global _service
    if _service is None:
        _service = ClipGenerationService(
            text_provider=ProviderFactory.get_text_provider(),
            video_provider=ProviderFactory.get_video_provider(),
            audio_provider=ProviderFactory.get_audio_provider(),
        )
    return _service


def _enforce_rate_limit(user_id: str):
    allowed, _, retry_after = rate_limiter.check_rate_limit(user_id)
    if not allowed:
        metrics.inc_counter("requests.rate_limited")
        raise HTTPException(
            status_code=429,
            detail=f"Rate limit exceeded. Try again in {retry_after}s.",
            headers={"Retry-After": str(retry_after)},
        )


# ── Models ───────────────────────────────────────────────────────────────────

@asmr_router.get("/models")
async def list_models():
    return {"models": [cap.model_dump(mode="json", by_alias=True) for cap in list_capabilities()]}


@asmr_router.get("/models/{model_id}/config")
async def get_model_config(model_id: str):
    cap = get_capability(model_id)
    if cap is None:
        raise HTTPException(status_code=404, detail=f"Unknown model: {model_id}")
    return cap.model_dump(mode="json", by_alias=True)


# ── Generation ───────────────────────────────────────────────────────────────

@asmr_router.post("/generate", response_model=PipelineResult, response_model_by_alias=True)
async def generate(request: GenerationRequest):
    """
    Run the pipeline and return its result.

    Errors:
      - 400: Settings not supported by the model
      - 429: Rate limit exceeded
      - 502: Video provider failed or timed out
      - 500: Delivery failed
    """
    _req_start = time.time()
    metrics.inc_counter("requests.generate")
    _enforce_rate_limit(request.user_id or "anonymous")

    result = await get_service().run(request)
    metrics.record_latency("generate", (time.time() - _req_start) * 1000)

    if result.status == "failed":
        status_code = ERROR_STATUS.get(result.error_kind, 500)
        raise HTTPException(status_code=status_code, detail=result.model_dump(mode="json", by_alias=True))

    metrics.inc_counter("pipeline.completed")
    return result


@asmr_router.post("/generate/async", response_model=JobStatusResponse, response_model_by_alias=True)
async def generate_async(request: GenerationRequest):
    """Start the pipeline as a background task; poll /asmr/jobs/{job_id}."""
    metrics.inc_counter("requests.generate_async")
    _enforce_rate_limit(request.user_id or "anonymous")

    if not rate_limiter.acquire_job_slot():
        raise HTTPException(
            status_code=503,
            detail=f"Server at capacity ({rate_limiter.MAX_CONCURRENT_JOBS} concurrent jobs). Try again shortly.",
        )

    service = get_service()
    job_id = service.run_background(request, on_complete=rate_limiter.release_job_slot)
    metrics.set_gauge("active_jobs", rate_limiter.get_active_jobs())
    return service.get_status(job_id)


@asmr_router.get("/jobs/{job_id}", response_model=JobStatusResponse, response_model_by_alias=True)
async def get_job_status(job_id: str):
    status = get_service().get_status(job_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return status


@asmr_router.get("/status/{task_id}", response_model=TaskStatusResponse, response_model_by_alias=True)
async def get_task_status(task_id: str):
    """Read the provider's state of a video task directly."""
    try:
        status = await get_service().video_provider.get_task_status(task_id)
    except PipelineError as e:
        logger.error(f"Status check failed for task {task_id}: {e}")
        raise HTTPException(status_code=502, detail=e.message)
    return TaskStatusResponse(task_id=task_id, **status.model_dump())


# ── Merge ────────────────────────────────────────────────────────────────────

@asmr_router.post("/merge")
async def merge(request: MergeRequest):
    """Merge a video and an audio reference, stream the file, then delete it."""
    metrics.inc_counter("requests.merge")
    for ref in (request.video_url, request.audio_url):
        if not is_remote_ref(ref):
            raise HTTPException(status_code=400, detail="Only http(s) and data: references can be merged")

    result = await merge_media(request.video_url, request.audio_url)
    if isinstance(result, Failed):
        metrics.record_error("merge", result.error_kind, result.message)
        raise HTTPException(status_code=500, detail=result.message)

    return FileResponse(
        result.asset_ref,
        media_type="video/mp4",
        filename="merged.mp4",
        background=BackgroundTask(cleanup_media_file, result.asset_ref),
    )


# ── Prompt enhancement ───────────────────────────────────────────────────────

@asmr_router.post("/enhance", response_model=EnhanceResponse, response_model_by_alias=True)
async def enhance(request: EnhanceRequest):
    """Engineer a provider-ready visual prompt from an idea without generating video."""
    metrics.inc_counter("requests.enhance")
    generation = GenerationRequest(
        model_id=request.model_id,
        visual_prompt=request.prompt,
        duration=request.duration,
        aspect_ratio=request.aspect_ratio,
        resolution=request.resolution,
    )
    try:
        cap = validate_settings(generation)
    except SettingsValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)

    enriched = await enrich_prompt(generation, cap, get_service().text_provider)
    return EnhanceResponse(
        enhanced_prompt=enriched.visual_prompt,
        sound_prompt=enriched.sound_prompt,
        cost=enriched.cost,
        used_fallback=enriched.used_fallback,
        warning=enriched.warning,
    )


@asmr_router.post("/enhance-sound", response_model=EnhanceResponse, response_model_by_alias=True)
async def enhance_sound(request: SoundEnhanceRequest):
    """Write a sound prompt for the audio stage, from a sound idea, a scene, or nothing."""
    metrics.inc_counter("requests.enhance_sound")
    enhanced = await enhance_sound_prompt(get_service().text_provider, request.prompt, request.visual_prompt)
    return EnhanceResponse(
        enhanced_prompt=enhanced.sound_prompt,
        cost=enhanced.cost,
        used_fallback=enhanced.used_fallback,
        warning=enhanced.warning,
    )
