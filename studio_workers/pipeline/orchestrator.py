"""
ClipGenerationService - main pipeline orchestrator.

Drives one request through every stage with status tracking:
  Validate -> Enrich -> Synthesize (poll) -> Audio? -> Merge? -> Loop? -> Deliver

Only validation, video synthesis and delivery can fail a run. Enrichment,
audio synthesis, merge and loop degrade to the best asset produced so far and
record a warning.
"""

import time
import uuid
import asyncio
import logging
from typing import Callable, Optional

from .. import metrics
from . import storage, transcode
from .capabilities import MODEL_CAPABILITIES, validate_settings
from .errors import PipelineError, SettingsValidationError, UploadError
from .loop import loop_media
from .merge import merge_media
from .models import (
    AudioSource,
    Completed,
    ErrorKind,
    Failed,
    GenerationRequest,
    JobStatusResponse,
    Pending,
    PipelineResult,
    PipelineStatus,
    TERMINAL_STATUSES,
    ValidationDetail,
)
from .prompt_engineer import enrich_prompt
from .sound_gen import synthesize_sound
from .transcode import MediaError
from .video_gen import POLL_INTERVAL, POLL_TIMEOUT, poll_video_task, prepare_request, synthesize_video

logger = logging.getLogger(__name__)

# Finished jobs stay queryable for this long, and at most this many are tracked
JOB_TTL_SECONDS = 3600
MAX_TRACKED_JOBS = 500


class ClipGenerationService:
    """
    Production pipeline orchestrator.

    Usage:
        service = ClipGenerationService(text_provider, video_provider, audio_provider)

        # Blocking run, one PipelineResult per request
        result = await service.run(request)

        # Fire-and-forget, poll get_status(job_id)
        job_id = service.run_background(request)

    Providers are duck-typed: text_provider.generate_text,
    video_provider.submit_video_task / get_task_status,
    audio_provider.generate_sound / is_available.
    """

    def __init__(
        self,
        text_provider,
        video_provider,
        audio_provider=None,
        storage_backend=storage,
        registry=MODEL_CAPABILITIES,
        temp_dir: Optional[str] = None,
        poll_interval: float = POLL_INTERVAL,
        poll_timeout: float = POLL_TIMEOUT,
        job_ttl: float = JOB_TTL_SECONDS,
        max_jobs: int = MAX_TRACKED_JOBS,
    ):
        self.text_provider = text_provider
        self.video_provider = video_provider
        self.audio_provider = audio_provider
        self.storage = storage_backend
        self.registry = registry
        self.temp_dir = temp_dir
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.job_ttl = job_ttl
        self.max_jobs = max_jobs
        self._jobs: dict[str, JobStatusResponse] = {}
        self._finished_at: dict[str, float] = {}
        self._tasks: set[asyncio.Task] = set()

    # ── Job tracking ─────────────────────────────────────────────────────

    def get_status(self, job_id: str) -> Optional[JobStatusResponse]:
        """Get the current status of a pipeline job, or None if unknown."""
        return self._jobs.get(job_id)

    def _evict_jobs(self):
        """Drop finished jobs past their TTL, then the oldest finished ones while at capacity."""
        now = time.monotonic()
        expired = [job_id for job_id, at in self._finished_at.items() if now - at > self.job_ttl]
        overflow = len(self._jobs) - len(expired) - self.max_jobs + 1
        if overflow > 0:
            remaining = sorted(
                (job_id for job_id in self._finished_at if job_id not in expired),
                key=self._finished_at.get,
            )
            expired.extend(remaining[:overflow])
        for job_id in expired:
            self._jobs.pop(job_id, None)
            self._finished_at.pop(job_id, None)
        if expired:
            logger.info(f"Evicted {len(expired)} finished job(s), tracking {len(self._jobs)}")

    def _update_status(
        self,
        job_id: str,
        status: PipelineStatus,
        step: str = "",
        progress: int = 0,
        result: Optional[PipelineResult] = None,
        error: Optional[str] = None,
    ):
        previous = self._jobs.get(job_id)
        if previous is None:
            self._evict_jobs()
        history = list(previous.history) if previous else []
        history.append(status)
        self._jobs[job_id] = JobStatusResponse(
            job_id=job_id,
            status=status,
            current_step=step,
            progress_pct=progress,
            history=history,
            result=result,
            error=error,
        )
        if status in TERMINAL_STATUSES:
            self._finished_at[job_id] = time.monotonic()
        logger.info(f"[{job_id}] {status.value} → {step} ({progress}%)")

    def _fail(
        self,
        job_id: str,
        stage: str,
        kind: Optional[ErrorKind],
        message: str,
        stage_costs: dict[str, float],
        warnings: list[str],
        engineered_prompt: Optional[str] = None,
        user_id: str = "",
    ) -> PipelineResult:
        result = PipelineResult(
            job_id=job_id,
            status="failed",
            cost=round(sum(stage_costs.values()), 6),
            stage_costs=stage_costs,
            engineered_prompt=engineered_prompt,
            warnings=warnings,
            error=message,
            error_kind=kind,
        )
        metrics.record_error(stage, kind, message, user_id)
        self._update_status(job_id, PipelineStatus.FAILED, "Pipeline failed", 100, result=result, error=message)
        return result

    # ── Run ──────────────────────────────────────────────────────────────

    async def run(self, request: GenerationRequest, job_id: Optional[str] = None) -> PipelineResult:
        """
        Run the full pipeline for one request.

        Args:
            request: The generation request; visual_prompt holds the idea.
            job_id:  Optional id; one is generated when omitted.

        Returns:
            Exactly one PipelineResult, completed or failed.
        """
        job_id = job_id or str(uuid.uuid4())
        warnings: list[str] = []
        stage_costs: dict[str, float] = {}
        outputs: list[str] = []
        engineered_prompt: Optional[str] = None

        # ── Validate ─────────────────────────────────────────────────
        try:
            cap = validate_settings(request, self.registry)
        except SettingsValidationError as e:
            logger.warning(f"[{job_id}] Rejected: {e.message}")
            metrics.record_error("validation", ErrorKind.VALIDATION, e.message, request.user_id)
            result = PipelineResult(
                job_id=job_id,
                status="failed",
                error=e.message,
                error_kind=ErrorKind.VALIDATION,
                validation=ValidationDetail(field=e.field, supported_values=e.supported_values),
            )
            self._update_status(job_id, PipelineStatus.REJECTED, "Settings rejected", 100, result=result, error=e.message)
            return result

        self._update_status(job_id, PipelineStatus.VALIDATED, f"Settings valid for {cap.label}", 5)

        try:
            # ── Enrich ───────────────────────────────────────────────
            self._update_status(job_id, PipelineStatus.ENRICHING, "Engineering cinematic prompt...", 10)
            enriched = await enrich_prompt(request, cap, self.text_provider)
            engineered_prompt = enriched.visual_prompt
            if enriched.cost:
                stage_costs["enrichment"] = enriched.cost
            if enriched.warning:
                warnings.append(enriched.warning)
                metrics.record_error("enrichment", ErrorKind.PROVIDER, enriched.warning, request.user_id)

            # ── Synthesize ───────────────────────────────────────────
            self._update_status(job_id, PipelineStatus.SYNTHESIZING, f"Generating video with {cap.label}...", 25)
            prepared, frame_warnings = prepare_request(request, cap, enriched.visual_prompt)
            warnings.extend(frame_warnings)

            video = await synthesize_video(prepared, self.video_provider)
            if isinstance(video, Pending):
                self._update_status(
                    job_id, PipelineStatus.SYNTHESIZING, f"Waiting for video task {video.task_ref}...", 35
                )
                video = await poll_video_task(
                    video.task_ref, self.video_provider, self.poll_interval, self.poll_timeout
                )
            if isinstance(video, Failed):
                logger.error(f"[{job_id}] Video synthesis failed: {video.message}")
                return self._fail(
                    job_id, "video", video.error_kind, video.message, stage_costs, warnings,
                    engineered_prompt, request.user_id or "",
                )

            stage_costs["video"] = video.cost
            asset = video.asset_ref
            duration: Optional[float] = float(request.duration)
            audio_source = AudioSource.NATIVE if cap.native_audio else None
            separate_audio: Optional[str] = None

            # ── Audio ────────────────────────────────────────────────
            sound_prompt = (enriched.sound_prompt or "").strip()
            if not cap.native_audio and sound_prompt:
                if self.audio_provider is None or not self.audio_provider.is_available():
                    logger.info(f"[{job_id}] Sound provider not configured, skipping audio")
                    warnings.append("Sound provider not configured; delivered video without synthesized audio")
                else:
                    self._update_status(job_id, PipelineStatus.AUDIO_SYNTHESIZING, "Generating sound effects...", 55)
                    sound = await synthesize_sound(
                        sound_prompt, request.duration, self.audio_provider, request.audio_intensity
                    )
                    if isinstance(sound, Failed):
                        warnings.append(
                            f"Audio synthesis failed ({sound.message}); delivered video without synthesized audio"
                        )
                        metrics.record_error("audio", sound.error_kind, sound.message, request.user_id)
                    else:
                        stage_costs["audio"] = sound.cost

                        # ── Merge ────────────────────────────────────
                        self._update_status(job_id, PipelineStatus.MERGING, "Merging video and audio...", 65)
                        merged = await merge_media(asset, sound.asset_ref, self.temp_dir)
                        if isinstance(merged, Completed):
                            outputs.append(merged.asset_ref)
                            asset = merged.asset_ref
                            duration = merged.duration_seconds or duration
                            audio_source = AudioSource.MERGED
                        else:
                            warnings.append(f"{merged.message}; audio delivered as a separate file")
                            metrics.record_error("merge", merged.error_kind, merged.message, request.user_id)
                            audio_source = AudioSource.SYNTHESIZED
                            separate_audio = sound.asset_ref

            # ── Loop ─────────────────────────────────────────────────
            if request.loop_multiplier > 1:
                self._update_status(
                    job_id, PipelineStatus.LOOPING, f"Looping video {request.loop_multiplier}x...", 80
                )
                looped = await loop_media(asset, request.loop_multiplier, self.temp_dir, input_duration=duration)
                if isinstance(looped, Completed):
                    outputs.append(looped.asset_ref)
                    asset = looped.asset_ref
                    duration = looped.duration_seconds
                else:
                    warnings.append(f"{looped.message}; delivered the unlooped video")
                    metrics.record_error("loop", looped.error_kind, looped.message, request.user_id)

            # ── Deliver ──────────────────────────────────────────────
            self._update_status(job_id, PipelineStatus.DELIVERING, "Uploading final video...", 90)
            video_url, audio_url, story_id = await self._deliver(request, asset, separate_audio, duration)

            result = PipelineResult(
                job_id=job_id,
                status="completed",
                video_url=video_url,
                audio_url=audio_url,
                audio_source=audio_source,
                cost=round(sum(stage_costs.values()), 6),
                stage_costs=stage_costs,
                duration_seconds=duration,
                engineered_prompt=enriched.visual_prompt,
                engineered_sound_prompt=enriched.sound_prompt,
                warnings=warnings,
                story_id=story_id,
            )
            self._update_status(job_id, PipelineStatus.COMPLETED, "Pipeline complete!", 100, result=result)
            return result

        except PipelineError as e:
            logger.error(f"[{job_id}] Pipeline failed: {e}")
            stage = "delivery" if isinstance(e, UploadError) else "pipeline"
            return self._fail(job_id, stage, e.kind, e.message, stage_costs, warnings, engineered_prompt, request.user_id or "")
        except Exception as e:
            logger.error(f"Pipeline failed for job {job_id}: {e}", exc_info=True)
            return self._fail(job_id, "pipeline", None, str(e), stage_costs, warnings, engineered_prompt, request.user_id or "")
        finally:
            for path in outputs:
                transcode.cleanup_media_file(path)

    async def _deliver(
        self,
        request: GenerationRequest,
        asset: str,
        separate_audio: Optional[str],
        duration: Optional[float],
    ) -> tuple[str, Optional[str], Optional[str]]:
        """Upload the final asset (and a separate audio clip) and record the story."""
        try:
            video_bytes = await transcode.read_media(asset, self.temp_dir)
            audio_bytes = await transcode.read_media(separate_audio, self.temp_dir) if separate_audio else None
        except MediaError as e:
            raise UploadError(f"Could not read final asset: {e}") from e

        key = self.storage.story_mode_path(request.user_id, request.workspace_id, request.title)
        video_url = await self.storage.upload_to_r2(key, video_bytes, "video/mp4")

        audio_url = None
        if audio_bytes:
            audio_key = key.rsplit(".", 1)[0] + "_audio.mp3"
            audio_url = await self.storage.upload_to_r2(audio_key, audio_bytes, "audio/mpeg")

        story_id = await self.storage.create_story_record(
            request.workspace_id, request.title, request.aspect_ratio, duration or float(request.duration), video_url
        )
        return video_url, audio_url, story_id

    def run_background(
        self,
        request: GenerationRequest,
        job_id: Optional[str] = None,
        on_complete: Optional[Callable[[], None]] = None,
    ) -> str:
        """Fire-and-forget wrapper for run. Returns the job id."""
        job_id = job_id or str(uuid.uuid4())
        self._update_status(job_id, PipelineStatus.QUEUED, "Queued", 0)
        task = asyncio.create_task(self.run(request, job_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        if on_complete is not None:
            task.add_done_callback(lambda _task: on_complete())
        return job_id
