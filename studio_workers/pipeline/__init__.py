"""
ASMR Clip Generation Pipeline

  Validate → Enrich prompt → Synthesize video → Sound (optional) → Merge → Loop → Deliver

Routers live in .routes and are mounted by the worker app.
"""

from .orchestrator import ClipGenerationService
from .models import GenerationRequest, PipelineResult, PipelineStatus

__all__ = [
    "ClipGenerationService",
    "GenerationRequest",
    "PipelineResult",
    "PipelineStatus",
]
