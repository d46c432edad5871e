"""
Book Trailer Pipeline

Three-scene trailer generation for a book title:
  Anchor    Style anchor: visual style, typography plan, safety constraints
  Scenes    Script, keyframe, video per scene (parallel, sequential fallback)
  QC        Typography, consistency, safety and technical quality gate
  Delivery  WebVTT subtitles, assembly, cost report, 90-day result cache
"""

from .orchestrator import TrailerGenerationService
from .routes import trailer_router
from .models import GenerationMode, JobStatus, TrailerRequest, TrailerResult

__all__ = [
    "TrailerGenerationService",
    "trailer_router",
    "GenerationMode",
    "JobStatus",
    "TrailerRequest",
    "TrailerResult",
]
