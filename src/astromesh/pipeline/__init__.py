"""Pipeline modules.

- orchestrator: Main pipeline controller
- processor: Image processor thread
- file_tracker: SQLite-based file tracking
"""

from astromesh.pipeline.file_tracker import FileProcessingTracker
from astromesh.pipeline.processor import ImageProcessor, ImageProducts
from astromesh.pipeline.orchestrator import PipelineOrchestrator, discover_inputs

__all__ = [
    "PipelineOrchestrator",
    "ImageProcessor",
    "ImageProducts",
    "FileProcessingTracker",
    "discover_inputs",
]
