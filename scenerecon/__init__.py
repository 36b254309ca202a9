"""
Scene reconstruction

Modules:
- core: Reconstruction algorithms and the pipeline orchestrator
- config: Pipeline configuration
"""

from .config import PipelineConfig
from .core import (
    PipelineOrchestrator,
    PipelineStage,
    PipelineState,
    CameraIntrinsics,
    Pose,
    load_calibration
)

__all__ = [
    'PipelineConfig',
    'PipelineOrchestrator',
    'PipelineStage',
    'PipelineState',
    'CameraIntrinsics',
    'Pose',
    'load_calibration'
]
