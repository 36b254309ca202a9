"""
Core reconstruction module
Features, pose, triangulation, lighting and the pipeline that drives them
"""

from .camera import CameraIntrinsics, Pose, load_calibration
from .errors import (
    ReconstructionError,
    InsufficientData,
    DegenerateGeometry,
    ConvergenceFailure,
    InvalidInput,
    Cancelled,
    StageTimeout,
    CollaboratorUnavailable,
    CaptureUnavailable,
    ExtractionFailed,
    ReconstructionFailed,
    RenderUnavailable,
    InvalidTransition
)
from .features import Descriptor, Match, CorrespondenceMatcher
from .geometry import Point3D, Triangulator, compute_essential_matrix, decompose_essential
from .pose import PoseEstimator, PoseHypothesis
from .lighting import LightingEstimate, LightingEstimator, PBRLightingConfig
from .preprocessing import ImagePreprocessor
from .sparse import SparseMap, build_tracks, triangulate_tracks
from .collaborators import (
    CapturedFrame,
    PosedImage,
    CaptureSource,
    DescriptorExtractor,
    DenseReconstructor,
    Renderer,
    DirectoryCapture,
    SiftDescriptorExtractor,
    PlyExportReconstructor
)
from .pipeline import PipelineStage, PipelineState, PipelineOrchestrator

__all__ = [
    'CameraIntrinsics',
    'Pose',
    'load_calibration',
    'ReconstructionError',
    'InsufficientData',
    'DegenerateGeometry',
    'ConvergenceFailure',
    'InvalidInput',
    'Cancelled',
    'StageTimeout',
    'CollaboratorUnavailable',
    'CaptureUnavailable',
    'ExtractionFailed',
    'ReconstructionFailed',
    'RenderUnavailable',
    'InvalidTransition',
    'Descriptor',
    'Match',
    'CorrespondenceMatcher',
    'Point3D',
    'Triangulator',
    'compute_essential_matrix',
    'decompose_essential',
    'PoseEstimator',
    'PoseHypothesis',
    'LightingEstimate',
    'LightingEstimator',
    'PBRLightingConfig',
    'ImagePreprocessor',
    'SparseMap',
    'build_tracks',
    'triangulate_tracks',
    'CapturedFrame',
    'PosedImage',
    'CaptureSource',
    'DescriptorExtractor',
    'DenseReconstructor',
    'Renderer',
    'DirectoryCapture',
    'SiftDescriptorExtractor',
    'PlyExportReconstructor',
    'PipelineStage',
    'PipelineState',
    'PipelineOrchestrator'
]
