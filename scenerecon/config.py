"""Configuration for the reconstruction pipeline."""

from pathlib import Path
from typing import Dict, Literal, Optional

from pydantic import BaseModel, Field


class MatcherConfig(BaseModel):
    similarity_threshold: float = Field(0.85, ge=0.0, le=1.0,
                                        description="Minimum accepted similarity (1 - distance)")
    index: Literal["brute", "kdtree"] = Field("brute", description="Nearest-neighbor backend")


class PoseConfig(BaseModel):
    max_iterations: int = Field(1000, ge=1, description="RANSAC iteration budget")
    inlier_threshold: float = Field(3.0, gt=0, description="Reprojection inlier threshold (px)")
    early_stop_ratio: float = Field(0.95, gt=0, le=1.0, description="Stop once this inlier ratio is reached")
    batch_size: int = Field(50, ge=1, description="Iterations per batch between cancellation checks")
    workers: int = Field(1, ge=1, description="Threads evaluating RANSAC batches")
    collinearity_tolerance: float = Field(1e-3, ge=0, description="Sine below which a sample triple is collinear")
    max_resample: int = Field(10, ge=1, description="Draws per iteration before giving up on a sample")
    minimal_solver: Literal["ap3p", "p3p", "epnp"] = Field("ap3p", description="Minimal PnP solver")
    refine: bool = Field(True, description="Refine the best model on its inliers")
    seed: Optional[int] = Field(None, description="RANSAC seed; None draws fresh entropy")
    essential_threshold: float = Field(1.0, gt=0, description="Epipolar RANSAC threshold (px)")
    essential_confidence: float = Field(0.999, gt=0, lt=1, description="Epipolar RANSAC confidence")
    baseline: float = Field(1.0, gt=0, description="Scale given to the seed pair translation")


class TriangulationConfig(BaseModel):
    min_baseline_ratio: float = Field(0.01, ge=0, description="Minimum baseline / depth ratio")
    max_residual: float = Field(1e-2, gt=0, description="Residual above which points are low-confidence")
    reject_low_confidence: bool = Field(True, description="Drop low-confidence points from the cloud")


class LightingConfig(BaseModel):
    max_samples: int = Field(65536, ge=1, description="Pixels sampled for the histogram")
    highlight_threshold: float = Field(0.8, ge=0, le=1.0)
    shadow_threshold: float = Field(0.2, ge=0, le=1.0)


class PreprocessConfig(BaseModel):
    enhance: bool = Field(True, description="Apply denoise/CLAHE/sharpen")
    min_width: int = Field(640, ge=1)
    min_height: int = Field(480, ge=1)
    denoise_sigma: float = Field(0.8, ge=0)
    clahe_clip: float = Field(2.0, gt=0)
    clahe_tiles: int = Field(8, ge=1)
    sharpen_amount: float = Field(0.6, ge=0)


class PipelineConfig(BaseModel):
    matcher: MatcherConfig = Field(default_factory=MatcherConfig)
    pose: PoseConfig = Field(default_factory=PoseConfig)
    triangulation: TriangulationConfig = Field(default_factory=TriangulationConfig)
    lighting: LightingConfig = Field(default_factory=LightingConfig)
    preprocessing: PreprocessConfig = Field(default_factory=PreprocessConfig)

    min_images: int = Field(2, ge=2, description="Fewest frames a session accepts")
    match_window: int = Field(3, ge=1, description="Each image is matched with this many successors")
    min_seed_matches: int = Field(8, ge=5, description="Matches needed by the seed pair")
    max_reprojection_error: float = Field(4.0, gt=0, description="Map point acceptance threshold (px)")
    require_all_views: bool = Field(True, description="Fail when any view cannot be posed")
    stage_timeouts: Dict[str, float] = Field(
        default_factory=dict,
        description="Per-stage timeout in seconds, keyed by stage name (e.g. 'matching')")

    @classmethod
    def from_file(cls, path: str) -> "PipelineConfig":
        return cls.model_validate_json(Path(path).read_text())
