"""
Interfaces to the external collaborators and default implementations

The orchestrator only depends on the Protocols below. The default
implementations (directory capture, SIFT descriptors, PLY export) make the
command line tool usable without a vendor capture or photogrammetry stack.
"""
import asyncio
import glob
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

import cv2 as cv
import numpy as np

from .camera import CameraIntrinsics, Pose
from .errors import CaptureUnavailable, ExtractionFailed, ReconstructionFailed
from .features import Descriptor
from .geometry import Point3D
from .lighting import LightingEstimate
from .utils import save_cameras_ply, save_ply

logger = logging.getLogger(__name__)


@dataclass
class CapturedFrame:
    """One captured image plus whatever the capture device reported"""
    image: np.ndarray                       # BGR uint8, as OpenCV loads it
    metadata: Dict[str, Any] = field(default_factory=dict)
    raw: Optional[np.ndarray] = None        # RGB sensor buffer for lighting analysis


@dataclass
class PosedImage:
    index: int
    image: np.ndarray
    pose: Pose


@runtime_checkable
class CaptureSource(Protocol):
    async def capture(self) -> List[CapturedFrame]:
        """Return the frames of one capture session or raise CaptureUnavailable"""
        ...


@runtime_checkable
class DescriptorExtractor(Protocol):
    async def extract(self, image: np.ndarray, image_index: int) -> List[Descriptor]:
        """Compute descriptors for one image or raise ExtractionFailed"""
        ...


@runtime_checkable
class DenseReconstructor(Protocol):
    async def reconstruct(self, posed_images: Sequence[PosedImage],
                          points: Sequence[Point3D]) -> Any:
        """Produce an opaque mesh/asset or raise ReconstructionFailed"""
        ...


@runtime_checkable
class Renderer(Protocol):
    async def render(self, asset: Any, lighting: LightingEstimate) -> Any:
        """Render the asset under the estimated lighting or raise RenderUnavailable"""
        ...


class DirectoryCapture:
    """Reads a capture session from an image directory"""

    extensions = ['*.jpg', '*.JPG', '*.png', '*.PNG', '*.jpeg', '*.JPEG']

    def __init__(self, image_dir: str, max_images: Optional[int] = None,
                 intrinsics: Optional[CameraIntrinsics] = None):
        self.image_dir = Path(image_dir)
        self.max_images = max_images
        self.intrinsics = intrinsics

    async def capture(self) -> List[CapturedFrame]:
        return await asyncio.to_thread(self._load)

    def _load(self) -> List[CapturedFrame]:
        if not self.image_dir.is_dir():
            raise CaptureUnavailable(f"Image directory not found: {self.image_dir}")

        image_paths = []
        for ext in self.extensions:
            image_paths.extend(glob.glob(str(self.image_dir / ext)))
        image_paths = sorted(set(image_paths))

        if self.max_images:
            image_paths = image_paths[:self.max_images]

        frames = []
        for path in image_paths:
            img = cv.imread(path)
            if img is None:
                logger.warning("Failed to load %s", path)
                continue

            if self.intrinsics is not None and np.any(self.intrinsics.dist_coeffs):
                img = cv.undistort(img, self.intrinsics.K, self.intrinsics.dist_coeffs)

            frames.append(CapturedFrame(image=img, metadata={'path': path}))

        if not frames:
            raise CaptureUnavailable(f"No readable images in {self.image_dir}")

        logger.info("Loaded %d images from %s", len(frames), self.image_dir)
        return frames


class SiftDescriptorExtractor:
    """
    SIFT-based descriptor extractor

    Runs OpenCV off the event loop; descriptors keep the keypoint order
    OpenCV returns.
    """

    def __init__(self, n_features: int = 8000):
        """
        Args:
            n_features: maximum number of features to detect
        """
        self.n_features = n_features

    async def extract(self, image: np.ndarray, image_index: int) -> List[Descriptor]:
        return await asyncio.to_thread(self._extract, image, image_index)

    def _extract(self, image: np.ndarray, image_index: int) -> List[Descriptor]:
        # cv.SIFT objects are not shared between threads
        detector = cv.SIFT_create(
            nfeatures=self.n_features,
            contrastThreshold=0.03,
            edgeThreshold=15,
            sigma=1.6
        )

        if image.ndim == 3:
            gray = cv.cvtColor(image, cv.COLOR_BGR2GRAY)
        else:
            gray = image

        try:
            keypoints, descriptors = detector.detectAndCompute(gray, None)
        except cv.error as exc:
            raise ExtractionFailed(f"SIFT failed on image {image_index}: {exc}") from exc

        if descriptors is None or len(keypoints) == 0:
            raise ExtractionFailed(f"No features found in image {image_index}")

        return [
            Descriptor(vector=descriptors[i], image_index=image_index, index=i,
                       x=float(kp.pt[0]), y=float(kp.pt[1]))
            for i, kp in enumerate(keypoints)
        ]


class PlyExportReconstructor:
    """
    Stand-in dense collaborator: exports the sparse result as PLY files

    The returned asset is a dict of written paths.
    """

    def __init__(self, output_dir: str):
        self.output_dir = Path(output_dir)

    async def reconstruct(self, posed_images: Sequence[PosedImage],
                          points: Sequence[Point3D]) -> Dict[str, Path]:
        return await asyncio.to_thread(self._export, posed_images, points)

    def _export(self, posed_images: Sequence[PosedImage],
                points: Sequence[Point3D]) -> Dict[str, Path]:
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)

            positions = np.array([p.position for p in points]).reshape(-1, 3)
            colors = np.array([
                p.color if p.color is not None else (127, 127, 127) for p in points
            ], dtype=np.uint8).reshape(-1, 3)

            sparse_path = self.output_dir / 'sparse.ply'
            cameras_path = self.output_dir / 'cameras.ply'
            save_ply(positions, colors, str(sparse_path))
            save_cameras_ply({p.index: p.pose for p in posed_images}, str(cameras_path))
        except OSError as exc:
            raise ReconstructionFailed(f"Could not write reconstruction to {self.output_dir}") from exc

        return {'sparse': sparse_path, 'cameras': cameras_path}
