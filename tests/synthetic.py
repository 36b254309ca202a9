"""
Synthetic scene and fake collaborators shared by the tests

The scene is a cloud of random points in front of a short row of cameras
that slide along +x while yawing slightly. Every point carries a fixed
random unit descriptor, so identical points match perfectly across views
and different points never reach the default similarity threshold.
"""
import asyncio
from typing import List, Optional

import numpy as np

from scenerecon.core.camera import CameraIntrinsics, Pose
from scenerecon.core.collaborators import CapturedFrame
from scenerecon.core.features import Descriptor

WIDTH, HEIGHT = 640, 480


def rot_y(theta: float) -> np.ndarray:
    c, s = np.cos(theta), np.sin(theta)
    return np.array([[c, 0.0, s], [0.0, 1.0, 0.0], [-s, 0.0, c]])


def pose_from_center(R: np.ndarray, center: np.ndarray) -> Pose:
    return Pose(R=R, t=-R @ center)


class SyntheticScene:
    def __init__(self, n_points: int = 60, n_views: int = 4, spacing: float = 0.3,
                 yaw: float = 0.02, descriptor_size: int = 32, seed: int = 0):
        rng = np.random.default_rng(seed)
        self.intrinsics = CameraIntrinsics(fx=500.0, fy=500.0, cx=320.0, cy=240.0)
        self.points = np.column_stack([
            rng.uniform(-1.0, 1.0, n_points),
            rng.uniform(-1.0, 1.0, n_points),
            rng.uniform(4.0, 6.0, n_points),
        ])
        self.poses = [
            pose_from_center(rot_y(-yaw * i), np.array([spacing * i, 0.0, 0.0]))
            for i in range(n_views)
        ]
        vectors = rng.normal(size=(n_points, descriptor_size))
        self.vectors = vectors / np.linalg.norm(vectors, axis=1, keepdims=True)
        self.images = [
            rng.integers(0, 256, size=(HEIGHT, WIDTH, 3), dtype=np.uint8)
            for _ in range(n_views)
        ]

    @property
    def n_views(self) -> int:
        return len(self.poses)

    def project(self, view: int) -> np.ndarray:
        cam = self.poses[view].transform_points(self.points)
        return self.intrinsics.project(cam)

    def descriptors_for(self, view: int) -> List[Descriptor]:
        pixels = self.project(view)
        return [
            Descriptor(vector=self.vectors[p], image_index=view, index=p,
                       x=float(pixels[p, 0]), y=float(pixels[p, 1]))
            for p in range(len(self.points))
        ]

    def frames(self) -> List[CapturedFrame]:
        return [CapturedFrame(image=img, metadata={'view': i}) for i, img in enumerate(self.images)]


class FakeCapture:
    def __init__(self, frames, error: Optional[Exception] = None, delay: float = 0.0,
                 block: bool = False):
        self.frames = frames
        self.error = error
        self.delay = delay
        self.block = block
        self.calls = 0

    async def capture(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.block:
            await asyncio.Event().wait()
        if self.error is not None:
            raise self.error
        return list(self.frames)


class SceneExtractor:
    def __init__(self, scene: SyntheticScene, error: Optional[Exception] = None,
                 fail_on: Optional[int] = None):
        self.scene = scene
        self.error = error
        self.fail_on = fail_on
        self.calls = []

    async def extract(self, image, image_index):
        self.calls.append(image_index)
        await asyncio.sleep(0)
        if self.error is not None and (self.fail_on is None or self.fail_on == image_index):
            raise self.error
        return self.scene.descriptors_for(image_index)


class RecordingDense:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.calls = []

    async def reconstruct(self, posed_images, points):
        self.calls.append((list(posed_images), list(points)))
        if self.error is not None:
            raise self.error
        return {'mesh': 'asset', 'points': len(points)}


class RecordingRenderer:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.calls = []

    async def render(self, asset, lighting):
        self.calls.append((asset, lighting))
        if self.error is not None:
            raise self.error
        return 'frame'
