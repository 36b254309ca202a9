import asyncio

import cv2 as cv
import numpy as np
import pytest

from scenerecon.core.camera import Pose
from scenerecon.core.collaborators import (
    CaptureSource,
    DenseReconstructor,
    DescriptorExtractor,
    DirectoryCapture,
    PlyExportReconstructor,
    PosedImage,
    SiftDescriptorExtractor,
)
from scenerecon.core.errors import CaptureUnavailable, ExtractionFailed, ReconstructionFailed
from scenerecon.core.geometry import Point3D

from synthetic import pose_from_center, rot_y


def textured_image(seed=0):
    rng = np.random.default_rng(seed)
    small = rng.integers(0, 256, size=(60, 80), dtype=np.uint8)
    image = cv.resize(small, (640, 480), interpolation=cv.INTER_NEAREST)
    return cv.cvtColor(image, cv.COLOR_GRAY2BGR)


def test_defaults_satisfy_protocols(tmp_path):
    assert isinstance(DirectoryCapture(str(tmp_path)), CaptureSource)
    assert isinstance(SiftDescriptorExtractor(), DescriptorExtractor)
    assert isinstance(PlyExportReconstructor(str(tmp_path)), DenseReconstructor)


def test_directory_capture(tmp_path):
    for i in range(3):
        cv.imwrite(str(tmp_path / f'img_{i:02d}.png'), textured_image(i))
    (tmp_path / 'notes.txt').write_text('not an image')

    frames = asyncio.run(DirectoryCapture(str(tmp_path), max_images=2).capture())

    assert len(frames) == 2
    assert frames[0].metadata['path'].endswith('img_00.png')
    assert frames[0].image.shape == (480, 640, 3)
    assert frames[0].raw is None


def test_directory_capture_missing_dir(tmp_path):
    with pytest.raises(CaptureUnavailable):
        asyncio.run(DirectoryCapture(str(tmp_path / 'missing')).capture())


def test_directory_capture_empty_dir(tmp_path):
    with pytest.raises(CaptureUnavailable):
        asyncio.run(DirectoryCapture(str(tmp_path)).capture())


def test_sift_extractor():
    descriptors = asyncio.run(SiftDescriptorExtractor(n_features=500).extract(textured_image(), 4))

    assert 0 < len(descriptors) <= 500
    assert all(d.image_index == 4 for d in descriptors)
    assert [d.index for d in descriptors] == list(range(len(descriptors)))
    assert descriptors[0].vector.shape == (128,)


def test_sift_extractor_blank_image():
    blank = np.full((480, 640, 3), 127, dtype=np.uint8)
    with pytest.raises(ExtractionFailed):
        asyncio.run(SiftDescriptorExtractor().extract(blank, 0))


def test_ply_export(tmp_path):
    posed = [
        PosedImage(0, textured_image(), Pose.identity()),
        PosedImage(1, textured_image(), pose_from_center(rot_y(0.1), np.array([1.0, 0.0, 0.0]))),
    ]
    points = [
        Point3D(position=[0.0, 0.0, 5.0], color=np.array([255, 0, 0], dtype=np.uint8)),
        Point3D(position=[1.0, 1.0, 6.0]),
    ]

    asset = asyncio.run(PlyExportReconstructor(str(tmp_path / 'out')).reconstruct(posed, points))

    sparse = asset['sparse'].read_text().splitlines()
    assert 'element vertex 2' in sparse
    assert sparse[-2] == '0.000000 0.000000 5.000000 255 0 0'
    assert sparse[-1].endswith('127 127 127')
    assert 'element vertex 4' in asset['cameras'].read_text()


def test_ply_export_unwritable(tmp_path):
    blocker = tmp_path / 'file'
    blocker.write_text('')
    with pytest.raises(ReconstructionFailed):
        asyncio.run(PlyExportReconstructor(str(blocker / 'out')).reconstruct([], []))
