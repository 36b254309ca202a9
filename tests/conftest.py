import pytest

from scenerecon.config import PipelineConfig
from scenerecon.core.pose import PoseEstimator
from scenerecon.core.pipeline import PipelineOrchestrator

from synthetic import FakeCapture, RecordingDense, RecordingRenderer, SceneExtractor, SyntheticScene


@pytest.fixture
def scene():
    return SyntheticScene()


@pytest.fixture
def intrinsics(scene):
    return scene.intrinsics


@pytest.fixture
def estimator():
    return PoseEstimator(max_iterations=200, inlier_threshold=2.0, seed=0)


@pytest.fixture
def config():
    return PipelineConfig.model_validate({
        'pose': {'max_iterations': 200, 'seed': 0},
        'min_seed_matches': 8,
    })


@pytest.fixture
def build_orchestrator(scene, config):
    """Factory returning (orchestrator, capture, extractor, dense, renderer)"""
    def build(capture=None, extractor=None, dense=None, renderer=None, **overrides):
        capture = capture or FakeCapture(scene.frames())
        extractor = extractor or SceneExtractor(scene)
        dense = dense or RecordingDense()
        renderer = renderer or RecordingRenderer()
        cfg = config.model_copy(update=overrides) if overrides else config
        orchestrator = PipelineOrchestrator(capture, extractor, dense, scene.intrinsics,
                                            renderer=renderer, config=cfg)
        return orchestrator, capture, extractor, dense, renderer
    return build
