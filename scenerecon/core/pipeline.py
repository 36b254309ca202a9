"""
Reconstruction pipeline orchestration

A finite state machine that drives one reconstruction session:

    IDLE -> CAPTURING -> PREPROCESSING -> EXTRACTING_FEATURES -> MATCHING
         -> ESTIMATING_POSE -> TRIANGULATING -> ANALYZING_LIGHTING
         -> HANDOFF_TO_RECONSTRUCTION -> COMPLETE

Any failure moves the session to FAILED and no later stage runs. Stages are
asyncio tasks raced against the session's cancel signal and an optional
per-stage timeout; CPU-bound work runs in worker threads.
"""
import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from ..config import PipelineConfig
from .camera import CameraIntrinsics, Pose
from .collaborators import (
    CaptureSource,
    CapturedFrame,
    DenseReconstructor,
    DescriptorExtractor,
    PosedImage,
    Renderer,
)
from .errors import (
    Cancelled,
    CaptureUnavailable,
    ExtractionFailed,
    InsufficientData,
    InvalidInput,
    InvalidTransition,
    ReconstructionError,
    ReconstructionFailed,
    RenderUnavailable,
    StageTimeout,
)
from .features import CorrespondenceMatcher, Descriptor, Match
from .geometry import Point3D, Triangulator
from .lighting import LightingEstimate, LightingEstimator
from .pose import PoseEstimator
from .preprocessing import ImagePreprocessor
from .sparse import SparseMap, TriangulationStats, build_tracks, triangulate_tracks

logger = logging.getLogger(__name__)


class PipelineStage(str, Enum):
    IDLE = 'idle'
    CAPTURING = 'capturing'
    PREPROCESSING = 'preprocessing'
    EXTRACTING_FEATURES = 'extracting_features'
    MATCHING = 'matching'
    ESTIMATING_POSE = 'estimating_pose'
    TRIANGULATING = 'triangulating'
    ANALYZING_LIGHTING = 'analyzing_lighting'
    HANDOFF_TO_RECONSTRUCTION = 'handoff_to_reconstruction'
    COMPLETE = 'complete'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineStage.COMPLETE, PipelineStage.FAILED)


STAGE_ORDER = [
    PipelineStage.IDLE,
    PipelineStage.CAPTURING,
    PipelineStage.PREPROCESSING,
    PipelineStage.EXTRACTING_FEATURES,
    PipelineStage.MATCHING,
    PipelineStage.ESTIMATING_POSE,
    PipelineStage.TRIANGULATING,
    PipelineStage.ANALYZING_LIGHTING,
    PipelineStage.HANDOFF_TO_RECONSTRUCTION,
    PipelineStage.COMPLETE,
]


def allowed_transitions(stage: PipelineStage) -> List[PipelineStage]:
    """Stages reachable from `stage`: its successor and FAILED"""
    if stage.is_terminal:
        return []
    successor = STAGE_ORDER[STAGE_ORDER.index(stage) + 1]
    return [successor, PipelineStage.FAILED]


@dataclass
class PipelineState:
    """
    Stage of one session plus every artifact produced so far

    Artifacts survive a failure so they can be inspected afterwards.
    """
    stage: PipelineStage = PipelineStage.IDLE
    error: Optional[BaseException] = None
    failed_stage: Optional[PipelineStage] = None

    frames: List[CapturedFrame] = field(default_factory=list)
    images: List[np.ndarray] = field(default_factory=list)
    descriptors: List[List[Descriptor]] = field(default_factory=list)
    matches: Dict[tuple, List[Match]] = field(default_factory=dict)
    poses: Dict[int, Pose] = field(default_factory=dict)
    points: List[Point3D] = field(default_factory=list)
    triangulation_stats: Optional[TriangulationStats] = None
    lighting: Optional[LightingEstimate] = None
    asset: Any = None
    render_output: Any = None

    history: List[PipelineStage] = field(default_factory=lambda: [PipelineStage.IDLE])
    stage_durations: Dict[PipelineStage, float] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.stage is PipelineStage.COMPLETE

    @property
    def failed(self) -> bool:
        return self.stage is PipelineStage.FAILED


TransitionCallback = Callable[[PipelineStage, PipelineStage, PipelineState], None]


class PipelineOrchestrator:
    """
    Runs one reconstruction session

    Usage:
        orchestrator = PipelineOrchestrator(capture, extractor, dense, intrinsics)
        state = await orchestrator.run()
        if state.failed:
            print(state.error)

    The orchestrator is the only writer of its PipelineState; components are
    stateless between calls. cancel() may be called from any thread.
    """

    def __init__(self,
                 capture: CaptureSource,
                 extractor: DescriptorExtractor,
                 dense: DenseReconstructor,
                 intrinsics: CameraIntrinsics,
                 renderer: Optional[Renderer] = None,
                 config: Optional[PipelineConfig] = None,
                 preprocessor: Optional[ImagePreprocessor] = None,
                 matcher: Optional[CorrespondenceMatcher] = None,
                 estimator: Optional[PoseEstimator] = None,
                 triangulator: Optional[Triangulator] = None,
                 lighting_estimator: Optional[LightingEstimator] = None):
        self.config = config or PipelineConfig()
        self.capture = capture
        self.extractor = extractor
        self.dense = dense
        self.renderer = renderer
        self.intrinsics = intrinsics

        cfg = self.config
        self.preprocessor = preprocessor or ImagePreprocessor(**cfg.preprocessing.model_dump())
        self.matcher = matcher or CorrespondenceMatcher(**cfg.matcher.model_dump())
        self.estimator = estimator or PoseEstimator(**cfg.pose.model_dump())
        self.triangulator = triangulator or Triangulator(
            min_baseline_ratio=cfg.triangulation.min_baseline_ratio,
            max_residual=cfg.triangulation.max_residual)
        self.lighting_estimator = lighting_estimator or LightingEstimator(**cfg.lighting.model_dump())

        self._timeouts = self._parse_timeouts(cfg.stage_timeouts)
        self._state = PipelineState()
        self._listeners: List[TransitionCallback] = []
        self._cancel_requested = threading.Event()
        self._stage_stop: Optional[threading.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._cancel_signal: Optional[asyncio.Event] = None
        self._lock = threading.Lock()

    @staticmethod
    def _parse_timeouts(raw: Dict[str, float]) -> Dict[PipelineStage, float]:
        timeouts = {}
        for name, seconds in raw.items():
            try:
                stage = PipelineStage(name)
            except ValueError:
                raise InvalidInput(f"Unknown stage in stage_timeouts: {name!r}") from None
            if stage.is_terminal or stage is PipelineStage.IDLE:
                raise InvalidInput(f"Stage {name!r} cannot have a timeout")
            if seconds <= 0:
                raise InvalidInput(f"Timeout for {name!r} must be positive, got {seconds}")
            timeouts[stage] = seconds
        return timeouts

    @property
    def state(self) -> PipelineState:
        return self._state

    def on_transition(self, callback: TransitionCallback) -> None:
        """Register callback(previous, current, state), invoked on every transition"""
        self._listeners.append(callback)

    def cancel(self) -> None:
        """Abort the session; it ends in FAILED with a Cancelled error"""
        with self._lock:
            self._cancel_requested.set()
            if self._stage_stop is not None:
                self._stage_stop.set()
            if self._loop is not None and self._cancel_signal is not None:
                self._loop.call_soon_threadsafe(self._cancel_signal.set)

    # ------------------------------------------------------------ state machine

    def _transition(self, target: PipelineStage) -> None:
        state = self._state
        previous = state.stage
        if target not in allowed_transitions(previous):
            raise InvalidTransition(f"Cannot move from {previous.value} to {target.value}")

        state.stage = target
        state.history.append(target)
        logger.info("Pipeline: %s -> %s", previous.value, target.value)

        for callback in self._listeners:
            try:
                callback(previous, target, state)
            except Exception:
                logger.exception("Transition listener %r raised", callback)

    def _fail(self, error: BaseException) -> None:
        state = self._state
        if state.stage.is_terminal:
            return
        state.failed_stage = state.stage
        state.error = error
        logger.error("Pipeline failed during %s: %s", state.stage.value, error)
        self._transition(PipelineStage.FAILED)

    # ------------------------------------------------------------ run loop

    async def run(self) -> PipelineState:
        """
        Execute every stage in order

        Returns:
            The final PipelineState (COMPLETE or FAILED). Typed failures are
            recorded on the state rather than raised.
        """
        if self._state.stage is not PipelineStage.IDLE:
            raise InvalidTransition("A session can only be run once")

        self._loop = asyncio.get_running_loop()
        self._cancel_signal = asyncio.Event()
        if self._cancel_requested.is_set():
            self._cancel_signal.set()

        stages = [
            (PipelineStage.CAPTURING, self._capture),
            (PipelineStage.PREPROCESSING, self._preprocess),
            (PipelineStage.EXTRACTING_FEATURES, self._extract_features),
            (PipelineStage.MATCHING, self._match),
            (PipelineStage.ESTIMATING_POSE, self._estimate_poses),
            (PipelineStage.TRIANGULATING, self._triangulate),
            (PipelineStage.ANALYZING_LIGHTING, self._analyze_lighting),
            (PipelineStage.HANDOFF_TO_RECONSTRUCTION, self._handoff),
        ]

        try:
            for stage, handler in stages:
                if self._cancel_requested.is_set():
                    raise Cancelled(f"Session cancelled before {stage.value}")
                self._transition(stage)
                await self._run_stage(stage, handler)
            self._transition(PipelineStage.COMPLETE)
        except ReconstructionError as exc:
            self._fail(exc)
        except asyncio.CancelledError:
            self._fail(Cancelled("Session task was cancelled"))
            raise
        except Exception as exc:
            self._fail(exc)
            raise
        finally:
            with self._lock:
                self._loop = None
                self._stage_stop = None

        return self._state

    async def _run_stage(self, stage: PipelineStage, handler) -> None:
        stop = threading.Event()
        with self._lock:
            self._stage_stop = stop
            if self._cancel_requested.is_set():
                stop.set()

        timeout = self._timeouts.get(stage)
        started = time.perf_counter()
        task = asyncio.ensure_future(handler(stop))
        cancel_wait = asyncio.ensure_future(self._cancel_signal.wait())

        try:
            done, _ = await asyncio.wait({task, cancel_wait}, timeout=timeout,
                                         return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            stop.set()
            task.cancel()
            raise
        finally:
            cancel_wait.cancel()
            self._state.stage_durations[stage] = time.perf_counter() - started

        if task in done:
            task.result()
            return

        stop.set()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        if cancel_wait in done:
            raise Cancelled(f"Cancelled during {stage.value}")
        raise StageTimeout(f"Stage {stage.value} exceeded its {timeout:g}s timeout")

    @staticmethod
    async def _call_collaborator(error_cls, description: str, awaitable):
        """Await a collaborator, converting untyped failures to error_cls"""
        try:
            return await awaitable
        except ReconstructionError:
            raise
        except Exception as exc:
            raise error_cls(f"{description} failed: {exc}") from exc

    # ------------------------------------------------------------ stages

    async def _capture(self, stop: threading.Event) -> None:
        frames = await self._call_collaborator(
            CaptureUnavailable, "Capture", self.capture.capture())
        frames = list(frames or [])

        for i, frame in enumerate(frames):
            if not isinstance(frame, CapturedFrame):
                raise InvalidInput(f"Capture returned {type(frame).__name__} for frame {i}")

        self._state.frames = frames
        if len(frames) < self.config.min_images:
            raise InsufficientData(
                f"Captured {len(frames)} frames, need at least {self.config.min_images}")

    async def _preprocess(self, stop: threading.Event) -> None:
        images = [frame.image for frame in self._state.frames]
        self._state.images = await asyncio.to_thread(self.preprocessor.process_batch, images)

    async def _extract_features(self, stop: threading.Event) -> None:
        tasks = [
            asyncio.ensure_future(self._call_collaborator(
                ExtractionFailed, f"Descriptor extraction for image {i}",
                self.extractor.extract(image, i)))
            for i, image in enumerate(self._state.images)
        ]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        descriptors = []
        for i, image_descriptors in enumerate(results):
            image_descriptors = list(image_descriptors)
            if any(d.image_index != i for d in image_descriptors):
                raise InvalidInput(f"Extractor returned descriptors of another image for image {i}")
            descriptors.append(image_descriptors)
            logger.debug("Image %d: %d descriptors", i, len(image_descriptors))

        self._state.descriptors = descriptors

    async def _match(self, stop: threading.Event) -> None:
        matches = await asyncio.to_thread(
            self.matcher.match_all_pairs, self._state.descriptors, self.config.match_window)
        self._state.matches = matches
        if not matches:
            raise InsufficientData("No feature matches found between images")

    async def _estimate_poses(self, stop: threading.Event) -> None:
        sparse_map = SparseMap(
            self._state.descriptors,
            self._state.matches,
            self.intrinsics,
            self.estimator,
            self.triangulator,
            min_seed_matches=self.config.min_seed_matches,
            max_reprojection_error=self.config.max_reprojection_error
        )
        self._state.poses = await asyncio.to_thread(
            sparse_map.register_all, self.config.require_all_views, stop)

    async def _triangulate(self, stop: threading.Event) -> None:
        tracks = build_tracks(self._state.matches)
        points, stats = await asyncio.to_thread(
            triangulate_tracks,
            tracks,
            self._state.descriptors,
            self._state.poses,
            self.intrinsics,
            self.triangulator,
            self._state.images,
            self.config.triangulation.reject_low_confidence,
            stop
        )
        self._state.points = points
        self._state.triangulation_stats = stats
        if not points:
            raise InsufficientData(f"No track could be triangulated ({stats.tracks} tracks)")

    async def _analyze_lighting(self, stop: threading.Event) -> None:
        frame = self._state.frames[0]
        if frame.raw is not None:
            pixels, order = frame.raw, 'rgb'
        else:
            pixels, order = frame.image, 'bgr'
        self._state.lighting = await asyncio.to_thread(
            self.lighting_estimator.estimate, pixels, order)

    async def _handoff(self, stop: threading.Event) -> None:
        posed_images = [
            PosedImage(index=i, image=self._state.images[i], pose=pose)
            for i, pose in sorted(self._state.poses.items()) if pose.is_usable
        ]
        self._state.asset = await self._call_collaborator(
            ReconstructionFailed, "Dense reconstruction",
            self.dense.reconstruct(posed_images, self._state.points))

        if self.renderer is not None:
            self._state.render_output = await self._call_collaborator(
                RenderUnavailable, "Rendering",
                self.renderer.render(self._state.asset, self._state.lighting))
