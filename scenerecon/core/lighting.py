"""
Scene lighting estimation from raw pixel data

A 256-bin luminance histogram drives brightness, contrast and the
highlight/shadow lists; the red/blue balance of the same pixel sample
drives the color temperature.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Tuple

import numpy as np

from .errors import InvalidInput

logger = logging.getLogger(__name__)

DEFAULT_BRIGHTNESS = 0.5
DEFAULT_TEMPERATURE = 6500.0
MIN_TEMPERATURE = 2000.0
MAX_TEMPERATURE = 15000.0

LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114])


@dataclass(frozen=True)
class HistogramSample:
    """One occupied histogram bin"""
    position: int       # bin index 0..255
    intensity: float    # bin luminance in [0, 1]
    weight: float       # fraction of sampled pixels in the bin


@dataclass(frozen=True)
class PBRLightingConfig:
    """Light parameters handed to the render collaborator"""
    intensity: float
    color_temperature: float
    light_color: Tuple[float, float, float]


@dataclass(frozen=True)
class LightingEstimate:
    brightness: float = DEFAULT_BRIGHTNESS
    contrast: float = 0.0
    color_temperature: float = DEFAULT_TEMPERATURE
    highlights: List[HistogramSample] = field(default_factory=list)
    shadows: List[HistogramSample] = field(default_factory=list)

    def to_pbr_config(self) -> PBRLightingConfig:
        return PBRLightingConfig(
            intensity=self.brightness,
            color_temperature=self.color_temperature,
            light_color=kelvin_to_rgb(self.color_temperature)
        )


def kelvin_to_rgb(kelvin: float) -> Tuple[float, float, float]:
    """
    Approximate RGB (each in [0, 1]) of a black-body radiator

    Curve fit valid between 1000 K and 40000 K.
    """
    temp = np.clip(kelvin, 1000.0, 40000.0) / 100.0

    if temp <= 66:
        red = 255.0
        green = 99.4708025861 * np.log(temp) - 161.1195681661
    else:
        red = 329.698727446 * (temp - 60) ** -0.1332047592
        green = 288.1221695283 * (temp - 60) ** -0.0755148492

    if temp >= 66:
        blue = 255.0
    elif temp <= 19:
        blue = 0.0
    else:
        blue = 138.5177312231 * np.log(temp - 10) - 305.0447927307

    rgb = np.clip([red, green, blue], 0.0, 255.0) / 255.0
    return float(rgb[0]), float(rgb[1]), float(rgb[2])


class LightingEstimator:
    """
    Derives brightness, contrast, color temperature and highlight/shadow
    bins from one image's pixels. Stateless; safe to share across threads.
    """

    def __init__(self, max_samples: int = 65536,
                 highlight_threshold: float = 0.8,
                 shadow_threshold: float = 0.2):
        """
        Args:
            max_samples: upper bound on pixels read (strided, deterministic)
            highlight_threshold: bins brighter than this are highlights
            shadow_threshold: bins darker than this are shadows
        """
        if max_samples < 1:
            raise InvalidInput(f"max_samples must be positive, got {max_samples}")
        self.max_samples = max_samples
        self.highlight_threshold = highlight_threshold
        self.shadow_threshold = shadow_threshold

    def estimate(self, pixels: np.ndarray, channel_order: str = 'rgb') -> LightingEstimate:
        """
        Estimate scene lighting

        Args:
            pixels: HxW, HxWxC or NxC buffer with C in {1, 3, 4}; uint8, any other
                integer type (scaled by its max) or float in [0, 1]
            channel_order: 'rgb' or 'bgr' (OpenCV images)

        Returns:
            LightingEstimate; defaults for an empty buffer
        """
        rgb = self._sample(pixels, channel_order)
        if len(rgb) == 0:
            return LightingEstimate()

        luminance = rgb @ LUMA_WEIGHTS
        bins = np.clip(np.round(luminance), 0, 255).astype(int)
        histogram = np.bincount(bins, minlength=256).astype(np.float64)
        weights = histogram / histogram.sum()
        occupied = np.flatnonzero(histogram)

        brightness = float(np.sum(weights * np.arange(256)) / 255.0)
        contrast = float((occupied.max() - occupied.min()) / 255.0)

        highlights = [HistogramSample(int(b), b / 255.0, float(weights[b]))
                      for b in occupied if b / 255.0 > self.highlight_threshold]
        shadows = [HistogramSample(int(b), b / 255.0, float(weights[b]))
                   for b in occupied if b / 255.0 < self.shadow_threshold]
        highlights.sort(key=lambda s: s.intensity, reverse=True)
        shadows.sort(key=lambda s: s.intensity)

        temperature = estimate_color_temperature(rgb)

        logger.debug("Lighting: brightness=%.3f contrast=%.3f temperature=%.0fK",
                     brightness, contrast, temperature)
        return LightingEstimate(
            brightness=brightness,
            contrast=contrast,
            color_temperature=temperature,
            highlights=highlights,
            shadows=shadows
        )

    def _sample(self, pixels: np.ndarray, channel_order: str) -> np.ndarray:
        """Bounded Nx3 RGB sample on a 0-255 float scale"""
        if channel_order not in ('rgb', 'bgr'):
            raise InvalidInput(f"channel_order must be 'rgb' or 'bgr', got {channel_order!r}")

        pixels = np.asarray(pixels)
        if pixels.size == 0:
            return np.zeros((0, 3))

        if pixels.ndim == 3 and pixels.shape[-1] == 1:
            pixels = pixels[..., 0]
        if pixels.ndim == 2 and pixels.shape[-1] not in (3, 4):
            # single-channel HxW frame, gray drives all three channels
            pixels = np.repeat(pixels[..., np.newaxis], 3, axis=-1)

        if pixels.ndim not in (2, 3) or pixels.shape[-1] not in (3, 4):
            raise InvalidInput(
                f"Expected an HxW, HxWx1/3/4 or Nx3/4 pixel buffer, got {pixels.shape}")

        flat = pixels.reshape(-1, pixels.shape[-1])[:, :3]
        stride = max(1, int(np.ceil(len(flat) / self.max_samples)))
        flat = flat[::stride]

        if np.issubdtype(flat.dtype, np.integer):
            scale = 255.0 / np.iinfo(flat.dtype).max
            rgb = np.clip(flat.astype(np.float64) * scale, 0.0, 255.0)
        elif np.issubdtype(flat.dtype, np.floating):
            if not np.all(np.isfinite(flat)):
                raise InvalidInput("Pixel buffer contains non-finite values")
            rgb = np.clip(flat.astype(np.float64), 0.0, 1.0) * 255.0
        else:
            raise InvalidInput(f"Unsupported pixel dtype {flat.dtype}")

        if channel_order == 'bgr':
            rgb = rgb[:, ::-1]
        return rgb


def estimate_color_temperature(rgb: np.ndarray) -> float:
    """
    Map the mean red/blue ratio of an Nx3 RGB sample to Kelvin

    ratio > 1.2  warm:    3500 K falling to 2800 K at ratio 2.0
    ratio < 0.8  cool:    7000 K at 0.8 rising to 7500 K as red vanishes
    otherwise    neutral: 6500 K at 1.2 to 7000 K at 0.8
    """
    if len(rgb) == 0:
        return DEFAULT_TEMPERATURE

    mean_r = float(np.mean(rgb[:, 0]))
    mean_b = float(np.mean(rgb[:, 2]))
    if mean_b <= 0:
        return DEFAULT_TEMPERATURE

    ratio = mean_r / mean_b
    if ratio > 1.2:
        kelvin = 3500.0 - 700.0 * min((ratio - 1.2) / 0.8, 1.0)
    elif ratio < 0.8:
        kelvin = 7000.0 + 500.0 * min((0.8 - ratio) / 0.8, 1.0)
    else:
        kelvin = 6500.0 + 500.0 * (1.2 - ratio) / 0.4

    return float(np.clip(kelvin, MIN_TEMPERATURE, MAX_TEMPERATURE))
