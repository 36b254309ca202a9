"""
Image preprocessing ahead of feature extraction

Validates captured frames and applies a light enhancement chain:
noise reduction, CLAHE contrast equalization and unsharp-mask sharpening.
"""
import logging

import cv2 as cv
import numpy as np

from .errors import InvalidInput

logger = logging.getLogger(__name__)


class ImagePreprocessor:
    """
    Frame validation and enhancement

    CLAHE runs on the L channel of LAB; chroma is left as captured.
    """

    def __init__(self,
                 enhance: bool = True,
                 min_width: int = 640,
                 min_height: int = 480,
                 denoise_sigma: float = 0.8,
                 clahe_clip: float = 2.0,
                 clahe_tiles: int = 8,
                 sharpen_amount: float = 0.6):
        self.enhance = enhance
        self.min_width = min_width
        self.min_height = min_height
        self.denoise_sigma = denoise_sigma
        self.sharpen_amount = sharpen_amount
        self.clahe_clip = clahe_clip
        self.clahe_tiles = clahe_tiles

    def validate(self, image: np.ndarray, index: int = 0) -> None:
        """Raise InvalidInput unless the frame is a usable 8-bit image"""
        if not isinstance(image, np.ndarray) or image.size == 0:
            raise InvalidInput(f"Frame {index} is empty")
        if image.dtype != np.uint8:
            raise InvalidInput(f"Frame {index} must be uint8, got {image.dtype}")
        if image.ndim not in (2, 3) or (image.ndim == 3 and image.shape[2] not in (1, 3)):
            raise InvalidInput(f"Frame {index} has unsupported shape {image.shape}")

        h, w = image.shape[:2]
        if w < self.min_width or h < self.min_height:
            raise InvalidInput(
                f"Frame {index} is {w}x{h}, below the minimum {self.min_width}x{self.min_height}")

    def process(self, image: np.ndarray, index: int = 0) -> np.ndarray:
        """Validate one frame and return its enhanced copy"""
        self.validate(image, index)
        if not self.enhance:
            return image.copy()

        out = image
        if self.denoise_sigma > 0:
            out = cv.GaussianBlur(out, (0, 0), self.denoise_sigma)

        clahe = cv.createCLAHE(clipLimit=self.clahe_clip,
                               tileGridSize=(self.clahe_tiles, self.clahe_tiles))
        if out.ndim == 2 or out.shape[2] == 1:
            out = clahe.apply(out.reshape(out.shape[:2]))
        else:
            lab = cv.cvtColor(out, cv.COLOR_BGR2LAB)
            lab[:, :, 0] = clahe.apply(lab[:, :, 0])
            out = cv.cvtColor(lab, cv.COLOR_LAB2BGR)

        if self.sharpen_amount > 0:
            blurred = cv.GaussianBlur(out, (0, 0), 1.5)
            out = cv.addWeighted(out, 1.0 + self.sharpen_amount, blurred, -self.sharpen_amount, 0)

        return out

    def process_batch(self, images) -> list:
        processed = [self.process(image, i) for i, image in enumerate(images)]
        logger.info("Preprocessed %d frames", len(processed))
        return processed
