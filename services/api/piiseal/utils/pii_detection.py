"""
Detector integration.

OCR and object detection are external collaborators. This module joins
their (asynchronous) results for one image, de-duplicates object boxes and
ships two optional adapters around EasyOCR and MediaPipe. The adapter
libraries are only imported when an adapter is constructed; install them
with the ``detectors`` extra.
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Union

import numpy as np
from fastapi.concurrency import run_in_threadpool
from PIL import Image

from ..domain import DetectedObjectRegion, DetectedTextRegion, SenderStage
from ..errors import DetectionError
from .geometry import iou, to_normalized_box

logger = logging.getLogger(__name__)

TextDetector = Callable[[Image.Image], Union[List[DetectedTextRegion], Awaitable[List[DetectedTextRegion]]]]
ObjectDetector = Callable[[Image.Image], Union[List[DetectedObjectRegion], Awaitable[List[DetectedObjectRegion]]]]


def non_max_suppression(regions: Sequence[DetectedObjectRegion], iou_threshold: float = 0.5) -> List[DetectedObjectRegion]:
    """Per class: keep boxes by descending confidence, drop any overlapping a kept box above threshold."""
    by_class: Dict[str, List[DetectedObjectRegion]] = {}
    for region in regions:
        by_class.setdefault(region.class_name, []).append(region)

    kept: List[DetectedObjectRegion] = []
    for class_regions in by_class.values():
        survivors: List[DetectedObjectRegion] = []
        for candidate in sorted(class_regions, key=lambda r: r.confidence, reverse=True):
            if all(iou(candidate.normalized_box, k.normalized_box) <= iou_threshold for k in survivors):
                survivors.append(candidate)
        kept.extend(survivors)
    return kept


@dataclass
class DetectionResults:
    text_regions: List[DetectedTextRegion] = field(default_factory=list)
    object_regions: List[DetectedObjectRegion] = field(default_factory=list)

    @property
    def sensitive_object_count(self) -> int:
        return sum(1 for o in self.object_regions if o.is_sensitive)


async def _call(detector, image: Image.Image):
    if inspect.iscoroutinefunction(detector) or inspect.iscoroutinefunction(getattr(detector, "__call__", None)):
        return await detector(image)
    return await run_in_threadpool(detector, image)


async def detect_regions(
    image: Image.Image,
    text_detector: Optional[TextDetector] = None,
    object_detector: Optional[ObjectDetector] = None,
    iou_threshold: float = 0.5,
) -> DetectionResults:
    """Run both detectors concurrently and wait for both."""

    async def nothing(_image):
        return []

    try:
        texts, objects = await asyncio.gather(
            _call(text_detector or nothing, image),
            _call(object_detector or nothing, image),
        )
    except DetectionError:
        raise
    except Exception as e:
        logger.error("Detector failed", exc_info=True)
        raise DetectionError(f"detector failed: {type(e).__name__}") from e

    objects = non_max_suppression(objects, iou_threshold) if objects else []
    logger.info("%s: %d text regions and %d objects", SenderStage.DETECTED.value, len(texts), len(objects))
    return DetectionResults(text_regions=list(texts), object_regions=objects)


class EasyOCRTextDetector:
    """Text detection with EasyOCR."""

    def __init__(self, languages: Sequence[str] = ("en",), min_confidence: float = 0.0):
        import easyocr

        self.reader = easyocr.Reader(list(languages))
        self.min_confidence = min_confidence

    def __call__(self, image: Image.Image) -> List[DetectedTextRegion]:
        size = image.size
        results = self.reader.readtext(np.asarray(image.convert("RGB")))
        regions = []
        for (bbox, text, confidence) in results:
            if confidence < self.min_confidence:
                continue
            xs = [float(p[0]) for p in bbox]
            ys = [float(p[1]) for p in bbox]
            box = to_normalized_box(min(xs), min(ys), max(xs) - min(xs), max(ys) - min(ys), size)
            regions.append(DetectedTextRegion(text=text, normalized_box=box, confidence=float(confidence)))
        return regions


class MediaPipeFaceDetector:
    """Face detection with MediaPipe, reported as the object class "face"."""

    def __init__(self, min_detection_confidence: float = 0.5):
        import mediapipe as mp

        self._face_detection = mp.solutions.face_detection
        self.min_detection_confidence = min_detection_confidence

    def __call__(self, image: Image.Image) -> List[DetectedObjectRegion]:
        image_rgb = np.asarray(image.convert("RGB"))
        regions = []
        with self._face_detection.FaceDetection(
            model_selection=1, min_detection_confidence=self.min_detection_confidence
        ) as face_detection:
            results = face_detection.process(image_rgb)
            for detection in results.detections or []:
                rel = detection.location_data.relative_bounding_box
                # relative box is top-left origin, flip into detector space
                box = to_normalized_box(rel.xmin, rel.ymin, rel.width, rel.height, (1, 1))
                regions.append(DetectedObjectRegion(
                    class_name="face",
                    normalized_box=box,
                    confidence=min(1.0, float(detection.score[0])),
                ))
        return regions
