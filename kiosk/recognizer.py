from pathlib import Path
from typing import Protocol

import cv2 # type: ignore
import face_recognition # type: ignore
import numpy as np # type: ignore

from kiosk.config import (
    BLUR_THRESHOLD,
    BRIGHTNESS_MAX,
    BRIGHTNESS_MIN,
    ENCODING_JITTERS,
    FACE_CENTER_MAX_OFFSET_RATIO,
    MAX_FACES,
    MIN_FACE_SIZE,
)

# Use Haar cascade for face detection (simple + offline)
CASCADE_PATH = Path(cv2.data.haarcascades) / "haarcascade_frontalface_default.xml"
FACE_CASCADE = cv2.CascadeClassifier(str(CASCADE_PATH))

# Quality gates run on the cropped face at this size
FACE_SIZE = (200, 200)
# dlib ResNet descriptor length
EMBEDDING_SIZE = 128


class EmbeddingExtractor(Protocol):
    def extract(self, frame) -> tuple[np.ndarray | None, str | None]:
        ...


def distance(a: np.ndarray, b: np.ndarray) -> float:
    """Euclidean distance between two embeddings (lower = more similar)."""
    return float(face_recognition.face_distance([np.asarray(a, dtype=np.float64)], np.asarray(b, dtype=np.float64))[0])


def decode_image(data: bytes):
    img_array = np.frombuffer(data, np.uint8)
    return cv2.imdecode(img_array, cv2.IMREAD_COLOR)


class CascadeEmbeddingExtractor:
    """
    Single-face embedding extractor. The Haar cascade and quality gates pick
    and vet the face; face_recognition encodes it.

    Rejections use short reasons: no_face, multiple_faces, face_too_small,
    face_off_center, too_dark, too_bright, too_blurry.
    """

    def __init__(
        self,
        *,
        max_faces: int = MAX_FACES,
        min_face_size: int = MIN_FACE_SIZE,
        center_max_offset_ratio: float = FACE_CENTER_MAX_OFFSET_RATIO,
        brightness_min: float = BRIGHTNESS_MIN,
        brightness_max: float = BRIGHTNESS_MAX,
        blur_threshold: float = BLUR_THRESHOLD,
        num_jitters: int = ENCODING_JITTERS,
    ):
        self.max_faces = max_faces
        self.min_face_size = min_face_size
        self.center_max_offset_ratio = center_max_offset_ratio
        self.brightness_min = brightness_min
        self.brightness_max = brightness_max
        self.blur_threshold = blur_threshold
        self.num_jitters = num_jitters

    def _face_box(self, frame_bgr):
        gray = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2GRAY)
        faces = FACE_CASCADE.detectMultiScale(gray, scaleFactor=1.2, minNeighbors=5, minSize=(80, 80))

        if len(faces) == 0:
            return None, "no_face"

        if self.max_faces > 0 and len(faces) > self.max_faces:
            return None, "multiple_faces"

        # take largest face
        x, y, w, h = sorted(faces, key=lambda r: r[2] * r[3], reverse=True)[0]

        if w < self.min_face_size or h < self.min_face_size:
            return None, "face_too_small"

        frame_h, frame_w = gray.shape
        face_cx = x + (w / 2.0)
        face_cy = y + (h / 2.0)
        max_offset = self.center_max_offset_ratio * min(frame_w, frame_h)
        if max_offset > 0:
            dist = ((face_cx - frame_w / 2.0) ** 2 + (face_cy - frame_h / 2.0) ** 2) ** 0.5
            if dist > max_offset:
                return None, "face_off_center"

        face = cv2.resize(gray[y:y + h, x:x + w], FACE_SIZE)

        mean_brightness = float(face.mean())
        if mean_brightness < self.brightness_min:
            return None, "too_dark"
        if mean_brightness > self.brightness_max:
            return None, "too_bright"

        blur_score = float(cv2.Laplacian(face, cv2.CV_64F).var())
        if blur_score < self.blur_threshold:
            return None, "too_blurry"

        return (int(x), int(y), int(w), int(h)), None

    def extract(self, frame) -> tuple[np.ndarray | None, str | None]:
        if frame is None:
            return None, "no_face"

        box, reason = self._face_box(frame)
        if box is None:
            return None, reason

        vector = encode_face(frame, box, num_jitters=self.num_jitters)
        if vector is None:
            return None, "no_face"
        return vector, None


def encode_face(frame_bgr, box: tuple[int, int, int, int], *, num_jitters: int = 1) -> np.ndarray | None:
    """
    128-d face descriptor for the detected box.

    ``box`` is OpenCV's (x, y, w, h); face_recognition takes
    (top, right, bottom, left) on an RGB image.
    """
    x, y, w, h = box
    rgb = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)
    encodings = face_recognition.face_encodings(rgb, [(y, x + w, y + h, x)], num_jitters=num_jitters)
    if len(encodings) == 0:
        return None
    return np.asarray(encodings[0], dtype=np.float32)


def embedding_from_image(data: bytes, extractor: EmbeddingExtractor | None = None) -> tuple[np.ndarray | None, str | None]:
    frame = decode_image(data)
    if frame is None:
        return None, "invalid_image"
    return (extractor or CascadeEmbeddingExtractor()).extract(frame)
