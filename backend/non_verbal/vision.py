from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import Iterable

import cv2
import mediapipe as mp
from mediapipe.tasks import python as mp_python
from mediapipe.tasks.python import vision as mp_vision

from errors import ClassifierError
from models import FrameClassification, SamplingPolicy

logger = logging.getLogger(__name__)

DEFAULT_FPS_FALLBACK = 30.0
ATTENTION_YAW_RATIO_THRESHOLD = 0.35
ATTENTION_PITCH_RATIO_THRESHOLD = 0.85

# A sampled frame "has a face" only for a confident, reasonably large detection.
FACE_MIN_CONFIDENCE = 0.5
FACE_MIN_SIZE_RATIO = 0.1

# Mean of the two mouth-smile blendshapes. Frames between the two bounds are
# ambiguous and counted as neither.
SMILE_POSITIVE_THRESHOLD = 0.5
SMILE_NEUTRAL_CEILING = 0.2

BACKEND_DIR = os.path.dirname(os.path.dirname(__file__))

DEFAULT_FACE_MODEL_CANDIDATES = [
    os.path.join(BACKEND_DIR, "models", "face_landmarker.task"),
]
DEFAULT_DETECTOR_MODEL_CANDIDATES = [
    os.path.join(BACKEND_DIR, "models", "blaze_face_short_range.tflite"),
]


def _resolve_model_path(env_var: str, candidates: list[str]) -> str | None:
    """Resolve model path from env override or first existing default candidate."""
    env_path = os.getenv(env_var)
    if env_path and os.path.exists(env_path):
        return env_path
    for path in candidates:
        if os.path.exists(path):
            return path
    return None


def _mean(values: Iterable[float]) -> float:
    values = list(values)
    if not values:
        return 0.0
    return float(sum(values) / len(values))


def _landmark_xy(landmarks: list[object], index: int) -> tuple[float, float] | None:
    if index < 0 or index >= len(landmarks):
        return None
    lm = landmarks[index]
    return float(lm.x), float(lm.y)


def _estimate_attention(face_result: object) -> bool | None:
    """
    Estimate whether the speaker is looking at the camera.

    Returns None when no face is visible so the frame can be left out of the
    eye-contact ratio. Uses a lightweight head-orientation proxy:
    - yaw proxy from nose offset vs eye midpoint
    - pitch proxy from nose vertical offset vs eye-to-mouth height
    """
    faces = getattr(face_result, "face_landmarks", None) or []
    if not faces:
        return None

    landmarks = faces[0]
    left_eye = _landmark_xy(landmarks, 33)
    right_eye = _landmark_xy(landmarks, 263)
    nose = _landmark_xy(landmarks, 1)
    mouth = _landmark_xy(landmarks, 13)
    if not left_eye or not right_eye or not nose or not mouth:
        return False

    eye_mid_x = (left_eye[0] + right_eye[0]) / 2.0
    eye_mid_y = (left_eye[1] + right_eye[1]) / 2.0
    inter_eye = max(abs(right_eye[0] - left_eye[0]), 1e-6)
    eye_to_mouth = max(abs(mouth[1] - eye_mid_y), 1e-6)

    yaw_ratio = abs(nose[0] - eye_mid_x) / inter_eye
    pitch_ratio = abs(nose[1] - eye_mid_y) / eye_to_mouth

    return (
        yaw_ratio <= ATTENTION_YAW_RATIO_THRESHOLD
        and pitch_ratio <= ATTENTION_PITCH_RATIO_THRESHOLD
    )


def _smile_score(face_result: object) -> float | None:
    blendshapes = getattr(face_result, "face_blendshapes", None) or []
    if not blendshapes:
        return None
    scores = {category.category_name: float(category.score) for category in blendshapes[0]}
    return _mean([scores.get("mouthSmileLeft", 0.0), scores.get("mouthSmileRight", 0.0)])


def _has_valid_face(detection_result: object, width: int, height: int) -> bool:
    for detection in getattr(detection_result, "detections", None) or []:
        categories = getattr(detection, "categories", None) or []
        confidence = float(categories[0].score) if categories else 0.0
        box = detection.bounding_box
        if (
            confidence > FACE_MIN_CONFIDENCE
            and width > 0
            and height > 0
            and box.width / width > FACE_MIN_SIZE_RATIO
            and box.height / height > FACE_MIN_SIZE_RATIO
        ):
            return True
    return False


def sample_times(duration: float, policy: SamplingPolicy) -> list[float]:
    times: list[float] = []
    current = 0.0
    while current < duration:
        if policy.max_frames is not None and len(times) >= policy.max_frames:
            break
        times.append(round(current, 3))
        current += policy.interval_seconds
    return times


def _open_capture(video_path: str):
    if not os.path.exists(video_path):
        raise ClassifierError(f"Video file not found: {video_path}")
    cap = cv2.VideoCapture(video_path)
    if not cap.isOpened():
        cap.release()
        raise ClassifierError("Video could not be opened for frame analysis.")
    return cap


def _capture_duration(cap) -> float:
    fps = float(cap.get(cv2.CAP_PROP_FPS) or 0.0) or DEFAULT_FPS_FALLBACK
    frame_count = float(cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0.0)
    return frame_count / fps if frame_count > 0 else 0.0


def _read_frame_at(cap, seconds: float):
    cap.set(cv2.CAP_PROP_POS_MSEC, max(0.0, seconds) * 1000.0)
    success, frame = cap.read()
    if not success:
        return None
    return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)


class MediaPipeFrameClassifier:
    """Frame-level face, smile, and eye-contact classification.

    Runs MediaPipe Tasks in IMAGE mode on frames sampled by timestamp, so
    callers can ask for arbitrary points in the video.
    """

    def __init__(
        self,
        face_model_path: str | None = None,
        detector_model_path: str | None = None,
    ) -> None:
        self.face_model_path = face_model_path or _resolve_model_path(
            "FACE_LANDMARKER_MODEL_PATH", DEFAULT_FACE_MODEL_CANDIDATES
        )
        self.detector_model_path = detector_model_path or _resolve_model_path(
            "FACE_DETECTOR_MODEL_PATH", DEFAULT_DETECTOR_MODEL_CANDIDATES
        )

    async def detect_face_presence(self, video: str, timestamps: list[float]) -> bool:
        return await self._in_thread(self._detect_face_presence_sync, video, timestamps)

    async def classify(self, video: str, policy: SamplingPolicy) -> FrameClassification:
        return await self._in_thread(self._classify_sync, video, policy)

    async def _in_thread(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except ClassifierError:
            raise
        except Exception as exc:
            logger.exception("Frame classification failed: %s", exc)
            raise ClassifierError() from exc

    def _detect_face_presence_sync(self, video: str, timestamps: list[float]) -> bool:
        if self.detector_model_path is None:
            raise ClassifierError("Face detector model is missing.")

        options = mp_vision.FaceDetectorOptions(
            base_options=mp_python.BaseOptions(model_asset_path=self.detector_model_path),
            running_mode=mp_vision.RunningMode.IMAGE,
            min_detection_confidence=FACE_MIN_CONFIDENCE,
        )
        cap = _open_capture(video)
        try:
            with mp_vision.FaceDetector.create_from_options(options) as detector:
                for seconds in timestamps:
                    rgb = _read_frame_at(cap, seconds)
                    if rgb is None:
                        logger.warning("Failed to read frame at %.2fs", seconds)
                        continue
                    height, width = rgb.shape[:2]
                    image = mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb)
                    if _has_valid_face(detector.detect(image), width, height):
                        return True
            return False
        finally:
            cap.release()

    def _classify_sync(self, video: str, policy: SamplingPolicy) -> FrameClassification:
        if self.face_model_path is None:
            raise ClassifierError("Face landmarker model is missing.")

        options = mp_vision.FaceLandmarkerOptions(
            base_options=mp_python.BaseOptions(model_asset_path=self.face_model_path),
            running_mode=mp_vision.RunningMode.IMAGE,
            num_faces=1,
            output_face_blendshapes=True,
        )

        positive = 0
        neutral = 0
        attentive = 0
        faces_seen = 0

        cap = _open_capture(video)
        try:
            times = sample_times(_capture_duration(cap), policy)
            with mp_vision.FaceLandmarker.create_from_options(options) as landmarker:
                for seconds in times:
                    rgb = _read_frame_at(cap, seconds)
                    if rgb is None:
                        logger.warning("Failed to read frame at %.2fs", seconds)
                        continue
                    image = mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb)
                    face_result = landmarker.detect(image)

                    smile = _smile_score(face_result)
                    if smile is not None:
                        if smile >= SMILE_POSITIVE_THRESHOLD:
                            positive += 1
                        elif smile < SMILE_NEUTRAL_CEILING:
                            neutral += 1

                    looking = _estimate_attention(face_result)
                    if looking is not None:
                        faces_seen += 1
                        if looking:
                            attentive += 1
        finally:
            cap.release()

        gaze_percent = (attentive / faces_seen) * 100.0 if faces_seen else None
        return FrameClassification(
            positive_count=positive,
            neutral_count=neutral,
            gaze_percent=round(gaze_percent, 3) if gaze_percent is not None else None,
        )


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage (from backend/): python -m non_verbal.vision <path/to/video.mov>")
        raise SystemExit(1)

    input_video = sys.argv[1]
    classifier = MediaPipeFrameClassifier()
    print(asyncio.run(classifier.classify(input_video, SamplingPolicy.for_expression(30.0))))
