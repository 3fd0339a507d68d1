"""Model manager: locate, download, load, and cache ONNX models.

Model files are looked up in the model asset directory first. When a file
is missing and a Hugging Face Hub repo is configured, it is downloaded into
that directory. Sessions are created once and shared read-only afterwards.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from facerecog.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def resolve_model_path(self, model_name: str) -> Path:
        """Return the local path of a model file, downloading it if needed."""
        ...

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached or newly created InferenceSession."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


class ModelTask(StrEnum):
    FACE_DETECTION = "face_detection"
    FACE_LANDMARKS = "face_landmarks"
    FACE_DESCRIPTOR = "face_descriptor"


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX model."""

    name: str
    filename: str
    task: ModelTask
    input_size: tuple[int, int]
    license: str


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "ultraface_rfb_320": ModelSpec(
        name="ultraface_rfb_320",
        filename="version-RFB-320.onnx",
        task=ModelTask.FACE_DETECTION,
        input_size=(320, 240),
        license="MIT",
    ),
    "ultraface_rfb_640": ModelSpec(
        name="ultraface_rfb_640",
        filename="version-RFB-640.onnx",
        task=ModelTask.FACE_DETECTION,
        input_size=(640, 480),
        license="MIT",
    ),
    "pfld_68": ModelSpec(
        name="pfld_68",
        filename="pfld_68.onnx",
        task=ModelTask.FACE_LANDMARKS,
        input_size=(112, 112),
        license="MIT",
    ),
    "mobilefacenet_128": ModelSpec(
        name="mobilefacenet_128",
        filename="mobilefacenet_128.onnx",
        task=ModelTask.FACE_DESCRIPTOR,
        input_size=(112, 112),
        license="MIT",
    ),
}


def get_model_spec(model_name: str) -> ModelSpec:
    try:
        return MODEL_REGISTRY[model_name]
    except KeyError:
        raise KeyError(f"Unknown model: {model_name}") from None


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Resolves, loads, and caches ONNX inference sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._sessions: dict[str, InferenceSession] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def resolve_model_path(self, model_name: str) -> Path:
        """Return the model file from the asset directory, downloading it if configured."""
        spec = get_model_spec(model_name)
        local_path = self._models_dir / spec.filename
        if local_path.exists():
            return local_path

        repo_id = self._settings.model_repo_id
        if repo_id is None:
            raise FileNotFoundError(
                f"Model file {local_path} not found and FACERECOG_MODEL_REPO_ID is not set"
            )

        downloaded = Path(
            hf_hub_download(
                repo_id=repo_id,
                filename=spec.filename,
                local_dir=str(self._models_dir),
            )
        )
        logger.info("Downloaded %s from %s to %s", model_name, repo_id, downloaded)
        return downloaded

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed."""
        with self._lock:
            cached = self._sessions.get(model_name)
            if cached is not None:
                return cached

        model_path = self.resolve_model_path(model_name)
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._sessions.get(model_name)
            if existing is not None:
                return existing
            self._sessions[model_name] = session
            logger.info("Loaded session for %s", model_name)
            return session

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._sessions.keys())

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._sessions.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    def _build_providers(self) -> list[str]:
        if self._settings.device == "cuda":
            return ["CUDAExecutionProvider", "CPUExecutionProvider"]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True
        return opts
