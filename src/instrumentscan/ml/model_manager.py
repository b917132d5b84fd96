"""Model loader: resolve, load, validate, and release the ONNX classifier.

The artifact is either a local file or a file fetched once from the Hugging
Face Hub. Loading happens at most once per loader; concurrent callers wait
for the in-flight load and share its handle or its failure.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from instrumentscan.ml.errors import LabelMismatchError, ModelLoadError, NotInitializedError

if TYPE_CHECKING:
    from collections.abc import Callable

    from instrumentscan.config import Settings
    from instrumentscan.ml.labels import LabelSet

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelLoader(Protocol):
    """Protocol for model lifecycle management."""

    @property
    def state(self) -> LoaderState:
        """Return the current lifecycle state."""
        ...

    def load(self) -> ModelHandle:
        """Load the model if needed and return the shared handle."""
        ...

    def get_handle(self) -> ModelHandle:
        """Return the handle, or raise NotInitializedError if not ready."""
        ...

    def mark_failed(self, error: ModelLoadError) -> None:
        """Drop the handle after a defect found at inference time."""
        ...

    def close(self) -> None:
        """Release the handle."""
        ...


# ---------------------------------------------------------------------------
# Handle
# ---------------------------------------------------------------------------


class LoaderState(StrEnum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass
class ModelHandle:
    """A loaded inference session plus what is needed to call it.

    ``lock`` serializes forward passes; a session must not run two at once.
    ``output_width`` is None when the model declares a symbolic dimension.
    """

    session: Any
    input_name: str
    output_width: int | None
    source: Path
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelLoader:
    """Loads the classifier into a single shared ONNX Runtime session."""

    def __init__(
        self,
        settings: Settings,
        labels: LabelSet,
        session_factory: Callable[..., Any] | None = None,
    ) -> None:
        self._settings = settings
        self._labels = labels
        self._session_factory = session_factory or InferenceSession

        self._cond = threading.Condition()
        self._state = LoaderState.UNLOADED
        self._handle: ModelHandle | None = None
        self._error: ModelLoadError | None = None
        self._attempts = 0

        self.load_count = 0

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    @property
    def state(self) -> LoaderState:
        with self._cond:
            return self._state

    def load(self) -> ModelHandle:
        """Load the model once and return the shared handle.

        Raises:
            ModelLoadError: If the artifact is missing, unreadable, or does not
                match the configured labels.
        """
        with self._cond:
            arrived_at = self._attempts
            while self._state is LoaderState.LOADING:
                self._cond.wait()

            if self._state is LoaderState.READY and self._handle is not None:
                return self._handle
            if self._state is LoaderState.FAILED and self._attempts != arrived_at and self._error is not None:
                # The load we waited on failed; report that failure instead of retrying.
                raise self._error

            self._state = LoaderState.LOADING

        try:
            handle = self._create_handle()
        except ModelLoadError as exc:
            self._finish(error=exc)
            raise
        except Exception as exc:
            error = ModelLoadError(f"Failed to load model: {exc}")
            self._finish(error=error)
            raise error from exc

        self._finish(handle=handle)
        return handle

    def get_handle(self) -> ModelHandle:
        """Return the ready handle without loading.

        Raises:
            NotInitializedError: If no successful load has completed.
        """
        with self._cond:
            if self._state is not LoaderState.READY or self._handle is None:
                raise NotInitializedError(f"Model service not initialized (state={self._state})")
            return self._handle

    def mark_failed(self, error: ModelLoadError) -> None:
        """Move a ready loader to FAILED, e.g. when the first forward pass shows a label mismatch."""
        with self._cond:
            if self._state is LoaderState.READY:
                self._finish(error=error)

    def close(self) -> None:
        """Release the session. Safe to call more than once."""
        with self._cond:
            while self._state is LoaderState.LOADING:
                self._cond.wait()
            if self._handle is not None:
                logger.info("Releasing model session for %s", self._handle.source)
            self._handle = None
            self._error = None
            self._state = LoaderState.UNLOADED

    def resolve_model_path(self) -> Path:
        """Return a local path to the model, downloading it if configured."""
        repo_id = self._settings.model_repo_id
        if repo_id:
            models_dir = Path(self._settings.models_dir)
            models_dir.mkdir(parents=True, exist_ok=True)
            downloaded = Path(
                hf_hub_download(
                    repo_id=repo_id,
                    filename=self._settings.model_filename,
                    local_dir=str(models_dir),
                )
            )
            logger.info("Downloaded %s from %s to %s", self._settings.model_filename, repo_id, downloaded)
            return downloaded

        path = Path(self._settings.model_path)
        if not path.is_file():
            raise ModelLoadError(f"Model file not found: {path}")
        return path

    # -- Internal -----------------------------------------------------------

    def _create_handle(self) -> ModelHandle:
        path = self.resolve_model_path()
        session = self._session_factory(
            str(path),
            sess_options=self._session_options,
            providers=self._providers,
        )
        self.load_count += 1

        input_name = session.get_inputs()[0].name
        output_width = _declared_width(session.get_outputs()[0].shape)
        if output_width is not None and output_width != len(self._labels):
            raise LabelMismatchError(output_width, len(self._labels))

        logger.info(
            "Loaded model %s (input=%s, outputs=%s, labels=%d)",
            path,
            input_name,
            output_width if output_width is not None else "dynamic",
            len(self._labels),
        )
        return ModelHandle(session=session, input_name=input_name, output_width=output_width, source=path)

    def _finish(self, handle: ModelHandle | None = None, error: ModelLoadError | None = None) -> None:
        with self._cond:
            self._attempts += 1
            if handle is not None:
                self._handle = handle
                self._error = None
                self._state = LoaderState.READY
            else:
                logger.error("Model load failed: %s", error)
                self._handle = None
                self._error = error
                self._state = LoaderState.FAILED
            self._cond.notify_all()

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [("CUDAExecutionProvider", {"device_id": 0}), "CPUExecutionProvider"]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        return opts


def _declared_width(shape: list[object] | tuple[object, ...]) -> int | None:
    if not shape:
        return None
    last = shape[-1]
    return last if isinstance(last, int) and last > 0 else None
