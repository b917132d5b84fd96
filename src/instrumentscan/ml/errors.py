"""Tagged errors raised by the recognition pipeline.

Each error carries a ``kind`` so the API layer can pick a status code and a
user-facing message without inspecting exception types one by one.
"""

from __future__ import annotations


class InstrumentScanError(Exception):
    """Base class for all pipeline failures."""

    kind: str = "error"


class LabelLoadError(InstrumentScanError):
    """The label resource could not be read. Recovered with the default labels."""

    kind = "label_load_failure"


class ModelLoadError(InstrumentScanError):
    """The model artifact could not be loaded. No prediction is possible."""

    kind = "model_load_failure"


class LabelMismatchError(ModelLoadError):
    """The model output width does not match the number of labels."""

    def __init__(self, output_width: int, label_count: int) -> None:
        super().__init__(
            f"Model produces {output_width} outputs but {label_count} labels are configured; "
            "check that the label file belongs to this model"
        )
        self.output_width = output_width
        self.label_count = label_count


class ImageDecodeError(InstrumentScanError):
    """The uploaded bytes are not a readable image."""

    kind = "image_decode_failure"


class InferenceError(InstrumentScanError):
    """The forward pass or result selection failed."""

    kind = "inference_failure"


class NotInitializedError(InstrumentScanError):
    """Prediction was attempted before the model finished loading."""

    kind = "not_initialized"
