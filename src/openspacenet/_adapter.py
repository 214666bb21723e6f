"""RF-DETR inference client isolating all rfdetr-specific logic.

This module wraps an RF-DETR detector behind the window classification
contract used by the orchestrator: one pixel block in, a list of
(label, confidence) predictions out. No rfdetr, torch or supervision
types leak beyond this boundary.

Module-level functions (detect_device, gpu_worker_budget,
prepare_window_image) are available for independent use.
"""

from __future__ import annotations

import os
import threading
import warnings
from typing import Any

import numpy as np

from openspacenet._typing import PixelBlock, Prediction, Size
from openspacenet.exceptions import ModelError

# Concurrent inference calls one accelerator sustains at 100% utilization
WORKERS_PER_DEVICE = 4

# ---------------------------------------------------------------------------
# Module-level functions
# ---------------------------------------------------------------------------


def detect_device(preferred: str | None = None) -> str:
    """Detect the best available compute device.

    Priority: CUDA > MPS > CPU. If a preferred device is specified but
    unavailable, falls back with a warning.

    Args:
        preferred: Requested device string. If None, auto-detect.

    Returns:
        Device string: "cuda", "mps", or "cpu".
    """
    if preferred == "cpu":
        return "cpu"

    try:
        import torch

        cuda_available = torch.cuda.is_available()
        mps_available = hasattr(torch.backends, "mps") and torch.backends.mps.is_available()
    except ImportError:
        cuda_available = False
        mps_available = False

    if preferred is not None:
        if preferred in ("cuda", "mps") and not (cuda_available if preferred == "cuda" else mps_available):
            warnings.warn(
                f"Requested device '{preferred}' is not available. Falling back to CPU.",
                RuntimeWarning,
                stacklevel=2,
            )
            return "cpu"
        return preferred

    if cuda_available:
        return "cuda"
    if mps_available:
        return "mps"
    return "cpu"


def _device_count(device: str) -> int:
    if device != "cuda":
        return 1
    try:
        import torch

        return max(1, torch.cuda.device_count())
    except ImportError:
        return 1


def gpu_worker_budget(max_utilization: float, device: str) -> int:
    """Number of concurrent inference workers for an accelerator budget.

    Args:
        max_utilization: Accelerator budget in percent (5-100).
        device: "cuda" or "mps". Use the CPU count for "cpu" instead.

    Returns:
        Worker count, at least 1.
    """
    per_device = max_utilization / 100.0 * WORKERS_PER_DEVICE
    return max(1, int(round(per_device * _device_count(device))))


def prepare_window_image(block: PixelBlock) -> Any:
    """Convert a window's pixel block to a PIL RGB image.

    Single-band blocks are triplicated; extra bands beyond the third are
    dropped. Non-uint8 data is min-max stretched to 0-255.

    Args:
        block: Array of shape (bands, H, W).

    Returns:
        PIL.Image.Image in RGB mode.

    Raises:
        ModelError: If the array is not 3-dimensional.
    """
    from PIL import Image

    arr = np.asarray(block)
    if arr.ndim != 3:
        raise ModelError(f"Expected 3D array (bands, height, width), got {arr.ndim}D array.")

    if arr.shape[0] == 1:
        arr = np.repeat(arr, 3, axis=0)
    elif arr.shape[0] == 2:
        arr = np.concatenate([arr, arr[:1]], axis=0)
    arr = arr[:3]

    if arr.dtype != np.uint8:
        data = arr.astype(np.float32)
        vmin, vmax = float(data.min()), float(data.max())
        if vmax > vmin:
            data = (data - vmin) / (vmax - vmin)
        else:
            data = np.zeros_like(data)
        arr = (data * 255).astype(np.uint8)

    return Image.fromarray(np.ascontiguousarray(np.transpose(arr, (1, 2, 0))))


# ---------------------------------------------------------------------------
# RFDETRClient class
# ---------------------------------------------------------------------------


class RFDETRClient:
    """Window classifier backed by an RF-DETR detector.

    Every box the detector finds in a window counts as evidence for its
    class; the window's prediction for a class is the best box confidence
    of that class.

    The client provides:
    - Model variant mapping (size string -> rfdetr class, native resolution)
    - Lazy, thread-safe model loading on first predict
    - Device detection (cuda > mps > cpu)

    Args:
        model_size: One of "nano", "small", "medium", "base", "large".
        device: Compute device ("cuda", "mps", "cpu"). Auto-detected if None.
        pretrain_weights: Path to a custom checkpoint. Uses default weights if None.
        class_names: Mapping of class_id to label for fine-tuned models.
        score_floor: Boxes below this confidence are ignored by the detector.
    """

    VARIANTS: dict[str, tuple[str, int]] = {
        "nano": ("RFDETRNano", 384),
        "small": ("RFDETRSmall", 512),
        "medium": ("RFDETRMedium", 576),
        "base": ("RFDETRBase", 560),
        "large": ("RFDETRLarge", 704),
    }

    def __init__(
        self,
        model_size: str = "medium",
        device: str | None = None,
        pretrain_weights: str | None = None,
        class_names: dict[int, str] | None = None,
        score_floor: float = 0.05,
    ) -> None:
        if model_size not in self.VARIANTS:
            valid_sizes = ", ".join(sorted(self.VARIANTS))
            raise ModelError(
                f"Unsupported model size '{model_size}'. Valid sizes: {valid_sizes}",
                requested_size=model_size,
            )

        if pretrain_weights is not None and not os.path.exists(pretrain_weights):
            raise ModelError(
                f"Custom weights path does not exist: '{pretrain_weights}'. "
                f"Provide a valid file path or omit to use default weights."
            )

        self._model_size = model_size
        self._class_name, self._resolution = self.VARIANTS[model_size]
        self.device = detect_device(device)
        self._pretrain_weights = pretrain_weights
        self._class_names = class_names
        self._score_floor = score_floor
        self._model: Any = None
        self._load_lock = threading.Lock()

    @property
    def window_size(self) -> Size:
        """The model's native square input size in pixels."""
        return (self._resolution, self._resolution)

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def model_info(self) -> dict[str, Any]:
        """Summary of the model configuration, for logging."""
        return {
            "model_size": self._model_size,
            "resolution": self._resolution,
            "device": self.device,
            "weights": self._pretrain_weights or "default",
            "is_loaded": self.is_loaded,
        }

    def _ensure_model(self) -> None:
        """Lazy-load the model on first use.

        Raises:
            ModelError: If rfdetr is not installed, with install instructions.
        """
        if self._model is not None:
            return

        with self._load_lock:
            if self._model is not None:
                return

            try:
                import rfdetr
            except ImportError as err:
                raise ModelError("rfdetr is not installed. Install it with: pip install openspacenet[rfdetr]") from err

            try:
                model_class = getattr(rfdetr, self._class_name)
            except AttributeError as err:
                raise ModelError(
                    f"rfdetr does not have class '{self._class_name}'. "
                    f"You may need to update rfdetr: pip install --upgrade rfdetr"
                ) from err

            kwargs: dict[str, Any] = {}
            if self._pretrain_weights is not None:
                kwargs["pretrain_weights"] = self._pretrain_weights

            model = model_class(**kwargs)
            if self.device == "cpu":
                warnings.warn(
                    f"Running '{self._model_size}' model on CPU. Inference will be slow.",
                    RuntimeWarning,
                    stacklevel=3,
                )
            self._model = model

    def _label(self, class_id: int) -> str:
        if self._class_names is not None:
            return self._class_names.get(class_id, f"class_{class_id}")
        names = getattr(self._model, "class_names", None)
        if names is not None:
            try:
                return str(names[class_id])
            except (IndexError, KeyError, TypeError):
                pass
        return f"class_{class_id}"

    def predict(self, block: PixelBlock) -> list[Prediction]:
        """Classify one window.

        Args:
            block: Array of shape (bands, H, W).

        Returns:
            One prediction per detected label, highest confidence first.
        """
        self._ensure_model()
        image = prepare_window_image(block)

        detections = self._model.predict(image, threshold=self._score_floor)
        if detections is None or len(detections) == 0:
            return []

        best: dict[str, float] = {}
        for class_id, confidence in zip(detections.class_id, detections.confidence, strict=False):
            label = self._label(int(class_id))
            best[label] = max(best.get(label, 0.0), float(confidence))

        return [Prediction(label, score) for label, score in sorted(best.items(), key=lambda item: -item[1])]
