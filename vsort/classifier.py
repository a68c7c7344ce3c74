from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import List, Optional

import numpy as np

try:
    import cv2
except ImportError:  # pragma: no cover
    cv2 = None

from .constants import TOP_K
from .errors import ConfigurationError, InferenceError
from .state import Classification


def load_labels(metadata_path) -> List[str]:
    """Read class labels from a ``metadata.json`` file.

    The file must hold a JSON object with a ``labels`` array, index-aligned to
    the model output vector.
    """
    if not metadata_path:
        raise ConfigurationError("metadata.json is required")
    path = Path(metadata_path)
    try:
        meta = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigurationError(f"metadata file not found: {path}") from None
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"cannot read metadata {path}: {e}") from e
    labels = meta.get("labels") if isinstance(meta, dict) else None
    if not isinstance(labels, list):
        raise ConfigurationError('metadata.json must contain a "labels" array')
    return [str(x) for x in labels]


def rank(scores, labels: List[str], top_k: int = TOP_K) -> List[Classification]:
    """Rank an output vector into the top-k classifications, highest first.

    Indices without a label are reported as ``Class <i>``.
    """
    scores = np.asarray(scores, dtype=np.float64).reshape(-1)
    order = np.argsort(-scores, kind="stable")[:max(1, int(top_k))]
    return [
        Classification(
            label=labels[i] if i < len(labels) else f"Class {i}",
            confidence=float(scores[i]),
            index=int(i),
        )
        for i in order
    ]


def _load_interpreter_class():
    try:
        from tflite_runtime.interpreter import Interpreter
    except ImportError:
        try:
            from tensorflow.lite.python.interpreter import Interpreter
        except ImportError:
            raise ConfigurationError(
                "TensorFlow Lite is not installed (pip install tflite-runtime, or tensorflow)"
            ) from None
    return Interpreter


class TFLiteClassifier:
    """Image classifier backed by a TFLite model and a metadata.json label list.

    ``load()`` fails with ConfigurationError on a missing/invalid metadata file
    or model; ``predict()`` fails with InferenceError when nothing is loaded or
    the forward pass raises. One forward pass runs at a time."""
    def __init__(self, model_path: Optional[str], metadata_path: Optional[str], top_k: int = TOP_K):
        self.model_path = model_path
        self.metadata_path = metadata_path
        self.top_k = int(top_k)
        self.labels: List[str] = []
        self._interpreter = None
        self._input = None
        self._output = None
        self._lock = threading.Lock()

    def is_loaded(self) -> bool:
        return self._interpreter is not None

    def load(self):
        labels = load_labels(self.metadata_path)
        if not self.model_path or not Path(self.model_path).is_file():
            raise ConfigurationError(f"model file not found: {self.model_path}")
        if cv2 is None:
            raise ConfigurationError("OpenCV is not installed (pip install opencv-python-headless)")
        Interpreter = _load_interpreter_class()
        try:
            interp = Interpreter(model_path=str(self.model_path))
            interp.allocate_tensors()
        except (ValueError, RuntimeError) as e:
            raise ConfigurationError(f"cannot load model {self.model_path}: {e}") from e

        inp = interp.get_input_details()[0]
        out = interp.get_output_details()[0]
        n_out = int(out["shape"][-1])
        if n_out != len(labels):
            raise ConfigurationError(f"model has {n_out} outputs but metadata lists {len(labels)} labels")

        with self._lock:
            self.labels = labels
            self._interpreter = interp
            self._input = inp
            self._output = out

    def _prepare(self, frame) -> np.ndarray:
        _, h, w, _ = self._input["shape"]
        img = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        if img.shape[0] != h or img.shape[1] != w:
            img = cv2.resize(img, (int(w), int(h)), interpolation=cv2.INTER_LINEAR)
        if self._input["dtype"] == np.uint8:
            return np.expand_dims(img.astype(np.uint8), 0)
        return np.expand_dims(img.astype(np.float32) / 255.0, 0)

    def predict(self, frame) -> List[Classification]:
        if not self.is_loaded():
            raise InferenceError("Model not loaded")
        if frame is None:
            raise InferenceError("no frame")
        with self._lock:
            try:
                self._interpreter.set_tensor(self._input["index"], self._prepare(frame))
                self._interpreter.invoke()
                scores = self._interpreter.get_tensor(self._output["index"])[0]
            except (ValueError, RuntimeError, cv2.error) as e:
                raise InferenceError(str(e)) from e
            if self._output["dtype"] == np.uint8:
                scale, zero = self._output.get("quantization", (0.0, 0))
                scores = (scores.astype(np.float32) - zero) * (scale or 1.0 / 255.0)
            return rank(scores, self.labels, self.top_k)
