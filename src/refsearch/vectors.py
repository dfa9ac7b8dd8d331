"""Vector maths and blob codecs for persisted embeddings.

Two on-disk formats are supported:

* float32: ``dimensions`` little-endian 32-bit floats (``4 * d`` bytes).
* int8: a little-endian float32 scale followed by ``dimensions`` signed bytes
  (``4 + d`` bytes), where ``scale = 127 / max(|v|)``.

For any integer ``d > 0`` the two lengths differ except at ``d == 4/3``, so
the format of a blob is recoverable from its length and the stored width.
"""

from __future__ import annotations

from typing import Sequence, Tuple

import numpy as np

_FLOAT32 = np.dtype("<f4")
_INT8 = np.dtype("i1")


def as_array(vector: Sequence[float] | np.ndarray) -> np.ndarray:
    return np.asarray(vector, dtype=np.float32)


def norm(vector: Sequence[float] | np.ndarray) -> float:
    return float(np.linalg.norm(as_array(vector)))


def normalize(vector: Sequence[float] | np.ndarray) -> np.ndarray:
    array = as_array(vector)
    length = float(np.linalg.norm(array))
    if length == 0.0:
        return array
    return array / length


def cosine_similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """Cosine similarity in [-1, 1]; 0.0 when either vector has zero norm."""

    left = as_array(a)
    right = as_array(b)
    if left.shape != right.shape:
        raise ValueError(f"vector widths differ: {left.shape[0]} != {right.shape[0]}")
    denominator = float(np.linalg.norm(left)) * float(np.linalg.norm(right))
    if denominator == 0.0:
        return 0.0
    # float64 accumulation keeps self-similarity within 1e-6 of 1.0
    score = float(np.dot(left.astype(np.float64), right.astype(np.float64))) / denominator
    return max(-1.0, min(1.0, score))


def quantize(vector: Sequence[float] | np.ndarray) -> Tuple[np.ndarray, float]:
    array = as_array(vector)
    max_abs = float(np.max(np.abs(array))) if array.size else 0.0
    scale = 127.0 / max_abs if max_abs > 0 else 1.0
    values = np.clip(np.round(array * scale), -127, 127).astype(_INT8)
    return values, scale


def dequantize(values: np.ndarray, scale: float) -> np.ndarray:
    return values.astype(np.float32) / np.float32(scale)


def encode_float32(vector: Sequence[float] | np.ndarray) -> bytes:
    return as_array(vector).astype(_FLOAT32).tobytes()


def encode_int8(vector: Sequence[float] | np.ndarray) -> bytes:
    values, scale = quantize(vector)
    return np.array([scale], dtype=_FLOAT32).tobytes() + values.tobytes()


def encode_vector(vector: Sequence[float] | np.ndarray, *, quantized: bool = False) -> bytes:
    return encode_int8(vector) if quantized else encode_float32(vector)


def is_quantized_blob(blob: bytes, dimensions: int) -> bool:
    if len(blob) == 4 * dimensions:
        return False
    if len(blob) == 4 + dimensions:
        return True
    raise ValueError(f"blob of {len(blob)} bytes does not hold {dimensions} dimensions")


def decode_int8(blob: bytes, dimensions: int) -> Tuple[np.ndarray, float]:
    scale = float(np.frombuffer(blob, dtype=_FLOAT32, count=1)[0])
    values = np.frombuffer(blob, dtype=_INT8, offset=4, count=dimensions)
    return values, scale


def decode_vector(blob: bytes, dimensions: int) -> np.ndarray:
    """Decode either blob format into a float32 array."""

    if is_quantized_blob(blob, dimensions):
        values, scale = decode_int8(blob, dimensions)
        return dequantize(values, scale)
    return np.frombuffer(blob, dtype=_FLOAT32, count=dimensions).astype(np.float32)


def int8_cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine over quantized values; the per-vector scales cancel out."""

    left = a.astype(np.int32)
    right = b.astype(np.int32)
    denominator = float(np.sqrt(np.dot(left, left))) * float(np.sqrt(np.dot(right, right)))
    if denominator == 0.0:
        return 0.0
    return max(-1.0, min(1.0, float(np.dot(left, right)) / denominator))


__all__ = [
    "as_array",
    "cosine_similarity",
    "decode_int8",
    "decode_vector",
    "dequantize",
    "encode_float32",
    "encode_int8",
    "encode_vector",
    "int8_cosine_similarity",
    "is_quantized_blob",
    "norm",
    "normalize",
    "quantize",
]
