"""
Vector serialization.

Vectors are persisted as packed little-endian IEEE-754 float32 values, so a
round trip is bit-identical for every finite component. The base64 form is
used by document stores that cannot hold raw bytes.
"""

import base64
import binascii
from typing import Sequence, Union

import numpy as np

from .errors import VectorEncodingError, VectorValidationError

FLOAT_DTYPE = np.dtype("<f4")
FLOAT_WIDTH = FLOAT_DTYPE.itemsize

VectorLike = Union[np.ndarray, Sequence[float]]


def as_float32(vector: VectorLike) -> np.ndarray:
    """Coerce input to a 1-D float32 array, rejecting empty or non-finite vectors."""
    try:
        array = np.asarray(vector, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise VectorValidationError(f"Vector is not numeric: {e}") from e

    if array.ndim != 1:
        raise VectorValidationError(f"Vector must be one-dimensional, got shape {array.shape}")
    if array.size == 0:
        raise VectorValidationError("Vector must not be empty")
    if not np.all(np.isfinite(array)):
        raise VectorValidationError("Vector contains NaN or infinite components")
    return array


def encode_vector(vector: VectorLike) -> bytes:
    """Serialize a vector to a float32 little-endian blob."""
    return np.asarray(vector, dtype=np.float32).astype(FLOAT_DTYPE, copy=False).tobytes()


def decode_vector(blob: bytes, dimensions: int = None) -> np.ndarray:
    """Deserialize a float32 little-endian blob, optionally checking its length."""
    if blob is None:
        raise VectorEncodingError("Vector blob is missing")
    if len(blob) % FLOAT_WIDTH != 0:
        raise VectorEncodingError(f"Vector blob length {len(blob)} is not a multiple of {FLOAT_WIDTH}")

    array = np.frombuffer(blob, dtype=FLOAT_DTYPE).astype(np.float32)
    if dimensions is not None and array.size != dimensions:
        raise VectorEncodingError(f"Vector blob holds {array.size} values, expected {dimensions}")
    return array


def encode_vector_base64(vector: VectorLike) -> str:
    """Serialize a vector to base64 text of the float32 blob."""
    return base64.b64encode(encode_vector(vector)).decode("ascii")


def decode_vector_base64(text: str, dimensions: int = None) -> np.ndarray:
    """Inverse of encode_vector_base64."""
    try:
        blob = base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, AttributeError) as e:
        raise VectorEncodingError(f"Malformed base64 vector: {e}") from e
    return decode_vector(blob, dimensions)
