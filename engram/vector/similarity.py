"""
Cosine similarity and the angular bounds used by cluster pruning.
"""

import math

import numpy as np


def vector_norm(vector: np.ndarray) -> float:
    return float(np.linalg.norm(np.asarray(vector, dtype=np.float64)))


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """
    Cosine of the angle between two vectors, in [-1, 1].

    A zero-norm operand yields 0, including a zero vector compared with itself.
    """
    a64 = np.asarray(a, dtype=np.float64)
    b64 = np.asarray(b, dtype=np.float64)
    if a64.shape != b64.shape:
        raise ValueError(f"Vector dimension mismatch: {a64.size} vs {b64.size}")

    magnitude = np.linalg.norm(a64) * np.linalg.norm(b64)
    if magnitude == 0:
        return 0.0

    return float(np.clip(np.dot(a64, b64) / magnitude, -1.0, 1.0))


def angle_between(a: np.ndarray, b: np.ndarray) -> float:
    """Angle in radians; pi when either vector has zero norm."""
    if vector_norm(a) == 0 or vector_norm(b) == 0:
        return math.pi
    return math.acos(cosine_similarity(a, b))


def similarity_upper_bound(query_angle: float, radius: float) -> float:
    """
    Largest cosine similarity any vector within `radius` of a centroid can have
    with a query lying `query_angle` away from that centroid.
    """
    return math.cos(max(0.0, query_angle - radius))
