"""
Error taxonomy for the vector layer and its collaborators.

Validation errors are hard failures surfaced to the caller. Collaborator
errors are recoverable and are absorbed by the retrieval pipeline.
"""


class VectorValidationError(ValueError):
    """Input vector or request failed validation."""
    pass


class DimensionMismatchError(VectorValidationError):
    """Vector length differs from the partition's dimensionality."""

    def __init__(self, expected: int, actual: int, owner_id: str = None):
        self.expected = expected
        self.actual = actual
        self.owner_id = owner_id
        scope = f" for owner '{owner_id}'" if owner_id else ""
        super().__init__(f"Vector dimension {actual} does not match expected dimension {expected}{scope}")


class VectorEncodingError(VectorValidationError):
    """Serialized vector bytes are malformed."""
    pass


class EmbeddingError(RuntimeError):
    """The embedding provider could not produce a vector."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class EntityFetchError(RuntimeError):
    """An entity could not be hydrated from its owning collaborator."""
    pass
