"""
Request models validating input to the embedding store's mutation and query entry points.
"""

from pydantic import BaseModel, field_validator

from ..vector.types import EntityType


class EmbeddingAddRequest(BaseModel):
    owner_id: str
    entity_type: str
    entity_id: str

    @field_validator('entity_type', mode='before')
    @classmethod
    def entity_type_must_be_known(cls, v):
        if isinstance(v, EntityType):
            v = v.value
        if not isinstance(v, str) or v not in EntityType.values():
            raise ValueError(f'entity_type must be one of: {EntityType.values()}')
        return v

    @field_validator('owner_id')
    @classmethod
    def owner_must_not_be_empty(cls, v):
        if not v or not v.strip():
            raise ValueError('owner_id cannot be empty')
        return v

    @field_validator('entity_id')
    @classmethod
    def entity_id_must_not_be_empty(cls, v):
        if not v or not v.strip():
            raise ValueError('entity_id cannot be empty')
        return v


class EmbeddingQueryRequest(BaseModel):
    owner_id: str
    k: int

    @field_validator('owner_id')
    @classmethod
    def owner_must_not_be_empty(cls, v):
        if not v or not v.strip():
            raise ValueError('owner_id cannot be empty')
        return v
