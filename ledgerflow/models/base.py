"""Shared model config and base types."""
from pydantic import BaseModel, ConfigDict


class LFBaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class FrozenModel(BaseModel):
    """Values that must not change once a pipeline run has produced them."""
    model_config = ConfigDict(extra="forbid", frozen=True)
