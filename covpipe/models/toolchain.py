"""
Toolchain Spec Model
====================
Desired compiler channel plus the optional components installed with it.
Supplied as static configuration and never mutated during a run.
"""
from typing import FrozenSet

from pydantic import BaseModel, ConfigDict, field_validator

from covpipe.core.constants import DEFAULT_CHANNEL, DEFAULT_COMPONENTS


class ToolchainSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    channel: str = DEFAULT_CHANNEL
    components: FrozenSet[str] = frozenset(DEFAULT_COMPONENTS)

    @field_validator("channel")
    @classmethod
    def _channel_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("toolchain channel must not be empty")
        return v
