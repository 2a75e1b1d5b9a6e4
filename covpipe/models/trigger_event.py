"""
Trigger Event Model
===================
Pydantic model for a repository event that may start a pipeline run.

Fields:
    event_type  — push | pull_request | manual
    branch      — pushed branch, or the base branch of a pull request
    commit_sha  — commit (or ref) the run builds
    repo_url    — repository to check out; empty means the configured default
"""
from enum import Enum

from pydantic import BaseModel, field_validator


class EventType(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    MANUAL = "manual"


class TriggerEvent(BaseModel):
    event_type: EventType
    commit_sha: str
    branch: str = ""
    repo_url: str = ""

    @field_validator("commit_sha")
    @classmethod
    def _non_empty_ref(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("commit reference must not be empty")
        return v

    @property
    def is_automatic(self) -> bool:
        return self.event_type != EventType.MANUAL
