"""
schemas.py - AssessmentAgent Pydantic v2 data contracts.

Defines:
  - ModuleType        enum (article / video / quiz / project)
  - Difficulty        enum (beginner / intermediate / advanced)
  - ChatStatus        enum (queued / running / partial / done / error)
  - ModuleItem        (single learning module in a generated path)
  - AssessmentResult  (validated generator payload: level + confidence + modules)
  - SendRequest / SendResponse / StatusResponse (HTTP wire contracts)
  - PathTargetRequest / ModuleProgressRequest (learning-path progress bodies)

Wire format is camelCase (learningModules, resourceUrl, searchKeywords) to match
what the generator is prompted to emit; Python attributes are snake_case.
Dump with model_dump(by_alias=True, exclude_none=True) before returning or storing.
"""
import re
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# ---------------------------------------------------------------------------
# Assessment constants
# ---------------------------------------------------------------------------
MIN_LEVEL = 1
MAX_LEVEL = 10
MIN_MODULES = 3
MAX_MODULES = 6
MAX_REASONING_LEN = 2000
MIN_KEYWORDS = 3
MAX_KEYWORDS = 10

# e.g. "6 min", "15 mins", "1 h", "2 hours"
DURATION_REGEX = re.compile(r"^(\d{1,3})\s?(min|mins|minutes|h|hr|hrs|hour|hours)$", re.IGNORECASE)
_MAX_FREE_DURATION_LEN = 32


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ModuleType(str, Enum):
    article = "article"
    video = "video"
    quiz = "quiz"
    project = "project"


class Difficulty(str, Enum):
    beginner = "beginner"
    intermediate = "intermediate"
    advanced = "advanced"


class ChatStatus(str, Enum):
    queued = "queued"
    running = "running"
    partial = "partial"
    done = "done"      # terminal
    error = "error"    # terminal

    @property
    def is_terminal(self) -> bool:
        return self in (ChatStatus.done, ChatStatus.error)


ALLOWED_MODULE_TYPES = tuple(t.value for t in ModuleType)


# ---------------------------------------------------------------------------
# ModuleItem
# ---------------------------------------------------------------------------

class ModuleItem(BaseModel):
    """
    One learning module.

    Unknown keys are rejected: the generator is told the exact key set, and an
    extra key usually means it drifted from the schema.
    resource_url is only checked for length here; public-URL and allowlist
    policy belongs to sanitizer.py, which drops the field instead of failing.
    """
    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    type: ModuleType
    duration: str = Field(..., min_length=1, description="Human-readable, e.g. '15 min'")
    description: Optional[str] = Field(default=None, min_length=1, max_length=2000)
    objectives: Optional[List[str]] = Field(default=None, min_length=2, max_length=4)
    outline: Optional[List[str]] = Field(default=None, min_length=3, max_length=5)
    resource_url: Optional[str] = Field(default=None, max_length=2048)
    resource_title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    search_keywords: Optional[List[str]] = Field(
        default=None,
        min_length=1,
        description="Clamped to 3..10 multi-word phrases by the sanitizer",
    )
    level_ref: Optional[int] = Field(default=None, ge=MIN_LEVEL, le=MAX_LEVEL)
    difficulty: Optional[Difficulty] = None

    @field_validator("id", "title")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v

    @field_validator("duration")
    @classmethod
    def _duration_label(cls, v: str) -> str:
        val = v.strip()
        if DURATION_REGEX.match(val):
            return val
        if not any(ch.isdigit() for ch in val) or len(val) > _MAX_FREE_DURATION_LEN:
            raise ValueError("invalid duration label")
        return val

    @field_validator("objectives", "outline", "search_keywords")
    @classmethod
    def _non_empty_entries(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is not None and any(not s.strip() for s in v):
            raise ValueError("entries must be non-empty strings")
        return v


# ---------------------------------------------------------------------------
# AssessmentResult
# ---------------------------------------------------------------------------

class AssessmentResult(BaseModel):
    """
    Validated assessment payload.

    Extra top-level keys (e.g. 'skill' variants or model chatter) are ignored
    rather than rejected; only the module list is strict.
    """
    model_config = ConfigDict(
        extra="ignore",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    level: int = Field(..., ge=MIN_LEVEL, le=MAX_LEVEL)
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: Optional[str] = Field(default=None, max_length=MAX_REASONING_LEN)
    skill: Optional[str] = Field(default=None, min_length=1)
    learning_modules: List[ModuleItem] = Field(
        ...,
        min_length=MIN_MODULES,
        max_length=MAX_MODULES,
    )

    @field_validator("level", mode="before")
    @classmethod
    def _numeric_level(cls, v):
        # 4.0 is the integer 4 in JSON; "4" and true are not numbers
        if isinstance(v, (bool, str)):
            raise ValueError("level must be a JSON number")
        return v

    @field_validator("learning_modules")
    @classmethod
    def _unique_module_ids(cls, mods: List[ModuleItem]) -> List[ModuleItem]:
        ids = [m.id for m in mods]
        if len(set(ids)) != len(ids):
            raise ValueError("duplicate module ids")
        return mods


# ---------------------------------------------------------------------------
# HTTP contracts
# ---------------------------------------------------------------------------

class SendRequest(BaseModel):
    """Incoming chat turn: which skill is being assessed and the user's message."""
    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    skill_id: str = Field(..., min_length=1, max_length=100)
    message: str = Field(..., min_length=1, max_length=8000)
    conversation_id: Optional[str] = Field(default=None, max_length=36)


class SendResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session_id: str
    conversation_id: Optional[str] = None


class StatusResponse(BaseModel):
    """Polling snapshot of one session."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session_id: str
    status: ChatStatus
    text: str
    updated_at: int = Field(description="Milliseconds since epoch")
    error: Optional[str] = None


class PathTargetRequest(BaseModel):
    """Identifies a learning path by id, or by skill (the caller's current path)."""
    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    learning_path_id: Optional[str] = Field(default=None, min_length=1, max_length=36)
    skill_id: Optional[str] = Field(default=None, min_length=1, max_length=100)

    @model_validator(mode="after")
    def _has_target(self) -> "PathTargetRequest":
        if not self.learning_path_id and not self.skill_id:
            raise ValueError("Either learningPathId or skillId is required")
        return self


class ModuleProgressRequest(PathTargetRequest):
    module_id: str = Field(..., min_length=1, max_length=100)


__all__ = [
    "ALLOWED_MODULE_TYPES",
    "AssessmentResult",
    "ChatStatus",
    "Difficulty",
    "ModuleItem",
    "ModuleProgressRequest",
    "ModuleType",
    "PathTargetRequest",
    "SendRequest",
    "SendResponse",
    "StatusResponse",
]
