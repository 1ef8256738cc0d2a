"""Plan document grammar — the shape a plan must have before it can run."""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

IDENTIFIER = r"^[A-Za-z][A-Za-z0-9_\-]*$"
TOOL_NAME = r"^[A-Za-z][A-Za-z0-9_]*(\.[A-Za-z][A-Za-z0-9_]*)*$"
VERSION = r"^[0-9]+\.[0-9]+(\.[0-9]+)?$"


class DocumentModel(BaseModel):
    """Accepts camelCase (wire format) or snake_case field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class RiskLevel(str, Enum):
    READ_ONLY = "read-only"
    WRITES = "writes"
    COMMANDS = "commands"


class OnError(str, Enum):
    STOP = "stop"
    SKIP = "skip"
    RETRY = "retry"


class RetryPolicy(DocumentModel):
    max_attempts: int = Field(ge=1, le=10)
    backoff_ms: int = Field(default=250, ge=0, le=600000)


class ForEach(DocumentModel):
    # `from` is a keyword, so the field is stored as from_
    from_: str = Field(alias="from", min_length=1)
    item_name: str = Field(pattern=IDENTIFIER)
    index_name: Optional[str] = Field(default=None, pattern=IDENTIFIER)
    concurrency: Optional[int] = Field(default=None, ge=1)

    @property
    def index_var(self) -> str:
        return self.index_name or "index"


class Step(DocumentModel):
    id: str = Field(pattern=IDENTIFIER)
    tool: str = Field(pattern=TOOL_NAME)
    args: dict[str, Any] = Field(default_factory=dict)
    preview: Optional[str] = Field(default=None, min_length=1)
    depends_on: list[str] = Field(default_factory=list)
    foreach: Optional[ForEach] = None
    capture_as: Optional[str] = Field(default=None, pattern=r"^[A-Za-z][A-Za-z0-9_\-\.]*$")
    on_error: Optional[OnError] = None
    retry: Optional[RetryPolicy] = None
    timeout_ms: Optional[int] = Field(default=None, ge=1)
    tags: list[str] = Field(default_factory=list)

    @property
    def label(self) -> str:
        return self.preview or self.tool


class ContextRequest(DocumentModel):
    kind: Literal[
        "activeFilePath",
        "selection",
        "cursor",
        "workspaceContext",
        "commandList",
        "vaultFileList",
    ]
    options: dict[str, Any] = Field(default_factory=dict)


class Defaults(DocumentModel):
    on_error: Optional[OnError] = None
    retry: Optional[RetryPolicy] = None


class Outputs(DocumentModel):
    show_created_files: bool = True
    show_modified_files: bool = True
    show_command_runs: bool = True


class UIHints(DocumentModel):
    title: Optional[str] = Field(default=None, min_length=1)
    summary: Optional[str] = Field(default=None, min_length=1)


class ActionPlan(DocumentModel):
    """A goal-directed DAG of tool steps."""

    version: str = Field(default="1.0", pattern=VERSION)
    goal: str = Field(min_length=1)
    assumptions: list[str] = Field(default_factory=list)
    risk_level: RiskLevel
    context_requests: list[ContextRequest] = Field(default_factory=list)
    defaults: Defaults = Field(default_factory=Defaults)
    steps: list[Step] = Field(min_length=1)
    outputs: Outputs = Field(default_factory=Outputs)
    ui_hints: UIHints = Field(default_factory=UIHints)

    def step(self, step_id: str) -> Step | None:
        for s in self.steps:
            if s.id == step_id:
                return s
        return None
