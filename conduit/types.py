"""All shared types, enums, and type aliases. Everything imports from here."""

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel
import uuid


# ── Enums ──────────────────────────────────────────────────────────────

class PaginationType(str, Enum):
    OFFSET_BASED = "offsetBased"
    PAGE_BASED = "pageBased"
    CURSOR_BASED = "cursorBased"

class FailureBehavior(str, Enum):
    FAIL = "fail"           # abort the remaining pipeline
    CONTINUE = "continue"   # record the failure, run the next step

class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"     # cancelled or timed out, partial results kept

class FilterTarget(str, Enum):
    KEYS = "keys"
    VALUES = "values"
    BOTH = "both"

class FilterAction(str, Enum):
    REMOVE = "remove"
    MASK = "mask"
    FAIL = "fail"

class PatchOp(str, Enum):
    ADD = "add"
    REMOVE = "remove"
    REPLACE = "replace"
    MOVE = "move"
    COPY = "copy"
    TEST = "test"

class ConfirmationStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMPLETED = "completed"
    DECLINED = "declined"
    ERROR = "error"

class ConfirmationAction(str, Enum):
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    PARTIAL = "partial"             # edit-style calls only
    OAUTH_SUCCESS = "oauth_success" # OAuth calls only
    OAUTH_FAILURE = "oauth_failure"

class ExecutionMode(str, Enum):
    AUTO = "auto"
    CONFIRM_BEFORE_EXECUTION = "confirm_before_execution"
    CONFIRM_AFTER_EXECUTION = "confirm_after_execution"


_PAGINATION_ALIASES = {
    "OFFSET_BASED": "offsetBased",
    "PAGE_BASED": "pageBased",
    "CURSOR_BASED": "cursorBased",
}


class _DocumentModel(BaseModel):
    """Tool documents are camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Tool documents ─────────────────────────────────────────────────────

class PaginationConfig(_DocumentModel):
    type: PaginationType
    page_size: Union[int, str] = 50
    cursor_path: Optional[str] = None       # JMESPath into the page data
    stop_condition: Optional[str] = None    # (response, pageInfo) => boolean

    @model_validator(mode="before")
    @classmethod
    def _normalise_type(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("type") in _PAGINATION_ALIASES:
            data = {**data, "type": _PAGINATION_ALIASES[data["type"]]}
        return data


class RequestStepConfig(_DocumentModel):
    type: Literal["request"] = "request"
    system_id: Optional[str] = None
    url: str
    method: str = "GET"
    headers: dict[str, Any] = Field(default_factory=dict)
    query_params: dict[str, Any] = Field(default_factory=dict)
    body: Optional[Any] = None
    pagination: Optional[PaginationConfig] = None


class TransformStepConfig(_DocumentModel):
    type: Literal["transform"] = "transform"
    transform_code: str


StepConfig = Annotated[
    Union[RequestStepConfig, TransformStepConfig],
    Field(discriminator="type"),
]


def infer_step_type(config: dict[str, Any]) -> Optional[str]:
    """Type of a legacy step config that has no ``type``: a url wins over transform code."""
    if "type" in config:
        return config["type"]
    if "url" in config:
        return "request"
    if "transformCode" in config or "transform_code" in config:
        return "transform"
    return None


class Step(_DocumentModel):
    """One unit of work: an external request or an in-process transform."""
    id: str
    config: StepConfig
    data_selector: Optional[str] = None
    instruction: Optional[str] = None
    modify: bool = False                        # side-effecting hint
    failure_behavior: FailureBehavior = FailureBehavior.FAIL

    @model_validator(mode="before")
    @classmethod
    def _upgrade_legacy(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "loopSelector" in data and "dataSelector" not in data:
            data["dataSelector"] = data.pop("loopSelector")
        cfg = data.get("config")
        if isinstance(cfg, dict) and "type" not in cfg:
            inferred = infer_step_type(cfg)
            if inferred is not None:
                data["config"] = {**cfg, "type": inferred}
        return data


class ResponseFilter(_DocumentModel):
    """Post-processing rule applied to a tool's final output."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: Optional[str] = None
    enabled: bool = True
    target: FilterTarget = FilterTarget.KEYS
    pattern: str                                # regular expression
    action: FilterAction = FilterAction.REMOVE
    mask_value: str = "[filtered]"


class Tool(_DocumentModel):
    """Declarative multi-step integration. Identity is ``id``."""
    id: str
    name: Optional[str] = None
    instruction: Optional[str] = None
    steps: list[Step] = Field(default_factory=list)
    output_transform: Optional[str] = None
    input_schema: Optional[dict[str, Any]] = None
    output_schema: Optional[dict[str, Any]] = None
    response_filters: list[ResponseFilter] = Field(default_factory=list)
    version: Optional[str] = None
    archived: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _upgrade_legacy(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "finalTransform" in data and "outputTransform" not in data:
            data["outputTransform"] = data.pop("finalTransform")
        if "responseSchema" in data and "outputSchema" not in data:
            data["outputSchema"] = data.pop("responseSchema")
        return data

    def to_document(self) -> dict[str, Any]:
        """JSON-ready camelCase document, unset fields omitted."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ── Execution results ──────────────────────────────────────────────────

class ResultEnvelope(BaseModel):
    """The only shape a step hands downstream: ``{currentItem, data, success, error?}``."""
    model_config = ConfigDict(populate_by_name=True)

    current_item: Any = Field(default_factory=dict, alias="currentItem")
    data: Any = None
    success: bool = True
    error: Optional[str] = None

    def to_wire(self) -> dict[str, Any]:
        wire = {"currentItem": self.current_item, "data": self.data, "success": self.success}
        if self.error is not None:
            wire["error"] = self.error
        return wire


class SingleResult(BaseModel):
    """Step ran once (no selector, or selector returned an object)."""
    kind: Literal["single"] = "single"
    envelope: ResultEnvelope

    @property
    def data(self) -> Any:
        return self.envelope.data

    @property
    def envelopes(self) -> list[ResultEnvelope]:
        return [self.envelope]

    @property
    def failures(self) -> list[ResultEnvelope]:
        return [] if self.envelope.success else [self.envelope]

    def to_wire(self) -> dict[str, Any]:
        return self.envelope.to_wire()


class LoopResult(BaseModel):
    """Step ran once per selected element, results in input order."""
    kind: Literal["loop"] = "loop"
    items: list[ResultEnvelope] = Field(default_factory=list)

    @property
    def data(self) -> list[Any]:
        return [e.data for e in self.items]

    @property
    def envelopes(self) -> list[ResultEnvelope]:
        return list(self.items)

    @property
    def failures(self) -> list[ResultEnvelope]:
        return [e for e in self.items if not e.success]

    def to_wire(self) -> list[dict[str, Any]]:
        return [e.to_wire() for e in self.items]


StepOutcome = Annotated[Union[SingleResult, LoopResult], Field(discriminator="kind")]


class StepResult(BaseModel):
    """Per-step record reported on a RunResult."""
    step_id: str
    success: bool
    outcome: Optional[StepOutcome] = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    @property
    def data(self) -> Any:
        return self.outcome.to_wire() if self.outcome is not None else None


class RunOptions(BaseModel):
    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timeout_seconds: Optional[float] = None
    loop_concurrency: Optional[int] = None
    max_pagination_pages: Optional[int] = None
    credentials: dict[str, dict[str, Any]] = Field(default_factory=dict)  # system_id -> {key: value}
    webhook_url: Optional[str] = None       # http(s):// URL or tool:<id>


class RunResult(BaseModel):
    run_id: str
    tool_id: str
    status: RunStatus
    success: bool
    data: Any = None
    error: Optional[str] = None
    failed_step_id: Optional[str] = None
    step_results: list[StepResult] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None


class ConnectorResult(BaseModel):
    """What a connector reports for one invocation."""
    success: bool
    data: Any = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    headers: dict[str, str] = Field(default_factory=dict)


# ── Patches ────────────────────────────────────────────────────────────

class PatchOperation(BaseModel):
    """RFC 6902 operation. ``value`` presence is tracked via ``model_fields_set``."""
    model_config = ConfigDict(populate_by_name=True)

    op: PatchOp
    path: str
    value: Any = None
    from_: Optional[str] = Field(default=None, alias="from")

    @property
    def has_value(self) -> bool:
        return "value" in self.model_fields_set

    def to_diff(self) -> dict[str, Any]:
        """Normalised ``{op, path, value?, from?}`` form."""
        diff: dict[str, Any] = {"op": self.op.value, "path": self.path}
        if self.has_value:
            diff["value"] = self.value
        if self.from_ is not None:
            diff["from"] = self.from_
        return diff


class PatchResult(BaseModel):
    document: Any
    diffs: list[dict[str, Any]] = Field(default_factory=list)


# ── Confirmations ──────────────────────────────────────────────────────

class ConfirmationRecord(BaseModel):
    """Transient per-tool-call lifecycle record, keyed by call id."""
    call_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tool_name: str
    status: ConfirmationStatus = ConfirmationStatus.PENDING
    execution_mode: ExecutionMode = ExecutionMode.AUTO
    input: dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    error: Optional[str] = None
    message: Optional[str] = None
    applied_diffs: Optional[list[dict[str, Any]]] = None
    rejected_diffs: Optional[list[dict[str, Any]]] = None
    history: list[ConfirmationStatus] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            ConfirmationStatus.COMPLETED,
            ConfirmationStatus.DECLINED,
            ConfirmationStatus.ERROR,
        )


class SystemCredentials(BaseModel):
    """Stored credentials for one system. ``encrypted_data`` is empty on returned copies."""
    system_id: str
    keys: list[str] = Field(default_factory=list)
    encrypted_data: str = ""
    created_at: datetime = Field(default_factory=datetime.utcnow)
