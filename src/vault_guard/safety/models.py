"""Safety models for Vault Guard.

This module defines data models for guarded vault operations including
operation requests, risk tiers, guardrail decisions, confirmation outcomes,
the audit trail, and the error taxonomy shared by every pipeline stage.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class HttpMethod(str, Enum):
    """HTTP methods understood by the vault service."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


class TargetKind(str, Enum):
    """Kinds of vault resources an operation can address."""

    ACTIVE = "active"
    FILE = "file"
    PERIODIC = "periodic"
    COMMAND = "command"


class PatchMode(str, Enum):
    """How a PATCH request merges content into the target."""

    APPEND = "append"
    PREPEND = "prepend"
    REPLACE = "replace"


class PatchTargetType(str, Enum):
    """Part of a note a PATCH request is anchored to."""

    HEADING = "heading"
    BLOCK = "block"
    FRONTMATTER = "frontmatter"


class Period(str, Enum):
    """Periodic note periods."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class RiskTier(str, Enum):
    """Ordered risk tiers for vault mutations."""

    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Position of this tier in the severity ordering."""
        return _TIER_ORDER.index(self)

    def escalate(self) -> "RiskTier":
        """Return the next tier up, saturating at CRITICAL."""
        return _TIER_ORDER[min(self.rank + 1, len(_TIER_ORDER) - 1)]

    @classmethod
    def highest(cls, *tiers: "RiskTier") -> "RiskTier":
        """Return the most severe of the given tiers."""
        return max(tiers, key=lambda tier: tier.rank)


_TIER_ORDER = [
    RiskTier.NONE,
    RiskTier.LOW,
    RiskTier.MEDIUM,
    RiskTier.HIGH,
    RiskTier.CRITICAL,
]


class OperationRequest(BaseModel):
    """A single proposed vault operation.

    Requests are frozen. Filling in state fetched from the vault (for
    example ``file_exists``) produces a new request via ``model_copy``.
    """

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()), description="Unique request ID"
    )
    method: HttpMethod = Field(..., description="HTTP method of the operation")
    target_kind: TargetKind = Field(
        TargetKind.FILE, description="Kind of vault resource addressed"
    )
    path: str = Field("", description="Vault path (files) or display target")

    patch_mode: Optional[PatchMode] = Field(None, description="PATCH merge mode")
    patch_target_type: Optional[PatchTargetType] = Field(
        None, description="PATCH anchor type"
    )
    patch_target: Optional[str] = Field(
        None, description="PATCH anchor (heading path, block id, frontmatter key)"
    )

    affected_count: int = Field(1, ge=1, description="Number of resources affected")
    is_current_period: Optional[bool] = Field(
        None, description="Whether a periodic target is the current period"
    )
    file_exists: Optional[bool] = Field(
        None, description="Whether the target currently exists"
    )

    period: Optional[Period] = Field(None, description="Period for periodic notes")
    content: Optional[str] = Field(None, description="Payload to write")
    command_id: Optional[str] = Field(None, description="Command to execute")
    command_description: Optional[str] = Field(
        None, description="Human-readable command name"
    )

    @field_validator("path")
    @classmethod
    def strip_path(cls, value: str) -> str:
        """Normalize leading slashes on vault paths."""
        return value.strip().lstrip("/")

    @property
    def is_mutation(self) -> bool:
        """Whether the request can change vault state."""
        return self.method != HttpMethod.GET

    @property
    def display_target(self) -> str:
        """Human-readable description of the target."""
        if self.target_kind == TargetKind.ACTIVE:
            return "active file"
        if self.target_kind == TargetKind.PERIODIC:
            period = self.period.value if self.period else "periodic"
            suffix = " (current)" if self.is_current_period else ""
            return f"{period} note{suffix}"
        if self.target_kind == TargetKind.COMMAND:
            return f"command {self.command_description or self.command_id}"
        return self.path

    @property
    def resource_key(self) -> str:
        """Stable identity of the addressed resource, used for backups."""
        if self.target_kind == TargetKind.ACTIVE:
            return self.path or "active"
        if self.target_kind == TargetKind.PERIODIC:
            period = self.period.value if self.period else "periodic"
            return self.path or f"periodic/{period}"
        if self.target_kind == TargetKind.COMMAND:
            return f"commands/{self.command_id}"
        return self.path


class GuardrailDecision(BaseModel):
    """Classification result for one request.

    Concrete decisions are always one of the variants below, so the
    confirmation policy travels with the tier instead of being recomputed.
    """

    model_config = ConfigDict(frozen=True)

    kind: str
    tier: RiskTier = Field(..., description="Risk tier assigned to the request")
    requires_confirmation: bool = Field(..., description="Whether a prompt is needed")
    bypassable: bool = Field(..., description="Whether the skip flag may bypass it")
    required_token: Optional[str] = Field(None, description="Token that approves it")
    advisory: bool = Field(False, description="Target is a protected path")
    reasons: List[str] = Field(default_factory=list, description="Matched rules")

    @model_validator(mode="after")
    def critical_is_never_bypassable(self) -> "GuardrailDecision":
        """Reject critical decisions that could skip their prompt."""
        if self.tier == RiskTier.CRITICAL and (
            self.bypassable or not self.requires_confirmation
        ):
            raise ValueError(
                "critical decisions must require a non-bypassable confirmation"
            )
        return self


class NoConfirmationDecision(GuardrailDecision):
    """Operation proceeds without any prompt."""

    kind: Literal["no_confirmation"] = "no_confirmation"
    requires_confirmation: Literal[False] = False
    bypassable: bool = True
    required_token: None = None


class YesNoDecision(GuardrailDecision):
    """Operation needs a simple yes/no approval."""

    kind: Literal["yes_no"] = "yes_no"
    requires_confirmation: Literal[True] = True
    bypassable: Literal[True] = True
    required_token: Literal["yes"] = "yes"


class ReplaceDecision(GuardrailDecision):
    """Overwriting existing content; approved with the REPLACE token."""

    kind: Literal["replace"] = "replace"
    tier: RiskTier = RiskTier.HIGH
    requires_confirmation: Literal[True] = True
    bypassable: Literal[True] = True
    required_token: Literal["REPLACE"] = "REPLACE"


class CriticalDecision(GuardrailDecision):
    """Critical operations: always prompted, never bypassable."""

    kind: Literal["critical"] = "critical"
    tier: Literal[RiskTier.CRITICAL] = RiskTier.CRITICAL
    requires_confirmation: Literal[True] = True
    bypassable: Literal[False] = False
    required_token: str = "DELETE"


AnyDecision = Union[NoConfirmationDecision, YesNoDecision, ReplaceDecision, CriticalDecision]


class OutcomeStatus(str, Enum):
    """Terminal outcome of the confirmation step."""

    CONFIRMED = "confirmed"
    ABORTED = "aborted"
    SKIPPED = "skipped"


class ConfirmationOutcome(BaseModel):
    """Outcome of the confirmation gate for one request."""

    model_config = ConfigDict(frozen=True)

    status: OutcomeStatus
    reason: Optional[str] = None
    notice: Optional[str] = Field(
        None, description="Transparency notice when confirmation was skipped"
    )
    response: Optional[str] = Field(None, description="Response that decided it")

    @classmethod
    def confirmed(cls, response: Optional[str] = None) -> "ConfirmationOutcome":
        return cls(status=OutcomeStatus.CONFIRMED, response=response)

    @classmethod
    def aborted(cls, response: Optional[str] = None) -> "ConfirmationOutcome":
        return cls(status=OutcomeStatus.ABORTED, reason="aborted by user", response=response)

    @classmethod
    def skipped(cls, reason: str, notice: Optional[str] = None) -> "ConfirmationOutcome":
        return cls(status=OutcomeStatus.SKIPPED, reason=reason, notice=notice)

    @property
    def approved(self) -> bool:
        """Whether the operation may proceed."""
        return self.status in (OutcomeStatus.CONFIRMED, OutcomeStatus.SKIPPED)


class ConfirmationPrompt(BaseModel):
    """Structured prompt payload handed to the caller for rendering."""

    tier: RiskTier = Field(..., description="Risk tier of the operation")
    target: str = Field(..., description="Human-readable target")
    operation: str = Field(..., description="Operation summary")
    preview: Optional[str] = Field(None, description="Preview of content at stake")
    required_token: str = Field(..., description="Exact token that approves")
    advisory: bool = Field(False, description="Target is a protected path")
    warnings: List[str] = Field(default_factory=list, description="Warnings to show")
    attempt: int = Field(1, description="Prompt attempt number")


class AuditLogEntry(BaseModel):
    """Represents an audit log entry."""

    entry_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()), description="Unique entry ID"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Entry timestamp",
    )

    operation: str = Field(..., description="Operation performed (METHOD target)")
    status: str = Field(
        ...,
        description="Stage status (requested, approved, aborted, rejected, executed, failed)",
    )
    request_id: str = Field(..., description="Associated request ID")
    tier: Optional[RiskTier] = Field(None, description="Assigned risk tier")
    details: Dict[str, Any] = Field(default_factory=dict, description="Stage details")


class VaultGuardError(Exception):
    """Base exception for guarded vault operations."""

    def __init__(
        self,
        message: str,
        error_code: str = "VAULT_GUARD_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for tool responses."""
        return {
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class ConfigMissing(VaultGuardError):
    """Raised when a required setting is absent from every source."""

    def __init__(self, key: str, sources: Optional[List[str]] = None):
        super().__init__(
            f"Required setting {key} is not configured", "CONFIG_MISSING"
        )
        self.details = {"key": key, "sources_checked": sources or []}


class ClassificationAmbiguous(VaultGuardError):
    """Raised when a target specifier matches more than one location."""

    def __init__(self, message: str, resource_key: str, target: str, matches: int):
        super().__init__(message, "CLASSIFICATION_AMBIGUOUS")
        self.details = {
            "resource_key": resource_key,
            "target": target,
            "matches": matches,
        }


class OperationNotPermitted(VaultGuardError):
    """Raised when configuration forbids the operation outright."""

    def __init__(self, message: str, resource_key: str, setting: str):
        super().__init__(message, "OPERATION_NOT_PERMITTED")
        self.details = {"resource_key": resource_key, "setting": setting}


class UserAbort(VaultGuardError):
    """Raised when the response is an abort keyword."""

    def __init__(self, resource_key: str, tier: RiskTier, response: str):
        super().__init__(f"Operation on {resource_key} aborted by user", "USER_ABORT")
        self.details = {
            "resource_key": resource_key,
            "tier": tier.value,
            "response": response,
        }


class TokenMismatch(VaultGuardError):
    """Raised when the response does not match the required token."""

    def __init__(
        self,
        resource_key: str,
        tier: RiskTier,
        required_token: str,
        attempts: int = 1,
    ):
        super().__init__(
            f"Confirmation for {resource_key} requires exactly '{required_token}'",
            "TOKEN_MISMATCH",
        )
        self.details = {
            "resource_key": resource_key,
            "tier": tier.value,
            "required_token": required_token,
            "attempts": attempts,
        }


class BackupWriteFailure(VaultGuardError):
    """Raised when a safety copy could not be written."""

    def __init__(self, message: str, resource_key: str, backup_dir: str):
        super().__init__(message, "BACKUP_WRITE_FAILURE")
        self.details = {"resource_key": resource_key, "backup_dir": backup_dir}


class ExecutionFailure(VaultGuardError):
    """Raised when the vault service reports a non-success result."""

    def __init__(
        self,
        message: str,
        method: str,
        resource_key: str,
        status_category: str,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, "EXECUTION_FAILURE")
        self.details = {
            "method": method,
            "resource_key": resource_key,
            "status_category": status_category,
            "status_code": status_code,
        }
