"""Execution models for Vault Guard.

This module defines the per-operation result produced by the guardrail
pipeline and the report produced for a batch of operations.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..safety.models import (
    ConfirmationOutcome,
    ConfirmationPrompt,
    GuardrailDecision,
    OperationRequest,
)


class ResultStatus(str, Enum):
    """Final status of one operation."""

    EXECUTED = "executed"
    FAILED = "failed"
    ABORTED = "aborted"
    REJECTED = "rejected"
    CONFIRMATION_REQUIRED = "confirmation_required"
    NOT_RUN = "not_run"


class OperationResult(BaseModel):
    """Result of running one request through the pipeline."""

    request: OperationRequest = Field(..., description="Request as classified")
    status: ResultStatus = Field(..., description="Final status")
    decision: Optional[GuardrailDecision] = Field(None, description="Classification")
    outcome: Optional[ConfirmationOutcome] = Field(None, description="Gate outcome")
    prompt: Optional[ConfirmationPrompt] = Field(
        None, description="Pending prompt when confirmation is required"
    )

    executed: bool = Field(False, description="Whether the vault was called")
    success: bool = Field(False, description="Whether the vault reported success")
    status_category: Optional[str] = Field(None, description="Vault status category")
    status_code: Optional[int] = Field(None, description="Vault HTTP status code")
    body: Optional[str] = Field(None, description="Vault response body")

    backup_written: bool = Field(False, description="Whether a backup was written")
    backup_path: Optional[str] = Field(None, description="Backup file, if written")

    warnings: List[str] = Field(default_factory=list, description="Non-fatal problems")
    notices: List[str] = Field(default_factory=list, description="Transparency notices")

    error_message: Optional[str] = Field(None, description="Error message if failed")
    error_code: Optional[str] = Field(None, description="Error code if failed")
    error_details: Dict[str, Any] = Field(
        default_factory=dict, description="Detailed error information"
    )

    def is_successful(self) -> bool:
        """Check if the operation ran and succeeded."""
        return self.status == ResultStatus.EXECUTED and self.success

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for tool responses."""
        data: Dict[str, Any] = {
            "status": self.status.value,
            "target": self.request.display_target,
            "method": self.request.method.value,
            "tier": self.decision.tier.value if self.decision else None,
            "executed": self.executed,
            "success": self.success,
            "backup_written": self.backup_written,
            "backup_path": self.backup_path,
            "warnings": self.warnings,
            "notices": self.notices,
        }
        if self.status_category is not None:
            data["status_category"] = self.status_category
            data["status_code"] = self.status_code
        if self.body is not None:
            data["body"] = self.body
        if self.prompt is not None:
            data["confirmation"] = self.prompt.model_dump(mode="json")
        if self.error_message is not None:
            data["error"] = self.error_message
            data["error_code"] = self.error_code
            data["error_details"] = self.error_details
        return data


class BatchReport(BaseModel):
    """Report for a batch of independently gated operations."""

    report_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()), description="Unique report ID"
    )
    generated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Report generation time",
    )

    results: List[OperationResult] = Field(default_factory=list, description="Per-item results")
    halted: bool = Field(False, description="Whether an abort stopped the batch")

    @property
    def total(self) -> int:
        return len(self.results)

    def count(self, status: "ResultStatus") -> int:
        return sum(1 for result in self.results if result.status == status)

    @property
    def backups_written(self) -> int:
        return sum(1 for result in self.results if result.backup_written)

    def summary(self) -> Dict[str, Any]:
        """Summarize the batch."""
        return {
            "total": self.total,
            "executed": self.count(ResultStatus.EXECUTED),
            "failed": self.count(ResultStatus.FAILED),
            "aborted": self.count(ResultStatus.ABORTED),
            "rejected": self.count(ResultStatus.REJECTED),
            "confirmation_required": self.count(ResultStatus.CONFIRMATION_REQUIRED),
            "not_run": self.count(ResultStatus.NOT_RUN),
            "backups_written": self.backups_written,
            "halted": self.halted,
        }
