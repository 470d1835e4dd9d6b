"""Guardrail pipeline for safe vault operations.

Each request goes through the same strictly sequential stages:

1. resolve an immutable settings snapshot
2. fetch the state the classifier needs (existence, prior content)
3. reject ambiguous targets and forbidden deletes
4. classify and consult the confirmation gate
5. snapshot prior content when the operation destroys it
6. execute against the vault service

Nothing is retried automatically; every failure is reported with enough
context for the caller to act on it.
"""

from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from ..backup.manager import BackupManager
from ..config import ConfigResolver, ResolvedConfig
from ..safety.classifier import OperationClassifier
from ..safety.confirmation_gate import ConfirmationGate, Responder
from ..safety.models import (
    AuditLogEntry,
    BackupWriteFailure,
    ClassificationAmbiguous,
    ConfirmationOutcome,
    ExecutionFailure,
    GuardrailDecision,
    HttpMethod,
    OperationNotPermitted,
    OperationRequest,
    PatchMode,
    PatchTargetType,
    Period,
    TargetKind,
    TokenMismatch,
    UserAbort,
    VaultGuardError,
)
from ..vault.client import VaultBackend
from ..vault.markdown import count_heading_matches
from ..vault.models import FetchResult
from .models import BatchReport, OperationResult, ResultStatus

logger = structlog.get_logger(__name__)


class GuardrailPipeline:
    """Runs vault operations through classification, confirmation and backup."""

    def __init__(
        self,
        vault: VaultBackend,
        resolver: Optional[ConfigResolver] = None,
        classifier: Optional[OperationClassifier] = None,
        gate: Optional[ConfirmationGate] = None,
        backup_manager: Optional[BackupManager] = None,
    ):
        """Initialize the pipeline.

        Args:
            vault: Vault service client
            resolver: Settings resolver, used when no snapshot is passed in
            classifier: Operation classifier
            gate: Confirmation gate
            backup_manager: Fixed backup manager; built from settings when omitted
        """
        self.vault = vault
        self.resolver = resolver or ConfigResolver()
        self.classifier = classifier or OperationClassifier()
        self.gate = gate or ConfirmationGate()
        self.backup_manager = backup_manager
        self.logger = structlog.get_logger(self.__class__.__name__)

        self._audit_log: List[AuditLogEntry] = []
        self._backup_managers: Dict[Tuple[Path, int], BackupManager] = {}

    async def run(
        self,
        request: OperationRequest,
        responder: Optional[Responder] = None,
        response: Optional[str] = None,
        config: Optional[ResolvedConfig] = None,
    ) -> OperationResult:
        """Run one request through the pipeline.

        Without ``responder`` or ``response`` a gated request stops at
        ``confirmation_required`` and carries the prompt payload.

        Args:
            request: Operation to run
            responder: Function from prompt to response, for interactive use
            response: A response already given by the caller
            config: Settings snapshot, resolved when omitted

        Returns:
            OperationResult for the request

        Raises:
            ConfigMissing: If a required setting is absent
        """
        config = config or self.resolver.snapshot()
        self._audit("requested", request)

        try:
            request, current = await self._prepare(request)
            self._check_ambiguity(request, current)
        except (ClassificationAmbiguous, ExecutionFailure) as e:
            status = (
                ResultStatus.REJECTED
                if isinstance(e, ClassificationAmbiguous)
                else ResultStatus.FAILED
            )
            return self._error_result(request, status, e)

        decision = self.classifier.classify(request)

        if request.method == HttpMethod.DELETE and not config.allow_delete:
            error = OperationNotPermitted(
                f"Deleting {request.display_target} is disabled (ALLOW_DELETE=false)",
                request.resource_key,
                "ALLOW_DELETE",
            )
            return self._error_result(request, ResultStatus.REJECTED, error, decision)

        preview = current.content if current and current.exists else request.content
        evaluation = self.gate.evaluate(decision, config)
        notices: List[str] = []

        if evaluation.needs_response:
            try:
                if response is not None:
                    outcome = self.gate.check_response(request, decision, response)
                elif responder is not None:
                    outcome = await self.gate.confirm(
                        request,
                        decision,
                        config,
                        responder,
                        preview=preview,
                        max_attempts=config.max_confirmation_attempts,
                    )
                else:
                    prompt = self.gate.build_prompt(request, decision, preview)
                    self._audit("confirmation_required", request, decision)
                    return OperationResult(
                        request=request,
                        status=ResultStatus.CONFIRMATION_REQUIRED,
                        decision=decision,
                        prompt=prompt,
                    )
            except UserAbort as e:
                self._audit("aborted", request, decision, e.details)
                return OperationResult(
                    request=request,
                    status=ResultStatus.ABORTED,
                    decision=decision,
                    outcome=ConfirmationOutcome.aborted(e.details.get("response")),
                    error_message=e.message,
                    error_code=e.error_code,
                    error_details=e.details,
                )
            except TokenMismatch as e:
                self._audit("token_mismatch", request, decision, e.details)
                result = self._error_result(
                    request, ResultStatus.CONFIRMATION_REQUIRED, e, decision, audit=False
                )
                result.prompt = self.gate.build_prompt(request, decision, preview)
                return result
        else:
            outcome = evaluation.outcome
            if outcome is not None and outcome.notice:
                notices.append(outcome.notice)

        self._audit("approved", request, decision, {"outcome": outcome.status.value})

        result = OperationResult(
            request=request,
            status=ResultStatus.EXECUTED,
            decision=decision,
            outcome=outcome,
            notices=notices,
        )

        if self.classifier.requires_backup(request, decision):
            self._backup(request, current, config, result)

        return await self._execute(request, decision, result)

    async def run_batch(
        self,
        requests: Sequence[OperationRequest],
        responder: Optional[Responder] = None,
        response: Optional[str] = None,
        halt_on_abort: bool = True,
        config: Optional[ResolvedConfig] = None,
    ) -> BatchReport:
        """Run several requests, each classified and gated on its own.

        The bulk size seen by the classifier is the number of requests in
        the batch that share a method and target kind, so "3 deletes + 4
        appends" counts the appends as 4 and command runs never count
        towards appends. There is no cross-item atomicity: items already
        executed stay executed when a later item is aborted.

        Args:
            requests: Operations to run, in order
            responder: Function from prompt to response
            response: A response applied to every gated item
            halt_on_abort: Stop the remaining items after an abort
            config: Settings snapshot shared by the batch

        Returns:
            BatchReport with per-item results
        """
        per_category = Counter((request.method, request.target_kind) for request in requests)
        report = BatchReport()

        self.logger.info(
            "Running batch",
            total=len(requests),
            by_category={
                f"{method.value} {kind.value}": count
                for (method, kind), count in per_category.items()
            },
        )

        for request in requests:
            if report.halted:
                report.results.append(
                    OperationResult(request=request, status=ResultStatus.NOT_RUN)
                )
                continue

            batch_size = per_category[(request.method, request.target_kind)]
            if batch_size > request.affected_count:
                request = request.model_copy(update={"affected_count": batch_size})

            result = await self.run(
                request, responder=responder, response=response, config=config
            )
            report.results.append(result)

            if result.status == ResultStatus.ABORTED and halt_on_abort:
                self.logger.info("Batch halted by abort", request_id=request.request_id)
                report.halted = True

        return report

    def get_audit_history(
        self,
        limit: int = 50,
        operation_filter: Optional[str] = None,
        status_filter: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Get audit history, newest first.

        Args:
            limit: Maximum number of entries to return
            operation_filter: Filter by operation (e.g. ``DELETE Daily/a.md``)
            status_filter: Filter by status

        Returns:
            List of audit log entries
        """
        entries = self._audit_log.copy()

        if operation_filter:
            entries = [e for e in entries if e.operation == operation_filter]

        if status_filter:
            entries = [e for e in entries if e.status == status_filter]

        entries.sort(key=lambda x: x.timestamp, reverse=True)
        return [entry.model_dump(mode="json") for entry in entries[:limit]]

    def backup_manager_for(self, config: ResolvedConfig) -> BackupManager:
        """Return the backup manager for the configured directory and cap.

        Managers are shared per directory so their per-resource locks cover
        every operation writing there.
        """
        if self.backup_manager is not None:
            return self.backup_manager

        key = (config.backup_path, config.backup_keep_last_n)
        if key not in self._backup_managers:
            self._backup_managers[key] = BackupManager(
                config.backup_path, keep_last_n=config.backup_keep_last_n
            )
        return self._backup_managers[key]

    async def _prepare(
        self, request: OperationRequest
    ) -> Tuple[OperationRequest, Optional[FetchResult]]:
        """Fill in the state the classifier and backup stage depend on."""
        updates: Dict[str, Any] = {}
        current: Optional[FetchResult] = None

        if request.target_kind == TargetKind.PERIODIC and request.is_current_period is None:
            # the periodic endpoint always addresses the current period
            updates["is_current_period"] = True

        if (
            request.target_kind == TargetKind.FILE
            and request.method == HttpMethod.DELETE
            and request.is_current_period is None
        ):
            if await self._is_current_daily_note(request.path):
                updates["is_current_period"] = True

        if request.target_kind == TargetKind.COMMAND and not request.command_description:
            description = await self._describe_command(request.command_id)
            if description:
                updates["command_description"] = description

        if self._needs_prior_state(request):
            current = await self.vault.fetch(request)
            if request.file_exists is None:
                updates["file_exists"] = current.exists

        if updates:
            request = request.model_copy(update=updates)

        return request, current

    def _needs_prior_state(self, request: OperationRequest) -> bool:
        if request.target_kind == TargetKind.COMMAND:
            return False
        if request.method in (HttpMethod.DELETE, HttpMethod.PUT):
            return True
        if request.method == HttpMethod.PATCH:
            return (
                request.patch_mode == PatchMode.REPLACE
                or request.patch_target_type == PatchTargetType.HEADING
            )
        return False

    def _check_ambiguity(
        self, request: OperationRequest, current: Optional[FetchResult]
    ) -> None:
        """Refuse PATCH requests whose heading target is not unique."""
        if request.method != HttpMethod.PATCH:
            return
        if request.patch_target_type != PatchTargetType.HEADING or not request.patch_target:
            return
        if current is None or not current.exists or current.content is None:
            return

        matches = count_heading_matches(current.content, request.patch_target)
        if matches > 1:
            self.logger.warning(
                "Ambiguous patch target",
                request_id=request.request_id,
                target=request.patch_target,
                matches=matches,
            )
            raise ClassificationAmbiguous(
                f"Heading '{request.patch_target}' appears {matches} times in "
                f"{request.display_target}; use the full heading path (A::B)",
                request.resource_key,
                request.patch_target,
                matches,
            )

    async def _is_current_daily_note(self, path: str) -> bool:
        """Check whether ``path`` is the note the daily periodic endpoint serves."""
        fetch_periodic = getattr(self.vault, "fetch_periodic", None)
        if fetch_periodic is None or not path:
            return False

        try:
            current = await fetch_periodic(Period.DAILY)
        except ExecutionFailure as e:
            self.logger.warning(
                "Could not resolve the current daily note",
                path=path,
                error=e.message,
            )
            return False

        if not current.exists or not current.path:
            return False
        return current.path.strip("/") == path.strip("/")

    async def _describe_command(self, command_id: Optional[str]) -> Optional[str]:
        list_commands = getattr(self.vault, "list_commands", None)
        if list_commands is None or not command_id:
            return None

        try:
            commands = await list_commands()
        except ExecutionFailure as e:
            self.logger.warning(
                "Could not look up command description",
                command_id=command_id,
                error=e.message,
            )
            return None

        return commands.describe(command_id)

    def _backup(
        self,
        request: OperationRequest,
        current: Optional[FetchResult],
        config: ResolvedConfig,
        result: OperationResult,
    ) -> None:
        """Snapshot prior content; failures become warnings, never errors."""
        if not config.backup_enabled:
            self.logger.info("Backups disabled", request_id=request.request_id)
            return
        if current is None or not current.exists:
            return

        manager = self.backup_manager_for(config)
        try:
            record = manager.snapshot(request.resource_key, current.content or "")
        except BackupWriteFailure as e:
            self.logger.warning(
                "Proceeding without backup",
                request_id=request.request_id,
                resource_key=request.resource_key,
                error=e.message,
            )
            result.warnings.append(
                f"{e.error_code}: {e.message}. No safety copy exists for this operation."
            )
            return

        result.backup_written = True
        result.backup_path = str(record.path)

    async def _execute(
        self,
        request: OperationRequest,
        decision: GuardrailDecision,
        result: OperationResult,
    ) -> OperationResult:
        vault_response = await self.vault.execute(request, request.content)

        result.executed = True
        result.success = vault_response.success
        result.status_category = vault_response.status_category
        result.status_code = vault_response.status_code
        result.body = vault_response.body

        if vault_response.success:
            self._audit(
                "executed",
                request,
                decision,
                {"backup_path": result.backup_path, "warnings": result.warnings},
            )
            return result

        error = ExecutionFailure(
            vault_response.error_message
            or f"{request.method.value} {request.display_target} failed",
            method=request.method.value,
            resource_key=request.resource_key,
            status_category=vault_response.status_category,
            status_code=vault_response.status_code,
        )
        error.details["tier"] = decision.tier.value

        result.status = ResultStatus.FAILED
        result.error_message = error.message
        result.error_code = error.error_code
        result.error_details = error.details

        self.logger.error(
            "Vault operation failed",
            request_id=request.request_id,
            **error.details,
        )
        self._audit("failed", request, decision, error.details)
        return result

    def _error_result(
        self,
        request: OperationRequest,
        status: ResultStatus,
        error: VaultGuardError,
        decision: Optional[GuardrailDecision] = None,
        audit: bool = True,
    ) -> OperationResult:
        if decision is not None:
            error.details.setdefault("tier", decision.tier.value)
            if decision.required_token:
                error.details.setdefault("required_token", decision.required_token)

        if audit:
            self._audit(status.value, request, decision, {"error_code": error.error_code})

        self.logger.warning(
            "Operation not executed",
            request_id=request.request_id,
            status=status.value,
            error_code=error.error_code,
            error=error.message,
        )

        return OperationResult(
            request=request,
            status=status,
            decision=decision,
            error_message=error.message,
            error_code=error.error_code,
            error_details=error.details,
        )

    def _audit(
        self,
        status: str,
        request: OperationRequest,
        decision: Optional[GuardrailDecision] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._audit_log.append(
            AuditLogEntry(
                operation=f"{request.method.value} {request.display_target}",
                status=status,
                request_id=request.request_id,
                tier=decision.tier if decision else None,
                details=details or {},
            )
        )
