"""Operation classification engine for Vault Guard.

This module maps every proposed vault operation to a risk tier and the
guardrail that applies to it. Rules live in an ordered table; the first
matching rule sets the base decision, then bulk and protected-path rules may
raise (never lower) the tier.
"""

import re
from typing import Callable, List, Optional, Tuple

import structlog

from .models import (
    CriticalDecision,
    GuardrailDecision,
    HttpMethod,
    NoConfirmationDecision,
    OperationRequest,
    PatchMode,
    ReplaceDecision,
    RiskTier,
    TargetKind,
    YesNoDecision,
)

logger = structlog.get_logger(__name__)


class ClassifierConfig:
    """Configuration for operation classification."""

    # Bulk operations above this many items need a yes/no confirmation
    BULK_CONFIRMATION_THRESHOLD = 5

    # Command descriptions that suggest data loss
    DESTRUCTIVE_COMMAND_KEYWORDS = ["delete", "remove", "clear", "erase", "destroy"]

    # First path segments that raise the tier one level
    PROTECTED_PATH_PATTERNS = [
        r"^\.obsidian$",
        r"^_?templates?$",
    ]

    DELETE_TOKEN = "DELETE"
    DELETE_CURRENT_PERIOD_TOKEN = "DELETE TODAY"


Rule = Tuple[str, Callable[[OperationRequest], bool], Callable[[OperationRequest], GuardrailDecision]]


class OperationClassifier:
    """Classifies proposed vault operations into guardrail decisions."""

    def __init__(self, config: Optional[ClassifierConfig] = None):
        """Initialize the classifier.

        Args:
            config: Classification configuration, uses defaults if not provided
        """
        self.config = config or ClassifierConfig()
        self.logger = structlog.get_logger(self.__class__.__name__)
        self._keyword_pattern = re.compile(
            r"\b(" + "|".join(self.config.DESTRUCTIVE_COMMAND_KEYWORDS) + r")",
            re.IGNORECASE,
        )
        self.rules: List[Rule] = [
            ("delete", self._is_delete, self._delete_decision),
            ("put_existing", self._is_put_existing, self._replace_decision),
            ("put_new", self._is_put_new, self._create_decision),
            ("patch_replace", self._is_patch_replace, self._patch_replace_decision),
            ("patch_merge", self._is_patch_merge, self._no_confirmation("patch append/prepend")),
            ("destructive_command", self._is_destructive_command, self._destructive_command_decision),
            ("command", self._is_command, self._no_confirmation("non-destructive command")),
            ("bulk_post", self._is_bulk_post, self._bulk_decision),
            ("post", self._is_post, self._no_confirmation("post within bulk threshold")),
            ("read", self._is_read, self._no_confirmation("read-only")),
        ]

    def classify(self, request: OperationRequest) -> GuardrailDecision:
        """Classify a request.

        Args:
            request: Operation to classify

        Returns:
            GuardrailDecision for this request
        """
        decision: GuardrailDecision = NoConfirmationDecision(
            tier=RiskTier.NONE, reasons=["no rule matched"]
        )
        matched_rule = None
        for name, matches, build in self.rules:
            if matches(request):
                matched_rule = name
                decision = build(request)
                break

        decision = self._apply_bulk_rule(request, decision)
        decision = self._apply_protected_path_rule(request, decision)

        self.logger.info(
            "Operation classified",
            request_id=request.request_id,
            method=request.method.value,
            target=request.display_target,
            rule=matched_rule,
            tier=decision.tier.value,
            requires_confirmation=decision.requires_confirmation,
            bypassable=decision.bypassable,
            advisory=decision.advisory,
        )

        return decision

    def requires_backup(self, request: OperationRequest, decision: GuardrailDecision) -> bool:
        """Whether prior content must be snapshotted before executing.

        Only destructive writes to resources that already exist qualify.
        """
        if request.file_exists is False:
            return False
        if request.target_kind == TargetKind.COMMAND:
            return False
        if request.method == HttpMethod.DELETE:
            return True
        if request.method == HttpMethod.PUT and request.file_exists:
            return True
        if request.method == HttpMethod.PATCH and request.patch_mode == PatchMode.REPLACE:
            return True
        return False

    def is_protected_path(self, path: str) -> bool:
        """Check whether a vault path lies in a system or template folder."""
        first_segment = path.replace("\\", "/").strip("/").split("/", 1)[0].lower()
        return any(
            re.match(pattern, first_segment) for pattern in self.config.PROTECTED_PATH_PATTERNS
        )

    def is_destructive_command(self, description: Optional[str]) -> bool:
        """Check a command description against the destructive keyword set."""
        return bool(description and self._keyword_pattern.search(description))

    # Rule predicates

    def _is_delete(self, request: OperationRequest) -> bool:
        return request.method == HttpMethod.DELETE

    def _is_put_existing(self, request: OperationRequest) -> bool:
        return request.method == HttpMethod.PUT and bool(request.file_exists)

    def _is_put_new(self, request: OperationRequest) -> bool:
        return request.method == HttpMethod.PUT and not request.file_exists

    def _is_patch_replace(self, request: OperationRequest) -> bool:
        return request.method == HttpMethod.PATCH and request.patch_mode == PatchMode.REPLACE

    def _is_patch_merge(self, request: OperationRequest) -> bool:
        return request.method == HttpMethod.PATCH and request.patch_mode in (
            PatchMode.APPEND,
            PatchMode.PREPEND,
        )

    def _is_command(self, request: OperationRequest) -> bool:
        return request.target_kind == TargetKind.COMMAND

    def _is_destructive_command(self, request: OperationRequest) -> bool:
        return self._is_command(request) and self.is_destructive_command(
            request.command_description or request.command_id
        )

    def _is_bulk_post(self, request: OperationRequest) -> bool:
        return (
            request.method == HttpMethod.POST
            and request.affected_count > self.config.BULK_CONFIRMATION_THRESHOLD
        )

    def _is_post(self, request: OperationRequest) -> bool:
        return request.method == HttpMethod.POST

    def _is_read(self, request: OperationRequest) -> bool:
        return request.method == HttpMethod.GET

    # Decision builders

    def _delete_decision(self, request: OperationRequest) -> GuardrailDecision:
        if request.is_current_period:
            return CriticalDecision(
                required_token=self.config.DELETE_CURRENT_PERIOD_TOKEN,
                reasons=["delete of the current periodic note"],
            )
        return CriticalDecision(
            required_token=self.config.DELETE_TOKEN, reasons=["delete"]
        )

    def _replace_decision(self, request: OperationRequest) -> GuardrailDecision:
        return ReplaceDecision(reasons=["overwrite of existing content"])

    def _create_decision(self, request: OperationRequest) -> GuardrailDecision:
        return YesNoDecision(tier=RiskTier.LOW, reasons=["create new file"])

    def _patch_replace_decision(self, request: OperationRequest) -> GuardrailDecision:
        return YesNoDecision(tier=RiskTier.MEDIUM, reasons=["patch replace"])

    def _destructive_command_decision(self, request: OperationRequest) -> GuardrailDecision:
        return YesNoDecision(tier=RiskTier.HIGH, reasons=["destructive command"])

    def _bulk_decision(self, request: OperationRequest) -> GuardrailDecision:
        return YesNoDecision(
            tier=RiskTier.MEDIUM,
            reasons=[f"bulk operation on {request.affected_count} resources"],
        )

    def _no_confirmation(self, reason: str) -> Callable[[OperationRequest], GuardrailDecision]:
        def build(request: OperationRequest) -> GuardrailDecision:
            return NoConfirmationDecision(tier=RiskTier.NONE, reasons=[reason])

        return build

    # Escalation rules

    def _apply_bulk_rule(
        self, request: OperationRequest, decision: GuardrailDecision
    ) -> GuardrailDecision:
        """Raise POST/PUT batches above the threshold to at least MEDIUM."""
        if request.method not in (HttpMethod.POST, HttpMethod.PUT):
            return decision
        if request.affected_count <= self.config.BULK_CONFIRMATION_THRESHOLD:
            return decision
        if decision.tier.rank >= RiskTier.MEDIUM.rank and decision.requires_confirmation:
            return decision

        return YesNoDecision(
            tier=RiskTier.highest(decision.tier, RiskTier.MEDIUM),
            advisory=decision.advisory,
            reasons=[*decision.reasons, f"bulk operation on {request.affected_count} resources"],
        )

    def _apply_protected_path_rule(
        self, request: OperationRequest, decision: GuardrailDecision
    ) -> GuardrailDecision:
        """Raise mutations under system or template folders by one tier."""
        if not request.is_mutation or request.target_kind != TargetKind.FILE:
            return decision
        if not self.is_protected_path(request.path):
            return decision

        tier = decision.tier.escalate()
        reasons = [*decision.reasons, "protected path"]

        if not decision.requires_confirmation:
            return NoConfirmationDecision(tier=tier, advisory=True, reasons=reasons)
        if tier == RiskTier.CRITICAL:
            return CriticalDecision(
                required_token=decision.required_token or self.config.DELETE_TOKEN,
                advisory=True,
                reasons=reasons,
            )
        return decision.model_copy(update={"tier": tier, "advisory": True, "reasons": reasons})
