"""Confirmation gate for Vault Guard.

This module decides whether a classified operation needs human approval,
builds the structured prompt, and checks free-text responses against the
required confirmation token.
"""

import inspect
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Union

import structlog
from pydantic import BaseModel

from ..config import ResolvedConfig
from .models import (
    ConfirmationOutcome,
    ConfirmationPrompt,
    GuardrailDecision,
    OperationRequest,
    TokenMismatch,
    UserAbort,
)

logger = structlog.get_logger(__name__)

Responder = Callable[[ConfirmationPrompt], Union[str, Awaitable[str]]]

SKIP_NOTICE = (
    "Confirmation skipped because DANGEROUSLY_SKIP_CONFIRMATIONS is enabled"
)


class GateState(str, Enum):
    """Where a request stands once its decision has been evaluated.

    An abort is not a state here; ``check_response`` raises ``UserAbort``.
    """

    NOT_REQUIRED = "not_required"
    AWAITING_RESPONSE = "awaiting_response"
    APPROVED = "approved"


class GateEvaluation(BaseModel):
    """Result of consulting the decision before any prompt is shown."""

    state: GateState
    outcome: Optional[ConfirmationOutcome] = None

    @property
    def needs_response(self) -> bool:
        return self.state == GateState.AWAITING_RESPONSE


class ConfirmationGate:
    """Evaluates guardrail decisions and consumes confirmation responses."""

    ABORT_KEYWORDS = frozenset({"no", "n", "cancel", "stop", "abort"})
    YES_RESPONSES = frozenset({"yes", "y"})
    GENERIC_TOKEN = "yes"
    PREVIEW_LIMIT = 500

    def __init__(self, max_attempts: int = 3):
        """Initialize the confirmation gate.

        Args:
            max_attempts: Prompts before a mismatch is reported to the caller
        """
        self.max_attempts = max_attempts
        self.logger = structlog.get_logger(self.__class__.__name__)

    def evaluate(
        self, decision: GuardrailDecision, config: ResolvedConfig
    ) -> GateEvaluation:
        """Decide whether a prompt is needed.

        The skip flag only short-circuits bypassable decisions. Critical
        decisions are never bypassable, so they always reach a prompt.

        Args:
            decision: Classification for the request
            config: Settings snapshot for this operation

        Returns:
            GateEvaluation, with an outcome when no prompt is needed
        """
        if not decision.requires_confirmation:
            return GateEvaluation(
                state=GateState.NOT_REQUIRED,
                outcome=ConfirmationOutcome.skipped("confirmation not required"),
            )

        if decision.bypassable and config.skip_confirmations:
            self.logger.warning(
                SKIP_NOTICE,
                tier=decision.tier.value,
                required_token=decision.required_token,
            )
            return GateEvaluation(
                state=GateState.APPROVED,
                outcome=ConfirmationOutcome.skipped(
                    "confirmations disabled", notice=SKIP_NOTICE
                ),
            )

        return GateEvaluation(state=GateState.AWAITING_RESPONSE)

    def build_prompt(
        self,
        request: OperationRequest,
        decision: GuardrailDecision,
        preview: Optional[str] = None,
        attempt: int = 1,
    ) -> ConfirmationPrompt:
        """Build the structured prompt payload for a gated request."""
        warnings: List[str] = []
        if decision.advisory:
            warnings.append(
                "Target is inside a protected folder (.obsidian or templates)"
            )
        if request.affected_count > 1:
            warnings.append(f"Operation affects {request.affected_count} resources")
        if request.is_current_period:
            warnings.append("Target is the current periodic note")

        if preview is not None and len(preview) > self.PREVIEW_LIMIT:
            preview = preview[: self.PREVIEW_LIMIT] + "\n..."

        return ConfirmationPrompt(
            tier=decision.tier,
            target=request.display_target,
            operation=self._describe_operation(request),
            preview=preview,
            required_token=decision.required_token or self.GENERIC_TOKEN,
            advisory=decision.advisory,
            warnings=warnings,
            attempt=attempt,
        )

    def is_abort(self, response: str) -> bool:
        """Check for an abort keyword (case-insensitive)."""
        return response.strip().lower() in self.ABORT_KEYWORDS

    def matches_token(self, required_token: str, response: str) -> bool:
        """Compare a response to the required token.

        The generic ``yes`` token accepts ``yes``/``y`` in any case; every
        other token must match exactly, case included.
        """
        answer = response.strip()
        if required_token == self.GENERIC_TOKEN:
            return answer.lower() in self.YES_RESPONSES
        return answer == required_token

    def check_response(
        self,
        request: OperationRequest,
        decision: GuardrailDecision,
        response: str,
        attempt: int = 1,
    ) -> ConfirmationOutcome:
        """Consume one response.

        Raises:
            UserAbort: If the response is an abort keyword
            TokenMismatch: If the response does not match the required token
        """
        required_token = decision.required_token or self.GENERIC_TOKEN

        # Abort keywords win over token checks
        if self.is_abort(response):
            self.logger.info(
                "Confirmation aborted",
                request_id=request.request_id,
                resource_key=request.resource_key,
            )
            raise UserAbort(request.resource_key, decision.tier, response.strip())

        if self.matches_token(required_token, response):
            self.logger.info(
                "Confirmation accepted",
                request_id=request.request_id,
                tier=decision.tier.value,
            )
            return ConfirmationOutcome.confirmed(response.strip())

        self.logger.info(
            "Confirmation token mismatch",
            request_id=request.request_id,
            required_token=required_token,
            attempt=attempt,
        )
        raise TokenMismatch(request.resource_key, decision.tier, required_token, attempt)

    async def confirm(
        self,
        request: OperationRequest,
        decision: GuardrailDecision,
        config: ResolvedConfig,
        responder: Responder,
        preview: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> ConfirmationOutcome:
        """Run the full confirmation loop for one request.

        Args:
            request: Request being confirmed
            decision: Classification for the request
            config: Settings snapshot for this operation
            responder: Function from prompt to free-text response
            preview: Content shown alongside the prompt
            max_attempts: Override for the number of prompts

        Returns:
            Confirmed or Skipped outcome

        Raises:
            UserAbort: If an abort keyword is received
            TokenMismatch: If every attempt failed to match the token
        """
        evaluation = self.evaluate(decision, config)
        if not evaluation.needs_response:
            return evaluation.outcome  # type: ignore[return-value]

        attempts = max(1, max_attempts or self.max_attempts)
        last_error: Optional[TokenMismatch] = None

        for attempt in range(1, attempts + 1):
            prompt = self.build_prompt(request, decision, preview, attempt=attempt)
            response = responder(prompt)
            if inspect.isawaitable(response):
                response = await response

            try:
                return self.check_response(request, decision, str(response), attempt)
            except TokenMismatch as e:
                last_error = e

        assert last_error is not None
        raise last_error

    def render_prompt(self, prompt: ConfirmationPrompt) -> str:
        """Render a prompt payload as plain text for display."""
        lines = [
            "VAULT MODIFICATION CONFIRMATION",
            "",
            f"Risk Level: {prompt.tier.value.upper()}",
            f"Target: {prompt.target}",
            f"Operation: {prompt.operation}",
        ]

        if prompt.warnings:
            lines.append("")
            lines.append("WARNINGS:")
            lines.extend(f"  - {warning}" for warning in prompt.warnings)

        if prompt.preview:
            lines.extend(["", "CONTENT AT STAKE:", prompt.preview])

        lines.append("")
        if prompt.required_token == self.GENERIC_TOKEN:
            lines.append("Type 'yes' to confirm, or 'no' to cancel.")
        else:
            lines.append(
                f"Type '{prompt.required_token}' exactly to confirm, or 'no' to cancel."
            )

        return "\n".join(lines)

    def _describe_operation(self, request: OperationRequest) -> str:
        if request.patch_mode is not None:
            target = f" at {request.patch_target}" if request.patch_target else ""
            return f"PATCH {request.patch_mode.value}{target}"
        if request.affected_count > 1:
            return f"{request.method.value} x{request.affected_count}"
        return request.method.value
