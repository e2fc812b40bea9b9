"""Diagnosis session orchestrating rule repair with Claude.

A session takes a user's report about one misclassified email and drives a
bounded tool-use loop: Claude proposes repair actions, each is validated and
applied on its own, and the outcome goes back to Claude as a tool result.
The session ends when Claude replies without tool calls, when the round
limit is reached, when the reasoning service fails, or when the store fails
while applying an action. Only the first case is a normal completion, but
none of them raise: actions applied before the
stop stay applied and are reported in the result.

Usage:
    from rulefix.diagnosis.session import DiagnosisOrchestrator, DiagnosisRequest

    orchestrator = DiagnosisOrchestrator(anthropic.Anthropic(), store, config)
    result = await orchestrator.diagnose(DiagnosisRequest(
        owner_id="user1",
        user_report="This is a personal email, not a newsletter",
        email=email,
        matched_rule_id="rule-newsletter",
    ))
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from rulefix.core.errors import (
    ActionValidationError,
    DatabaseError,
    InvalidRuleStateError,
    NotFoundError,
    ReasoningServiceError,
    RuleFixError,
    StepLimitExceeded,
)
from rulefix.core.logging import get_logger, set_correlation_id
from rulefix.diagnosis.prompts import build_system_prompt, build_user_message
from rulefix.diagnosis.reasoning import ClaudeReasoningService, ReasoningStep, ToolCall
from rulefix.diagnosis.tools import resolve_tool_call
from rulefix.repair.registry import RepairActionRegistry
from rulefix.rules.evaluator import RuleEvaluator
from rulefix.rules.registry import GroupCategoryRegistry

if TYPE_CHECKING:
    import anthropic

    from rulefix.config_schema import AppConfig
    from rulefix.db.store import DatabaseStore
    from rulefix.repair.actions import ActionOutcome
    from rulefix.rules.models import EmailMessage

logger = get_logger(__name__)

# Per-action failures that are reported back to Claude instead of aborting
_REJECTABLE_ERRORS = (NotFoundError, InvalidRuleStateError, ActionValidationError)


class SessionState(StrEnum):
    INIT = "init"
    REASONING = "reasoning"
    ACTIONS_PROPOSED = "actions_proposed"
    VALIDATING = "validating"
    APPLIED = "applied"
    TERMINATED = "terminated"


class TerminationReason(StrEnum):
    COMPLETED = "completed"
    STEP_LIMIT = "step_limit"
    REASONING_ERROR = "reasoning_error"
    STORE_ERROR = "store_error"


@dataclass(frozen=True, slots=True)
class DiagnosisRequest:
    """A user's report about one misclassified email.

    Attributes:
        owner_id: Account whose rules are being diagnosed
        user_report: What the user says went wrong
        email: Snapshot of the misclassified email
        matched_rule_id: Rule the email was assigned to, or None if none matched
        user_about: Optional free-text description of the user
        user_email: The user's own address
    """

    owner_id: str
    user_report: str
    email: EmailMessage
    matched_rule_id: str | None = None
    user_about: str | None = None
    user_email: str | None = None


@dataclass(frozen=True, slots=True)
class RejectedAction:
    """A proposed tool call that was not applied."""

    tool_name: str
    tool_input: dict[str, Any]
    reason: str
    error_type: str


@dataclass(slots=True)
class DiagnosisResult:
    """Everything a diagnosis session did.

    Attributes:
        session_id: Correlation id used in logs and the LLM request log
        applied_actions: Outcomes of actions that passed validation, in order
            (no-op outcomes included, with changed=False)
        rejected_actions: Tool calls that failed resolution or validation
        steps: One ReasoningStep per completed reasoning round
        transcript_length: Number of messages exchanged with the service
        termination: Why the session stopped
        error: StepLimitExceeded, ReasoningServiceError or DatabaseError for
            abnormal stops
        reply: Claude's final text for the user
        states: State transitions in the order they happened
    """

    session_id: str
    applied_actions: list[ActionOutcome] = field(default_factory=list)
    rejected_actions: list[RejectedAction] = field(default_factory=list)
    steps: list[ReasoningStep] = field(default_factory=list)
    transcript_length: int = 0
    termination: TerminationReason = TerminationReason.COMPLETED
    error: RuleFixError | None = None
    reply: str = ""
    states: list[SessionState] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        """True if at least one applied action modified state."""
        return any(outcome.changed for outcome in self.applied_actions)


class DiagnosisOrchestrator:
    """Runs diagnosis sessions against the reasoning service.

    Sessions are independent; mutations are serialized per owner by the
    repair action registry, and no lock is held while waiting on Claude.
    """

    def __init__(
        self,
        anthropic_client: anthropic.Anthropic,
        store: DatabaseStore,
        config: AppConfig,
    ) -> None:
        self._store = store
        self._config = config
        self._reasoning = ClaudeReasoningService(anthropic_client, config)
        self._registry = GroupCategoryRegistry(store)
        self._actions = RepairActionRegistry(store, self._registry)
        self._evaluator = RuleEvaluator()

    async def diagnose(self, request: DiagnosisRequest) -> DiagnosisResult:
        """Run one diagnosis session to completion.

        Args:
            request: The user's report and the email it concerns

        Returns:
            DiagnosisResult describing applied and rejected actions

        Raises:
            NotFoundError: If matched_rule_id does not name an existing rule
            DatabaseError: If the store fails while loading the session context
        """
        session_id = str(uuid.uuid4())
        set_correlation_id(session_id)
        try:
            return await self._run(request, session_id)
        finally:
            set_correlation_id(None)

    async def _run(self, request: DiagnosisRequest, session_id: str) -> DiagnosisResult:
        result = DiagnosisResult(session_id=session_id, states=[SessionState.INIT])
        owner_id = request.owner_id

        logger.info(
            "diagnosis_started",
            owner_id=owner_id,
            email_id=request.email.id,
            matched_rule_id=request.matched_rule_id,
        )

        # 1. Load context
        system_prompt, user_message = await self._build_context(request)
        messages: list[dict[str, Any]] = [{"role": "user", "content": user_message}]
        applied_keys: set[str] = set()
        max_rounds = self._config.diagnosis.max_rounds

        # 2. Bounded tool-use loop
        for round_number in range(1, max_rounds + 1):
            result.states.append(SessionState.REASONING)
            try:
                step = await self._reasoning.reason(system_prompt, messages, round_number)
            except ReasoningServiceError as e:
                await self._log_request(system_prompt, messages, None, request, error=str(e))
                result.termination = TerminationReason.REASONING_ERROR
                result.error = e
                break

            result.steps.append(step)
            await self._log_request(system_prompt, messages, step, request)

            if not step.tool_calls:
                result.reply = step.text
                result.termination = TerminationReason.COMPLETED
                break

            messages.append({"role": "assistant", "content": list(step.content)})
            result.states.append(SessionState.ACTIONS_PROPOSED)
            result.states.append(SessionState.VALIDATING)

            tool_result_blocks = []
            try:
                for call in step.tool_calls:
                    tool_result_blocks.append(
                        await self._handle_tool_call(owner_id, call, applied_keys, result)
                    )
            except DatabaseError as e:
                logger.error("repair_action_store_failed", owner_id=owner_id, error=str(e))
                result.termination = TerminationReason.STORE_ERROR
                result.error = e
                break

            result.states.append(SessionState.APPLIED)
            messages.append({"role": "user", "content": tool_result_blocks})
        else:
            result.termination = TerminationReason.STEP_LIMIT
            result.error = StepLimitExceeded(max_rounds)
            result.reply = result.steps[-1].text if result.steps else ""

        result.states.append(SessionState.TERMINATED)
        result.transcript_length = len(messages)

        log = logger.info if result.termination == TerminationReason.COMPLETED else logger.warning
        log(
            "diagnosis_finished",
            owner_id=owner_id,
            termination=result.termination.value,
            rounds=len(result.steps),
            applied=len(result.applied_actions),
            rejected=len(result.rejected_actions),
            error=str(result.error) if result.error else None,
        )
        return result

    async def _build_context(self, request: DiagnosisRequest) -> tuple[str, str]:
        """Load rules, groups and categories and build the opening prompts."""
        owner_id = request.owner_id
        rules = await self._store.list_rules(owner_id)

        matched_rule = None
        if request.matched_rule_id is not None:
            matched_rule = await self._store.get_rule(owner_id, request.matched_rule_id)
            if matched_rule is None:
                raise NotFoundError("rule", request.matched_rule_id)

        sender = request.email.sender_address
        context = await self._registry.build_evaluation_context(owner_id, sender, rules)

        if matched_rule is not None:
            evaluations = [self._evaluator.evaluate(matched_rule, request.email, context)]
        else:
            evaluations = self._evaluator.evaluate_all(
                [r for r in rules if r.enabled], request.email, context
            )

        categories = await self._registry.list_categories(owner_id)

        system_prompt = build_system_prompt(
            user_email=request.user_email,
            user_about=request.user_about,
        )
        user_message = build_user_message(
            user_report=request.user_report,
            email=request.email,
            rules=rules,
            groups=context.groups,
            matched_rule=matched_rule,
            evaluations=evaluations,
            categories=categories,
            sender_category=context.sender_category,
        )
        return system_prompt, user_message

    async def _handle_tool_call(
        self,
        owner_id: str,
        call: ToolCall,
        applied_keys: set[str],
        result: DiagnosisResult,
    ) -> dict[str, Any]:
        """Resolve, validate and apply one tool call; return its tool_result block."""
        try:
            action = await resolve_tool_call(call.name, call.input, owner_id, self._store)
            key = action.identity_key()
            if key in applied_keys:
                raise ActionValidationError(
                    f"Duplicate {call.name} action: it was already applied in this session"
                )
            outcome = await self._actions.apply(owner_id, action)
        except _REJECTABLE_ERRORS as e:
            result.rejected_actions.append(
                RejectedAction(
                    tool_name=call.name,
                    tool_input=call.input,
                    reason=str(e),
                    error_type=type(e).__name__,
                )
            )
            logger.info(
                "repair_action_rejected",
                tool_name=call.name,
                error_type=type(e).__name__,
                reason=str(e),
            )
            return {
                "type": "tool_result",
                "tool_use_id": call.id,
                "content": f"Rejected: {e}",
                "is_error": True,
            }

        applied_keys.add(key)
        result.applied_actions.append(outcome)
        return {
            "type": "tool_result",
            "tool_use_id": call.id,
            "content": outcome.summary,
        }

    async def _log_request(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        step: ReasoningStep | None,
        request: DiagnosisRequest,
        error: str | None = None,
    ) -> None:
        """Write one reasoning round to the LLM request log."""
        llm_logging = self._config.llm_logging
        if not llm_logging.enabled:
            return

        try:
            prompt_data: dict[str, Any] | None = None
            if llm_logging.log_prompts:
                prompt_data = {"system": system_prompt, "messages": messages}

            response_data: dict[str, Any] | None = None
            if step is not None and llm_logging.log_responses:
                response_data = {
                    "stop_reason": step.stop_reason,
                    "content": list(step.content),
                }

            await self._store.log_llm_request(
                task_type="diagnosis",
                model=(step.model if step and step.model else self._reasoning.model),
                prompt=prompt_data,
                response=response_data,
                tool_call=[asdict(tc) for tc in step.tool_calls] if step else None,
                input_tokens=step.input_tokens if step else None,
                output_tokens=step.output_tokens if step else None,
                duration_ms=step.duration_ms if step else None,
                email_id=request.email.id,
                error=error,
            )
        except DatabaseError as e:
            # Logging failures never abort a session
            logger.warning("llm_log_failed", error=str(e), email_id=request.email.id)
