"""Rule evaluator: explains whether and why a rule matches an email.

Each populated condition group yields its own verdict; the rule's logical
operator then combines them. AI instructions are never judged locally, so a
rule that depends on them may come out INDETERMINATE. That is a normal
result, not an error.

Usage:
    from rulefix.rules.evaluator import EvaluationContext, RuleEvaluator

    result = RuleEvaluator().evaluate(rule, email, EvaluationContext(groups=groups))
    for verdict in result.breakdown:
        print(verdict.condition_type, verdict.outcome, verdict.reason)
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from rulefix.core.logging import get_logger
from rulefix.rules.models import (
    Category,
    ConditionOutcome,
    ConditionVerdict,
    EmailMessage,
    Group,
    LogicalOperator,
    Rule,
)

logger = get_logger(__name__)


class MatchVerdict(StrEnum):
    MATCHED = "matched"
    NOT_MATCHED = "not_matched"
    INDETERMINATE = "indeterminate"


@dataclass(frozen=True, slots=True)
class EvaluationContext:
    """Sender-level facts the evaluator needs but does not look up itself.

    Attributes:
        sender_category: The sender's currently assigned category, if any
        groups: Groups referenced by the rules being evaluated, keyed by id
        ai_verdict: Externally resolved verdict for the rule's AI
            instructions; None leaves them deferred
    """

    sender_category: Category | None = None
    groups: Mapping[str, Group] = field(default_factory=dict)
    ai_verdict: bool | None = None


@dataclass(frozen=True, slots=True)
class MatchResult:
    """Overall verdict plus the per-condition-group breakdown."""

    rule_id: str
    rule_name: str
    conditional_operator: LogicalOperator
    verdict: MatchVerdict
    breakdown: tuple[ConditionVerdict, ...]

    @property
    def matched(self) -> bool:
        return self.verdict == MatchVerdict.MATCHED

    @property
    def deferred(self) -> tuple[ConditionVerdict, ...]:
        return tuple(v for v in self.breakdown if v.outcome == ConditionOutcome.DEFERRED)

    def to_prompt_dict(self) -> dict[str, Any]:
        return {
            "rule": self.rule_name,
            "conditional_operator": self.conditional_operator.value,
            "verdict": self.verdict.value,
            "conditions": [v.to_prompt_dict() for v in self.breakdown],
        }


def combine(operator: LogicalOperator, outcomes: Iterable[ConditionOutcome]) -> MatchVerdict:
    """Combine condition outcomes under AND/OR.

    AND: any miss settles NOT_MATCHED; otherwise a deferred group leaves the
    result INDETERMINATE. OR: any hit settles MATCHED; otherwise a deferred
    group leaves it INDETERMINATE. No outcomes at all never matches.
    """
    outcomes = list(outcomes)
    if not outcomes:
        return MatchVerdict.NOT_MATCHED

    has_deferred = ConditionOutcome.DEFERRED in outcomes

    if operator == LogicalOperator.AND:
        if ConditionOutcome.NOT_MATCHED in outcomes:
            return MatchVerdict.NOT_MATCHED
        return MatchVerdict.INDETERMINATE if has_deferred else MatchVerdict.MATCHED

    if ConditionOutcome.MATCHED in outcomes:
        return MatchVerdict.MATCHED
    return MatchVerdict.INDETERMINATE if has_deferred else MatchVerdict.NOT_MATCHED


class RuleEvaluator:
    """Evaluates rules against a concrete email. Read-only and stateless."""

    def evaluate(
        self,
        rule: Rule,
        email: EmailMessage,
        context: EvaluationContext,
    ) -> MatchResult:
        """Evaluate one rule.

        Args:
            rule: Rule to evaluate
            email: Email snapshot
            context: Sender category, referenced groups, optional AI verdict

        Returns:
            MatchResult with the combined verdict and per-group breakdown

        Raises:
            NotFoundError: If the rule references a group missing from context
        """
        breakdown = tuple(condition.evaluate(email, context) for condition in rule.conditions)
        verdict = combine(rule.conditional_operator, (v.outcome for v in breakdown))

        logger.debug(
            "rule_evaluated",
            rule_id=rule.id,
            operator=rule.conditional_operator.value,
            verdict=verdict.value,
            conditions=len(breakdown),
        )

        return MatchResult(
            rule_id=rule.id,
            rule_name=rule.name,
            conditional_operator=rule.conditional_operator,
            verdict=verdict,
            breakdown=breakdown,
        )

    def evaluate_all(
        self,
        rules: Iterable[Rule],
        email: EmailMessage,
        context: EvaluationContext,
    ) -> list[MatchResult]:
        """Evaluate several rules with a shared context (AI verdict ignored)."""
        shared = EvaluationContext(
            sender_category=context.sender_category,
            groups=context.groups,
        )
        return [self.evaluate(rule, email, shared) for rule in rules]
