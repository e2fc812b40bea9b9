"""Rule condition model, evaluation, and group/category registry.

This package provides:
- Frozen condition model for composite rules (static, group, category, AI)
- Pure matching helpers for addresses, domains and group items
- Rule evaluator producing per-condition-group verdicts
- Registry for group membership and sender-category assignments
"""

from rulefix.rules.evaluator import (
    EvaluationContext,
    MatchResult,
    MatchVerdict,
    RuleEvaluator,
)
from rulefix.rules.models import (
    AIConditions,
    Attachment,
    Category,
    CategoryCondition,
    CategoryFilterType,
    ConditionOutcome,
    ConditionType,
    ConditionVerdict,
    EmailHeaders,
    EmailMessage,
    Group,
    GroupCondition,
    GroupItem,
    GroupItemType,
    LogicalOperator,
    Rule,
    StaticConditions,
)
from rulefix.rules.registry import GroupCategoryRegistry

__all__ = [
    # Models
    "AIConditions",
    "Attachment",
    "Category",
    "CategoryCondition",
    "CategoryFilterType",
    "ConditionOutcome",
    "ConditionType",
    "ConditionVerdict",
    "EmailHeaders",
    "EmailMessage",
    "Group",
    "GroupCondition",
    "GroupItem",
    "GroupItemType",
    "LogicalOperator",
    "Rule",
    "StaticConditions",
    # Evaluator
    "EvaluationContext",
    "MatchResult",
    "MatchVerdict",
    "RuleEvaluator",
    # Registry
    "GroupCategoryRegistry",
]
