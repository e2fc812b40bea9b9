"""Custom exception types for rulefix.

Error messages should say what failed, which entity was involved, and
what the caller can do about it. Validation problems with a single proposed
repair action are raised as exceptions here but recorded per action by the
diagnosis session, so they never abort a session on their own.
"""


class RuleFixError(Exception):
    """Base exception for all rulefix errors."""

    pass


class ConfigValidationError(RuleFixError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(RuleFixError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class DatabaseError(RuleFixError):
    """Raised when SQLite operations fail."""

    pass


class NotFoundError(RuleFixError):
    """Raised when a referenced rule, group, category or sender is missing.

    Attributes:
        entity: Kind of entity that was looked up ('rule', 'group', 'category')
        key: The identity or name that failed to resolve
    """

    def __init__(self, entity: str, key: str, message: str | None = None):
        super().__init__(message or f"{entity.capitalize()} '{key}' not found")
        self.entity = entity
        self.key = key


class InvalidRuleStateError(RuleFixError):
    """Raised when a rule would violate its own invariants.

    Covers an AND rule with no populated condition group, an empty-string
    static matcher, and a rename that collides with another rule of the
    same owner. The rule is left unmodified.
    """

    pass


class ActionValidationError(RuleFixError):
    """Raised when a proposed repair action has a malformed argument shape."""

    pass


class StepLimitExceeded(RuleFixError):
    """Raised (or recorded) when a diagnosis session runs out of reasoning rounds.

    Attributes:
        rounds: Number of reasoning rounds that were executed
    """

    def __init__(self, rounds: int):
        super().__init__(
            f"Diagnosis stopped after {rounds} reasoning round(s) without a final answer"
        )
        self.rounds = rounds


class ReasoningServiceError(RuleFixError):
    """Raised when the external reasoning service fails or times out.

    Attributes:
        status_code: HTTP status code from the API (if available)
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
