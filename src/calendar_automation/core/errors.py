"""Exception taxonomy for the automation pipeline.

``ConfigurationError`` and ``ExecutionError`` are recovered inside the
pipeline and recorded in the audit trail.  ``RateLimitError`` and the rule
lookup errors are raised to the caller of a retroactive run.
"""

from __future__ import annotations


class AutomationError(Exception):
    """Base class for all automation engine errors."""


class ConfigurationError(AutomationError):
    """A rule references something the engine cannot apply.

    Unknown action types, unknown fields or operators, and operator/field
    type mismatches all land here.  Evaluation records these as a failed leaf
    and execution records them as a failed action; neither aborts siblings.
    """


class ExecutionError(AutomationError):
    """An action's apply step failed (e.g. the target entity no longer exists)."""

    def __init__(self, message: str, *, action_type: str | None = None) -> None:
        self.action_type = action_type
        super().__init__(message)


class RateLimitError(AutomationError):
    """A retroactive run was requested inside the rule's cooldown window.

    Attributes:
        rule_id: The rule that was rate limited.
        retry_after_seconds: Seconds until the rule becomes eligible again.
    """

    def __init__(self, rule_id: str, retry_after_seconds: float) -> None:
        self.rule_id = rule_id
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"Rule {rule_id!r} was run retroactively less than a cooldown ago; "
            f"retry in {retry_after_seconds:.1f}s"
        )


class RuleNotFoundError(AutomationError):
    """Raised when a rule id does not resolve to a stored rule."""

    def __init__(self, rule_id: str) -> None:
        self.rule_id = rule_id
        super().__init__(f"Rule {rule_id!r} not found")


class RuleAccessError(AutomationError):
    """Raised when a caller asks to operate on a rule owned by another user."""

    def __init__(self, rule_id: str) -> None:
        self.rule_id = rule_id
        super().__init__(f"You do not have access to rule {rule_id!r}")


class RuleDisabledError(AutomationError):
    """Raised when a disabled rule is asked to run."""

    def __init__(self, rule_id: str) -> None:
        self.rule_id = rule_id
        super().__init__(f"Rule {rule_id!r} is disabled")
