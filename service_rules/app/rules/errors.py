"""
Rule engine error types.
"""

from typing import List, Optional

from shared.errors import (
    RuleGateException,
    ValidationError,
    NotFoundError,
    ServiceError,
    ExternalServiceError,
)


class RuleValidationError(ValidationError):
    """Structural defect in a rule definition."""

    def __init__(self, message: str, errors: Optional[List[str]] = None,
                 warnings: Optional[List[str]] = None, rule_name: Optional[str] = None):
        self.errors = list(errors or [message])
        self.warnings = list(warnings or [])
        self.rule_name = rule_name
        super().__init__(
            message,
            details={"rule_name": rule_name, "errors": self.errors, "warnings": self.warnings},
            code="RULE_VALIDATION_ERROR",
        )


class RuleEvaluationError(ServiceError):
    """A rule or custom evaluator failed at runtime."""

    def __init__(self, rule_name: str, message: str, cause: Optional[BaseException] = None):
        self.rule_name = rule_name
        self.cause = cause
        details = {"rule_name": rule_name}
        if cause is not None:
            details["cause"] = type(cause).__name__
        super().__init__(message, details=details, code="RULE_EVALUATION_ERROR")


class RuleTimeoutError(RuleGateException):
    """A custom evaluator did not settle within its bound."""

    def __init__(self, rule_name: str, timeout: float):
        self.rule_name = rule_name
        self.timeout = timeout
        super().__init__(
            "RULE_EVALUATION_TIMEOUT",
            f"Rule '{rule_name}' evaluation timed out after {timeout}s",
            {"rule_name": rule_name, "timeout": timeout},
        )


class RuleNotFoundError(NotFoundError):
    """Unknown rule name requested."""

    def __init__(self, rule_name: str):
        self.rule_name = rule_name
        super().__init__(
            f"Rule '{rule_name}' not found",
            details={"rule_name": rule_name},
            code="RULE_NOT_FOUND",
        )


class RuleDependencyError(RuleGateException):
    """Delete blocked by composite rules that embed the target."""

    def __init__(self, rule_name: str, dependents: List[str]):
        self.rule_name = rule_name
        self.dependents = list(dependents)
        super().__init__(
            "RULE_DEPENDENCY_ERROR",
            f"Cannot delete rule '{rule_name}': referenced by {', '.join(self.dependents)}",
            {"rule_name": rule_name, "dependents": self.dependents},
        )


class RegistryError(ExternalServiceError):
    """Rule registry collaborator failure."""

    def __init__(self, message: str = "Rule registry unavailable", operation: Optional[str] = None):
        self.operation = operation
        super().__init__("rule_registry", message, details={"operation": operation})


class NonAuthoritativeResultError(RuleGateException):
    """An advisory result was used where an authoritative one is required."""

    def __init__(self, rule_names: str):
        super().__init__(
            "NON_AUTHORITATIVE_RESULT",
            f"Result for {rule_names or 'rules'} is advisory and cannot gate this action",
            {"rules": rule_names},
        )


# Error codes recorded on result nodes
MALFORMED_CONDITION = "MALFORMED_CONDITION"
UNRESOLVED_FIELD = "UNRESOLVED_FIELD"
SCRIPT_ERROR = "SCRIPT_ERROR"
EVALUATOR_ERROR = "RULE_EVALUATION_ERROR"
EVALUATOR_TIMEOUT = "RULE_EVALUATION_TIMEOUT"
UNSUPPORTED_RULE = "UNSUPPORTED_RULE"
