"""
Rule data models for the rules service.
"""

import copy
from typing import Dict, Any, Optional, List, Union, Callable, Awaitable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from .errors import NonAuthoritativeResultError


class RuleType(str, Enum):
    """Rule types."""
    SIMPLE = "simple"
    COMPOSITE = "composite"
    CUSTOM = "custom"
    JAVASCRIPT = "javascript"


class CompositeOperator(str, Enum):
    """Boolean combinators for composite rules."""
    AND = "AND"
    OR = "OR"
    NOT = "NOT"


class ConditionType(str, Enum):
    """Leaf condition types."""
    FIELD_EXISTS = "FieldExists"
    FIELD_EQUALS = "FieldEquals"
    FIELD_GREATER_THAN = "FieldGreaterThan"
    FIELD_LESS_THAN = "FieldLessThan"
    FIELD_CONTAINS = "FieldContains"
    SCRIPT = "Script"


class _Missing:
    """Marker for a field that does not resolve at all (as opposed to None)."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "undefined"

    def __deepcopy__(self, memo):
        return self


MISSING = _Missing()


def _coerce_enum(enum_cls, value):
    """Return the enum member for ``value``, or the raw value when unknown."""
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return value


def _enum_value(value):
    return value.value if isinstance(value, Enum) else value


def _parse_timestamp(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass
class RuleCondition:
    """Leaf predicate tested against the evaluation context."""
    type: Union[ConditionType, str]
    field: Optional[str] = None
    value: Any = None
    expression: Optional[str] = None
    description: Optional[str] = None

    def __post_init__(self):
        self.type = _coerce_enum(ConditionType, self.type)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": _enum_value(self.type)}
        if self.field is not None:
            data["field"] = self.field
        if self.type == ConditionType.SCRIPT:
            data["expression"] = self.expression
        elif self.type != ConditionType.FIELD_EXISTS:
            data["value"] = copy.deepcopy(self.value)
        if self.description:
            data["description"] = self.description
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuleCondition":
        return cls(
            type=data.get("type"),
            field=data.get("field"),
            # "substring" is accepted as an alias for FieldContains payloads
            value=copy.deepcopy(data.get("value", data.get("substring"))),
            expression=data.get("expression") or data.get("script"),
            description=data.get("description"),
        )

    @classmethod
    def coerce(cls, value: Any) -> Optional[Union[str, "RuleCondition"]]:
        """Normalize a condition given as text, a payload dict or an instance."""
        if value is None or isinstance(value, (str, RuleCondition)):
            return value
        if isinstance(value, dict):
            return cls.from_dict(value)
        raise TypeError(f"Unsupported condition value: {type(value).__name__}")


RuleEvaluator = Callable[["RuleContext"], Union[bool, Awaitable[bool]]]


@dataclass
class Rule:
    """Named decision unit.

    Composite children are embedded values owned by their parent, so a rule
    tree can never contain a cycle.
    """
    name: str
    type: Union[RuleType, str] = RuleType.SIMPLE
    condition: Optional[Union[str, RuleCondition]] = None
    operator: Optional[Union[CompositeOperator, str]] = None
    rules: List["Rule"] = field(default_factory=list)
    evaluator_name: Optional[str] = None
    id: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    enabled: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.type = _coerce_enum(RuleType, self.type)
        self.operator = _coerce_enum(CompositeOperator, self.operator)
        self.condition = RuleCondition.coerce(self.condition)
        self.rules = [Rule.coerce(child) for child in (self.rules or [])]

    @property
    def custom_evaluator_name(self) -> str:
        """Name the custom evaluator is registered under."""
        return self.evaluator_name or self.name

    def iter_descendants(self) -> Iterator["Rule"]:
        """Yield every embedded child rule, depth first."""
        for child in self.rules:
            yield child
            yield from child.iter_descendants()

    def references(self, rule_name: str) -> bool:
        """Whether ``rule_name`` is embedded anywhere below this rule."""
        return any(child.name == rule_name for child in self.iter_descendants())

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the rule registry payload shape."""
        condition = self.condition
        if isinstance(condition, RuleCondition):
            condition = condition.to_dict()
        return {
            "id": self.id,
            "name": self.name,
            "type": _enum_value(self.type),
            "condition": condition,
            "operator": _enum_value(self.operator),
            "rules": [child.to_dict() for child in self.rules],
            "evaluatorName": self.evaluator_name,
            "description": self.description,
            "category": self.category,
            "metadata": copy.deepcopy(self.metadata),
            "priority": self.priority,
            "enabled": self.enabled,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Rule":
        """Build a rule from a registry payload (camelCase or snake_case keys)."""
        return cls(
            name=data.get("name", ""),
            type=data.get("type"),
            condition=copy.deepcopy(data.get("condition")),
            operator=data.get("operator"),
            rules=[cls.coerce(child) for child in data.get("rules") or []],
            evaluator_name=data.get("evaluatorName", data.get("evaluator_name")),
            id=data.get("id"),
            description=data.get("description"),
            category=data.get("category"),
            metadata=copy.deepcopy(data.get("metadata") or {}),
            priority=data.get("priority", 0) if data.get("priority") is not None else 0,
            enabled=data.get("enabled", True) is not False,
            created_at=_parse_timestamp(data.get("createdAt", data.get("created_at"))),
            updated_at=_parse_timestamp(data.get("updatedAt", data.get("updated_at"))),
        )

    @classmethod
    def coerce(cls, value: Any) -> "Rule":
        if isinstance(value, Rule):
            return value
        if isinstance(value, dict):
            return cls.from_dict(value)
        raise TypeError(f"Unsupported rule value: {type(value).__name__}")


@dataclass(frozen=True)
class ResourceState:
    """Resource under evaluation."""
    id: str = ""
    state: str = ""
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RuleContext:
    """Immutable snapshot passed to evaluation."""
    resource: ResourceState = field(default_factory=ResourceState)
    workflow: Optional[Dict[str, Any]] = None
    activity: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def create(
        cls,
        data: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        state: str = "",
        resource_id: str = "",
        workflow: Optional[Dict[str, Any]] = None,
        activity: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> "RuleContext":
        """Snapshot the given values; later mutation of the inputs has no effect."""
        return cls(
            resource=ResourceState(id=resource_id, state=state, data=copy.deepcopy(data or {})),
            workflow=copy.deepcopy(workflow),
            activity=copy.deepcopy(activity),
            metadata=copy.deepcopy(metadata or {}),
            timestamp=timestamp or datetime.now(timezone.utc),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuleContext":
        resource = data.get("resource") or {}
        return cls.create(
            data=resource.get("data"),
            metadata=data.get("metadata"),
            state=resource.get("state", ""),
            resource_id=resource.get("id", ""),
            workflow=data.get("workflow"),
            activity=data.get("activity"),
            timestamp=_parse_timestamp(data.get("timestamp")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": {
                "id": self.resource.id,
                "state": self.resource.state,
                "data": copy.deepcopy(self.resource.data),
            },
            "workflow": copy.deepcopy(self.workflow),
            "activity": copy.deepcopy(self.activity),
            "metadata": copy.deepcopy(self.metadata),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class RuleResult:
    """Result of evaluating one node of a rule tree."""
    rule: Rule
    passed: bool
    reason: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    sub_results: List["RuleResult"] = field(default_factory=list)
    execution_time_ms: float = 0.0
    error: Optional[str] = None
    error_code: Optional[str] = None
    authoritative: bool = True

    @property
    def rule_name(self) -> str:
        return self.rule.name

    def iter_nodes(self) -> Iterator["RuleResult"]:
        yield self
        for sub_result in self.sub_results:
            yield from sub_result.iter_nodes()

    def collect_errors(self) -> List[str]:
        """All node-level failures in this subtree."""
        return [
            f"Rule '{node.rule_name}': {node.error}"
            for node in self.iter_nodes()
            if node.error
        ]

    def has_error_code(self, code: str) -> bool:
        return any(node.error_code == code for node in self.iter_nodes())

    def assert_authoritative(self) -> "RuleResult":
        if not self.authoritative:
            raise NonAuthoritativeResultError(self.rule_name)
        return self


@dataclass
class RuleEvaluationResult:
    """Aggregate result returned by evaluation calls."""
    passed: bool
    results: List[RuleResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    evaluation_time_ms: float = 0.0
    rules_evaluated: int = 0
    rules_passed: int = 0
    cache_hit: bool = False
    authoritative: bool = True

    def assert_authoritative(self) -> "RuleEvaluationResult":
        """Raise unless this result may gate an irreversible action."""
        if not self.authoritative:
            names = ", ".join(result.rule_name for result in self.results)
            raise NonAuthoritativeResultError(names)
        return self


@dataclass
class BatchEvaluationResult:
    """Result of evaluating several independent batches."""
    success: bool
    results: List[RuleEvaluationResult] = field(default_factory=list)
    successful: int = 0
    failed: int = 0
    total_time_ms: float = 0.0
    errors: List[str] = field(default_factory=list)


@dataclass
class EvaluationOptions:
    """Per-call evaluation options."""
    timeout: Optional[float] = None
    stop_on_failure: bool = False
    use_cache: bool = True
    custom_evaluators: Dict[str, RuleEvaluator] = field(default_factory=dict)


@dataclass
class BatchEvaluationInput:
    """One batch: rules evaluated sequentially against one context."""
    rules: List[Union[str, Rule]]
    context: RuleContext
    options: Optional[EvaluationOptions] = None

    @property
    def rule_names(self) -> List[str]:
        return [rule if isinstance(rule, str) else rule.name for rule in self.rules]


@dataclass
class RuleValidationResult:
    """Outcome of validating a rule definition."""
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    rule_count: int = 1


@dataclass
class RuleEvaluationStats:
    """Running evaluation statistics for one rule."""
    evaluations: int = 0
    passes: int = 0
    total_execution_time_ms: float = 0.0
    last_evaluation: Optional[datetime] = None

    @property
    def success_rate(self) -> float:
        if self.evaluations == 0:
            return 0.0
        return self.passes / self.evaluations

    @property
    def average_execution_time_ms(self) -> float:
        if self.evaluations == 0:
            return 0.0
        return self.total_execution_time_ms / self.evaluations

    def record(self, passed: bool, execution_time_ms: float, at: Optional[datetime] = None):
        self.evaluations += 1
        if passed:
            self.passes += 1
        self.total_execution_time_ms += execution_time_ms
        self.last_evaluation = at or datetime.now(timezone.utc)


@dataclass
class RuleWithStats:
    """Rule listing entry."""
    rule: Rule
    stats: Optional[RuleEvaluationStats] = None


@dataclass
class PaginatedResult:
    """One page of a rule listing."""
    items: List[RuleWithStats]
    total_count: int
    has_more: bool
    limit: int
    offset: int


@dataclass
class RuleStats:
    """Aggregate statistics over the stored rules."""
    total_rules: int
    by_type: Dict[str, int]
    by_category: Dict[str, int]
    enabled: int
    disabled: int
    average_evaluation_time_ms: float
    most_evaluated: List[Dict[str, Any]]
    recent_activity: int


class RuleCreateRequest(BaseModel):
    """Request model for creating a rule."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = Field(..., description="Unique rule name")
    type: str = Field(..., description="Rule type")
    condition: Any = Field(None, description="Leaf condition or textual predicate")
    operator: Optional[str] = Field(None, description="Composite operator")
    rules: Optional[List[Any]] = Field(None, description="Embedded child rules")
    evaluator: Optional[Callable[..., Any]] = Field(None, description="Inline custom evaluator")
    evaluator_name: Optional[str] = Field(None, description="Registered custom evaluator name")
    description: Optional[str] = Field(None, description="Rule description")
    category: Optional[str] = Field(None, description="Rule category")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Rule metadata")
    priority: int = Field(0, description="Rule priority")
    enabled: bool = Field(True, description="Whether rule is enabled")

    def to_rule(self) -> Rule:
        return Rule(
            name=self.name,
            type=self.type,
            condition=self.condition,
            # Composite rules default to AND when no operator is given
            operator=self.operator or ("AND" if self.type == RuleType.COMPOSITE.value else None),
            rules=list(self.rules or []),
            evaluator_name=self.evaluator_name,
            description=self.description,
            category=self.category,
            metadata=copy.deepcopy(self.metadata),
            priority=self.priority,
            enabled=self.enabled,
        )


class RuleUpdateRequest(BaseModel):
    """Request model for updating a rule."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: Optional[str] = Field(None, description="New rule name")
    condition: Any = Field(None, description="Leaf condition or textual predicate")
    operator: Optional[str] = Field(None, description="Composite operator")
    rules: Optional[List[Any]] = Field(None, description="Embedded child rules")
    evaluator_name: Optional[str] = Field(None, description="Registered custom evaluator name")
    description: Optional[str] = Field(None, description="Rule description")
    category: Optional[str] = Field(None, description="Rule category")
    metadata: Optional[Dict[str, Any]] = Field(None, description="Rule metadata")
    priority: Optional[int] = Field(None, description="Rule priority")
    enabled: Optional[bool] = Field(None, description="Whether rule is enabled")

    def apply_to(self, rule: Rule) -> Rule:
        """Return a copy of ``rule`` with the provided fields replaced."""
        updated = copy.deepcopy(rule)
        for key, value in self.model_dump(exclude_unset=True, exclude={"rules", "condition"}).items():
            if value is not None:
                setattr(updated, key, value)
        if "condition" in self.model_fields_set and self.condition is not None:
            updated.condition = RuleCondition.coerce(self.condition)
        if self.rules is not None:
            updated.rules = [Rule.coerce(child) for child in self.rules]
        updated.operator = _coerce_enum(CompositeOperator, updated.operator)
        return updated

    def to_payload(self) -> Dict[str, Any]:
        """Partial registry payload holding only the fields being changed."""
        payload: Dict[str, Any] = {}
        for key, value in self.model_dump(exclude_unset=True, exclude={"rules", "condition"}).items():
            if value is None:
                continue
            payload["evaluatorName" if key == "evaluator_name" else key] = value
        if "condition" in self.model_fields_set and self.condition is not None:
            condition = RuleCondition.coerce(self.condition)
            payload["condition"] = condition.to_dict() if isinstance(condition, RuleCondition) else condition
        if self.rules is not None:
            payload["rules"] = [Rule.coerce(child).to_dict() for child in self.rules]
        return payload


class RuleSearchOptions(BaseModel):
    """Filtering, sorting and pagination for rule listings."""
    query: Optional[str] = Field(None, description="Search in rule names and descriptions")
    type: Optional[str] = Field(None, description="Filter by rule type")
    types: Optional[List[str]] = Field(None, description="Filter by any of these rule types")
    category: Optional[str] = Field(None, description="Filter by category")
    categories: Optional[List[str]] = Field(None, description="Filter by any of these categories")
    enabled: Optional[bool] = Field(None, description="Filter by enabled flag")
    min_priority: Optional[int] = Field(None, description="Lowest priority to include")
    max_priority: Optional[int] = Field(None, description="Highest priority to include")
    include_stats: bool = Field(False, description="Attach evaluation statistics")
    sort_by: Optional[str] = Field(None, description="Sort field")
    sort_direction: str = Field("asc", pattern="^(asc|desc)$", description="Sort direction")
    offset: int = Field(0, ge=0, description="Items to skip")
    limit: int = Field(50, ge=1, le=1000, description="Items per page")
