"""
Label Selectors

Kubernetes-style label selectors used for node selection and pod selection.
An empty selector matches every object.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..utils.error_handling import ConfigurationError


class SelectorOperator(Enum):
    """Operators allowed in a match expression."""
    IN = "In"
    NOT_IN = "NotIn"
    EXISTS = "Exists"
    DOES_NOT_EXIST = "DoesNotExist"


@dataclass
class SelectorRequirement:
    """A single match expression: key, operator and values."""
    key: str
    operator: SelectorOperator
    values: List[str] = field(default_factory=list)

    def validate(self) -> None:
        if self.operator in (SelectorOperator.IN, SelectorOperator.NOT_IN) and not self.values:
            raise ConfigurationError(
                f"selector requirement on {self.key!r}: operator {self.operator.value} needs values"
            )
        if self.operator in (SelectorOperator.EXISTS, SelectorOperator.DOES_NOT_EXIST) and self.values:
            raise ConfigurationError(
                f"selector requirement on {self.key!r}: operator {self.operator.value} takes no values"
            )

    def matches(self, labels: Dict[str, str]) -> bool:
        if self.operator == SelectorOperator.IN:
            return self.key in labels and labels[self.key] in self.values
        if self.operator == SelectorOperator.NOT_IN:
            return self.key not in labels or labels[self.key] not in self.values
        if self.operator == SelectorOperator.EXISTS:
            return self.key in labels
        return self.key not in labels


@dataclass
class LabelSelector:
    """matchLabels AND matchExpressions; empty selector selects everything."""
    match_labels: Dict[str, str] = field(default_factory=dict)
    match_expressions: List[SelectorRequirement] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.match_labels and not self.match_expressions

    def matches(self, labels: Optional[Dict[str, str]]) -> bool:
        """Return True if the given labels satisfy this selector."""
        labels = labels or {}
        for key, value in self.match_labels.items():
            if labels.get(key) != value:
                return False
        for requirement in self.match_expressions:
            requirement.validate()
            if not requirement.matches(labels):
                return False
        return True

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'LabelSelector':
        """Parse the manifest form ``{matchLabels: ..., matchExpressions: [...]}``."""
        if not data:
            return cls()

        expressions = []
        for expr in data.get('matchExpressions', []) or []:
            try:
                operator = SelectorOperator(expr.get('operator'))
            except ValueError:
                raise ConfigurationError(
                    f"unsupported selector operator {expr.get('operator')!r}"
                ) from None
            requirement = SelectorRequirement(
                key=expr['key'],
                operator=operator,
                values=list(expr.get('values', []) or []),
            )
            requirement.validate()
            expressions.append(requirement)

        return cls(
            match_labels=dict(data.get('matchLabels', {}) or {}),
            match_expressions=expressions,
        )
