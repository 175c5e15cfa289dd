"""ターゲティング条件の評価

条件はパスから条件値への辞書。パスはドット区切りで user_properties、
次に custom_properties の順に探索する。"user." / "custom." 接頭辞で
対象のマップを明示できる。

    {"email": {"endsWith": "@example.com"}, "plan": {"in": ["pro", "enterprise"]}}

条件値がスカラーなら等価比較、辞書なら演算子をすべて満たす必要がある。
"""

from __future__ import annotations

from typing import Any, Callable, Mapping, Protocol

import structlog

from .models import EvaluationContext

logger = structlog.stdlib.get_logger(__name__)

_MISSING = object()


class ConditionMatcher(Protocol):
    """条件評価プロトコル。エンジンにとって条件の中身は不透明。"""

    def matches(self, conditions: Mapping[str, Any], context: EvaluationContext) -> bool: ...


def _as_number(value: Any) -> float:
    if isinstance(value, bool):
        raise TypeError("booleans are not comparable as numbers")
    return float(value)


_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda value, operand: value == operand,
    "ne": lambda value, operand: value != operand,
    "in": lambda value, operand: isinstance(operand, (list, tuple)) and value in operand,
    "contains": lambda value, operand: isinstance(value, str) and str(operand) in value,
    "startsWith": lambda value, operand: isinstance(value, str) and value.startswith(str(operand)),
    "endsWith": lambda value, operand: isinstance(value, str) and value.endswith(str(operand)),
    "gt": lambda value, operand: _as_number(value) > _as_number(operand),
    "gte": lambda value, operand: _as_number(value) >= _as_number(operand),
    "lt": lambda value, operand: _as_number(value) < _as_number(operand),
    "lte": lambda value, operand: _as_number(value) <= _as_number(operand),
}


class AttributeConditionMatcher:
    """コンテキストのプロパティに対して条件を評価する標準実装。"""

    def matches(self, conditions: Mapping[str, Any], context: EvaluationContext) -> bool:
        try:
            return all(
                self._matches_one(self._resolve(path, context), condition)
                for path, condition in conditions.items()
            )
        except (TypeError, ValueError) as e:
            logger.warning(
                "condition evaluation failed",
                conditions=dict(conditions),
                error=str(e),
            )
            return False

    def _resolve(self, path: str, context: EvaluationContext) -> Any:
        if path.startswith("user."):
            return _lookup(context.user_properties, path[len("user."):])
        if path.startswith("custom."):
            return _lookup(context.custom_properties, path[len("custom."):])
        value = _lookup(context.user_properties, path)
        if value is _MISSING:
            value = _lookup(context.custom_properties, path)
        return value

    def _matches_one(self, value: Any, condition: Any) -> bool:
        if value is _MISSING:
            value = None
        if not isinstance(condition, Mapping):
            return value == condition
        if not condition:
            return False
        for operator, operand in condition.items():
            op = _OPERATORS.get(operator)
            if op is None:
                logger.warning("unknown condition operator", operator=operator)
                return False
            if value is None and operator not in ("eq", "ne", "in"):
                return False
            if not op(value, operand):
                return False
        return True


def _lookup(properties: Mapping[str, Any], path: str) -> Any:
    current: Any = properties
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current
