"""Restricted expression evaluator behind ``attribute-function-interpolator``.

Expressions use Python syntax (``&&``/``||`` are accepted as ``and``/``or``) and
may reference live Context Broker values as ``${{EntityId}{attribute}}``. Only
literals, arithmetic, comparisons, boolean logic, conditional expressions and
calls into a fixed function table are allowed.
"""
from __future__ import annotations

import ast
import math
import operator
import random
import re
from typing import Any, Callable, Dict, List, Mapping, Tuple

from .errors import InvalidInterpolationSpec, ValueResolutionError

REFERENCE_RE = re.compile(r"\$\{\{([^{}]+)\}\{([^{}]+)\}\}")

MAX_POWER_BITS = 4096

SEQUENCE_TYPES = (str, bytes, list, tuple)

BINARY_OPERATORS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

UNARY_OPERATORS: Dict[type, Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
    ast.Not: operator.not_,
}

COMPARISONS: Dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}

FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "int": int,
    "float": float,
    "str": str,
    "len": len,
}

MATH_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "abs": abs,
    "ceil": math.ceil,
    "floor": math.floor,
    "round": lambda value: math.floor(value + 0.5),
    "min": min,
    "max": max,
    "pow": math.pow,
    "sqrt": math.sqrt,
    "exp": math.exp,
    "log": math.log,
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "random": random.random,
}

MATH_CONSTANTS: Dict[str, float] = {"PI": math.pi, "E": math.e}


def _coerce(value: Any) -> Any:
    """Numeric strings from the broker behave as numbers in expressions."""
    if isinstance(value, str):
        for cast in (int, float):
            try:
                return cast(value)
            except ValueError:
                continue
    return value


def _check_operands(op: ast.operator, left: Any, right: Any) -> None:
    """Keep a single operation from allocating an unbounded result."""
    if isinstance(op, ast.Mult) and (isinstance(left, SEQUENCE_TYPES) or isinstance(right, SEQUENCE_TYPES)):
        raise TypeError("sequence repetition is not allowed")
    if isinstance(op, ast.Pow) and isinstance(left, int) and isinstance(right, int) and right > 0:
        if abs(left).bit_length() * right > MAX_POWER_BITS:
            raise ValueError(f"power with exponent {right} is too large")


class AttributeFunction:
    """Compiled expression plus the broker attributes it depends on."""

    def __init__(self, spec: str) -> None:
        self.spec = spec
        self.references: Dict[str, List[str]] = {}
        self._placeholders: Dict[str, Tuple[str, str]] = {}
        source = REFERENCE_RE.sub(self._placeholder, spec)
        source = source.replace("&&", " and ").replace("||", " or ")
        try:
            self._tree = ast.parse(source.strip(), mode="eval")
        except SyntaxError as exc:
            raise InvalidInterpolationSpec(
                f"The attribute function spec ({spec}) is not a valid expression: {exc.msg}"
            ) from exc
        except (MemoryError, RecursionError) as exc:
            raise InvalidInterpolationSpec(f"The attribute function spec ({spec}) is too deeply nested") from exc
        try:
            self._check(self._tree.body)
        except RecursionError as exc:
            raise InvalidInterpolationSpec(f"The attribute function spec ({spec}) is too deeply nested") from exc

    def _placeholder(self, match: "re.Match[str]") -> str:
        entity, attribute = match.group(1), match.group(2)
        attributes = self.references.setdefault(entity, [])
        if attribute not in attributes:
            attributes.append(attribute)
        for name, reference in self._placeholders.items():
            if reference == (entity, attribute):
                return name
        name = f"__ref{len(self._placeholders)}"
        self._placeholders[name] = (entity, attribute)
        return name

    def _check(self, node: ast.AST) -> None:
        if isinstance(node, ast.Constant):
            return
        if isinstance(node, ast.Name):
            if node.id not in self._placeholders:
                raise InvalidInterpolationSpec(f"The attribute function spec ({self.spec}) uses unknown name '{node.id}'")
            return
        if isinstance(node, ast.Attribute):
            if not (isinstance(node.value, ast.Name) and node.value.id == "Math" and node.attr in MATH_CONSTANTS):
                raise InvalidInterpolationSpec(f"The attribute function spec ({self.spec}) uses a forbidden attribute")
            return
        if isinstance(node, ast.BinOp) and type(node.op) in BINARY_OPERATORS:
            self._check(node.left)
            self._check(node.right)
            return
        if isinstance(node, ast.UnaryOp) and type(node.op) in UNARY_OPERATORS:
            self._check(node.operand)
            return
        if isinstance(node, ast.BoolOp):
            for value in node.values:
                self._check(value)
            return
        if isinstance(node, ast.Compare) and all(type(op) in COMPARISONS for op in node.ops):
            self._check(node.left)
            for comparator in node.comparators:
                self._check(comparator)
            return
        if isinstance(node, ast.IfExp):
            for child in (node.test, node.body, node.orelse):
                self._check(child)
            return
        if isinstance(node, (ast.List, ast.Tuple)):
            for element in node.elts:
                self._check(element)
            return
        if isinstance(node, ast.Call) and not node.keywords:
            self._function(node.func)
            for argument in node.args:
                self._check(argument)
            return
        raise InvalidInterpolationSpec(
            f"The attribute function spec ({self.spec}) uses a forbidden construct: {type(node).__name__}"
        )

    def _function(self, node: ast.AST) -> Callable[..., Any]:
        if isinstance(node, ast.Name) and node.id in FUNCTIONS:
            return FUNCTIONS[node.id]
        if (
            isinstance(node, ast.Attribute)
            and isinstance(node.value, ast.Name)
            and node.value.id == "Math"
            and node.attr in MATH_FUNCTIONS
        ):
            return MATH_FUNCTIONS[node.attr]
        raise InvalidInterpolationSpec(f"The attribute function spec ({self.spec}) calls a forbidden function")

    def __call__(self, values: Mapping[Tuple[str, str], Any]) -> Any:
        env: Dict[str, Any] = {}
        for name, reference in self._placeholders.items():
            if reference not in values:
                raise ValueResolutionError(
                    f"No value for attribute '{reference[1]}' of entity '{reference[0]}' "
                    f"when resolving the attribute function spec: '{self.spec}'"
                )
            env[name] = _coerce(values[reference])
        try:
            return self._evaluate(self._tree.body, env)
        except (ArithmeticError, MemoryError, RecursionError, TypeError, ValueError) as exc:
            raise ValueResolutionError(
                f"Error when evaluating the attribute function spec: '{self.spec}' ({exc})"
            ) from exc

    def _evaluate(self, node: ast.AST, env: Dict[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            return env[node.id]
        if isinstance(node, ast.Attribute):
            return MATH_CONSTANTS[node.attr]
        if isinstance(node, ast.BinOp):
            left = self._evaluate(node.left, env)
            right = self._evaluate(node.right, env)
            _check_operands(node.op, left, right)
            return BINARY_OPERATORS[type(node.op)](left, right)
        if isinstance(node, ast.UnaryOp):
            return UNARY_OPERATORS[type(node.op)](self._evaluate(node.operand, env))
        if isinstance(node, ast.BoolOp):
            result = None
            for value in node.values:
                result = self._evaluate(value, env)
                if isinstance(node.op, ast.And) and not result:
                    return result
                if isinstance(node.op, ast.Or) and result:
                    return result
            return result
        if isinstance(node, ast.Compare):
            left = self._evaluate(node.left, env)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._evaluate(comparator, env)
                if not COMPARISONS[type(op)](left, right):
                    return False
                left = right
            return True
        if isinstance(node, ast.IfExp):
            branch = node.body if self._evaluate(node.test, env) else node.orelse
            return self._evaluate(branch, env)
        if isinstance(node, ast.List):
            return [self._evaluate(element, env) for element in node.elts]
        if isinstance(node, ast.Tuple):
            return tuple(self._evaluate(element, env) for element in node.elts)
        # Only calls remain after _check.
        function = self._function(node.func)
        return function(*(self._evaluate(argument, env) for argument in node.args))


def attribute_function_interpolator(spec: str) -> AttributeFunction:
    return AttributeFunction(spec)


__all__ = ["AttributeFunction", "attribute_function_interpolator", "REFERENCE_RE"]
