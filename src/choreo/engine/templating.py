"""
Choreo Templating Engine

Expression evaluation behind task conditions, loop sources and delegation
targets. The executors depend only on the :class:`ExpressionEvaluator`
interface; :class:`JinjaEvaluator` is the default implementation.
"""

import base64
import json
import re
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Mapping

import yaml
from jinja2 import Environment, StrictUndefined, TemplateSyntaxError, Undefined, UndefinedError

from choreo.engine.errors import TemplateError


# A string that is exactly one {{ expression }}
_BARE_EXPRESSION = re.compile(r'^\s*\{\{\s*(.+?)\s*\}\}\s*$', re.DOTALL)

TRUTHY_TOKENS = frozenset({'true', 'yes', 'on', '1', 'y', 't'})
FALSY_TOKENS = frozenset({'false', 'no', 'off', '0', 'n', 'f', '', 'none', 'null'})

# Bare words a condition may consist of, taken at face value
CONDITION_LITERALS = {
    'true': True, 'yes': True, 'on': True, '1': True,
    'false': False, 'no': False, 'off': False, '0': False,
}


def _filter_default(value: Any, default: Any = '', boolean: bool = False) -> Any:
    """Return default if value is undefined or None (or falsy with boolean=True)."""
    if isinstance(value, Undefined) or value is None:
        return default
    if boolean and not value:
        return default
    return value


def _filter_bool(value: Any) -> bool:
    """Convert value to boolean."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in TRUTHY_TOKENS
    return bool(value)


def _filter_b64encode(value: Any) -> str:
    """Encode string to base64."""
    if isinstance(value, bytes):
        return base64.b64encode(value).decode('utf-8')
    return base64.b64encode(str(value).encode('utf-8')).decode('utf-8')


# Export custom filters as a dictionary for reuse
CUSTOM_FILTERS: Dict[str, Callable[..., Any]] = {
    'default': _filter_default,
    'd': _filter_default,
    'bool': _filter_bool,
    'to_json': lambda x: json.dumps(x),
    'to_yaml': lambda x: yaml.safe_dump(x, default_flow_style=False),
    'regex_replace': lambda s, pattern, repl: re.sub(pattern, repl, str(s)),
    'b64decode': lambda x: base64.b64decode(x).decode('utf-8'),
    'b64encode': _filter_b64encode,
}


def to_bool(value: Any) -> bool:
    """Convert an evaluated condition value to boolean (Ansible-style)."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, str):
        token = value.strip().lower()
        if token in TRUTHY_TOKENS:
            return True
        if token in FALSY_TOKENS:
            return False
        # Non-empty strings are truthy
        return True
    return bool(value)


class ExpressionEvaluator(ABC):
    """
    Capability the executors use to interpret expressions over a scope.

    Implementations raise :class:`TemplateError` when an expression cannot
    be evaluated (syntax errors, undefined variables).
    """

    @abstractmethod
    def evaluate(self, expression: str, variables: Mapping[str, Any]) -> bool:
        """Evaluate a condition expression to a boolean."""

    @abstractmethod
    def render(self, data: Any, variables: Mapping[str, Any]) -> Any:
        """Substitute variables in strings, recursively through dicts and lists."""

    @abstractmethod
    def resolve(self, value: Any, variables: Mapping[str, Any]) -> Any:
        """Resolve a value to a native object.

        A string consisting of a single ``{{ expression }}`` yields the
        expression's value unchanged (lists stay lists); other values are
        rendered.
        """


class JinjaEvaluator(ExpressionEvaluator):
    """
    Jinja2 evaluator with Ansible-like behavior.

    Provides:
    - Variable interpolation in strings
    - Recursive template rendering in dicts/lists
    - Native evaluation of bare ``{{ expr }}`` references
    - 'when' condition evaluation with strict undefined handling
    """

    def __init__(self):
        self.env = Environment(
            undefined=StrictUndefined,
            # Don't auto-escape (we're not rendering HTML)
            autoescape=False,
            keep_trailing_newline=True,
        )

        for name, func in CUSTOM_FILTERS.items():
            self.env.filters[name] = func

    def render(self, data: Any, variables: Mapping[str, Any]) -> Any:
        if isinstance(data, str):
            return self._render_string(data, variables)

        if isinstance(data, dict):
            return {
                self._render_string(k, variables) if isinstance(k, str) else k:
                self.render(v, variables)
                for k, v in data.items()
            }

        if isinstance(data, list):
            return [self.render(item, variables) for item in data]

        # Return other types as-is (int, float, bool, None)
        return data

    def resolve(self, value: Any, variables: Mapping[str, Any]) -> Any:
        if isinstance(value, str):
            match = _BARE_EXPRESSION.match(value)
            if match:
                return self._eval_expression(match.group(1), variables)
        return self.render(value, variables)

    def evaluate(self, expression: str, variables: Mapping[str, Any]) -> bool:
        """
        Evaluate a 'when'-style condition.

        The condition is a Jinja2 expression without ``{{ }}``; a condition
        that is wrapped in ``{{ }}`` anyway is unwrapped first.
        A condition that is just a boolean word (``yes``, ``No``, ``true``,
        ``0``...) is taken literally instead of being looked up as a variable.

        Raises:
            TemplateError: If the condition is invalid or references an
                undefined variable
        """
        if expression is None:
            return True
        expression = expression.strip()
        if not expression:
            return True

        match = _BARE_EXPRESSION.match(expression)
        if match:
            expression = match.group(1)

        literal = CONDITION_LITERALS.get(expression.strip().lower())
        if literal is not None:
            return literal
        return to_bool(self._eval_expression(expression, variables))

    def _render_string(self, template_str: str, variables: Mapping[str, Any]) -> str:
        # Fast path: no template markers
        if '{{' not in template_str and '{%' not in template_str:
            return template_str

        try:
            template = self.env.from_string(template_str)
            return template.render(dict(variables))
        except UndefinedError as e:
            raise TemplateError(f"Undefined variable: {e}", template=template_str)
        except TemplateSyntaxError as e:
            raise TemplateError(f"Template syntax error: {e}", template=template_str)
        except Exception as e:
            raise TemplateError(f"Template error: {e}", template=template_str)

    def _eval_expression(self, expression: str, variables: Mapping[str, Any]) -> Any:
        try:
            compiled = self.env.compile_expression(expression, undefined_to_none=False)
            value = compiled(**dict(variables))
        except UndefinedError as e:
            raise TemplateError(f"Undefined variable: {e}", template=expression)
        except TemplateSyntaxError as e:
            raise TemplateError(f"Expression syntax error: {e}", template=expression)
        except Exception as e:
            raise TemplateError(f"Expression error: {e}", template=expression)

        if isinstance(value, Undefined):
            raise TemplateError(
                f"'{expression}' is undefined",
                template=expression,
                variable=expression,
            )
        return value
