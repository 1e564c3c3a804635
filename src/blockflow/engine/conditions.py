"""
Condition expression evaluation.

Condition blocks carry expressions such as::

    <fetch.status> === 200 && <fetch.items>|length > 0

References are bound as variables by the ReferenceResolver (never pasted in
as text), JavaScript-style operators used by the editor are translated, and
the result is evaluated with Jinja2's sandboxed expression compiler. The
sandbox blocks attribute access to private members and unsafe callables, so
expressions cannot reach the interpreter.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

from jinja2 import StrictUndefined, TemplateSyntaxError, Undefined, UndefinedError
from jinja2.sandbox import SandboxedEnvironment, SecurityError

if TYPE_CHECKING:
    from .resolver import ReferenceResolver

_STRING_LITERAL = re.compile(r"(\"(?:\\.|[^\"\\])*\"|'(?:\\.|[^'\\])*')")

# Order matters: strict operators before their shorter forms
_JS_OPERATORS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"==="), "=="),
    (re.compile(r"!=="), "!="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
    (re.compile(r"\b(?:null|undefined)\b"), "none"),
]

_environment = SandboxedEnvironment(undefined=StrictUndefined)


def translate_js_operators(expression: str) -> str:
    """Rewrite JavaScript operators outside string literals into Jinja syntax."""
    parts = _STRING_LITERAL.split(expression)
    for i in range(0, len(parts), 2):
        code = parts[i]
        for pattern, replacement in _JS_OPERATORS:
            code = pattern.sub(replacement, code)
        parts[i] = code
    return "".join(parts)


def evaluate_expression(expression: str, variables: dict[str, Any]) -> Any:
    """
    Evaluate a Jinja expression in the sandbox.

    Raises:
        ValueError: If the expression cannot be compiled or evaluated
    """
    try:
        compiled = _environment.compile_expression(expression, undefined_to_none=False)
        result = compiled(**variables)
        if isinstance(result, Undefined):
            result._fail_with_undefined_error()
        return result
    except TemplateSyntaxError as e:
        raise ValueError(f"Invalid condition expression '{expression}': {e.message}") from e
    except (UndefinedError, SecurityError) as e:
        raise ValueError(f"Cannot evaluate condition '{expression}': {e}") from e
    except Exception as e:
        # e.g. comparing a missing (None) reference with a number
        raise ValueError(
            f"Cannot evaluate condition '{expression}': {type(e).__name__}: {e}"
        ) from e


def evaluate_condition(expression: str, resolver: ReferenceResolver) -> bool:
    """
    Evaluate a condition expression against resolved run state.

    Args:
        expression: Condition text (may contain <block.path> references)
        resolver: Resolver over the current run state

    Returns:
        Truthiness of the expression (empty expressions are False)

    Raises:
        ValueError: If the expression cannot be parsed or evaluated
        AmbiguousReferenceError: If a name reference is ambiguous
    """
    if not expression or not expression.strip():
        return False

    bound, variables = resolver.bind_expression(expression)
    result = evaluate_expression(translate_js_operators(bound), variables)
    return bool(result)
