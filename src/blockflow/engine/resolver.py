"""
Reference resolver for block input templates.

Resolves inline references in a block's declared params before the handler
runs. Resolution is a pure function of (template, block outputs, block name
index, environment variables, workflow variables, iteration scopes).

Reference forms:
    <blockId.path.to.field>       Output of a block, by id
    <Block Name.path.to.field>    Output of a block, by display name
                                  (whitespace removed, case-folded)
    <loop.index>                  Innermost loop: index, currentItem, items
    <parallel.currentItem>        Innermost parallel branch: index, currentItem, items
    <item.field>                  Iteration variable of an enclosing loop/parallel
    <variable.name>               Workflow variable
    {{API_KEY}}                   Environment variable

Rules:
- A string that is exactly one reference keeps the referenced value's type.
- References embedded in longer strings are interpolated; non-string values
  are rendered as JSON and missing values as "".
- Missing references (block not executed, path absent) resolve to None.
- References whose head is unknown are left in place as literal text.
- A name shared by several blocks raises AmbiguousReferenceError; use the
  block id instead.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Collection, Mapping, Sequence
from typing import TYPE_CHECKING, Any

from .exceptions import AmbiguousReferenceError
from .execution_context import IterationScope
from .serialized import SerializedBlock, normalize_block_name

if TYPE_CHECKING:
    from .execution_context import ExecutionContext

logger = logging.getLogger(__name__)

REFERENCE_PATTERN = re.compile(r"<([A-Za-z0-9_][\w \-]*?(?:\.[\w\-\[\]]+)*)>")
ENV_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
_SEGMENT_PATTERN = re.compile(r"[^.\[\]]+")

_MISSING = object()


def prepare_workflow_variables(raw: Mapping[str, Any]) -> dict[str, Any]:
    """
    Flatten workflow variables into {name: typed value}.

    Accepts plain values (``{"limit": 10}``) and editor records
    (``{"var-1": {"name": "limit", "type": "number", "value": "10"}}``).

    Args:
        raw: Variables as declared on the workflow or supplied by the caller

    Returns:
        Mapping of variable name to coerced value
    """
    variables: dict[str, Any] = {}
    for key, entry in raw.items():
        if isinstance(entry, Mapping) and "name" in entry and "value" in entry:
            variables[str(entry["name"])] = coerce_variable(entry["value"], entry.get("type"))
        else:
            variables[key] = entry
    return variables


def coerce_variable(value: Any, var_type: str | None) -> Any:
    """Coerce a workflow variable to its declared type (string, number, boolean, object, array)."""
    if value is None or var_type in (None, "plain"):
        return value

    if var_type == "string":
        return value if isinstance(value, str) else json.dumps(value)

    if var_type == "number":
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
        try:
            number = float(str(value).strip())
        except ValueError:
            logger.warning(f"Workflow variable value {value!r} is not a number, kept as-is")
            return value
        return int(number) if number.is_integer() else number

    if var_type == "boolean":
        if isinstance(value, str):
            return value.strip().lower() == "true"
        return bool(value)

    if var_type in ("object", "array"):
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                logger.warning(f"Workflow variable value {value!r} is not valid JSON, kept as-is")
        return value

    return value


def split_path(path: str) -> list[str]:
    """Split ``items[0].name`` into ``["items", "0", "name"]``."""
    return _SEGMENT_PATTERN.findall(path)


def walk_path(value: Any, segments: Sequence[str]) -> Any:
    """Follow segments through mappings and sequences; None when any step is missing."""
    current = value
    for segment in segments:
        if isinstance(current, Mapping):
            if segment not in current:
                return None
            current = current[segment]
        elif isinstance(current, (list, tuple)) and segment.lstrip("-").isdigit():
            index = int(segment)
            if not -len(current) <= index < len(current):
                return None
            current = current[index]
        else:
            return None
    return current


def stringify(value: Any) -> str:
    """Render a resolved value inside an interpolated string."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def references_block_error(template: Any, block: SerializedBlock) -> bool:
    """
    Check whether a template reads the ``error`` field of a block.

    Matches ``<blockId.error>`` and ``<Block Name.error>`` (also through
    ``.output.error``) anywhere inside strings, mappings, or lists.
    """
    if isinstance(template, Mapping):
        return any(references_block_error(value, block) for value in template.values())
    if isinstance(template, (list, tuple)):
        return any(references_block_error(item, block) for item in template)
    if not isinstance(template, str):
        return False

    name = normalize_block_name(block.display_name)
    for match in REFERENCE_PATTERN.finditer(template):
        head, _, path = match.group(1).partition(".")
        segments = split_path(path)
        if segments[:1] == ["output"]:
            segments = segments[1:]
        if segments[:1] != ["error"]:
            continue
        if head.strip() == block.id or normalize_block_name(head) == name:
            return True
    return False


class ReferenceResolver:
    """
    Resolves templates against a snapshot of run state.

    Example:
        resolver = ReferenceResolver.from_context(ctx)
        resolver.resolve("<Fetch Data.items>")        # -> [...] (native list)
        resolver.resolve("Got <fetchdata.count> rows")  # -> "Got 3 rows"
    """

    def __init__(
        self,
        block_outputs: Mapping[str, Any],
        name_index: Mapping[str, list[str]],
        environment_variables: Mapping[str, str] | None = None,
        workflow_variables: Mapping[str, Any] | None = None,
        scopes: Sequence[IterationScope] = (),
        block_ids: Collection[str] | None = None,
    ):
        self.block_outputs = block_outputs
        self.block_ids = set(block_ids) if block_ids is not None else set(block_outputs)
        self.name_index = name_index
        self.environment_variables = environment_variables or {}
        self.workflow_variables = {
            normalize_block_name(name): value for name, value in (workflow_variables or {}).items()
        }
        self.scopes = list(scopes)

    @classmethod
    def from_context(cls, ctx: ExecutionContext) -> ReferenceResolver:
        """Build a resolver over the current state of ctx."""
        return cls(
            block_outputs=ctx.block_outputs(),
            name_index=ctx.name_index,
            environment_variables=ctx.environment_variables,
            workflow_variables=ctx.workflow_variables,
            scopes=ctx.scopes,
            block_ids=ctx.workflow.block_map.keys(),
        )

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def resolve(self, template: Any) -> Any:
        """Resolve every reference inside template (str, dict, list, or scalar)."""
        if isinstance(template, str):
            return self.resolve_string(template)
        if isinstance(template, Mapping):
            return {key: self.resolve(value) for key, value in template.items()}
        if isinstance(template, (list, tuple)):
            return [self.resolve(item) for item in template]
        return template

    def resolve_string(self, text: str) -> Any:
        """Resolve one string template."""
        whole = REFERENCE_PATTERN.fullmatch(text)
        if whole:
            value = self.lookup(whole.group(1))
            return text if value is _MISSING else value

        whole_env = ENV_PATTERN.fullmatch(text)
        if whole_env:
            return self.environment_variables.get(whole_env.group(1))

        def replace_reference(match: re.Match[str]) -> str:
            value = self.lookup(match.group(1))
            return match.group(0) if value is _MISSING else stringify(value)

        def replace_env(match: re.Match[str]) -> str:
            return self.environment_variables.get(match.group(1), "")

        resolved = REFERENCE_PATTERN.sub(replace_reference, text)
        return ENV_PATTERN.sub(replace_env, resolved)

    def bind_expression(self, expression: str) -> tuple[str, dict[str, Any]]:
        """
        Replace references in an expression with generated variable names.

        Used for condition expressions: the referenced values are passed to
        the evaluator as variables instead of being pasted in as text.

        Returns:
            (rewritten expression, {variable name: value})
        """
        bindings: dict[str, Any] = {}
        names: dict[str, str] = {}

        def bind(key: str, value: Any) -> str:
            if key not in names:
                names[key] = f"ref__{len(names)}"
                bindings[names[key]] = value
            return names[key]

        def replace_reference(match: re.Match[str]) -> str:
            value = self.lookup(match.group(1))
            if value is _MISSING:
                return match.group(0)
            return bind(match.group(0), value)

        def replace_env(match: re.Match[str]) -> str:
            return bind(match.group(0), self.environment_variables.get(match.group(1)))

        rewritten = REFERENCE_PATTERN.sub(replace_reference, expression)
        return ENV_PATTERN.sub(replace_env, rewritten), bindings

    # ------------------------------------------------------------------
    # Single references
    # ------------------------------------------------------------------

    def lookup(self, reference: str) -> Any:
        """
        Resolve one reference body (text between < and >).

        Returns:
            The referenced value (None when missing), or the _MISSING sentinel
            when the head is not a known block, scope, or reserved name

        Raises:
            AmbiguousReferenceError: If a name matches more than one block
        """
        head, _, path = reference.partition(".")
        head = head.strip()
        segments = split_path(path)
        normalized = normalize_block_name(head)

        # 1. Iteration variables of enclosing loops/parallels (innermost first)
        for scope in reversed(self.scopes):
            if scope.variable and normalize_block_name(scope.variable) == normalized:
                return walk_path(scope.item, segments)

        # 2. Reserved scope heads
        if normalized in ("loop", "parallel"):
            scope = self._innermost(normalized)
            if scope is not None:
                return walk_path(scope.to_dict(), segments)

        # 3. Workflow variables
        if normalized == "variable":
            if not segments:
                return dict(self.workflow_variables)
            value = self.workflow_variables.get(normalize_block_name(segments[0]))
            return walk_path(value, segments[1:])

        # 4. Block id, then normalized block name
        block_id = self._find_block(head, normalized)
        if block_id is None:
            if normalized in ("loop", "parallel"):
                return None
            return _MISSING

        output = self.block_outputs.get(block_id)
        if output is None:
            return None
        if segments and segments[0] == "output" and isinstance(output, Mapping):
            if "output" not in output:
                segments = segments[1:]
        return walk_path(output, segments)

    def _innermost(self, kind: str) -> IterationScope | None:
        for scope in reversed(self.scopes):
            if scope.kind == kind:
                return scope
        return None

    def _find_block(self, head: str, normalized: str) -> str | None:
        if head in self.block_ids:
            return head
        candidates = self.name_index.get(normalized, [])
        if len(candidates) > 1:
            raise AmbiguousReferenceError(normalized, candidates)
        return candidates[0] if candidates else None
