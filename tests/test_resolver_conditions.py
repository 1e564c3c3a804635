"""Reference resolution, workflow variables, and condition expressions."""

import pytest

from blockflow.engine import AmbiguousReferenceError, IterationScope, ReferenceResolver
from blockflow.engine.conditions import (
    evaluate_condition,
    evaluate_expression,
    translate_js_operators,
)
from blockflow.engine.resolver import (
    coerce_variable,
    prepare_workflow_variables,
    references_block_error,
)
from blockflow.engine.serialized import SerializedBlock


@pytest.fixture
def resolver() -> ReferenceResolver:
    return ReferenceResolver(
        block_outputs={
            "fetch": {"status": 200, "items": [{"name": "a"}, {"name": "b"}], "title": "Report"},
            "agent": {"content": "hello", "output": None},
            "skipped": None,
        },
        name_index={"fetchdata": ["fetch"], "writer": ["agent"], "twin": ["t1", "t2"]},
        environment_variables={"API_KEY": "secret", "REGION": "eu"},
        workflow_variables={"Max Items": 3},
        block_ids={"fetch", "agent", "skipped", "t1", "t2", "later"},
    )


class TestReferenceForms:
    """Each reference form resolves to the expected value."""

    def test_whole_reference_keeps_type(self, resolver: ReferenceResolver):
        assert resolver.resolve("<fetch.items>") == [{"name": "a"}, {"name": "b"}]
        assert resolver.resolve("<fetch.status>") == 200

    def test_reference_by_display_name(self, resolver: ReferenceResolver):
        assert resolver.resolve("<Fetch Data.title>") == "Report"

    def test_indexed_path(self, resolver: ReferenceResolver):
        assert resolver.resolve("<fetch.items[1].name>") == "b"
        assert resolver.resolve("<fetch.items.0.name>") == "a"

    def test_output_segment_is_optional(self, resolver: ReferenceResolver):
        assert resolver.resolve("<fetch.output.status>") == 200

    def test_interpolation_renders_json(self, resolver: ReferenceResolver):
        text = resolver.resolve("Got <fetch.status> for <fetch.items[0]>")

        assert text == 'Got 200 for {"name": "a"}'

    def test_missing_values_resolve_to_none(self, resolver: ReferenceResolver):
        assert resolver.resolve("<fetch.nothing>") is None
        assert resolver.resolve("<later.value>") is None
        assert resolver.resolve("<skipped.value>") is None
        assert resolver.resolve("value: <later.value>") == "value: "

    def test_unknown_head_left_as_text(self, resolver: ReferenceResolver):
        assert resolver.resolve("<div>") == "<div>"
        assert resolver.resolve("a <nobody.x> b") == "a <nobody.x> b"

    def test_environment_variables(self, resolver: ReferenceResolver):
        assert resolver.resolve("{{API_KEY}}") == "secret"
        assert resolver.resolve("Bearer {{ API_KEY }} in {{REGION}}") == "Bearer secret in eu"
        assert resolver.resolve("{{UNSET}}") is None
        assert resolver.resolve("x{{UNSET}}y") == "xy"

    def test_workflow_variables(self, resolver: ReferenceResolver):
        assert resolver.resolve("<variable.maxitems>") == 3
        assert resolver.resolve("<variable>") == {"maxitems": 3}

    def test_nested_structures(self, resolver: ReferenceResolver):
        resolved = resolver.resolve({"a": ["<fetch.status>", {"b": "<writer.content>"}], "n": 1})

        assert resolved == {"a": [200, {"b": "hello"}], "n": 1}

    def test_block_id_starting_with_digit(self):
        block_id = "7c9e6679-7425-40de-944b-e07fc1f90ae7"
        resolver = ReferenceResolver(
            block_outputs={block_id: {"value": 42}}, name_index={"lookup": [block_id]}
        )

        assert resolver.resolve(f"<{block_id}.value>") == 42
        assert resolver.resolve(f"id {block_id}: <{block_id}.value>") == f"id {block_id}: 42"
        assert resolver.resolve("<404.value>") == "<404.value>"

    def test_ambiguous_name(self, resolver: ReferenceResolver):
        with pytest.raises(AmbiguousReferenceError) as exc_info:
            resolver.resolve("<Twin.value>")

        assert exc_info.value.candidates == ["t1", "t2"]

    def test_block_id_wins_over_ambiguous_name(self, resolver: ReferenceResolver):
        assert resolver.resolve("<t1.value>") is None


class TestIterationScopes:
    """Loop and parallel references inside sub-runs."""

    def scoped(self, *scopes: IterationScope) -> ReferenceResolver:
        return ReferenceResolver(block_outputs={}, name_index={}, scopes=scopes)

    def test_loop_fields(self):
        resolver = self.scoped(
            IterationScope(kind="loop", grouping_id="l1", index=1, item="b", items=["a", "b"])
        )

        assert resolver.resolve("<loop.index>") == 1
        assert resolver.resolve("<loop.currentItem>") == "b"
        assert resolver.resolve("<loop.items>") == ["a", "b"]

    def test_innermost_scope_wins(self):
        resolver = self.scoped(
            IterationScope(kind="loop", grouping_id="outer", index=0, item="x", variable="item"),
            IterationScope(kind="loop", grouping_id="inner", index=2, item="y", variable="item"),
        )

        assert resolver.resolve("<loop.index>") == 2
        assert resolver.resolve("<item>") == "y"

    def test_iteration_variable_path(self):
        resolver = self.scoped(
            IterationScope(
                kind="parallel", grouping_id="p1", index=0, item={"id": 7}, variable="doc"
            )
        )

        assert resolver.resolve("<doc.id>") == 7
        assert resolver.resolve("<parallel.currentItem.id>") == 7

    def test_scope_outside_iteration_is_none(self):
        assert self.scoped().resolve("<loop.index>") is None


class TestWorkflowVariables:
    """Editor variable records are flattened and typed."""

    def test_prepare_flattens_records(self):
        variables = prepare_workflow_variables(
            {
                "v1": {"name": "limit", "type": "number", "value": "10"},
                "v2": {"name": "flags", "type": "array", "value": "[1, 2]"},
                "plain": "kept",
            }
        )

        assert variables == {"limit": 10, "flags": [1, 2], "plain": "kept"}

    @pytest.mark.parametrize(
        ("value", "var_type", "expected"),
        [
            ("2.5", "number", 2.5),
            ("abc", "number", "abc"),
            ("TRUE", "boolean", True),
            ("no", "boolean", False),
            ({"a": 1}, "string", '{"a": 1}'),
            ('{"a": 1}', "object", {"a": 1}),
            ("{bad", "object", "{bad"),
            ("x", "plain", "x"),
            (None, "number", None),
        ],
    )
    def test_coerce_variable(self, value, var_type, expected):
        assert coerce_variable(value, var_type) == expected


class TestConditionExpressions:
    """Sandboxed evaluation of condition expressions."""

    def test_js_operators_translated_outside_strings(self):
        translated = translate_js_operators("a === 'x && y' && !b || c !== null")

        assert translated == "a == 'x && y'  and   not b  or  c != none"

    def test_reference_values_bound_not_pasted(self, resolver: ReferenceResolver):
        assert evaluate_condition("<fetch.status> === 200 && <fetch.items>|length > 1", resolver)
        assert evaluate_condition("<fetch.title> == 'Report'", resolver)
        assert not evaluate_condition("<writer.content> == 'bye'", resolver)

    def test_string_with_quotes_is_safe(self):
        resolver = ReferenceResolver(
            block_outputs={"in": {"text": "it's \" tricky"}}, name_index={}
        )

        assert evaluate_condition("<in.text>|length > 3", resolver)

    def test_missing_reference_compares_to_null(self, resolver: ReferenceResolver):
        assert evaluate_condition("<fetch.nothing> === null", resolver)
        assert evaluate_condition("<later.value> == undefined", resolver)

    def test_environment_variables_in_conditions(self, resolver: ReferenceResolver):
        assert evaluate_condition("{{REGION}} == 'eu'", resolver)

    def test_empty_expression_is_false(self, resolver: ReferenceResolver):
        assert evaluate_condition("", resolver) is False
        assert evaluate_condition("   ", resolver) is False

    def test_plain_literals(self, resolver: ReferenceResolver):
        assert evaluate_condition("true", resolver)
        assert not evaluate_condition("false", resolver)
        assert evaluate_condition("1 < 2", resolver)

    def test_syntax_error(self):
        with pytest.raises(ValueError, match="Invalid condition expression"):
            evaluate_expression("1 >", {})

    def test_undefined_name(self):
        with pytest.raises(ValueError, match="Cannot evaluate condition"):
            evaluate_expression("missing > 1", {})

    def test_type_error_becomes_value_error(self):
        with pytest.raises(ValueError, match="TypeError"):
            evaluate_expression("ref__0 > 0", {"ref__0": None})

    def test_missing_reference_in_comparison(self, resolver: ReferenceResolver):
        with pytest.raises(ValueError, match="Cannot evaluate condition"):
            evaluate_condition("<later.count> > 0", resolver)

    def test_sandbox_blocks_private_attributes(self):
        with pytest.raises(ValueError, match="Cannot evaluate condition"):
            evaluate_expression("value.__class__.__mro__", {"value": 1})


class TestErrorReferences:
    """Detection of templates that read a block's error field."""

    @pytest.fixture
    def failed_block(self) -> SerializedBlock:
        return SerializedBlock.model_validate(
            {"id": "9f1c", "metadata": {"id": "api", "name": "Call API"}}
        )

    @pytest.mark.parametrize(
        "template",
        [
            "<9f1c.error>",
            "<callapi.error> !== null",
            "<Call API.output.error>",
            '[{"id": "e", "title": "if", "value": "<Call API.error>"}]',
            [{"id": "e", "title": "if", "value": "<9f1c.error.message>"}],
        ],
    )
    def test_reads_error(self, failed_block: SerializedBlock, template):
        assert references_block_error(template, failed_block)

    @pytest.mark.parametrize(
        "template",
        ["<9f1c.value> === 1", "<other.error>", "<9f1c>", None, [{"value": 3}]],
    )
    def test_does_not_read_error(self, failed_block: SerializedBlock, template):
        assert not references_block_error(template, failed_block)
