"""
Unit tests for ConditionEvaluator.
"""
import pytest

from flowcore.core.exceptions import ConditionSyntaxError
from flowcore.flow.evaluator import ConditionEvaluator, evaluate_condition, is_present


EXPRESSIONS = [
    "has_physical_premises = true",
    "has_physical_premises = false",
    "(has_physical_premises = true) OR (ch1_contents_selected = true)",
    "(has_physical_premises = true) AND (ch1_contents_selected = true)",
    "a = true AND b = false AND c = true",
    "(a = true AND b = true) OR c = true",
    "business_legal_entity_type = 'עמותה'",
    "employees_count = 5",
    "ratio = 1.5",
    "tags includes 'office'",
    "business_site_type includes \"משרד\"",
    "(tags includes 'office') OR (employees_count = 5 AND a = true)",
    "class = 'x'",
    "_internal = true",
]

STATES = [
    {},
    {"has_physical_premises": False, "ch1_contents_selected": True},
    {"has_physical_premises": True, "ch1_contents_selected": True},
    {"has_physical_premises": "false", "ch1_contents_selected": "0"},
    {"has_physical_premises": "כן", "a": "yes", "b": "no", "c": True},
    {"a": True, "b": True, "c": False, "business_legal_entity_type": "עמותה"},
    {"employees_count": "5", "ratio": 1.5, "tags": ["office", "shop"]},
    {"employees_count": True, "tags": "home office", "business_site_type": "משרד ומחסן"},
    {"class": "x", "_internal": "true"},
    {"a": "null", "b": "", "c": "undefined", "has_physical_premises": None},
]


class TestConcreteConditions:
    """Tests for documented condition outcomes."""

    def test_or_condition_true_when_one_side_holds(self):
        """An OR of two groups is true when one side holds."""
        condition = "(has_physical_premises = true) OR (ch1_contents_selected = true)"
        state = {"has_physical_premises": False, "ch1_contents_selected": True}
        assert evaluate_condition(condition, state) is True

    def test_or_condition_false_when_both_false(self):
        """An OR of two groups is false when both sides are false."""
        condition = "(has_physical_premises = true) OR (ch1_contents_selected = true)"
        state = {"has_physical_premises": False, "ch1_contents_selected": False}
        assert evaluate_condition(condition, state) is False

    def test_blank_condition_passes(self):
        """Blank conditions always pass."""
        assert evaluate_condition("", {}) is True
        assert evaluate_condition("   ", {}) is True
        assert evaluate_condition(None, {}) is True

    def test_string_equality(self):
        """Quoted literals compare as strings."""
        state = {"business_legal_entity_type": "עמותה"}
        assert evaluate_condition("business_legal_entity_type = 'עמותה'", state)
        assert not evaluate_condition("business_legal_entity_type = 'שותפות'", state)

    def test_numeric_equality(self):
        """Numeric literals match numbers and numeric strings, never booleans."""
        assert evaluate_condition("employees_count = 5", {"employees_count": 5})
        assert evaluate_condition("employees_count = 5", {"employees_count": "5"})
        assert not evaluate_condition("employees_count = 1", {"employees_count": True})

    def test_includes_on_lists_and_strings(self):
        """includes checks list membership or substring."""
        assert evaluate_condition("tags includes 'office'", {"tags": ["office", "shop"]})
        assert evaluate_condition("tags includes 'office'", {"tags": "home office"})
        assert not evaluate_condition("tags includes 'office'", {"tags": 5})


class TestBooleanLikeValues:
    """Tests for boolean-like stored values."""

    @pytest.mark.parametrize("value", [True, "true", "1", "כן", "yes", "Y"])
    def test_truthy_values(self, value):
        """Stored truthy tokens satisfy `= true`."""
        assert evaluate_condition("flag = true", {"flag": value})
        assert not evaluate_condition("flag = false", {"flag": value})

    @pytest.mark.parametrize("value", [False, "false", "0", "לא", "no"])
    def test_falsy_values(self, value):
        """Stored falsy tokens satisfy `= false`."""
        assert evaluate_condition("flag = false", {"flag": value})
        assert not evaluate_condition("flag = true", {"flag": value})

    def test_false_is_present(self):
        """False is a present value, unlike None or placeholders."""
        assert is_present(False)
        assert is_present(0)
        assert not is_present(None)
        assert not is_present("  ")
        assert not is_present("null")


class TestUnknownIdentifiers:
    """Tests for identifiers missing from the state."""

    def test_missing_field_is_false(self):
        """Comparisons on missing fields evaluate to False."""
        assert evaluate_condition("missing = true", {}) is False
        assert evaluate_condition("missing = false", {}) is False
        assert evaluate_condition("missing = 'x'", {"other": "x"}) is False

    def test_missing_field_does_not_raise_in_compiled_form(self):
        """Compiled conditions also treat missing fields as False."""
        run = ConditionEvaluator.compile_function("missing includes 'x'")
        assert run({}) is False
        assert run(None) is False


class TestSyntax:
    """Tests for parsing and validation."""

    def test_mixed_and_or_requires_parentheses(self):
        """Mixing AND and OR at one level is a syntax error."""
        with pytest.raises(ConditionSyntaxError):
            ConditionEvaluator.parse("a = true AND b = true OR c = true")

    def test_mixed_and_or_evaluates_false(self):
        """An invalid expression evaluates to False at runtime."""
        state = {"a": True, "b": True, "c": True}
        assert evaluate_condition("a = true AND b = true OR c = true", state) is False

    def test_grouped_mix_is_valid(self):
        """Parentheses make a mix of AND and OR valid."""
        assert ConditionEvaluator.validate("(a = true AND b = true) OR c = true") == []

    @pytest.mark.parametrize("expression", [
        "a = ",
        "a == true",
        "= true",
        "(a = true",
        "a = true)",
        "a = true; b = true",
        "a includes 5",
        "שדה = true",
        "a = true AND",
    ])
    def test_invalid_expressions(self, expression):
        """Malformed expressions are reported by validate()."""
        assert ConditionEvaluator.validate(expression) != []
        with pytest.raises(ConditionSyntaxError):
            ConditionEvaluator.parse(expression)

    def test_referenced_fields(self):
        """Identifiers are listed once, in order of appearance."""
        fields = ConditionEvaluator.referenced_fields(
            "(a = true) OR (b includes 'x') OR (a = false)"
        )
        assert fields == ["a", "b"]

    def test_compile_output(self):
        """Compiled form calls the shared helpers on the state object."""
        compiled = ConditionEvaluator.compile("(a = true) OR (b includes 'x')")
        assert compiled == "(__truthy(state.a)) or (__includes(state.b, 'x'))"

    def test_compile_blank(self):
        """Blank conditions compile to True."""
        assert ConditionEvaluator.compile("") == "True"

    def test_keywords_use_item_access(self):
        """Python keywords and underscore names are read with state[...]"""
        assert "state['class']" in ConditionEvaluator.compile("class = 'x'")
        assert "state['_internal']" in ConditionEvaluator.compile("_internal = true")


class TestCompiledAgreement:
    """Compiled conditions must agree with the interpreter."""

    @pytest.mark.parametrize("expression", EXPRESSIONS)
    @pytest.mark.parametrize("state", STATES)
    def test_compiled_matches_interpreted(self, expression, state):
        """evaluate(compile(e), s) == evaluate(e, s)"""
        compiled = ConditionEvaluator.compile_function(expression)
        assert compiled(state) == ConditionEvaluator.evaluate(expression, state)

    def test_compiled_string_comparison(self):
        """Compiled conditions compare quoted literals."""
        run = ConditionEvaluator.compile_function("a = 'x'")
        assert run({"a": "x"}) is True
        assert run({"a": "y"}) is False
