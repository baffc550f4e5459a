"""
Condition Evaluator - Deterministic evaluation of flow gating conditions.

Conditions are small boolean expressions written by flow authors:

    has_physical_premises = true
    (has_physical_premises = true) OR (ch1_contents_selected = true)
    business_site_type includes 'משרד'

The grammar is closed and parsed explicitly - author strings are never handed
to eval(). The same parse tree can be interpreted directly (`evaluate`) or
rendered as a Python expression over a `state` object (`compile`); both paths
share the helper functions below so they cannot disagree.
"""
import re
import keyword
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from ..core.exceptions import ConditionSyntaxError

logger = logging.getLogger(__name__)


# =============================================================================
# VALUE HELPERS (shared by the interpreter and by compiled conditions)
# =============================================================================

class _Undefined:
    """Marker for identifiers missing from the state"""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNDEFINED"

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()

PLACEHOLDER_TOKENS = frozenset({"null", ":null", "undefined", ":undefined"})

# Boolean-like values persisted as strings (or numbered selects)
TRUE_TOKENS = frozenset({"true", "1", "כן", "חדש", "new", "y", "yes"})
FALSE_TOKENS = frozenset({"false", "0", "לא", "קיים", "existing", "n", "no"})


def is_present(value: Any) -> bool:
    """A value counts as present unless it is missing, blank or a placeholder. False is present."""
    if value is None or value is UNDEFINED:
        return False
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return False
        return stripped.lower() not in PLACEHOLDER_TOKENS
    if isinstance(value, (list, tuple, set)):
        return len(value) > 0
    return True


def _as_token(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip().lower()


def is_truthy(value: Any) -> bool:
    return is_present(value) and _as_token(value) in TRUE_TOKENS


def is_falsy(value: Any) -> bool:
    return is_present(value) and _as_token(value) in FALSE_TOKENS


def values_equal(actual: Any, expected: Any) -> bool:
    """`field = literal` semantics; never raises, absent values never match."""
    if not is_present(actual):
        return False
    if isinstance(expected, bool):
        return is_truthy(actual) if expected else is_falsy(actual)
    if isinstance(expected, (int, float)):
        if isinstance(actual, bool):
            return False
        try:
            return float(actual) == float(expected)
        except (TypeError, ValueError):
            return False
    if isinstance(actual, bool):
        return _as_token(actual) == str(expected)
    return str(actual).strip() == str(expected)


def includes(container: Any, needle: Any) -> bool:
    """`field includes 'x'`: list membership or substring; anything else is False."""
    if container is None or container is UNDEFINED:
        return False
    needle_text = "" if needle is None else str(needle)
    if not needle_text:
        return False
    if isinstance(container, (list, tuple, set)):
        return needle_text in [str(item) for item in container]
    if isinstance(container, str):
        return needle_text in container
    return False


class StateView:
    """Read-only attribute view used by compiled conditions (`state.field`)."""

    __slots__ = ("_data",)

    def __init__(self, data: Optional[Mapping[str, Any]]):
        object.__setattr__(self, "_data", data or {})

    def __getattr__(self, name: str) -> Any:
        return self._data.get(name, UNDEFINED)

    def __getitem__(self, name: str) -> Any:
        return self._data.get(name, UNDEFINED)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("condition state is read-only")


# =============================================================================
# PARSE TREE
# =============================================================================

Literal = Union[bool, int, float, str]


@dataclass(frozen=True)
class Comparison:
    field: str
    value: Literal


@dataclass(frozen=True)
class Includes:
    field: str
    value: str


@dataclass(frozen=True)
class Chain:
    operator: str  # "AND" | "OR"
    operands: Tuple["Node", ...]


@dataclass(frozen=True)
class Group:
    inner: "Node"


Node = Union[Comparison, Includes, Chain, Group]


# =============================================================================
# TOKENIZER
# =============================================================================

@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    position: int
    value: Any = None


TOKEN_PATTERNS: List[Tuple[str, re.Pattern]] = [
    ("SPACE", re.compile(r"\s+")),
    ("LPAREN", re.compile(r"\(")),
    ("RPAREN", re.compile(r"\)")),
    ("EQ", re.compile(r"=(?!=)")),
    ("STRING", re.compile(r"'([^']*)'|\"([^\"]*)\"")),
    ("NUMBER", re.compile(r"-?\d+(?:\.\d+)?(?![A-Za-z_])")),
    ("WORD", re.compile(r"[A-Za-z_][A-Za-z0-9_]*")),
]


def tokenize(expression: str) -> List[Token]:
    tokens: List[Token] = []
    position = 0
    length = len(expression)

    while position < length:
        for kind, pattern in TOKEN_PATTERNS:
            match = pattern.match(expression, position)
            if not match:
                continue
            text = match.group(0)
            if kind == "STRING":
                literal = match.group(1) if match.group(1) is not None else match.group(2)
                tokens.append(Token("STRING", text, position, literal))
            elif kind == "NUMBER":
                number: Union[int, float] = float(text) if "." in text else int(text)
                tokens.append(Token("NUMBER", text, position, number))
            elif kind == "WORD":
                if text in ("AND", "OR"):
                    tokens.append(Token(text, text, position))
                elif text.lower() == "includes":
                    tokens.append(Token("INCLUDES", text, position))
                elif text in ("true", "false"):
                    tokens.append(Token("BOOL", text, position, text == "true"))
                else:
                    tokens.append(Token("IDENT", text, position))
            elif kind != "SPACE":
                tokens.append(Token(kind, text, position))
            position = match.end()
            break
        else:
            raise ConditionSyntaxError(
                f"Unexpected character {expression[position]!r}", expression, position
            )

    return tokens


# =============================================================================
# PARSER
# =============================================================================

class _Parser:
    """Recursive descent parser for the condition grammar.

        expr    := term ((AND | OR) term)*     -- one connective per level
        term    := '(' expr ')' | atom
        atom    := IDENT '=' literal | IDENT includes STRING
        literal := true | false | STRING | NUMBER
    """

    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = tokenize(expression)
        self.index = 0

    def _peek(self) -> Optional[Token]:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _next(self, expected: str) -> Token:
        token = self._peek()
        if token is None:
            raise ConditionSyntaxError(f"Expected {expected} but the expression ended", self.expression)
        if token.kind != expected:
            raise ConditionSyntaxError(
                f"Expected {expected} but found {token.text!r}", self.expression, token.position
            )
        self.index += 1
        return token

    def parse(self) -> Node:
        if not self.tokens:
            raise ConditionSyntaxError("Empty condition", self.expression)
        node = self._expr()
        leftover = self._peek()
        if leftover is not None:
            raise ConditionSyntaxError(
                f"Unexpected {leftover.text!r}", self.expression, leftover.position
            )
        return node

    def _expr(self) -> Node:
        operands = [self._term()]
        operator: Optional[str] = None

        while True:
            token = self._peek()
            if token is None or token.kind not in ("AND", "OR"):
                break
            if operator is None:
                operator = token.kind
            elif token.kind != operator:
                raise ConditionSyntaxError(
                    "AND and OR cannot be mixed without parentheses",
                    self.expression,
                    token.position,
                )
            self.index += 1
            operands.append(self._term())

        if operator is None:
            return operands[0]
        return Chain(operator, tuple(operands))

    def _term(self) -> Node:
        token = self._peek()
        if token is not None and token.kind == "LPAREN":
            self.index += 1
            inner = self._expr()
            self._next("RPAREN")
            return Group(inner)
        return self._atom()

    def _atom(self) -> Node:
        field = self._next("IDENT").text
        token = self._peek()
        if token is None:
            raise ConditionSyntaxError(f"Expected '=' or includes after {field!r}", self.expression)

        if token.kind == "EQ":
            self.index += 1
            literal = self._peek()
            if literal is None or literal.kind not in ("BOOL", "STRING", "NUMBER"):
                position = literal.position if literal else None
                raise ConditionSyntaxError("Expected a literal after '='", self.expression, position)
            self.index += 1
            return Comparison(field, literal.value)

        if token.kind == "INCLUDES":
            self.index += 1
            return Includes(field, self._next("STRING").value)

        raise ConditionSyntaxError(
            f"Expected '=' or includes but found {token.text!r}", self.expression, token.position
        )


@lru_cache(maxsize=512)
def _parse_cached(expression: str) -> Node:
    return _Parser(expression).parse()


# =============================================================================
# EVALUATOR
# =============================================================================

class ConditionEvaluator:
    """
    Interprets and compiles flow conditions.

    All evaluation is pure Python over the parse tree - no LLM calls and no
    eval() of author-supplied text.
    """

    HELPERS: Dict[str, Callable[..., bool]] = {
        "__present": is_present,
        "__truthy": is_truthy,
        "__falsy": is_falsy,
        "__equals": values_equal,
        "__includes": includes,
    }

    @staticmethod
    def is_blank(expression: Optional[str]) -> bool:
        return expression is None or not str(expression).strip()

    @classmethod
    def parse(cls, expression: str) -> Node:
        """Parse an expression, raising ConditionSyntaxError on invalid input."""
        return _parse_cached(str(expression).strip())

    @classmethod
    def validate(cls, expression: Optional[str]) -> List[str]:
        """Return syntax problems for an expression (empty list if valid or blank)."""
        if cls.is_blank(expression):
            return []
        try:
            cls.parse(expression)
        except ConditionSyntaxError as e:
            return [str(e)]
        return []

    @classmethod
    def referenced_fields(cls, expression: Optional[str]) -> List[str]:
        """Identifiers referenced by an expression, in order of appearance."""
        if cls.is_blank(expression):
            return []
        found: List[str] = []

        def walk(node: Node) -> None:
            if isinstance(node, (Comparison, Includes)):
                if node.field not in found:
                    found.append(node.field)
            elif isinstance(node, Group):
                walk(node.inner)
            else:
                for operand in node.operands:
                    walk(operand)

        walk(cls.parse(expression))
        return found

    # ----- Interpretation -----

    @classmethod
    def evaluate(cls, expression: Optional[str], state: Optional[Mapping[str, Any]]) -> bool:
        """
        Evaluate a condition against a flat key-value state.

        Args:
            expression: Condition text; blank means "always pass"
            state: Collected user data

        Returns:
            True if the condition holds. Invalid expressions evaluate to False.
        """
        if cls.is_blank(expression):
            return True
        try:
            tree = cls.parse(expression)
        except ConditionSyntaxError as e:
            logger.warning(f"Failed to evaluate condition: {e}")
            return False
        return cls.evaluate_tree(tree, state or {})

    @classmethod
    def evaluate_tree(cls, node: Node, state: Mapping[str, Any]) -> bool:
        if isinstance(node, Comparison):
            return values_equal(state.get(node.field, UNDEFINED), node.value)
        if isinstance(node, Includes):
            return includes(state.get(node.field, UNDEFINED), node.value)
        if isinstance(node, Group):
            return cls.evaluate_tree(node.inner, state)
        if node.operator == "AND":
            return all(cls.evaluate_tree(operand, state) for operand in node.operands)
        return any(cls.evaluate_tree(operand, state) for operand in node.operands)

    # ----- Compilation -----

    @classmethod
    def compile(cls, expression: Optional[str]) -> str:
        """
        Render a condition as a Python expression over a namespaced `state`.

        Example:
            >>> ConditionEvaluator.compile("(a = true) OR (b includes 'x')")
            "(__truthy(state.a)) or (__includes(state.b, 'x'))"
        """
        if cls.is_blank(expression):
            return "True"
        return cls._render(cls.parse(expression))

    @classmethod
    def compile_function(cls, expression: Optional[str]) -> Callable[[Optional[Mapping[str, Any]]], bool]:
        """Build a callable from the compiled form, with only the shared helpers in scope."""
        source = cls.compile(expression)
        namespace: Dict[str, Any] = {"__builtins__": {}}
        namespace.update(cls.HELPERS)
        compiled = eval(f"lambda state: ({source})", namespace)  # noqa: S307 - generated from the parse tree

        def run(state: Optional[Mapping[str, Any]]) -> bool:
            return bool(compiled(StateView(state)))

        return run

    @classmethod
    def _render(cls, node: Node) -> str:
        if isinstance(node, Comparison):
            ref = cls._state_ref(node.field)
            if node.value is True:
                return f"__truthy({ref})"
            if node.value is False:
                return f"__falsy({ref})"
            return f"__equals({ref}, {node.value!r})"
        if isinstance(node, Includes):
            return f"__includes({cls._state_ref(node.field)}, {node.value!r})"
        if isinstance(node, Group):
            return f"({cls._render(node.inner)})"
        joiner = " and " if node.operator == "AND" else " or "
        return joiner.join(cls._render_operand(operand) for operand in node.operands)

    @classmethod
    def _render_operand(cls, node: Node) -> str:
        rendered = cls._render(node)
        if isinstance(node, Group):
            return rendered
        return f"({rendered})"

    @staticmethod
    def _state_ref(field: str) -> str:
        if keyword.iskeyword(field) or field.startswith("_"):
            return f"state[{field!r}]"
        return f"state.{field}"


# Default evaluator instance
evaluator = ConditionEvaluator()


def evaluate_condition(expression: Optional[str], state: Optional[Mapping[str, Any]]) -> bool:
    """Convenience wrapper around ConditionEvaluator.evaluate."""
    return evaluator.evaluate(expression, state)
