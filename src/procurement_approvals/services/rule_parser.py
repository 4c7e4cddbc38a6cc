"""
Compile admin-authored rule strings into workflow rules.

Grammar (AND binds tighter than OR, keywords are case-insensitive):

    expr     := term ("OR" term)*
    term     := factor ("AND" factor)*
    factor   := "NOT" factor | "(" expr ")" | compare
    compare  := "amount" OP NUMBER
              | "urgency" ("=" | "!=") URGENCY
              | ("criticality" | "items") ("=" | "CONTAINS") CRITICALITY

Examples:
    "amount < 500 AND urgency = ROUTINE"
    "items CONTAINS SAFETY_CRITICAL OR amount >= 25000"

Actions are "AUTO_APPROVE", "REJECT", "ROUTE:<LEVEL>" or a bare level name.
"""

import re

from ..core.errors import ConfigurationError
from ..models import (
    AllOf,
    AmountCondition,
    AnyOf,
    ApprovalLevel,
    Condition,
    Criticality,
    CriticalityCondition,
    Not,
    RuleAction,
    RuleActionType,
    Urgency,
    UrgencyCondition,
    WorkflowRule,
)

_TOKEN_RE = re.compile(
    r"\s*(?:(?P<num>\d+(?:\.\d+)?)|(?P<op><=|>=|==|!=|<|>|=)|(?P<paren>[()])|(?P<word>[A-Za-z_][A-Za-z0-9_]*))"
)


def _tokenize(text: str) -> list[str]:
    tokens = []
    pos = 0
    text = text.strip()
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match or match.end() == pos:
            raise ConfigurationError(
                f"Unexpected character in rule condition at position {pos}: {text[pos:pos + 10]!r}",
                {"condition": text},
            )
        tokens.append(match.group(match.lastgroup))
        pos = match.end()
        # trailing whitespace
        while pos < len(text) and text[pos].isspace():
            pos += 1
    return tokens


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def _peek(self):
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self) -> str:
        token = self._peek()
        if token is None:
            self._fail("Unexpected end of condition")
        self.pos += 1
        return token

    def _keyword(self, word: str) -> bool:
        token = self._peek()
        if token is not None and token.upper() == word:
            self.pos += 1
            return True
        return False

    def _fail(self, message: str):
        raise ConfigurationError(message, {"condition": self.text, "position": self.pos})

    def parse(self) -> Condition:
        if not self.tokens:
            self._fail("Empty rule condition")
        node = self._expr()
        if self._peek() is not None:
            self._fail(f"Unexpected token '{self._peek()}'")
        return node

    def _expr(self) -> Condition:
        terms = [self._term()]
        while self._keyword("OR"):
            terms.append(self._term())
        return terms[0] if len(terms) == 1 else AnyOf(conditions=terms)

    def _term(self) -> Condition:
        factors = [self._factor()]
        while self._keyword("AND"):
            factors.append(self._factor())
        return factors[0] if len(factors) == 1 else AllOf(conditions=factors)

    def _factor(self) -> Condition:
        if self._keyword("NOT"):
            return Not(condition=self._factor())
        if self._peek() == "(":
            self.pos += 1
            node = self._expr()
            if self._next() != ")":
                self._fail("Missing closing parenthesis")
            return node
        return self._compare()

    def _compare(self) -> Condition:
        field = self._next().lower()

        if field == "amount":
            op = self._next()
            if op == "=":
                op = "=="
            if op not in ("<", "<=", ">", ">=", "==", "!="):
                self._fail(f"Invalid amount operator '{op}'")
            value = self._next()
            try:
                return AmountCondition(op=op, value=float(value))
            except ValueError:
                self._fail(f"Amount must be a number, got '{value}'")

        if field == "urgency":
            op = self._next()
            if op not in ("=", "==", "!="):
                self._fail(f"Invalid urgency operator '{op}'")
            urgency = self._enum(Urgency, self._next())
            node = UrgencyCondition(equals=urgency)
            return Not(condition=node) if op == "!=" else node

        if field in ("criticality", "items"):
            op = self._next()
            if op.upper() not in ("=", "==", "CONTAINS"):
                self._fail(f"Invalid criticality operator '{op}'")
            return CriticalityCondition(contains=self._enum(Criticality, self._next()))

        self._fail(f"Unknown rule field '{field}'")

    def _enum(self, enum_cls, token: str):
        try:
            return enum_cls(token.upper())
        except ValueError:
            allowed = ", ".join(m.value for m in enum_cls)
            self._fail(f"Unknown {enum_cls.__name__} '{token}' (expected one of: {allowed})")


def compile_condition(text: str) -> Condition:
    """
    Parse a rule condition string into a predicate tree.

    Raises:
        ConfigurationError: if the string is malformed
    """
    return _Parser(text).parse()


def compile_action(text: str) -> RuleAction:
    """Parse "AUTO_APPROVE", "REJECT", "ROUTE:LEVEL" or a bare level name."""
    raw = text.strip().upper()
    if raw == RuleActionType.AUTO_APPROVE.value:
        return RuleAction(type=RuleActionType.AUTO_APPROVE)
    if raw == RuleActionType.REJECT.value:
        return RuleAction(type=RuleActionType.REJECT)

    level_name = raw.split(":", 1)[1].strip() if raw.startswith("ROUTE:") else raw
    try:
        level = ApprovalLevel(level_name)
    except ValueError:
        raise ConfigurationError(f"Unknown rule action '{text}'", {"action": text})
    if level == ApprovalLevel.AUTO:
        return RuleAction(type=RuleActionType.AUTO_APPROVE)
    return RuleAction(type=RuleActionType.ROUTE, level=level)


def compile_rule(rule_id: str, priority: int, condition: str, action: str, description: str = "") -> WorkflowRule:
    """Build a WorkflowRule from its string form."""
    return WorkflowRule(
        id=rule_id,
        priority=priority,
        condition=compile_condition(condition),
        action=compile_action(action),
        description=description or condition,
    )
