"""Pratt parser for the function-expression language."""

from typing import Optional

from conduit.exceptions import ExpressionSyntaxError
from conduit.expressions import nodes as n
from conduit.expressions.lexer import (
    EOF, IDENT, KEYWORD, NUM, PUNCT, STR, TEMPLATE, Lexer, Token,
)

# Binary operator binding powers
_BINARY = {
    "??": 4,
    "||": 5,
    "&&": 6,
    "==": 10, "!=": 10, "===": 10, "!==": 10,
    "<": 11, ">": 11, "<=": 11, ">=": 11, "in": 11,
    "+": 13, "-": 13,
    "*": 14, "/": 14, "%": 14,
    "**": 15,
}
_LOGICAL = frozenset({"&&", "||", "??"})
_ASSIGN = frozenset({"=", "+=", "-=", "*=", "/=", "%=", "**=", "??=", "&&=", "||="})
_UNARY_BP = 16
_CONDITIONAL_BP = 3


class Parser:
    """Parses one source string into an expression node.

    Arrow-function bodies may be a single expression or a block with
    ``const``/``let`` declarations, ``if``/``else``, loops and ``return``.
    """

    def __init__(self, source: str):
        self.source = source
        self.tokens = Lexer(source).tokenize()
        self.i = 0

    # ── token helpers ──

    @property
    def tok(self) -> Token:
        return self.tokens[self.i]

    def peek(self, offset: int = 1) -> Token:
        idx = min(self.i + offset, len(self.tokens) - 1)
        return self.tokens[idx]

    def advance(self) -> Token:
        tok = self.tokens[self.i]
        if tok.kind != EOF:
            self.i += 1
        return tok

    def error(self, message: str, tok: Optional[Token] = None) -> ExpressionSyntaxError:
        tok = tok or self.tok
        found = "end of input" if tok.kind == EOF else repr(tok.value)
        return ExpressionSyntaxError(
            f"{message} (found {found} at position {tok.pos})",
            expression=self.source,
            position=tok.pos,
        )

    def expect_punct(self, value: str) -> Token:
        if not self.tok.is_punct(value):
            raise self.error(f"Expected '{value}'")
        return self.advance()

    def accept_punct(self, value: str) -> bool:
        if self.tok.is_punct(value):
            self.advance()
            return True
        return False

    # ── entry points ──

    def parse(self) -> n.Node:
        node = self.parse_expression()
        self.accept_punct(";")
        if self.tok.kind != EOF:
            raise self.error("Unexpected trailing input")
        return node

    def parse_expression(self, min_bp: int = 0) -> n.Node:
        return self._parse_bp(min_bp)

    # ── expressions ──

    def _parse_bp(self, min_bp: int) -> n.Node:
        left = self._parse_prefix()
        while True:
            tok = self.tok
            if tok.kind == PUNCT and tok.value in _ASSIGN:
                if min_bp > 2:
                    break
                if not isinstance(left, (n.Identifier, n.Member)):
                    raise self.error("Invalid assignment target", tok)
                self.advance()
                left = n.Assign(tok.value, left, self._parse_bp(2), pos=tok.pos)
                continue
            if tok.is_punct("?"):
                if min_bp > _CONDITIONAL_BP:
                    break
                self.advance()
                consequent = self._parse_bp(2)
                self.expect_punct(":")
                alternate = self._parse_bp(2)
                left = n.Conditional(left, consequent, alternate, pos=tok.pos)
                continue
            op = tok.value if tok.kind == PUNCT or tok.is_keyword("in") else None
            bp = _BINARY.get(op) if op else None
            if bp is None or bp < min_bp:
                break
            self.advance()
            # ** is right-associative
            right = self._parse_bp(bp if op == "**" else bp + 1)
            cls = n.Logical if op in _LOGICAL else n.Binary
            left = cls(op, left, right, pos=tok.pos)
        return left

    def _parse_prefix(self) -> n.Node:
        tok = self.tok
        if tok.is_punct("!", "-", "+") or tok.is_keyword("typeof"):
            self.advance()
            return n.Unary(tok.value, self._parse_bp(_UNARY_BP), pos=tok.pos)
        if tok.is_punct("++", "--"):
            self.advance()
            target = self._parse_bp(_UNARY_BP)
            self._check_update_target(target, tok)
            return n.Update(tok.value, True, target, pos=tok.pos)
        if self._at_arrow():
            return self._parse_arrow()
        node = self._parse_postfix(self._parse_primary())
        if self.tok.is_punct("++", "--"):
            op = self.advance()
            self._check_update_target(node, op)
            return n.Update(op.value, False, node, pos=op.pos)
        return node

    def _check_update_target(self, target: n.Node, tok: Token) -> None:
        if not isinstance(target, (n.Identifier, n.Member)):
            raise self.error("Invalid update target", tok)

    def _parse_postfix(self, node: n.Node) -> n.Node:
        has_optional = False
        while True:
            tok = self.tok
            if tok.is_punct("."):
                self.advance()
                name = self.advance()
                if name.kind not in (IDENT, KEYWORD):
                    raise self.error("Expected property name", name)
                node = n.Member(node, name.value, False, pos=tok.pos)
            elif tok.is_punct("?."):
                self.advance()
                has_optional = True
                if self.tok.is_punct("("):
                    node = n.Call(node, self._parse_arguments(), optional=True, pos=tok.pos)
                elif self.tok.is_punct("["):
                    self.advance()
                    prop = self.parse_expression()
                    self.expect_punct("]")
                    node = n.Member(node, prop, True, optional=True, pos=tok.pos)
                else:
                    name = self.advance()
                    if name.kind not in (IDENT, KEYWORD):
                        raise self.error("Expected property name", name)
                    node = n.Member(node, name.value, False, optional=True, pos=tok.pos)
            elif tok.is_punct("["):
                self.advance()
                prop = self.parse_expression()
                self.expect_punct("]")
                node = n.Member(node, prop, True, pos=tok.pos)
            elif tok.is_punct("("):
                node = n.Call(node, self._parse_arguments(), pos=tok.pos)
            elif tok.kind == TEMPLATE:
                raise self.error("Tagged templates are not supported", tok)
            else:
                break
        return n.OptionalChain(node, pos=node.pos) if has_optional else node

    def _parse_arguments(self) -> list:
        self.expect_punct("(")
        args = []
        while not self.tok.is_punct(")"):
            if self.tok.is_punct("..."):
                spread = self.advance()
                args.append(n.Spread(self.parse_expression(2), pos=spread.pos))
            else:
                args.append(self.parse_expression(2))
            if not self.accept_punct(","):
                break
        self.expect_punct(")")
        return args

    def _parse_primary(self) -> n.Node:
        tok = self.tok
        if tok.kind == NUM or tok.kind == STR:
            self.advance()
            return n.Literal(tok.value, pos=tok.pos)
        if tok.kind == TEMPLATE:
            self.advance()
            return self._build_template(tok)
        if tok.kind == IDENT:
            self.advance()
            return n.Identifier(tok.value, pos=tok.pos)
        if tok.kind == KEYWORD:
            if tok.value in ("true", "false"):
                self.advance()
                return n.Literal(tok.value == "true", pos=tok.pos)
            if tok.value == "null":
                self.advance()
                return n.Literal(None, pos=tok.pos)
            if tok.value == "undefined":
                self.advance()
                return n.Identifier("undefined", pos=tok.pos)
            if tok.value in ("function", "new"):
                raise self.error(f"'{tok.value}' is not supported; use arrow functions and literals")
            raise self.error("Unexpected keyword")
        if tok.is_punct("("):
            self.advance()
            expr = self.parse_expression()
            self.expect_punct(")")
            return expr
        if tok.is_punct("["):
            return self._parse_array_literal()
        if tok.is_punct("{"):
            return self._parse_object_literal()
        raise self.error("Unexpected token")

    def _build_template(self, tok: Token) -> n.TemplateLiteral:
        parts = []
        for part in tok.value:
            if part[0] == "text":
                parts.append(part[1])
            else:
                sub = Parser(part[1])
                try:
                    parts.append(sub.parse())
                except ExpressionSyntaxError as exc:
                    raise ExpressionSyntaxError(
                        f"In template expression: {exc}",
                        expression=self.source,
                        position=part[2],
                    ) from exc
        return n.TemplateLiteral(parts, pos=tok.pos)

    def _parse_array_literal(self) -> n.ArrayLiteral:
        start = self.expect_punct("[")
        elements = []
        while not self.tok.is_punct("]"):
            if self.tok.is_punct("..."):
                spread = self.advance()
                elements.append(n.Spread(self.parse_expression(2), pos=spread.pos))
            else:
                elements.append(self.parse_expression(2))
            if not self.accept_punct(","):
                break
        self.expect_punct("]")
        return n.ArrayLiteral(elements, pos=start.pos)

    def _parse_object_literal(self) -> n.ObjectLiteral:
        start = self.expect_punct("{")
        props = []
        while not self.tok.is_punct("}"):
            tok = self.tok
            if tok.is_punct("..."):
                self.advance()
                props.append(n.Spread(self.parse_expression(2), pos=tok.pos))
            elif tok.is_punct("["):
                self.advance()
                key = self.parse_expression()
                self.expect_punct("]")
                self.expect_punct(":")
                props.append(n.Property(key, self.parse_expression(2), computed=True, pos=tok.pos))
            elif tok.kind in (IDENT, KEYWORD, STR, NUM):
                self.advance()
                key = str(tok.value)
                if self.accept_punct(":"):
                    props.append(n.Property(key, self.parse_expression(2), pos=tok.pos))
                elif tok.kind == IDENT:
                    props.append(n.Property(key, n.Identifier(key, pos=tok.pos), pos=tok.pos))
                else:
                    raise self.error("Expected ':' after property key")
            else:
                raise self.error("Invalid object literal key")
            if not self.accept_punct(","):
                break
        self.expect_punct("}")
        return n.ObjectLiteral(props, pos=start.pos)

    # ── arrow functions and patterns ──

    def _at_arrow(self) -> bool:
        tok = self.tok
        if tok.kind == IDENT and self.peek().is_punct("=>"):
            return True
        if not tok.is_punct("("):
            return False
        depth = 0
        j = self.i
        while j < len(self.tokens):
            t = self.tokens[j]
            if t.kind == EOF:
                return False
            if t.is_punct("(", "[", "{"):
                depth += 1
            elif t.is_punct(")", "]", "}"):
                depth -= 1
                if depth == 0:
                    nxt = self.tokens[j + 1] if j + 1 < len(self.tokens) else t
                    return nxt.is_punct("=>")
            j += 1
        return False

    def _parse_arrow(self) -> n.Arrow:
        start = self.tok
        if start.kind == IDENT:
            self.advance()
            params = [n.Param(n.Identifier(start.value, pos=start.pos), pos=start.pos)]
        else:
            self.expect_punct("(")
            params = []
            while not self.tok.is_punct(")"):
                params.append(self._parse_param())
                if not self.accept_punct(","):
                    break
            self.expect_punct(")")
        self.expect_punct("=>")
        if self.tok.is_punct("{"):
            body = self._parse_block()
        else:
            body = self.parse_expression(2)
        end = self.tok.pos if self.tok.kind != EOF else len(self.source)
        return n.Arrow(params, body, source=self.source[start.pos:end].strip(), pos=start.pos)

    def _parse_param(self) -> n.Param:
        tok = self.tok
        rest = self.accept_punct("...")
        target = self._parse_binding_target()
        default = None
        if not rest and self.accept_punct("="):
            default = self.parse_expression(2)
        return n.Param(target, default, rest, pos=tok.pos)

    def _parse_binding_target(self) -> n.Node:
        tok = self.tok
        if tok.kind == IDENT:
            self.advance()
            return n.Identifier(tok.value, pos=tok.pos)
        if tok.is_punct("{"):
            self.advance()
            entries = []
            rest = None
            while not self.tok.is_punct("}"):
                if self.accept_punct("..."):
                    name = self.advance()
                    if name.kind != IDENT:
                        raise self.error("Expected identifier after '...'", name)
                    rest = name.value
                    break
                key_tok = self.advance()
                if key_tok.kind not in (IDENT, KEYWORD, STR):
                    raise self.error("Invalid destructuring key", key_tok)
                key = str(key_tok.value)
                if self.accept_punct(":"):
                    target = self._parse_binding_target()
                else:
                    if key_tok.kind != IDENT:
                        raise self.error("Expected ':' in destructuring pattern", key_tok)
                    target = n.Identifier(key, pos=key_tok.pos)
                default = self.parse_expression(2) if self.accept_punct("=") else None
                entries.append((key, n.Param(target, default, pos=key_tok.pos)))
                if not self.accept_punct(","):
                    break
            self.expect_punct("}")
            return n.ObjectPattern(entries, rest, pos=tok.pos)
        if tok.is_punct("["):
            self.advance()
            elements = []
            while not self.tok.is_punct("]"):
                if self.tok.is_punct(","):
                    self.advance()
                    elements.append(None)
                    continue
                elements.append(self._parse_param())
                if not self.accept_punct(","):
                    break
            self.expect_punct("]")
            return n.ArrayPattern(elements, pos=tok.pos)
        raise self.error("Expected binding name")

    # ── statements ──

    def _parse_block(self) -> n.Block:
        start = self.expect_punct("{")
        body = []
        while not self.tok.is_punct("}"):
            if self.tok.kind == EOF:
                raise self.error("Unterminated block")
            body.append(self._parse_statement())
        self.expect_punct("}")
        return n.Block(body, pos=start.pos)

    def _end_statement(self) -> None:
        self.accept_punct(";")

    def _parse_statement(self) -> n.Node:
        tok = self.tok
        if tok.is_punct("{"):
            return self._parse_block()
        if tok.is_punct(";"):
            self.advance()
            return n.Block([], pos=tok.pos)
        if tok.is_keyword("const", "let", "var"):
            decl = self._parse_var_decl()
            self._end_statement()
            return decl
        if tok.is_keyword("return"):
            self.advance()
            arg = None
            if not self.tok.is_punct(";", "}") and self.tok.kind != EOF:
                arg = self.parse_expression()
            self._end_statement()
            return n.Return(arg, pos=tok.pos)
        if tok.is_keyword("if"):
            self.advance()
            self.expect_punct("(")
            test = self.parse_expression()
            self.expect_punct(")")
            consequent = self._parse_statement()
            alternate = None
            if self.tok.is_keyword("else"):
                self.advance()
                alternate = self._parse_statement()
            return n.If(test, consequent, alternate, pos=tok.pos)
        if tok.is_keyword("for"):
            return self._parse_for()
        if tok.is_keyword("while"):
            self.advance()
            self.expect_punct("(")
            test = self.parse_expression()
            self.expect_punct(")")
            return n.While(test, self._parse_statement(), pos=tok.pos)
        if tok.is_keyword("break"):
            self.advance()
            self._end_statement()
            return n.Break(pos=tok.pos)
        if tok.is_keyword("continue"):
            self.advance()
            self._end_statement()
            return n.Continue(pos=tok.pos)
        expr = self.parse_expression()
        self._end_statement()
        return n.ExprStmt(expr, pos=tok.pos)

    def _parse_var_decl(self) -> n.VarDecl:
        kind = self.advance()
        declarations = []
        while True:
            target = self._parse_binding_target()
            init = self.parse_expression(2) if self.accept_punct("=") else None
            if init is None and kind.value == "const":
                raise self.error("Missing initializer in const declaration")
            declarations.append((target, init))
            if not self.accept_punct(","):
                break
        return n.VarDecl(kind.value, declarations, pos=kind.pos)

    def _parse_for(self) -> n.Node:
        start = self.advance()
        self.expect_punct("(")
        if self.tok.is_keyword("const", "let", "var"):
            nxt = self.peek()
            after = self.peek(2)
            if nxt.kind == IDENT and after.is_keyword("of", "in"):
                kind = self.advance().value
                target = n.Identifier(self.advance().value, pos=nxt.pos)
                over_keys = self.advance().value == "in"
                iterable = self.parse_expression()
                self.expect_punct(")")
                body = self._parse_statement()
                return n.ForEach(kind, target, iterable, body, over_keys, pos=start.pos)
            if nxt.is_punct("{", "["):
                kind = self.advance().value
                target = self._parse_binding_target()
                if not self.tok.is_keyword("of", "in"):
                    raise self.error("Expected 'of' or 'in'")
                over_keys = self.advance().value == "in"
                iterable = self.parse_expression()
                self.expect_punct(")")
                body = self._parse_statement()
                return n.ForEach(kind, target, iterable, body, over_keys, pos=start.pos)
            init = self._parse_var_decl()
        elif self.tok.is_punct(";"):
            init = None
        else:
            init = n.ExprStmt(self.parse_expression())
        self.expect_punct(";")
        test = None if self.tok.is_punct(";") else self.parse_expression()
        self.expect_punct(";")
        update = None if self.tok.is_punct(")") else self.parse_expression()
        self.expect_punct(")")
        body = self._parse_statement()
        return n.For(init, test, update, body, pos=start.pos)


def parse(source: str) -> n.Node:
    """Parse *source* into a single expression node."""
    return Parser(source).parse()
