"""AST node classes produced by the expression parser."""

from typing import Any, Optional


class Node:
    __slots__ = ("pos",)

    def __init__(self, pos: int = 0):
        self.pos = pos


# ── Expressions ──

class Literal(Node):
    __slots__ = ("value",)

    def __init__(self, value: Any, pos: int = 0):
        super().__init__(pos)
        self.value = value


class TemplateLiteral(Node):
    __slots__ = ("parts",)

    def __init__(self, parts: list, pos: int = 0):
        super().__init__(pos)
        self.parts = parts          # str or Node, in order


class Identifier(Node):
    __slots__ = ("name",)

    def __init__(self, name: str, pos: int = 0):
        super().__init__(pos)
        self.name = name


class Spread(Node):
    __slots__ = ("argument",)

    def __init__(self, argument: Node, pos: int = 0):
        super().__init__(pos)
        self.argument = argument


class ArrayLiteral(Node):
    __slots__ = ("elements",)

    def __init__(self, elements: list, pos: int = 0):
        super().__init__(pos)
        self.elements = elements


class Property(Node):
    __slots__ = ("key", "value", "computed")

    def __init__(self, key: Any, value: Node, computed: bool = False, pos: int = 0):
        super().__init__(pos)
        self.key = key              # str, or Node when computed
        self.value = value
        self.computed = computed


class ObjectLiteral(Node):
    __slots__ = ("properties",)

    def __init__(self, properties: list, pos: int = 0):
        super().__init__(pos)
        self.properties = properties    # Property or Spread


class Member(Node):
    __slots__ = ("obj", "prop", "computed", "optional")

    def __init__(self, obj: Node, prop: Any, computed: bool, optional: bool = False, pos: int = 0):
        super().__init__(pos)
        self.obj = obj
        self.prop = prop            # str, or Node when computed
        self.computed = computed
        self.optional = optional


class Call(Node):
    __slots__ = ("callee", "args", "optional")

    def __init__(self, callee: Node, args: list, optional: bool = False, pos: int = 0):
        super().__init__(pos)
        self.callee = callee
        self.args = args
        self.optional = optional


class OptionalChain(Node):
    __slots__ = ("expression",)

    def __init__(self, expression: Node, pos: int = 0):
        super().__init__(pos)
        self.expression = expression


class Unary(Node):
    __slots__ = ("op", "operand")

    def __init__(self, op: str, operand: Node, pos: int = 0):
        super().__init__(pos)
        self.op = op
        self.operand = operand


class Update(Node):
    __slots__ = ("op", "prefix", "target")

    def __init__(self, op: str, prefix: bool, target: Node, pos: int = 0):
        super().__init__(pos)
        self.op = op
        self.prefix = prefix
        self.target = target


class Binary(Node):
    __slots__ = ("op", "left", "right")

    def __init__(self, op: str, left: Node, right: Node, pos: int = 0):
        super().__init__(pos)
        self.op = op
        self.left = left
        self.right = right


class Logical(Binary):
    __slots__ = ()


class Conditional(Node):
    __slots__ = ("test", "consequent", "alternate")

    def __init__(self, test: Node, consequent: Node, alternate: Node, pos: int = 0):
        super().__init__(pos)
        self.test = test
        self.consequent = consequent
        self.alternate = alternate


class Assign(Node):
    __slots__ = ("op", "target", "value")

    def __init__(self, op: str, target: Node, value: Node, pos: int = 0):
        super().__init__(pos)
        self.op = op
        self.target = target
        self.value = value


class Param(Node):
    __slots__ = ("target", "default", "rest")

    def __init__(self, target: Node, default: Optional[Node] = None, rest: bool = False, pos: int = 0):
        super().__init__(pos)
        self.target = target        # Identifier or a pattern
        self.default = default
        self.rest = rest


class ObjectPattern(Node):
    __slots__ = ("entries", "rest")

    def __init__(self, entries: list, rest: Optional[str] = None, pos: int = 0):
        super().__init__(pos)
        self.entries = entries      # list of (key, Param)
        self.rest = rest


class ArrayPattern(Node):
    __slots__ = ("elements",)

    def __init__(self, elements: list, pos: int = 0):
        super().__init__(pos)
        self.elements = elements    # Param or None for holes


class Arrow(Node):
    __slots__ = ("params", "body", "source")

    def __init__(self, params: list, body: Node, source: str = "", pos: int = 0):
        super().__init__(pos)
        self.params = params
        self.body = body            # expression node or Block
        self.source = source


# ── Statements ──

class Block(Node):
    __slots__ = ("body",)

    def __init__(self, body: list, pos: int = 0):
        super().__init__(pos)
        self.body = body


class VarDecl(Node):
    __slots__ = ("kind", "declarations")

    def __init__(self, kind: str, declarations: list, pos: int = 0):
        super().__init__(pos)
        self.kind = kind
        self.declarations = declarations    # list of (target, init or None)


class Return(Node):
    __slots__ = ("argument",)

    def __init__(self, argument: Optional[Node], pos: int = 0):
        super().__init__(pos)
        self.argument = argument


class If(Node):
    __slots__ = ("test", "consequent", "alternate")

    def __init__(self, test: Node, consequent: Node, alternate: Optional[Node], pos: int = 0):
        super().__init__(pos)
        self.test = test
        self.consequent = consequent
        self.alternate = alternate


class ExprStmt(Node):
    __slots__ = ("expression",)

    def __init__(self, expression: Node, pos: int = 0):
        super().__init__(pos)
        self.expression = expression


class ForEach(Node):
    """``for (const x of items)`` and ``for (const k in obj)``."""
    __slots__ = ("kind", "target", "iterable", "body", "over_keys")

    def __init__(self, kind: str, target: Node, iterable: Node, body: Node, over_keys: bool, pos: int = 0):
        super().__init__(pos)
        self.kind = kind
        self.target = target
        self.iterable = iterable
        self.body = body
        self.over_keys = over_keys


class For(Node):
    __slots__ = ("init", "test", "update", "body")

    def __init__(self, init: Optional[Node], test: Optional[Node], update: Optional[Node], body: Node, pos: int = 0):
        super().__init__(pos)
        self.init = init
        self.test = test
        self.update = update
        self.body = body


class While(Node):
    __slots__ = ("test", "body")

    def __init__(self, test: Node, body: Node, pos: int = 0):
        super().__init__(pos)
        self.test = test
        self.body = body


class Break(Node):
    __slots__ = ()


class Continue(Node):
    __slots__ = ()
