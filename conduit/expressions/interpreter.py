"""Budgeted tree-walking interpreter for parsed expressions.

Every node visit costs one step. Evaluation stops with SandboxTimeoutError
when either the step budget or the wall-clock deadline runs out, so a
runaway ``while (true) {}`` in a tool document cannot hang a run.
"""

import math
import time
from typing import Any, Optional

from conduit.config import config
from conduit.exceptions import ExpressionError, ResolutionError, SandboxTimeoutError
from conduit.expressions import nodes as n
from conduit.expressions.builtins import get_method, make_globals
from conduit.expressions.values import (
    NAN, UNDEFINED, Function, compare, is_callable, is_nullish, is_number,
    loose_equals, normalize_number, strict_equals, to_number, to_property_key,
    to_string, truthy, type_of,
)

MAX_CALL_DEPTH = 48
_CLOCK_CHECK_MASK = 0xFF    # consult the clock every 256 steps


class _Return(Exception):
    def __init__(self, value: Any):
        self.value = value


class _Break(Exception):
    pass


class _Continue(Exception):
    pass


class _ShortCircuit(Exception):
    """Raised inside an optional chain when ``?.`` meets null/undefined."""


class Scope:
    __slots__ = ("vars", "consts", "parent")

    def __init__(self, parent: Optional["Scope"] = None, variables: Optional[dict] = None):
        self.vars: dict[str, Any] = variables if variables is not None else {}
        self.consts: set[str] = set()
        self.parent = parent

    def find(self, name: str) -> Optional["Scope"]:
        scope = self
        while scope is not None:
            if name in scope.vars:
                return scope
            scope = scope.parent
        return None

    def declare(self, name: str, value: Any, const: bool = False) -> None:
        self.vars[name] = value
        if const:
            self.consts.add(name)


class Closure(Function):
    """An arrow function value, closed over its defining scope."""
    __slots__ = ("node", "scope", "name")

    def __init__(self, node: n.Arrow, scope: Scope, name: str = "anonymous"):
        self.node = node
        self.scope = scope
        self.name = name

    def invoke(self, interp: "Interpreter", args: list) -> Any:
        return interp.call_closure(self, args)

    def __repr__(self) -> str:
        return f"<function {self.name}>"


class Interpreter:
    """Evaluates one expression against a fresh global scope.

    Not reusable across evaluations: the step counter and deadline are
    per instance.
    """

    def __init__(self, source: str, timeout_ms: int, max_steps: int, max_size: Optional[int] = None):
        self.source = source
        self.timeout_ms = timeout_ms
        self.max_steps = max_steps
        self.max_size = max_size if max_size is not None else config.expression_max_size
        self.deadline = time.monotonic() + timeout_ms / 1000.0
        self.steps = 0
        self.depth = 0
        self.globals = Scope(variables=make_globals())

    # ── budget and errors ──

    def tick(self, cost: int = 1) -> None:
        """Charge *cost* steps. Built-ins that allocate charge their result size."""
        self.steps += max(cost, 1)
        if self.steps > self.max_steps:
            raise SandboxTimeoutError(
                f"Expression exceeded its step budget of {self.max_steps} operations",
                expression=self.source,
                timeout_seconds=self.timeout_ms / 1000.0,
            )
        if (cost > 1 or not self.steps & _CLOCK_CHECK_MASK) and time.monotonic() > self.deadline:
            raise SandboxTimeoutError(
                f"Expression timed out after {self.timeout_ms}ms",
                expression=self.source,
                timeout_seconds=self.timeout_ms / 1000.0,
            )

    def check_size(self, size: int) -> int:
        """Refuse to build a string or array longer than ``max_size``."""
        if size > self.max_size:
            raise SandboxTimeoutError(
                f"Expression tried to build a value of {size} items; the limit is {self.max_size}",
                expression=self.source,
                timeout_seconds=self.timeout_ms / 1000.0,
            )
        return size

    def type_error(self, message: str) -> ExpressionError:
        return ExpressionError(f"TypeError: {message}", expression=self.source)

    def _unreadable(self, obj: Any, key: Any, verb: str = "read") -> ResolutionError:
        return ResolutionError(
            f"Cannot {verb} properties of {to_string(obj)} (reading '{to_string(key)}')",
            expression=self.source,
        )

    # ── calls ──

    def call(self, fn: Any, args: list) -> Any:
        if not is_callable(fn):
            raise self.type_error(f"{to_string(fn)} is not a function")
        self.tick()
        return fn.invoke(self, args)

    def call_closure(self, closure: Closure, args: list) -> Any:
        self.depth += 1
        if self.depth > MAX_CALL_DEPTH:
            self.depth -= 1
            raise SandboxTimeoutError(
                f"Maximum call depth of {MAX_CALL_DEPTH} exceeded",
                expression=self.source,
                timeout_seconds=self.timeout_ms / 1000.0,
            )
        try:
            scope = Scope(parent=closure.scope)
            for index, param in enumerate(closure.node.params):
                if param.rest:
                    value = list(args[index:])
                else:
                    value = args[index] if index < len(args) else UNDEFINED
                    if value is UNDEFINED and param.default is not None:
                        value = self.eval(param.default, scope)
                self.bind(param.target, value, scope, declare=True)
            body = closure.node.body
            if isinstance(body, n.Block):
                try:
                    self.exec_block(body.body, scope)
                except _Return as ret:
                    return ret.value
                return UNDEFINED
            return self.eval(body, scope)
        finally:
            self.depth -= 1

    # ── expressions ──

    def eval(self, node: n.Node, scope: Scope) -> Any:
        self.tick()
        method = _EVALUATORS.get(type(node))
        if method is None:
            raise self.type_error(f"Unsupported expression {type(node).__name__}")
        return method(self, node, scope)

    def _eval_literal(self, node: n.Literal, scope: Scope) -> Any:
        return node.value

    def _eval_template(self, node: n.TemplateLiteral, scope: Scope) -> str:
        parts = [
            part if isinstance(part, str) else to_string(self.eval(part, scope))
            for part in node.parts
        ]
        self.check_size(sum(map(len, parts)))
        return "".join(parts)

    def _eval_identifier(self, node: n.Identifier, scope: Scope) -> Any:
        owner = scope.find(node.name)
        if owner is None:
            raise ResolutionError(f"{node.name} is not defined", expression=self.source)
        return owner.vars[node.name]

    def _eval_array(self, node: n.ArrayLiteral, scope: Scope) -> list:
        out = []
        for element in node.elements:
            if isinstance(element, n.Spread):
                out.extend(self._iterate(self.eval(element.argument, scope)))
                self.check_size(len(out))
            else:
                out.append(self.eval(element, scope))
        return out

    def _eval_object(self, node: n.ObjectLiteral, scope: Scope) -> dict:
        out: dict[str, Any] = {}
        for prop in node.properties:
            if isinstance(prop, n.Spread):
                value = self.eval(prop.argument, scope)
                if isinstance(value, dict):
                    out.update(value)
                elif isinstance(value, (list, str)):
                    out.update({str(i): v for i, v in enumerate(value)})
                continue
            key = to_property_key(self.eval(prop.key, scope)) if prop.computed else prop.key
            value = self.eval(prop.value, scope)
            if isinstance(value, Closure) and value.name == "anonymous":
                value.name = key
            out[key] = value
        return out

    def _eval_member(self, node: n.Member, scope: Scope) -> Any:
        obj = self.eval(node.obj, scope)
        if node.optional and is_nullish(obj):
            raise _ShortCircuit()
        key = self.eval(node.prop, scope) if node.computed else node.prop
        return self.get_member(obj, key)

    def _eval_optional_chain(self, node: n.OptionalChain, scope: Scope) -> Any:
        try:
            return self.eval(node.expression, scope)
        except _ShortCircuit:
            return UNDEFINED

    def _eval_call(self, node: n.Call, scope: Scope) -> Any:
        callee = node.callee
        if isinstance(callee, n.Member):
            obj = self.eval(callee.obj, scope)
            if callee.optional and is_nullish(obj):
                raise _ShortCircuit()
            key = self.eval(callee.prop, scope) if callee.computed else callee.prop
            fn = self.get_member(obj, key)
            label = _describe(callee)
        else:
            fn = self.eval(callee, scope)
            label = _describe(callee)
        if node.optional and is_nullish(fn):
            raise _ShortCircuit()
        if not is_callable(fn):
            raise self.type_error(f"{label} is not a function")
        args = []
        for arg in node.args:
            if isinstance(arg, n.Spread):
                args.extend(self._iterate(self.eval(arg.argument, scope)))
                self.check_size(len(args))
            else:
                args.append(self.eval(arg, scope))
        return self.call(fn, args)

    def _eval_unary(self, node: n.Unary, scope: Scope) -> Any:
        if node.op == "typeof":
            if isinstance(node.operand, n.Identifier) and scope.find(node.operand.name) is None:
                return "undefined"
            return type_of(self.eval(node.operand, scope))
        value = self.eval(node.operand, scope)
        if node.op == "!":
            return not truthy(value)
        num = to_number(value)
        return normalize_number(-num) if node.op == "-" else num

    def _eval_update(self, node: n.Update, scope: Scope) -> Any:
        old = to_number(self.eval(node.target, scope))
        new = normalize_number(old + 1 if node.op == "++" else old - 1)
        self.assign(node.target, new, scope)
        return new if node.prefix else old

    def _eval_binary(self, node: n.Binary, scope: Scope) -> Any:
        left = self.eval(node.left, scope)
        right = self.eval(node.right, scope)
        return self.binary_op(node.op, left, right)

    def _eval_logical(self, node: n.Logical, scope: Scope) -> Any:
        left = self.eval(node.left, scope)
        if node.op == "&&":
            return self.eval(node.right, scope) if truthy(left) else left
        if node.op == "||":
            return left if truthy(left) else self.eval(node.right, scope)
        return self.eval(node.right, scope) if is_nullish(left) else left

    def _eval_conditional(self, node: n.Conditional, scope: Scope) -> Any:
        if truthy(self.eval(node.test, scope)):
            return self.eval(node.consequent, scope)
        return self.eval(node.alternate, scope)

    def _eval_assign(self, node: n.Assign, scope: Scope) -> Any:
        op = node.op
        if op == "=":
            value = self.eval(node.value, scope)
        else:
            current = self.eval(node.target, scope)
            if op == "??=":
                if not is_nullish(current):
                    return current
                value = self.eval(node.value, scope)
            elif op == "||=":
                if truthy(current):
                    return current
                value = self.eval(node.value, scope)
            elif op == "&&=":
                if not truthy(current):
                    return current
                value = self.eval(node.value, scope)
            else:
                value = self.binary_op(op[:-1], current, self.eval(node.value, scope))
        self.assign(node.target, value, scope)
        return value

    def _eval_arrow(self, node: n.Arrow, scope: Scope) -> Closure:
        return Closure(node, scope)

    # ── operators ──

    def binary_op(self, op: str, left: Any, right: Any) -> Any:
        if op == "+":
            if isinstance(left, (str, list, dict)) or isinstance(right, (str, list, dict)):
                left, right = to_string(left), to_string(right)
                self.check_size(len(left) + len(right))
                return left + right
            return normalize_number(to_number(left) + to_number(right))
        if op in ("-", "*", "/", "%", "**"):
            return _arithmetic(op, to_number(left), to_number(right))
        if op == "===":
            return strict_equals(left, right)
        if op == "!==":
            return not strict_equals(left, right)
        if op == "==":
            return loose_equals(left, right)
        if op == "!=":
            return not loose_equals(left, right)
        if op in ("<", ">", "<=", ">="):
            return compare(op, left, right)
        if op == "in":
            if isinstance(right, dict):
                return to_property_key(left) in right
            if isinstance(right, list):
                idx = to_number(left)
                return is_number(idx) and float(idx).is_integer() and 0 <= idx < len(right)
            raise self.type_error(f"Cannot use 'in' operator to search for '{to_string(left)}' in {to_string(right)}")
        raise self.type_error(f"Unsupported operator {op}")

    # ── property access ──

    def get_member(self, obj: Any, key: Any) -> Any:
        if is_nullish(obj):
            raise self._unreadable(obj, key)
        if isinstance(obj, dict):
            prop = to_property_key(key)
            if prop in obj:
                return obj[prop]
            return get_method(self, obj, prop)
        if isinstance(obj, (list, str)):
            if key == "length":
                return len(obj)
            index = _as_index(key)
            if index is not None:
                return obj[index] if index < len(obj) else UNDEFINED
            if isinstance(key, str):
                return get_method(self, obj, key)
            return UNDEFINED
        if is_number(obj) and isinstance(key, str):
            return get_method(self, obj, key)
        if isinstance(obj, Function) and key == "name":
            return obj.name
        return UNDEFINED

    def set_member(self, obj: Any, key: Any, value: Any) -> None:
        if is_nullish(obj):
            raise self._unreadable(obj, key, verb="set")
        if isinstance(obj, dict):
            obj[to_property_key(key)] = value
            return
        if isinstance(obj, list):
            if key == "length":
                size = self.check_size(int(to_number(value)))
                del obj[size:]
                obj.extend([UNDEFINED] * (size - len(obj)))
                return
            index = _as_index(key)
            if index is None:
                raise self.type_error(f"Cannot set property '{to_string(key)}' on an array")
            if index >= len(obj):
                self.check_size(index + 1)
                obj.extend([UNDEFINED] * (index + 1 - len(obj)))
            obj[index] = value
            return
        raise self.type_error(f"Cannot set property '{to_string(key)}' on {type_of(obj)}")

    def assign(self, target: n.Node, value: Any, scope: Scope) -> None:
        if isinstance(target, n.Identifier):
            owner = scope.find(target.name)
            if owner is None or owner is self.globals:
                raise ResolutionError(f"{target.name} is not defined", expression=self.source)
            if target.name in owner.consts:
                raise self.type_error(f"Assignment to constant variable '{target.name}'")
            owner.vars[target.name] = value
            return
        if isinstance(target, n.Member):
            obj = self.eval(target.obj, scope)
            key = self.eval(target.prop, scope) if target.computed else target.prop
            self.set_member(obj, key, value)
            return
        raise self.type_error("Invalid assignment target")

    def bind(self, target: n.Node, value: Any, scope: Scope, declare: bool, const: bool = False) -> None:
        """Bind an identifier or destructuring pattern in *scope*."""
        if isinstance(target, n.Identifier):
            if isinstance(value, Closure) and value.name == "anonymous":
                value.name = target.name
            scope.declare(target.name, value, const)
            return
        if isinstance(target, n.ObjectPattern):
            if is_nullish(value):
                raise self.type_error(f"Cannot destructure '{to_string(value)}' as it is {to_string(value)}")
            used = set()
            for key, param in target.entries:
                used.add(key)
                item = self.get_member(value, key)
                if item is UNDEFINED and param.default is not None:
                    item = self.eval(param.default, scope)
                self.bind(param.target, item, scope, declare, const)
            if target.rest:
                rest = {k: v for k, v in value.items() if k not in used} if isinstance(value, dict) else {}
                scope.declare(target.rest, rest, const)
            return
        if isinstance(target, n.ArrayPattern):
            items = self._iterate(value)
            for index, param in enumerate(target.elements):
                if param is None:
                    continue
                if param.rest:
                    self.bind(param.target, items[index:], scope, declare, const)
                    break
                item = items[index] if index < len(items) else UNDEFINED
                if item is UNDEFINED and param.default is not None:
                    item = self.eval(param.default, scope)
                self.bind(param.target, item, scope, declare, const)
            return
        raise self.type_error("Invalid binding target")

    def _iterate(self, value: Any) -> list:
        if isinstance(value, list):
            return list(value)
        if isinstance(value, str):
            return list(value)
        raise self.type_error(f"{to_string(value)} is not iterable")

    # ── statements ──

    def exec_block(self, statements: list, scope: Scope) -> None:
        for stmt in statements:
            self.exec(stmt, scope)

    def exec(self, stmt: n.Node, scope: Scope) -> None:
        self.tick()
        if isinstance(stmt, n.ExprStmt):
            self.eval(stmt.expression, scope)
        elif isinstance(stmt, n.VarDecl):
            for target, init in stmt.declarations:
                value = self.eval(init, scope) if init is not None else UNDEFINED
                self.bind(target, value, scope, declare=True, const=stmt.kind == "const")
        elif isinstance(stmt, n.Return):
            raise _Return(self.eval(stmt.argument, scope) if stmt.argument is not None else UNDEFINED)
        elif isinstance(stmt, n.If):
            if truthy(self.eval(stmt.test, scope)):
                self.exec(stmt.consequent, scope)
            elif stmt.alternate is not None:
                self.exec(stmt.alternate, scope)
        elif isinstance(stmt, n.Block):
            self.exec_block(stmt.body, Scope(parent=scope))
        elif isinstance(stmt, n.ForEach):
            self._exec_for_each(stmt, scope)
        elif isinstance(stmt, n.For):
            self._exec_for(stmt, scope)
        elif isinstance(stmt, n.While):
            while truthy(self.eval(stmt.test, scope)):
                try:
                    self.exec(stmt.body, Scope(parent=scope))
                except _Break:
                    break
                except _Continue:
                    continue
        elif isinstance(stmt, n.Break):
            raise _Break()
        elif isinstance(stmt, n.Continue):
            raise _Continue()
        else:
            raise self.type_error(f"Unsupported statement {type(stmt).__name__}")

    def _exec_for_each(self, stmt: n.ForEach, scope: Scope) -> None:
        source = self.eval(stmt.iterable, scope)
        if stmt.over_keys:
            if isinstance(source, dict):
                items = list(source.keys())
            elif isinstance(source, (list, str)):
                items = [str(i) for i in range(len(source))]
            else:
                items = []
        else:
            items = self._iterate(source)
        for item in items:
            body_scope = Scope(parent=scope)
            self.bind(stmt.target, item, body_scope, declare=True, const=stmt.kind == "const")
            try:
                self.exec(stmt.body, body_scope)
            except _Break:
                break
            except _Continue:
                continue

    def _exec_for(self, stmt: n.For, scope: Scope) -> None:
        loop_scope = Scope(parent=scope)
        if stmt.init is not None:
            self.exec(stmt.init, loop_scope)
        while stmt.test is None or truthy(self.eval(stmt.test, loop_scope)):
            try:
                self.exec(stmt.body, Scope(parent=loop_scope))
            except _Break:
                break
            except _Continue:
                pass
            if stmt.update is not None:
                self.eval(stmt.update, loop_scope)


_EVALUATORS = {
    n.Literal: Interpreter._eval_literal,
    n.TemplateLiteral: Interpreter._eval_template,
    n.Identifier: Interpreter._eval_identifier,
    n.ArrayLiteral: Interpreter._eval_array,
    n.ObjectLiteral: Interpreter._eval_object,
    n.Member: Interpreter._eval_member,
    n.OptionalChain: Interpreter._eval_optional_chain,
    n.Call: Interpreter._eval_call,
    n.Unary: Interpreter._eval_unary,
    n.Update: Interpreter._eval_update,
    n.Binary: Interpreter._eval_binary,
    n.Logical: Interpreter._eval_logical,
    n.Conditional: Interpreter._eval_conditional,
    n.Assign: Interpreter._eval_assign,
    n.Arrow: Interpreter._eval_arrow,
}


def _as_index(key: Any) -> Optional[int]:
    if isinstance(key, bool):
        return None
    if isinstance(key, int):
        return key if key >= 0 else None
    if isinstance(key, float) and key.is_integer() and key >= 0:
        return int(key)
    if isinstance(key, str) and key.isdigit():
        return int(key)
    return None


def _arithmetic(op: str, a: Any, b: Any) -> Any:
    if (isinstance(a, float) and math.isnan(a)) or (isinstance(b, float) and math.isnan(b)):
        return NAN
    try:
        if op == "-":
            result = a - b
        elif op == "*":
            result = a * b
        elif op == "/":
            if b == 0:
                if a == 0:
                    return NAN
                return math.inf if (a > 0) == (math.copysign(1, b) > 0) else -math.inf
            result = a / b
        elif op == "%":
            if b == 0:
                return NAN
            result = math.fmod(a, b)
        else:
            result = a ** b if (isinstance(a, int) and isinstance(b, int) and b >= 0) else math.pow(a, b)
    except OverflowError:
        return math.inf
    except ValueError:
        return NAN
    return normalize_number(result)


def _describe(node: n.Node) -> str:
    if isinstance(node, n.Identifier):
        return node.name
    if isinstance(node, n.Member):
        base = _describe(node.obj)
        if node.computed:
            return f"{base}[...]"
        return f"{base}.{node.prop}"
    if isinstance(node, n.OptionalChain):
        return _describe(node.expression)
    return "expression"
