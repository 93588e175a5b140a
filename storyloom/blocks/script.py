"""
Evaluator for ``script`` custom blocks.

A script is a Python-syntax function body that returns a string::

    names = [c.name for c in ctx.sticky_characters]
    if not names:
        return ""
    return "Cast: " + ", ".join(names)

A body that is a single expression returns that expression's value.

Scripts never run through ``exec``. The source is parsed with ``ast`` and
walked by a small interpreter that only knows a whitelist of node types,
builtins and string/sequence methods. The only input is ``ctx``, a read-only
view over the JSON snapshot of the context build state. Names starting with
``_`` cannot be read, imports, definitions, ``while`` and ``global`` do not
exist, and every evaluation step counts against a step budget and a
wall-clock deadline.

A single builtin call cannot be interrupted, so anything that can grow its
input (``*``, ``join``, ``replace``, ``split``, ``extend``, ``str()`` of a
container, f-strings) has its result size computed before it runs. No one
step allocates past ``MAX_STRING_LENGTH`` characters or
``MAX_SEQUENCE_LENGTH`` items, which keeps each step short enough for the
deadline check between steps to hold.
"""
from __future__ import annotations

import ast
import operator
import time
from collections.abc import Mapping, MappingView
from typing import Any, Dict, Iterator, Optional

from storyloom.config import get_settings
from storyloom.errors import ScriptEvaluationError

MAX_SEQUENCE_LENGTH = 100_000
MAX_STRING_LENGTH = 1_000_000
MAX_INT_BITS = 4096


class ReadOnlyView(Mapping):
    """Mapping over a snapshot dict; keys are also readable as attributes."""

    __slots__ = ("_data",)

    def __init__(self, data: Mapping):
        self._data = data

    def __getitem__(self, key: str) -> Any:
        return freeze(self._data[key])

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"ReadOnlyView({dict(self._data)!r})"


def freeze(value: Any) -> Any:
    if isinstance(value, Mapping) and not isinstance(value, ReadOnlyView):
        return ReadOnlyView(value)
    if isinstance(value, list):
        return tuple(freeze(item) for item in value)
    return value


_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_UNARY_OPS = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_COMPARE_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}


def _text_weight(value: Any, limit: int) -> int:
    """Upper bound on len(str(value)), counting only until it passes ``limit``."""
    total = 0
    stack = [value]
    while stack and total <= limit:
        item = stack.pop()
        if isinstance(item, str):
            total += len(item) + 4
        elif isinstance(item, bool) or item is None:
            total += 5
        elif isinstance(item, int):
            total += item.bit_length() // 3 + 2
        elif isinstance(item, (list, tuple)):
            total += 2 * len(item) + 2
            stack.extend(item)
        elif isinstance(item, Mapping):
            total += 4 * len(item) + 2
            for key in item:
                stack.append(key)
                stack.append(item[key])
        elif isinstance(item, MappingView):
            total += 2 * len(item) + 16
            stack.extend(item)
        else:
            total += 64
    return total


def _check_text(value: Any) -> None:
    if _text_weight(value, MAX_STRING_LENGTH) > MAX_STRING_LENGTH:
        raise ScriptEvaluationError("result too large")


def _to_text(value: Any = "") -> str:
    if isinstance(value, str):
        return value
    _check_text(value)
    return str(value)


def _to_repr(value: Any) -> str:
    _check_text(value)
    return repr(value)


def _check_items(*seqs: Any) -> None:
    for seq in seqs:
        if isinstance(seq, (str, list, tuple, Mapping)) and len(seq) > MAX_SEQUENCE_LENGTH:
            raise ScriptEvaluationError(f"too many items ({len(seq)})")


def _sized(func: Any) -> Any:
    def call(*args: Any, **kwargs: Any) -> Any:
        _check_items(*args)
        return func(*args, **kwargs)
    return call


def _bounded_range(*args: int) -> tuple:
    values = range(*args)
    if len(values) > MAX_SEQUENCE_LENGTH:
        raise ValueError(f"range too large ({len(values)} items)")
    return tuple(values)


def _numeric_sum(values: Any, start: Any = 0) -> Any:
    items = tuple(values)
    if not all(isinstance(v, (int, float)) for v in (*items, start)):
        raise ScriptEvaluationError("sum() only adds numbers")
    return sum(items, start)


_BUILTINS: Dict[str, Any] = {
    "len": len,
    "str": _to_text,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
    "sum": _numeric_sum,
    "any": any,
    "all": all,
    "list": _sized(list),
    "tuple": _sized(tuple),
    "sorted": _sized(sorted),
    "range": _bounded_range,
    "reversed": _sized(lambda seq: tuple(reversed(seq))),
    "enumerate": _sized(lambda seq, start=0: tuple(enumerate(seq, start))),
    "zip": _sized(lambda *seqs: tuple(zip(*seqs))),
}

# str.format is absent on purpose: format fields can reach attributes.
_STR_METHODS = frozenset({
    "upper", "lower", "title", "capitalize", "strip", "lstrip", "rstrip",
    "split", "splitlines", "join", "replace", "startswith", "endswith",
    "find", "count", "removeprefix", "removesuffix", "isdigit", "isalpha",
})
_SEQUENCE_METHODS = frozenset({"index", "count", "append", "extend"})
_MAPPING_METHODS = frozenset({"get", "keys", "values", "items"})


class _Return(Exception):
    def __init__(self, value: Any):
        self.value = value


class _Break(Exception):
    pass


class _Continue(Exception):
    pass


class ScriptInterpreter:
    """Walks one parsed script. Not reusable across runs."""

    def __init__(self, ctx: Any, max_steps: int, timeout_seconds: float):
        self.names: Dict[str, Any] = {"ctx": ctx}
        self.max_steps = max_steps
        self.deadline = time.monotonic() + timeout_seconds
        self.steps = 0

    def _tick(self, node: ast.AST) -> None:
        self.steps += 1
        if self.steps > self.max_steps:
            raise ScriptEvaluationError(f"step budget of {self.max_steps} exceeded")
        if time.monotonic() > self.deadline:
            raise ScriptEvaluationError("time limit exceeded")

    # -- statements ---------------------------------------------------------

    def run(self, body: list) -> Any:
        if len(body) == 1 and isinstance(body[0], ast.Expr):
            return self.eval(body[0].value)
        try:
            self.exec_block(body)
        except _Return as ret:
            return ret.value
        except (_Break, _Continue):
            raise ScriptEvaluationError("'break' or 'continue' outside loop")
        return None

    def exec_block(self, body: list) -> None:
        for stmt in body:
            self.exec(stmt)

    def exec(self, node: ast.stmt) -> None:
        self._tick(node)
        if isinstance(node, ast.Return):
            raise _Return(self.eval(node.value) if node.value is not None else None)
        if isinstance(node, ast.Expr):
            self.eval(node.value)
        elif isinstance(node, ast.Assign):
            value = self.eval(node.value)
            for target in node.targets:
                self._assign(target, value)
        elif isinstance(node, ast.AugAssign):
            if not isinstance(node.target, ast.Name):
                raise ScriptEvaluationError("only plain names can be updated")
            op = _BIN_OPS.get(type(node.op))
            if op is None:
                raise ScriptEvaluationError(f"unsupported operator {type(node.op).__name__}")
            self._assign(node.target, self._bounded(op(self._lookup(node.target.id), self.eval(node.value))))
        elif isinstance(node, ast.If):
            self.exec_block(node.body if self.eval(node.test) else node.orelse)
        elif isinstance(node, ast.For):
            self._for(node)
        elif isinstance(node, ast.Break):
            raise _Break()
        elif isinstance(node, ast.Continue):
            raise _Continue()
        elif isinstance(node, ast.Pass):
            pass
        else:
            raise ScriptEvaluationError(f"unsupported statement: {type(node).__name__}")

    def _for(self, node: ast.For) -> None:
        broke = False
        for item in self._iterable(self.eval(node.iter)):
            self._assign(node.target, item)
            try:
                self.exec_block(node.body)
            except _Break:
                broke = True
                break
            except _Continue:
                continue
        if not broke:
            self.exec_block(node.orelse)

    def _assign(self, target: ast.AST, value: Any) -> None:
        if isinstance(target, ast.Name):
            self._check_name(target.id)
            if target.id == "ctx":
                raise ScriptEvaluationError("'ctx' is read-only")
            self.names[target.id] = value
        elif isinstance(target, (ast.Tuple, ast.List)):
            values = tuple(self._iterable(value))
            if len(values) != len(target.elts):
                raise ScriptEvaluationError(
                    f"cannot unpack {len(values)} values into {len(target.elts)} names"
                )
            for element, item in zip(target.elts, values):
                self._assign(element, item)
        else:
            raise ScriptEvaluationError("only names can be assigned")

    # -- expressions --------------------------------------------------------

    def eval(self, node: ast.expr) -> Any:
        self._tick(node)
        method = getattr(self, f"_eval_{type(node).__name__}", None)
        if method is None:
            raise ScriptEvaluationError(f"unsupported expression: {type(node).__name__}")
        return method(node)

    def _eval_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def _eval_Name(self, node: ast.Name) -> Any:
        return self._lookup(node.id)

    def _eval_Attribute(self, node: ast.Attribute) -> Any:
        self._check_name(node.attr)
        obj = self.eval(node.value)
        if isinstance(obj, ReadOnlyView):
            if node.attr in obj:
                return obj[node.attr]
            if node.attr in _MAPPING_METHODS:
                return getattr(obj, node.attr)
            raise ScriptEvaluationError(f"'{node.attr}' is not a field of ctx")
        allowed = (
            _STR_METHODS if isinstance(obj, str)
            else _SEQUENCE_METHODS if isinstance(obj, (list, tuple))
            else _MAPPING_METHODS if isinstance(obj, dict)
            else frozenset()
        )
        if node.attr not in allowed or not hasattr(obj, node.attr):
            raise ScriptEvaluationError(f"attribute '{node.attr}' is not available on {type(obj).__name__}")
        return getattr(obj, node.attr)

    def _eval_Subscript(self, node: ast.Subscript) -> Any:
        obj = self.eval(node.value)
        key = self.eval(node.slice)
        if isinstance(key, str):
            self._check_name(key)
        return obj[key]

    def _eval_Slice(self, node: ast.Slice) -> slice:
        return slice(
            self.eval(node.lower) if node.lower else None,
            self.eval(node.upper) if node.upper else None,
            self.eval(node.step) if node.step else None,
        )

    def _eval_BinOp(self, node: ast.BinOp) -> Any:
        op = _BIN_OPS.get(type(node.op))
        if op is None:
            raise ScriptEvaluationError(f"unsupported operator {type(node.op).__name__}")
        left, right = self.eval(node.left), self.eval(node.right)
        if isinstance(node.op, ast.Mult):
            for seq, count in ((left, right), (right, left)):
                if isinstance(seq, (str, tuple, list)) and isinstance(count, int):
                    limit = MAX_STRING_LENGTH if isinstance(seq, str) else MAX_SEQUENCE_LENGTH
                    if len(seq) * count > limit:
                        raise ScriptEvaluationError("result too large")
        elif isinstance(node.op, ast.Mod) and isinstance(left, str):
            raise ScriptEvaluationError("'%' string formatting is not supported, use f-strings")
        return self._bounded(op(left, right))

    def _eval_UnaryOp(self, node: ast.UnaryOp) -> Any:
        op = _UNARY_OPS.get(type(node.op))
        if op is None:
            raise ScriptEvaluationError(f"unsupported operator {type(node.op).__name__}")
        return op(self.eval(node.operand))

    def _eval_BoolOp(self, node: ast.BoolOp) -> Any:
        value: Any = None
        for operand in node.values:
            value = self.eval(operand)
            if isinstance(node.op, ast.And) and not value:
                return value
            if isinstance(node.op, ast.Or) and value:
                return value
        return value

    def _eval_Compare(self, node: ast.Compare) -> bool:
        left = self.eval(node.left)
        for op_node, comparator in zip(node.ops, node.comparators):
            right = self.eval(comparator)
            if not _COMPARE_OPS[type(op_node)](left, right):
                return False
            left = right
        return True

    def _eval_IfExp(self, node: ast.IfExp) -> Any:
        return self.eval(node.body) if self.eval(node.test) else self.eval(node.orelse)

    def _eval_List(self, node: ast.List) -> list:
        return [self.eval(element) for element in node.elts]

    def _eval_Tuple(self, node: ast.Tuple) -> tuple:
        return tuple(self.eval(element) for element in node.elts)

    def _eval_Dict(self, node: ast.Dict) -> dict:
        if any(key is None for key in node.keys):
            raise ScriptEvaluationError("dict unpacking is not supported")
        return {self.eval(k): self.eval(v) for k, v in zip(node.keys, node.values)}

    def _eval_JoinedStr(self, node: ast.JoinedStr) -> str:
        parts = []
        total = 0
        for value in node.values:
            part = _to_text(self.eval(value))
            total += len(part)
            if total > MAX_STRING_LENGTH:
                raise ScriptEvaluationError("result too large")
            parts.append(part)
        return "".join(parts)

    def _eval_FormattedValue(self, node: ast.FormattedValue) -> str:
        if node.format_spec is not None:
            raise ScriptEvaluationError("format specs are not supported")
        value = self.eval(node.value)
        return _to_repr(value) if node.conversion == ord("r") else _to_text(value)

    def _eval_ListComp(self, node: ast.ListComp) -> list:
        return list(self._comprehension(node.elt, node.generators))

    def _eval_GeneratorExp(self, node: ast.GeneratorExp) -> tuple:
        return tuple(self._comprehension(node.elt, node.generators))

    def _comprehension(self, elt: ast.expr, generators: list) -> list:
        saved = dict(self.names)
        results: list = []

        def walk(depth: int) -> None:
            if depth == len(generators):
                results.append(self.eval(elt))
                if len(results) > MAX_SEQUENCE_LENGTH:
                    raise ScriptEvaluationError("comprehension too large")
                return
            generator = generators[depth]
            if generator.is_async:
                raise ScriptEvaluationError("async comprehensions are not supported")
            for item in self._iterable(self.eval(generator.iter)):
                self._assign(generator.target, item)
                if all(self.eval(condition) for condition in generator.ifs):
                    walk(depth + 1)

        try:
            walk(0)
        finally:
            self.names = saved
        return results

    def _eval_Call(self, node: ast.Call) -> Any:
        func = self.eval(node.func)
        if not callable(func):
            raise ScriptEvaluationError(f"{type(func).__name__} is not callable")
        args = []
        for arg in node.args:
            if isinstance(arg, ast.Starred):
                args.extend(self._iterable(self.eval(arg.value)))
            else:
                args.append(self.eval(arg))
        kwargs = {}
        for keyword in node.keywords:
            if keyword.arg is None:
                raise ScriptEvaluationError("keyword unpacking is not supported")
            kwargs[keyword.arg] = self.eval(keyword.value)
        self._check_growth(func, args, kwargs)
        return self._bounded(func(*args, **kwargs))

    # -- helpers ------------------------------------------------------------

    def _lookup(self, name: str) -> Any:
        self._check_name(name)
        if name in self.names:
            return self.names[name]
        if name in _BUILTINS:
            return _BUILTINS[name]
        raise ScriptEvaluationError(f"name '{name}' is not defined")

    @staticmethod
    def _check_name(name: str) -> None:
        if name.startswith("_"):
            raise ScriptEvaluationError(f"access to '{name}' is not allowed")

    @staticmethod
    def _iterable(value: Any) -> Any:
        if isinstance(value, (str, list, tuple, dict, ReadOnlyView)):
            return value
        raise ScriptEvaluationError(f"{type(value).__name__} is not iterable")

    @staticmethod
    def _check_growth(func: Any, args: list, kwargs: dict) -> None:
        """Reject method calls whose result would exceed the size limits, before they allocate it."""
        owner = getattr(func, "__self__", None)
        name = getattr(func, "__name__", "")
        size = 0
        limit = MAX_STRING_LENGTH
        if isinstance(owner, str) and name == "join" and args:
            parts = args[0]
            if isinstance(parts, (str, list, tuple, dict, ReadOnlyView)):
                size = sum(len(p) for p in parts if isinstance(p, str)) + len(owner) * max(len(parts) - 1, 0)
        elif isinstance(owner, str) and name == "replace" and len(args) >= 2:
            old, new = args[0], args[1]
            if isinstance(old, str) and isinstance(new, str):
                hits = owner.count(old) if old else len(owner) + 1
                count = args[2] if len(args) > 2 else kwargs.get("count", -1)
                if isinstance(count, int) and count >= 0:
                    hits = min(hits, count)
                size = len(owner) + hits * max(len(new) - len(old), 0)
        elif isinstance(owner, str) and name in ("split", "splitlines"):
            sep = args[0] if args and name == "split" else kwargs.get("sep")
            if isinstance(sep, str) and sep:
                size = owner.count(sep) + 1
            else:
                size = sum(owner.count(ch) for ch in " \t\n\r\x0b\x0c") + 1
            maxsplit = args[1] if len(args) > 1 and name == "split" else kwargs.get("maxsplit", -1)
            if isinstance(maxsplit, int) and maxsplit >= 0:
                size = min(size, maxsplit + 1)
            limit = MAX_SEQUENCE_LENGTH
        elif isinstance(owner, list) and name in ("append", "extend"):
            added = len(args[0]) if name == "extend" and args and hasattr(args[0], "__len__") else 1
            size = len(owner) + added
            limit = MAX_SEQUENCE_LENGTH
        if size > limit:
            raise ScriptEvaluationError("result too large")

    @staticmethod
    def _bounded(value: Any) -> Any:
        if isinstance(value, str) and len(value) > MAX_STRING_LENGTH:
            raise ScriptEvaluationError("result too large")
        if isinstance(value, (list, tuple)) and len(value) > MAX_SEQUENCE_LENGTH:
            raise ScriptEvaluationError("too many items")
        if isinstance(value, int) and value.bit_length() > MAX_INT_BITS:
            raise ScriptEvaluationError("number too large")
        return value


def _validate(tree: ast.Module) -> None:
    for node in ast.walk(tree):
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            raise ScriptEvaluationError("imports are not allowed")
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef, ast.Lambda)):
            raise ScriptEvaluationError("function and class definitions are not allowed")
        if isinstance(node, (ast.While, ast.Global, ast.Nonlocal)):
            raise ScriptEvaluationError(f"'{type(node).__name__.lower()}' is not allowed")


def evaluate_script(
    source: str,
    snapshot: Mapping,
    *,
    max_steps: Optional[int] = None,
    timeout_seconds: Optional[float] = None,
) -> str:
    """Run ``source`` against ``snapshot`` and return its string result.

    Every failure, including a non-string result, raises
    ``ScriptEvaluationError``.
    """
    settings = get_settings()
    try:
        tree = ast.parse(source, mode="exec")
    except SyntaxError as exc:
        raise ScriptEvaluationError(f"syntax error on line {exc.lineno}: {exc.msg}") from exc
    _validate(tree)

    interpreter = ScriptInterpreter(
        ReadOnlyView(snapshot),
        max_steps=max_steps or settings.block_script_max_steps,
        timeout_seconds=timeout_seconds or settings.block_script_timeout_seconds,
    )
    try:
        result = interpreter.run(tree.body)
    except ScriptEvaluationError:
        raise
    except RecursionError as exc:
        raise ScriptEvaluationError("expression nested too deeply") from exc
    except Exception as exc:
        raise ScriptEvaluationError(f"{type(exc).__name__}: {exc}") from exc

    if not isinstance(result, str):
        raise ScriptEvaluationError(f"script must return a string, got {type(result).__name__}")
    return result
