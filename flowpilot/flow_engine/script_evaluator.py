"""
Safe Script Evaluator

AST-based evaluation of transform scripts and condition expressions without
eval(). Scripts see only the names they are given (the transform input, or
the resolved placeholder values of a condition) plus a whitelist of builtins
and string/dict methods. Attribute access, imports, lambdas and dunder names
are rejected when the script is checked, before anything runs.

Supports:
- Literals, lists, dicts, tuples, sets
- Arithmetic: + - * / // % ** (bounded exponent)
- Comparisons: == != < <= > >= in, not in, is None
- Logical: and, or, not; conditional expressions (a if cond else b)
- Subscripts and slices: data['items'][0], data[:3]
- Comprehensions: [x['id'] for x in data if x['active']]
- Functions: len, str, int, float, bool, abs, min, max, round, sum, sorted,
  list, dict, any, all, range
- Methods: str.lower/upper/strip/split/replace/startswith/endswith/join,
  dict.get/keys/values/items

JavaScript-style operators often typed into flow conditions
(=== !== && || ! true false null) are accepted and mapped to Python.
"""

import ast
import operator
import re
from typing import Any, Dict, List

from flowpilot.exceptions import ScriptError

SAFE_BINARY_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

SAFE_COMPARE_OPERATORS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda x, y: x in y,
    ast.NotIn: lambda x, y: x not in y,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

SAFE_UNARY_OPERATORS = {
    ast.Not: operator.not_,
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}

SAFE_FUNCTIONS = {
    'len': len,
    'str': str,
    'int': int,
    'float': float,
    'bool': bool,
    'abs': abs,
    'min': min,
    'max': max,
    'round': round,
    'sum': sum,
    'sorted': sorted,
    'list': list,
    'dict': dict,
    'any': any,
    'all': all,
    'range': range,
}

SAFE_METHODS = {
    str: {'lower', 'upper', 'strip', 'lstrip', 'rstrip', 'split', 'replace',
          'startswith', 'endswith', 'join', 'title', 'capitalize', 'count', 'find'},
    dict: {'get', 'keys', 'values', 'items'},
    list: {'index', 'count'},
}

CONSTANT_NAMES = {'True': True, 'False': False, 'None': None,
                  'true': True, 'false': False, 'null': None}

_JS_TOKEN_PATTERN = re.compile(r'===|!==|&&|\|\||!(?!=)')
_JS_TOKEN_MAP = {'===': '==', '!==': '!=', '&&': ' and ', '||': ' or ', '!': ' not '}
_STRING_LITERAL_PATTERN = re.compile(r'''("(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')''')


def normalize_js_syntax(source: str) -> str:
    """Map JavaScript operators to Python, leaving string literals untouched."""
    parts = _STRING_LITERAL_PATTERN.split(source)
    for i in range(0, len(parts), 2):
        parts[i] = _JS_TOKEN_PATTERN.sub(lambda m: _JS_TOKEN_MAP[m.group(0)], parts[i])
    return ''.join(parts)


class SafeEvaluator(ast.NodeVisitor):
    """
    Evaluates a parsed expression against a fixed set of variables.
    """

    MAX_DEPTH = 50
    MAX_ITERATIONS = 100000
    MAX_EXPONENT = 1000

    def __init__(self, variables: Dict[str, Any]):
        self.scopes: List[Dict[str, Any]] = [dict(variables)]
        self._depth = 0
        self._iterations = 0

    def visit(self, node):
        self._depth += 1
        if self._depth > self.MAX_DEPTH:
            raise ScriptError("Maximum expression depth exceeded")
        try:
            return super().visit(node)
        finally:
            self._depth -= 1

    def visit_Expression(self, node):
        return self.visit(node.body)

    def visit_Constant(self, node):
        return node.value

    def visit_Name(self, node):
        for scope in reversed(self.scopes):
            if node.id in scope:
                return scope[node.id]
        if node.id in CONSTANT_NAMES:
            return CONSTANT_NAMES[node.id]
        if node.id in SAFE_FUNCTIONS:
            return SAFE_FUNCTIONS[node.id]
        raise ScriptError(f"Undefined variable: {node.id}")

    def visit_List(self, node):
        return [self.visit(elt) for elt in node.elts]

    def visit_Tuple(self, node):
        return tuple(self.visit(elt) for elt in node.elts)

    def visit_Set(self, node):
        return {self.visit(elt) for elt in node.elts}

    def visit_Dict(self, node):
        if any(key is None for key in node.keys):
            raise ScriptError("Dict unpacking is not allowed")
        return {self.visit(k): self.visit(v) for k, v in zip(node.keys, node.values)}

    def visit_BinOp(self, node):
        op_type = type(node.op)
        if op_type not in SAFE_BINARY_OPERATORS:
            raise ScriptError(f"Operator not allowed: {op_type.__name__}")

        left = self.visit(node.left)
        right = self.visit(node.right)

        if op_type is ast.Pow and isinstance(right, (int, float)) and abs(right) > self.MAX_EXPONENT:
            raise ScriptError("Exponent too large")
        if op_type is ast.Mult and self._is_sequence_repeat(left, right):
            raise ScriptError("Sequence repetition too large")

        return SAFE_BINARY_OPERATORS[op_type](left, right)

    def _is_sequence_repeat(self, left, right) -> bool:
        for seq, count in ((left, right), (right, left)):
            if isinstance(seq, (str, list, tuple)) and isinstance(count, int):
                return len(seq) * count > self.MAX_ITERATIONS
        return False

    def visit_UnaryOp(self, node):
        op_type = type(node.op)
        if op_type not in SAFE_UNARY_OPERATORS:
            raise ScriptError(f"Operator not allowed: {op_type.__name__}")
        return SAFE_UNARY_OPERATORS[op_type](self.visit(node.operand))

    def visit_Compare(self, node):
        left = self.visit(node.left)

        for op, comparator in zip(node.ops, node.comparators):
            op_type = type(op)
            if op_type not in SAFE_COMPARE_OPERATORS:
                raise ScriptError(f"Operator not allowed: {op_type.__name__}")

            right = self.visit(comparator)
            if not SAFE_COMPARE_OPERATORS[op_type](left, right):
                return False
            left = right

        return True

    def visit_BoolOp(self, node):
        # Short-circuit and return the deciding operand, like Python itself
        if isinstance(node.op, ast.And):
            result = True
            for value in node.values:
                result = self.visit(value)
                if not result:
                    return result
            return result
        if isinstance(node.op, ast.Or):
            result = False
            for value in node.values:
                result = self.visit(value)
                if result:
                    return result
            return result
        raise ScriptError(f"Boolean operator not allowed: {type(node.op).__name__}")

    def visit_IfExp(self, node):
        if self.visit(node.test):
            return self.visit(node.body)
        return self.visit(node.orelse)

    def visit_Subscript(self, node):
        container = self.visit(node.value)
        key = self.visit(node.slice)
        try:
            return container[key]
        except (KeyError, IndexError, TypeError) as e:
            raise ScriptError(f"Invalid subscript {key!r}: {e}")

    def visit_Index(self, node):
        # Python < 3.9 wraps subscripts in ast.Index
        return self.visit(node.value)

    def visit_Slice(self, node):
        return slice(
            self.visit(node.lower) if node.lower else None,
            self.visit(node.upper) if node.upper else None,
            self.visit(node.step) if node.step else None,
        )

    def visit_Call(self, node):
        if node.keywords and any(kw.arg is None for kw in node.keywords):
            raise ScriptError("Keyword unpacking is not allowed")
        if any(isinstance(arg, ast.Starred) for arg in node.args):
            raise ScriptError("Argument unpacking is not allowed")

        args = [self.visit(arg) for arg in node.args]
        kwargs = {kw.arg: self.visit(kw.value) for kw in node.keywords}

        if isinstance(node.func, ast.Attribute):
            return self._call_method(node.func, args, kwargs)

        func = self.visit(node.func)
        if not any(func is allowed for allowed in SAFE_FUNCTIONS.values()):
            raise ScriptError(f"Function not allowed: {getattr(node.func, 'id', 'unknown')}")
        if func is range and args and any(isinstance(a, int) and abs(a) > self.MAX_ITERATIONS for a in args):
            raise ScriptError("range() too large")

        return func(*args, **kwargs)

    def _call_method(self, func: ast.Attribute, args, kwargs):
        target = self.visit(func.value)
        method_name = func.attr

        allowed = next(
            (names for kind, names in SAFE_METHODS.items() if isinstance(target, kind)),
            set()
        )
        if method_name not in allowed:
            raise ScriptError(f"Method not allowed: {type(target).__name__}.{method_name}")

        return getattr(target, method_name)(*args, **kwargs)

    def visit_Attribute(self, node):
        raise ScriptError(f"Attribute access not allowed: .{node.attr}")

    def visit_ListComp(self, node):
        return list(self._comprehension(node.generators, lambda: self.visit(node.elt)))

    def visit_SetComp(self, node):
        return set(self._comprehension(node.generators, lambda: self.visit(node.elt)))

    def visit_GeneratorExp(self, node):
        return list(self._comprehension(node.generators, lambda: self.visit(node.elt)))

    def visit_DictComp(self, node):
        return dict(self._comprehension(
            node.generators,
            lambda: (self.visit(node.key), self.visit(node.value))
        ))

    def _comprehension(self, generators, produce):
        results = []
        scope: Dict[str, Any] = {}
        self.scopes.append(scope)
        try:
            self._run_generators(generators, 0, scope, produce, results)
        finally:
            self.scopes.pop()
        return results

    def _run_generators(self, generators, index, scope, produce, results):
        if index == len(generators):
            results.append(produce())
            return

        generator = generators[index]
        if getattr(generator, 'is_async', False):
            raise ScriptError("Async comprehensions are not allowed")

        for item in self.visit(generator.iter):
            self._iterations += 1
            if self._iterations > self.MAX_ITERATIONS:
                raise ScriptError("Iteration limit exceeded")

            self._bind(generator.target, item, scope)
            if all(self.visit(cond) for cond in generator.ifs):
                self._run_generators(generators, index + 1, scope, produce, results)

    def _bind(self, target, value, scope):
        if isinstance(target, ast.Name):
            if target.id.startswith('__'):
                raise ScriptError(f"Name not allowed: {target.id}")
            scope[target.id] = value
        elif isinstance(target, (ast.Tuple, ast.List)):
            values = list(value)
            if len(values) != len(target.elts):
                raise ScriptError("Cannot unpack value in comprehension")
            for elt, item in zip(target.elts, values):
                self._bind(elt, item, scope)
        else:
            raise ScriptError("Unsupported comprehension target")

    def generic_visit(self, node):
        raise ScriptError(f"Expression not allowed: {type(node).__name__}")


def compile_expression(source: str) -> ast.Expression:
    """Parse source into an expression tree, rejecting statements and dunder names."""
    if not isinstance(source, str) or not source.strip():
        raise ScriptError("Script is empty")

    text = source.strip()
    # Accept a JS-style "return <expr>;" body
    if text.startswith('return ') or text.startswith('return('):
        text = text[len('return'):]
    text = text.rstrip(';').strip()

    try:
        tree = ast.parse(normalize_js_syntax(text), mode='eval')
    except SyntaxError as e:
        raise ScriptError(f"Invalid syntax: {e.msg}")

    for node in ast.walk(tree):
        if isinstance(node, ast.Name) and node.id.startswith('__'):
            raise ScriptError(f"Name not allowed: {node.id}")
        if isinstance(node, ast.Attribute) and node.attr.startswith('_'):
            raise ScriptError(f"Attribute not allowed: {node.attr}")
        if isinstance(node, (ast.Lambda, ast.NamedExpr, ast.Await, ast.Yield, ast.YieldFrom)):
            raise ScriptError(f"Expression not allowed: {type(node).__name__}")

    return tree


def evaluate_expression(source: str, variables: Dict[str, Any]) -> Any:
    """
    Evaluate an expression with only the given variables in scope.

    Raises:
        ScriptError: On syntax errors, disallowed constructs or runtime failures
    """
    tree = compile_expression(source)
    try:
        return SafeEvaluator(variables).visit(tree)
    except ScriptError:
        raise
    except RecursionError:
        raise ScriptError("Expression too deeply nested")
    except Exception as e:
        raise ScriptError(f"{type(e).__name__}: {e}")


def evaluate_transform(script: str, data: Any) -> Any:
    """
    Run a transform script. The input value is bound to `data` (and `value`).

    Examples:
        evaluate_transform("data * 2", 21) -> 42
        evaluate_transform("[i for i in data if i['active']]", items)
    """
    return evaluate_expression(script, {'data': data, 'value': data})


def evaluate_condition(expression: str, resolver, node_id: str = None) -> bool:
    """
    Evaluate a condition that embeds {{placeholders}}.

    Each placeholder is resolved with its type intact and bound to var_N, so
    "{{fetch.result.status}} === 200" becomes "var_0 == 200". A quoted
    literal holding placeholders ("{{vars.first}} {{vars.last}}") is
    interpolated as text and bound the same way.
    """
    from flowpilot.flow_engine.variable_resolver import UNDEFINED

    variables: Dict[str, Any] = {}
    refs: Dict[str, str] = {}

    def bind(value: Any) -> str:
        var_name = f"var_{len(variables)}"
        variables[var_name] = value
        return f" {var_name} "

    def substitute(match):
        path = match.group(1).strip()
        if path not in refs:
            value = resolver.resolve(match.group(0), node_id)
            refs[path] = bind(None if value is UNDEFINED else value)
        return refs[path]

    parts = _STRING_LITERAL_PATTERN.split(expression)
    for i, part in enumerate(parts):
        if i % 2 == 0:
            parts[i] = resolver.VARIABLE_PATTERN.sub(substitute, part)
        elif resolver.VARIABLE_PATTERN.search(part):
            try:
                text = ast.literal_eval(part)
            except (SyntaxError, ValueError) as e:
                raise ScriptError(f"Invalid string literal {part}: {e}")
            parts[i] = bind(resolver.stringify(resolver.resolve(text, node_id)))

    return bool(evaluate_expression(''.join(parts), variables))
