from __future__ import annotations
import json
import math
import re
import sys
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Sequence, Tuple
import numpy as np

from lexer import FoldrError, FoldrParseError, Lexer, lexical_errors
from parser import (
    ArrayLiteral,
    Assignment,
    BinaryOp,
    Block,
    BreakStatement,
    CallExpression,
    ContinueStatement,
    Expression,
    ExpressionStatement,
    ForStatement,
    FuncDef,
    Identifier,
    IfStatement,
    IndexExpression,
    Literal,
    Param,
    Parser,
    Program,
    ReturnStatement,
    SourceLocation,
    Statement,
    UnaryOp,
    VarDecl,
    WhileStatement,
)


TYPE_INT = "INT"
TYPE_FLT = "FLT"
TYPE_STR = "STR"
TYPE_BOOL = "BOOL"
TYPE_ARR = "ARR"
TYPE_NULL = "NULL"

DEFAULT_HISTORY = 1000
DEFAULT_RECURSION_LIMIT = 10000
TRACEBACK_FRAME_LIMIT = 50

_LEADING_INT = re.compile(r"\s*([+-]?[0-9]+)")


@dataclass(frozen=True)
class Value:
    type: str
    value: Any


NULL = Value(TYPE_NULL, None)


def make_int(value: int) -> Value:
    return Value(TYPE_INT, int(value))


def make_float(value: float) -> Value:
    return Value(TYPE_FLT, float(value))


def make_string(value: str) -> Value:
    return Value(TYPE_STR, value)


def make_bool(value: bool) -> Value:
    return Value(TYPE_BOOL, bool(value))


def make_array(items: Sequence[Value]) -> Value:
    # Arrays are read-only object buffers, so a Value can be shared freely
    # between bindings without one holder observing another's changes.
    data = np.empty(len(items), dtype=object)
    for i, item in enumerate(items):
        data[i] = item
    data.flags.writeable = False
    return Value(TYPE_ARR, data)


def is_truthy(value: Value) -> bool:
    """Only BOOL true and non-zero INT are true; every other kind is false."""
    if value.type == TYPE_BOOL:
        return bool(value.value)
    if value.type == TYPE_INT:
        return value.value != 0
    return False


def format_value(value: Value) -> str:
    """Text form used by print, str and string concatenation."""
    vtype = value.type
    if vtype == TYPE_INT:
        return str(value.value)
    if vtype == TYPE_FLT:
        return f"{value.value:.6f}"
    if vtype == TYPE_STR:
        return value.value
    if vtype == TYPE_BOOL:
        return "true" if value.value else "false"
    if vtype == TYPE_ARR:
        return "[" + ", ".join(format_value(item) for item in value.value) + "]"
    if vtype == TYPE_NULL:
        return "null"
    raise FoldrRuntimeError(f"Unsupported value type {vtype}")


def _numeric(value: Value) -> Optional[Tuple[str, Any]]:
    # BOOL takes part in arithmetic and comparisons as INT 0/1.
    if value.type == TYPE_INT:
        return TYPE_INT, value.value
    if value.type == TYPE_BOOL:
        return TYPE_INT, 1 if value.value else 0
    if value.type == TYPE_FLT:
        return TYPE_FLT, value.value
    return None


def values_equal(left: Value, right: Value) -> bool:
    left_num, right_num = _numeric(left), _numeric(right)
    if left_num is not None and right_num is not None:
        return left_num[1] == right_num[1]
    if left.type != right.type:
        return False
    if left.type == TYPE_ARR:
        if len(left.value) != len(right.value):
            return False
        return all(values_equal(a, b) for a, b in zip(left.value, right.value))
    if left.type == TYPE_NULL:
        return True
    return left.value == right.value


class FoldrRuntimeError(FoldrError):
    """Raised for runtime faults."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.location: Optional[SourceLocation] = None
        self.rule = rule
        self.step_index: Optional[int] = None
        if location is not None:
            self.locate(location)

    def locate(self, location: SourceLocation) -> None:
        """Attach a source location unless a more precise one is already set."""
        if self.location is not None:
            return
        self.location = location
        self.line = location.line
        self.lexeme = location.lexeme
        self.kind = location.kind


@dataclass(frozen=True)
class Variable:
    name: str
    value: Value
    const: bool = False


@dataclass
class Function:
    name: str
    params: List[Param]
    body: Block


@dataclass
class Environment:
    """Flat variable and function tables for one evaluation context.

    A function call runs against ``snapshot()`` of the caller's environment.
    Snapshots share both tables with their origin until either side writes,
    at which point the writer takes a private copy; nothing done inside a
    call is ever visible to the caller.
    """

    variables: Dict[str, Variable] = field(default_factory=dict)
    functions: Dict[str, Function] = field(default_factory=dict)
    shared: bool = field(default=False, repr=False)

    def snapshot(self) -> "Environment":
        self.shared = True
        return Environment(variables=self.variables, functions=self.functions, shared=True)

    def release(self, was_shared: bool) -> None:
        """Restore the sharing mark once a snapshot taken from here is discarded.

        Calls nest strictly, so after the callee returns nothing else holds
        the tables the snapshot borrowed and the next write can skip the copy.
        """
        self.shared = was_shared

    def _own_tables(self) -> None:
        if self.shared:
            self.variables = dict(self.variables)
            self.functions = dict(self.functions)
            self.shared = False

    def find_variable(self, name: str) -> Optional[Variable]:
        return self.variables.get(name)

    def set_variable(self, name: str, value: Value) -> None:
        existing = self.variables.get(name)
        if existing is not None and existing.const:
            raise FoldrRuntimeError(f"Cannot reassign const variable '{name}'", rule="ASSIGN")
        self._own_tables()
        if existing is not None:
            self.variables[name] = replace(existing, value=value)
        else:
            self.variables[name] = Variable(name=name, value=value)

    def declare_variable(self, name: str, value: Value, const: bool) -> None:
        # A redeclaration keeps the binding's identity and takes the new flag.
        self.set_variable(name, value)
        self.variables[name] = replace(self.variables[name], const=const)

    def find_function(self, name: str) -> Optional[Function]:
        return self.functions.get(name)

    def register_function(self, function: Function) -> None:
        # First registration wins; later ones with the same name are unreachable.
        if function.name in self.functions:
            return
        self._own_tables()
        self.functions[function.name] = function

    def render(self) -> Dict[str, str]:
        def _render(var: Variable) -> str:
            rendered = format_value(var.value)
            if len(rendered) > 80:
                rendered = rendered[:77] + "..."
            prefix = "const " if var.const else ""
            return f"{prefix}{var.value.type}:{rendered}"

        return {k: _render(v) for k, v in self.variables.items()}


SIGNAL_NORMAL = "NORMAL"
SIGNAL_RETURN = "RETURN"
SIGNAL_BREAK = "BREAK"
SIGNAL_CONTINUE = "CONTINUE"


@dataclass(frozen=True)
class Outcome:
    """Control-flow result of one statement, carried out of every block."""

    signal: str
    value: Value = NULL
    location: Optional[SourceLocation] = None


OUTCOME_NORMAL = Outcome(SIGNAL_NORMAL)


@dataclass
class Frame:
    name: str
    env: Environment
    frame_id: str
    call_location: Optional[SourceLocation]


@dataclass
class StateEntry:
    """One executed step: a statement, a built-in call or a user call."""

    step_index: int
    frame_id: Optional[str]
    depth: int
    rule: str
    location: Optional[SourceLocation]
    env_snapshot: Optional[Dict[str, str]] = None
    detail: Optional[Dict[str, Any]] = None
    signal: str = SIGNAL_NORMAL


class StateLogger:
    """Bounded step history plus the latest step of every live frame."""

    def __init__(self, history: int = DEFAULT_HISTORY) -> None:
        self.entries: Deque[StateEntry] = deque(maxlen=history)
        self.steps = 0
        self.frame_last_entry: Dict[str, StateEntry] = {}

    def record(
        self,
        *,
        frame: Optional[Frame],
        depth: int,
        rule: str,
        location: Optional[SourceLocation],
        env_snapshot: Optional[Dict[str, str]] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> StateEntry:
        entry = StateEntry(
            step_index=self.steps,
            frame_id=frame.frame_id if frame else None,
            depth=depth,
            rule=rule,
            location=location,
            env_snapshot=env_snapshot,
            detail=detail,
        )
        self.entries.append(entry)
        if frame:
            self.frame_last_entry[frame.frame_id] = entry
        self.steps += 1
        return entry

    def last_entry_for_frame(self, frame_id: str) -> Optional[StateEntry]:
        return self.frame_last_entry.get(frame_id)

    def discard_frame(self, frame_id: str) -> None:
        self.frame_last_entry.pop(frame_id, None)

    @property
    def last_entry(self) -> Optional[StateEntry]:
        return self.entries[-1] if self.entries else None


BuiltinImpl = Callable[["Interpreter", List[Value], SourceLocation], Value]


@dataclass
class BuiltinFunction:
    name: str
    min_args: int
    max_args: Optional[int]
    impl: BuiltinImpl


class Builtins:
    def __init__(self) -> None:
        self.table: Dict[str, BuiltinFunction] = {}
        # Resolved before any user function, in this order.
        self._register("input", 0, 1, self._input)
        self._register("print", 0, None, self._print)
        self._register("str", 1, 1, self._str)
        self._register("int", 1, 1, self._int)
        self._register("len", 1, 1, self._len)

    def _register(self, name: str, min_args: int, max_args: Optional[int], impl: BuiltinImpl) -> None:
        self.table[name] = BuiltinFunction(name=name, min_args=min_args, max_args=max_args, impl=impl)

    def invoke(self, interpreter: "Interpreter", name: str, args: List[Value], location: SourceLocation) -> Value:
        builtin = self.table.get(name)
        if builtin is None:
            raise FoldrRuntimeError(f"Unknown built-in '{name}'", location=location)
        supplied = len(args)
        if supplied < builtin.min_args:
            raise FoldrRuntimeError(f"{name} expects at least {builtin.min_args} arguments", rule=name, location=location)
        if builtin.max_args is not None and supplied > builtin.max_args:
            raise FoldrRuntimeError(f"{name} expects at most {builtin.max_args} arguments", rule=name, location=location)
        return builtin.impl(interpreter, args, location)

    def _input(self, interpreter: "Interpreter", args: List[Value], _: SourceLocation) -> Value:
        if args and args[0].type == TYPE_STR:
            interpreter.output_sink(args[0].value)
        line = interpreter.input_provider()
        if line is None:
            return make_string("")
        if line.endswith("\n"):
            line = line[:-1]
        return make_string(line)

    def _print(self, interpreter: "Interpreter", args: List[Value], _: SourceLocation) -> Value:
        interpreter.output_sink("".join(format_value(arg) for arg in args) + "\n")
        return NULL

    def _str(self, _: "Interpreter", args: List[Value], __: SourceLocation) -> Value:
        val = args[0]
        if val.type == TYPE_STR:
            return val
        return make_string(format_value(val))

    def _int(self, _: "Interpreter", args: List[Value], location: SourceLocation) -> Value:
        val = args[0]
        if val.type == TYPE_STR:
            # Leading digits only; text without any yields 0.
            match = _LEADING_INT.match(val.value)
            return make_int(int(match.group(1)) if match else 0)
        if val.type == TYPE_FLT:
            if not math.isfinite(val.value):
                raise FoldrRuntimeError(f"Cannot convert {format_value(val)} to int", location=location, rule="int")
            return make_int(math.trunc(val.value))
        return val

    def _len(self, _: "Interpreter", args: List[Value], __: SourceLocation) -> Value:
        val = args[0]
        if val.type == TYPE_ARR:
            return make_int(len(val.value))
        return make_int(0)


def _read_stdin_line() -> Optional[str]:
    sys.stdout.flush()
    line = sys.stdin.readline()
    return line if line else None


def _write_stdout(text: str) -> None:
    sys.stdout.write(text)


@contextmanager
def _host_recursion_limit(limit: int) -> Iterator[None]:
    # Each Foldr call costs roughly a dozen Python frames.
    previous = sys.getrecursionlimit()
    sys.setrecursionlimit(limit)
    try:
        yield
    finally:
        sys.setrecursionlimit(previous)


STATEMENT_RULES: Dict[type, str] = {
    VarDecl: "DECLARE",
    Assignment: "ASSIGN",
    ExpressionStatement: "EXPR",
    IfStatement: "IF",
    WhileStatement: "WHILE",
    ForStatement: "FOR",
    FuncDef: "FUNC",
    ReturnStatement: "RETURN",
    BreakStatement: "BREAK",
    ContinueStatement: "CONTINUE",
}


class Interpreter:
    def __init__(
        self,
        *,
        source: str,
        filename: str = "<string>",
        verbose: bool = False,
        strict: bool = True,
        history: int = DEFAULT_HISTORY,
        recursion_limit: int = DEFAULT_RECURSION_LIMIT,
        input_provider: Optional[Callable[[], Optional[str]]] = None,
        output_sink: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.source = source
        self._source_lines = source.splitlines()
        self.filename = filename
        self.verbose = verbose
        # Lenient mode returns NULL where the historical interpreter stayed silent.
        self.strict = strict
        self.recursion_limit = recursion_limit
        self.input_provider = input_provider or _read_stdin_line
        self.output_sink = output_sink or _write_stdout
        self.builtins = Builtins()
        self.logger = StateLogger(history=history)
        self.call_stack: List[Frame] = []
        self.frame_counter = 0
        self.global_env: Optional[Environment] = None

    def parse(self) -> Program:
        lexer = Lexer(self.source, self.filename)
        tokens = lexer.tokenize()
        errors = lexical_errors(tokens)
        if errors:
            raise errors[0]
        parser = Parser(tokens, self.filename, self._source_lines)
        try:
            return parser.parse()
        except RecursionError:
            raise FoldrParseError.at_token("Maximum nesting depth exceeded", parser.current_token) from None

    def run(self) -> Environment:
        with _host_recursion_limit(self.recursion_limit):
            program = self.parse()
            return self._run_program(program)

    def _run_program(self, program: Program) -> Environment:
        global_env = Environment()
        self.global_env = global_env
        global_frame = self._new_frame("<top-level>", global_env, None)
        self.call_stack.append(global_frame)
        try:
            outcome = self._execute_block(program.statements, global_env)
            if outcome.signal in (SIGNAL_BREAK, SIGNAL_CONTINUE):
                self._stray_loop_signal(outcome)
        except FoldrRuntimeError as error:
            last = self.logger.last_entry
            if last is not None:
                error.step_index = last.step_index
            raise
        except RecursionError:
            last = self.logger.last_entry
            wrapped = FoldrRuntimeError(
                "Maximum recursion depth exceeded",
                location=last.location if last else None,
                rule="CALL",
            )
            if last is not None:
                wrapped.step_index = last.step_index
            raise wrapped from None
        self.call_stack.pop()
        return global_env

    def _execute_block(self, statements: List[Statement], env: Environment) -> Outcome:
        execute_stmt = self._execute_statement
        for statement in statements:
            outcome = execute_stmt(statement, env)
            if outcome.signal != SIGNAL_NORMAL:
                return outcome
        return OUTCOME_NORMAL

    def _execute_statement(self, statement: Statement, env: Environment) -> Outcome:
        entry = self._log_step(rule=STATEMENT_RULES.get(type(statement), "STATEMENT"), location=statement.location)
        try:
            outcome = self._dispatch_statement(statement, env)
        except FoldrRuntimeError as error:
            error.locate(statement.location)
            raise
        if outcome.signal != SIGNAL_NORMAL:
            entry.signal = outcome.signal
        return outcome

    def _dispatch_statement(self, statement: Statement, env: Environment) -> Outcome:
        if isinstance(statement, VarDecl):
            value = self._evaluate_expression(statement.expression, env)
            env.declare_variable(statement.name, value, statement.const)
            return OUTCOME_NORMAL
        if isinstance(statement, Assignment):
            self._execute_assignment(statement, env)
            return OUTCOME_NORMAL
        if isinstance(statement, ExpressionStatement):
            self._evaluate_expression(statement.expression, env)
            return OUTCOME_NORMAL
        if isinstance(statement, IfStatement):
            return self._execute_if(statement, env)
        if isinstance(statement, WhileStatement):
            return self._execute_while(statement, env)
        if isinstance(statement, ForStatement):
            return self._execute_for(statement, env)
        if isinstance(statement, FuncDef):
            env.register_function(Function(name=statement.name, params=statement.params, body=statement.body))
            return OUTCOME_NORMAL
        if isinstance(statement, ReturnStatement):
            value = self._evaluate_expression(statement.expression, env)
            return Outcome(SIGNAL_RETURN, value, statement.location)
        if isinstance(statement, BreakStatement):
            return Outcome(SIGNAL_BREAK, location=statement.location)
        if isinstance(statement, ContinueStatement):
            return Outcome(SIGNAL_CONTINUE, location=statement.location)
        raise FoldrRuntimeError("Unsupported statement", location=statement.location)

    def _execute_assignment(self, statement: Assignment, env: Environment) -> None:
        value = self._evaluate_expression(statement.expression, env)
        if statement.operator == "=":
            env.set_variable(statement.target, value)
            return
        current = env.find_variable(statement.target)
        if current is None:
            if self.strict:
                raise FoldrRuntimeError(
                    f"Undefined variable '{statement.target}'",
                    location=statement.location,
                    rule="ASSIGN",
                )
            env.set_variable(statement.target, value)
            return
        # "x += e" is "x = x + e"; "x -= e" is "x = x - e".
        operator = statement.operator[0]
        env.set_variable(statement.target, self._apply_binary(operator, current.value, value, statement.location))

    def _execute_if(self, statement: IfStatement, env: Environment) -> Outcome:
        if is_truthy(self._evaluate_expression(statement.condition, env)):
            return self._execute_block(statement.then_block.statements, env)
        if statement.else_block is not None:
            return self._execute_block(statement.else_block.statements, env)
        return OUTCOME_NORMAL

    def _execute_while(self, statement: WhileStatement, env: Environment) -> Outcome:
        eval_expr = self._evaluate_expression
        while is_truthy(eval_expr(statement.condition, env)):
            outcome = self._execute_block(statement.block.statements, env)
            if outcome.signal == SIGNAL_RETURN:
                return outcome
            if outcome.signal == SIGNAL_BREAK:
                break
        return OUTCOME_NORMAL

    def _execute_for(self, statement: ForStatement, env: Environment) -> Outcome:
        iterable = self._evaluate_expression(statement.iterable, env)
        if iterable.type != TYPE_ARR:
            return OUTCOME_NORMAL
        for item in iterable.value:
            # The loop variable overwrites a same-named binding; it does not shadow it.
            env.set_variable(statement.variable, item)
            outcome = self._execute_block(statement.block.statements, env)
            if outcome.signal == SIGNAL_RETURN:
                return outcome
            if outcome.signal == SIGNAL_BREAK:
                break
        return OUTCOME_NORMAL

    def _stray_loop_signal(self, outcome: Outcome) -> None:
        if not self.strict:
            return
        keyword = "break" if outcome.signal == SIGNAL_BREAK else "continue"
        raise FoldrRuntimeError(f"'{keyword}' outside of a loop", location=outcome.location, rule=outcome.signal)

    def _soft_failure(self, message: str, location: SourceLocation, rule: str) -> Value:
        if self.strict:
            raise FoldrRuntimeError(message, location=location, rule=rule)
        return NULL

    def _evaluate_expression(self, expression: Expression, env: Environment) -> Value:
        if isinstance(expression, Literal):
            return Value(expression.literal_type, expression.value)
        if isinstance(expression, Identifier):
            found = env.find_variable(expression.name)
            if found is not None:
                return found.value
            return self._soft_failure(f"Undefined variable '{expression.name}'", expression.location, "IDENT")
        if isinstance(expression, BinaryOp):
            return self._evaluate_binary(expression, env)
        if isinstance(expression, UnaryOp):
            operand = self._evaluate_expression(expression.operand, env)
            return self._apply_unary(expression.operator, operand, expression.location)
        if isinstance(expression, CallExpression):
            return self._evaluate_call(expression, env)
        if isinstance(expression, ArrayLiteral):
            eval_expr = self._evaluate_expression
            return make_array([eval_expr(item, env) for item in expression.items])
        if isinstance(expression, IndexExpression):
            return self._evaluate_index(expression, env)
        raise FoldrRuntimeError("Unsupported expression", location=expression.location)

    def _evaluate_index(self, expression: IndexExpression, env: Environment) -> Value:
        variable = env.find_variable(expression.name)
        if variable is None or variable.value.type != TYPE_ARR:
            return self._soft_failure(f"'{expression.name}' is not an array", expression.location, "INDEX")
        index = self._evaluate_expression(expression.index, env)
        if index.type != TYPE_INT:
            return self._soft_failure(f"Array index must be INT, got {index.type}", expression.location, "INDEX")
        items = variable.value.value
        if not 0 <= index.value < len(items):
            return self._soft_failure(
                f"Array index {index.value} out of range for '{expression.name}' (length {len(items)})",
                expression.location,
                "INDEX",
            )
        return items[index.value]

    def _evaluate_binary(self, expression: BinaryOp, env: Environment) -> Value:
        operator = expression.operator
        left = self._evaluate_expression(expression.left, env)
        if operator == "&&":
            if not is_truthy(left):
                return make_bool(False)
            return make_bool(is_truthy(self._evaluate_expression(expression.right, env)))
        if operator == "||":
            if is_truthy(left):
                return make_bool(True)
            return make_bool(is_truthy(self._evaluate_expression(expression.right, env)))
        right = self._evaluate_expression(expression.right, env)
        return self._apply_binary(operator, left, right, expression.location)

    def _apply_binary(self, operator: str, left: Value, right: Value, location: SourceLocation) -> Value:
        if operator == "+":
            if left.type == TYPE_INT and right.type == TYPE_INT:
                return make_int(left.value + right.value)
            if left.type == TYPE_STR or right.type == TYPE_STR:
                return make_string(format_value(left) + format_value(right))
            kind, a, b = self._expect_num_pair(operator, left, right, location)
            return Value(kind, a + b)
        if operator == "==":
            return make_bool(values_equal(left, right))
        if operator == "!=":
            return make_bool(not values_equal(left, right))
        kind, a, b = self._expect_num_pair(operator, left, right, location)
        if operator == "-":
            return Value(kind, a - b)
        if operator == "*":
            return Value(kind, a * b)
        if operator == "/":
            if b == 0:
                raise FoldrRuntimeError("Division by zero", location=location, rule="/")
            return Value(kind, self._trunc_div(a, b) if kind == TYPE_INT else a / b)
        if operator == "%":
            if b == 0:
                raise FoldrRuntimeError("Modulo by zero", location=location, rule="%")
            return Value(kind, a - b * self._trunc_div(a, b) if kind == TYPE_INT else math.fmod(a, b))
        if operator == "<":
            return make_bool(a < b)
        if operator == ">":
            return make_bool(a > b)
        if operator == "<=":
            return make_bool(a <= b)
        if operator == ">=":
            return make_bool(a >= b)
        raise FoldrRuntimeError(f"Unsupported operator '{operator}'", location=location)

    def _apply_unary(self, operator: str, operand: Value, location: SourceLocation) -> Value:
        if operator == "!":
            return make_bool(not is_truthy(operand))
        number = _numeric(operand)
        if number is None:
            raise FoldrRuntimeError(f"Operator '-' expects a numeric operand, got {operand.type}", location=location, rule="-")
        kind, value = number
        return Value(kind, -value)

    def _expect_num_pair(self, operator: str, left: Value, right: Value, location: SourceLocation) -> Tuple[str, Any, Any]:
        left_num, right_num = _numeric(left), _numeric(right)
        if left_num is None or right_num is None:
            raise FoldrRuntimeError(
                f"Operator '{operator}' expects numeric operands, got {left.type} and {right.type}",
                location=location,
                rule=operator,
            )
        if left_num[0] == TYPE_FLT or right_num[0] == TYPE_FLT:
            return TYPE_FLT, float(left_num[1]), float(right_num[1])
        return TYPE_INT, left_num[1], right_num[1]

    @staticmethod
    def _trunc_div(a: int, b: int) -> int:
        # C semantics: the quotient truncates toward zero.
        quotient = abs(a) // abs(b)
        return quotient if (a < 0) == (b < 0) else -quotient

    def _evaluate_call(self, expression: CallExpression, env: Environment) -> Value:
        name = expression.name
        eval_expr = self._evaluate_expression
        if name in self.builtins.table:
            args = [eval_expr(arg, env) for arg in expression.args]
            self._log_step(rule="BUILTIN", location=expression.location, detail=self._call_detail(name, args))
            return self.builtins.invoke(self, name, args, expression.location)
        function = env.find_function(name)
        if function is None:
            return self._soft_failure(f"Undefined function '{name}'", expression.location, "CALL")
        # Arguments past the declared parameters are never evaluated.
        bound = expression.args[: len(function.params)]
        args = [eval_expr(arg, env) for arg in bound]
        self._log_step(rule="CALL", location=expression.location, detail=self._call_detail(name, args))
        return self._call_user_function(function, args, env, expression.location)

    def _call_detail(self, name: str, args: List[Value]) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"function": name}
        if self.verbose:
            detail["args"] = [format_value(a) for a in args]
        return detail

    def _call_user_function(
        self,
        function: Function,
        args: List[Value],
        caller_env: Environment,
        call_location: SourceLocation,
    ) -> Value:
        was_shared = caller_env.shared
        env = caller_env.snapshot()
        for param, arg in zip(function.params, args):
            env.set_variable(param.name, arg)
        frame = self._new_frame(function.name, env, call_location)
        self.call_stack.append(frame)
        outcome = self._execute_block(function.body.statements, env)
        if outcome.signal in (SIGNAL_BREAK, SIGNAL_CONTINUE):
            self._stray_loop_signal(outcome)
        self.call_stack.pop()
        self.logger.discard_frame(frame.frame_id)
        caller_env.release(was_shared)
        if outcome.signal == SIGNAL_RETURN:
            return outcome.value
        return NULL

    def _new_frame(self, name: str, env: Environment, call_location: Optional[SourceLocation]) -> Frame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return Frame(name=name, env=env, frame_id=frame_id, call_location=call_location)

    def _log_step(
        self,
        *,
        rule: str,
        location: Optional[SourceLocation],
        detail: Optional[Dict[str, Any]] = None,
    ) -> StateEntry:
        frame = self.call_stack[-1] if self.call_stack else None
        return self.logger.record(
            frame=frame,
            depth=len(self.call_stack) - 1,
            rule=rule,
            location=location,
            env_snapshot=frame.env.render() if (self.verbose and frame) else None,
            detail=detail,
        )


@dataclass
class TracebackFrame:
    name: str
    depth: int
    location: Optional[SourceLocation]
    last_step: Optional[StateEntry]


class TracebackFormatter:
    """Renders the live Foldr call stack of a failed run, innermost call last."""

    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self) -> List[TracebackFrame]:
        logger = self.interpreter.logger
        frames: List[TracebackFrame] = []
        for depth, frame in enumerate(self.interpreter.call_stack):
            step = logger.last_entry_for_frame(frame.frame_id)
            location = step.location if step is not None and step.location is not None else frame.call_location
            frames.append(TracebackFrame(name=frame.name, depth=depth, location=location, last_step=step))
        return frames

    @staticmethod
    def _elide(frames: List[TracebackFrame]) -> Tuple[List[TracebackFrame], int]:
        # Deep recursion keeps the outermost frame and the innermost calls.
        omitted = len(frames) - TRACEBACK_FRAME_LIMIT
        if omitted <= 0:
            return frames, 0
        return frames[:1] + frames[-(TRACEBACK_FRAME_LIMIT - 1):], omitted

    def format_text(self, error: FoldrRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        frames, omitted = self._elide(self.build_frames())
        for position, frame in enumerate(frames):
            if omitted and position == 1:
                lines.append(f"  ... {omitted} nested calls omitted ...")
            lines.extend(self._describe(frame, verbose))
        lines.append(f"{error.__class__.__name__}: {error.message} (rule: {error.rule or 'runtime'})")
        return "\n".join(lines)

    def _describe(self, frame: TracebackFrame, verbose: bool) -> List[str]:
        if frame.location is None:
            return [f"  <unknown location> in {frame.name}"]
        lines = [f"  File \"{frame.location.file}\", line {frame.location.line}, in {frame.name}"]
        if frame.location.statement:
            lines.append(f"    {frame.location.statement}")
        step = frame.last_step
        if step is not None:
            lines.append(f"    step {step.step_index}: {step.rule}")
            if verbose and step.env_snapshot is not None:
                snapshot = ", ".join(f"{k}={v}" for k, v in step.env_snapshot.items())
                lines.append(f"    Env snapshot: {snapshot}")
        return lines

    def to_json(self, error: FoldrRuntimeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for frame in self.build_frames():
            entry: Dict[str, Any] = {"depth": frame.depth, "name": frame.name}
            if frame.location is not None:
                entry["source_location"] = {
                    "file": frame.location.file,
                    "line": frame.location.line,
                    "column": frame.location.column,
                    "statement": frame.location.statement,
                }
            step = frame.last_step
            if step is not None:
                entry["step"] = {"index": step.step_index, "rule": step.rule, "signal": step.signal}
                if step.detail:
                    entry["step"]["detail"] = step.detail
                if step.env_snapshot is not None:
                    entry["env_snapshot"] = step.env_snapshot
            frames_json.append(entry)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "rule": error.rule,
                "line": error.line,
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
        }
        return json.dumps(data, indent=2)
