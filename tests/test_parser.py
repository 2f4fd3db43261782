"""Tests for the Foldr parser."""

import pytest

from lexer import FoldrParseError, tokenize
from parser import (
    ArrayLiteral,
    Assignment,
    BinaryOp,
    BreakStatement,
    CallExpression,
    ContinueStatement,
    ExpressionStatement,
    ForStatement,
    FuncDef,
    Identifier,
    IfStatement,
    IndexExpression,
    Literal,
    Parser,
    Program,
    ReturnStatement,
    UnaryOp,
    VarDecl,
    WhileStatement,
)


def parse(source: str) -> Program:
    return Parser(tokenize(source), "<test>", source.splitlines()).parse()


def parse_expr(source: str):
    program = parse(f"let _ = {source};")
    return program.statements[0].expression


def test_var_and_const_declarations():
    program = parse("let a: int = 1; const b = 2.5")
    a, b = program.statements
    assert isinstance(a, VarDecl) and not a.const
    assert a.declared_type == "int"
    assert a.expression == Literal(location=a.expression.location, value=1, literal_type="INT")
    assert isinstance(b, VarDecl) and b.const
    assert b.expression.literal_type == "FLT"
    assert b.expression.value == 2.5


def test_semicolons_are_optional_and_stray_ones_skipped():
    program = parse(";; let a = 1 let b = 2;;; print(a)")
    assert [type(s) for s in program.statements] == [VarDecl, VarDecl, ExpressionStatement]


def test_binary_operators_are_flat_and_left_associative():
    expr = parse_expr("1 + 2 * 3")
    assert isinstance(expr, BinaryOp)
    assert expr.operator == "*"
    assert isinstance(expr.left, BinaryOp)
    assert expr.left.operator == "+"
    assert expr.right.value == 3


def test_parentheses_group():
    expr = parse_expr("1 + (2 * 3)")
    assert expr.operator == "+"
    assert expr.right.operator == "*"


def test_unary_operators_bind_to_primary():
    expr = parse_expr("-a + !b")
    assert expr.operator == "+"
    assert isinstance(expr.left, UnaryOp) and expr.left.operator == "-"
    assert isinstance(expr.left.operand, Identifier)
    assert isinstance(expr.right, UnaryOp) and expr.right.operator == "!"


def test_boolean_literals():
    expr = parse_expr("true && false")
    assert expr.left.literal_type == "BOOL" and expr.left.value is True
    assert expr.right.value is False


def test_calls_arrays_and_indexing():
    expr = parse_expr("f(1, [2, 3], xs[0])")
    assert isinstance(expr, CallExpression)
    assert expr.name == "f"
    first, array, index = expr.args
    assert first.value == 1
    assert isinstance(array, ArrayLiteral) and len(array.items) == 2
    assert isinstance(index, IndexExpression) and index.name == "xs"


def test_empty_array_and_call():
    expr = parse_expr("g([])")
    assert isinstance(expr.args[0], ArrayLiteral)
    assert expr.args[0].items == []


def test_function_definition_with_annotations():
    program = parse("func add(a: int, b) -> int { return a + b }")
    func = program.statements[0]
    assert isinstance(func, FuncDef)
    assert [(p.name, p.type) for p in func.params] == [("a", "int"), ("b", None)]
    assert func.return_type == "int"
    assert isinstance(func.body.statements[0], ReturnStatement)


def test_control_flow_statements():
    source = """
    if (x) { print(1) } else { print(2) }
    while (x) { break; continue }
    for (item in items) { x += item }
    """
    if_stmt, while_stmt, for_stmt = parse(source).statements
    assert isinstance(if_stmt, IfStatement)
    assert if_stmt.else_block is not None
    assert isinstance(while_stmt, WhileStatement)
    assert [type(s) for s in while_stmt.block.statements] == [BreakStatement, ContinueStatement]
    assert isinstance(for_stmt, ForStatement)
    assert for_stmt.variable == "item"
    assignment = for_stmt.block.statements[0]
    assert isinstance(assignment, Assignment)
    assert assignment.operator == "+="


def test_if_without_else():
    stmt = parse("if (1) { }").statements[0]
    assert stmt.else_block is None
    assert stmt.then_block.statements == []


def test_locations_carry_line_and_statement_text():
    program = parse("let a = 1\n  print(a)")
    call = program.statements[1]
    assert call.location.line == 2
    assert call.location.statement == "print(a)"
    assert call.location.lexeme == "print"


def test_identifier_without_assignment_or_call():
    with pytest.raises(FoldrParseError) as info:
        parse("x 5")
    assert info.value.message == "Expected assignment or call after identifier"
    assert info.value.lexeme == "5"
    assert info.value.kind == "NUMBER"


def test_unexpected_statement_start():
    with pytest.raises(FoldrParseError) as info:
        parse("let a = 1\n)")
    assert info.value.diagnostic() == "Error: Unexpected token at start of statement (line 2, token=')', type=RPAREN)"


def test_missing_closing_brace():
    with pytest.raises(FoldrParseError) as info:
        parse("while (1) { print(1)")
    assert info.value.message == "Expected RBRACE but found EOF"


def test_bad_expression_token():
    with pytest.raises(FoldrParseError) as info:
        parse("let a = ;")
    assert info.value.message == "Unexpected token in expression"


@pytest.mark.parametrize("text,expected", [("1.2.3", 1.2), ("4..5", 4.0), ("7.", 7.0), ("0.25", 0.25)])
def test_dotted_number_reads_longest_float_prefix(text, expected):
    literal = parse_expr(text)
    assert literal.literal_type == "FLT"
    assert literal.value == expected


def test_arguments_require_commas():
    with pytest.raises(FoldrParseError):
        parse("print(1 2)")
