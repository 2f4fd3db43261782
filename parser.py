from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Union

from lexer import FoldrParseError, Token


@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str
    lexeme: str
    kind: str


@dataclass
class Node:
    location: SourceLocation


@dataclass
class Program(Node):
    statements: List["Statement"]


class Statement(Node):
    pass


@dataclass
class Block(Node):
    statements: List[Statement]


@dataclass
class Param:
    name: str
    type: Optional[str]


@dataclass
class FuncDef(Statement):
    name: str
    params: List[Param]
    return_type: Optional[str]
    body: Block


@dataclass
class VarDecl(Statement):
    name: str
    expression: "Expression"
    declared_type: Optional[str]
    const: bool


@dataclass
class Assignment(Statement):
    target: str
    operator: str
    expression: "Expression"


@dataclass
class ExpressionStatement(Statement):
    expression: "Expression"


@dataclass
class IfStatement(Statement):
    condition: "Expression"
    then_block: Block
    else_block: Optional[Block]


@dataclass
class WhileStatement(Statement):
    condition: "Expression"
    block: Block


@dataclass
class ForStatement(Statement):
    variable: str
    iterable: "Expression"
    block: Block


@dataclass
class ReturnStatement(Statement):
    expression: "Expression"


@dataclass
class BreakStatement(Statement):
    pass


@dataclass
class ContinueStatement(Statement):
    pass


class Expression(Node):
    pass


@dataclass
class Literal(Expression):
    value: Union[int, float, str, bool]
    literal_type: str


@dataclass
class Identifier(Expression):
    name: str


@dataclass
class BinaryOp(Expression):
    operator: str
    left: Expression
    right: Expression


@dataclass
class UnaryOp(Expression):
    operator: str
    operand: Expression


@dataclass
class CallExpression(Expression):
    name: str
    args: List[Expression]


@dataclass
class ArrayLiteral(Expression):
    items: List[Expression]


@dataclass
class IndexExpression(Expression):
    name: str
    index: Expression


# All binary operators share one precedence level and associate to the left.
BINARY_OPERATORS = {
    "PLUS",
    "MINUS",
    "STAR",
    "SLASH",
    "PERCENT",
    "EQ",
    "NEQ",
    "LT",
    "GT",
    "LTE",
    "GTE",
    "AND",
    "OR",
}

ASSIGN_OPERATORS = {"ASSIGN", "PLUS_ASSIGN", "MINUS_ASSIGN"}

# Number tokens always start with a digit, so this always matches.
_LEADING_FLOAT = re.compile(r"[0-9]+(\.[0-9]*)?")


class Parser:
    def __init__(self, tokens: List[Token], filename: str, source_lines: List[str]) -> None:
        self.tokens = tokens
        self.filename = filename
        self.source_lines = source_lines
        self.index = 0

    def parse(self) -> Program:
        first: Token = self._peek()
        statements: List[Statement] = self._parse_statements(stop_tokens={"EOF"})
        return Program(location=self._location_from_token(first), statements=statements)

    def _parse_statements(self, stop_tokens: Iterable[str]) -> List[Statement]:
        statements: List[Statement] = []
        while self._peek().type not in stop_tokens:
            if self._match("SEMICOLON"):
                continue
            statements.append(self._parse_statement())
        return statements

    def _parse_statement(self) -> Statement:
        token = self._peek()
        if token.type == "BREAK":
            self._advance()
            self._consume_terminator()
            return BreakStatement(location=self._location_from_token(token))
        if token.type == "CONTINUE":
            self._advance()
            self._consume_terminator()
            return ContinueStatement(location=self._location_from_token(token))
        if token.type == "WHILE":
            return self._parse_while()
        if token.type == "FUNC":
            return self._parse_func()
        if token.type in ("LET", "CONST"):
            return self._parse_var_decl()
        if token.type == "IF":
            return self._parse_if()
        if token.type == "FOR":
            return self._parse_for()
        if token.type == "RETURN":
            return self._parse_return()
        if token.type == "IDENT":
            following = self._peek_next()
            if following.type in ASSIGN_OPERATORS:
                return self._parse_assignment()
            if following.type == "LPAREN":
                call = self._parse_call(self._consume("IDENT"))
                self._consume_terminator()
                return ExpressionStatement(location=call.location, expression=call)
            raise FoldrParseError.at_token("Expected assignment or call after identifier", following)
        raise FoldrParseError.at_token("Unexpected token at start of statement", token)

    def _parse_while(self) -> WhileStatement:
        keyword = self._consume("WHILE")
        condition: Expression = self._parse_parenthesized_expression()
        block: Block = self._parse_block()
        return WhileStatement(location=self._location_from_token(keyword), condition=condition, block=block)

    def _parse_func(self) -> FuncDef:
        keyword = self._consume("FUNC")
        name_token = self._consume("IDENT")
        self._consume("LPAREN")
        params: List[Param] = []
        if self._peek().type != "RPAREN":
            while True:
                param_token = self._consume("IDENT")
                params.append(Param(name=param_token.value, type=self._parse_type_annotation()))
                if not self._match("COMMA"):
                    break
        self._consume("RPAREN")
        return_type: Optional[str] = None
        if self._match("ARROW"):
            return_type = self._consume("IDENT").value
        body: Block = self._parse_block()
        return FuncDef(
            location=self._location_from_token(keyword),
            name=name_token.value,
            params=params,
            return_type=return_type,
            body=body,
        )

    def _parse_var_decl(self) -> VarDecl:
        keyword = self._advance()
        name_token = self._consume("IDENT")
        declared_type = self._parse_type_annotation()
        self._consume("ASSIGN")
        expr = self._parse_expression()
        self._consume_terminator()
        return VarDecl(
            location=self._location_from_token(name_token),
            name=name_token.value,
            expression=expr,
            declared_type=declared_type,
            const=keyword.type == "CONST",
        )

    def _parse_if(self) -> IfStatement:
        keyword = self._consume("IF")
        condition: Expression = self._parse_parenthesized_expression()
        then_block: Block = self._parse_block()
        else_block: Optional[Block] = self._parse_block() if self._match("ELSE") else None
        return IfStatement(
            location=self._location_from_token(keyword),
            condition=condition,
            then_block=then_block,
            else_block=else_block,
        )

    def _parse_for(self) -> ForStatement:
        keyword = self._consume("FOR")
        self._consume("LPAREN")
        variable = self._consume("IDENT")
        self._consume("IN")
        iterable: Expression = self._parse_expression()
        self._consume("RPAREN")
        block: Block = self._parse_block()
        return ForStatement(location=self._location_from_token(keyword), variable=variable.value, iterable=iterable, block=block)

    def _parse_return(self) -> ReturnStatement:
        keyword = self._consume("RETURN")
        expression: Expression = self._parse_expression()
        self._consume_terminator()
        return ReturnStatement(location=self._location_from_token(keyword), expression=expression)

    def _parse_assignment(self) -> Assignment:
        ident = self._consume("IDENT")
        operator = self._advance()
        expr = self._parse_expression()
        self._consume_terminator()
        return Assignment(location=self._location_from_token(operator), target=ident.value, operator=operator.value, expression=expr)

    def _parse_block(self) -> Block:
        start = self._consume("LBRACE")
        statements: List[Statement] = self._parse_statements(stop_tokens={"RBRACE", "EOF"})
        self._consume("RBRACE")
        return Block(location=self._location_from_token(start), statements=statements)

    def _parse_expression(self) -> Expression:
        # One flat level: "a + b * c" is "(a + b) * c".
        expr = self._parse_primary()
        while self._peek().type in BINARY_OPERATORS:
            operator = self._advance()
            right = self._parse_primary()
            expr = BinaryOp(location=self._location_from_token(operator), operator=operator.value, left=expr, right=right)
        return expr

    def _parse_primary(self) -> Expression:
        token = self._peek()
        if token.type == "NUMBER":
            self._advance()
            return self._number_literal(token)
        if token.type == "STRING":
            self._advance()
            return Literal(location=self._location_from_token(token), value=token.value, literal_type="STR")
        if token.type in ("TRUE", "FALSE"):
            self._advance()
            return Literal(location=self._location_from_token(token), value=token.type == "TRUE", literal_type="BOOL")
        if token.type == "IDENT":
            ident: Token = self._advance()
            if self._peek().type == "LPAREN":
                return self._parse_call(ident)
            if self._match("LBRACKET"):
                index_expr = self._parse_expression()
                self._consume("RBRACKET")
                return IndexExpression(location=self._location_from_token(ident), name=ident.value, index=index_expr)
            return Identifier(location=self._location_from_token(ident), name=ident.value)
        if token.type == "LBRACKET":
            self._advance()
            items = self._parse_expression_list("RBRACKET")
            return ArrayLiteral(location=self._location_from_token(token), items=items)
        if token.type == "LPAREN":
            return self._parse_parenthesized_expression()
        if token.type in ("NOT", "MINUS"):
            self._advance()
            operand = self._parse_primary()
            return UnaryOp(location=self._location_from_token(token), operator=token.value, operand=operand)
        raise FoldrParseError.at_token("Unexpected token in expression", token)

    def _parse_call(self, name_token: Token) -> CallExpression:
        self._consume("LPAREN")
        args = self._parse_expression_list("RPAREN")
        return CallExpression(location=self._location_from_token(name_token), name=name_token.value, args=args)

    def _parse_expression_list(self, closing: str) -> List[Expression]:
        items: List[Expression] = []
        if self._peek().type != closing:
            while True:
                items.append(self._parse_expression())
                if not self._match("COMMA"):
                    break
        self._consume(closing)
        return items

    def _parse_parenthesized_expression(self) -> Expression:
        self._consume("LPAREN")
        expr = self._parse_expression()
        self._consume("RPAREN")
        return expr

    def _parse_type_annotation(self) -> Optional[str]:
        # Annotations are recorded for diagnostics only; nothing checks them.
        if self._match("COLON"):
            return self._consume("IDENT").value
        return None

    def _number_literal(self, token: Token) -> Literal:
        text = token.value
        location = self._location_from_token(token)
        if "." in text:
            # Longest valid prefix, like atof: "1.2.3" reads as 1.2.
            return Literal(location=location, value=float(_LEADING_FLOAT.match(text).group()), literal_type="FLT")
        return Literal(location=location, value=int(text), literal_type="INT")

    @property
    def current_token(self) -> Token:
        return self._peek()

    def _consume(self, token_type: str) -> Token:
        token = self._peek()
        if token.type != token_type:
            raise FoldrParseError.at_token(f"Expected {token_type} but found {token.type}", token)
        self.index += 1
        return token

    def _match(self, token_type: str) -> bool:
        if self._peek().type == token_type:
            self.index += 1
            return True
        return False

    def _consume_terminator(self) -> None:
        self._match("SEMICOLON")

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        if token.type != "EOF":
            self.index += 1
        return token

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _peek_next(self) -> Token:
        if self.index + 1 < len(self.tokens):
            return self.tokens[self.index + 1]
        return self.tokens[-1]

    def _location_from_token(self, token: Token) -> SourceLocation:
        line_index = token.line - 1
        statement = ""
        if 0 <= line_index < len(self.source_lines):
            statement = self.source_lines[line_index].strip()
        return SourceLocation(
            file=self.filename,
            line=token.line,
            column=token.column,
            statement=statement,
            lexeme=token.value,
            kind=token.type,
        )
