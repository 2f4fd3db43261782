"""Tests for the Foldr lexer."""

import pytest

from lexer import KEYWORDS, TYPE_NAMES, FoldrLexError, Lexer, lexical_errors, tokenize


def kinds(source: str) -> list[str]:
    return [t.type for t in Lexer(source, "<test>").tokenize()]


def test_declaration_tokens():
    assert kinds("let x = 1.5;") == ["LET", "IDENT", "ASSIGN", "NUMBER", "SEMICOLON", "EOF"]


def test_all_reserved_words():
    assert len(KEYWORDS) == 13
    for word, kind in KEYWORDS.items():
        assert kinds(word) == [kind, "EOF"]


def test_type_names_are_identifiers():
    tokens = Lexer(" ".join(sorted(TYPE_NAMES)), "<test>").tokenize()
    assert len(TYPE_NAMES) == 6
    assert [t.type for t in tokens] == ["IDENT"] * 6 + ["EOF"]
    assert {t.value for t in tokens[:-1]} == TYPE_NAMES


@pytest.mark.parametrize("char", ["\u00e9", "\u03c0", "\u0663", "\u00a0", "\u2003"])
def test_non_ascii_characters_are_errors(char):
    tokens = Lexer(f"let a{char} = 1", "<test>").tokenize()
    assert [e.lexeme for e in lexical_errors(tokens)] == [char]


def test_all_ascii_whitespace_is_skipped():
    assert kinds("let\ta\v=\f1\r\n") == ["LET", "IDENT", "ASSIGN", "NUMBER", "EOF"]


def test_two_character_operators():
    source = "+= -= -> == != <= >= && ||"
    assert kinds(source) == [
        "PLUS_ASSIGN",
        "MINUS_ASSIGN",
        "ARROW",
        "EQ",
        "NEQ",
        "LTE",
        "GTE",
        "AND",
        "OR",
        "EOF",
    ]


def test_single_character_operators():
    source = "+ - * / % = ! < > ( ) { } [ ] ; : , ."
    assert kinds(source)[:-1] == [
        "PLUS",
        "MINUS",
        "STAR",
        "SLASH",
        "PERCENT",
        "ASSIGN",
        "NOT",
        "LT",
        "GT",
        "LPAREN",
        "RPAREN",
        "LBRACE",
        "RBRACE",
        "LBRACKET",
        "RBRACKET",
        "SEMICOLON",
        "COLON",
        "COMMA",
        "DOT",
    ]


def test_comments_and_line_numbers():
    tokens = Lexer("# header\nlet a = 1 # trailing\n\nprint(a)", "<test>").tokenize()
    assert [t.type for t in tokens] == ["LET", "IDENT", "ASSIGN", "NUMBER", "IDENT", "LPAREN", "IDENT", "RPAREN", "EOF"]
    assert tokens[0].line == 2
    assert tokens[4].line == 4
    assert tokens[4].column == 1


def test_strings_have_no_escapes():
    tokens = Lexer(r'"a\n" ' + "'single'", "<test>").tokenize()
    assert tokens[0].type == "STRING"
    assert tokens[0].value == "a\\n"
    assert tokens[1].value == "single"


def test_quote_kinds_do_not_close_each_other():
    tokens = Lexer("\"it's\"", "<test>").tokenize()
    assert tokens[0].value == "it's"


def test_unterminated_string_runs_to_end():
    tokens = Lexer('print("abc', "<test>").tokenize()
    assert tokens[2].type == "STRING"
    assert tokens[2].value == "abc"
    assert tokens[3].type == "EOF"


def test_newline_inside_string_advances_line():
    tokens = Lexer('"a\nb" x', "<test>").tokenize()
    assert tokens[1].value == "x"
    assert tokens[1].line == 2


def test_number_run_includes_every_dot():
    tokens = Lexer("1.2.3", "<test>").tokenize()
    assert tokens[0].type == "NUMBER"
    assert tokens[0].value == "1.2.3"


def test_identifiers_with_underscores_and_digits():
    tokens = Lexer("_tmp2 x_y", "<test>").tokenize()
    assert [t.value for t in tokens[:-1]] == ["_tmp2", "x_y"]


def test_unknown_characters_become_error_tokens():
    tokens = Lexer("let a = 1 @ 2 & 3", "<test>").tokenize()
    errors = lexical_errors(tokens)
    assert [e.lexeme for e in errors] == ["@", "&"]
    assert errors[0].message == "Unexpected character '@'"
    assert errors[0].kind == "ERROR"


def test_tokenize_raises_first_error():
    with pytest.raises(FoldrLexError) as info:
        tokenize("print(1)\nlet $ = 2")
    assert info.value.line == 2
    assert info.value.diagnostic() == "Error: Unexpected character '$' (line 2, token='$', type=ERROR)"


def test_empty_source_is_just_eof():
    assert kinds("") == ["EOF"]
