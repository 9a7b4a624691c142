"""Structured parser for the ``BACKUP`` statements stored on backup schedules.

``SHOW SCHEDULES`` reports each schedule's command as text such as::

    BACKUP TABLE db.public.t1, db.public.t2 INTO 's3://bucket/path'
        WITH OPTIONS (revision_history = true, encryption_passphrase = '*****', detached)
    BACKUP INTO LATEST IN 's3://bucket/path' WITH revision_history = true

The text is tokenized with sqlglot and walked by hand: sqlglot keeps BACKUP
as an opaque command, but its tokenizer already handles quoting.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Sequence

import sqlglot
from sqlglot.errors import TokenError
from sqlglot.tokens import Token, TokenType

from crdbextra.errors import StatementParseError

BackupOptionValue = str | bool | tuple[str, ...]


@dataclass(frozen=True, slots=True)
class BackupTargets:
    """What a BACKUP covers; both tuples empty means the full cluster."""

    tables: tuple[str, ...] = ()
    databases: tuple[str, ...] = ()

    @property
    def full_cluster(self) -> bool:
        return not self.tables and not self.databases


@dataclass(frozen=True, slots=True)
class BackupCommand:
    targets: BackupTargets
    locations: tuple[str, ...]
    incremental: bool = False
    options: Mapping[str, BackupOptionValue] = field(default_factory=dict)

    @property
    def location(self) -> str:
        return self.locations[0]

    def option(self, name: str) -> BackupOptionValue | None:
        return self.options.get(name)

    def string_option(self, name: str) -> str | None:
        """Option value as text; list values yield their first element."""

        value = self.options.get(name)
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, tuple):
            return value[0] if value else None
        return value

    def flag(self, name: str) -> bool:
        value = self.options.get(name)
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() == "true"
        return False


class _TokenStream:
    def __init__(self, statement: str, tokens: Sequence[Token]) -> None:
        self._statement = statement
        self._tokens = [token for token in tokens if token.token_type != TokenType.SEMICOLON]
        self._pos = 0

    def at_end(self) -> bool:
        return self._pos >= len(self._tokens)

    def peek(self) -> Token | None:
        return None if self.at_end() else self._tokens[self._pos]

    def peek_word(self) -> str:
        token = self.peek()
        if token is None or _is_string(token):
            return ""
        return token.text.upper()

    def advance(self) -> Token:
        token = self.peek()
        if token is None:
            self.fail("unexpected end of statement")
        self._pos += 1
        return token

    def accept(self, token_type: TokenType) -> bool:
        token = self.peek()
        if token is not None and token.token_type == token_type:
            self._pos += 1
            return True
        return False

    def expect(self, token_type: TokenType) -> Token:
        token = self.advance()
        if token.token_type != token_type:
            self.fail(f"expected {token_type.name}, found {token.text!r}")
        return token

    def accept_word(self, *words: str) -> bool:
        if self.peek_word() in words:
            self._pos += 1
            return True
        return False

    def expect_word(self, word: str) -> None:
        if not self.accept_word(word):
            token = self.peek()
            found = token.text if token is not None else "end of statement"
            self.fail(f"expected {word}, found {found!r}")

    def fail(self, reason: str):
        raise StatementParseError(f"{reason} in backup statement", self._statement)


def parse_backup_command(statement: str) -> BackupCommand:
    """Parse a BACKUP statement into targets, locations and options."""

    try:
        tokens = sqlglot.tokenize(statement, read="postgres")
    except TokenError as exc:
        raise StatementParseError(f"unable to tokenize backup statement: {exc}", statement) from exc
    stream = _TokenStream(statement, tokens)

    stream.expect_word("BACKUP")
    targets = _parse_targets(stream)
    stream.expect_word("INTO")
    incremental = False
    if stream.accept_word("LATEST"):
        stream.expect_word("IN")
        incremental = True
    locations = _parse_locations(stream)

    if stream.accept_word("AS"):
        # AS OF SYSTEM TIME <expr>
        while not stream.at_end() and stream.peek_word() != "WITH":
            stream.advance()

    options: dict[str, BackupOptionValue] = {}
    if stream.accept_word("WITH"):
        stream.accept_word("OPTIONS")
        if stream.accept(TokenType.L_PAREN):
            options = _parse_options(stream, closing=True)
        else:
            options = _parse_options(stream, closing=False)
    if not stream.at_end():
        stream.fail(f"unexpected trailing text {stream.advance().text!r}")
    return BackupCommand(targets=targets, locations=locations, incremental=incremental, options=options)


def _parse_targets(stream: _TokenStream) -> BackupTargets:
    if stream.accept_word("TABLE"):
        return BackupTargets(tables=tuple(_parse_name_list(stream)))
    if stream.accept_word("DATABASE"):
        return BackupTargets(databases=tuple(_parse_name_list(stream)))
    return BackupTargets()


def _parse_name_list(stream: _TokenStream) -> list[str]:
    names = [_parse_name(stream)]
    while stream.accept(TokenType.COMMA):
        names.append(_parse_name(stream))
    return names


def _parse_name(stream: _TokenStream) -> str:
    parts = [_name_part(stream)]
    while stream.accept(TokenType.DOT):
        parts.append(_name_part(stream))
    return ".".join(parts)


def _name_part(stream: _TokenStream) -> str:
    token = stream.advance()
    if token.token_type == TokenType.STAR:
        return "*"
    if _is_string(token) or token.token_type in (TokenType.COMMA, TokenType.L_PAREN, TokenType.R_PAREN):
        stream.fail(f"expected a name, found {token.text!r}")
    return token.text


def _parse_locations(stream: _TokenStream) -> tuple[str, ...]:
    if stream.accept(TokenType.L_PAREN):
        locations = [_string(stream)]
        while stream.accept(TokenType.COMMA):
            locations.append(_string(stream))
        stream.expect(TokenType.R_PAREN)
        return tuple(locations)
    return (_string(stream),)


def _parse_options(stream: _TokenStream, *, closing: bool) -> dict[str, BackupOptionValue]:
    options: dict[str, BackupOptionValue] = {}
    while True:
        if closing and stream.accept(TokenType.R_PAREN):
            break
        if not closing and stream.at_end():
            break
        key = stream.advance().text.lower()
        if stream.accept(TokenType.EQ):
            options[key] = _option_value(stream)
        else:
            options[key] = True
        if stream.accept(TokenType.COMMA):
            continue
        if closing:
            stream.expect(TokenType.R_PAREN)
        break
    return options


def _option_value(stream: _TokenStream) -> BackupOptionValue:
    token = stream.peek()
    if token is None:
        stream.fail("missing option value")
    if token.token_type == TokenType.L_PAREN:
        stream.advance()
        values = [_string(stream)]
        while stream.accept(TokenType.COMMA):
            values.append(_string(stream))
        stream.expect(TokenType.R_PAREN)
        return tuple(values)
    stream.advance()
    if _is_string(token):
        return token.text
    if token.token_type == TokenType.TRUE:
        return True
    if token.token_type == TokenType.FALSE:
        return False
    return token.text


def _string(stream: _TokenStream) -> str:
    token = stream.advance()
    if not _is_string(token):
        stream.fail(f"expected a string literal, found {token.text!r}")
    return token.text


def _is_string(token: Token) -> bool:
    return token.token_type.name.endswith("STRING")


__all__ = ["BackupCommand", "BackupOptionValue", "BackupTargets", "parse_backup_command"]
