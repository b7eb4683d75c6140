import re
import string
from typing import List

from jobshell.errors import UnexpectedEnd, UnterminatedQuote

CONTROL_OPERATORS = ("|&", "||", "&&", "|", "&", ";")

# Orden de mayor a menor longitud para el match más largo
REDIRECTION_OPERATORS = ("<<<", "<<-", "<<", "<&", "<>", "<", ">>", ">&", ">")

REDIRECTION_PATTERN = re.compile(
    r"^(?P<fd>\d+)?(?:(?P<dup>[<>]&)(?P<arg>\d+|-)?|(?P<op><<<|<<-|<<|<>|>>|<|>))$"
)

DOUBLE_QUOTE_ESCAPES = ("\\", "$", '"', "\n")

SPECIAL_CHARS = "'\"\\|&;<>"


class QuotedToken(str):
    """
    Palabra que tuvo comillas o escapes; nunca se interpreta como operador.
    """


def is_operator(token: str) -> bool:
    if isinstance(token, QuotedToken):
        return False
    return token in CONTROL_OPERATORS or REDIRECTION_PATTERN.match(token) is not None


class ShellLexer:
    """
    Clase que representa el lexer de la shell.
    """

    def __init__(self) -> None:
        self._reset()

    def _reset(self) -> None:
        self.tokens: List[str] = []
        self.current_token = ""
        self.quote_char = ""
        self.token_was_quoted = False

    def tokenize(self, line: str) -> List[str]:
        self._reset()

        i = 0
        length = len(line)
        while i < length:
            char = line[i]

            if self.quote_char == "'":
                if char == "'":
                    self.quote_char = ""
                else:
                    self.current_token += char
                i += 1
                continue

            if self.quote_char == '"':
                if char == '"':
                    self.quote_char = ""
                elif char == "\\" and i + 1 < length and line[i + 1] in DOUBLE_QUOTE_ESCAPES:
                    i += 1
                    self.current_token += line[i]
                else:
                    self.current_token += char
                i += 1
                continue

            if char in ("'", '"'):
                self.quote_char = char
                self.token_was_quoted = True
                i += 1
                continue

            if char == "\\":
                if i + 1 >= length:
                    raise UnexpectedEnd("unexpected end of input after '\\'")
                self.current_token += line[i + 1]
                self.token_was_quoted = True
                i += 2
                continue

            if char.isspace():
                self.add_token()
                i += 1
                continue

            if char in string.digits and not self.current_token and not self.token_was_quoted:
                end = i
                while end < length and line[end] in string.digits:
                    end += 1
                if end < length and line[end] in "<>":
                    i = self._read_redirection(line, end, line[i:end])
                else:
                    self.current_token += line[i:end]
                    i = end
                continue

            if char in "<>":
                self.add_token()
                i = self._read_redirection(line, i, "")
                continue

            if char in "|&;":
                self.add_token()
                i = self._read_control(line, i)
                continue

            self.current_token += char
            i += 1

        if self.quote_char:
            raise UnterminatedQuote(f"unterminated quote {self.quote_char}")

        self.add_token()
        return self.tokens

    def _read_redirection(self, line: str, pos: int, prefix: str) -> int:
        op = next(op for op in REDIRECTION_OPERATORS if line.startswith(op, pos))
        pos += len(op)
        token = prefix + op

        # `>&` y `<&` llevan pegado el fd destino o `-`
        if op in (">&", "<&"):
            if line.startswith("-", pos):
                token += "-"
                pos += 1
            else:
                end = pos
                while end < len(line) and line[end] in string.digits:
                    end += 1
                token += line[pos:end]
                pos = end

        self.tokens.append(token)
        return pos

    def _read_control(self, line: str, pos: int) -> int:
        op = next(op for op in CONTROL_OPERATORS if line.startswith(op, pos))
        self.tokens.append(op)
        return pos + len(op)

    def add_token(self) -> None:
        if self.current_token or self.token_was_quoted:
            if self.token_was_quoted:
                self.tokens.append(QuotedToken(self.current_token))
            else:
                self.tokens.append(self.current_token)
        self.current_token = ""
        self.token_was_quoted = False


def tokenize(line: str) -> List[str]:
    return ShellLexer().tokenize(line)
