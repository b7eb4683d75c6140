from typing import List, Optional

from jobshell import config
from jobshell.ast_tree import (
    CloseRedirection,
    HereRedirection,
    InputRedirection,
    OutputRedirection,
    ParsedCommand,
    ParsedSequence,
    Redirection,
)
from jobshell.errors import EmptyCommandName, MissingRedirectionTarget, OperatorWithoutCommand, UnexpectedEnd
from jobshell.lexer import CONTROL_OPERATORS, REDIRECTION_PATTERN, ShellLexer, is_operator


class ShellParser:
    """
    Clase que representa el parser de la shell.

    `line_source` solo hace falta para los here-documents: debe ofrecer
    `read_line()` (lanza EOFError al final) y `set_prompt(text)`.
    """

    def __init__(self, tokens: List[str], line_source=None) -> None:
        self.tokens = list(tokens)
        self.pos = 0
        self.line_source = line_source
        self._start_command()

    def _start_command(self) -> None:
        self.name: Optional[str] = None
        self.args: List[str] = []
        self.redirections: List[Redirection] = []
        self.background = False

    def _command_is_empty(self) -> bool:
        return self.name is None and not self.redirections

    def _finish_command(self) -> ParsedCommand:
        command = ParsedCommand(
            self.name or "",
            tuple(self.args),
            tuple(self.redirections),
            self.background,
        )
        self._start_command()
        return command

    def parse(self) -> ParsedSequence:
        commands: List[ParsedCommand] = []
        operators: List[str] = []

        while self.pos < len(self.tokens):
            token = self.consume_any()

            if not is_operator(token):
                if self.name is None:
                    if token == "":
                        raise EmptyCommandName("empty command name")
                    self.name = token
                else:
                    self.args.append(token)
            elif token in CONTROL_OPERATORS:
                if self._command_is_empty():
                    raise OperatorWithoutCommand(f"syntax error near unexpected token `{token}'")
                if token == "&":
                    self.background = True
                commands.append(self._finish_command())
                operators.append(token)
            else:
                self.redirections.append(self.parse_redirection(token))

        if not self._command_is_empty():
            commands.append(self._finish_command())
        elif operators and operators[-1] == "&":
            operators.pop()

        if commands and len(operators) != len(commands) - 1:
            raise UnexpectedEnd(f"unexpected end of input after `{operators[-1]}'")

        return ParsedSequence(tuple(commands), tuple(operators))

    def parse_redirection(self, token: str) -> Redirection:
        match = REDIRECTION_PATTERN.match(token)
        prefix = match.group("fd")

        dup = match.group("dup")
        if dup:
            fd = int(prefix) if prefix else (1 if dup == ">&" else 0)
            arg = match.group("arg")
            if arg is None:
                raise MissingRedirectionTarget(f"missing file descriptor after `{token}'")
            if arg == "-":
                return CloseRedirection(fd)
            if dup == ">&":
                return OutputRedirection(fd, target_fd=int(arg))
            return InputRedirection(fd, source_fd=int(arg))

        op = match.group("op")
        word = self._redirection_target(token)
        if op in (">", ">>"):
            fd = int(prefix) if prefix else 1
            return OutputRedirection(fd, path=word, append=op == ">>")

        fd = int(prefix) if prefix else 0
        if op == "<":
            return InputRedirection(fd, path=word)
        if op == "<>":
            return InputRedirection(fd, path=word, read_write=True)
        if op == "<<<":
            return HereRedirection(fd, word)
        return HereRedirection(fd, self._read_here_document(word))

    def _redirection_target(self, token: str) -> str:
        if self.pos >= len(self.tokens) or is_operator(self.peek()):
            found = self.peek() or "newline"
            raise MissingRedirectionTarget(f"syntax error near unexpected token `{found}' after `{token}'")
        return self.consume_any()

    def _read_here_document(self, delimiter: str) -> str:
        if self.line_source is None:
            raise UnexpectedEnd(f"here-document `{delimiter}' needs an input source")

        lines = []
        self.line_source.set_prompt(config.CONTINUATION_PROMPT)
        try:
            while True:
                try:
                    line = self.line_source.read_line()
                except EOFError:
                    raise UnexpectedEnd(
                        f"here-document delimited by end-of-file (wanted `{delimiter}')"
                    ) from None
                if line == delimiter:
                    break
                lines.append(line + "\n")
        finally:
            self.line_source.set_prompt(config.PRIMARY_PROMPT)
        return "".join(lines)

    def peek(self) -> str:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else ""

    def consume_any(self) -> str:
        if self.pos >= len(self.tokens):
            raise UnexpectedEnd("unexpected end of input")
        token = self.tokens[self.pos]
        self.pos += 1
        return token


def parse(tokens: List[str], line_source=None) -> ParsedSequence:
    return ShellParser(tokens, line_source).parse()


def parse_line(line: str, line_source=None) -> ParsedSequence:
    return parse(ShellLexer().tokenize(line), line_source)
