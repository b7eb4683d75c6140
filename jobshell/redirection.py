import os
import tempfile
from typing import Dict, List, Optional

from jobshell import config
from jobshell.ast_tree import (
    CloseRedirection,
    HereRedirection,
    InputRedirection,
    OutputRedirection,
    ParsedCommand,
    Redirection,
)
from jobshell.errors import BadFileDescriptor, RedirectionIOError

STANDARD_FDS = (0, 1, 2)


class FdTable:
    """
    Tabla de descriptores de un comando: slot -> descriptor real del shell.

    Arranca como copia de 0, 1 y 2. Los descriptores que abre la propia tabla
    se cierran con `close()` una vez que el hijo ya los heredó.
    """

    def __init__(self, bindings: Optional[Dict[int, int]] = None) -> None:
        if bindings is None:
            bindings = {fd: fd for fd in STANDARD_FDS}
        self._bindings: Dict[int, int] = dict(bindings)
        self._owned: List[int] = []

    def __contains__(self, fd: int) -> bool:
        return fd in self._bindings

    def get(self, fd: int) -> int:
        if fd not in self._bindings:
            raise BadFileDescriptor(fd)
        return self._bindings[fd]

    def bind(self, fd: int, os_fd: int) -> None:
        self._bindings[fd] = os_fd

    def unbind(self, fd: int) -> None:
        self._bindings.pop(fd, None)

    def adopt(self, os_fd: int) -> int:
        self._owned.append(os_fd)
        return os_fd

    @property
    def closed_standard_fds(self) -> List[int]:
        return [fd for fd in STANDARD_FDS if fd not in self._bindings]

    @property
    def extra_fds(self) -> Dict[int, int]:
        return {fd: os_fd for fd, os_fd in self._bindings.items() if fd not in STANDARD_FDS}

    def close(self) -> None:
        while self._owned:
            os.close(self._owned.pop())

    def __repr__(self) -> str:
        return f"FdTable({self._bindings}, owned={self._owned})"


class RedirectionResolver:
    """
    Aplica las redirecciones de un comando, en orden, sobre su FdTable.
    """

    def __init__(self, file_mode: int = config.FILE_MODE) -> None:
        self.file_mode = file_mode

    def resolve(self, command: ParsedCommand, table: FdTable) -> FdTable:
        for redirection in command.redirections:
            self.apply(redirection, table)
        return table

    def apply(self, redirection: Redirection, table: FdTable) -> None:
        if isinstance(redirection, OutputRedirection):
            self._apply_output(redirection, table)
        elif isinstance(redirection, InputRedirection):
            self._apply_input(redirection, table)
        elif isinstance(redirection, CloseRedirection):
            table.unbind(redirection.fd)
        elif isinstance(redirection, HereRedirection):
            table.bind(redirection.target_fd, table.adopt(self._here_document(redirection.content)))
        else:
            raise TypeError(f"unknown redirection: {redirection!r}")

    def _apply_output(self, redirection: OutputRedirection, table: FdTable) -> None:
        if redirection.path is None:
            table.bind(redirection.source_fd, table.get(redirection.target_fd))
            return
        flags = os.O_WRONLY | os.O_CREAT
        flags |= os.O_APPEND if redirection.append else os.O_TRUNC
        table.bind(redirection.source_fd, table.adopt(self._open(redirection.path, flags)))

    def _apply_input(self, redirection: InputRedirection, table: FdTable) -> None:
        if redirection.path is None:
            table.bind(redirection.target_fd, table.get(redirection.source_fd))
            return
        flags = os.O_RDWR | os.O_CREAT if redirection.read_write else os.O_RDONLY
        table.bind(redirection.target_fd, table.adopt(self._open(redirection.path, flags)))

    def _open(self, path: str, flags: int) -> int:
        try:
            return os.open(path, flags, self.file_mode)
        except OSError as e:
            raise RedirectionIOError(path, e) from e

    def _here_document(self, content: str) -> int:
        try:
            with tempfile.TemporaryFile() as tmp:
                tmp.write(content.encode())
                tmp.flush()
                os_fd = os.dup(tmp.fileno())
        except OSError as e:
            raise RedirectionIOError("here-document", e) from e
        os.lseek(os_fd, 0, os.SEEK_SET)
        return os_fd


def resolve(command: ParsedCommand, table: Optional[FdTable] = None) -> FdTable:
    return RedirectionResolver().resolve(command, table if table is not None else FdTable())
