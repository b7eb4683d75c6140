import os
import sys
from collections import deque
from typing import List, Optional

from jobshell import config
from jobshell.console import print_error


class ConsoleLineSource:
    """
    Lee líneas de la terminal (con readline) o de stdin, y lleva el historial.
    """

    def __init__(self, interactive: Optional[bool] = None, history_file: Optional[str] = None) -> None:
        self.interactive = sys.stdin.isatty() if interactive is None else interactive
        self.history_file = history_file if history_file is not None else config.HISTORY_FILE
        self.prompt = config.PRIMARY_PROMPT
        self._history: deque = deque(maxlen=config.MAX_HISTORY)
        self._readline = None
        if self.interactive:
            # input() usa readline para editar la línea en cuanto se importa
            import readline

            readline.set_auto_history(False)
            self._readline = readline

    @property
    def history(self) -> List[str]:
        return list(self._history)

    def set_prompt(self, text: str) -> None:
        self.prompt = text

    def read_line(self) -> str:
        if self.interactive:
            return input(self.prompt)
        line = sys.stdin.readline()
        if not line:
            raise EOFError
        return line[:-1] if line.endswith("\n") else line

    def add_history(self, line: str) -> None:
        if line.startswith(" "):
            return
        line = line.strip()
        if not line or (self._history and self._history[-1] == line):
            return
        self._history.append(line)
        if self._readline is not None:
            self._readline.add_history(line)

    def load(self) -> None:
        if not self.interactive or not os.path.exists(self.history_file):
            return
        with open(self.history_file, "r", encoding="utf-8", errors="replace") as f:
            for line in f.readlines()[-config.MAX_HISTORY:]:
                self.add_history(line.rstrip("\n"))

    def close(self) -> None:
        if not self.interactive:
            return
        try:
            with open(self.history_file, "w", encoding="utf-8") as f:
                f.write("\n".join(self._history))
        except OSError as e:
            print_error(f"{config.SHELL_NAME}: cannot save history: {e}")
