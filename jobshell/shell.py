import sys
from typing import Optional

from jobshell import config
from jobshell.builtins import ShellBuiltins
from jobshell.console import print_error
from jobshell.errors import ShellExit, ShellSyntaxError
from jobshell.executer import JobController
from jobshell.line_source import ConsoleLineSource
from jobshell.parser import parse_line


class Shell:
    """
    Clase que representa la shell: lee, parsea y ejecuta línea por línea.
    """

    def __init__(self, line_source: Optional[ConsoleLineSource] = None) -> None:
        self.line_source = line_source or ConsoleLineSource()
        self.interactive = self.line_source.interactive
        self.controller = JobController(interactive=self.interactive)
        self.controller.builtins = ShellBuiltins(self.controller, self.line_source).registry()

    def run_line(self, line: str) -> int:
        if not line.strip():
            return self.controller.last_return_code

        self.line_source.add_history(line)
        try:
            sequence = parse_line(line, self.line_source)
        except ShellSyntaxError as e:
            print_error(f"{config.SHELL_NAME}: syntax error: {e}")
            self.controller.last_return_code = 2
            return 2

        if sequence.is_empty:
            return self.controller.last_return_code
        try:
            return self.controller.execute(sequence)
        except OSError as e:
            print_error(f"{config.SHELL_NAME}: {e.strerror or e}")
            self.controller.last_return_code = 1
            return 1

    def run(self) -> int:
        """Bucle principal"""
        self.line_source.load()
        self.controller.start()
        try:
            while True:
                self.line_source.set_prompt(config.PRIMARY_PROMPT)
                try:
                    line = self.line_source.read_line()
                    self.run_line(line)
                except EOFError:
                    if self.interactive:
                        print("exit")
                    return self.controller.last_return_code
                except KeyboardInterrupt:
                    print()
                    self.controller.last_return_code = 130
        except ShellExit as e:
            return e.code
        finally:
            self.controller.stop()
            self.line_source.close()


def main() -> None:
    sys.exit(Shell().run())


if __name__ == "__main__":
    main()
