import os
import shutil
import signal
from typing import Callable, Dict, List, Optional

from jobshell.ast_tree import JobStatus
from jobshell.errors import BuiltinError, ShellExit, TooManyArguments


class ShellBuiltins:
    """
    Comandos internos de la shell.

    Cada builtin recibe sus argumentos y los tres streams estándar del comando
    (ya redirigidos) y devuelve su código de salida. Los errores se lanzan como
    BuiltinError y el controlador los imprime como `nombre: mensaje`.
    """

    def __init__(self, controller=None, line_source=None) -> None:
        self.controller = controller
        self.line_source = line_source

    def registry(self) -> Dict[str, Callable[..., int]]:
        return {
            "echo": self.echo,
            "pwd": self.pwd,
            "cd": self.cd,
            "type": self.type,
            "exit": self.exit,
            "env": self.env,
            "export": self.export,
            "unset": self.unset,
            "history": self.history,
            "jobs": self.jobs,
            "fg": self.fg,
            "bg": self.bg,
            "kill": self.kill,
        }

    def echo(self, args: List[str], stdin, stdout, stderr) -> int:
        newline = True
        if args and args[0] == "-n":
            newline = False
            args = args[1:]
        stdout.write(" ".join(args) + ("\n" if newline else ""))
        return 0

    def pwd(self, args: List[str], stdin, stdout, stderr) -> int:
        stdout.write(os.getcwd() + "\n")
        return 0

    def cd(self, args: List[str], stdin, stdout, stderr) -> int:
        if len(args) > 1:
            raise TooManyArguments()

        if not args or args[0] == "~":
            target = os.environ.get("HOME") or os.path.expanduser("~")
        elif args[0] == "-":
            target = os.environ.get("OLDPWD")
            if not target:
                raise BuiltinError("OLDPWD not set")
            stdout.write(target + "\n")
        else:
            target = os.path.expanduser(args[0])

        current_dir = os.getcwd()
        try:
            os.chdir(target)
        except FileNotFoundError:
            raise BuiltinError(f"{args[0] if args else target}: No such file or directory") from None
        except NotADirectoryError:
            raise BuiltinError(f"{target}: Not a directory") from None
        except PermissionError:
            raise BuiltinError(f"{target}: Permission denied") from None

        os.environ["OLDPWD"] = current_dir
        os.environ["PWD"] = os.getcwd()
        return 0

    def type(self, args: List[str], stdin, stdout, stderr) -> int:
        status = 0
        names = self.registry()
        for name in args:
            if name in names:
                stdout.write(f"{name} is a shell builtin\n")
                continue
            path = shutil.which(name)
            if path is None:
                stderr.write(f"type: {name}: not found\n")
                status = 1
            else:
                stdout.write(f"{name} is {path}\n")
        return status

    def exit(self, args: List[str], stdin, stdout, stderr) -> int:
        if len(args) > 1:
            raise TooManyArguments()
        if not args:
            code = self.controller.last_return_code if self.controller is not None else 0
            raise ShellExit(code)
        try:
            code = int(args[0])
        except ValueError:
            raise BuiltinError(f"Illegal number: {args[0]}", 128) from None
        raise ShellExit(code & 0xFF)

    def env(self, args: List[str], stdin, stdout, stderr) -> int:
        for name, value in sorted(os.environ.items()):
            stdout.write(f"{name}={value}\n")
        return 0

    def export(self, args: List[str], stdin, stdout, stderr) -> int:
        if not args:
            for name, value in sorted(os.environ.items()):
                stdout.write(f'declare -x {name}="{value}"\n')
            return 0

        status = 0
        for arg in args:
            name, sep, value = arg.partition("=")
            if not _valid_name(name):
                stderr.write(f"export: `{arg}': not a valid identifier\n")
                status = 1
                continue
            if sep:
                os.environ[name] = value
            else:
                os.environ.setdefault(name, "")
        return status

    def unset(self, args: List[str], stdin, stdout, stderr) -> int:
        for name in args:
            os.environ.pop(name, None)
        return 0

    def history(self, args: List[str], stdin, stdout, stderr) -> int:
        if len(args) > 1:
            raise TooManyArguments()
        entries = list(self.line_source.history) if self.line_source is not None else []
        start = 0
        if args:
            if not args[0].isdigit():
                raise BuiltinError(f"{args[0]}: numeric argument required")
            start = max(len(entries) - int(args[0]), 0)
        for number, line in enumerate(entries[start:], start + 1):
            stdout.write(f"{number:5}  {line}\n")
        return 0

    def jobs(self, args: List[str], stdin, stdout, stderr) -> int:
        for job in self._controller().list_jobs():
            state = job.describe() if job.status.is_terminal else job.status.value
            stdout.write(f"[{job.id}]  {job.group.leader or '':<7} {state:<10} {job.cmd}\n")
        return 0

    def fg(self, args: List[str], stdin, stdout, stderr) -> int:
        if len(args) > 1:
            raise TooManyArguments()
        controller = self._controller()
        job = controller.find_job(args[0] if args else None)
        return controller.resume(job, foreground=True)

    def bg(self, args: List[str], stdin, stdout, stderr) -> int:
        controller = self._controller()
        specs: List[Optional[str]] = list(args) or [None]
        status = 0
        for spec in specs:
            job = controller.find_job(spec)
            if job.status is not JobStatus.STOPPED:
                stderr.write(f"bg: job {job.id} already in background\n")
                continue
            status = controller.resume(job, foreground=False)
        return status

    def kill(self, args: List[str], stdin, stdout, stderr) -> int:
        sig = signal.SIGTERM
        if args and args[0] == "-s":
            if len(args) < 2:
                raise BuiltinError("-s: option requires an argument")
            sig = _parse_signal(args[1])
            args = args[2:]
        elif args and args[0].startswith("-") and len(args[0]) > 1:
            sig = _parse_signal(args[0][1:])
            args = args[1:]

        if not args:
            raise BuiltinError("usage: kill [-s sigspec | -sigspec] pid | %job ...")

        status = 0
        for target in args:
            try:
                self._send_signal(target, sig)
            except BuiltinError as e:
                stderr.write(f"kill: {e}\n")
                status = 1
        return status

    def _send_signal(self, target: str, sig: int) -> None:
        if target.startswith("%"):
            controller = self._controller()
            job = controller.find_job(target)
            if not controller.signal_job(job, sig):
                raise BuiltinError(f"{target}: no such job")
            return
        if not target.lstrip("-").isdigit():
            raise BuiltinError(f"{target}: arguments must be process or job IDs")
        try:
            os.kill(int(target), sig)
        except ProcessLookupError:
            raise BuiltinError(f"({target}) - No such process") from None
        except PermissionError:
            raise BuiltinError(f"({target}) - Operation not permitted") from None

    def _controller(self):
        if self.controller is None:
            raise BuiltinError("no job control in this shell")
        return self.controller


def _parse_signal(spec: str) -> int:
    if spec.isdigit():
        number = int(spec)
        if number not in signal.valid_signals():
            raise BuiltinError(f"{spec}: invalid signal specification")
        return number
    name = spec.upper()
    if not name.startswith("SIG"):
        name = "SIG" + name
    try:
        return signal.Signals[name]
    except KeyError:
        raise BuiltinError(f"{spec}: invalid signal specification") from None


def _valid_name(name: str) -> bool:
    return bool(name) and not name[0].isdigit() and all(c.isalnum() or c == "_" for c in name)
