import os
import signal
import threading
import time
from enum import Enum
from typing import Dict, List, NamedTuple, Optional, Set, Tuple, Union

from jobshell.lexer import SPECIAL_CHARS

PIPE_OPERATORS = ("|", "|&")
JOB_SEPARATORS = (";", "&")


def _quote(word: str) -> str:
    if word and not any(c.isspace() or c in SPECIAL_CHARS for c in word):
        return word
    return "'" + word.replace("'", "'\\''") + "'"


class OutputRedirection(NamedTuple):
    source_fd: int
    path: Optional[str] = None
    target_fd: Optional[int] = None
    append: bool = False

    def __str__(self) -> str:
        if self.path is None:
            return f"{self.source_fd}>&{self.target_fd}"
        op = ">>" if self.append else ">"
        return f"{self.source_fd}{op} {_quote(self.path)}"


class InputRedirection(NamedTuple):
    target_fd: int
    path: Optional[str] = None
    source_fd: Optional[int] = None
    read_write: bool = False

    def __str__(self) -> str:
        if self.path is None:
            return f"{self.target_fd}<&{self.source_fd}"
        op = "<>" if self.read_write else "<"
        return f"{self.target_fd}{op} {_quote(self.path)}"


class CloseRedirection(NamedTuple):
    fd: int

    def __str__(self) -> str:
        return f"{self.fd}>&-"


class HereRedirection(NamedTuple):
    target_fd: int
    content: str

    def __str__(self) -> str:
        return f"{self.target_fd}<<< {_quote(self.content)}"


Redirection = Union[OutputRedirection, InputRedirection, CloseRedirection, HereRedirection]


class ParsedCommand(NamedTuple):
    """
    Clase que representa un comando ya parseado.
    """

    name: str
    args: Tuple[str, ...] = ()
    redirections: Tuple[Redirection, ...] = ()
    background: bool = False

    @property
    def argv(self) -> List[str]:
        return [self.name, *self.args]

    def __str__(self) -> str:
        parts = [_quote(arg) for arg in self.argv] if self.name else []
        parts.extend(str(r) for r in self.redirections)
        return " ".join(parts)


class ParsedSequence(NamedTuple):
    """
    Comandos de una línea unidos por operadores de control.
    """

    commands: Tuple[ParsedCommand, ...] = ()
    operators: Tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.commands

    @property
    def background(self) -> bool:
        return bool(self.commands) and self.commands[-1].background

    def split_jobs(self) -> List["ParsedSequence"]:
        """
        Corta la secuencia en listas and-or en cada `;` y `&`.
        """
        jobs = []
        start = 0
        for i, op in enumerate(self.operators):
            if op in JOB_SEPARATORS:
                jobs.append(
                    ParsedSequence(self.commands[start : i + 1], self.operators[start:i])
                )
                start = i + 1
        if start < len(self.commands):
            jobs.append(ParsedSequence(self.commands[start:], self.operators[start:]))
        return jobs

    def pipelines(self) -> List[Tuple[Optional[str], List[ParsedCommand], List[str]]]:
        """
        Agrupa una lista and-or en pipelines: (operador que la abre, comandos,
        operadores de pipe entre ellos).
        """
        units = []
        gate: Optional[str] = None
        commands = [self.commands[0]] if self.commands else []
        pipe_ops: List[str] = []
        for op, command in zip(self.operators, self.commands[1:]):
            if op in PIPE_OPERATORS:
                commands.append(command)
                pipe_ops.append(op)
                continue
            units.append((gate, commands, pipe_ops))
            gate, commands, pipe_ops = op, [command], []
        if commands:
            units.append((gate, commands, pipe_ops))
        return units

    def __str__(self) -> str:
        parts = []
        for i, command in enumerate(self.commands):
            parts.append(str(command))
            if i < len(self.operators):
                parts.append(self.operators[i])
            elif command.background:
                parts.append("&")
        return " ".join(parts)


class JobStatus(Enum):
    RUNNING = "Running"
    STOPPED = "Stopped"
    COMPLETED = "Done"
    TERMINATED = "Terminated"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.TERMINATED)


class ProcessGroup:
    """
    Grupo de procesos de un pipeline; el primer miembro es el líder.
    """

    def __init__(self) -> None:
        self.leader: Optional[int] = None
        self.members: Set[int] = set()

    @property
    def next_pgid(self) -> int:
        # 0 pide a setpgid que el proceso cree su propio grupo
        return self.leader if self.leader is not None else 0

    def join(self, pid: int) -> int:
        if self.leader is None:
            self.leader = pid
        self.members.add(pid)
        return self.leader

    def signal(self, sig: int) -> bool:
        if self.leader is None:
            return False
        try:
            os.killpg(self.leader, sig)
        except ProcessLookupError:
            return False
        return True

    def __repr__(self) -> str:
        return f"ProcessGroup(leader={self.leader}, members={sorted(self.members)})"


class ChildProcess:
    """
    Clase que representa un proceso hijo de un job.
    """

    def __init__(self, pid: int, cmd: str, pgid: int, popen=None) -> None:
        self.pid = pid
        self.cmd = cmd
        self.pgid = pgid
        self.popen = popen
        self.stopped = False
        self.stop_signal: Optional[int] = None
        self.term_signal: Optional[int] = None
        self.exit_code: Optional[int] = None

    @property
    def finished(self) -> bool:
        return self.exit_code is not None

    def update(self, status: int) -> None:
        if os.WIFSTOPPED(status):
            self.stopped = True
            self.stop_signal = os.WSTOPSIG(status)
        elif os.WIFCONTINUED(status):
            self.stopped = False
            self.stop_signal = None
        elif os.WIFSIGNALED(status):
            self.term_signal = os.WTERMSIG(status)
            self._finish(128 + self.term_signal)
        elif os.WIFEXITED(status):
            self._finish(os.WEXITSTATUS(status))

    def _finish(self, code: int) -> None:
        self.exit_code = code
        self.stopped = False
        if self.popen is not None:
            self.popen.returncode = code

    def __repr__(self) -> str:
        return f"ChildProcess(pid={self.pid}, cmd={self.cmd!r}, exit_code={self.exit_code})"


class Job:
    """
    Clase que representa un job en la tabla de jobs.
    """

    def __init__(self, job_id: int, pipeline: ParsedSequence, background: bool = False) -> None:
        self.id = job_id
        self.pipeline = pipeline
        self.background = background
        self.group = ProcessGroup()
        self.status = JobStatus.RUNNING
        self.start_time = time.time()
        self.processes: List[ChildProcess] = []
        # Códigos de etapas sin proceso propio: builtins en el shell y fallos de spawn
        self.stage_codes: List[int] = []
        self.exit_code: Optional[int] = None
        self.launch_complete = False
        # Mientras se lanza un pipeline no se recoge a nadie: el líder zombie
        # mantiene vivo el grupo para los que faltan por unirse
        self.spawning = False
        self.launched = threading.Event()
        self.notified = False

    @property
    def cmd(self) -> str:
        return str(self.pipeline)

    @property
    def exit_info(self) -> Dict[int, Optional[int]]:
        return {p.pid: p.exit_code for p in self.processes}

    @property
    def live_processes(self) -> List[ChildProcess]:
        return [p for p in self.processes if not p.finished]

    def refresh(self) -> bool:
        """
        Recalcula el estado a partir de los procesos. Devuelve True si cambió.
        """
        if self.status.is_terminal:
            return False
        previous = self.status
        live = self.live_processes
        if live and any(p.stopped for p in live):
            self.status = JobStatus.STOPPED
        elif live or not self.launch_complete:
            self.status = JobStatus.RUNNING
        else:
            codes = self.stage_codes + [p.exit_code for p in self.processes]
            if all(code == 0 for code in codes):
                self.status = JobStatus.COMPLETED
            else:
                self.status = JobStatus.TERMINATED
            if self.exit_code is None and self.processes:
                self.exit_code = self.processes[-1].exit_code
            elif self.exit_code is None:
                self.exit_code = codes[-1] if codes else 0
        return self.status is not previous

    def describe(self) -> str:
        if self.status is JobStatus.TERMINATED:
            last = self.processes[-1] if self.processes else None
            if last is not None and last.term_signal is not None:
                return signal.Signals(last.term_signal).name
            return f"Exit {self.exit_code}"
        return self.status.value

    def __repr__(self) -> str:
        return f"Job(id={self.id}, cmd={self.cmd!r}, status={self.status.name}, group={self.group})"
