import errno
import fcntl
import functools
import os
import queue
import shutil
import signal
import subprocess
import sys
import threading
from typing import Callable, Dict, List, Optional, Union

from jobshell import config
from jobshell.ast_tree import ChildProcess, Job, JobStatus, ParsedCommand, ParsedSequence, ProcessGroup
from jobshell.console import print_error, print_report
from jobshell.errors import BuiltinError, RedirectionIOError, ShellExit, SpawnFailed
from jobshell.redirection import STANDARD_FDS, FdTable, RedirectionResolver

Builtin = Callable[..., int]

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTSTP, signal.SIGCHLD)
WAIT_FLAGS = os.WNOHANG | os.WUNTRACED | os.WCONTINUED
TTY_STOP_SIGNALS = (signal.SIGTTIN, signal.SIGTTOU)
STOPPED_STATUS = 128 + signal.SIGTSTP


class ClosedStream:
    """
    Stream para un slot cerrado con `n>&-`: toda E/S falla con EBADF.
    """

    closed = False

    def _fail(self, *args):
        raise OSError(errno.EBADF, os.strerror(errno.EBADF))

    read = readline = write = _fail

    def flush(self) -> None:
        pass

    def close(self) -> None:
        pass

    def isatty(self) -> bool:
        return False


def _stage_descriptors(table: FdTable) -> Dict[int, int]:
    """
    Copia la fuente de cada slot extra por encima de todos los destinos.

    Se hace en el padre: en el hijo Popen ya movió 0, 1 y 2 antes de
    preexec_fn, y `3>&1 > f` tiene que darle al 3 el 1 que había al resolver.
    Las copias son de la tabla y se cierran con ella.
    """
    extra = table.extra_fds
    floor = max([10, *extra]) + 1
    return {
        fd: table.adopt(fcntl.fcntl(os_fd, fcntl.F_DUPFD_CLOEXEC, floor))
        for fd, os_fd in extra.items()
    }


def _install_descriptors(staged: Dict[int, int], closed: List[int]) -> None:
    # Corre en el hijo entre fork y exec; las fuentes están todas sobre los destinos
    for fd, source in staged.items():
        os.dup2(source, fd)
    # El resto de los fds de la shell no son heredables y exec los cierra;
    # cerrarlos aquí también cerraría el pipe con el que Popen reporta el errno
    for fd in closed:
        os.close(fd)


def _open_stream(table: FdTable, fd: int):
    if fd not in table:
        return ClosedStream()
    mode = "r" if fd == 0 else "w"
    return open(table.get(fd), mode, closefd=False, encoding="utf-8", errors="replace")


def _close_stream(stream) -> None:
    try:
        stream.close()
    except OSError:
        # el lector del pipe ya se fue; el builtin ya devolvió su código
        pass


def _write_error(stream, message: str) -> None:
    try:
        stream.write(message + "\n")
        stream.flush()
    except OSError:
        print_error(message)


class JobController:
    """
    Clase que ejecuta las líneas parseadas y lleva la tabla de jobs.

    Un hilo de control (el que llama a `execute`) lanza pipelines y espera los
    jobs en primer plano. Los manejadores de señales solo encolan el número de
    señal; un hilo de reacción los consume, recoge los hijos y reenvía SIGINT y
    SIGTSTP al grupo del job en primer plano. Cada job en segundo plano tiene
    su propio hilo que recorre su lista and-or.
    """

    def __init__(self, builtins: Optional[Dict[str, Builtin]] = None, interactive: bool = False) -> None:
        self.builtins: Dict[str, Builtin] = dict(builtins or {})
        self.resolver = RedirectionResolver()
        self.jobs: Dict[int, Job] = {}
        self.last_return_code = 0
        self.terminal_fd = self._find_terminal() if interactive else None
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self._notifications: "queue.SimpleQueue[Optional[int]]" = queue.SimpleQueue()
        self._foreground: Optional[Job] = None
        self._reaction_thread: Optional[threading.Thread] = None
        self._previous_handlers: Dict[int, object] = {}

    @staticmethod
    def _find_terminal() -> Optional[int]:
        if not os.isatty(0):
            return None
        try:
            if os.tcgetpgrp(0) == os.getpgrp():
                return 0
        except OSError:
            return None
        return None

    # Ciclo de vida

    def start(self) -> None:
        if self._reaction_thread is not None:
            return
        for sig in HANDLED_SIGNALS:
            self._previous_handlers[sig] = signal.signal(sig, self._on_signal)
        self._reaction_thread = threading.Thread(
            target=self._reaction_loop, name="jobshell-signals", daemon=True
        )
        self._reaction_thread.start()

    def stop(self) -> None:
        if self._reaction_thread is None:
            return
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler)
        self._previous_handlers.clear()
        self._notifications.put(None)
        self._reaction_thread.join()
        self._reaction_thread = None

    # Señales

    def _on_signal(self, signum, frame) -> None:
        self._notifications.put(signum)
        if signum == signal.SIGINT and self._foreground is None:
            raise KeyboardInterrupt

    def _reaction_loop(self) -> None:
        while True:
            signum = self._notifications.get()
            if signum is None:
                return
            try:
                self._handle_notification(signum)
            except OSError as e:
                print_error(f"{config.SHELL_NAME}: {e}")

    def _handle_notification(self, signum: int) -> None:
        if signum == signal.SIGCHLD:
            with self._changed:
                self._reap_locked()
        else:
            self._forward_to_foreground(signum)
        self._report_finished_jobs()

    def _poll_locked(self) -> None:
        """
        Pide una ronda de waitpid. Se llama con el lock tomado.
        """
        if self._reaction_thread is None:
            self._reap_locked()
        else:
            self._notifications.put(signal.SIGCHLD)

    def _reap_locked(self) -> None:
        changed = False
        for job in list(self.jobs.values()):
            if job.spawning:
                continue
            for process in job.live_processes:
                changed |= self._reap(process)
            changed |= job.refresh()
        if changed:
            self._changed.notify_all()

    @staticmethod
    def _reap(process: ChildProcess) -> bool:
        changed = False
        while not process.finished:
            try:
                pid, status = os.waitpid(process.pid, WAIT_FLAGS)
            except ChildProcessError:
                # otro waiter ya lo recogió; no queda estado que leer
                process.update(0)
                return True
            if pid == 0:
                break
            process.update(status)
            changed = True
        return changed

    def _forward_to_foreground(self, signum: int) -> None:
        with self._lock:
            job = self._foreground
            if job is None or job.status is not JobStatus.RUNNING:
                return
            group = job.group
        group.signal(signum)

    def _report_finished_jobs(self) -> None:
        with self._lock:
            finished = [
                job
                for job in self.jobs.values()
                if job.status.is_terminal and job is not self._foreground and not job.notified
            ]
            for job in finished:
                job.notified = True
                del self.jobs[job.id]
        for job in finished:
            color_name = "GREEN" if job.status is JobStatus.COMPLETED else "YELLOW"
            print_report(f"[{job.id}]+  {job.describe():<24}{job.cmd}", color_name)

    # Ejecución

    def execute(self, sequence: ParsedSequence) -> int:
        for part in sequence.split_jobs():
            self.submit(part)
        return self.last_return_code

    def submit(self, sequence: ParsedSequence) -> Job:
        background = sequence.background
        with self._lock:
            job = Job(self._next_job_id(), sequence, background)
            self.jobs[job.id] = job
            previous = self._foreground
            if not background:
                self._foreground = job

        if background:
            return self._submit_background(job)

        try:
            status = self._run_units(job, foreground=True)
        finally:
            self._release_foreground(job, previous)
        self.last_return_code = status
        return job

    def _next_job_id(self) -> int:
        return max(self.jobs, default=0) + 1

    def _submit_background(self, job: Job) -> Job:
        runner = threading.Thread(
            target=self._run_background, args=(job,), name=f"jobshell-job-{job.id}", daemon=True
        )
        runner.start()
        job.launched.wait()
        leader = job.group.leader
        print_report(f"[{job.id}] {leader}" if leader is not None else f"[{job.id}]")
        self.last_return_code = 0
        return job

    def _run_background(self, job: Job) -> None:
        try:
            self._run_units(job, foreground=False)
        finally:
            job.launched.set()
            with self._changed:
                self._poll_locked()

    def _run_units(self, job: Job, foreground: bool) -> int:
        status = 0
        try:
            for gate, commands, pipe_ops in job.pipeline.pipelines():
                if gate == "&&" and status != 0:
                    continue
                if gate == "||" and status == 0:
                    continue
                status = self._run_pipeline(job, commands, pipe_ops, foreground)
                if foreground and job.status is JobStatus.STOPPED:
                    return STOPPED_STATUS
        finally:
            with self._changed:
                if job.status is not JobStatus.STOPPED:
                    job.exit_code = status
                job.launch_complete = True
                job.refresh()
                self._changed.notify_all()
        return status

    def _release_foreground(self, job: Job, previous: Optional[Job]) -> None:
        with self._lock:
            self._foreground = previous
            stopped = job.status is JobStatus.STOPPED
            if job.status.is_terminal:
                job.notified = True
                self.jobs.pop(job.id, None)
        self._take_terminal()
        if stopped:
            print_report(f"\n[{job.id}]+  Stopped                 {job.cmd}", "YELLOW")

    def _run_pipeline(
        self, job: Job, commands: List[ParsedCommand], pipe_ops: List[str], foreground: bool
    ) -> int:
        if len(commands) == 1 and foreground and self._runs_in_shell(commands[0]):
            code = self._run_in_shell(commands[0])
            with self._lock:
                job.stage_codes.append(code)
            return code

        pipes = []
        try:
            for _ in range(len(commands) - 1):
                pipes.append(self._make_pipe())
        except OSError as e:
            for pipe in pipes:
                for end in pipe:
                    os.close(end)
            print_error(f"{config.SHELL_NAME}: pipe: {e.strerror or e}")
            with self._lock:
                job.stage_codes.append(1)
            job.launched.set()
            return 1

        with self._lock:
            job.group = ProcessGroup()
            job.spawning = True
        open_ends = {end for pipe in pipes for end in pipe}
        results: List[Union[ChildProcess, int]] = []
        aborted = False
        spawn_status: Optional[int] = None

        try:
            for i, command in enumerate(commands):
                table = FdTable()
                if i > 0:
                    table.bind(0, pipes[i - 1][0])
                if i < len(pipes):
                    table.bind(1, pipes[i][1])
                    if pipe_ops[i] == "|&":
                        table.bind(2, pipes[i][1])
                try:
                    self.resolver.resolve(command, table)
                    process = self._spawn(job, command, table)
                    results.append(process if process is not None else 0)
                except RedirectionIOError as e:
                    print_error(f"{config.SHELL_NAME}: {e}")
                    aborted = True
                    break
                except SpawnFailed as e:
                    print_error(str(e))
                    spawn_status = spawn_status or e.status
                    results.append(e.status)
                finally:
                    table.close()
                    # El consumidor ya heredó sus extremos
                    if i > 0:
                        self._close_end(open_ends, pipes[i - 1][0])
                    if i < len(pipes):
                        self._close_end(open_ends, pipes[i][1])
        finally:
            for end in list(open_ends):
                self._close_end(open_ends, end)
            with self._lock:
                job.spawning = False

        job.launched.set()
        processes = [r for r in results if isinstance(r, ChildProcess)]
        with self._lock:
            job.stage_codes.extend(r for r in results if not isinstance(r, ChildProcess))
            if aborted:
                job.stage_codes.append(1)

        if processes:
            if foreground:
                self._give_terminal(job)
            self._wait_for_processes(processes, job if foreground else None)
            if foreground:
                self._take_terminal()

        if aborted:
            return 1
        if spawn_status is not None:
            return spawn_status
        last = results[-1] if results else 0
        if isinstance(last, ChildProcess):
            return last.exit_code if last.exit_code is not None else STOPPED_STATUS
        return last

    def _make_pipe(self):
        return os.pipe()

    @staticmethod
    def _close_end(open_ends: set, end: int) -> None:
        if end in open_ends:
            open_ends.discard(end)
            os.close(end)

    def _runs_in_shell(self, command: ParsedCommand) -> bool:
        return not command.name or command.name in self.builtins

    def _run_in_shell(self, command: ParsedCommand) -> int:
        table = FdTable()
        try:
            self.resolver.resolve(command, table)
            if not command.name:
                return 0
            return self._run_builtin(command, table)
        except RedirectionIOError as e:
            print_error(f"{config.SHELL_NAME}: {e}")
            return 1
        finally:
            table.close()

    def _run_builtin(self, command: ParsedCommand, table: FdTable) -> int:
        builtin = self.builtins[command.name]
        streams = [_open_stream(table, fd) for fd in (0, 1)]
        if 1 in table and 2 in table and table.get(1) == table.get(2):
            # `2>&1`: un solo buffer para que la salida no se desordene
            streams.append(streams[1])
        else:
            streams.append(_open_stream(table, 2))
        sys.stdout.flush()
        try:
            return builtin(list(command.args), *streams)
        except BuiltinError as e:
            _write_error(streams[2], f"{command.name}: {e}")
            return e.status
        except OSError as e:
            _write_error(streams[2], f"{command.name}: write error: {e.strerror}")
            return 1
        finally:
            for stream in streams:
                _close_stream(stream)

    def _spawn(self, job: Job, command: ParsedCommand, table: FdTable) -> Optional[ChildProcess]:
        if not command.name:
            return None
        pgid = job.group.next_pgid
        sys.stdout.flush()
        sys.stderr.flush()
        if command.name in self.builtins:
            popen = None
            pid = self._fork_builtin(command, table, pgid)
        else:
            popen = self._popen(command, table, pgid)
            pid = popen.pid
        with self._lock:
            leader = job.group.join(pid)
            process = ChildProcess(pid, str(command), leader, popen)
            job.processes.append(process)
        return process

    def _popen(self, command: ParsedCommand, table: FdTable, pgid: int) -> subprocess.Popen:
        executable = shutil.which(command.name)
        if executable is None:
            raise SpawnFailed(command.name)

        stdio = [table.get(fd) if fd in table else None for fd in STANDARD_FDS]
        options = {}
        try:
            closed = table.closed_standard_fds
            if table.extra_fds or closed:
                options["close_fds"] = False
                options["preexec_fn"] = functools.partial(
                    _install_descriptors, _stage_descriptors(table), closed
                )
            return subprocess.Popen(
                command.argv,
                executable=executable,
                stdin=stdio[0],
                stdout=stdio[1],
                stderr=stdio[2],
                process_group=pgid,
                **options,
            )
        except FileNotFoundError as e:
            raise SpawnFailed(command.name) from e
        except OSError as e:
            # ENOEXEC, EACCES, E2BIG, EAGAIN...: el comando existe pero no se pudo lanzar
            raise SpawnFailed(command.name, 126, e.strerror or str(e)) from e

    def _fork_builtin(self, command: ParsedCommand, table: FdTable, pgid: int) -> int:
        try:
            pid = os.fork()
        except OSError as e:
            raise SpawnFailed(command.name, 126, e.strerror or str(e)) from e
        if pid == 0:
            code = 1
            try:
                os.setpgid(0, pgid)
                self._reset_after_fork()
                code = self._run_builtin(command, table)
            except ShellExit as e:
                code = e.code
            finally:
                os._exit(code)
        try:
            os.setpgid(pid, pgid or pid)
        except (PermissionError, ProcessLookupError):
            # el hijo ya hizo su propio setpgid, o ya terminó
            pass
        return pid

    def _reset_after_fork(self) -> None:
        for sig in HANDLED_SIGNALS:
            signal.signal(sig, signal.SIG_DFL)
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self._reaction_thread = None
        self._foreground = None
        self.jobs = {}
        self.terminal_fd = None

    # Espera

    def _wait_for_processes(self, processes: List[ChildProcess], foreground_job: Optional[Job]) -> None:
        """
        Espera a que terminen los procesos de un pipeline. Si se pasa el job en
        primer plano, también vuelve en cuanto el job queda detenido.
        """
        with self._changed:
            self._poll_locked()
            while not all(p.finished for p in processes):
                if foreground_job is not None and foreground_job.status is JobStatus.STOPPED:
                    if not self._continue_tty_stop(foreground_job):
                        return
                if not self._changed.wait(config.WAIT_POLL_INTERVAL):
                    self._poll_locked()

    def _wait_for_job(self, job: Job) -> None:
        with self._changed:
            self._poll_locked()
            while job.status is JobStatus.RUNNING or (
                job.status is JobStatus.STOPPED and self._continue_tty_stop(job)
            ):
                if not self._changed.wait(config.WAIT_POLL_INTERVAL):
                    self._poll_locked()

    def _continue_tty_stop(self, job: Job) -> bool:
        """
        Un job que se detuvo por leer/escribir la terminal mientras era suyo
        se continúa. Se llama con el lock tomado.
        """
        if self.terminal_fd is None or job.group.leader is None:
            return False
        stopped = [p for p in job.live_processes if p.stopped]
        if not stopped or any(p.stop_signal not in TTY_STOP_SIGNALS for p in stopped):
            return False
        try:
            if os.tcgetpgrp(self.terminal_fd) != job.group.leader:
                return False
        except OSError:
            return False
        for process in stopped:
            process.stopped = False
        job.refresh()
        job.group.signal(signal.SIGCONT)
        return True

    # Terminal

    def _give_terminal(self, job: Job) -> None:
        if self.terminal_fd is None or job.group.leader is None:
            return
        self._set_terminal_group(job.group.leader)

    def _take_terminal(self) -> None:
        if self.terminal_fd is None:
            return
        self._set_terminal_group(os.getpgrp())

    def _set_terminal_group(self, pgid: int) -> None:
        old_mask = signal.pthread_sigmask(signal.SIG_BLOCK, {signal.SIGTTOU})
        try:
            os.tcsetpgrp(self.terminal_fd, pgid)
        except (PermissionError, ProcessLookupError):
            # el grupo ya no existe
            pass
        finally:
            signal.pthread_sigmask(signal.SIG_SETMASK, old_mask)

    # Operaciones para los builtins

    def list_jobs(self) -> List[Job]:
        with self._lock:
            return [job for _, job in sorted(self.jobs.items()) if job is not self._foreground]

    def find_job(self, spec: Optional[str] = None) -> Job:
        with self._lock:
            candidates = {
                job_id: job for job_id, job in self.jobs.items() if job is not self._foreground
            }
        if spec is None:
            if not candidates:
                raise BuiltinError("no current job")
            return candidates[max(candidates)]
        text = spec[1:] if spec.startswith("%") else spec
        if not text.isdigit() or int(text) not in candidates:
            raise BuiltinError(f"{spec}: no such job")
        return candidates[int(text)]

    def resume(self, job: Job, foreground: bool) -> int:
        with self._changed:
            if job.status.is_terminal:
                raise BuiltinError(f"job {job.id} has terminated")
            previous = self._foreground
            job.background = not foreground
            if foreground:
                self._foreground = job
            for process in job.live_processes:
                process.stopped = False
                process.stop_signal = None
            job.refresh()

        if not foreground:
            print_report(f"[{job.id}]+ {job.cmd} &")
            job.group.signal(signal.SIGCONT)
            return 0

        print_report(job.cmd)
        try:
            self._give_terminal(job)
            job.group.signal(signal.SIGCONT)
            self._wait_for_job(job)
        finally:
            self._release_foreground(job, previous)
        if job.status is JobStatus.STOPPED:
            return STOPPED_STATUS
        return job.exit_code if job.exit_code is not None else 0

    def signal_job(self, job: Job, sig: int) -> bool:
        delivered = job.group.signal(sig)
        if delivered and job.status is JobStatus.STOPPED and sig not in (signal.SIGCONT, signal.SIGSTOP, signal.SIGTSTP):
            # un proceso detenido no atiende la señal hasta que continúa
            job.group.signal(signal.SIGCONT)
        return delivered

