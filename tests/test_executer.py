import os
import signal
import tempfile
import threading
import time
import unittest
from unittest import mock

from jobshell.ast_tree import JobStatus
from jobshell.builtins import ShellBuiltins
from jobshell.executer import JobController
from jobshell.parser import parse_line


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


class TestJobController(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.controller = JobController()
        self.controller.builtins = ShellBuiltins(self.controller).registry()
        self.controller.start()

    def tearDown(self):
        for job in list(self.controller.jobs.values()):
            self.controller.signal_job(job, signal.SIGKILL)
        wait_until(lambda: not self.controller.jobs)
        self.controller.stop()
        self.temp_dir.cleanup()

    def path(self, name):
        return os.path.join(self.temp_dir.name, name)

    def read(self, name):
        with open(self.path(name)) as f:
            return f.read()

    def run_line(self, line):
        return self.controller.execute(parse_line(line))

    def test_01_pipeline_pipes_and_group(self):
        """a | b | c usa dos pipes y un solo grupo de tres procesos"""
        sequence = parse_line(f"/bin/echo hi | cat | cat > {self.path('out.txt')}")
        with mock.patch.object(
            self.controller, "_make_pipe", wraps=self.controller._make_pipe
        ) as make_pipe:
            job = self.controller.submit(sequence)

        self.assertEqual(make_pipe.call_count, 2)
        self.assertEqual(len(job.group.members), 3)
        self.assertEqual({p.pgid for p in job.processes}, {job.group.leader})
        self.assertEqual(job.processes[0].pid, job.group.leader)
        self.assertEqual(set(job.exit_info.values()), {0})
        self.assertLessEqual(job.start_time, time.time())
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(self.read("out.txt"), "hi\n")
        self.assertNotIn(job.id, self.controller.jobs)

    def test_02_gating(self):
        """&& y || deciden según el código de la pipeline anterior"""
        status = self.run_line(
            f"false && echo no > {self.path('a')} ; "
            f"true || echo no > {self.path('b')} ; "
            f"false || echo yes > {self.path('c')}"
        )
        self.assertEqual(status, 0)
        self.assertFalse(os.path.exists(self.path("a")))
        self.assertFalse(os.path.exists(self.path("b")))
        self.assertEqual(self.read("c"), "yes\n")

    def test_03_exit_codes(self):
        """Código del último comando, 127 si no existe, 1 si falla una redirección"""
        self.assertEqual(self.run_line("sh -c 'exit 3'"), 3)
        self.assertEqual(self.run_line("no-such-command-xyz"), 127)
        self.assertEqual(self.run_line("no-such-command-xyz | cat"), 127)
        self.assertEqual(self.run_line(f"cat < {self.path('missing')}"), 1)
        self.assertEqual(self.run_line("true | false"), 1)
        self.assertEqual(self.run_line("false | true"), 0)

    def test_04_builtins_in_shell_and_in_pipeline(self):
        """Un builtin solo corre en la shell; dentro de un pipe corre en un hijo"""
        self.assertEqual(self.run_line(f"echo hola > {self.path('solo.txt')}"), 0)
        self.assertEqual(self.read("solo.txt"), "hola\n")

        job = self.controller.submit(parse_line(f"echo -n uno dos | cat > {self.path('pipe.txt')}"))
        self.assertEqual(len(job.processes), 2)
        self.assertEqual(job.exit_code, 0)
        self.assertEqual(self.read("pipe.txt"), "uno dos")

    def test_05_stderr_pipe_and_extra_fd(self):
        """|& también conecta stderr; 3> llega al hijo como fd 3"""
        self.run_line(f"sh -c 'echo err >&2' |& cat > {self.path('both.txt')}")
        self.assertEqual(self.read("both.txt"), "err\n")

        self.run_line(f"sh -c 'echo tres >&3' 3> {self.path('fd3.txt')}")
        self.assertEqual(self.read("fd3.txt"), "tres\n")

    def test_06_explicit_redirection_wins_over_pipe(self):
        """La redirección del comando pisa la conexión del pipe"""
        self.run_line(f"/bin/echo x > {self.path('own.txt')} | cat > {self.path('rest.txt')}")
        self.assertEqual(self.read("own.txt"), "x\n")
        self.assertEqual(self.read("rest.txt"), "")

    def test_07_closed_stdout_for_builtin(self):
        """Escribir en un stdout cerrado es un error del builtin"""
        self.assertEqual(self.run_line("echo hola >&-"), 1)

    def test_08_background_job(self):
        """Un job con & vuelve enseguida y se quita de la tabla al terminar"""
        start = time.monotonic()
        job = self.controller.submit(parse_line("sleep 0.3 &"))
        self.assertLess(time.monotonic() - start, 0.3)
        self.assertTrue(job.background)
        self.assertIn(job.id, self.controller.jobs)
        self.assertIsNotNone(job.group.leader)
        self.assertEqual(self.controller.last_return_code, 0)

        self.assertTrue(wait_until(lambda: job.id not in self.controller.jobs))
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertTrue(job.notified)

    def test_09_interrupt_foreground_only(self):
        """SIGINT termina el job en foreground y no toca el de background"""
        background = self.controller.submit(parse_line("sleep 5 &"))
        timer = threading.Timer(0.5, os.kill, (os.getpid(), signal.SIGINT))
        timer.start()
        try:
            foreground = self.controller.submit(parse_line("sleep 5"))
        finally:
            timer.cancel()

        self.assertEqual(foreground.status, JobStatus.TERMINATED)
        self.assertEqual(foreground.exit_code, 128 + signal.SIGINT)
        self.assertEqual(self.controller.last_return_code, 128 + signal.SIGINT)
        self.assertEqual(background.status, JobStatus.RUNNING)
        self.assertIn(background.id, self.controller.jobs)

        self.controller.signal_job(background, signal.SIGTERM)
        self.assertTrue(wait_until(lambda: background.id not in self.controller.jobs))
        self.assertEqual(background.describe(), "SIGTERM")

    def test_10_stop_and_resume(self):
        """SIGTSTP detiene el job en foreground; bg lo continúa"""
        timer = threading.Timer(0.5, os.kill, (os.getpid(), signal.SIGTSTP))
        timer.start()
        try:
            job = self.controller.submit(parse_line(f"sleep 1 && echo fin > {self.path('fin.txt')}"))
        finally:
            timer.cancel()

        self.assertEqual(job.status, JobStatus.STOPPED)
        self.assertEqual(self.controller.last_return_code, 128 + signal.SIGTSTP)
        self.assertIn(job, self.controller.list_jobs())
        self.assertIs(self.controller.find_job(None), job)
        self.assertIs(self.controller.find_job(f"%{job.id}"), job)

        self.controller.resume(job, foreground=False)
        self.assertTrue(wait_until(lambda: job.id not in self.controller.jobs))
        self.assertEqual(job.status, JobStatus.COMPLETED)
        # el resto de la lista and-or se abandonó al detenerse
        self.assertFalse(os.path.exists(self.path("fin.txt")))

    def test_11_job_ids(self):
        """Los ids empiezan en 1 y siguen al máximo de la tabla"""
        first = self.controller.submit(parse_line("sleep 5 &"))
        second = self.controller.submit(parse_line("sleep 5 &"))
        self.assertEqual((first.id, second.id), (1, 2))
        self.assertNotEqual(first.group.leader, second.group.leader)

        self.controller.signal_job(second, signal.SIGKILL)
        self.assertTrue(wait_until(lambda: second.id not in self.controller.jobs))
        third = self.controller.submit(parse_line("sleep 5 &"))
        self.assertEqual(third.id, 2)

    def test_12_only_redirections(self):
        """Un comando sin nombre solo crea el archivo"""
        self.assertEqual(self.run_line(f"> {self.path('empty.txt')}"), 0)
        self.assertEqual(self.read("empty.txt"), "")

    def test_13_builtin_stdout_and_stderr_keep_order(self):
        """Con 2>&1 el builtin escribe en el orden en que lo produce"""
        status = self.run_line(f"type no-such-xyz echo > {self.path('type.txt')} 2>&1")
        self.assertEqual(status, 1)
        self.assertEqual(self.read("type.txt"), "type: no-such-xyz: not found\necho is a shell builtin\n")

    def test_14_exec_failure_status(self):
        """Un archivo que no se puede ejecutar da 126"""
        with open(self.path("noexec"), "wb") as f:
            f.write(b"\x7fELFgarbage")
        os.chmod(self.path("noexec"), 0o755)
        self.assertEqual(self.run_line(self.path("noexec")), 126)
        self.assertEqual(self.run_line(f"{self.path('noexec')} | cat"), 126)
        self.assertEqual(self.run_line(f"{self.path('noexec')} 3> {self.path('fd3.txt')}"), 126)
        self.assertEqual(self.run_line(f"echo vivo > {self.path('vivo.txt')}"), 0)
        self.assertEqual(self.read("vivo.txt"), "vivo\n")


if __name__ == "__main__":
    unittest.main()
