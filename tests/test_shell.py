import os
import subprocess
import sys
import tempfile
import unittest

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class TestShellProcess(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.temp_dir = tempfile.TemporaryDirectory()
        cls.test_file1 = os.path.join(cls.temp_dir.name, "test1.txt")
        with open(cls.test_file1, "w") as f:
            f.write("line1\nline2\nline3\n")

        cls.env = dict(os.environ, NO_COLOR="1")
        cls.env["PYTHONPATH"] = os.pathsep.join(
            p for p in (PROJECT_ROOT, os.environ.get("PYTHONPATH")) if p
        )

    @classmethod
    def tearDownClass(cls):
        cls.temp_dir.cleanup()

    def run_shell(self, script, timeout=10):
        """Ejecuta el shell con el script por stdin y retorna el proceso"""
        return subprocess.run(
            [sys.executable, "-m", "jobshell"],
            input=script,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=timeout,
            env=self.env,
            cwd=self.temp_dir.name,
        )

    def test_01_exit_status(self):
        """exit 5 termina el shell con código 5"""
        result = self.run_shell("exit 5\necho no\n")
        self.assertEqual(result.returncode, 5)
        self.assertNotIn("no", result.stdout)

    def test_02_illegal_number(self):
        """exit abc reporta el error y el shell sigue"""
        result = self.run_shell("exit abc\necho sigue\n")
        self.assertIn("exit: Illegal number: abc", result.stderr)
        self.assertIn("sigue", result.stdout)
        self.assertEqual(result.returncode, 0)

    def test_03_eof_returns_last_status(self):
        """Al final de la entrada el código es el del último comando"""
        self.assertEqual(self.run_shell("false\n").returncode, 1)
        self.assertEqual(self.run_shell("false\ntrue\n").returncode, 0)

    def test_04_pipeline_and_redirections(self):
        """Pipes, < y > en una misma línea"""
        result = self.run_shell("wc -l < test1.txt | tr -d ' ' > count.txt\ncat count.txt\n")
        self.assertEqual(result.stdout.strip(), "3")

    def test_05_syntax_error(self):
        """Un error de sintaxis aborta solo esa línea con código 2"""
        result = self.run_shell("echo 'abc\n")
        self.assertIn("jobshell: syntax error:", result.stderr)
        self.assertEqual(result.returncode, 2)
        result = self.run_shell("| wc\necho ok\n")
        self.assertIn("ok", result.stdout)

    def test_06_command_not_found(self):
        """Un comando inexistente devuelve 127"""
        result = self.run_shell("no-such-command-xyz\n")
        self.assertIn("no-such-command-xyz: command not found", result.stderr)
        self.assertEqual(result.returncode, 127)

    def test_07_here_document(self):
        """El here-document se lee de las líneas siguientes"""
        result = self.run_shell("cat << FIN\nhola\nmundo\nFIN\necho despues\n")
        self.assertEqual(result.stdout, "hola\nmundo\ndespues\n")

    def test_08_here_string_and_stderr_redirection(self):
        """<<< y 2>&1 combinados"""
        result = self.run_shell("cat <<< 'a b' ; echo\nsh -c 'echo err >&2' 2>&1 | cat\n")
        self.assertEqual(result.stdout, "a b\nerr\n")
        self.assertEqual(result.stderr, "")

    def test_09_background_job_report(self):
        """Un job en background imprime [id] pid y se reporta al terminar"""
        result = self.run_shell("sleep 0.2 &\nsleep 1\n")
        lines = result.stdout.splitlines()
        self.assertRegex(lines[0], r"^\[1\] \d+$")
        self.assertTrue(any(line.startswith("[1]+  Done") for line in lines[1:]))

    def test_10_cd_persists(self):
        """cd corre dentro del shell"""
        result = self.run_shell(f"cd {self.temp_dir.name}\ncd /\npwd\ncd -\n")
        self.assertEqual(result.stdout.splitlines(), ["/", os.path.realpath(self.temp_dir.name)])

    def test_11_exec_format_error(self):
        """Un ejecutable inválido da 126 y el shell sigue"""
        broken = os.path.join(self.temp_dir.name, "noexec")
        with open(broken, "wb") as f:
            f.write(b"\x7fELFgarbage")
        os.chmod(broken, 0o755)

        result = self.run_shell("./noexec\necho sigue\n")
        self.assertIn("./noexec:", result.stderr)
        self.assertIn("sigue", result.stdout)
        self.assertEqual(result.returncode, 0)

        result = self.run_shell("./noexec | cat\n")
        self.assertEqual(result.returncode, 126)

    def test_12_extra_fd_copied_before_stdout_redirection(self):
        """3>&1 > f deja el fd 3 en el stdout original"""
        result = self.run_shell("sh -c 'echo three >&3' 3>&1 > fd3.txt\ncat fd3.txt\n")
        self.assertEqual(result.stdout, "three\n")

    def test_13_empty_command_name(self):
        """'' como nombre de comando es un error de sintaxis"""
        result = self.run_shell("''\n")
        self.assertIn("jobshell: syntax error: empty command name", result.stderr)
        self.assertEqual(result.returncode, 2)


if __name__ == "__main__":
    unittest.main()
