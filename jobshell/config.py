import os

SHELL_NAME = "jobshell"

PRIMARY_PROMPT = os.environ.get("JOBSHELL_PS1", "$ ")
CONTINUATION_PROMPT = os.environ.get("JOBSHELL_PS2", "> ")

MAX_HISTORY = 50
HISTORY_FILE = os.path.expanduser(
    os.environ.get("JOBSHELL_HISTFILE", "~/.jobshell_history")
)

USE_COLORS = "NO_COLOR" not in os.environ

# Segundos entre sondeos mientras se espera un job en foreground
WAIT_POLL_INTERVAL = 0.2

# Permisos de los archivos creados por `>` y `>>` (se aplica la umask)
FILE_MODE = 0o666
