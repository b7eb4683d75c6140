import sys

from jobshell import config

COLORS = {
    "RESET": "\033[0m",
    "RED": "\033[91m",
    "GREEN": "\033[92m",
    "YELLOW": "\033[93m",
    "BLUE": "\033[94m",
    "MAGENTA": "\033[95m",
    "CYAN": "\033[96m",
    "WHITE": "\033[97m",
}


def color(text: str, color_name: str, stream=None) -> str:
    stream = stream or sys.stdout
    if not config.USE_COLORS or not stream.isatty():
        return text
    return f"{COLORS.get(color_name, '')}{text}{COLORS['RESET']}"


def print_error(message: str) -> None:
    print(color(message, "RED", sys.stderr), file=sys.stderr, flush=True)


def print_report(message: str, color_name: str = "CYAN") -> None:
    print(color(message, color_name, sys.stdout), flush=True)
