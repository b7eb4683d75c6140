"""
Shell interactiva con pipes, redirecciones y control de jobs.
"""

from jobshell.executer import JobController
from jobshell.lexer import tokenize
from jobshell.parser import parse, parse_line
from jobshell.redirection import resolve
from jobshell.shell import Shell, main

__version__ = "0.1.0"

__all__ = ["JobController", "Shell", "main", "parse", "parse_line", "resolve", "tokenize"]
