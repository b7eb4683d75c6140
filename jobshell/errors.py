from typing import Optional


class ShellError(Exception):
    """
    Clase base de los errores de la shell.
    """


class ShellSyntaxError(ShellError):
    pass


class UnterminatedQuote(ShellSyntaxError):
    pass


class UnexpectedEnd(ShellSyntaxError):
    pass


class OperatorWithoutCommand(ShellSyntaxError):
    pass


class MissingRedirectionTarget(ShellSyntaxError):
    pass


class EmptyCommandName(ShellSyntaxError):
    pass


class RedirectionIOError(ShellError):
    """
    Error al abrir o duplicar el destino de una redirección.
    """

    def __init__(self, target, error: Optional[OSError] = None) -> None:
        self.target = target
        self.error = error
        reason = error.strerror if error is not None and error.strerror else str(error)
        super().__init__(f"{target}: {reason}")


class BadFileDescriptor(RedirectionIOError):
    def __init__(self, fd: int) -> None:
        self.target = fd
        self.error = None
        ShellError.__init__(self, f"{fd}: Bad file descriptor")


class SpawnFailed(ShellError):
    """
    No se pudo lanzar un comando: 127 si no existe, 126 si no se puede ejecutar.
    """

    def __init__(self, name: str, status: int = 127, reason: Optional[str] = None) -> None:
        self.name = name
        self.status = status
        super().__init__(f"{name}: {reason or 'command not found'}")


class BuiltinError(ShellError):
    """
    Error de un comando interno; lleva el código de salida que se reporta.
    """

    def __init__(self, message: str, status: int = 1) -> None:
        self.status = status
        super().__init__(message)


class TooManyArguments(BuiltinError):
    def __init__(self) -> None:
        super().__init__("too many arguments", 1)


class ShellExit(Exception):
    """
    Se lanza desde `exit` para terminar el ciclo de lectura con un código.
    """

    def __init__(self, code: int) -> None:
        self.code = code
        super().__init__(code)
