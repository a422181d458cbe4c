"""Exceptions raised while embedding libraries into a bundle."""


class EmbedError(RuntimeError):
    """Raised when embedding fails."""


class PreconditionError(EmbedError):
    """Raised when the target executable does not exist."""


class CopyError(EmbedError):
    """Raised when a library cannot be copied into the bundle."""


class InspectError(EmbedError):
    """Raised when a binary's load commands cannot be read."""


class RewriteError(EmbedError):
    """Raised when a binary's install names cannot be rewritten.

    :ivar command: The failing command line.
    :ivar returncode: Tool exit status, or ``None`` if it never ran.
    :ivar output: Captured stderr (best-effort).
    """

    def __init__(
        self,
        message: str,
        *,
        command: list[str] | None = None,
        returncode: int | None = None,
        output: str | None = None,
    ) -> None:
        super().__init__(message)
        self.command: list[str] | None = command
        self.returncode: int | None = returncode
        self.output: str | None = output
