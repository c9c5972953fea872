from __future__ import annotations


DEFAULT_ERROR_CODE = 500


class RelayError(RuntimeError):
    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class TransportError(RelayError):
    """The target URL could not be reached or the body could not be read."""


class HTTPStatusError(RelayError):
    def __init__(self, status: int) -> None:
        super().__init__(f"Failed with status: {status}", code=status)
        self.status = status


class ScriptError(RelayError):
    """Response post-processing failed."""


class ChannelClosedError(RelayError):
    """Send attempted while the gateway channel is not open."""


def error_code(exc: BaseException) -> int:
    code = getattr(exc, "code", None)
    if isinstance(code, int) and not isinstance(code, bool) and code > 0:
        return code
    return DEFAULT_ERROR_CODE


def error_message(exc: BaseException) -> str:
    if isinstance(exc, RelayError):
        return str(exc) or type(exc).__name__
    return f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
