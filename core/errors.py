"""Error taxonomy for the engine client"""


class GPTScriptError(Exception):
    """Base exception for all client failures"""

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class SetupError(GPTScriptError):
    """Engine endpoint never became reachable"""
    pass


class TransportError(GPTScriptError):
    """Spawn failure, connection error or unexpected disconnect"""
    pass


class ProtocolError(GPTScriptError):
    """Stream ended in the middle of a record or carried an undecodable record"""
    pass


class PolicyError(GPTScriptError):
    """
    Run configuration forbids what the engine asked for.

    Raised when a prompt frame arrives for a Run that did not enable
    prompting. Never retried.
    """
    pass


class UsageError(GPTScriptError, RuntimeError):
    """Raised synchronously when an operation is called in the wrong state"""
    pass


class RunError(GPTScriptError):
    """Failure of a Run, surfaced from text()/json()"""
    pass


class EngineError(GPTScriptError):
    """The engine answered a request/response call with an error"""
    pass
