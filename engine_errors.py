"""
Exception types raised by the Lambda engine.

Only transport failures and hook failures abort a virtual user's run.
Missing or raising custom step functions, empty captures and unparseable payloads are
logged and tolerated, so they have no exception type here.
"""


class LambdaEngineError(Exception):
    """Base exception for all engine errors."""
    pass


class InvocationError(LambdaEngineError):
    """The remote function invocation itself failed (network, throttling, auth)."""

    def __init__(self, function_name: str, message: str):
        self.function_name = function_name
        super().__init__(f"Invocation of '{function_name}' failed: {message}")


class HookError(LambdaEngineError):
    """A beforeRequest/afterResponse hook raised."""

    def __init__(self, hook_name: str, phase: str, cause: BaseException):
        self.hook_name = hook_name
        self.phase = phase
        super().__init__(f"{phase} hook '{hook_name}' failed: {cause}")


class ScriptError(LambdaEngineError):
    """The scenario script or its processor module could not be loaded."""
    pass
