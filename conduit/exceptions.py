"""Typed exception hierarchy. Every error Conduit can raise."""


class ConduitError(Exception):
    """Base exception for all Conduit errors."""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.details = details or {}


# ── Expressions ─────────────────────────────────────────────────────────────


class ExpressionError(ConduitError):
    """Base exception for expression parsing and evaluation errors."""
    def __init__(self, message: str, expression: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.expression = expression


class ExpressionSyntaxError(ExpressionError):
    """Expression is neither a bare key nor a parseable function expression."""
    def __init__(self, message: str, expression: str = "", position: int = -1, **kwargs):
        super().__init__(message, expression=expression, **kwargs)
        self.position = position


class ResolutionError(ExpressionError):
    """Expression referenced something that is not in the variable context."""
    def __init__(self, message: str, expression: str = "", available_keys: list = None, **kwargs):
        super().__init__(message, expression=expression, **kwargs)
        self.available_keys = available_keys or []
        self.details.setdefault("available_keys", self.available_keys)


class SandboxTimeoutError(ExpressionError):
    """Expression evaluation exceeded its time, step or size budget."""
    def __init__(self, message: str, expression: str = "", timeout_seconds: float = 0, **kwargs):
        super().__init__(message, expression=expression, **kwargs)
        self.timeout_seconds = timeout_seconds


class SelectorTypeError(ConduitError):
    """Data selector returned something other than an object or an array."""
    def __init__(self, message: str, step_id: str = "", actual_type: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.step_id = step_id
        self.actual_type = actual_type


# ── Execution ───────────────────────────────────────────────────────────────


class ConnectorError(ConduitError):
    """Connector call failed. Opaque, per protocol."""
    def __init__(self, message: str, protocol: str = "", status_code: int = None, **kwargs):
        super().__init__(message, **kwargs)
        self.protocol = protocol
        self.status_code = status_code


class Aborted(ConduitError):
    """Run was cancelled or exceeded its wall-clock budget."""
    def __init__(self, message: str, run_id: str = "", reason: str = "cancelled", step_results: list = None, **kwargs):
        super().__init__(message, **kwargs)
        self.run_id = run_id
        self.reason = reason
        self.step_results = step_results or []


class ResponseFilterError(ConduitError):
    """A response filter with action 'fail' matched the tool output."""
    def __init__(self, message: str, filter_id: str = "", path: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.filter_id = filter_id
        self.path = path


# ── Patches ─────────────────────────────────────────────────────────────────


class PatchError(ConduitError):
    """Base exception for patch batch failures. The batch is never partially applied."""
    def __init__(self, message: str, op_index: int = -1, path: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.op_index = op_index
        self.path = path


class PatchValidationError(PatchError):
    """Malformed patch batch, rejected wholesale before anything is applied."""
    def __init__(self, message: str, violations: list = None, **kwargs):
        super().__init__(message, **kwargs)
        self.violations = violations or []


class PathUnresolvableError(PatchError):
    """Patch targets a path that does not resolve (e.g. replace on an absent field)."""
    pass


class PatchTestFailedError(PatchError):
    """A 'test' operation did not match the current document value."""
    pass


class StructuralInvalidError(PatchError):
    """Patched document violates the structural rules of a tool."""
    def __init__(self, message: str, violations: list = None, **kwargs):
        super().__init__(message, **kwargs)
        self.violations = violations or []


# ── Confirmations, credentials, loading ─────────────────────────────────────


class ConfirmationStateError(ConduitError):
    """Invalid confirmation state transition or action."""
    def __init__(self, message: str, call_id: str = "", status: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.call_id = call_id
        self.status = status


class CredentialError(ConduitError):
    """Credential retrieval or decryption failed."""
    def __init__(self, message: str, system_id: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.system_id = system_id


class CredentialNotFound(CredentialError):
    """No credentials stored for this system."""
    pass


class ToolLoadError(ConduitError):
    """Tool document could not be read or parsed."""
    def __init__(self, message: str, source: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.source = source
