"""Exception taxonomy for the script engine.

Engine errors (compile, cold start, lookup, dispatch) propagate to whoever
called the dispatcher. BindingError subclasses are raised from inside bound
methods and surface in Lua as script-level failures that a script may pcall.
"""

from __future__ import annotations


class PortalError(Exception):
    """Base class for every engine error."""


class CompileError(PortalError):
    def __init__(self, path: str, cause: str) -> None:
        super().__init__(f"cannot compile {path}: {cause}")
        self.path = path
        self.cause = cause


class UnitNotFoundError(PortalError):
    def __init__(self, path: str) -> None:
        super().__init__(f"no compiled script registered for {path}")
        self.path = path


class ColdStartError(PortalError):
    def __init__(self, path: str, cause: str) -> None:
        super().__init__(f"cannot initialize {path}: {cause}")
        self.path = path
        self.cause = cause


class EntryPointError(PortalError):
    def __init__(self, path: str, entry: str) -> None:
        super().__init__(f"{path} does not define entry function '{entry}'")
        self.path = path
        self.entry = entry


class ScriptExecutionError(PortalError):
    def __init__(self, path: str, cause: str) -> None:
        super().__init__(f"error running {path}: {cause}")
        self.path = path
        self.cause = cause


class ScriptTimeoutError(PortalError):
    def __init__(self, path: str, timeout: float) -> None:
        super().__init__(f"{path} did not finish within {timeout:g}s")
        self.path = path
        self.timeout = timeout


class ExtensionLoadError(PortalError):
    def __init__(self, extension_id: str, cause: str) -> None:
        super().__init__(f"extension {extension_id}: {cause}")
        self.extension_id = extension_id
        self.cause = cause


# ── Script-level binding errors ─────────────────────────────────


class BindingError(PortalError):
    """Failure raised into Lua by a host-bound method."""


class BindingNotFoundError(BindingError):
    pass


class DataAccessError(BindingError):
    pass


class ArgumentTypeError(BindingError):
    pass


class FieldNotAllowedError(BindingError):
    def __init__(self, table: str, field: str) -> None:
        super().__init__(f"field '{field}' is not a column of {table}")
        self.table = table
        self.field = field
