"""Error taxonomy shared by the engine modules."""


class EngineError(Exception):
    """Base exception for engine errors."""
    pass


class ValidationError(EngineError):
    """Raised when a request is rejected before any state mutation."""

    def __init__(self, message, *, code="validation_error"):
        super().__init__(message)
        self.code = str(code)


class UnknownEntityError(ValidationError):
    """Raised when an actuator, alarm or schedule id is not in the store."""

    def __init__(self, kind, entity_id):
        super().__init__(f"Unknown {kind} '{entity_id}'.", code=f"unknown_{kind}")
        self.kind = str(kind)
        self.entity_id = entity_id


class ModeConflictError(ValidationError):
    """Raised when a manual ON/OFF command targets an actuator in AUTO mode."""

    def __init__(self, actuator_id, mode):
        super().__init__(
            f"Cannot send manual commands to actuator '{actuator_id}' while in {mode} mode.",
            code="invalid_mode",
        )
        self.actuator_id = actuator_id
        self.mode = mode


class DispatchError(EngineError):
    """Raised after a command failed or timed out and rollback was applied."""

    def __init__(self, message, *, command_id=None, state="FAILED", command=None):
        super().__init__(message)
        self.command_id = command_id
        self.state = str(state)
        self.command = command


class TransportError(EngineError):
    """Raised by transport adapters when the remote side cannot be reached or rejects a call."""
    pass
