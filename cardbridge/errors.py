# cardbridge/errors.py


class BridgeError(Exception):
    code = "BRIDGE_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(BridgeError):
    """A referenced card, procedure, deliverable or evaluation does not exist."""
    code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: str):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found: {resource_id}")


class ConflictError(BridgeError):
    """Raised when a card slug is re-declared with a different variant."""
    code = "CONFLICT"


class InvalidStateError(BridgeError):
    """An evaluation transition was attempted from a state that forbids it."""
    code = "INVALID_STATE"

    def __init__(self, evaluation_id: str, status: str, action: str):
        self.evaluation_id = evaluation_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} evaluation {evaluation_id} in status '{status}'")


class AuthorizationDenied(BridgeError):
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Not authorized", organization_id: str | None = None):
        self.organization_id = organization_id
        super().__init__(message)
