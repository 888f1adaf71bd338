class AppError(Exception):
    """Base class for all application exceptions."""
    def __init__(self, message: str, status_code: int = 500, details: dict = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

class ResourceNotFoundError(AppError):
    """Raised when a requested resource is not found."""
    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(
            f"{resource_type} with id {resource_id} not found",
            status_code=404,
            details={"resource_type": resource_type, "resource_id": resource_id},
        )
        self.resource_type = resource_type
        self.resource_id = resource_id

class ForbiddenError(AppError):
    """Raised when the requester is not a member of the meeting or class they act on."""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, status_code=403, details=details)

class ValidationError(AppError):
    """Raised when required input is missing or out of range."""
    def __init__(self, message: str, details: dict = None, status_code: int = 422):
        super().__init__(message, status_code=status_code, details=details)

class BadRequestError(ValidationError):
    """Raised when a call cannot be interpreted at all, e.g. no origin was named."""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, details=details, status_code=400)

class ConflictError(AppError):
    """Raised when the current state forbids the transition: a full destination or a resolved request."""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, status_code=409, details=details)

class UnavailableError(AppError):
    """Raised when the store or a guarded section cannot be reached in time."""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, status_code=503, details=details)

class ConfigurationError(AppError):
    """Raised when system configuration is invalid."""
    def __init__(self, message: str):
        super().__init__(message, status_code=500)
