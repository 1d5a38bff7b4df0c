"""Domain Errors - Centralized Exception Hierarchy"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    """Base domain error - all errors extend this"""

    error_code: str = "DOMAIN_ERROR"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to a serializable dict for callers"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


# Validation Errors
class ValidationError(DomainError):
    """Input validation failed"""
    error_code = "VALIDATION_ERROR"


class TemplateValidationError(ValidationError):
    """Template failed the dependency validator - blocks activation"""
    error_code = "TEMPLATE_VALIDATION_ERROR"


# Not Found Errors
class NotFoundError(DomainError):
    """Resource not found"""
    error_code = "NOT_FOUND"


class TemplateNotFoundError(NotFoundError):
    """Workflow or phase template not found"""
    error_code = "TEMPLATE_NOT_FOUND"


class InstanceNotFoundError(NotFoundError):
    """Workflow instance not found"""
    error_code = "INSTANCE_NOT_FOUND"


# Authorization Errors
class PermissionDeniedError(DomainError):
    """Actor is not allowed to perform the action"""
    error_code = "PERMISSION_DENIED"


# Conflict Errors
class ConflictError(DomainError):
    """Resource conflict (e.g., concurrent modification)"""
    error_code = "CONFLICT"


class StaleInstanceStateError(ConflictError):
    """Optimistic concurrency conflict - caller must retry against fresh state"""
    error_code = "STALE_INSTANCE_STATE"


class IllegalTransitionError(ConflictError):
    """Action not valid for current state"""
    error_code = "ILLEGAL_TRANSITION"


class TemplateImmutableError(IllegalTransitionError):
    """Structural change attempted on an activated template"""
    error_code = "TEMPLATE_IMMUTABLE"


# Engine Errors
class EngineError(DomainError):
    """Workflow engine error"""
    error_code = "ENGINE_ERROR"


class UnresolvableApproverError(EngineError):
    """No eligible actor could be resolved for a step"""
    error_code = "UNRESOLVABLE_APPROVER"


class PolicyNotConfiguredError(EngineError):
    """A step needs a decision policy that the engine was not given"""
    error_code = "POLICY_NOT_CONFIGURED"
