"""Service modules - Business logic layer"""
from .workflow_service import WorkflowService
from .template_service import TemplateService

__all__ = [
    "WorkflowService",
    "TemplateService",
]
