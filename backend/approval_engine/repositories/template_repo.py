"""Template Repository - Data access for workflow and appraisal phase templates"""
from typing import Any, Dict, List, Optional
from pymongo.collection import Collection
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from .base import TemplateRepository, PhaseTemplateRepository
from .mongo_client import get_collection, WORKFLOW_TEMPLATES, PHASE_TEMPLATES
from ..domain.models import WorkflowTemplate, AppraisalPhaseTemplate
from ..domain.enums import WorkflowCategory
from ..domain.errors import ConflictError, TemplateNotFoundError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class MongoTemplateRepository(TemplateRepository):
    """Workflow templates in MongoDB"""

    def __init__(self, collection: Optional[Collection] = None):
        self._templates: Collection = collection if collection is not None else get_collection(WORKFLOW_TEMPLATES)

    def create(self, template: WorkflowTemplate) -> WorkflowTemplate:
        doc = template.model_dump(mode="json")
        doc["_id"] = template.template_id
        try:
            self._templates.insert_one(doc)
        except DuplicateKeyError:
            raise ConflictError(f"Workflow template {template.template_id} already exists")
        logger.info(f"Created workflow template: {template.template_id}", extra={"template_id": template.template_id})
        return template

    def get(self, template_id: str) -> Optional[WorkflowTemplate]:
        doc = self._templates.find_one({"template_id": template_id})
        return self._to_model(doc) if doc else None

    def replace(self, template: WorkflowTemplate, expected_version: int) -> WorkflowTemplate:
        doc = template.model_dump(mode="json")
        doc["_id"] = template.template_id
        doc["version"] = expected_version + 1

        result = self._templates.find_one_and_replace(
            {"template_id": template.template_id, "version": expected_version},
            doc,
            return_document=ReturnDocument.AFTER
        )
        if result is None:
            if self._templates.find_one({"template_id": template.template_id}):
                raise ConflictError(
                    f"Workflow template {template.template_id} was modified concurrently",
                    details={"expected_version": expected_version}
                )
            raise TemplateNotFoundError(f"Workflow template {template.template_id} not found")
        return self._to_model(result)

    def list_by_code(self, code: str) -> List[WorkflowTemplate]:
        cursor = self._templates.find({"code": code}).sort("created_at", ASCENDING)
        return [self._to_model(doc) for doc in cursor]

    def list_active(self, category: Optional[WorkflowCategory] = None) -> List[WorkflowTemplate]:
        query: Dict[str, Any] = {"is_active": True}
        if category is not None:
            query["category"] = category.value
        return [self._to_model(doc) for doc in self._templates.find(query)]

    def _to_model(self, doc: Dict[str, Any]) -> WorkflowTemplate:
        doc.pop("_id", None)
        return WorkflowTemplate.model_validate(doc)


class MongoPhaseTemplateRepository(PhaseTemplateRepository):
    """Appraisal phase templates in MongoDB"""

    def __init__(self, collection: Optional[Collection] = None):
        self._templates: Collection = collection if collection is not None else get_collection(PHASE_TEMPLATES)

    def create(self, template: AppraisalPhaseTemplate) -> AppraisalPhaseTemplate:
        doc = template.model_dump(mode="json")
        doc["_id"] = template.template_id
        try:
            self._templates.insert_one(doc)
        except DuplicateKeyError:
            raise ConflictError(f"Appraisal phase template {template.template_id} already exists")
        logger.info(f"Created appraisal phase template: {template.template_id}", extra={"template_id": template.template_id})
        return template

    def get(self, template_id: str) -> Optional[AppraisalPhaseTemplate]:
        doc = self._templates.find_one({"template_id": template_id})
        if not doc:
            return None
        doc.pop("_id", None)
        return AppraisalPhaseTemplate.model_validate(doc)

    def replace(self, template: AppraisalPhaseTemplate, expected_version: int) -> AppraisalPhaseTemplate:
        doc = template.model_dump(mode="json")
        doc["_id"] = template.template_id
        doc["version"] = expected_version + 1

        result = self._templates.find_one_and_replace(
            {"template_id": template.template_id, "version": expected_version},
            doc,
            return_document=ReturnDocument.AFTER
        )
        if result is None:
            if self._templates.find_one({"template_id": template.template_id}):
                raise ConflictError(
                    f"Appraisal phase template {template.template_id} was modified concurrently",
                    details={"expected_version": expected_version}
                )
            raise TemplateNotFoundError(f"Appraisal phase template {template.template_id} not found")
        result.pop("_id", None)
        return AppraisalPhaseTemplate.model_validate(result)
