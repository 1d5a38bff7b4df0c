"""Template Service - Authoring of workflow and appraisal phase templates"""
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional
from pydantic import ValidationError as PydanticValidationError

from ..domain.models import (
    WorkflowTemplate, WorkflowStep, AppraisalPhaseTemplate, AppraisalTemplatePhase,
    ActorContext, ValidationResult, ScheduledPhase, PHASE_TYPE_PRESETS
)
from ..domain.enums import WorkflowCategory, PhaseType
from ..domain.errors import (
    ValidationError, TemplateValidationError, TemplateImmutableError, NotFoundError
)
from ..engine.dependency_validator import DependencyValidator
from ..engine.phase_scheduler import schedule_template
from ..repositories.base import TemplateRepository, PhaseTemplateRepository
from ..utils.idgen import (
    generate_template_id, generate_step_id, generate_phase_template_id, generate_phase_id
)
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


def _invalid_input(message: str, error: PydanticValidationError) -> ValidationError:
    return ValidationError(
        message,
        details={"errors": error.errors(include_url=False, include_context=False)}
    )


class TemplateService:
    """
    Service for template authoring

    Workflow templates and phase templates are edited freely until their
    first activation; after that their structure is frozen and changes go
    into a new version.
    """

    def __init__(
        self,
        template_repo: TemplateRepository,
        phase_template_repo: Optional[PhaseTemplateRepository] = None,
        validator: Optional[DependencyValidator] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.template_repo = template_repo
        self.phase_template_repo = phase_template_repo
        self.validator = validator or DependencyValidator()
        self.clock = clock

    # =========================================================================
    # Workflow Templates
    # =========================================================================

    def create_template(
        self,
        name: str,
        code: str,
        category: WorkflowCategory,
        actor: ActorContext,
        description: Optional[str] = None,
        requires_signature: bool = False,
        requires_letter: bool = False,
        allow_return_to_previous: bool = False,
        auto_terminate_hours: Optional[float] = None
    ) -> WorkflowTemplate:
        """Create a new, inactive workflow template without steps"""
        now = self.clock()
        try:
            template = WorkflowTemplate(
                template_id=generate_template_id(),
                name=name,
                code=code,
                category=category,
                description=description,
                requires_signature=requires_signature,
                requires_letter=requires_letter,
                allow_return_to_previous=allow_return_to_previous,
                auto_terminate_hours=auto_terminate_hours,
                created_by=actor.actor_id,
                created_at=now,
                updated_at=now,
            )
        except PydanticValidationError as e:
            raise _invalid_input("Invalid workflow template", e)

        self.template_repo.create(template)
        logger.info(
            f"Created workflow template {template.code}",
            extra={"template_id": template.template_id, "actor_id": actor.actor_id}
        )
        return template

    def get_template(self, template_id: str) -> WorkflowTemplate:
        return self.template_repo.get_or_raise(template_id)

    def add_step(self, template_id: str, step_data: Dict[str, Any]) -> WorkflowTemplate:
        """
        Append a step (or insert it at step_data["order"])

        Later steps shift down to keep orders contiguous.
        """
        template = self.template_repo.get_or_raise(template_id)
        self._ensure_editable(template)

        steps = template.ordered_steps
        order = step_data.get("order") or len(steps) + 1
        try:
            step = WorkflowStep.model_validate({
                **step_data,
                "step_id": generate_step_id(),
                "template_id": template_id,
                "order": order,
            })
        except PydanticValidationError as e:
            raise _invalid_input("Invalid workflow step", e)

        shifted = [
            s.model_copy(update={"order": s.order + 1}) if s.order >= step.order else s
            for s in steps
        ]
        return self._save_template(template, {"steps": sorted(shifted + [step], key=lambda s: s.order)})

    def remove_step(self, template_id: str, step_id: str) -> WorkflowTemplate:
        template = self.template_repo.get_or_raise(template_id)
        self._ensure_editable(template)

        remaining = [s for s in template.ordered_steps if s.step_id != step_id]
        if len(remaining) == len(template.steps):
            raise NotFoundError(f"Step {step_id} not found in template {template_id}")
        renumbered = [s.model_copy(update={"order": i}) for i, s in enumerate(remaining, start=1)]
        return self._save_template(template, {"steps": renumbered})

    def validate(self, template_id: str) -> ValidationResult:
        template = self.template_repo.get_or_raise(template_id)
        return self.validator.validate_steps(template.steps)

    def activate(self, template_id: str, actor: ActorContext) -> WorkflowTemplate:
        """
        Activate a template

        Raises:
            TemplateValidationError: With every validation issue in details
        """
        template = self.template_repo.get_or_raise(template_id)
        result = self.validator.validate_steps(template.steps)
        if not result.valid:
            raise TemplateValidationError(
                f"Workflow template {template.code} cannot be activated",
                details={"template_id": template_id, "issues": result.issues}
            )
        if template.is_active:
            return template

        updated = self._save_template(template, {
            "is_active": True,
            "activated_at": template.activated_at or self.clock(),
        })
        logger.info(
            f"Activated workflow template {template.code}",
            extra={"template_id": template_id, "actor_id": actor.actor_id}
        )
        return updated

    def deactivate(self, template_id: str, actor: ActorContext) -> WorkflowTemplate:
        """Stop new instances; running instances keep their snapshot"""
        template = self.template_repo.get_or_raise(template_id)
        if not template.is_active:
            return template
        updated = self._save_template(template, {"is_active": False})
        logger.info(
            f"Deactivated workflow template {template.code}",
            extra={"template_id": template_id, "actor_id": actor.actor_id}
        )
        return updated

    def new_version(self, template_id: str, actor: ActorContext) -> WorkflowTemplate:
        """Editable copy of a template under the same code"""
        source = self.template_repo.get_or_raise(template_id)
        now = self.clock()
        new_id = generate_template_id()
        copy = source.model_copy(update={
            "template_id": new_id,
            "steps": [
                s.model_copy(update={"step_id": generate_step_id(), "template_id": new_id})
                for s in source.ordered_steps
            ],
            "is_active": False,
            "activated_at": None,
            "supersedes_template_id": source.template_id,
            "created_by": actor.actor_id,
            "created_at": now,
            "updated_at": now,
            "version": 1,
        }, deep=True)
        self.template_repo.create(copy)
        logger.info(
            f"Created new version of workflow template {source.code}",
            extra={"template_id": new_id, "actor_id": actor.actor_id}
        )
        return copy

    def list_active_templates(self, category: Optional[WorkflowCategory] = None) -> List[WorkflowTemplate]:
        return self.template_repo.list_active(category)

    def _ensure_editable(self, template: WorkflowTemplate) -> None:
        if template.activated_at is not None:
            raise TemplateImmutableError(
                f"Workflow template {template.code} has been activated; create a new version to change it",
                details={"template_id": template.template_id}
            )

    def _save_template(self, template: WorkflowTemplate, updates: Dict[str, Any]) -> WorkflowTemplate:
        updated = template.model_copy(update={**updates, "updated_at": self.clock()})
        return self.template_repo.replace(updated, expected_version=template.version)

    # =========================================================================
    # Appraisal Phase Templates
    # =========================================================================

    def create_phase_template(
        self,
        name: str,
        actor: ActorContext,
        description: Optional[str] = None,
        default_duration_days: int = 365
    ) -> AppraisalPhaseTemplate:
        now = self.clock()
        try:
            template = AppraisalPhaseTemplate(
                template_id=generate_phase_template_id(),
                name=name,
                description=description,
                default_duration_days=default_duration_days,
                created_by=actor.actor_id,
                created_at=now,
                updated_at=now,
            )
        except PydanticValidationError as e:
            raise _invalid_input("Invalid appraisal phase template", e)

        self._phase_repo().create(template)
        logger.info(
            f"Created appraisal phase template {name}",
            extra={"template_id": template.template_id, "actor_id": actor.actor_id}
        )
        return template

    def get_phase_template(self, template_id: str) -> AppraisalPhaseTemplate:
        return self._phase_repo().get_or_raise(template_id)

    def add_phase(self, template_id: str, phase_data: Dict[str, Any]) -> AppraisalPhaseTemplate:
        """
        Add a phase

        Unset fields default from the phase type preset: the phase starts
        where the last phase ends and lasts the preset's default duration.
        """
        template = self._phase_repo().get_or_raise(template_id)
        self._ensure_phases_editable(template)

        try:
            phase_type = PhaseType(phase_data.get("phase_type"))
        except ValueError:
            raise ValidationError(
                f"Unknown phase type {phase_data.get('phase_type')!r}",
                details={"phase_type": phase_data.get("phase_type")}
            )
        last = max(template.phases, key=lambda p: p.display_order, default=None)
        defaults = {
            "display_order": len(template.phases),
            "start_offset_days": last.end_offset_days if last else 0,
            "duration_days": PHASE_TYPE_PRESETS[phase_type].default_duration_days,
        }
        try:
            phase = AppraisalTemplatePhase.model_validate({
                **defaults,
                **phase_data,
                "phase_id": generate_phase_id(),
                "template_id": template_id,
            })
        except PydanticValidationError as e:
            raise _invalid_input("Invalid appraisal phase", e)

        return self._save_phase_template(template, template.phases + [phase])

    def update_phase(self, template_id: str, phase_id: str, changes: Dict[str, Any]) -> AppraisalPhaseTemplate:
        template = self._phase_repo().get_or_raise(template_id)
        self._ensure_phases_editable(template)
        current = self._get_phase_or_raise(template, phase_id)

        try:
            changed = AppraisalTemplatePhase.model_validate({
                **current.model_dump(),
                **changes,
                "phase_id": phase_id,
                "template_id": template_id,
            })
        except PydanticValidationError as e:
            raise _invalid_input("Invalid appraisal phase", e)

        phases = [changed if p.phase_id == phase_id else p for p in template.phases]
        return self._save_phase_template(template, phases)

    def remove_phase(self, template_id: str, phase_id: str) -> AppraisalPhaseTemplate:
        """Remove a phase; phases depending on it lose the dependency"""
        template = self._phase_repo().get_or_raise(template_id)
        self._ensure_phases_editable(template)
        self._get_phase_or_raise(template, phase_id)

        phases = [
            p.model_copy(update={"depends_on_phase_id": None}) if p.depends_on_phase_id == phase_id else p
            for p in template.phases if p.phase_id != phase_id
        ]
        return self._save_phase_template(template, phases)

    def reorder_phases(self, template_id: str, ordered_phase_ids: List[str]) -> AppraisalPhaseTemplate:
        template = self._phase_repo().get_or_raise(template_id)
        self._ensure_phases_editable(template)

        known = [p.phase_id for p in template.phases]
        if sorted(ordered_phase_ids) != sorted(known):
            raise ValidationError(
                "Reorder must list every phase of the template exactly once",
                details={"template_id": template_id, "phase_ids": ordered_phase_ids}
            )
        position = {phase_id: i for i, phase_id in enumerate(ordered_phase_ids)}
        phases = sorted(
            (p.model_copy(update={"display_order": position[p.phase_id]}) for p in template.phases),
            key=lambda p: p.display_order
        )
        return self._save_phase_template(template, phases)

    def validate_phases(self, template_id: str) -> ValidationResult:
        template = self._phase_repo().get_or_raise(template_id)
        return self.validator.validate_phases(template.phases)

    def activate_phase_template(self, template_id: str, actor: ActorContext) -> AppraisalPhaseTemplate:
        template = self._phase_repo().get_or_raise(template_id)
        result = self.validator.validate_phases(template.phases)
        issues = list(result.issues)
        if not any(p.is_active for p in template.phases):
            issues.insert(0, "Appraisal template must have at least one active phase")
        if issues:
            raise TemplateValidationError(
                f"Appraisal phase template {template.name} cannot be activated",
                details={"template_id": template_id, "issues": issues}
            )
        if template.is_active:
            return template

        updated = self._save_phase_template(template, template.phases, {
            "is_active": True,
            "activated_at": template.activated_at or self.clock(),
        })
        logger.info(
            f"Activated appraisal phase template {template.name}",
            extra={"template_id": template_id, "actor_id": actor.actor_id}
        )
        return updated

    def schedule_cycle(self, template_id: str, cycle_start_date: date) -> List[ScheduledPhase]:
        """Calendar dates of the template's active phases for a cycle"""
        template = self._phase_repo().get_or_raise(template_id)
        return schedule_template(template, cycle_start_date, self.validator)

    def _phase_repo(self) -> PhaseTemplateRepository:
        if self.phase_template_repo is None:
            raise RuntimeError("TemplateService was created without a phase template repository")
        return self.phase_template_repo

    def _get_phase_or_raise(self, template: AppraisalPhaseTemplate, phase_id: str) -> AppraisalTemplatePhase:
        phase = template.get_phase(phase_id)
        if phase is None:
            raise NotFoundError(
                f"Phase {phase_id} not found in template {template.template_id}",
                details={"template_id": template.template_id, "phase_id": phase_id}
            )
        return phase

    def _ensure_phases_editable(self, template: AppraisalPhaseTemplate) -> None:
        if template.activated_at is not None:
            raise TemplateImmutableError(
                f"Appraisal phase template {template.name} has been activated",
                details={"template_id": template.template_id}
            )

    def _save_phase_template(
        self,
        template: AppraisalPhaseTemplate,
        phases: List[AppraisalTemplatePhase],
        extra_updates: Optional[Dict[str, Any]] = None
    ) -> AppraisalPhaseTemplate:
        updated = template.model_copy(update={
            "phases": phases,
            "updated_at": self.clock(),
            **(extra_updates or {}),
        })
        return self._phase_repo().replace(updated, expected_version=template.version)
