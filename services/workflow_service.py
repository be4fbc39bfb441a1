"""
Multi-step workflows: an ordered chain of tasks where each step's output
feeds the next step's description.

    draft -> running <-> paused
    running -> completed
    draft | running | paused -> cancelled

A step's task is created only when the previous step's task completes. The
advance hook runs inside the completing transaction (TaskService completion
listener) and hands back post-commit follow-ups for the notifications.
"""
import json
import logging
from datetime import datetime
from decimal import Decimal

from models import db, atomic, Account, Workflow, WorkflowStep
from core.money import fmt
from core.payloads import WorkflowSpec, parse_payload
from services.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from services.task_service import TaskService

logger = logging.getLogger('relay.workflows')

MAX_OUTPUT_CHARS = 20000


def _render_output(output) -> str:
    if output is None:
        return "(no output recorded)"
    if isinstance(output, dict):
        text = output.get('output') or output.get('output_url') or output.get('notes')
        if text is None:
            text = json.dumps(output, ensure_ascii=False)
    else:
        text = str(output)
    return text[:MAX_OUTPUT_CHARS]


def step_description(workflow, step, previous=None) -> str:
    parts = [f"## Workflow: {workflow.name} (Step {step.position + 1}/{workflow.total_steps})",
             "", "### Your Task", step.description, ""]
    if previous is not None:
        parts += [f"### Input from Previous Step ({previous.title})", _render_output(previous.output), ""]
    elif step.input_description:
        parts += ["### Input", step.input_description, ""]
    if step.output_description:
        parts += ["### Expected Output", step.output_description, ""]
    parts.append(f"### Output Format: {step.output_format or 'text'}")
    return '\n'.join(parts)


class WorkflowService:
    def __init__(self, tasks, notifier, matcher=None):
        self.tasks = tasks
        self.notifier = notifier
        self.matcher = matcher

    # ------------------------------------------------------------------
    # Definition
    # ------------------------------------------------------------------

    def create_workflow(self, caller, data: dict) -> Workflow:
        spec = parse_payload(WorkflowSpec, data)
        with atomic():
            workflow = self._build(caller.id, spec.name, spec.description,
                                   [s.model_dump() for s in spec.steps], is_template=spec.is_template,
                                   auto_match=spec.auto_match)
        logger.info("Workflow %s created by %s: %d steps, %s USDC%s",
                    workflow.id, caller.id, workflow.total_steps, fmt(workflow.total_budget_usdc),
                    " (template)" if workflow.is_template else "")
        return workflow

    @staticmethod
    def _build(creator_id, name, description, steps, is_template=False, template_id=None,
               auto_match=False) -> Workflow:
        total = sum((Decimal(s['budget_usdc']) for s in steps), Decimal('0'))
        workflow = Workflow(
            created_by_id=creator_id,
            name=name,
            description=description,
            status='draft',
            current_step=0,
            total_steps=len(steps),
            total_budget_usdc=total,
            spent_usdc=Decimal('0'),
            is_template=is_template,
            template_id=template_id,
            usage_count=0,
            auto_match=bool(auto_match),
        )
        db.session.add(workflow)
        db.session.flush()
        for position, s in enumerate(steps):
            db.session.add(WorkflowStep(
                workflow_id=workflow.id,
                position=position,
                title=s['title'],
                description=s['description'],
                required_skills=list(s.get('required_skills') or []),
                category=s.get('category') or 'general',
                budget_usdc=Decimal(s['budget_usdc']),
                input_description=s.get('input_description'),
                output_description=s.get('output_description'),
                output_format=s.get('output_format') or 'text',
                status='pending',
            ))
        db.session.flush()
        return workflow

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    @staticmethod
    def get(workflow_id: str) -> Workflow:
        workflow = db.session.get(Workflow, workflow_id)
        if not workflow:
            raise NotFoundError("Workflow not found")
        return workflow

    @staticmethod
    def lock(workflow_id: str) -> Workflow:
        workflow = db.session.query(Workflow).filter_by(id=workflow_id).with_for_update().first()
        if not workflow:
            raise NotFoundError("Workflow not found")
        return workflow

    def get_workflow(self, workflow_id: str, caller) -> dict:
        workflow = self.get(workflow_id)
        if not workflow.is_template and workflow.created_by_id != caller.id and not caller.is_admin:
            raise ForbiddenError("Only the creator can view this workflow")
        return self.to_dict(workflow)

    @staticmethod
    def _step_at(workflow, position):
        return WorkflowStep.query.filter_by(workflow_id=workflow.id, position=position).first()

    @staticmethod
    def _check_owner(workflow, caller):
        if workflow.created_by_id != caller.id:
            raise ForbiddenError("Only the workflow creator can do this")

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def start_workflow(self, workflow_id: str, caller) -> Workflow:
        with atomic():
            workflow = self.lock(workflow_id)
            self._check_owner(workflow, caller)
            if workflow.is_template:
                raise ConflictError("Templates cannot be started; instantiate one first")
            if workflow.status != 'draft':
                raise ConflictError(f"Workflow is {workflow.status}, expected draft")
            workflow.status = 'running'
            workflow.current_step = 0
            task = self._activate_step(workflow, self._step_at(workflow, 0))
        logger.info("Workflow %s started; step 1 task %s", workflow_id, task.id)
        self._open(task)
        return workflow

    def _activate_step(self, workflow, step):
        """Create the step's task inside the current transaction."""
        previous = self._step_at(workflow, step.position - 1) if step.position > 0 else None
        creator = db.session.get(Account, workflow.created_by_id)
        task = TaskService.build_task(
            creator.kind if creator else 'client',
            workflow.created_by_id,
            f"[Workflow] {step.title}",
            step_description(workflow, step, previous),
            step.budget_usdc,
            step.required_skills,
            category=step.category,
            workflow_id=workflow.id,
            workflow_step=step.position,
            auto_accept=bool(workflow.auto_match),
        )
        step.task_id = task.id
        step.status = 'active'
        return task

    def _open(self, task):
        if self.matcher is not None:
            self.matcher.process_new_task(task)

    def pause_workflow(self, workflow_id: str, caller) -> Workflow:
        with atomic():
            workflow = self.lock(workflow_id)
            self._check_owner(workflow, caller)
            if workflow.status != 'running':
                raise ConflictError(f"Workflow is {workflow.status}, expected running")
            workflow.status = 'paused'
        logger.info("Workflow %s paused at step %d", workflow_id, workflow.current_step + 1)
        return workflow

    def resume_workflow(self, workflow_id: str, caller) -> Workflow:
        with atomic():
            workflow = self.lock(workflow_id)
            self._check_owner(workflow, caller)
            if workflow.status != 'paused':
                raise ConflictError(f"Workflow is {workflow.status}, expected paused")
            workflow.status = 'running'
            followups = []
            current = self._step_at(workflow, workflow.current_step)
            if current is not None and current.status == 'completed':
                followups = self._advance(workflow, current)
        logger.info("Workflow %s resumed", workflow_id)
        self.tasks.run_followups(followups)
        return workflow

    def cancel_workflow(self, workflow_id: str, caller) -> Workflow:
        with atomic():
            workflow = self.lock(workflow_id)
            self._check_owner(workflow, caller)
            if workflow.status in ('completed', 'cancelled'):
                raise ConflictError(f"Workflow is already {workflow.status}")
            skipped = 0
            for step in WorkflowStep.query.filter_by(workflow_id=workflow.id, status='pending').all():
                step.status = 'skipped'
                skipped += 1
            workflow.status = 'cancelled'
        logger.info("Workflow %s cancelled; %d pending steps skipped", workflow_id, skipped)
        return workflow

    # ------------------------------------------------------------------
    # Task hooks (run inside the task's transaction)
    # ------------------------------------------------------------------

    def on_task_completed(self, task):
        if not task.workflow_id:
            return None
        workflow = self.lock(task.workflow_id)
        step = WorkflowStep.query.filter_by(workflow_id=workflow.id, task_id=task.id).first()
        if step is None or step.status != 'active':
            return None

        step.status = 'completed'
        step.output = task.deliverables
        workflow.spent_usdc = Decimal(workflow.spent_usdc or 0) + Decimal(step.budget_usdc)
        logger.info("Workflow %s step %d/%d completed (task %s)",
                    workflow.id, step.position + 1, workflow.total_steps, task.id)

        if workflow.status != 'running':
            return None
        return self._advance(workflow, step)

    def on_task_failed(self, task):
        if not task.workflow_id:
            return None
        step = WorkflowStep.query.filter_by(workflow_id=task.workflow_id, task_id=task.id).first()
        if step is None or step.status != 'active':
            return None
        step.status = 'failed'
        logger.warning("Workflow %s blocked: step %d task %s ended %s",
                       task.workflow_id, step.position + 1, task.id, task.status)
        return None

    def _advance(self, workflow, completed_step) -> list:
        next_position = completed_step.position + 1
        if next_position >= workflow.total_steps:
            workflow.status = 'completed'
            workflow.completed_at = datetime.utcnow()
            creator_id, name, workflow_id = workflow.created_by_id, workflow.name, workflow.id
            logger.info("Workflow %s completed (spent %s USDC)", workflow_id, fmt(workflow.spent_usdc))
            return [lambda: self.notifier.notify(creator_id, 'workflow_completed', None,
                                                 {"workflow_id": workflow_id, "name": name})]

        workflow.current_step = next_position
        task = self._activate_step(workflow, self._step_at(workflow, next_position))
        logger.info("Workflow %s advanced to step %d/%d (task %s)",
                    workflow.id, next_position + 1, workflow.total_steps, task.id)
        return [lambda: self._open(task)]

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    @staticmethod
    def list_templates() -> list:
        rows = Workflow.query.filter_by(is_template=True).order_by(Workflow.usage_count.desc()).all()
        return [WorkflowService.to_dict(w, include_steps=False) for w in rows]

    def create_from_template(self, template_id: str, caller, name: str = None) -> Workflow:
        if name is not None and (not isinstance(name, str) or not 1 <= len(name.strip()) <= 200):
            raise ValidationError("name must be 1-200 characters")
        with atomic():
            template = self.lock(template_id)
            if not template.is_template:
                raise NotFoundError("Template not found")
            steps = [{
                "title": s.title,
                "description": s.description,
                "required_skills": s.required_skills,
                "category": s.category,
                "budget_usdc": s.budget_usdc,
                "input_description": s.input_description,
                "output_description": s.output_description,
                "output_format": s.output_format,
            } for s in template.steps]
            workflow = self._build(caller.id, (name or template.name).strip(), template.description,
                                   steps, template_id=template.id, auto_match=template.auto_match)
            template.usage_count = (template.usage_count or 0) + 1
        logger.info("Workflow %s instantiated from template %s by %s", workflow.id, template_id, caller.id)
        return workflow

    @staticmethod
    def step_to_dict(s: WorkflowStep) -> dict:
        return {
            "position": s.position,
            "title": s.title,
            "description": s.description,
            "required_skills": s.required_skills or [],
            "category": s.category,
            "budget_usdc": fmt(s.budget_usdc),
            "input_description": s.input_description,
            "output_description": s.output_description,
            "output_format": s.output_format,
            "task_id": s.task_id,
            "status": s.status,
            "output": s.output,
        }

    @staticmethod
    def to_dict(w: Workflow, include_steps: bool = True) -> dict:
        d = {
            "workflow_id": w.id,
            "created_by_id": w.created_by_id,
            "name": w.name,
            "description": w.description,
            "status": w.status,
            "current_step": w.current_step,
            "total_steps": w.total_steps,
            "total_budget_usdc": fmt(w.total_budget_usdc),
            "spent_usdc": fmt(w.spent_usdc or 0),
            "is_template": bool(w.is_template),
            "template_id": w.template_id,
            "usage_count": w.usage_count or 0,
            "auto_match": bool(w.auto_match),
            "created_at": w.created_at.isoformat() if w.created_at else None,
            "completed_at": w.completed_at.isoformat() if w.completed_at else None,
        }
        if include_steps:
            d["steps"] = [WorkflowService.step_to_dict(s) for s in w.steps]
        return d
