"""
Auto-bid rules: an agent's standing instructions to bid on new tasks that
fit a category, skill and budget window while it has spare capacity.
"""
import logging
from decimal import Decimal, ROUND_DOWN

from models import db, atomic, AutoBidRule, Task
from core.money import USDC_QUANTUM, fmt
from core.payloads import AutoBidRuleSpec, parse_payload
from services.errors import ForbiddenError, NotFoundError, ValidationError

logger = logging.getLogger('relay.auto_bid')

MAX_RULES_PER_AGENT = 10
ACTIVE_TASK_STATUSES = ('in_progress', 'review')
RULE_FIELDS = ('name', 'categories', 'skills', 'min_budget_usdc', 'max_budget_usdc', 'bid_strategy',
               'fixed_bid_usdc', 'bid_message', 'max_active_tasks', 'enabled')


def bid_amount(rule: AutoBidRule, budget: Decimal) -> Decimal:
    if rule.bid_strategy == 'undercut_10':
        return (budget * Decimal('0.9')).quantize(USDC_QUANTUM, rounding=ROUND_DOWN)
    if rule.bid_strategy == 'fixed_rate' and rule.fixed_bid_usdc:
        return Decimal(rule.fixed_bid_usdc)
    return budget


def render_proposal(rule: AutoBidRule, task: Task, agent, trust_score: int) -> str:
    task_skills = task.required_skills or []
    agent_skills = agent.skills or []
    overlap = [s for s in task_skills if any(s in a.lower() or a.lower() in s for a in agent_skills)]
    skills = ', '.join(overlap or agent_skills[:5])
    if rule.bid_message:
        values = {
            '{task_title}': task.title,
            '{skills}': skills,
            '{budget}': fmt(task.budget_usdc),
            '{agent_name}': agent.name,
            '{completed}': str(agent.tasks_completed or 0),
            '{trust}': str(trust_score),
        }
        text = rule.bid_message
        for placeholder, value in values.items():
            text = text.replace(placeholder, value)
        return text
    return (f"I'm {agent.name} and this task fits my skills ({skills or 'general'}). "
            f"I have completed {agent.tasks_completed or 0} tasks with a trust score of {trust_score}/100.")


def rule_matches(rule: AutoBidRule, task: Task) -> bool:
    """Category, skill and budget filters. Empty filters accept everything."""
    categories = [c.lower() for c in (rule.categories or [])]
    if categories and (task.category or 'general').lower() not in categories:
        return False
    rule_skills = rule.skills or []
    if rule_skills:
        task_skills = task.required_skills or []
        if not any(ts in rs or rs in ts for ts in task_skills for rs in rule_skills):
            return False
    budget = Decimal(task.budget_usdc)
    if rule.min_budget_usdc is not None and budget < Decimal(rule.min_budget_usdc):
        return False
    if rule.max_budget_usdc is not None and budget > Decimal(rule.max_budget_usdc):
        return False
    return True


class AutoBidService:
    @staticmethod
    def list_rules(agent_id: str) -> list:
        rules = AutoBidRule.query.filter_by(agent_id=agent_id).order_by(AutoBidRule.created_at.asc()).all()
        return [AutoBidService.to_dict(r) for r in rules]

    def create_rule(self, caller, data: dict) -> AutoBidRule:
        if caller.kind != 'agent':
            raise ForbiddenError("Only agents can create auto-bid rules")
        spec = parse_payload(AutoBidRuleSpec, data)
        if AutoBidRule.query.filter_by(agent_id=caller.id).count() >= MAX_RULES_PER_AGENT:
            raise ValidationError(f"At most {MAX_RULES_PER_AGENT} auto-bid rules per agent")
        with atomic():
            rule = AutoBidRule(agent_id=caller.id, total_bids_placed=0, **spec.model_dump())
            db.session.add(rule)
        logger.info("Auto-bid rule %s created by %s (%s)", rule.id, caller.id, rule.bid_strategy)
        return rule

    def update_rule(self, rule_id: str, caller, data: dict) -> AutoBidRule:
        rule = self._owned(rule_id, caller)
        if not isinstance(data, dict):
            raise ValidationError("body must be a JSON object")
        merged = {f: getattr(rule, f) for f in RULE_FIELDS}
        merged.update(data)
        spec = parse_payload(AutoBidRuleSpec, merged)
        with atomic():
            for key, value in spec.model_dump().items():
                setattr(rule, key, value)
        logger.info("Auto-bid rule %s updated by %s", rule_id, caller.id)
        return rule

    def delete_rule(self, rule_id: str, caller):
        rule = self._owned(rule_id, caller)
        with atomic():
            db.session.delete(rule)
        logger.info("Auto-bid rule %s deleted by %s", rule_id, caller.id)

    @staticmethod
    def _owned(rule_id, caller) -> AutoBidRule:
        rule = db.session.get(AutoBidRule, rule_id)
        if not rule or rule.agent_id != caller.id:
            raise NotFoundError("Auto-bid rule not found")
        return rule

    @staticmethod
    def pick_rule(agent, task):
        """First enabled rule that fits ``task``, or None when the agent is at capacity."""
        rules = AutoBidRule.query.filter_by(agent_id=agent.id, enabled=True) \
            .order_by(AutoBidRule.created_at.asc()).all()
        if not rules:
            return None
        active = Task.query.filter(
            Task.assigned_agent_id == agent.id,
            Task.status.in_(ACTIVE_TASK_STATUSES),
        ).count()
        for rule in rules:
            if active >= (rule.max_active_tasks or 3):
                continue
            if rule_matches(rule, task):
                return rule
        return None

    @staticmethod
    def record_bid(rule_id: str):
        rule = db.session.get(AutoBidRule, rule_id)
        if rule is not None:
            rule.total_bids_placed = (rule.total_bids_placed or 0) + 1
            db.session.commit()

    @staticmethod
    def to_dict(r: AutoBidRule) -> dict:
        return {
            "rule_id": r.id,
            "agent_id": r.agent_id,
            "name": r.name,
            "categories": r.categories or [],
            "skills": r.skills or [],
            "min_budget_usdc": fmt(r.min_budget_usdc),
            "max_budget_usdc": fmt(r.max_budget_usdc),
            "bid_strategy": r.bid_strategy,
            "fixed_bid_usdc": fmt(r.fixed_bid_usdc),
            "bid_message": r.bid_message,
            "max_active_tasks": r.max_active_tasks,
            "enabled": bool(r.enabled),
            "total_bids_placed": r.total_bids_placed or 0,
            "created_at": r.created_at.isoformat() if r.created_at else None,
        }
