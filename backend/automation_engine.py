"""
SprintBoard — Automation Rule Engine

Declarative rules react to domain events:

    {"id", "name", "enabled",
     "trigger": {"type": "issue.created"},
     "conditions": [{"type": "field_equals", "field": "issue.priority", "value": "high"}],
     "actions": [{"type": "notify", "channels": ["in-app"], "recipients": [...], "data": {...}}]}

A rule matches when it is enabled, its trigger type equals the event type and every
top-level condition holds. Conditions are parsed into a typed tree up front; dotted
field lookups fall back in a fixed order: event data, then the event envelope, then
the evaluation context.

Actions run in declaration order and report individually. A failing or unsupported
action produces an error entry, never an exception.
"""

import re
import logging
from typing import Annotated, Any, Awaitable, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from errors import BadRequest
from models import AutomationRule
from telemetry import get_tracer

logger = logging.getLogger("sprintboard.automation")
tracer = get_tracer("sprintboard.automation")

_MISSING = object()
_PLACEHOLDER = re.compile(r"\{([A-Za-z0-9_.]+)\}")

DispatchFn = Callable[..., Awaitable[Dict[str, Any]]]
PublishFn = Callable[[str, Dict[str, Any]], Awaitable[Any]]


# ============================================================
# EVENT ENVELOPE
# ============================================================

class AutomationEvent(BaseModel):
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    actor: Dict[str, Any] = Field(default_factory=dict)


def get_by_path(obj: Any, path: str) -> Any:
    current = obj
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def lookup(path: str, event: AutomationEvent, context: Dict[str, Any]) -> Any:
    """Resolve a dotted path against event data, the event itself, then the context"""
    for source in (event.data, event.model_dump(), context):
        value = get_by_path(source, path)
        # null counts as absent and falls through to the next source
        if value is not _MISSING and value is not None:
            return value
    return _MISSING


def interpolate(value: Any, event: AutomationEvent, context: Dict[str, Any]) -> Any:
    """Fill "{path}" placeholders in strings, recursively through dicts and lists"""
    if isinstance(value, str):
        def _replace(match):
            resolved = lookup(match.group(1), event, context)
            return match.group(0) if resolved is _MISSING else str(resolved)
        return _PLACEHOLDER.sub(_replace, value)
    if isinstance(value, dict):
        return {k: interpolate(v, event, context) for k, v in value.items()}
    if isinstance(value, list):
        return [interpolate(v, event, context) for v in value]
    return value


# ============================================================
# CONDITIONS
# ============================================================

class FieldEquals(BaseModel):
    type: Literal["field_equals"]
    field: str
    value: Any = None

    def evaluate(self, event: AutomationEvent, context: Dict[str, Any]) -> bool:
        if not self.field:
            return False
        found = lookup(self.field, event, context)
        return found is not _MISSING and found == self.value


class UserInRoles(BaseModel):
    type: Literal["user_in_roles"]
    roles: List[str] = Field(default_factory=list)

    def evaluate(self, event: AutomationEvent, context: Dict[str, Any]) -> bool:
        actor_roles = event.actor.get("roles") or []
        return any(role in actor_roles for role in self.roles)


class AnyOf(BaseModel):
    type: Literal["anyOf"]
    conditions: List["Condition"] = Field(default_factory=list)

    def evaluate(self, event: AutomationEvent, context: Dict[str, Any]) -> bool:
        # An empty anyOf is false
        return any(c.evaluate(event, context) for c in self.conditions)


class AllOf(BaseModel):
    type: Literal["allOf"]
    conditions: List["Condition"] = Field(default_factory=list)

    def evaluate(self, event: AutomationEvent, context: Dict[str, Any]) -> bool:
        # An empty allOf is true
        return all(c.evaluate(event, context) for c in self.conditions)


Condition = Annotated[Union[FieldEquals, UserInRoles, AnyOf, AllOf], Field(discriminator="type")]

AnyOf.model_rebuild()
AllOf.model_rebuild()


# ============================================================
# RULES & ACTIONS
# ============================================================

class Trigger(BaseModel):
    type: str


class Action(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str


class NotifyAction(BaseModel):
    type: Literal["notify"] = "notify"
    channels: List[str] = Field(default_factory=lambda: ["in-app"])
    recipients: List[Dict[str, Any]] = Field(default_factory=list)
    event_type: Optional[str] = None
    priority: str = "normal"
    data: Dict[str, Any] = Field(default_factory=dict)


class WebhookAction(BaseModel):
    type: Literal["call_webhook"] = "call_webhook"
    event: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class Rule(BaseModel):
    id: str
    name: str
    enabled: bool = True
    project_id: Optional[str] = None
    trigger: Trigger
    conditions: List[Condition] = Field(default_factory=list)
    actions: List[Action] = Field(default_factory=list)

    def matches(self, event: AutomationEvent, context: Dict[str, Any]) -> bool:
        if not self.enabled or self.trigger.type != event.type:
            return False
        return all(c.evaluate(event, context) for c in self.conditions)


def parse_rule(raw: Dict[str, Any]) -> Rule:
    try:
        return Rule.model_validate(raw)
    except ValidationError as e:
        raise BadRequest(f"Invalid automation rule: {e.errors()[0].get('msg', 'invalid')}")


DEFAULT_RULES = [
    parse_rule({
        "id": "rule-issue-created-notify-project",
        "name": "Notify project on high priority or admin-created issues",
        "enabled": True,
        "trigger": {"type": "issue.created"},
        "conditions": [
            {
                "type": "anyOf",
                "conditions": [
                    {"type": "field_equals", "field": "issue.priority", "value": "high"},
                    {"type": "user_in_roles", "roles": ["org_admin", "project_admin"]},
                ],
            },
        ],
        "actions": [
            {
                "type": "notify",
                "channels": ["in-app"],
                "recipients": [{"project_socket_room": "project:{project_id}"}],
                "data": {
                    "message": "New issue: {issue.title}",
                    "issue_id": "{issue.id}",
                    "project_id": "{project_id}",
                },
            },
        ],
    }),
]


def rule_from_row(row: AutomationRule) -> Rule:
    return parse_rule({
        "id": row.id,
        "name": row.name,
        "enabled": row.enabled,
        "project_id": row.project_id,
        "trigger": row.trigger or {},
        "conditions": row.conditions or [],
        "actions": row.actions or [],
    })


async def load_rules(db: AsyncSession, project_id: Optional[str] = None) -> List[Rule]:
    """Stored rules in scope (global + project); the starter rules when none are stored"""
    stmt = select(AutomationRule).order_by(AutomationRule.created_at)
    if project_id:
        stmt = stmt.where(or_(AutomationRule.project_id.is_(None), AutomationRule.project_id == project_id))
    else:
        stmt = stmt.where(AutomationRule.project_id.is_(None))
    result = await db.execute(stmt)

    rules = []
    for row in result.scalars().all():
        try:
            rules.append(rule_from_row(row))
        except BadRequest as e:
            logger.warning(f"Skipping invalid stored rule {row.id}: {e.detail}")
    return rules or list(DEFAULT_RULES)


# ============================================================
# ENGINE
# ============================================================

class RuleEngine:
    def __init__(
        self,
        rule_source: Callable[[AutomationEvent], Awaitable[List[Rule]]],
        dispatch: DispatchFn,
        publish: Optional[PublishFn] = None,
    ):
        self.rule_source = rule_source
        self.dispatch = dispatch
        self.publish = publish

    async def _execute_action(self, action: Action, event: AutomationEvent, context: Dict[str, Any]) -> Dict[str, Any]:
        raw = action.model_dump()
        if action.type == "notify":
            notify = NotifyAction.model_validate(raw)
            result = await self.dispatch(
                notify.event_type or event.type,
                interpolate(notify.recipients, event, context),
                notify.channels,
                interpolate(notify.data, event, context),
                notify.priority,
            )
            return {"type": action.type, "success": True, "result": result}

        if action.type == "call_webhook":
            if self.publish is None:
                return {"type": action.type, "success": False, "error": "webhooks_unavailable"}
            webhook = WebhookAction.model_validate(raw)
            result = await self.publish(
                webhook.event or event.type,
                interpolate(webhook.data, event, context) or event.data,
            )
            return {"type": action.type, "success": True, "result": result}

        return {"type": action.type, "success": False, "error": "unsupported_action_type"}

    async def execute_actions(self, rule: Rule, event: AutomationEvent, context: Dict[str, Any]) -> List[Dict[str, Any]]:
        outcomes = []
        for action in rule.actions:
            try:
                outcomes.append(await self._execute_action(action, event, context))
            except Exception as e:
                logger.warning(f"Action {action.type} failed in rule {rule.id}: {e}")
                outcomes.append({"type": action.type, "success": False, "error": str(e) or "action_failed"})
        return outcomes

    async def evaluate_and_execute(self, event: AutomationEvent, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        context = context or {"actor": event.actor}
        with tracer.start_as_current_span("automation.evaluate") as span:
            span.set_attribute("automation.event_type", event.type)
            rules = await self.rule_source(event)
            matched = [rule for rule in rules if rule.matches(event, context)]
            span.set_attribute("automation.matched", len(matched))

            details = []
            for rule in matched:
                details.append({
                    "rule_id": rule.id,
                    "rule_name": rule.name,
                    "actions": await self.execute_actions(rule, event, context),
                })

        summary = {"matched": len(matched), "executed": len(details), "details": details}
        logger.info(f"Automation {event.type}: matched={summary['matched']} executed={summary['executed']}")
        return summary


def static_rules(rules: List[Rule]):
    async def _source(event: AutomationEvent) -> List[Rule]:
        return rules
    return _source


async def run_automation(session_factory: async_sessionmaker, event: AutomationEvent, project_id: Optional[str] = None) -> Dict[str, Any]:
    """Full automation pass with its own sessions; used fire-and-forget after issue events"""
    from audit import record_audit
    from notification_dispatcher import NotificationDispatcher
    from webhooks import publish

    async def _rules(evt: AutomationEvent) -> List[Rule]:
        async with session_factory() as session:
            return await load_rules(session, project_id)

    async def _publish(name: str, payload: Dict[str, Any]):
        return await publish(session_factory, name, payload)

    dispatcher = NotificationDispatcher(session_factory)
    engine = RuleEngine(_rules, dispatcher.dispatch, _publish)
    summary = await engine.evaluate_and_execute(event)
    await record_audit(
        session_factory, "automation.run",
        actor_id=event.actor.get("id"), entity_type="event", entity_id=event.type,
        data={"matched": summary["matched"], "executed": summary["executed"]},
    )
    return summary
