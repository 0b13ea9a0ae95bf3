# routers/automation.py — Automation rules and manual evaluation
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auth import require_permission, CurrentUser
from automation_engine import (
    AutomationEvent, RuleEngine, load_rules, parse_rule, rule_from_row,
)
from database import get_db_session, get_session_factory
from errors import NotFound
from models import AutomationRule, Project
from notification_dispatcher import NotificationDispatcher
from webhooks import publish

router = APIRouter(prefix="/api/v1/automation", tags=["Automation"])


class RuleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    enabled: bool = True
    project_id: Optional[str] = None
    trigger: Dict[str, Any]
    conditions: List[Dict[str, Any]] = Field(default_factory=list)
    actions: List[Dict[str, Any]] = Field(default_factory=list)


class RuleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    enabled: Optional[bool] = None
    trigger: Optional[Dict[str, Any]] = None
    conditions: Optional[List[Dict[str, Any]]] = None
    actions: Optional[List[Dict[str, Any]]] = None


class EvaluateRequest(BaseModel):
    event: AutomationEvent
    project_id: Optional[str] = None
    dry_run: bool = False


def _rule_out(row: AutomationRule) -> dict:
    return {
        "id": row.id,
        "name": row.name,
        "enabled": row.enabled,
        "project_id": row.project_id,
        "trigger": row.trigger,
        "conditions": row.conditions,
        "actions": row.actions,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


@router.get("/rules")
async def list_rules(
    project_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_permission("settings.admin")),
):
    """Rules in effect for a scope (built-in starter rules when none are stored)"""
    rules = await load_rules(db, project_id)
    return [rule.model_dump() for rule in rules]


@router.post("/rules", status_code=201)
async def create_rule(
    data: RuleCreate,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_permission("settings.admin")),
):
    if data.project_id:
        result = await db.execute(select(Project.id).where(Project.id == data.project_id))
        if result.scalar_one_or_none() is None:
            raise NotFound("Project not found")

    row = AutomationRule(
        name=data.name,
        enabled=data.enabled,
        project_id=data.project_id,
        trigger=data.trigger,
        conditions=data.conditions,
        actions=data.actions,
        created_by=user.id,
    )
    # Validate the whole definition before persisting
    parse_rule({"id": "pending", **data.model_dump()})
    db.add(row)
    await db.commit()
    return _rule_out(row)


@router.patch("/rules/{rule_id}")
async def update_rule(
    rule_id: str,
    data: RuleUpdate,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_permission("settings.admin")),
):
    result = await db.execute(select(AutomationRule).where(AutomationRule.id == rule_id))
    row = result.scalar_one_or_none()
    if not row:
        raise NotFound("Rule not found")

    for key, value in data.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(row, key, value)
    rule_from_row(row)
    await db.commit()
    return _rule_out(row)


@router.post("/evaluate")
async def evaluate(
    data: EvaluateRequest,
    db: AsyncSession = Depends(get_db_session),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("settings.admin")),
):
    """Evaluate an event against the rules in scope and execute matching actions"""
    rules = await load_rules(db, data.project_id)

    async def _rules(event):
        return rules

    if data.dry_run:
        async def _dispatch(event_type, recipients, channels, payload, priority="normal"):
            return {"dry_run": True, "event_type": event_type, "recipients": recipients,
                    "channels": channels, "data": payload}

        async def _publish(name, payload):
            return {"dry_run": True, "event": name, "data": payload}
    else:
        _dispatch = NotificationDispatcher(session_factory).dispatch

        async def _publish(name, payload):
            return await publish(session_factory, name, payload)

    engine = RuleEngine(_rules, _dispatch, _publish)
    return await engine.evaluate_and_execute(data.event)
