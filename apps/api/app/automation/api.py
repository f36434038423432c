from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from app.automation.prompts import prompt_broker
from app.automation.schemas import (
    AutomationRuleCreate,
    AutomationRuleRead,
    AutomationRuleUpdate,
    LossAnswer,
    PendingPromptRead,
    PromptResponseRequest,
    SaleAnswer,
    TaskScheduleAnswer,
)
from app.automation.service import AutomationRuleService
from app.core.database import get_db
from app.crm.api import error_response, get_current_user, require_permission
from app.crm.service import ActorUser

rules_router = APIRouter(prefix="/api/automations", tags=["automations.rules"])
prompts_router = APIRouter(prefix="/api/automations", tags=["automations.prompts"])
rule_service = AutomationRuleService()

ANSWER_MODELS: dict[str, type[BaseModel]] = {
    "create_task": TaskScheduleAnswer,
    "mark_sold": SaleAnswer,
    "mark_lost": LossAnswer,
}


def _error_message(detail: object) -> str:
    if isinstance(detail, dict) and "message" in detail:
        return str(detail["message"])
    return str(detail)


@rules_router.get("/rules", response_model=list[AutomationRuleRead])
def list_rules(
    request: Request,
    event_type: str | None = None,
    active: bool | None = None,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AutomationRuleRead] | JSONResponse:
    try:
        require_permission(user, "crm.automations.read")
        return rule_service.list_rules(db, user, event_type=event_type, active=active)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_rules_list_failed",
            message=_error_message(exc.detail),
            details=exc.detail,
        )


@rules_router.get("/rules/{rule_id}", response_model=AutomationRuleRead)
def get_rule(
    request: Request,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRuleRead | JSONResponse:
    try:
        require_permission(user, "crm.automations.read")
        return rule_service.get_rule(db, user, rule_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_rule_get_failed",
            message=_error_message(exc.detail),
            details=exc.detail,
        )


@rules_router.post("/rules", response_model=AutomationRuleRead, status_code=status.HTTP_201_CREATED)
def create_rule(
    request: Request,
    dto: AutomationRuleCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRuleRead | JSONResponse:
    try:
        require_permission(user, "crm.automations.manage")
        return rule_service.create_rule(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_rule_create_failed",
            message=_error_message(exc.detail),
            details=exc.detail,
        )


@rules_router.patch("/rules/{rule_id}", response_model=AutomationRuleRead)
def update_rule(
    request: Request,
    rule_id: uuid.UUID,
    dto: AutomationRuleUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRuleRead | JSONResponse:
    try:
        require_permission(user, "crm.automations.manage")
        return rule_service.update_rule(db, user, rule_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_rule_update_failed",
            message=_error_message(exc.detail),
            details=exc.detail,
        )


@rules_router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_rule(
    request: Request,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.automations.manage")
        rule_service.delete_rule(db, user, rule_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_rule_delete_failed",
            message=_error_message(exc.detail),
            details=exc.detail,
        )


@prompts_router.get("/prompts", response_model=list[PendingPromptRead])
def list_pending_prompts(user: ActorUser = Depends(get_current_user)) -> list[PendingPromptRead]:
    return [
        PendingPromptRead(id=prompt.id, kind=prompt.kind, payload=prompt.payload, created_at=prompt.created_at)
        for prompt in prompt_broker.list_for_actor(user.user_id)
    ]


@prompts_router.post("/prompts/{prompt_id}/respond", status_code=status.HTTP_204_NO_CONTENT)
def respond_to_prompt(
    request: Request,
    prompt_id: str,
    dto: PromptResponseRequest,
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        prompt = prompt_broker.get(prompt_id)
        if prompt is None or prompt.actor_user_id != user.user_id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="prompt not found")

        answer_model = ANSWER_MODELS[prompt.kind]
        try:
            answer = answer_model.model_validate(dto.answer)
        except ValidationError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail={"message": "invalid prompt answer", "errors": exc.errors(include_url=False)},
            ) from exc

        if not prompt_broker.respond(prompt_id, user.user_id, answer.model_dump(mode="json")):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="prompt not found")
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_prompt_respond_failed",
            message=_error_message(exc.detail),
            details=exc.detail,
        )


@prompts_router.post("/prompts/{prompt_id}/cancel", status_code=status.HTTP_204_NO_CONTENT)
def cancel_prompt(
    request: Request,
    prompt_id: str,
    user: ActorUser = Depends(get_current_user),
) -> Response:
    if not prompt_broker.cancel(prompt_id, user.user_id):
        return error_response(
            request,
            status_code=status.HTTP_404_NOT_FOUND,
            code="automation_prompt_cancel_failed",
            message="prompt not found",
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
