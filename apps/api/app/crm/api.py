from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.database import get_db
from app.crm.schemas import (
    LeadAssignResponsibleRequest,
    LeadMarkLostRequest,
    LeadMarkSoldRequest,
    LeadRead,
    LeadStageChangeRequest,
    LeadUpdate,
    TaskRead,
)
from app.crm.service import ActorUser, LeadService

leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
lead_service = LeadService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _error_message(detail: Any) -> str:
    if isinstance(detail, dict) and "message" in detail:
        return str(detail["message"])
    return str(detail)


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    tenant_id = auth_user.tenant_id or getattr(request.state, "tenant_hint", None)

    normalized_roles = {str(role).lower() for role in auth_user.roles}
    is_super_admin = "admin" in normalized_roles or "system.admin" in normalized_roles

    return ActorUser(
        user_id=auth_user.sub,
        tenant_id=tenant_id,
        permissions=set(auth_user.roles),
        is_super_admin=is_super_admin,
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.get_lead(db, user, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_get_failed",
            message=_error_message(exc.detail),
            details=exc.detail,
        )


@leads_router.patch("/leads/{lead_id}", response_model=LeadRead)
def update_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.update")
        return lead_service.update_lead(db, user, lead_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_update_failed",
            message=_error_message(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/{lead_id}/stage", response_model=LeadRead)
def change_lead_stage(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadStageChangeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.update")
        return lead_service.change_stage(db, user, lead_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_stage_change_failed",
            message=_error_message(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/{lead_id}/responsible", response_model=LeadRead)
def assign_lead_responsible(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadAssignResponsibleRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.update")
        return lead_service.assign_responsible(db, user, lead_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_assign_failed",
            message=_error_message(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/{lead_id}/mark-sold", response_model=LeadRead)
def mark_lead_sold(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadMarkSoldRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.update")
        return lead_service.mark_sold(
            db,
            user,
            lead_id,
            dto.sold_value,
            dto.sale_notes,
            skip_automations=dto.skip_automations,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_mark_sold_failed",
            message=_error_message(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/{lead_id}/mark-lost", response_model=LeadRead)
def mark_lead_lost(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadMarkLostRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.update")
        return lead_service.mark_lost(
            db,
            user,
            lead_id,
            dto.loss_reason_category,
            dto.loss_reason_notes,
            skip_automations=dto.skip_automations,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_mark_lost_failed",
            message=_error_message(exc.detail),
            details=exc.detail,
        )


@leads_router.get("/leads/{lead_id}/tasks", response_model=list[TaskRead])
def list_lead_tasks(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TaskRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.list_tasks(db, user, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_tasks_failed",
            message=_error_message(exc.detail),
            details=exc.detail,
        )
