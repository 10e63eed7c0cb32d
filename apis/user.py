from fastapi import APIRouter, Depends, Query

from core.app_settings import AppSettings, get_app_settings
from core.auth import get_current_user
from core.db import DB
from core.generation_service import list_generations
from core.ledger_service import get_account_status
from .base import success_response


router = APIRouter(tags=["用户"])


@router.get("/user/limits", summary="获取剩余生成次数")
def get_limits(
    current_user: dict = Depends(get_current_user),
    settings: AppSettings = Depends(get_app_settings),
):
    session = DB.get_session()
    try:
        summary = get_account_status(session, current_user["id"], daily_free=settings.generation.daily_free)
    finally:
        session.close()
    return success_response({
        "can_generate": summary["can_generate"],
        "remaining": summary["remaining"],
    })


@router.get("/auth/me", summary="获取当前账户信息")
def get_me(
    current_user: dict = Depends(get_current_user),
    settings: AppSettings = Depends(get_app_settings),
):
    session = DB.get_session()
    try:
        summary = get_account_status(session, current_user["id"], daily_free=settings.generation.daily_free)
    finally:
        session.close()
    return success_response({
        **current_user,
        "can_generate": summary["can_generate"],
        "generations_remaining": summary["remaining"],
        "free_generations_left": summary["free_generations_left"],
        "paid_generations": summary["paid_generations"],
    })


@router.get("/user/generations", summary="获取生成记录")
def get_generations(
    limit: int = Query(20, ge=1, le=100),
    current_user: dict = Depends(get_current_user),
):
    session = DB.get_session()
    try:
        return success_response(list_generations(session, current_user["id"], limit=limit))
    finally:
        session.close()
