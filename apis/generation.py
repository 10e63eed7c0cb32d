from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from core.app_settings import AppSettings, get_app_settings
from core.auth import get_current_user
from core.db import DB
from core.generation_service import GenerationError, KIND_INVALID_IMAGE, generate_cover
from core.image_service import InvalidImage, decode_data_uri
from core.staging_service import StagingCache, get_staging_cache
from .base import success_response, error_response


router = APIRouter(tags=["封面生成"])


class GenerateCoverRequest(BaseModel):
    image: str = Field(..., min_length=1)
    provider: str = Field(default="", max_length=32)
    prompt: str = Field(default="", max_length=4000)


def generation_http_error(e: GenerationError) -> HTTPException:
    return HTTPException(
        status_code=e.http_status,
        detail=error_response(code=e.http_status * 100 + 1, message=e.detail, data={"kind": e.kind}),
    )


# 同步路由：请求会阻塞到服务商任务结束，由线程池承载
@router.post("/generate-cover", summary="生成封面")
def create_cover(
    payload: GenerateCoverRequest,
    current_user: dict = Depends(get_current_user),
    settings: AppSettings = Depends(get_app_settings),
    staging: StagingCache = Depends(get_staging_cache),
):
    try:
        image_bytes = decode_data_uri(payload.image)
    except InvalidImage as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response(code=40001, message=str(e), data={"kind": KIND_INVALID_IMAGE}),
        )

    session = DB.get_session()
    try:
        outcome = generate_cover(
            session,
            current_user["id"],
            image_bytes,
            settings,
            staging,
            prompt=payload.prompt,
            provider_name=payload.provider,
        )
    except GenerationError as e:
        raise generation_http_error(e)
    finally:
        session.close()
    return success_response(outcome.to_dict(), message="生成成功")
