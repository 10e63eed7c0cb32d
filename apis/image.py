from fastapi import APIRouter, Depends, HTTPException, Response, status

from core.staging_service import (
    StagedArtifactNotFound,
    StagingCache,
    StagingError,
    content_type_for,
    get_staging_cache,
)
from .base import error_response


router = APIRouter(prefix="/image", tags=["暂存图片"])


# 服务商匿名拉取，不做鉴权
@router.get("/{artifact_id}", summary="读取暂存图片")
def get_staged_image(artifact_id: str, staging: StagingCache = Depends(get_staging_cache)):
    try:
        data = staging.get(artifact_id)
    except StagedArtifactNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_response(code=40401, message="Image not found or expired"),
        )
    except StagingError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=error_response(code=50001, message=str(e)),
        )
    return Response(content=data, media_type=content_type_for(artifact_id))
