"""
图片解析、校验和结果落盘服务

- 上传图片：解析 data URI，用 Pillow 校验并识别格式
- 生成结果：从服务商 URL 下载到 storage/{account_id}/，对外暴露为 {base_url}/storage/...
"""

import base64
import binascii
import time
import uuid
from io import BytesIO
from pathlib import Path
from typing import Optional, Tuple

import requests
from PIL import Image, UnidentifiedImageError

from core.log import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_IMAGE_BYTES = 10 * 1024 * 1024

_PIL_FORMATS = {
    "PNG": "png",
    "JPEG": "jpeg",
    "WEBP": "webp",
}


class InvalidImage(ValueError):
    pass


def is_safe_path_segment(value: str) -> bool:
    """账户 ID 会作为目录名使用，不允许路径分隔符和 . / .."""
    text = str(value or "")
    if not text or text in (".", ".."):
        return False
    return not any(ch in text for ch in ("/", "\\", "\x00"))


def decode_data_uri(payload: str) -> bytes:
    """
    解析前端传来的图片数据

    支持 "data:image/png;base64,xxx" 以及去掉前缀的纯 base64。
    """
    text = str(payload or "").strip()
    if not text:
        raise InvalidImage("image is required")
    if text.startswith("data:"):
        if "," not in text:
            raise InvalidImage("invalid image format")
        text = text.split(",", 1)[1]
    elif "," in text:
        text = text.split(",", 1)[1]
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidImage("failed to decode image") from e


def inspect_image(data: bytes, max_bytes: int = DEFAULT_MAX_IMAGE_BYTES) -> Tuple[str, Tuple[int, int]]:
    """校验图片并返回 (格式, 尺寸)，格式为 png / jpeg / webp"""
    if not data:
        raise InvalidImage("image is empty")
    if len(data) > max_bytes:
        raise InvalidImage(f"image too large: {len(data)} bytes (max {max_bytes})")
    try:
        with Image.open(BytesIO(data)) as img:
            img.verify()
            fmt = str(img.format or "").upper()
            size = img.size
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError) as e:
        raise InvalidImage(f"invalid image data: {e}") from e
    kind = _PIL_FORMATS.get(fmt)
    if not kind:
        raise InvalidImage(f"unsupported image format: {fmt or 'unknown'}")
    return kind, size


class ImageService:
    """生成结果落盘（按账户隔离目录）"""

    def __init__(self, account_id: str, storage_dir: str = "storage", base_url: str = ""):
        self.account_id = account_id
        self.storage_root = Path(storage_dir)
        self.owner_dir = self.storage_root / account_id
        self.base_url = str(base_url or "").rstrip("/")

    def public_url(self, local_path: Path) -> str:
        relative = local_path.relative_to(self.storage_root).as_posix()
        return f"{self.base_url}/storage/{relative}"

    def download_result_image(self, url: str, timeout: float = 30) -> Optional[Path]:
        """
        下载生成结果到账户目录

        Returns:
            本地文件路径，失败返回 None（调用方回退到服务商 URL）
        """
        if not is_safe_path_segment(self.account_id):
            logger.warning("账户 ID 不能作为目录名: %r", self.account_id)
            return None
        try:
            resp = requests.get(url, headers={"User-Agent": "Mozilla/5.0"}, timeout=timeout)
            resp.raise_for_status()
            if not resp.content:
                raise ValueError("empty response body")
            self.owner_dir.mkdir(parents=True, exist_ok=True)
            local_path = self.owner_dir / f"{uuid.uuid4()}_{int(time.time())}.png"
            with open(local_path, "wb") as f:
                f.write(resp.content)
            logger.info("生成结果已保存: %s", local_path)
            return local_path
        except (requests.RequestException, OSError, ValueError) as e:
            logger.warning("下载生成结果失败 %s: %s", url, e)
            return None

    def persist_result(self, url: str, timeout: float = 30) -> Optional[str]:
        local_path = self.download_result_image(url, timeout=timeout)
        if local_path is None:
            return None
        return self.public_url(local_path)
