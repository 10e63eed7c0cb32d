"""
进程启动时从 cfg 构建一次的只读配置。

额度、生图、支付等服务不直接读取全局 cfg，而是显式接收 AppSettings，
测试中可以直接构造任意组合。
"""

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, Optional, Tuple

from core.config import cfg


@dataclass(frozen=True)
class Package:
    type: str
    name: str
    count: int
    price_usd: float
    price_rub: float
    popular: bool = False

    def price_for(self, currency: str) -> float:
        return self.price_rub if currency == "RUB" else self.price_usd

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "name": self.name,
            "count": self.count,
            "price_usd": self.price_usd,
            "price_rub": self.price_rub,
            "popular": self.popular,
        }


DEFAULT_PACKAGES: Tuple[Package, ...] = (
    Package(type="pack1", name="Стартовый", count=10, price_usd=2.99, price_rub=249, popular=False),
    Package(type="pack2", name="Базовый", count=30, price_usd=7.99, price_rub=599, popular=True),
    Package(type="pack3", name="Профессиональный", count=100, price_usd=19.99, price_rub=1499, popular=False),
)


@dataclass(frozen=True)
class Catalog:
    packages: Tuple[Package, ...] = DEFAULT_PACKAGES

    def find(self, package_type: str) -> Optional[Package]:
        key = str(package_type or "").strip()
        for pkg in self.packages:
            if pkg.type == key:
                return pkg
        return None

    def to_list(self):
        return [pkg.to_dict() for pkg in self.packages]


@dataclass(frozen=True)
class GenerationSettings:
    poll_interval_seconds: float = 5.0
    max_poll_attempts: int = 120
    staged_ttl_seconds: int = 30 * 60
    max_image_bytes: int = 10 * 1024 * 1024
    default_provider: str = "nanobanana"
    daily_free: int = 1


@dataclass(frozen=True)
class ProviderSettings:
    name: str
    api_key: str = ""
    base_url: str = ""
    model: str = ""
    output_format: str = ""
    image_size: str = ""
    timeout_seconds: float = 30.0
    poll_timeout_seconds: float = 10.0


@dataclass(frozen=True)
class PaymentSettings:
    channel: str = "lava"
    shop_id: str = ""
    secret_key: str = ""
    api_url: str = "https://api.lava.top"
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class StorageSettings:
    base_url: str = "http://localhost:8080"
    storage_dir: str = "storage"
    staging_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"


@dataclass(frozen=True)
class AppSettings:
    generation: GenerationSettings = field(default_factory=GenerationSettings)
    providers: Dict[str, ProviderSettings] = field(default_factory=dict)
    payment: PaymentSettings = field(default_factory=PaymentSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    catalog: Catalog = field(default_factory=Catalog)

    def provider(self, name: str) -> Optional[ProviderSettings]:
        return self.providers.get(str(name or "").strip().lower())


def _safe_int(value: Any, default: int, min_value: int = 0) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        parsed = default
    return max(min_value, parsed)


def _safe_float(value: Any, default: float, min_value: float = 0.0) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        parsed = default
    return max(min_value, parsed)


def _text(key: str, default: str = "") -> str:
    return str(cfg.get(key, default) or default).strip()


def _load_catalog() -> Catalog:
    raw = cfg.get("packages", None)
    if not isinstance(raw, list) or not raw:
        return Catalog()
    packages = []
    for item in raw:
        if not isinstance(item, dict) or not item.get("type"):
            continue
        packages.append(
            Package(
                type=str(item["type"]).strip(),
                name=str(item.get("name") or item["type"]),
                count=_safe_int(item.get("count"), 0, min_value=1),
                price_usd=_safe_float(item.get("price_usd"), 0.0),
                price_rub=_safe_float(item.get("price_rub"), 0.0),
                popular=bool(item.get("popular", False)),
            )
        )
    return Catalog(packages=tuple(packages)) if packages else Catalog()


def build_app_settings() -> AppSettings:
    generation = GenerationSettings(
        poll_interval_seconds=_safe_float(cfg.get("generation.poll_interval_seconds", 5), 5.0),
        max_poll_attempts=_safe_int(cfg.get("generation.max_poll_attempts", 120), 120, min_value=1),
        staged_ttl_seconds=_safe_int(cfg.get("staging.ttl_seconds", 1800), 1800, min_value=1),
        max_image_bytes=_safe_int(cfg.get("generation.max_image_bytes", 10 * 1024 * 1024), 10 * 1024 * 1024, min_value=1),
        default_provider=_text("generation.default_provider", "nanobanana").lower(),
        daily_free=_safe_int(cfg.get("credits.daily_free", 1), 1),
    )
    providers = {
        "nanobanana": ProviderSettings(
            name="nanobanana",
            api_key=_text("providers.nanobanana.api_key") or _text("nano_banana_api_key"),
            base_url=_text("providers.nanobanana.base_url", "https://api.kie.ai"),
            model=_text("providers.nanobanana.model", "google/nano-banana-edit"),
            output_format=_text("providers.nanobanana.output_format", "png"),
            image_size=_text("providers.nanobanana.image_size", "16:9"),
            timeout_seconds=_safe_float(cfg.get("providers.nanobanana.timeout_seconds", 30), 30.0),
            poll_timeout_seconds=_safe_float(cfg.get("providers.nanobanana.poll_timeout_seconds", 10), 10.0),
        ),
        "openai": ProviderSettings(
            name="openai",
            api_key=_text("providers.openai.api_key") or _text("openai_api_key"),
            base_url=_text("providers.openai.base_url", "https://api.openai.com/v1"),
            model=_text("providers.openai.model", "dall-e-3"),
            image_size=_text("providers.openai.size", "1024x1024"),
            timeout_seconds=_safe_float(cfg.get("providers.openai.timeout_seconds", 60), 60.0),
        ),
    }
    payment = PaymentSettings(
        channel=_text("payment.channel", "lava").lower(),
        shop_id=_text("payment.lava.shop_id"),
        secret_key=_text("payment.lava.secret_key"),
        api_url=_text("payment.lava.api_url", "https://api.lava.top"),
        timeout_seconds=_safe_float(cfg.get("payment.lava.timeout_seconds", 30), 30.0),
    )
    storage = StorageSettings(
        base_url=_text("server.base_url", "http://localhost:8080").rstrip("/"),
        storage_dir=_text("storage.dir", "storage"),
        staging_backend=_text("staging.backend", "memory").lower(),
        redis_url=_text("staging.redis_url", "redis://localhost:6379/0"),
    )
    return AppSettings(
        generation=generation,
        providers=providers,
        payment=payment,
        storage=storage,
        catalog=_load_catalog(),
    )


@lru_cache()
def get_app_settings() -> AppSettings:
    return build_app_settings()
