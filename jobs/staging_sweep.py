import time
from threading import Thread

from core.config import cfg
from core.log import get_logger
from core.events import log_event, E
from core.staging_service import StagingCache, get_staging_cache

logger = get_logger(__name__)


def sweep_once(staging: StagingCache) -> int:
    try:
        return staging.sweep()
    except Exception:
        logger.exception("暂存区过期扫描异常")
        return 0


def _worker_loop(staging: StagingCache, interval: int):
    while True:
        sweep_once(staging)
        time.sleep(interval)


def start_staging_sweep_worker(staging: StagingCache = None) -> Thread:
    staging = staging or get_staging_cache()
    interval = max(10, int(cfg.get("staging.sweep_interval_seconds", 60) or 60))
    log_event(logger, E.SYSTEM_JOB_START, job="staging_sweep", interval=interval)
    t = Thread(target=_worker_loop, args=(staging, interval), daemon=True)
    t.start()
    return t
