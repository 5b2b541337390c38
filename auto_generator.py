import logging
import threading

from error_handler import InvalidConfigError, ScheduleError
from scheduler import load_data, merge_config, run_scheduler

logger = logging.getLogger(__name__)


def _rank(result):
    return result["validation"]["is_valid"], result["stats"]["fill_rate"]


class CancellationToken:
    """由调用方持有，可以在另一个线程里调用 cancel() 停止自动排课"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    def reset(self):
        self._event.clear()

    @property
    def cancelled(self):
        return self._event.is_set()


def auto_generate(data, config=None, cancel_token=None, on_progress=None):
    """
    重复排课若干次，保留填充率最高的结果。
    达到目标填充率 (或 100%、或全部课时排完) 时提前结束；每次尝试之间检查取消标记。
    """
    cfg = merge_config(config)
    max_attempts = int(cfg["max_attempts"])
    target = float(cfg["target_fill_rate"])
    seed = cfg["seed"]

    try:
        data = load_data(data)
    except InvalidConfigError as e:
        logger.error(f"排课数据无效: {e}")
        return {"status": "error", "error_type": "invalid_config", "message": str(e),
                "errors": [], "suggestions": [], "attempts": 0}

    best = None
    attempts = 0
    attempt_log = []
    for attempt in range(1, max_attempts + 1):
        if cancel_token is not None and cancel_token.cancelled:
            logger.info(f"自动排课在第 {attempt} 次尝试前被取消")
            break

        attempt_cfg = dict(cfg)
        attempt_cfg["seed"] = seed * 1000 + attempt if seed is not None else None
        try:
            result = run_scheduler(data, attempt_cfg, cancel_token)
        except ScheduleError as e:
            logger.error(f"第 {attempt} 次尝试出错: {e}", exc_info=True)
            attempt_log.append({"attempt": attempt, "status": "error", "fill_rate": 0.0})
            continue

        if result["status"] == "error":
            # 配置错误重试也没用
            result["attempts"] = attempts
            return result
        if result["status"] == "cancelled":
            break

        attempts += 1
        fill_rate = result["stats"]["fill_rate"]
        attempt_log.append({"attempt": attempt, "status": result["status"], "fill_rate": fill_rate})
        # 校验未通过的结果排在所有通过的结果之后
        if best is None or _rank(result) > _rank(best):
            best = result
        logger.info(f"第 {attempt}/{max_attempts} 次尝试: 填充率 {fill_rate}%, 最佳 {best['stats']['fill_rate']}%")

        if on_progress is not None:
            on_progress({
                "stage": "auto",
                "attempt": attempt,
                "max_attempts": max_attempts,
                "fill_rate": fill_rate,
                "best_fill_rate": best["stats"]["fill_rate"],
            })

        if result["status"] == "rejected":
            continue
        if fill_rate >= 100 or result["status"] == "success":
            break
        if cfg["stop_on_target"] and fill_rate >= target:
            break

    cancelled = cancel_token is not None and cancel_token.cancelled
    if best is None:
        return {
            "status": "cancelled" if cancelled else "fail",
            "message": "自动排课已取消" if cancelled else "自动排课没有得到任何结果",
            "attempts": attempts,
            "best_fill_rate": 0.0,
            "cancelled": cancelled,
            "history": attempt_log,
        }

    output = dict(best)
    output.update({
        "attempts": attempts,
        "best_fill_rate": best["stats"]["fill_rate"],
        "cancelled": cancelled,
        "history": attempt_log,
    })
    return output
