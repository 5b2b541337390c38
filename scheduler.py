import logging
import random

from co_teaching import CoTeachingResolver
from constraint_checker import CRITICAL, TIER_NAMES, ConstraintChecker, parse_tier
from emergency_fill import emergency_fill
from error_handler import FailureAnalysis, InvalidConfigError, analyze_failure, check_feasibility, raise_for_failure
from fixed_classes import apply_fixed_classes
from models import Schedule, TeacherHoursTracker, TimetableData
from placement_engine import STATUS_CANCELLED, STATUS_SUCCESS, PlacementEngine
from reports import calculate_schedule_stats
from validator import QualityScorer, Validator

logger = logging.getLogger(__name__)

# 默认配置
DEFAULT_CONFIG = {
    "seed": None,
    "max_iterations": None,       # None 表示按待排课时自动估算
    "max_backtrack_steps": 200,
    "backtrack_window": 5,
    "relaxation_tiers": ["low", "high"],
    "allow_degraded": False,      # 最后再只保留 critical 约束排一次
    "force_fill": False,          # 排不满时紧急填充
    "allow_unqualified": False,   # 紧急填充允许非对口老师
    "consecutive_hard_limit": 2,  # 硬约束：连续上课超过该节数直接拒绝
    "max_consecutive": 2,         # 软约束：质量评分的连堂上限
    "consecutive_penalty": 10,
    "consecutive_overrides": {},
    "progress_interval": 25,
    "raise_on_fail": False,       # 排不满时抛出 ScheduleOverloadError / ConstraintTooTightError
    # 自动生成
    "max_attempts": 10,
    "target_fill_rate": 100.0,
    "stop_on_target": True,
}


def merge_config(config=None):
    merged = dict(DEFAULT_CONFIG)
    merged.update(config or {})
    return merged


def load_data(data):
    if isinstance(data, TimetableData):
        return data
    return TimetableData.from_dict(data)


def _error_result(message, errors, error_type="invalid_config"):
    return {
        "status": "error",
        "error_type": error_type,
        "message": message,
        "errors": errors,
        "suggestions": [e["message"] for e in errors],
    }


def run_scheduler(data, config=None, cancel_token=None, on_progress=None):
    """
    完成一次排课：
    配置检查 -> 固定课 -> 协同授课 -> 按优先级搜索 (逐级放宽) -> 紧急填充 (可选) -> 校验与评分
    """
    cfg = merge_config(config)

    # 1. 载入与配置检查
    try:
        data = load_data(data)
    except InvalidConfigError as e:
        logger.error(f"排课数据无效: {e}")
        return _error_result(str(e), [{"error_type": "invalid_config", "message": str(e), "ref": None}])

    errors = check_feasibility(data)
    if errors:
        return _error_result(f"配置中有 {len(errors)} 处错误，无法开始排课", errors)

    rng = random.Random(cfg["seed"])
    schedule = Schedule(data)
    tracker = TeacherHoursTracker(data)
    checker = ConstraintChecker(data, schedule, tracker, cfg["consecutive_hard_limit"])
    analysis = FailureAnalysis()

    # 2. 固定课与协同授课
    fixed_count, rejected = apply_fixed_classes(data, schedule, tracker)
    co_teaching = CoTeachingResolver(data, schedule, tracker, checker, rng).resolve()

    # 3. 按优先级搜索，失败时逐级放宽
    tiers = [parse_tier(t) for t in cfg["relaxation_tiers"]]
    if cfg["allow_degraded"] and CRITICAL not in tiers:
        tiers.append(CRITICAL)
    engine = PlacementEngine(data, schedule, tracker, checker, config=cfg, rng=rng, analysis=analysis,
                             cancel_token=cancel_token, on_progress=on_progress)
    status = "fail"
    tier = tiers[0] if tiers else None
    for tier in tiers:
        status = engine.run(tier)
        if status in (STATUS_SUCCESS, STATUS_CANCELLED):
            break
        logger.warning(f"约束等级 {TIER_NAMES[tier]} 下未能排满，尝试放宽")

    if status == STATUS_CANCELLED:
        return {"status": "cancelled", "message": "排课已取消"}

    # 4. 紧急填充
    emergency = 0
    if status != STATUS_SUCCESS and cfg["force_fill"]:
        emergency = emergency_fill(data, schedule, tracker, cfg["allow_unqualified"])

    # 5. 校验、评分与统计
    validation = Validator(data, schedule, tracker, cfg["consecutive_hard_limit"]).validate()
    quality = QualityScorer(cfg["max_consecutive"], cfg["consecutive_penalty"],
                            cfg["consecutive_overrides"]).score(data, schedule)
    analysis.quality_score = quality["total_score"]
    stats = calculate_schedule_stats(schedule, tracker)

    result = {
        "status": "success",
        "message": "排课成功",
        "schedule": schedule,
        "tracker": tracker,
        "stats": stats,
        "failure_analysis": analysis,
        "quality": quality,
        "validation": validation,
        "fixed": {"applied": fixed_count, "rejected": rejected},
        "co_teaching": co_teaching,
        "tier": TIER_NAMES.get(tier),
        "emergency_filled": emergency,
        "errors": [],
        "warnings": [f"固定课被跳过: {r['class_id']} {r['day']} 第{r['period']}节 ({r['reason']})" for r in rejected],
        "suggestions": [],
    }

    if status != STATUS_SUCCESS:
        diagnosis = analyze_failure(data, analysis, schedule)
        if cfg["raise_on_fail"]:
            raise_for_failure(diagnosis)
        result.update({
            "status": "fail",
            "error_type": diagnosis["error_type"],
            "message": f"在当前约束下无法排满课表: {diagnosis['message']}",
            "suggestions": diagnosis["suggestions"],
            "diagnosis": diagnosis,
        })
    elif not validation["is_valid"]:
        # 搜索完成但存在 critical 问题，不能当作成功
        critical = [v for v in validation["violations"] if v["severity"] == "critical"]
        logger.warning(f"排课完成但校验未通过: {len(critical)} 处严重问题")
        result.update({
            "status": "rejected",
            "error_type": "validation_rejected",
            "message": f"课表校验未通过，存在 {len(critical)} 处严重问题",
            "errors": critical,
            "suggestions": [v["message"] for v in critical],
        })

    logger.info(f"排课完成: {result['status']}, 填充率 {stats['fill_rate']}%, 质量分 {quality['total_score']}")
    return result


def result_to_wire(result):
    """把结果里的对象转换成可 JSON 序列化的字典"""
    wire = {}
    for key, value in result.items():
        if key == "schedule":
            wire[key] = value.to_wire()
        elif key == "tracker":
            wire[key] = value.to_dict()
        elif key == "failure_analysis":
            wire[key] = value.to_dict()
        else:
            wire[key] = value
    return wire
