import collections
import logging
import time

from ortools.sat.python import cp_model

from reports import class_hours_frame

logger = logging.getLogger(__name__)


class ScheduleError(Exception):
    """排课系统通用异常基类"""
    pass


class ScheduleOverloadError(ScheduleError):
    """课时超载异常"""
    def __init__(self, total_hours, max_hours=35):
        self.total_hours = total_hours
        self.max_hours = max_hours
        super().__init__(f"总课时({total_hours})超过容量({max_hours})")


class ConstraintTooTightError(ScheduleError):
    """约束过紧异常"""
    def __init__(self, message="排课约束太紧，无法找到可行解决方案"):
        super().__init__(message)


class InvalidConfigError(ScheduleError):
    """配置无效异常"""
    pass


class SlotOccupiedError(ScheduleError):
    """单元格已被占用或不在课表范围内"""
    pass


class FixedSlotError(ScheduleError):
    """固定课不可移动"""
    pass


class FailureAnalysis:
    """记录一次排课尝试中的失败信息，供诊断使用"""

    def __init__(self):
        self.total_attempts = 0
        self.successful_placements = 0
        self.failed_placements = 0
        self.backtrack_count = 0
        self.violations = []
        self.cache_hits = 0
        self.cache_misses = 0
        self.start_time = time.perf_counter()
        self.total_placement_time = 0.0
        self.quality_score = None

    def record_violation(self, class_id, subject_id, reason, available_slots=0, detail=""):
        self.violations.append({
            "class_id": class_id,
            "subject": subject_id,
            "reason": reason,
            "available_slots": available_slots,
            "detail": detail,
        })

    def reason_tally(self):
        return dict(collections.Counter(v["reason"] for v in self.violations))

    def top_failures(self, n=5):
        counter = collections.Counter((v["class_id"], v["subject"]) for v in self.violations)
        return [
            {"class_id": c, "subject": s, "count": count}
            for (c, s), count in counter.most_common(n)
        ]

    @property
    def average_placement_time(self):
        if not self.successful_placements:
            return 0.0
        return self.total_placement_time / self.successful_placements

    def to_dict(self):
        return {
            "total_attempts": self.total_attempts,
            "successful_placements": self.successful_placements,
            "failed_placements": self.failed_placements,
            "backtrack_count": self.backtrack_count,
            "violations": list(self.violations),
            "reason_tally": self.reason_tally(),
            "top_failures": self.top_failures(),
            "performance": {
                "elapsed": round(time.perf_counter() - self.start_time, 3),
                "total_placement_time": round(self.total_placement_time, 3),
                "average_placement_time": round(self.average_placement_time, 6),
                "cache_hits": self.cache_hits,
                "cache_misses": self.cache_misses,
            },
            "quality_score": self.quality_score,
        }


def _error(error_type, message, ref=None):
    return {"error_type": error_type, "message": message, "ref": ref}


def check_feasibility(data):
    """
    排课前的配置检查：缺失/重复 id、悬空引用、非法固定课。
    返回错误列表，为空表示可以开始排课。
    """
    errors = []

    # 1. id 缺失与重复
    for kind, items in (("subject", data.subjects), ("teacher", data.teachers), ("class", data.classes)):
        seen = set()
        for item in items:
            if item.id in (None, ""):
                errors.append(_error("missing_id", f"存在没有 id 的{kind}", kind))
                continue
            if item.id in seen:
                errors.append(_error("duplicate_id", f"{kind} id 重复: {item.id}", item.id))
            seen.add(item.id)

    subjects = data.subjects_by_id
    teachers = data.teachers_by_id
    classes = data.classes_by_id

    # 2. 数值检查
    for s in data.subjects:
        if s.weekly_hours < 0:
            errors.append(_error("invalid_hours", f"科目 {s.id} 周课时不能为负数", s.id))
    for t in data.teachers:
        if t.max_hours < 0:
            errors.append(_error("invalid_hours", f"老师 {t.id} 最大课时不能为负数", t.id))
    for class_id, hours in data.class_weekly_hours.items():
        if class_id not in classes:
            errors.append(_error("unknown_class", f"班级周课时设置引用了不存在的班级 {class_id}", class_id))
        elif hours < 0:
            errors.append(_error("invalid_hours", f"班级 {class_id} 周课时不能为负数", class_id))

    # 3. 老师引用
    for t in data.teachers:
        for s in t.subjects:
            if s not in subjects:
                errors.append(_error("unknown_subject", f"老师 {t.id} 的任教科目 {s} 不存在", t.id))
        for c in t.class_hours:
            if c not in classes:
                errors.append(_error("unknown_class", f"老师 {t.id} 的班级课时引用了不存在的班级 {c}", t.id))
        for other in t.mutual_exclusions:
            if other not in teachers:
                errors.append(_error("unknown_teacher", f"老师 {t.id} 的互斥老师 {other} 不存在", t.id))
        for day, _ in t.unavailable | t.available_times:
            if day not in data.day_index:
                errors.append(_error("unknown_day", f"老师 {t.id} 的时间设置引用了不存在的 {day}", t.id))

    for cu in data.classes:
        for s in cu.subject_hours:
            if s not in subjects:
                errors.append(_error("unknown_subject", f"班级 {cu.id} 的科目课时引用了不存在的科目 {s}", cu.id))

    # 4. 固定课
    occupied = set()
    teacher_cells = {}
    for f in data.fixed_classes:
        ref = f"{f.class_id}/{f.day}/{f.period}"
        if f.class_id not in classes:
            errors.append(_error("unknown_class", f"固定课引用了不存在的班级 {f.class_id}", ref))
        if f.subject not in subjects:
            errors.append(_error("unknown_subject", f"固定课引用了不存在的科目 {f.subject}", ref))
        for t in f.teachers:
            if t not in teachers:
                errors.append(_error("unknown_teacher", f"固定课引用了不存在的老师 {t}", ref))
        if f.day not in data.day_index:
            errors.append(_error("unknown_day", f"固定课引用了不存在的 {f.day}", ref))
        elif f.class_id in classes and not 1 <= f.period <= data.periods_on(f.class_id, f.day):
            errors.append(_error("period_out_of_range", f"固定课节次 {f.period} 超出范围", ref))
        key = (f.class_id, f.day, f.period)
        if key in occupied:
            errors.append(_error("fixed_class_conflict", f"同一格有多节固定课: {ref}", ref))
        occupied.add(key)
        for t in f.teachers:
            other = teacher_cells.setdefault((t, f.day, f.period), f.class_id)
            if other != f.class_id:
                errors.append(_error("fixed_class_teacher_conflict",
                                     f"老师 {t} 在 {f.day} 第{f.period}节 同时有 {other} 和 {f.class_id} 的固定课", ref))

    # 5. 约束引用
    for c in data.constraints:
        refs = [x for x in [c.main_teacher, c.teacher] + c.co_teachers + c.teachers if x]
        for t in refs:
            if t not in teachers:
                errors.append(_error("unknown_teacher", f"约束 {c.type} 引用了不存在的老师 {t}", c.type))
        for s in ([c.subject] if c.subject else []) + c.subjects:
            if s != "all" and s not in subjects:
                errors.append(_error("unknown_subject", f"约束 {c.type} 引用了不存在的科目 {s}", c.type))
        if c.type == "specific_teacher_co_teaching" and not c.main_teacher:
            errors.append(_error("missing_id", "协同授课约束缺少主讲老师", c.type))

    for e in errors:
        logger.warning(f"配置错误 [{e['error_type']}] {e['message']}")
    return errors


def _teacher_free(teacher, day, period):
    if (day, period) in teacher.unavailable:
        return False
    return not teacher.available_times or (day, period) in teacher.available_times


def check_class_capacity(data, time_limit=2.0):
    """
    用 CP-SAT 对每个班级单独做一次放宽检查：
    只保留"一格一课"、科目课时、老师可用时间三个条件，
    这样都排不下的班级一定无解。
    """
    issues = []
    fixed_by_class = collections.defaultdict(list)
    for f in data.fixed_classes:
        fixed_by_class[f.class_id].append(f)

    for cu in data.enabled_classes():
        fixed_cells = {(f.day, f.period) for f in fixed_by_class[cu.id]}
        fixed_count = collections.Counter(f.subject for f in fixed_by_class[cu.id])
        cells = [(d, p) for d in data.days for p in range(1, data.periods_on(cu.id, d) + 1)
                 if (d, p) not in fixed_cells]

        needs = {}
        for s in data.subjects:
            if data.is_fixed_only(s.id):
                continue
            need = data.target_hours(cu.id, s.id) - fixed_count.get(s.id, 0)
            if need > 0:
                needs[s.id] = need

        total = sum(needs.values())
        if total > len(cells):
            issues.append({
                "class_id": cu.id,
                "error_type": "schedule_overload",
                "message": f"{cu.name} 需要 {total} 节课，但只有 {len(cells)} 个空格",
            })
            continue

        model = cp_model.CpModel()
        x = {}
        blocked = []
        for s, need in needs.items():
            teachers = [data.teachers_by_id[t] for t in data.qualified_teachers(s) if t in data.teachers_by_id]
            own = []
            for (d, p) in cells:
                if any(_teacher_free(t, d, p) for t in teachers):
                    x[(s, d, p)] = model.NewBoolVar(f"x_{s}_{d}_{p}")
                    own.append(x[(s, d, p)])
            if len(own) < need:
                blocked.append(s)
            else:
                model.Add(sum(own) == need)
        if blocked:
            issues.append({
                "class_id": cu.id,
                "error_type": "class_capacity_infeasible",
                "message": f"{cu.name} 的科目 {', '.join(blocked)} 可用时段不足",
            })
            logger.warning(f"班级 {cu.id} 科目 {blocked} 可用时段不足")
            continue
        for (d, p) in cells:
            in_cell = [x[(s, d, p)] for s in needs if (s, d, p) in x]
            if in_cell:
                model.Add(sum(in_cell) <= 1)
        cap = data.class_weekly_cap(cu.id)
        if cap is not None and x:
            model.Add(sum(x.values()) <= max(0, cap - len(fixed_cells)))

        solver = cp_model.CpSolver()
        solver.parameters.max_time_in_seconds = time_limit
        status = solver.Solve(model)
        if status == cp_model.INFEASIBLE:
            issues.append({
                "class_id": cu.id,
                "error_type": "class_capacity_infeasible",
                "message": f"{cu.name} 在老师可用时间内无法容纳全部科目课时",
            })
            logger.warning(f"班级 {cu.id} 容量检查不可行")
    return issues


def analyze_failure(data, analysis=None, schedule=None):
    """分析排课失败的可能原因并生成建议"""
    suggestions = []
    error_type = "unknown"
    message = "在当前约束下无法排满课表"
    overload = None

    # 检查1：单个班级课时是否超过可用格子
    for cu in data.enabled_classes():
        cells = sum(data.periods_on(cu.id, d) for d in data.days)
        needed = sum(data.target_hours(cu.id, s.id) for s in data.subjects)
        if needed > cells:
            error_type = "schedule_overload"
            if overload is None or needed - cells > overload["needed"] - overload["capacity"]:
                overload = {"class_id": cu.id, "needed": needed, "capacity": cells}
            message = f"{cu.name} 总课时({needed})超过每周容量({cells})"
            suggestions.append(f"严重警告：{cu.name} 每周只有 {cells} 个格子，但安排了 {needed} 节课，至少减少 {needed - cells} 节。")

    # 检查2：老师资源是否枯竭
    demand = collections.defaultdict(int)
    for cu in data.enabled_classes():
        for s in data.subjects:
            if not s.is_exempt:
                demand[s.id] += data.target_hours(cu.id, s.id)
    for subject_id, needed in demand.items():
        teachers = data.qualified_teachers(subject_id)
        capacity = sum(data.teachers_by_id[t].max_hours for t in teachers)
        if not teachers and needed > 0:
            error_type = "no_qualified_teacher"
            message = f"科目 {subject_id} 没有可任教的老师"
            suggestions.append(f"科目「{subject_id}」需要 {needed} 节课，但没有老师能教，请添加老师。")
        elif needed > capacity:
            error_type = "teacher_overload"
            message = f"{subject_id}老师课时超限"
            suggestions.append(f"「{subject_id}」全校需求 {needed} 节，但老师最大容量只有 {capacity} 节。")

    # 检查3：老师分配课时超过个人上限
    for t in data.teachers:
        allocated = sum(t.class_hours.values())
        if allocated > t.max_hours:
            suggestions.append(f"老师 {t.name} 分配了 {allocated} 节，超过其上限 {t.max_hours} 节。")

    # 检查4：CP-SAT 容量检查
    for issue in check_class_capacity(data):
        if error_type == "unknown":
            error_type = issue["error_type"]
            message = issue["message"]
        suggestions.append(f"【容量冲突】{issue['message']}，请放宽老师的不可排时间或减少课时。")

    result = {
        "status": "error" if error_type in ("schedule_overload", "no_qualified_teacher") else "fail",
        "error_type": error_type,
        "message": message,
        "suggestions": suggestions,
    }
    if overload is not None:
        result["overload"] = overload

    # 检查5：搜索过程中的失败统计
    if analysis is not None:
        tally = analysis.reason_tally()
        result["top_failures"] = analysis.top_failures()
        result["reason_tally"] = tally
        result["backtrack_count"] = analysis.backtrack_count
        if tally.get("no_available_slots", 0) > tally.get("constraint_conflict", 0):
            suggestions.append("多数失败是因为没有空余时段，建议减少课时或增加每天节数。")
        elif tally:
            suggestions.append("多数失败是约束冲突导致，建议放宽老师的时间限制或课时上限。")
        for item in result["top_failures"][:3]:
            suggestions.append(f"{item['class_id']} 的「{item['subject']}」失败 {item['count']} 次。")

    if schedule is not None:
        frame = class_hours_frame(data, schedule)
        if not frame.empty:
            short = frame[frame["missing"] > 0]
            result["shortfalls"] = short.to_dict(orient="records")

    if error_type == "unknown":
        error_type = "constraint_too_tight"
        result["error_type"] = error_type
        suggestions.extend([
            "1. 检查是否有老师的不可排时间过多。",
            "2. 检查老师的周课时上限是否足够。",
            "3. 尝试开启放宽策略或强制填充。",
        ])

    return result


def raise_for_failure(diagnosis):
    """严格模式下把诊断结果转换成异常抛出"""
    overload = diagnosis.get("overload")
    if diagnosis["error_type"] == "schedule_overload" and overload:
        raise ScheduleOverloadError(overload["needed"], overload["capacity"])
    raise ConstraintTooTightError(diagnosis["message"])
