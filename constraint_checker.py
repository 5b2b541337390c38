import logging

from models import CONSTRAINT_DAILY_SUBJECT_ONCE, CONSTRAINT_SAME_CLASS_DAILY_LIMIT

logger = logging.getLogger(__name__)

# 约束等级，数值越小越重要；evaluate 的 tier 参数是"最多检查到哪一级"
CRITICAL = 0
HIGH = 1
MEDIUM = 2
LOW = 3

TIER_NAMES = {CRITICAL: "critical", HIGH: "high", MEDIUM: "medium", LOW: "low"}
TIER_BY_NAME = {name: level for level, name in TIER_NAMES.items()}

# 老师同一天最多连续上 2 节
DEFAULT_CONSECUTIVE_LIMIT = 2


def parse_tier(value):
    if isinstance(value, int):
        return value
    try:
        return TIER_BY_NAME[str(value).lower()]
    except KeyError:
        raise ValueError(f"未知的约束等级: {value}")


class Decision:
    def __init__(self, allowed=True, rule=None, detail="", tier=None):
        self.allowed = allowed
        self.rule = rule
        self.detail = detail
        self.tier = tier

    def __bool__(self):
        return self.allowed

    def to_dict(self):
        return {
            "allowed": self.allowed,
            "rule": self.rule,
            "detail": self.detail,
            "tier": TIER_NAMES.get(self.tier),
        }

    def __repr__(self):
        if self.allowed:
            return "Decision(allowed)"
        return f"Decision(denied, {self.rule}: {self.detail})"


ALLOWED = Decision()


class ConstraintChecker:
    """
    判断某门课能否放进 (班级, 星期, 节次)。
    只读课表与课时统计，不做任何修改；按等级顺序检查，遇到第一条不满足的规则即返回。
    """

    def __init__(self, data, schedule, tracker, consecutive_limit=DEFAULT_CONSECUTIVE_LIMIT):
        self.data = data
        self.schedule = schedule
        self.tracker = tracker
        self.consecutive_limit = consecutive_limit
        self._tiers = [
            (CRITICAL, [self._check_cell, self._check_teacher_conflict,
                        self._check_teacher_unavailable, self._check_mutual_exclusion]),
            (HIGH, [self._check_consecutive, self._check_teacher_hours, self._check_class_hours,
                    self._check_subject_hours, self._check_space_limit]),
            (MEDIUM, [self._check_block_period, self._check_sequential_grade,
                      self._check_available_times, self._check_daily_subject_once,
                      self._check_same_class_daily_limit]),
            (LOW, [self._check_fixed_only, self._check_optional_daily_subject_once,
                   self._check_optional_same_class_daily_limit]),
        ]

    def is_block(self, subject_id, teachers, tier=LOW):
        """放宽到 MEDIUM 以下时，连堂课按单节处理"""
        return tier >= MEDIUM and self.data.is_block_lesson(subject_id, teachers)

    def evaluate(self, class_id, day, period, subject_id, teachers, tier=LOW, block=None):
        teachers = tuple(teachers)
        if block is None:
            block = self.is_block(subject_id, teachers, tier)
        cells = [period, period + 1] if block else [period]
        for level, checks in self._tiers:
            if level > tier:
                break
            for check in checks:
                reason = check(class_id, day, period, subject_id, teachers, cells)
                if reason is not None:
                    rule, detail = reason
                    return Decision(False, rule, detail, level)
        return ALLOWED

    # --- CRITICAL ---

    def _check_cell(self, class_id, day, period, subject_id, teachers, cells):
        if not self.data.is_class_enabled(class_id):
            return "class_disabled", f"班级 {class_id} 不参与排课"
        if not self.schedule.has_cell(class_id, day, period):
            return "period_out_of_range", f"{day} 第{period}节 超出班级 {class_id} 的课表范围"
        if self.schedule.get(class_id, day, period) is not None:
            return "cell_occupied", f"{class_id} {day} 第{period}节 已有课"
        return None

    def _busy_elsewhere(self, teacher_id, class_id, day, period):
        return self.schedule.teacher_classes(teacher_id, day, period) - {class_id}

    def _check_teacher_conflict(self, class_id, day, period, subject_id, teachers, cells):
        for t in teachers:
            busy = self._busy_elsewhere(t, class_id, day, period)
            if busy:
                return "teacher_time_conflict", f"老师 {t} 在 {day} 第{period}节 已在 {sorted(busy)[0]} 上课"
        return None

    def _check_teacher_unavailable(self, class_id, day, period, subject_id, teachers, cells):
        for t in teachers:
            teacher = self.data.teachers_by_id.get(t)
            if teacher is not None and (day, period) in teacher.unavailable:
                return "teacher_unavailable", f"老师 {t} 在 {day} 第{period}节 不可排课"
        return None

    def _check_mutual_exclusion(self, class_id, day, period, subject_id, teachers, cells):
        for t in teachers:
            for other in self.data.exclusions_of(t):
                if other in teachers:
                    continue
                if self._busy_elsewhere(other, class_id, day, period):
                    return "teacher_mutual_exclusion", f"老师 {t} 与 {other} 互斥，{other} 此时已有课"
        return None

    # --- HIGH ---

    def _check_consecutive(self, class_id, day, period, subject_id, teachers, cells):
        for t in teachers:
            taken = set(self.schedule.teacher_periods(t, day)) | set(cells)
            start = end = cells[0]
            while start - 1 in taken:
                start -= 1
            while end + 1 in taken:
                end += 1
            if end - start + 1 > self.consecutive_limit:
                return "consecutive_teaching_limit", f"老师 {t} 在 {day} 将连续上 {end - start + 1} 节课"
        return None

    def _check_teacher_hours(self, class_id, day, period, subject_id, teachers, cells):
        if self.data.is_exempt(subject_id):
            return None
        extra = len(cells)
        class_unit = self.data.classes_by_id.get(class_id)
        for t in teachers:
            if self.tracker.current(t) + extra > self.tracker.max_hours(t):
                return "teacher_weekly_hours_exceeded", f"老师 {t} 周课时已达上限 {self.tracker.max_hours(t)}"
            teacher = self.data.teachers_by_id.get(t)
            if teacher is None or class_unit is None:
                continue
            cap = teacher.class_hours.get(class_id)
            if cap is not None and self.tracker.class_hours(t, class_id) + extra > cap:
                return "teacher_class_hours_exceeded", f"老师 {t} 在 {class_id} 的课时已达上限 {cap}"
            cap = teacher.grade_hours.get(class_unit.grade)
            if cap is not None and self.tracker.grade_hours(t, class_unit.grade) + extra > cap:
                return "teacher_grade_hours_exceeded", f"老师 {t} 在 {class_unit.grade} 年级的课时已达上限 {cap}"
        return None

    def _check_class_hours(self, class_id, day, period, subject_id, teachers, cells):
        extra = len(cells)
        cap = self.data.class_weekly_cap(class_id)
        if cap is not None and self.schedule.filled_count(class_id) + extra > cap:
            return "class_weekly_hours_exceeded", f"班级 {class_id} 周课时已达上限 {cap}"
        class_unit = self.data.classes_by_id.get(class_id)
        daily = class_unit.max_daily_hours if class_unit else None
        if daily is not None and self.schedule.filled_count(class_id, day) + extra > daily:
            return "class_daily_hours_exceeded", f"班级 {class_id} 在 {day} 的课时已达上限 {daily}"
        return None

    def _check_subject_hours(self, class_id, day, period, subject_id, teachers, cells):
        target = self.data.target_hours(class_id, subject_id)
        placed = self.schedule.subject_count(class_id, subject_id)
        if placed + len(cells) > target:
            return "subject_hours_exceeded", f"{class_id} 的「{subject_id}」已排 {placed} 节，目标 {target} 节"
        return None

    def _check_space_limit(self, class_id, day, period, subject_id, teachers, cells):
        subject = self.data.subjects_by_id.get(subject_id)
        if subject is None or not subject.is_space_limited or not subject.max_classes_at_once:
            return None
        for p in cells:
            using = 0
            for other in self.schedule.class_ids():
                if other == class_id:
                    continue
                slot = self.schedule.get(other, day, p)
                if slot is not None and slot.subject == subject_id:
                    using += 1
            if using >= subject.max_classes_at_once:
                return "space_limit_exceeded", f"「{subject_id}」在 {day} 第{p}节 已有 {using} 个班使用场地"
        return None

    # --- MEDIUM ---

    def _check_block_period(self, class_id, day, period, subject_id, teachers, cells):
        if len(cells) < 2:
            return None
        if period % 2 != 1:
            return "block_period_requirement", f"连堂课必须从奇数节开始，当前为第{period}节"
        nxt = cells[1]
        if not self.schedule.has_cell(class_id, day, nxt):
            return "block_period_requirement", f"{day} 第{nxt}节 超出课表范围"
        if self.schedule.get(class_id, day, nxt) is not None:
            return "block_period_requirement", f"{class_id} {day} 第{nxt}节 已有课"
        for t in teachers:
            if self._busy_elsewhere(t, class_id, day, nxt):
                return "block_period_requirement", f"老师 {t} 在 {day} 第{nxt}节 已有课"
            teacher = self.data.teachers_by_id.get(t)
            if teacher is not None and (day, nxt) in teacher.unavailable:
                return "block_period_requirement", f"老师 {t} 在 {day} 第{nxt}节 不可排课"
            for other in self.data.exclusions_of(t):
                if other not in teachers and self._busy_elsewhere(other, class_id, day, nxt):
                    return "block_period_requirement", f"老师 {t} 与 {other} 在 {day} 第{nxt}节 互斥"
        return None

    def _check_sequential_grade(self, class_id, day, period, subject_id, teachers, cells):
        class_unit = self.data.classes_by_id.get(class_id)
        if class_unit is None:
            return None
        for t in teachers:
            teacher = self.data.teachers_by_id.get(t)
            if teacher is None or not teacher.sequential_grade_teaching:
                continue
            grades = {}
            for p, other in self.schedule.teacher_periods(t, day).items():
                other_unit = self.data.classes_by_id.get(other)
                if other_unit is not None:
                    grades[p] = other_unit.grade
            for p in cells:
                grades[p] = class_unit.grade
            order = []
            for p in sorted(grades):
                if not order or order[-1] != grades[p]:
                    order.append(grades[p])
            if len(order) != len(set(order)):
                return "sequential_grade_teaching", f"老师 {t} 在 {day} 的年级顺序被打乱"
        return None

    def _check_available_times(self, class_id, day, period, subject_id, teachers, cells):
        for t in teachers:
            teacher = self.data.teachers_by_id.get(t)
            if teacher is None or not teacher.available_times:
                continue
            for p in cells:
                if (day, p) not in teacher.available_times:
                    return "teacher_time_not_available", f"{day} 第{p}节 不在老师 {t} 的可排时间内"
        return None

    def _daily_subject_once(self, class_id, day, subject_id, required):
        for c in self.data.constraints_of_type(CONSTRAINT_DAILY_SUBJECT_ONCE):
            if c.required != required:
                continue
            if c.subject not in (None, "all", subject_id):
                continue
            for slot in self.schedule.day_slots(class_id, day).values():
                if slot is not None and slot.subject == subject_id:
                    return "class_daily_subject_once", f"{class_id} 在 {day} 已有「{subject_id}」"
        return None

    def _same_class_daily_limit(self, class_id, day, teachers, required):
        for c in self.data.constraints_of_type(CONSTRAINT_SAME_CLASS_DAILY_LIMIT):
            if c.required != required:
                continue
            for t in teachers:
                if c.teacher and c.teacher != t:
                    continue
                sessions = 0
                for p, slot in self.schedule.day_slots(class_id, day).items():
                    if slot is None or t not in slot.teachers:
                        continue
                    # 连堂课算一次
                    if slot.is_block_period and slot.block_partner is not None and slot.block_partner < p:
                        continue
                    sessions += 1
                if sessions + 1 > c.max_periods:
                    return "teacher_same_class_daily_limit", f"老师 {t} 在 {day} 已给 {class_id} 上过 {sessions} 次课"
        return None

    def _check_daily_subject_once(self, class_id, day, period, subject_id, teachers, cells):
        return self._daily_subject_once(class_id, day, subject_id, required=True)

    def _check_same_class_daily_limit(self, class_id, day, period, subject_id, teachers, cells):
        return self._same_class_daily_limit(class_id, day, teachers, required=True)

    # --- LOW ---

    def _check_fixed_only(self, class_id, day, period, subject_id, teachers, cells):
        if self.data.is_fixed_only(subject_id):
            return "subject_fixed_only", f"「{subject_id}」只能通过固定课安排"
        return None

    def _check_optional_daily_subject_once(self, class_id, day, period, subject_id, teachers, cells):
        return self._daily_subject_once(class_id, day, subject_id, required=False)

    def _check_optional_same_class_daily_limit(self, class_id, day, period, subject_id, teachers, cells):
        return self._same_class_daily_limit(class_id, day, teachers, required=False)
