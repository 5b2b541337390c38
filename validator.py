import collections
import logging
import statistics

from co_teaching import validate_co_teaching
from models import (
    CONSTRAINT_DAILY_SUBJECT_ONCE, CONSTRAINT_SAME_CLASS_DAILY_LIMIT,
    SOURCE_EMERGENCY, SOURCE_EMERGENCY_FALLBACK, SOURCE_FIXED, TeacherHoursTracker,
)

logger = logging.getLogger(__name__)

SEVERITY_CRITICAL = "critical"
SEVERITY_HIGH = "high"
SEVERITY_MEDIUM = "medium"
SEVERITY_LOW = "low"
SEVERITIES = [SEVERITY_CRITICAL, SEVERITY_HIGH, SEVERITY_MEDIUM, SEVERITY_LOW]

STATUS_ACCEPTED = "accepted"
STATUS_USABLE = "usable_with_warnings"
STATUS_REJECTED = "rejected"


def _runs(periods):
    """把节次列表切成连续段，返回每段长度"""
    runs = []
    current = 0
    previous = None
    for p in sorted(set(periods)):
        if previous is not None and p == previous + 1:
            current += 1
        else:
            if current:
                runs.append(current)
            current = 1
        previous = p
    if current:
        runs.append(current)
    return runs


def teacher_day_periods(schedule):
    """{(teacher, day): [period, ...]}"""
    result = collections.defaultdict(list)
    for _, day, period, slot in schedule.cells():
        if slot is None:
            continue
        for t in slot.teachers:
            result[(t, day)].append(period)
    return result


class Validator:
    """对完整课表做全面检查，critical 级别的问题会导致课表被拒绝"""

    def __init__(self, data, schedule, tracker=None, consecutive_limit=2):
        self.data = data
        self.schedule = schedule
        self.tracker = tracker
        self.consecutive_limit = consecutive_limit
        self.violations = []

    def _add(self, severity, rule, message, class_id=None, day=None, period=None, teacher=None, subject=None):
        self.violations.append({
            "severity": severity,
            "rule": rule,
            "class_id": class_id,
            "day": day,
            "period": period,
            "teacher": teacher,
            "subject": subject,
            "message": message,
        })

    def validate(self):
        self.violations = []
        self._check_teachers()
        self._check_fixed_slots()
        self._check_tracker()
        self._check_hours()
        self._check_space_limits()
        self._check_blocks()
        self._check_daily_rules()
        self._check_cells()
        for v in validate_co_teaching(self.data, self.schedule):
            self._add(SEVERITY_HIGH, v["rule"], v["message"], v["class_id"], v["day"], v["period"],
                      v["teacher"], v["subject"])

        summary = {s: 0 for s in SEVERITIES}
        for v in self.violations:
            summary[v["severity"]] += 1
        summary["total"] = len(self.violations)

        if summary[SEVERITY_CRITICAL]:
            status = STATUS_REJECTED
        elif self.violations:
            status = STATUS_USABLE
        else:
            status = STATUS_ACCEPTED
        summary["status"] = status

        logger.info(f"课表校验: {status}, 共 {len(self.violations)} 个问题 "
                    f"(critical {summary[SEVERITY_CRITICAL]}, high {summary[SEVERITY_HIGH]})")
        return {
            "is_valid": summary[SEVERITY_CRITICAL] == 0,
            "status": status,
            "violations": list(self.violations),
            "summary": summary,
        }

    # 1. 老师时间：重复占用、不可排、互斥、连堂、年级顺序、可排时间
    def _check_teachers(self):
        busy = collections.defaultdict(set)
        for class_id, day, period, slot in self.schedule.cells():
            if slot is None:
                continue
            for t in slot.teachers:
                busy[(t, day, period)].add(class_id)

        reported = set()
        for (t, day, period), classes in busy.items():
            teacher = self.data.teachers_by_id.get(t)
            if len(classes) > 1:
                self._add(SEVERITY_CRITICAL, "teacher_time_conflict",
                          f"老师 {t} 在 {day} 第{period}节 同时在 {sorted(classes)} 上课",
                          sorted(classes)[0], day, period, t)
            if teacher is None:
                continue
            if (day, period) in teacher.unavailable:
                self._add(SEVERITY_CRITICAL, "teacher_unavailable",
                          f"老师 {t} 在 {day} 第{period}节 不可排课", sorted(classes)[0], day, period, t)
            if teacher.available_times and (day, period) not in teacher.available_times:
                self._add(SEVERITY_MEDIUM, "teacher_time_not_available",
                          f"{day} 第{period}节 不在老师 {t} 的可排时间内", sorted(classes)[0], day, period, t)
            for other in self.data.exclusions_of(t):
                pair = (min(t, other), max(t, other), day, period)
                if pair in reported:
                    continue
                other_classes = busy.get((other, day, period), set())
                if other_classes and other_classes != classes:
                    reported.add(pair)
                    self._add(SEVERITY_CRITICAL, "teacher_mutual_exclusion",
                              f"互斥老师 {t} 与 {other} 在 {day} 第{period}节 同时上课",
                              sorted(classes)[0], day, period, t)

        for (t, day), periods in teacher_day_periods(self.schedule).items():
            longest = max(_runs(periods), default=0)
            if longest > self.consecutive_limit:
                self._add(SEVERITY_HIGH, "consecutive_teaching_limit",
                          f"老师 {t} 在 {day} 连续上 {longest} 节课", day=day, teacher=t)

            teacher = self.data.teachers_by_id.get(t)
            if teacher is None or not teacher.sequential_grade_teaching:
                continue
            order = []
            for p in sorted(set(periods)):
                class_id = next(iter(self.schedule.teacher_classes(t, day, p)), None)
                class_unit = self.data.classes_by_id.get(class_id)
                if class_unit is None:
                    continue
                if not order or order[-1] != class_unit.grade:
                    order.append(class_unit.grade)
            if len(order) != len(set(order)):
                self._add(SEVERITY_MEDIUM, "sequential_grade_teaching",
                          f"老师 {t} 在 {day} 的年级顺序被打乱: {order}", day=day, teacher=t)

    # 2. 固定课必须原样保留
    def _check_fixed_slots(self):
        for f in self.data.fixed_classes:
            if not self.schedule.has_cell(f.class_id, f.day, f.period):
                continue
            slot = self.schedule.get(f.class_id, f.day, f.period)
            if slot is None or not slot.is_fixed or slot.subject != f.subject or set(slot.teachers) != set(f.teachers):
                self._add(SEVERITY_CRITICAL, "fixed_slot_modified",
                          f"{f.class_id} {f.day} 第{f.period}节 的固定课「{f.subject}」被改动",
                          f.class_id, f.day, f.period, f.teacher, f.subject)

    # 3. 课时统计与课表一致
    def _check_tracker(self):
        if self.tracker is None:
            return
        for m in self.tracker.mismatches(self.schedule):
            self._add(SEVERITY_CRITICAL, "tracker_inconsistent",
                      f"老师 {m['teacher']} 统计课时 {m['tracked']} 与课表 {m['actual']} 不一致",
                      teacher=m["teacher"])

    # 4. 课时：老师上限、班级上限、科目课时必须正好
    def _check_hours(self):
        actual = TeacherHoursTracker.from_schedule(self.data, self.schedule)
        for teacher in self.data.teachers:
            if actual.current(teacher.id) > teacher.max_hours:
                self._add(SEVERITY_HIGH, "teacher_weekly_hours_exceeded",
                          f"老师 {teacher.id} 周课时 {actual.current(teacher.id)} 超过上限 {teacher.max_hours}",
                          teacher=teacher.id)
            for class_id, cap in teacher.class_hours.items():
                if actual.class_hours(teacher.id, class_id) > cap:
                    self._add(SEVERITY_HIGH, "teacher_class_hours_exceeded",
                              f"老师 {teacher.id} 在 {class_id} 的课时超过上限 {cap}", class_id, teacher=teacher.id)
            for grade, cap in teacher.grade_hours.items():
                if actual.grade_hours(teacher.id, grade) > cap:
                    self._add(SEVERITY_HIGH, "teacher_grade_hours_exceeded",
                              f"老师 {teacher.id} 在 {grade} 年级的课时超过上限 {cap}", teacher=teacher.id)

        for class_id in self.schedule.class_ids():
            class_unit = self.data.classes_by_id.get(class_id)
            cap = self.data.class_weekly_cap(class_id)
            filled = self.schedule.filled_count(class_id)
            if cap is not None and filled > cap:
                self._add(SEVERITY_HIGH, "class_weekly_hours_exceeded",
                          f"班级 {class_id} 周课时 {filled} 超过上限 {cap}", class_id)
            if class_unit is not None and class_unit.max_daily_hours is not None:
                for day in self.schedule.days:
                    if self.schedule.filled_count(class_id, day) > class_unit.max_daily_hours:
                        self._add(SEVERITY_HIGH, "class_daily_hours_exceeded",
                                  f"班级 {class_id} 在 {day} 超过每日上限 {class_unit.max_daily_hours}",
                                  class_id, day)
            for subject in self.data.subjects:
                target = self.data.target_hours(class_id, subject.id)
                placed = self.schedule.subject_count(class_id, subject.id)
                if placed != target:
                    self._add(SEVERITY_HIGH, "subject_hours_mismatch",
                              f"{class_id} 的「{subject.id}」已排 {placed} 节，目标 {target} 节",
                              class_id, subject=subject.id)

    # 5. 场地限制
    def _check_space_limits(self):
        usage = collections.Counter()
        for _, day, period, slot in self.schedule.cells():
            if slot is not None:
                usage[(slot.subject, day, period)] += 1
        for (subject_id, day, period), count in usage.items():
            subject = self.data.subjects_by_id.get(subject_id)
            if subject is None or not subject.is_space_limited or not subject.max_classes_at_once:
                continue
            if count > subject.max_classes_at_once:
                self._add(SEVERITY_HIGH, "space_limit_exceeded",
                          f"「{subject_id}」在 {day} 第{period}节 有 {count} 个班同时使用场地",
                          day=day, period=period, subject=subject_id)

    # 6. 连堂结构
    def _check_blocks(self):
        singles = collections.Counter()
        fixed = collections.Counter()
        for class_id, day, period, slot in self.schedule.cells():
            if slot is None:
                continue
            if slot.source == SOURCE_FIXED:
                fixed[(class_id, slot.subject)] += 1
            if slot.is_block_period:
                partner = slot.block_partner
                other = self.schedule.get(class_id, day, partner) if partner is not None else None
                ok = (
                    other is not None and other.is_block_period and other.block_partner == period
                    and abs(partner - period) == 1 and min(partner, period) % 2 == 1
                    and other.subject == slot.subject and other.teachers == slot.teachers
                )
                if not ok:
                    self._add(SEVERITY_MEDIUM, "block_period_broken",
                              f"{class_id} {day} 第{period}节 的连堂结构不完整", class_id, day, period,
                              slot.main_teacher, slot.subject)
            elif slot.source not in (SOURCE_FIXED, SOURCE_EMERGENCY, SOURCE_EMERGENCY_FALLBACK) \
                    and slot.subject is not None and self.data.is_block_lesson(slot.subject, slot.teachers):
                singles[(class_id, slot.subject)] += 1

        for (class_id, subject_id), count in singles.items():
            # 固定课占掉的课时之外，奇数剩余的一节只能单排
            left = self.data.target_hours(class_id, subject_id) - fixed[(class_id, subject_id)]
            if count > max(0, left) % 2:
                self._add(SEVERITY_MEDIUM, "block_period_requirement",
                          f"{class_id} 的「{subject_id}」有 {count} 节未按连堂安排", class_id, subject=subject_id)

    # 7. 每日规则
    def _check_daily_rules(self):
        once = self.data.constraints_of_type(CONSTRAINT_DAILY_SUBJECT_ONCE)
        limits = self.data.constraints_of_type(CONSTRAINT_SAME_CLASS_DAILY_LIMIT)
        for class_id in self.schedule.class_ids():
            for day in self.schedule.days:
                subjects = collections.Counter()
                sessions = collections.Counter()
                for period, slot in self.schedule.day_slots(class_id, day).items():
                    if slot is None:
                        continue
                    first_half = not (slot.is_block_period and slot.block_partner is not None
                                      and slot.block_partner < period)
                    if first_half:
                        subjects[slot.subject] += 1
                        for t in slot.teachers:
                            sessions[t] += 1

                for c in once:
                    severity = SEVERITY_MEDIUM if c.required else SEVERITY_LOW
                    for subject_id, count in subjects.items():
                        if count > 1 and c.subject in (None, "all", subject_id):
                            self._add(severity, "class_daily_subject_once",
                                      f"{class_id} 在 {day} 排了 {count} 次「{subject_id}」",
                                      class_id, day, subject=subject_id)
                for c in limits:
                    severity = SEVERITY_MEDIUM if c.required else SEVERITY_LOW
                    for t, count in sessions.items():
                        if (not c.teacher or c.teacher == t) and count > c.max_periods:
                            self._add(severity, "teacher_same_class_daily_limit",
                                      f"老师 {t} 在 {day} 给 {class_id} 上了 {count} 次课",
                                      class_id, day, teacher=t)

    # 8. 单元格：资格、只能固定排的科目、紧急填充
    def _check_cells(self):
        for class_id, day, period, slot in self.schedule.cells():
            if slot is None:
                continue
            if slot.source in (SOURCE_EMERGENCY, SOURCE_EMERGENCY_FALLBACK):
                self._add(SEVERITY_LOW, "emergency_placement",
                          f"{class_id} {day} 第{period}节 为紧急填充，需人工复核",
                          class_id, day, period, slot.main_teacher, slot.subject)
            if slot.subject is None or slot.is_fixed:
                continue
            teacher = self.data.teachers_by_id.get(slot.main_teacher)
            if teacher is not None and not teacher.teaches(slot.subject):
                self._add(SEVERITY_MEDIUM, "teacher_not_qualified",
                          f"老师 {teacher.id} 不教「{slot.subject}」", class_id, day, period, teacher.id, slot.subject)
            if self.data.is_fixed_only(slot.subject):
                self._add(SEVERITY_LOW, "subject_fixed_only",
                          f"「{slot.subject}」只能通过固定课安排", class_id, day, period, slot.main_teacher, slot.subject)


class QualityScorer:
    """课表质量评分 (满分100)，与硬约束分开：这里只看老师连堂情况"""

    def __init__(self, max_consecutive=2, penalty_weight=10, overrides=None):
        self.max_consecutive = max_consecutive
        self.penalty_weight = penalty_weight
        # {teacher_id: 连堂上限}
        self.overrides = dict(overrides or {})

    def score(self, data, schedule):
        penalty = 0
        violations = []
        loads = collections.Counter()

        for (t, day), periods in sorted(teacher_day_periods(schedule).items()):
            loads[t] += len(set(periods))
            cap = self.overrides.get(t, self.max_consecutive)
            longest = max(_runs(periods), default=0)
            if longest > cap:
                cost = (longest - cap) * self.penalty_weight
                penalty += cost
                violations.append({
                    "teacher": t,
                    "day": day,
                    "consecutive": longest,
                    "limit": cap,
                    "penalty": cost,
                })

        # 负载均衡只做参考，不计入总分
        values = [loads.get(t.id, 0) for t in data.teachers]
        load_stdev = round(statistics.stdev(values), 2) if len(values) > 1 else 0.0

        total = max(0, 100 - penalty)
        if violations:
            logger.info(f"质量评分: {total}, 发现 {len(violations)} 处连堂超限")
        return {
            "total_score": total,
            "consecutive_teaching_score": total,
            "penalty": penalty,
            "violations": violations,
            "other_scores": {"teacher_load_stdev": load_stdev},
        }
