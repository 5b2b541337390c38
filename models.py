import collections
import copy
import logging

from error_handler import InvalidConfigError, SlotOccupiedError, FixedSlotError

logger = logging.getLogger(__name__)

# 默认配置
DEFAULT_DAYS = ["周一", "周二", "周三", "周四", "周五"]
DEFAULT_PERIODS = 7
DEFAULT_TEACHER_MAX_HOURS = 22
DEFAULT_MAX_TEACHERS_PER_SESSION = 2

# 创意体验类科目不受班级课时上限约束，也不计入老师课时
CREATIVE_ACTIVITY = "creative_activity"

# 课时来源
SOURCE_FIXED = "fixed"
SOURCE_CONSTRAINT = "constraint"
SOURCE_SEARCH = "search"
SOURCE_EMERGENCY = "emergency"
SOURCE_EMERGENCY_FALLBACK = "emergency_fallback"
SOURCE_LEGACY = "legacy"

# 约束类型
CONSTRAINT_CO_TEACHING = "specific_teacher_co_teaching"
CONSTRAINT_BLOCK_PERIOD = "block_period_requirement"
CONSTRAINT_MUTUAL_EXCLUSION = "teacher_mutual_exclusion"
CONSTRAINT_FIXED_ONLY = "subject_fixed_only"
CONSTRAINT_DAILY_SUBJECT_ONCE = "class_daily_subject_once"
CONSTRAINT_SAME_CLASS_DAILY_LIMIT = "teacher_same_class_daily_limit"

# 单元格类型
CELL_EMPTY = "empty"
CELL_FIXED = "fixed"
CELL_PLACED = "placed"


def _pick(raw, *keys, default=None):
    """按顺序取第一个存在的键 (兼容旧数据的驼峰命名)"""
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return default


def _int_keys(mapping):
    """JSON 的键总是字符串，年级号还原成 int"""
    result = {}
    for k, v in (mapping or {}).items():
        key = int(k) if isinstance(k, str) and k.isdigit() else k
        result[key] = int(v)
    return result


def _time_set(items):
    return {(str(day), int(period)) for day, period in (items or [])}


class Subject:
    def __init__(self, id, name=None, weekly_hours=0, block=False, requires_co_teaching=False,
                 is_space_limited=False, max_classes_at_once=None, category=None,
                 priority=1, fixed_only=False):
        self.id = id
        self.name = name or id
        self.weekly_hours = weekly_hours
        self.block = block
        self.requires_co_teaching = requires_co_teaching
        self.is_space_limited = is_space_limited
        self.max_classes_at_once = max_classes_at_once
        self.category = category
        self.priority = priority
        self.fixed_only = fixed_only

    @property
    def is_exempt(self):
        return self.category == CREATIVE_ACTIVITY

    @classmethod
    def from_dict(cls, raw):
        return cls(
            id=raw.get("id"),
            name=raw.get("name"),
            weekly_hours=int(_pick(raw, "weekly_hours", "weeklyHours", default=0)),
            block=bool(_pick(raw, "block", "isBlockPeriod", default=False)),
            requires_co_teaching=bool(_pick(raw, "requires_co_teaching", "requiresCoTeaching", default=False)),
            is_space_limited=bool(_pick(raw, "is_space_limited", "isSpaceLimited", default=False)),
            max_classes_at_once=_pick(raw, "max_classes_at_once", "maxClassesAtOnce"),
            category=raw.get("category"),
            priority=int(raw.get("priority", 1)),
            fixed_only=bool(_pick(raw, "fixed_only", "fixedOnly", default=False)),
        )

    def __repr__(self):
        return f"Subject({self.id}, hours={self.weekly_hours})"


class Teacher:
    def __init__(self, id, name=None, subjects=None, max_hours=DEFAULT_TEACHER_MAX_HOURS,
                 class_hours=None, grade_hours=None, unavailable=None, available_times=None,
                 mutual_exclusions=None, sequential_grade_teaching=False, allow_parallel=False):
        self.id = id
        self.name = name or id
        self.subjects = list(subjects or [])
        self.max_hours = max_hours
        # 分配给某班/某年级的周课时，同时也是上限
        self.class_hours = dict(class_hours or {})
        self.grade_hours = dict(grade_hours or {})
        self.unavailable = set(unavailable or ())
        # 为空表示不限制
        self.available_times = set(available_times or ())
        self.mutual_exclusions = set(mutual_exclusions or ())
        self.sequential_grade_teaching = sequential_grade_teaching
        # 仅作为界面标记保留，不放宽一人一格的约束
        self.allow_parallel = allow_parallel

    def teaches(self, subject_id):
        return subject_id in self.subjects

    def allocation_for(self, class_unit):
        """老师在该班的分配课时，None 表示未指定"""
        if class_unit.id in self.class_hours:
            return self.class_hours[class_unit.id]
        if class_unit.grade in self.grade_hours:
            return self.grade_hours[class_unit.grade]
        return None

    @classmethod
    def from_dict(cls, raw):
        return cls(
            id=raw.get("id"),
            name=raw.get("name"),
            subjects=raw.get("subjects") or ([raw["subject"]] if raw.get("subject") else []),
            max_hours=int(_pick(raw, "max_hours", "maxHours", default=DEFAULT_TEACHER_MAX_HOURS)),
            class_hours={k: int(v) for k, v in (_pick(raw, "class_hours", "classWeeklyHours", default={})).items()},
            grade_hours=_int_keys(_pick(raw, "grade_hours", "weeklyHoursByGrade", default={})),
            unavailable=_time_set(raw.get("unavailable")),
            available_times=_time_set(_pick(raw, "available_times", "availableTimes")),
            mutual_exclusions=_pick(raw, "mutual_exclusions", "mutualExclusions", default=[]),
            sequential_grade_teaching=bool(_pick(raw, "sequential_grade_teaching", "sequentialGradeTeaching", default=False)),
            allow_parallel=bool(_pick(raw, "allow_parallel", "allowParallel", default=False)),
        )

    def __repr__(self):
        return f"Teacher({self.id}, subjects={self.subjects})"


class ClassUnit:
    def __init__(self, id, name=None, grade=1, class_number=1, periods_per_day=None,
                 weekly_hours=None, max_daily_hours=None, subject_hours=None):
        self.id = id
        self.name = name or id
        self.grade = grade
        self.class_number = class_number
        self.periods_per_day = dict(periods_per_day or {})
        self.weekly_hours = weekly_hours
        self.max_daily_hours = max_daily_hours
        self.subject_hours = dict(subject_hours or {})

    @property
    def rank(self):
        return self.grade * 15 + self.class_number

    @classmethod
    def from_dict(cls, raw, periods_per_day):
        grade = int(raw.get("grade", 1))
        number = int(_pick(raw, "class_number", "classNumber", default=1))
        weekly = _pick(raw, "weekly_hours", "weeklyHours")
        daily = _pick(raw, "max_daily_hours", "maxDailyHours")
        return cls(
            id=str(raw.get("id") or f"{grade}-{number}"),
            name=raw.get("name") or f"{grade}年级{number}班",
            grade=grade,
            class_number=number,
            periods_per_day=raw.get("periods_per_day") or periods_per_day,
            weekly_hours=int(weekly) if weekly is not None else None,
            max_daily_hours=int(daily) if daily is not None else None,
            subject_hours={k: int(v) for k, v in (raw.get("subject_hours") or {}).items()},
        )

    def __repr__(self):
        return f"ClassUnit({self.id})"


class Constraint:
    def __init__(self, type, subject=None, main_teacher=None, co_teachers=None,
                 max_teachers=DEFAULT_MAX_TEACHERS_PER_SESSION, teacher=None, teachers=None,
                 subjects=None, max_periods=1, required=True, description=""):
        self.type = type
        self.subject = subject
        self.main_teacher = main_teacher
        self.co_teachers = list(co_teachers or [])
        self.max_teachers = max_teachers
        self.teacher = teacher
        self.teachers = list(teachers or [])
        self.subjects = list(subjects or [])
        self.max_periods = max_periods
        # optional 区里的约束 required=False
        self.required = required
        self.description = description

    @classmethod
    def from_dict(cls, raw, required=True):
        return cls(
            type=raw.get("type"),
            subject=raw.get("subject"),
            main_teacher=_pick(raw, "main_teacher", "mainTeacher"),
            co_teachers=_pick(raw, "co_teachers", "coTeachers", default=[]),
            max_teachers=int(_pick(raw, "max_teachers", "maxTeachersPerClass", default=DEFAULT_MAX_TEACHERS_PER_SESSION)),
            teacher=raw.get("teacher"),
            teachers=raw.get("teachers", []),
            subjects=raw.get("subjects", []),
            max_periods=int(_pick(raw, "max_periods", "maxPeriods", default=1)),
            required=required,
            description=raw.get("description", ""),
        )

    def __repr__(self):
        return f"Constraint({self.type})"


class FixedClass:
    def __init__(self, day, period, class_id, subject, teacher=None, co_teachers=None):
        self.day = day
        self.period = period
        self.class_id = class_id
        self.subject = subject
        self.teacher = teacher
        self.co_teachers = list(co_teachers or [])

    @property
    def teachers(self):
        return ([self.teacher] if self.teacher else []) + self.co_teachers

    @classmethod
    def from_dict(cls, raw):
        class_id = _pick(raw, "class_id", "classId")
        if class_id is None and "grade" in raw:
            class_id = f"{raw['grade']}-{raw.get('class', 1)}"
        return cls(
            day=raw.get("day"),
            period=int(raw.get("period", 0)),
            class_id=str(class_id) if class_id is not None else None,
            subject=raw.get("subject"),
            teacher=raw.get("teacher"),
            co_teachers=_pick(raw, "co_teachers", "coTeachers", default=[]),
        )

    def __repr__(self):
        return f"FixedClass({self.class_id} {self.day}{self.period} {self.subject})"


class ScheduleSlot:
    """课表中的一格"""

    def __init__(self, subject, teachers, is_co_teaching=False, is_fixed=False,
                 is_block_period=False, block_partner=None, source=SOURCE_SEARCH,
                 main_teacher=None, co_teachers=None, constraint_type=None):
        self.subject = subject
        self.teachers = list(teachers)
        self.is_co_teaching = is_co_teaching
        self.is_fixed = is_fixed
        self.is_block_period = is_block_period
        self.block_partner = block_partner
        self.source = source
        self.main_teacher = main_teacher or (self.teachers[0] if self.teachers else None)
        self.co_teachers = list(co_teachers) if co_teachers is not None else self.teachers[1:]
        self.constraint_type = constraint_type

    @property
    def kind(self):
        return CELL_FIXED if self.is_fixed else CELL_PLACED

    def to_wire(self):
        wire = {
            "subject": self.subject,
            "teachers": list(self.teachers),
            "isCoTeaching": self.is_co_teaching,
            "isFixed": self.is_fixed,
            "isBlockPeriod": self.is_block_period,
            "source": self.source,
        }
        if self.block_partner is not None:
            wire["blockPartner"] = self.block_partner
        return wire

    def __eq__(self, other):
        if not isinstance(other, ScheduleSlot):
            return NotImplemented
        return self.to_wire() == other.to_wire()

    def __repr__(self):
        return f"ScheduleSlot({self.subject}, {self.teachers}, {self.source})"


def cell_kind(cell):
    return CELL_EMPTY if cell is None else cell.kind


def parse_cell(raw):
    """把线上的单元格还原成 ScheduleSlot；旧数据里单元格可能只是一个老师名字"""
    if raw is None or raw == "":
        return None
    if isinstance(raw, ScheduleSlot):
        return raw
    if isinstance(raw, str):
        return ScheduleSlot(subject=None, teachers=[raw], source=SOURCE_LEGACY)
    if isinstance(raw, dict):
        teachers = raw.get("teachers")
        if teachers is None:
            teachers = [raw["teacher"]] if raw.get("teacher") else []
        is_fixed = bool(raw.get("isFixed", False))
        return ScheduleSlot(
            subject=raw.get("subject"),
            teachers=teachers,
            is_co_teaching=bool(raw.get("isCoTeaching", False)),
            is_fixed=is_fixed,
            is_block_period=bool(raw.get("isBlockPeriod", False)),
            block_partner=raw.get("blockPartner"),
            source=raw.get("source") or (SOURCE_FIXED if is_fixed else SOURCE_SEARCH),
        )
    raise InvalidConfigError(f"无法识别的课表单元格: {raw!r}")


def serialize_cell(cell):
    return None if cell is None else cell.to_wire()


class TimetableData:
    """排课输入数据，所有查找都走这里建好的索引"""

    def __init__(self, subjects, teachers, classes, fixed_classes=None, constraints=None,
                 days=None, class_weekly_hours=None, subject_equivalents=None):
        self.subjects = list(subjects)
        self.teachers = list(teachers)
        self.classes = list(classes)
        self.fixed_classes = list(fixed_classes or [])
        self.constraints = list(constraints or [])
        self.days = list(days or DEFAULT_DAYS)
        self.class_weekly_hours = dict(class_weekly_hours or {})
        self.subject_equivalents = [tuple(pair) for pair in (subject_equivalents or [])]

        # 索引 (重复 id 时后者覆盖，由可行性检查报告)
        self.subjects_by_id = {s.id: s for s in self.subjects}
        self.teachers_by_id = {t.id: t for t in self.teachers}
        self.classes_by_id = {c.id: c for c in self.classes}
        self.day_index = {d: i for i, d in enumerate(self.days)}

        self._qualified = collections.defaultdict(list)
        for t in sorted(self.teachers, key=lambda x: str(x.id)):
            for s in t.subjects:
                self._qualified[s].append(t.id)

        self._by_type = collections.defaultdict(list)
        for c in self.constraints:
            self._by_type[c.type].append(c)

        self._exclusions = collections.defaultdict(set)
        for t in self.teachers:
            for other in t.mutual_exclusions:
                self._exclusions[t.id].add(other)
                self._exclusions[other].add(t.id)
        for c in self._by_type[CONSTRAINT_MUTUAL_EXCLUSION]:
            group = [x for x in c.teachers + ([c.teacher] if c.teacher else []) if x]
            for a in group:
                for b in group:
                    if a != b:
                        self._exclusions[a].add(b)

        self._fixed_only = {s.id for s in self.subjects if s.fixed_only}
        for c in self._by_type[CONSTRAINT_FIXED_ONLY]:
            self._fixed_only.update(c.subjects)
            if c.subject:
                self._fixed_only.add(c.subject)

    @classmethod
    def from_dict(cls, raw):
        if not isinstance(raw, dict):
            raise InvalidConfigError("排课数据必须是一个字典")
        try:
            base = raw.get("base", {})
            periods_per_day = base.get("periods_per_day") or {d: DEFAULT_PERIODS for d in DEFAULT_DAYS}
            periods_per_day = {str(d): int(n) for d, n in periods_per_day.items()}
            days = list(periods_per_day.keys())

            subjects = [Subject.from_dict(s) for s in raw.get("subjects", [])]
            teachers = [Teacher.from_dict(t) for t in raw.get("teachers", [])]

            if raw.get("classes"):
                classes = [ClassUnit.from_dict(c, periods_per_day) for c in raw["classes"]]
            else:
                # 未提供班级列表时按年级自动生成
                classes = []
                grades = int(base.get("grades", 0))
                per_grade = base.get("classes_per_grade", [])
                for g in range(1, grades + 1):
                    count = per_grade[g - 1] if g - 1 < len(per_grade) else 0
                    for n in range(1, int(count) + 1):
                        classes.append(ClassUnit(f"{g}-{n}", f"{g}年级{n}班", g, n, periods_per_day))

            fixed = [FixedClass.from_dict(f) for f in raw.get("fixed_classes", [])]

            raw_constraints = raw.get("constraints", {})
            if isinstance(raw_constraints, list):
                raw_constraints = {"must": raw_constraints}
            constraints = [Constraint.from_dict(c) for c in raw_constraints.get("must", [])]
            constraints += [Constraint.from_dict(c, required=False) for c in raw_constraints.get("optional", [])]

            weekly = {str(k): int(v) for k, v in (raw.get("class_weekly_hours") or {}).items()}
        except (TypeError, ValueError, AttributeError, KeyError) as e:
            raise InvalidConfigError(f"排课数据格式错误: {e}") from e

        data = cls(subjects, teachers, classes, fixed, constraints, days, weekly,
                   raw.get("subject_equivalents", []))
        logger.info(f"载入排课数据: {len(classes)} 个班级, {len(teachers)} 位老师, {len(subjects)} 门科目")
        return data

    # --- 查询 ---

    def constraints_of_type(self, type_):
        return self._by_type.get(type_, [])

    def qualified_teachers(self, subject_id):
        return list(self._qualified.get(subject_id, []))

    def exclusions_of(self, teacher_id):
        return self._exclusions.get(teacher_id, set())

    def is_fixed_only(self, subject_id):
        return subject_id in self._fixed_only

    def is_exempt(self, subject_id):
        subject = self.subjects_by_id.get(subject_id)
        return subject is not None and subject.is_exempt

    def equivalent_subjects(self, subject_id):
        result = {subject_id}
        for pair in self.subject_equivalents:
            if subject_id in pair:
                result.update(pair)
        return result

    def class_weekly_cap(self, class_id):
        if class_id in self.class_weekly_hours:
            return self.class_weekly_hours[class_id]
        cu = self.classes_by_id.get(class_id)
        return cu.weekly_hours if cu else None

    def is_class_enabled(self, class_id):
        return class_id in self.classes_by_id and self.class_weekly_cap(class_id) != 0

    def enabled_classes(self):
        return [c for c in self.classes if self.class_weekly_cap(c.id) != 0]

    def target_hours(self, class_id, subject_id):
        cu = self.classes_by_id.get(class_id)
        if cu and subject_id in cu.subject_hours:
            return cu.subject_hours[subject_id]
        subject = self.subjects_by_id.get(subject_id)
        return subject.weekly_hours if subject else 0

    def periods_on(self, class_id, day):
        cu = self.classes_by_id.get(class_id)
        if cu is None:
            return 0
        return int(cu.periods_per_day.get(day, 0))

    def is_block_lesson(self, subject_id, teachers):
        subject = self.subjects_by_id.get(subject_id)
        if subject is not None and subject.block:
            return True
        for c in self.constraints_of_type(CONSTRAINT_BLOCK_PERIOD):
            if c.teacher in teachers and (not c.subject or c.subject == subject_id):
                return True
        return False


class Schedule:
    """班级 -> 星期 -> 节次 -> ScheduleSlot | None，附带老师占用索引"""

    def __init__(self, data):
        self.days = list(data.days)
        self._grid = {}
        # (teacher, day) -> {period: {class_id}}
        self._teacher_day = collections.defaultdict(lambda: collections.defaultdict(set))
        for cu in data.enabled_classes():
            self._grid[cu.id] = {
                d: {p: None for p in range(1, data.periods_on(cu.id, d) + 1)}
                for d in self.days
            }

    def class_ids(self):
        return list(self._grid.keys())

    def has_cell(self, class_id, day, period):
        return period in self._grid.get(class_id, {}).get(day, {})

    def periods(self, class_id, day):
        return sorted(self._grid.get(class_id, {}).get(day, {}).keys())

    def get(self, class_id, day, period):
        return self._grid.get(class_id, {}).get(day, {}).get(period)

    def is_empty(self, class_id, day, period):
        return self.has_cell(class_id, day, period) and self.get(class_id, day, period) is None

    def place(self, class_id, day, period, slot):
        if not self.has_cell(class_id, day, period):
            raise SlotOccupiedError(f"{class_id} {day} 第{period}节 不在课表范围内")
        if self._grid[class_id][day][period] is not None:
            raise SlotOccupiedError(f"{class_id} {day} 第{period}节 已被占用")
        self._grid[class_id][day][period] = slot
        for t in slot.teachers:
            self._teacher_day[(t, day)][period].add(class_id)

    def remove(self, class_id, day, period, force=False):
        slot = self.get(class_id, day, period)
        if slot is None:
            return None
        if slot.is_fixed and not force:
            raise FixedSlotError(f"{class_id} {day} 第{period}节 是固定课，不能移除")
        self._grid[class_id][day][period] = None
        for t in slot.teachers:
            busy = self._teacher_day[(t, day)][period]
            busy.discard(class_id)
            if not busy:
                del self._teacher_day[(t, day)][period]
        return slot

    def teacher_classes(self, teacher_id, day, period):
        return set(self._teacher_day.get((teacher_id, day), {}).get(period, ()))

    def teacher_periods(self, teacher_id, day):
        """{period: class_id}，同一节被重复占用时取任意一个"""
        periods = self._teacher_day.get((teacher_id, day), {})
        return {p: next(iter(classes)) for p, classes in periods.items() if classes}

    def cells(self):
        for class_id, days in self._grid.items():
            for day, periods in days.items():
                for period, slot in periods.items():
                    yield class_id, day, period, slot

    def empty_cells(self):
        return [(c, d, p) for c, d, p, slot in self.cells() if slot is None]

    def day_slots(self, class_id, day):
        return self._grid.get(class_id, {}).get(day, {})

    def subject_count(self, class_id, subject_id):
        return sum(1 for d in self.days for slot in self.day_slots(class_id, d).values()
                   if slot is not None and slot.subject == subject_id)

    def filled_count(self, class_id, day=None):
        days = [day] if day is not None else self.days
        return sum(1 for d in days for slot in self.day_slots(class_id, d).values() if slot is not None)

    def total_cells(self):
        return sum(len(periods) for days in self._grid.values() for periods in days.values())

    def filled_cells(self):
        return sum(1 for _, _, _, slot in self.cells() if slot is not None)

    def to_wire(self):
        return {
            class_id: {
                day: {str(p): serialize_cell(slot) for p, slot in periods.items()}
                for day, periods in days.items()
            }
            for class_id, days in self._grid.items()
        }

    @classmethod
    def from_wire(cls, data, raw):
        schedule = cls(data)
        for class_id, days in (raw or {}).items():
            for day, periods in (days or {}).items():
                for period, cell in (periods or {}).items():
                    slot = parse_cell(cell)
                    if slot is not None:
                        schedule.place(str(class_id), day, int(period), slot)
        return schedule


class TeacherHoursTracker:
    """老师课时统计，每次落子/撤销都同步更新"""

    def __init__(self, data):
        self._data = data
        self.hours = {t.id: self._new_entry(t.max_hours) for t in data.teachers}

    @staticmethod
    def _new_entry(max_hours):
        return {"current": 0, "max": max_hours, "subjects": {}, "classes": {}}

    def _counts(self, slot):
        return slot.subject is None or not self._data.is_exempt(slot.subject)

    def add(self, class_id, slot):
        if not self._counts(slot):
            return
        for t in slot.teachers:
            entry = self.hours.setdefault(t, self._new_entry(DEFAULT_TEACHER_MAX_HOURS))
            entry["current"] += 1
            entry["subjects"][slot.subject] = entry["subjects"].get(slot.subject, 0) + 1
            entry["classes"][class_id] = entry["classes"].get(class_id, 0) + 1

    def remove(self, class_id, slot):
        if not self._counts(slot):
            return
        for t in slot.teachers:
            entry = self.hours.get(t)
            if entry is None:
                continue
            entry["current"] -= 1
            for key, bucket in ((slot.subject, entry["subjects"]), (class_id, entry["classes"])):
                bucket[key] = bucket.get(key, 0) - 1
                if bucket[key] <= 0:
                    del bucket[key]

    def current(self, teacher_id):
        return self.hours.get(teacher_id, {}).get("current", 0)

    def max_hours(self, teacher_id):
        return self.hours.get(teacher_id, {}).get("max", DEFAULT_TEACHER_MAX_HOURS)

    def remaining(self, teacher_id):
        return self.max_hours(teacher_id) - self.current(teacher_id)

    def class_hours(self, teacher_id, class_id):
        return self.hours.get(teacher_id, {}).get("classes", {}).get(class_id, 0)

    def grade_hours(self, teacher_id, grade):
        classes = self.hours.get(teacher_id, {}).get("classes", {})
        by_id = self._data.classes_by_id
        return sum(n for c, n in classes.items() if c in by_id and by_id[c].grade == grade)

    def to_dict(self):
        return copy.deepcopy(self.hours)

    @classmethod
    def from_schedule(cls, data, schedule):
        tracker = cls(data)
        for class_id, _, _, slot in schedule.cells():
            if slot is not None:
                tracker.add(class_id, slot)
        return tracker

    def mismatches(self, schedule):
        """与课表重新统计的结果对比，返回不一致的老师"""
        expected = TeacherHoursTracker.from_schedule(self._data, schedule)
        result = []
        for t in set(self.hours) | set(expected.hours):
            if self.current(t) != expected.current(t):
                result.append({"teacher": t, "tracked": self.current(t), "actual": expected.current(t)})
        return result
