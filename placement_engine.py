import collections
import logging
import time

from co_teaching import target_subjects
from constraint_checker import LOW, TIER_NAMES
from error_handler import FailureAnalysis
from history import PlacementHistory, PlacementRecord, build_slots
from models import CONSTRAINT_CO_TEACHING, SOURCE_SEARCH
from slot_finder import find_slots

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_FAIL = "fail"
STATUS_CANCELLED = "cancelled"

# 每个任务最多尝试的老师组合数
MAX_TEACHER_OPTIONS = 3

# 连堂课、协同课优先排
BLOCK_BONUS = 1000
CO_TEACHING_BONUS = 500


class PlacementTask:
    """一个待排的 (班级, 科目)，每轮重新计算优先级"""

    def __init__(self, class_id, subject_id, teacher_options, needed, candidate_count=0,
                 difficulty=0, priority=0, is_block=False):
        self.class_id = class_id
        self.subject_id = subject_id
        self.teacher_options = teacher_options
        self.needed = needed
        self.candidate_count = candidate_count
        self.difficulty = difficulty
        self.priority = priority
        self.is_block = is_block

    @property
    def key(self):
        return (self.class_id, self.subject_id)

    def __repr__(self):
        return f"PlacementTask({self.class_id}, {self.subject_id}, need={self.needed}, priority={self.priority})"


class PlacementEngine:
    """
    按优先级逐节放课，卡住时智能回溯。

    每轮：重新计算所有未排满的 (班级, 科目) 的优先级，取第一个能放下的任务提交；
    如果一个都放不下，就在最近几次落子中撤销得分最低的一次再继续。
    """

    def __init__(self, data, schedule, tracker, checker, config=None, rng=None, history=None,
                 analysis=None, cancel_token=None, on_progress=None):
        config = config or {}
        self.data = data
        self.schedule = schedule
        self.tracker = tracker
        self.checker = checker
        self.rng = rng
        self.history = history if history is not None else PlacementHistory()
        self.analysis = analysis if analysis is not None else FailureAnalysis()
        self.cancel_token = cancel_token
        self.on_progress = on_progress

        self.max_backtrack_steps = config.get("max_backtrack_steps", 200)
        self.backtrack_window = config.get("backtrack_window", 5)
        self.max_iterations = config.get("max_iterations")
        self.progress_interval = config.get("progress_interval", 25)

        self.iterations = 0
        self._backtrack_steps = 0
        self._cache = {}
        # 被回溯撤销的 (班级, 科目, 星期, 节次)，短期内不再尝试
        self._tabu = collections.deque(maxlen=max(1, self.backtrack_window * 4))
        self._unplaceable = []

        # 协同授课的主讲老师不能单独上目标科目
        self._co_teaching_mains = set()
        for c in data.constraints_of_type(CONSTRAINT_CO_TEACHING):
            for s in target_subjects(data, c):
                self._co_teaching_mains.add((c.main_teacher, s))

    # --- 任务 ---

    def backlog(self):
        items = []
        for class_unit in self.data.enabled_classes():
            for subject in self.data.subjects:
                if self.data.is_fixed_only(subject.id):
                    continue
                needed = self.data.target_hours(class_unit.id, subject.id) - \
                    self.schedule.subject_count(class_unit.id, subject.id)
                if needed > 0:
                    items.append((class_unit.id, subject.id, needed))
        return items

    def teacher_options(self, class_id, subject_id):
        class_unit = self.data.classes_by_id[class_id]
        teachers = self.data.teachers_by_id
        qualified = [t for t in self.data.qualified_teachers(subject_id)
                     if (t, subject_id) not in self._co_teaching_mains]

        incumbents = set()
        for day in self.schedule.days:
            for slot in self.schedule.day_slots(class_id, day).values():
                if slot is not None and slot.subject == subject_id and slot.main_teacher:
                    incumbents.add(slot.main_teacher)

        allocated = [t for t in qualified if (teachers[t].allocation_for(class_unit) or 0) > 0]
        pool = allocated or [t for t in qualified if teachers[t].allocation_for(class_unit) is None]
        pool.sort(key=lambda t: (t not in incumbents, -self.tracker.remaining(t), t))
        pool = pool[:MAX_TEACHER_OPTIONS]

        subject = self.data.subjects_by_id.get(subject_id)
        if subject is None or not subject.requires_co_teaching:
            return [(t,) for t in pool]

        options = []
        for main in pool:
            partners = [t for t in self.data.qualified_teachers(subject_id) if t != main]
            if not partners:
                continue
            partner = min(partners, key=lambda t: (self.tracker.current(t), t))
            options.append((main, partner))
        return options

    def _candidates(self, class_id, subject_id, teachers, tier, block):
        key = (class_id, subject_id, teachers, tier, block)
        cached = self._cache.get(key)
        if cached is not None:
            self.analysis.cache_hits += 1
            return cached
        self.analysis.cache_misses += 1
        cached = find_slots(self.checker, class_id, subject_id, teachers, tier, rng=self.rng, block=block)
        self._cache[key] = cached
        return cached

    def _invalidate(self, class_id):
        for key in [k for k in self._cache if k[0] == class_id]:
            del self._cache[key]

    def _difficulty(self, subject, teachers, candidate_count, block, co_teaching):
        difficulty = 0
        if block:
            difficulty += 60
        if co_teaching:
            difficulty += 40
        difficulty += (10 - min(len(self.data.qualified_teachers(subject.id)), 10)) * 8
        difficulty += max(0, 25 - candidate_count) * 3
        for t in teachers:
            teacher = self.data.teachers_by_id.get(t)
            if teacher is not None and teacher.available_times:
                difficulty += max(0, 25 - len(teacher.available_times)) * 2
        difficulty += subject.weekly_hours * 2
        return difficulty

    def build_tasks(self, tier=LOW):
        tasks = []
        self._unplaceable = []
        for class_id, subject_id, needed in self.backlog():
            options = self.teacher_options(class_id, subject_id)
            if not options:
                self._unplaceable.append((class_id, subject_id, needed))
                continue
            subject = self.data.subjects_by_id[subject_id]
            teachers = options[0]
            block = needed >= 2 and self.checker.is_block(subject_id, teachers, tier)
            co_teaching = subject.requires_co_teaching or len(teachers) > 1
            count = len(self._candidates(class_id, subject_id, teachers, tier, block))

            difficulty = self._difficulty(subject, teachers, count, block, co_teaching)
            priority = (subject.priority * 15 + difficulty + subject.weekly_hours * 3
                        + max(0, 30 - count) * 4 + self.data.classes_by_id[class_id].rank + needed * 5)
            if block:
                priority += BLOCK_BONUS
            if co_teaching:
                priority += CO_TEACHING_BONUS
            tasks.append(PlacementTask(class_id, subject_id, options, needed, count, difficulty, priority, block))

        tasks.sort(key=lambda t: (-t.priority, t.class_id, t.subject_id))
        return tasks

    # --- 落子与回溯 ---

    def _try_task(self, task, tier):
        reason = "no_available_slots"
        detail = ""
        for teachers in task.teacher_options:
            block = task.needed >= 2 and self.checker.is_block(task.subject_id, teachers, tier)
            for cand in self._candidates(task.class_id, task.subject_id, teachers, tier, block):
                if (task.class_id, task.subject_id, cand.day, cand.period) in self._tabu:
                    continue
                decision = self.checker.evaluate(task.class_id, cand.day, cand.period,
                                                 task.subject_id, teachers, tier, block)
                if not decision:
                    reason = "constraint_conflict"
                    detail = decision.rule
                    continue
                self._commit(task, teachers, cand, block)
                return True, None, ""
        return False, reason, detail

    def _commit(self, task, teachers, cand, block):
        cells = build_slots(
            cand.day, cand.period, task.subject_id, teachers, block=block, source=SOURCE_SEARCH,
            main_teacher=teachers[0], co_teachers=list(teachers[1:]),
        )
        record = PlacementRecord(task.class_id, cells, score=cand.score, task_key=task.key)
        record.apply(self.schedule, self.tracker)
        self.history.push(record)
        self._invalidate(task.class_id)

    def _backtrack(self):
        if self._backtrack_steps >= self.max_backtrack_steps:
            logger.warning(f"回溯次数达到上限 {self.max_backtrack_steps}")
            return False
        recent = self.history.recent(self.backtrack_window)
        if not recent:
            return False
        worst = min(recent, key=lambda r: r.score)
        worst.undo(self.schedule, self.tracker)
        self.history.remove(worst)
        self._tabu.append((worst.class_id, worst.subject, worst.day, worst.period))
        self._cache.clear()
        self._backtrack_steps += 1
        self.analysis.backtrack_count += 1
        logger.debug(f"回溯: 撤销 {worst}")
        return True

    def _greedy_pass(self, tier):
        """不再回溯，把还能放下的课都放进去"""
        self._tabu.clear()
        self._cache.clear()
        placed = 0
        while True:
            if self.cancel_token is not None and self.cancel_token.cancelled:
                break
            for task in self.build_tasks(tier):
                ok, _, _ = self._try_task(task, tier)
                if ok:
                    placed += 1
                    break
            else:
                break
        return placed

    def _remaining(self):
        return sum(needed for _, _, needed in self.backlog())

    def _report_progress(self, tier, iteration):
        if self.on_progress is None:
            return
        self.on_progress({
            "stage": "search",
            "tier": TIER_NAMES.get(tier),
            "iteration": iteration,
            "remaining": self._remaining(),
            "backtracks": self.analysis.backtrack_count,
        })

    def run(self, tier=LOW):
        self._backtrack_steps = 0
        self._cache.clear()
        self._tabu.clear()
        max_iterations = self.max_iterations or self._remaining() * 3 + 150
        logger.info(f"开始排课 (约束等级: {TIER_NAMES.get(tier)}, 待排 {self._remaining()} 节, 最多 {max_iterations} 轮)")

        iteration = 0
        status = STATUS_FAIL
        while iteration < max_iterations:
            if self.cancel_token is not None and self.cancel_token.cancelled:
                logger.info("排课已取消")
                status = STATUS_CANCELLED
                break
            iteration += 1

            tasks = self.build_tasks(tier)
            if not tasks:
                status = STATUS_FAIL if self._unplaceable else STATUS_SUCCESS
                break

            placed = False
            for task in tasks:
                self.analysis.total_attempts += 1
                started = time.perf_counter()
                ok, reason, detail = self._try_task(task, tier)
                if ok:
                    self.analysis.successful_placements += 1
                    self.analysis.total_placement_time += time.perf_counter() - started
                    placed = True
                    break
                self.analysis.failed_placements += 1
                self.analysis.record_violation(task.class_id, task.subject_id, reason, task.candidate_count, detail)

            if not placed and not self._backtrack():
                logger.warning(f"第 {iteration} 轮无可排任务且无法回溯，停止")
                break

            if iteration % self.progress_interval == 0:
                self._report_progress(tier, iteration)
        else:
            logger.warning(f"达到最大轮数 {max_iterations}，停止")

        if status == STATUS_FAIL:
            refilled = self._greedy_pass(tier)
            if refilled:
                logger.info(f"回溯结束后补排 {refilled} 节")
            if self._remaining() == 0:
                status = STATUS_SUCCESS

        for class_id, subject_id, needed in self._unplaceable:
            self.analysis.record_violation(class_id, subject_id, "no_qualified_teacher", 0,
                                           f"缺少 {needed} 节，没有可任教的老师")

        self.iterations += iteration
        logger.info(f"排课结束: {status}, 共 {iteration} 轮, 回溯 {self._backtrack_steps} 次, 剩余 {self._remaining()} 节")
        return status
