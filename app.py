from flask import Flask, jsonify, request
from flask_cors import CORS
import logging

import scheduler
from auto_generator import CancellationToken, auto_generate
from error_handler import ScheduleError
from models import Schedule, TeacherHoursTracker
from reports import class_hours_frame, teacher_hours_frame
from validator import QualityScorer, Validator

# 配置日志系统
logging.basicConfig(
    filename='schedule_system.log',
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    encoding='utf-8'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app)

global_result = None
global_data = None
cancel_token = CancellationToken()


def _read_payload():
    payload = request.get_json(silent=True) or {}
    return payload.get('data', {}), payload.get('config', {})


def serialize_teacher_schedule(schedule, teacher_id):
    """按老师视角序列化课表: {day: {period: {class_id, subject}}}"""
    teacher_data = {day: {} for day in schedule.days}
    for class_id, day, period, slot in schedule.cells():
        if slot is not None and teacher_id in slot.teachers:
            teacher_data[day][str(period)] = {
                "class_id": class_id,
                "subject": slot.subject,
                "is_co_teaching": slot.is_co_teaching,
            }
    return teacher_data


@app.route('/api/generate', methods=['POST'])
def generate_schedule():
    global global_result, global_data

    data, config = _read_payload()
    logger.info(f"接收到排课请求 - 老师数: {len(data.get('teachers', []))}, 科目数: {len(data.get('subjects', []))}")

    try:
        result = scheduler.run_scheduler(data, config)
        if result['status'] == 'error':
            logger.warning(f"排课配置错误 - {result['message']}")
            return jsonify(result), 400

        global_result = result
        global_data = scheduler.load_data(data)
        if result['status'] != 'success':
            logger.warning(f"排课未完成 - {result.get('error_type')}: {result['message']}")
        return jsonify(scheduler.result_to_wire(result))
    except ScheduleError as e:
        logger.error(f"排课异常: {str(e)}", exc_info=True)
        return jsonify({"status": "error", "error_type": "schedule_error", "message": str(e)}), 400
    except Exception as e:
        logger.error(f"排课异常: {str(e)}", exc_info=True)
        return jsonify({
            "status": "error",
            "error_type": "system_error",
            "message": f"系统错误: {str(e)}"
        }), 500


@app.route('/api/auto-generate', methods=['POST'])
def auto_generate_schedule():
    global global_result, global_data

    data, config = _read_payload()
    cancel_token.reset()
    try:
        result = auto_generate(data, config, cancel_token)
        if result['status'] == 'error':
            return jsonify(result), 400
        if 'schedule' in result:
            global_result = result
            global_data = scheduler.load_data(data)
        return jsonify(scheduler.result_to_wire(result))
    except Exception as e:
        logger.error(f"自动排课异常: {str(e)}", exc_info=True)
        return jsonify({"status": "error", "error_type": "system_error", "message": str(e)}), 500


@app.route('/api/auto-generate/stop', methods=['POST'])
def stop_auto_generate():
    cancel_token.cancel()
    logger.info("收到停止自动排课请求")
    return jsonify({"status": "success", "message": "已发送停止信号"})


@app.route('/api/validate', methods=['POST'])
def validate_schedule():
    """校验前端传回的课表 (可以是手动调整过的)"""
    payload = request.get_json(silent=True) or {}
    try:
        data = scheduler.load_data(payload.get('data', {}))
        schedule = Schedule.from_wire(data, payload.get('schedule', {}))
        tracker = TeacherHoursTracker.from_schedule(data, schedule)
        config = scheduler.merge_config(payload.get('config'))
        validation = Validator(data, schedule, tracker, config['consecutive_hard_limit']).validate()
        quality = QualityScorer(config['max_consecutive'], config['consecutive_penalty'],
                                config['consecutive_overrides']).score(data, schedule)
        return jsonify({"status": "success", "validation": validation, "quality": quality})
    except ScheduleError as e:
        logger.warning(f"课表校验失败: {str(e)}")
        return jsonify({"status": "error", "message": str(e)}), 400


@app.route('/api/report', methods=['GET'])
def get_report():
    if not global_result or 'schedule' not in global_result:
        return jsonify({"status": "error", "message": "请先生成课表"}), 400

    teachers = teacher_hours_frame(global_data, global_result['tracker'])
    classes = class_hours_frame(global_data, global_result['schedule'])
    return jsonify({
        "status": "success",
        "stats": global_result['stats'],
        "teachers": teachers.to_dict(orient="records"),
        "classes": classes.to_dict(orient="records"),
    })


@app.route('/api/teacher_view', methods=['POST'])
def get_teacher_view():
    """获取指定老师的课表视图"""
    if not global_result or 'schedule' not in global_result:
        return jsonify({"status": "error", "message": "没有可用的课表"}), 400

    data = request.get_json(silent=True) or {}
    teacher_id = str(data.get('teacher_id', '')).strip()
    if not teacher_id:
        return jsonify({"status": "error", "message": "请提供老师编号"}), 400

    return jsonify({
        "status": "success",
        "teacher_id": teacher_id,
        "schedule": serialize_teacher_schedule(global_result['schedule'], teacher_id)
    })


if __name__ == '__main__':
    app.run(debug=True, port=5000, threaded=True)
