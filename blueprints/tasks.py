from flask import Blueprint, request, jsonify, current_app
from utils.mining_node import get_engine
from utils.request_params import clean_str, json_body
from utils.task_service import list_tasks_with_progress
from utils.user_service import get_user

tasks_bp = Blueprint('tasks', __name__, url_prefix='/api/tasks')


@tasks_bp.route('', methods=['GET'])
def get_tasks():
    user_id = clean_str(request.args.get('user_id'), 'user_id')

    return jsonify({"success": True, "tasks": list_tasks_with_progress(user_id)})


@tasks_bp.route('/<task_id>/complete', methods=['POST'])
def complete_task(task_id):
    user_id = clean_str(json_body().get('user_id'), 'user_id')

    result = get_engine().complete_task(user_id, task_id)
    current_app.logger.info(f"User {user_id} completed task {task_id}, reward {result.amount}")
    user = get_user(user_id)

    return jsonify({
        "success": True,
        "reward": str(result.amount),
        "referralBonus": str(result.referral_bonus),
        "user": user.to_dict(),
        "message": f"Task completed! Earned {result.amount} CORD"
    })
