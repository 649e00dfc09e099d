from flask import Blueprint, request, jsonify
from decimal import Decimal
from models import MiningSession
from utils.clock import utcnow
from utils.errors import ValidationError
from utils.mining_node import get_engine
from utils.request_params import clean_str, json_body
from utils.reconciliation import reconcile_user
from utils.user_service import get_user

mining_bp = Blueprint('mining', __name__, url_prefix='/api/mining')


def _client_ip():
    return request.headers.get('X-Forwarded-For', request.remote_addr or '').split(',')[0].strip() or None


def _user_id_from_request():
    if request.method == 'GET':
        return clean_str(request.args.get('user_id'), 'user_id')
    return clean_str(json_body().get('user_id'), 'user_id')


@mining_bp.route('/start', methods=['POST'])
def mining_start():
    user_id = _user_id_from_request()
    node = get_engine().start_session(user_id, _client_ip(), request.headers.get('User-Agent'))

    status = node.anti_cheat_status
    return jsonify({
        "success": True,
        "sessionId": node.session_id,
        "startTime": node.start_time.isoformat(),
        "currentRate": str(node.rate),
        "antiCheat": status.to_dict() if status else None,
        "message": "Mining session started successfully"
    })


@mining_bp.route('/stop', methods=['POST'])
def mining_stop():
    user_id = _user_id_from_request()
    result = get_engine().stop_session(user_id)

    return jsonify({
        "success": True,
        "sessionId": result['sessionId'],
        "earnings": str(result['earnings']),
        "durationSeconds": result['durationSeconds'],
        "message": "Mining session stopped successfully"
    })


@mining_bp.route('/status', methods=['GET'])
def mining_status():
    user_id = _user_id_from_request()
    return jsonify({"success": True, **get_engine().get_display_state(user_id)})


@mining_bp.route('/reconcile', methods=['POST'])
def mining_reconcile():
    # 页面刷新 / 客户端恢复时调用
    user_id = _user_id_from_request()
    result = reconcile_user(get_engine(), user_id)
    return jsonify({"success": True, **result.to_dict()})


@mining_bp.route('/sessions', methods=['GET'])
def mining_sessions():
    user_id = _user_id_from_request()
    get_user(user_id)
    try:
        limit = min(max(int(request.args.get('limit', 10)), 1), 100)
    except ValueError:
        raise ValidationError("limit must be an integer")

    sessions = MiningSession.query.filter_by(user_id=user_id)\
        .order_by(MiningSession.start_time.desc()).limit(limit).all()
    return jsonify({"success": True, "sessions": [s.to_dict() for s in sessions]})


@mining_bp.route('/stats', methods=['GET'])
def mining_stats():
    user_id = _user_id_from_request()
    get_user(user_id)

    sessions = MiningSession.query.filter_by(user_id=user_id).all()
    now = utcnow()

    total_earnings = sum((s.earnings or Decimal('0') for s in sessions), Decimal('0'))
    avg_efficiency = (
        sum(float(s.efficiency or 0) for s in sessions) / len(sessions) if sessions else 0
    )
    total_seconds = sum(
        max(0, int(((s.end_time or now) - s.start_time).total_seconds())) for s in sessions
    )

    return jsonify({
        "success": True,
        "stats": {
            "totalSessions": len(sessions),
            "totalEarnings": str(total_earnings),
            "averageEfficiency": round(avg_efficiency, 2),
            "totalMiningTime": total_seconds  # 秒
        }
    })
