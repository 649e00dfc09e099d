from flask import Blueprint, request, jsonify
from models import PointsHistory
from utils.errors import ValidationError
from utils.request_params import clean_str, json_body
from utils.user_service import create_user, get_user, update_user_profile

users_bp = Blueprint('users', __name__, url_prefix='/api/users')


@users_bp.route('', methods=['POST'])
def register_user():
    # 首次登录（OAuth 完成后由上层调用）
    data = json_body()
    user = create_user(
        user_id=clean_str(data.get('id'), 'id'),
        username=clean_str(data.get('username'), 'username'),
        account_age=data.get('account_age', 0),
        discriminator=clean_str(data.get('discriminator'), 'discriminator', required=False),
        avatar=clean_str(data.get('avatar'), 'avatar', required=False)
    )
    return jsonify({"success": True, "user": user.to_dict()}), 201


@users_bp.route('/<user_id>', methods=['GET'])
def get_user_detail(user_id):
    return jsonify({"success": True, "user": get_user(user_id).to_dict()})


@users_bp.route('/<user_id>', methods=['PATCH'])
def update_user(user_id):
    payload = request.get_json(silent=True)
    if payload is None:
        raise ValidationError("JSON body required")
    user = update_user_profile(user_id, payload)
    return jsonify({"success": True, "user": user.to_dict()})


@users_bp.route('/<user_id>/history', methods=['GET'])
def get_points_history(user_id):
    get_user(user_id)
    history = PointsHistory.query.filter_by(user_id=user_id)\
        .order_by(PointsHistory.created_at.desc(), PointsHistory.id.desc()).limit(50).all()

    return jsonify({
        "success": True,
        "history": [{
            'change_type': record.change_type,
            'change_amount': str(record.change_amount),
            'description': record.description,
            'created_at': record.created_at.isoformat()
        } for record in history]
    })
