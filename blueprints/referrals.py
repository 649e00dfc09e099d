from flask import Blueprint, request, jsonify, current_app
from models import ReferralEarningsLog, User
from utils.request_params import clean_str, json_body
from utils.settlement import bind_referral as settle_referral_binding
from utils.user_service import get_user

referrals_bp = Blueprint('referrals', __name__, url_prefix='/api/referrals')


@referrals_bp.route('/bind', methods=['POST'])
def bind_referral():
    data = json_body()
    user_id = clean_str(data.get('user_id'), 'user_id')
    referral_code = clean_str(data.get('referral_code'), 'referral_code', upper=True)

    result = settle_referral_binding(user_id, referral_code)
    current_app.logger.info(f"User {user_id} bound referral code {referral_code}")
    return jsonify({"success": True, **result, "message": "Referral bound successfully"})


@referrals_bp.route('/stats', methods=['GET'])
def get_referral_stats():
    user_id = clean_str(request.args.get('user_id'), 'user_id')

    user = get_user(user_id)

    # 1. 邀请的用户
    referred = User.query.filter_by(referred_by=user_id).order_by(User.created_at.desc()).all()

    # 2. 最近的分成记录
    recent_logs = ReferralEarningsLog.query.filter_by(referrer_id=user_id)\
        .order_by(ReferralEarningsLog.created_at.desc(), ReferralEarningsLog.id.desc()).limit(20).all()

    return jsonify({
        "success": True,
        "data": {
            "referralCode": user.referral_code,
            "totalReferrals": user.total_referrals,
            "totalEarnings": str(user.referral_earnings),
            "referredUsers": [{
                "id": u.id,
                "username": u.username,
                "accountAge": float(u.account_age or 0),
                "totalEarned": str(u.total_earned)
            } for u in referred],
            "recentEarnings": [log.to_dict() for log in recent_logs]
        }
    })
