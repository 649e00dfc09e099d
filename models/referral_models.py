from sqlalchemy import Numeric
from extensions import db
from utils.clock import utcnow


class ReferralEarningsLog(db.Model):
    # 只追加的审计记录，不修改不删除
    __tablename__ = 'referral_earnings_log'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    referrer_id = db.Column(db.String(64), db.ForeignKey('users.id'), nullable=False, index=True)
    referred_id = db.Column(db.String(64), db.ForeignKey('users.id'), nullable=False, index=True)
    earning_type = db.Column(db.String(32), nullable=False)  # mining / task_completion / referral_signup
    base_amount = db.Column(Numeric(20, 8), nullable=False)
    referral_amount = db.Column(Numeric(20, 8), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'referrerId': self.referrer_id,
            'referredId': self.referred_id,
            'earningType': self.earning_type,
            'baseAmount': str(self.base_amount),
            'referralAmount': str(self.referral_amount),
            'createdAt': self.created_at.isoformat() if self.created_at else None,
        }
