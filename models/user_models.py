from decimal import Decimal
from sqlalchemy import ForeignKey, Numeric
from sqlalchemy.orm import relationship
from extensions import db
from utils.clock import utcnow

MONEY = Numeric(20, 8)


class User(db.Model):
    # 用户余额记录：余额字段只允许结算服务修改
    __tablename__ = 'users'

    id = db.Column(db.String(64), primary_key=True)
    username = db.Column(db.String(255), unique=True, nullable=False)
    discriminator = db.Column(db.String(10), nullable=True)
    avatar = db.Column(db.String(255), nullable=True)

    account_age = db.Column(Numeric(10, 2), default=Decimal('0'), nullable=False)
    multiplier = db.Column(Numeric(10, 2), default=Decimal('1.0'), nullable=False)  # 创建时确定，之后不变

    current_balance = db.Column(MONEY, default=Decimal('0'), nullable=False)
    total_earned = db.Column(MONEY, default=Decimal('0'), nullable=False)
    weekly_earnings = db.Column(MONEY, default=Decimal('0'), nullable=False)
    monthly_earnings = db.Column(MONEY, default=Decimal('0'), nullable=False)

    referral_code = db.Column(db.String(50), unique=True, nullable=True)
    referred_by = db.Column(db.String(64), ForeignKey('users.id'), nullable=True)
    referral_earnings = db.Column(MONEY, default=Decimal('0'), nullable=False)
    total_referrals = db.Column(db.Integer, default=0, nullable=False)

    is_node_active = db.Column(db.Boolean, default=False, nullable=False)
    node_start_time = db.Column(db.DateTime, nullable=True)  # 仅在 is_node_active 为 True 时有值

    tasks_completed = db.Column(db.Integer, default=0, nullable=False)
    daily_checkin_claimed = db.Column(db.Boolean, default=False, nullable=False)
    last_login_time = db.Column(db.DateTime, default=utcnow)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    referrer = relationship('User', remote_side=[id], backref='referred_users')
    mining_sessions = relationship('MiningSession', back_populates='user', lazy='dynamic')
    user_tasks = relationship('UserTask', back_populates='user', lazy='dynamic')

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'discriminator': self.discriminator,
            'avatar': self.avatar,
            'accountAge': float(self.account_age or 0),
            'multiplier': float(self.multiplier or 1),
            'currentBalance': str(self.current_balance),
            'totalEarned': str(self.total_earned),
            'weeklyEarnings': str(self.weekly_earnings),
            'monthlyEarnings': str(self.monthly_earnings),
            'referralCode': self.referral_code,
            'referredBy': self.referred_by,
            'referralEarnings': str(self.referral_earnings),
            'totalReferrals': self.total_referrals,
            'isNodeActive': self.is_node_active,
            'nodeStartTime': self.node_start_time.isoformat() if self.node_start_time else None,
            'tasksCompleted': self.tasks_completed,
            'dailyCheckInClaimed': self.daily_checkin_claimed,
            'lastLoginTime': self.last_login_time.isoformat() if self.last_login_time else None,
        }


class PointsHistory(db.Model):
    __tablename__ = 'points_history'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), db.ForeignKey('users.id'), nullable=False, index=True)
    change_type = db.Column(db.String(60), nullable=False)
    change_amount = db.Column(MONEY, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    description = db.Column(db.String(255), nullable=True)

    user = db.relationship('User', backref='points_history')
