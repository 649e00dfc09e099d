import uuid
from decimal import Decimal
from sqlalchemy import Numeric
from extensions import db
from utils.clock import utcnow


class MiningSession(db.Model):
    __tablename__ = 'mining_sessions'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = db.Column(db.String(64), db.ForeignKey('users.id'), nullable=False, index=True)
    start_time = db.Column(db.DateTime, default=utcnow, nullable=False)
    end_time = db.Column(db.DateTime, nullable=True)  # 停止或对账关闭时设置
    earnings = db.Column(Numeric(20, 8), default=Decimal('0'), nullable=False)  # 已落库的累计收益
    hash_rate = db.Column(Numeric(10, 2), default=Decimal('0'))
    efficiency = db.Column(Numeric(5, 2), default=Decimal('85'))
    checkpoint_seq = db.Column(db.Integer, default=0, nullable=False)  # 最后一次应用的 checkpoint 序号

    # 会话打开时等于 user_id，关闭后置空；唯一约束保证每个用户最多一个打开的会话
    open_slot = db.Column(db.String(64), unique=True, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    user = db.relationship('User', back_populates='mining_sessions')

    __table_args__ = (
        db.Index('ix_mining_sessions_user_start', 'user_id', 'start_time'),
    )

    @property
    def is_open(self):
        return self.end_time is None

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'startTime': self.start_time.isoformat() if self.start_time else None,
            'endTime': self.end_time.isoformat() if self.end_time else None,
            'earnings': str(self.earnings),
            'hashRate': float(self.hash_rate or 0),
            'efficiency': float(self.efficiency or 0),
        }
