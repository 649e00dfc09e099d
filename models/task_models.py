from decimal import Decimal
from enum import Enum
from sqlalchemy import Numeric, UniqueConstraint
from extensions import db
from utils.clock import utcnow


class TaskTypeEnum(Enum):
    daily = "daily"
    weekly = "weekly"
    social = "social"
    achievement = "achievement"


class Task(db.Model):
    # 任务目录（全局模板），用户进度在 UserTask
    __tablename__ = 'tasks'

    id = db.Column(db.String(255), primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    reward = db.Column(Numeric(20, 8), nullable=False)
    type = db.Column(db.Enum(TaskTypeEnum), nullable=False, index=True)
    max_progress = db.Column(db.Integer, default=1, nullable=False)
    social_url = db.Column(db.String(500), nullable=True)
    expires_at = db.Column(db.DateTime, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)


class UserTask(db.Model):
    __tablename__ = 'user_tasks'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    user_id = db.Column(db.String(64), db.ForeignKey('users.id'), nullable=False)
    task_id = db.Column(db.String(255), db.ForeignKey('tasks.id'), nullable=False)
    completed = db.Column(db.Boolean, default=False, nullable=False)
    progress = db.Column(db.Integer, default=0, nullable=False)
    claimed_at = db.Column(db.DateTime, nullable=True)
    reward = db.Column(Numeric(20, 8), default=Decimal('0'), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    user = db.relationship('User', back_populates='user_tasks')
    task = db.relationship('Task')

    # (user_id, task_id) 是任务奖励的幂等键
    __table_args__ = (
        UniqueConstraint('user_id', 'task_id', name='uix_user_task'),
    )
