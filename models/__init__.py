# 1. 显式导入所有模型类（供__all__和直接引用使用）
from extensions import db

from .user_models import User, PointsHistory
from .mining_models import MiningSession
from .referral_models import ReferralEarningsLog
from .task_models import Task, UserTask, TaskTypeEnum
from .anticheat_models import IpTrackingRecord

# 2. 定义__all__（控制from models import *的行为）
__all__ = [
    'User',
    'PointsHistory',
    'MiningSession',
    'ReferralEarningsLog',
    'Task',
    'UserTask',
    'TaskTypeEnum',
    'IpTrackingRecord'
]

# 3. 显式注册函数（确保Flask-Migrate能发现模型）
def register_models():
    """强制导入所有模型模块（触发SQLAlchemy注册）"""
    from . import user_models
    from . import mining_models
    from . import referral_models
    from . import task_models
    from . import anticheat_models
