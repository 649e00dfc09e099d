from decimal import Decimal
from extensions import db, logger
from models import Task, UserTask, TaskTypeEnum
from utils.user_service import get_user

DEFAULT_TASKS = [
    {
        'id': 'daily-checkin',
        'title': 'Daily Check-in',
        'description': 'Claim your daily login bonus',
        'reward': Decimal('50'),
        'type': TaskTypeEnum.daily,
        'max_progress': 1,
    },
    {
        'id': 'mine-1-hour',
        'title': 'Mine for 1 Hour',
        'description': 'Keep your mining node active for 1 hour',
        'reward': Decimal('100'),
        'type': TaskTypeEnum.daily,
        'max_progress': 3600,  # 秒
    },
    {
        'id': 'weekly-mining',
        'title': 'Weekly Mining Goal',
        'description': 'Earn 1000 CORD this week',
        'reward': Decimal('200'),
        'type': TaskTypeEnum.weekly,
        'max_progress': 1000,
    },
    {
        'id': 'invite-friends',
        'title': 'Invite 3 Friends',
        'description': 'Refer 3 friends to CordNode',
        'reward': Decimal('500'),
        'type': TaskTypeEnum.achievement,
        'max_progress': 3,
    },
    {
        'id': 'early-adopter',
        'title': 'Early Adopter',
        'description': 'Account older than 5 years',
        'reward': Decimal('1000'),
        'type': TaskTypeEnum.achievement,
        'max_progress': 1,
    },
    {
        'id': 'follow-twitter',
        'title': 'Follow on Twitter',
        'description': 'Follow @CordNode on Twitter',
        'reward': Decimal('100'),
        'type': TaskTypeEnum.social,
        'max_progress': 1,
        'social_url': 'https://twitter.com/cordnode',
    },
    {
        'id': 'join-discord',
        'title': 'Join Discord',
        'description': 'Join our Discord community',
        'reward': Decimal('100'),
        'type': TaskTypeEnum.social,
        'max_progress': 1,
        'social_url': 'https://discord.gg/cordnode',
    },
    {
        'id': 'social-media-master',
        'title': 'Social Media Master',
        'description': 'Complete all social media tasks',
        'reward': Decimal('300'),
        'type': TaskTypeEnum.achievement,
        'max_progress': 2,  # 社交任务数量
    },
]


def seed_tasks():
    """任务表为空时写入默认任务，返回写入数量"""
    if Task.query.count() > 0:
        return 0
    for data in DEFAULT_TASKS:
        db.session.add(Task(**data))
    db.session.commit()
    logger.info(f"[seed_tasks] {len(DEFAULT_TASKS)} default tasks seeded")
    return len(DEFAULT_TASKS)


def list_tasks_with_progress(user_id):
    user = get_user(user_id)
    tasks = Task.query.filter_by(is_active=True).order_by(Task.type, Task.id).all()
    progress_map = {ut.task_id: ut for ut in UserTask.query.filter_by(user_id=user_id).all()}
    multiplier = Decimal(str(user.multiplier))

    result = []
    for task in tasks:
        user_task = progress_map.get(task.id)
        result.append({
            'id': task.id,
            'title': task.title,
            'description': task.description,
            'reward': str(task.reward * multiplier),
            'type': task.type.value,
            'completed': bool(user_task and user_task.completed),
            'progress': user_task.progress if user_task else 0,
            'maxProgress': task.max_progress,
            'socialUrl': task.social_url,
            'expiresAt': task.expires_at.isoformat() if task.expires_at else None,
            'claimedAt': user_task.claimed_at.isoformat() if user_task and user_task.claimed_at else None,
        })
    return result
