"""结算服务：唯一允许修改用户余额的地方

所有入口都在一个数据库事务内完成：锁行 -> 加余额 -> 邀请人分成 -> 审计日志。
任何一步失败整体回滚，并以 TransientStorageError 抛给调用方，调用方可用
相同幂等键重试（挖矿用 session_id + checkpoint_seq，任务用 user_id + task_id）。
"""
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_EVEN
from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from extensions import db, logger
from models import User, MiningSession, ReferralEarningsLog, Task, UserTask, PointsHistory
from utils.clock import utcnow
from utils.errors import (
    MiningError, ConflictError, AlreadyCompletedError, NotFoundError,
    TransientStorageError, ValidationError
)
from utils.mining_service import calculate_welcome_bonus

AMOUNT_QUANT = Decimal('0.00000001')
DEFAULT_REFERRAL_RATE = Decimal('0.10')
DAILY_CHECKIN_TASK_ID = 'daily-checkin'


class SettlementResult:

    def __init__(self, user_id, amount, new_balance=None, referral_bonus=Decimal('0'),
                 referrer_id=None, session_earnings=None, duplicate=False):
        self.user_id = user_id
        self.amount = amount
        self.new_balance = new_balance
        self.referral_bonus = referral_bonus
        self.referrer_id = referrer_id
        self.session_earnings = session_earnings
        self.duplicate = duplicate

    def to_dict(self):
        return {
            'userId': self.user_id,
            'amount': str(self.amount),
            'newBalance': str(self.new_balance) if self.new_balance is not None else None,
            'referralBonus': str(self.referral_bonus),
            'referrerId': self.referrer_id,
            'sessionEarnings': str(self.session_earnings) if self.session_earnings is not None else None,
            'duplicate': self.duplicate,
        }


def referral_rate():
    return Decimal(str(current_app.config.get('REFERRAL_RATE', DEFAULT_REFERRAL_RATE)))


def quantize_amount(value):
    return value.quantize(AMOUNT_QUANT, rounding=ROUND_HALF_EVEN)


def floor_amount(value):
    # 只舍不入，保证取走的金额不超过已累加的金额
    return value.quantize(AMOUNT_QUANT, rounding=ROUND_DOWN)


def parse_positive_amount(value, field='amount'):
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field} must be a decimal number")
    if not amount.is_finite():
        raise ValidationError(f"{field} must be finite")
    amount = quantize_amount(amount)
    if amount <= 0:
        raise ValidationError(f"{field} must be positive")
    return amount


def lock_user_with_referrer(user_id):
    """
    按 id 排序对用户及其邀请人加行锁，避免两个结算互相等待
    :return: (user, referrer or None)
    """
    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")

    ids = sorted({user_id, user.referred_by} - {None})
    locked = {
        u.id: u for u in
        User.query.filter(User.id.in_(ids)).order_by(User.id).with_for_update().populate_existing().all()
    }
    user = locked.get(user_id)
    if not user:
        raise NotFoundError("User not found")
    referrer = locked.get(user.referred_by) if user.referred_by else None
    return user, referrer


def credit_balance(user, amount, period_earnings=True):
    user.current_balance = (user.current_balance or Decimal('0')) + amount
    user.total_earned = (user.total_earned or Decimal('0')) + amount
    if period_earnings:
        user.weekly_earnings = (user.weekly_earnings or Decimal('0')) + amount
        user.monthly_earnings = (user.monthly_earnings or Decimal('0')) + amount


def cascade_referral(user, referrer, base_amount, earning_type):
    """给邀请人 10% 分成并写审计日志，返回分成金额"""
    if referrer is None:
        return Decimal('0')

    bonus = quantize_amount(base_amount * referral_rate())
    if bonus <= 0:
        return Decimal('0')

    credit_balance(referrer, bonus, period_earnings=False)
    referrer.referral_earnings = (referrer.referral_earnings or Decimal('0')) + bonus

    db.session.add(ReferralEarningsLog(
        referrer_id=referrer.id,
        referred_id=user.id,
        earning_type=earning_type,
        base_amount=base_amount,
        referral_amount=bonus
    ))
    return bonus


def apply_accrual(user_id, session_id, delta, checkpoint_seq=None):
    """
    在当前事务内应用一次挖矿 checkpoint，不提交
    checkpoint_seq 不大于会话已记录的序号时视为重复，直接返回 duplicate 结果
    """
    amount = parse_positive_amount(delta, 'delta')

    session = MiningSession.query.filter_by(id=session_id).with_for_update().populate_existing().first()
    if not session or session.user_id != user_id:
        raise NotFoundError("Mining session not found")
    if not session.is_open:
        raise ConflictError("Mining session already closed")

    if checkpoint_seq is not None and checkpoint_seq <= (session.checkpoint_seq or 0):
        logger.info(f"[settle_accrual] duplicate checkpoint {checkpoint_seq} for session {session_id}, skipped")
        return SettlementResult(user_id, amount, session_earnings=session.earnings, duplicate=True)

    user, referrer = lock_user_with_referrer(user_id)

    credit_balance(user, amount)
    session.earnings = (session.earnings or Decimal('0')) + amount
    if checkpoint_seq is not None:
        session.checkpoint_seq = checkpoint_seq

    bonus = cascade_referral(user, referrer, amount, 'mining')

    return SettlementResult(
        user_id, amount,
        new_balance=user.current_balance,
        referral_bonus=bonus,
        referrer_id=referrer.id if referrer else None,
        session_earnings=session.earnings
    )


def settle_accrual(user_id, session_id, delta, checkpoint_seq=None):
    """把一次挖矿收益原子地记入余额（含邀请分成）"""
    try:
        result = apply_accrual(user_id, session_id, delta, checkpoint_seq)
        db.session.commit()
    except MiningError:
        db.session.rollback()
        raise
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"[settle_accrual] user {user_id} session {session_id} failed: {e}")
        raise TransientStorageError("Failed to save mining progress") from e
    return result


def settle_task_reward(user_id, task_id, base_reward):
    """
    发放任务奖励：奖励 = 基础奖励 * 用户倍率
    同一 (user_id, task_id) 只能成功一次，第二次抛 AlreadyCompletedError
    """
    base = parse_positive_amount(base_reward, 'base_reward')

    try:
        user, referrer = lock_user_with_referrer(user_id)

        user_task = UserTask.query.filter_by(user_id=user_id, task_id=task_id)\
            .with_for_update().populate_existing().first()
        if user_task and user_task.completed:
            raise AlreadyCompletedError("Task already completed")

        task = db.session.get(Task, task_id)
        max_progress = task.max_progress if task else 1
        total_reward = quantize_amount(base * Decimal(str(user.multiplier)))
        now = utcnow()

        if not user_task:
            user_task = UserTask(user_id=user_id, task_id=task_id)
            db.session.add(user_task)
        user_task.completed = True
        user_task.progress = max_progress
        user_task.claimed_at = now
        user_task.reward = total_reward

        credit_balance(user, total_reward)
        user.tasks_completed = (user.tasks_completed or 0) + 1

        if task_id == DAILY_CHECKIN_TASK_ID:
            user.daily_checkin_claimed = True
            user.last_login_time = now

        bonus = cascade_referral(user, referrer, total_reward, 'task_completion')

        db.session.add(PointsHistory(
            user_id=user_id,
            change_type='task_completion',
            change_amount=total_reward,
            description=f"Task {task_id} completed"
        ))
        if bonus > 0:
            db.session.add(PointsHistory(
                user_id=referrer.id,
                change_type='referral_reward',
                change_amount=bonus,
                description=f"Referral share of {user_id} task {task_id}"
            ))

        db.session.commit()

    except MiningError:
        db.session.rollback()
        raise
    except IntegrityError as e:
        # 并发下另一个请求先插入了 user_task
        db.session.rollback()
        existing = UserTask.query.filter_by(user_id=user_id, task_id=task_id).first()
        if existing and existing.completed:
            raise AlreadyCompletedError("Task already completed") from e
        logger.error(f"[settle_task_reward] user {user_id} task {task_id} failed: {e}")
        raise TransientStorageError("Failed to complete task") from e
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"[settle_task_reward] user {user_id} task {task_id} failed: {e}")
        raise TransientStorageError("Failed to complete task") from e

    return SettlementResult(
        user_id, total_reward,
        new_balance=user.current_balance,
        referral_bonus=bonus,
        referrer_id=referrer.id if referrer else None
    )


def complete_task(user_id, task_id):
    """按任务目录的基础奖励完成任务"""
    task = Task.query.filter_by(id=task_id, is_active=True).first()
    if not task:
        raise NotFoundError("Task not found")
    if task.expires_at and task.expires_at <= utcnow():
        raise NotFoundError("Task expired")
    return settle_task_reward(user_id, task_id, task.reward)


def bind_referral(user_id, referral_code):
    """
    新用户绑定邀请码（只能绑定一次）
    新用户得到欢迎奖励，邀请人得到其 10%（取整），同一事务内完成
    """
    code = (referral_code or '').strip()
    if not code:
        raise ValidationError("referral_code is required")

    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    if user.referred_by:
        raise ConflictError("You have already used a referral code")

    referrer = User.query.filter_by(referral_code=code).first()
    if not referrer:
        raise ValidationError("Invalid referral code")
    if referrer.id == user.id:
        raise ValidationError("Cannot refer yourself")
    if referrer.referred_by == user.id:
        raise ValidationError("Circular referrals are not allowed")

    try:
        locked = {
            u.id: u for u in
            User.query.filter(User.id.in_(sorted([user.id, referrer.id])))
            .order_by(User.id).with_for_update().populate_existing().all()
        }
        user, referrer = locked[user_id], locked[referrer.id]
        if user.referred_by:
            raise ConflictError("You have already used a referral code")

        welcome_bonus = calculate_welcome_bonus(user.account_age, user.multiplier)
        referrer_bonus = Decimal(int(welcome_bonus * referral_rate()))

        user.referred_by = referrer.id
        credit_balance(user, welcome_bonus, period_earnings=False)

        credit_balance(referrer, referrer_bonus, period_earnings=False)
        referrer.referral_earnings = (referrer.referral_earnings or Decimal('0')) + referrer_bonus
        referrer.total_referrals = (referrer.total_referrals or 0) + 1

        # 金额为 0 时不写流水
        if welcome_bonus > 0:
            db.session.add(PointsHistory(
                user_id=user.id,
                change_type='welcome_bonus',
                change_amount=welcome_bonus,
                description=f"Joined with referral code {code}"
            ))
        if referrer_bonus > 0:
            db.session.add(ReferralEarningsLog(
                referrer_id=referrer.id,
                referred_id=user.id,
                earning_type='referral_signup',
                base_amount=welcome_bonus,
                referral_amount=referrer_bonus
            ))
            db.session.add(PointsHistory(
                user_id=referrer.id,
                change_type='invite_reward',
                change_amount=referrer_bonus,
                description=f"Invited {user.username} get {referrer_bonus} points"
            ))
        db.session.commit()

    except MiningError:
        db.session.rollback()
        raise
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"[bind_referral] user {user_id} code {code} failed: {e}")
        raise TransientStorageError("Failed to process referral") from e

    return {
        'referrerId': referrer.id,
        'referrerBonus': str(referrer_bonus),
        'referredBonus': str(welcome_bonus)
    }
