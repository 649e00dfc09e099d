import secrets
from decimal import Decimal, InvalidOperation
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from extensions import db, logger
from models import User
from utils.clock import utcnow
from utils.errors import ConflictError, NotFoundError, TransientStorageError, ValidationError
from utils.mining_service import calculate_multiplier, calculate_initial_balance


class UserProfileUpdate:
    """
    允许通过资料接口修改的字段：字段名 -> (类型, 最大长度, 是否可为空)
    余额、倍率、节点状态等字段不在表内，只能由结算服务 / 会话状态机修改
    """
    FIELDS = {
        'username': (str, 255, False),
        'discriminator': (str, 10, True),
        'avatar': (str, 255, True),
    }

    def __init__(self, payload):
        if not isinstance(payload, dict) or not payload:
            raise ValidationError("update payload must be a non-empty object")

        unknown = sorted(set(payload) - set(self.FIELDS))
        if unknown:
            raise ValidationError(f"unknown or read-only fields: {', '.join(unknown)}")

        self.values = {}
        for name, value in payload.items():
            expected_type, max_len, nullable = self.FIELDS[name]
            if value is None:
                if not nullable:
                    raise ValidationError(f"{name} cannot be null")
            elif not isinstance(value, expected_type):
                raise ValidationError(f"{name} must be {expected_type.__name__}")
            elif max_len and len(value) > max_len:
                raise ValidationError(f"{name} must be at most {max_len} characters")
            elif name == 'username' and not value.strip():
                raise ValidationError("username cannot be empty")
            self.values[name] = value

    def apply(self, user):
        for name, value in self.values.items():
            setattr(user, name, value)


def generate_referral_code():
    return secrets.token_hex(4).upper()


def create_user(user_id, username, account_age=0, discriminator=None, avatar=None):
    """首次登录时创建用户：倍率按账号年龄确定，之后不再变化"""
    if not user_id or not username:
        raise ValidationError("user_id and username are required")
    try:
        age = Decimal(str(account_age))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError("account_age must be a number")
    if not age.is_finite():
        raise ValidationError("account_age must be a finite number")

    multiplier = calculate_multiplier(age)

    if db.session.get(User, user_id):
        raise ConflictError("User already exists")

    initial_balance = calculate_initial_balance(age, multiplier)
    now = utcnow()
    user = User(
        id=user_id,
        username=username,
        discriminator=discriminator,
        avatar=avatar,
        account_age=age,
        multiplier=multiplier,
        current_balance=initial_balance,
        total_earned=initial_balance,
        weekly_earnings=Decimal('0'),
        monthly_earnings=Decimal('0'),
        referral_earnings=Decimal('0'),
        referral_code=generate_referral_code(),
        last_login_time=now,
        created_at=now
    )
    try:
        db.session.add(user)
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        raise ConflictError("Username or referral code already taken") from e
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"[create_user] {user_id} failed: {e}")
        raise TransientStorageError("Failed to create user") from e

    logger.info(f"[create_user] {user_id} created, multiplier {multiplier}, initial balance {initial_balance}")
    return user


def get_user(user_id):
    user = db.session.get(User, user_id) if user_id else None
    if not user:
        raise NotFoundError("User not found")
    return user


def update_user_profile(user_id, payload):
    update = UserProfileUpdate(payload)
    user = get_user(user_id)
    update.apply(user)
    try:
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        raise ConflictError("Username already taken") from e
    except SQLAlchemyError as e:
        db.session.rollback()
        raise TransientStorageError("Failed to update user") from e
    return user
