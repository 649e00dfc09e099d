import random
from decimal import Decimal
from utils.errors import ValidationError

BASE_MINING_RATE = Decimal('0.5')  # 每分钟基础产出
SECONDS_PER_MINUTE = Decimal('60')


def calculate_multiplier(account_age):
    """
    根据账号年龄（年）计算倍率，区间左闭右开
    :param account_age: 账号年龄，单位年
    :return: Decimal 倍率 (>= 1)
    """
    age = Decimal(str(account_age))
    if not age.is_finite():
        raise ValidationError("account_age must be a finite number")
    if age < 0:
        raise ValidationError("account_age must be >= 0")

    if age < 1:
        return Decimal('1.0')
    elif age < 2:
        return Decimal('1.2')
    elif age < 3:
        return Decimal('1.5')
    elif age < 4:
        return Decimal('2.0')
    elif age < 5:
        return Decimal('2.5')
    elif age < 6:
        return Decimal('3.5')
    elif age < 7:
        return Decimal('5.0')
    elif age < 8:
        return Decimal('7.0')
    return Decimal('10.0')


def clamp_efficiency(value):
    efficiency = Decimal(str(value))
    if efficiency < 0:
        return Decimal('0')
    if efficiency > 1:
        return Decimal('1')
    return efficiency


def calculate_mining_rate(user, anti_cheat_status=None, base_rate=BASE_MINING_RATE):
    """
    每分钟挖矿速率 = 基础速率 * 账号倍率 * 防作弊效率
    纯函数，不访问数据库
    :param user: 任何带 multiplier 属性的对象
    :param anti_cheat_status: AntiCheatStatus 或 None（None 视为无惩罚）
    """
    multiplier = Decimal(str(user.multiplier))
    if multiplier < 1:
        raise ValidationError(f"multiplier must be >= 1, got {multiplier}")

    efficiency = Decimal('1')
    if anti_cheat_status is not None:
        efficiency = clamp_efficiency(anti_cheat_status.efficiency_multiplier)

    return Decimal(str(base_rate)) * multiplier * efficiency


def calculate_hash_rate(account_age):
    # 仅用于展示：100 + 年龄*15，±20% 波动
    base_hash_rate = 100 + float(account_age or 0) * 15
    variance = 0.8 + random.random() * 0.4
    return Decimal(str(round(base_hash_rate * variance, 2)))


def calculate_efficiency():
    # 仅用于展示：85%-100%
    return Decimal(str(round(85 + random.random() * 15, 2)))


def calculate_initial_balance(account_age, multiplier):
    """新用户初始余额：(50 + 年龄*25 + (倍率-1)*100) * 2，向下取整"""
    base_amount = Decimal('50')
    age_bonus = Decimal(str(account_age)) * 25
    multiplier_bonus = (Decimal(str(multiplier)) - 1) * 100
    return Decimal(int((base_amount + age_bonus + multiplier_bonus) * 2))


def calculate_welcome_bonus(account_age, multiplier):
    """使用邀请码的新用户奖励：年龄*25*倍率*2，向下取整"""
    return Decimal(int(Decimal(str(account_age)) * 25 * Decimal(str(multiplier)) * 2))
