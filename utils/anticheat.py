"""防作弊分类器

按 (用户, IP) 给出效率系数 [0,1] 和惩罚等级。分类器失败或超时时
safe_classify 回退为无惩罚（效率 1.0），不阻塞挖矿。
"""
import requests
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from extensions import db, logger
from models import IpTrackingRecord
from utils.clock import utcnow

# 惩罚等级 -> 效率系数
PENALTY_EFFICIENCY = {
    0: 1.0,
    1: 0.75,  # 同一家庭共享 IP
    2: 0.5,   # 多账号
    3: 0.3,   # 明显多开
    4: 0.1,   # 严重多开
}

PENALTY_DESCRIPTIONS = {
    0: 'No penalties',
    1: 'Light penalty (25% reduction) - Shared household detected',
    2: 'Moderate penalty (50% reduction) - Multiple accounts detected',
    3: 'High penalty (70% reduction) - Significant multi-accounting',
    4: 'Severe penalty (90% reduction) - Extreme multi-accounting',
}


class AntiCheatStatus:

    def __init__(self, efficiency_multiplier=1.0, penalty_level=0, total_users_on_ip=1,
                 warning_message=None):
        self.efficiency_multiplier = efficiency_multiplier
        self.penalty_level = penalty_level
        self.total_users_on_ip = total_users_on_ip
        self.warning_message = warning_message

    @classmethod
    def no_penalty(cls):
        return cls()

    @property
    def other_users_on_ip(self):
        return max(0, self.total_users_on_ip - 1)

    @property
    def should_warn(self):
        return self.penalty_level > 0 or self.other_users_on_ip > 0

    def to_dict(self):
        return {
            'efficiencyMultiplier': self.efficiency_multiplier,
            'penaltyLevel': self.penalty_level,
            'totalUsersOnIp': self.total_users_on_ip,
            'otherUsersOnIp': self.other_users_on_ip,
            'warningMessage': self.warning_message,
        }


def penalty_level_for(users_on_ip):
    if users_on_ip >= 10:
        return 4
    elif users_on_ip >= 5:
        return 3
    elif users_on_ip >= 3:
        return 2
    elif users_on_ip >= 2:
        return 1
    return 0


class IpAntiCheatClassifier:
    """根据同一 IP 上出现的不同用户数判定多开"""

    def track(self, user_id, ip_address, user_agent=None):
        if not ip_address:
            return
        try:
            record = IpTrackingRecord.query.filter_by(user_id=user_id, ip_address=ip_address).first()
            if record:
                record.seen_count += 1
                record.last_seen = utcnow()
            else:
                db.session.add(IpTrackingRecord(
                    user_id=user_id,
                    ip_address=ip_address,
                    user_agent=(user_agent or '')[:255] or None
                ))
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

    def classify(self, user_id, ip_address=None):
        if not ip_address:
            latest = IpTrackingRecord.query.filter_by(user_id=user_id)\
                .order_by(IpTrackingRecord.last_seen.desc()).first()
            if not latest:
                return AntiCheatStatus.no_penalty()
            ip_address = latest.ip_address

        users_on_ip = db.session.query(func.count(func.distinct(IpTrackingRecord.user_id)))\
            .filter(IpTrackingRecord.ip_address == ip_address).scalar() or 0
        users_on_ip = max(users_on_ip, 1)

        level = penalty_level_for(users_on_ip)
        return AntiCheatStatus(
            efficiency_multiplier=PENALTY_EFFICIENCY[level],
            penalty_level=level,
            total_users_on_ip=users_on_ip,
            warning_message=PENALTY_DESCRIPTIONS[level] if level > 0 else None
        )


class HttpAntiCheatClassifier:
    """外部防作弊服务，POST {base_url}/classify"""

    def __init__(self, base_url, timeout=3):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

    def track(self, user_id, ip_address, user_agent=None):
        if not ip_address:
            return
        resp = requests.post(
            f"{self.base_url}/track",
            json={"user_id": user_id, "ip_address": ip_address, "user_agent": user_agent},
            timeout=self.timeout
        )
        resp.raise_for_status()

    def classify(self, user_id, ip_address=None):
        resp = requests.post(
            f"{self.base_url}/classify",
            json={"user_id": user_id, "ip_address": ip_address},
            timeout=self.timeout
        )
        resp.raise_for_status()
        data = resp.json()
        return AntiCheatStatus(
            efficiency_multiplier=float(data.get('efficiency_multiplier', 1.0)),
            penalty_level=int(data.get('penalty_level', 0)),
            total_users_on_ip=int(data.get('total_users_on_ip', 1)),
            warning_message=data.get('warning_message')
        )


def build_classifier(config):
    url = config.get('ANTICHEAT_SERVICE_URL')
    if url:
        return HttpAntiCheatClassifier(url, timeout=config.get('ANTICHEAT_TIMEOUT_SECONDS', 3))
    return IpAntiCheatClassifier()


def safe_track(classifier, user_id, ip_address, user_agent=None):
    try:
        classifier.track(user_id, ip_address, user_agent)
    except (requests.RequestException, SQLAlchemyError) as e:
        logger.warning(f"[anticheat] track failed for {user_id}: {e}")


def safe_classify(classifier, user_id, ip_address=None):
    """分类失败时回退为无惩罚"""
    try:
        status = classifier.classify(user_id, ip_address)
    except (requests.RequestException, SQLAlchemyError, ValueError) as e:
        if isinstance(e, SQLAlchemyError):
            db.session.rollback()
        logger.warning(f"[anticheat] classify failed for {user_id}, falling back to no penalty: {e}")
        return AntiCheatStatus.no_penalty()

    if status.penalty_level > 0:
        logger.info(
            f"[anticheat] penalty applied to {user_id}: "
            f"{status.efficiency_multiplier * 100:.1f}% efficiency (level {status.penalty_level})"
        )
    return status
