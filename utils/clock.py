from datetime import datetime, timezone


def utcnow():
    """数据库统一存 naive UTC 时间"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
