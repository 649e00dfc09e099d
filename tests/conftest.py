from datetime import timedelta
from decimal import Decimal

import pytest
from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.exc import OperationalError

from app import create_app
from extensions import db
from models import MiningSession, User
from utils.clock import utcnow
from utils.task_service import seed_tasks
from utils.user_service import create_user


@pytest.fixture
def app():
    # scheduler 不启动：定时任务只登记不运行，测试里直接调用 tick / checkpoint
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'BASE_MINING_RATE': '0.5',
        'CHECKPOINT_FAILURE_POLICY': 'retry',
        'ANTICHEAT_SERVICE_URL': None,
    }, scheduler=BackgroundScheduler())

    with app.app_context():
        db.create_all()
        seed_tasks()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def engine(app):
    return app.extensions['mining_engine']


@pytest.fixture
def make_user(app):
    def _make_user(user_id, account_age=0, referred_by=None):
        user = create_user(user_id, f"user-{user_id}", account_age=account_age)
        if referred_by:
            user.referred_by = referred_by
            db.session.commit()
        return db.session.get(User, user_id)
    return _make_user


@pytest.fixture
def open_session(app):
    """直接写入一个未结束的会话，并置位 is_node_active"""
    def _open_session(user_id, earnings=Decimal('0'), started_minutes_ago=5, flag=True):
        start = utcnow() - timedelta(minutes=started_minutes_ago)
        session = MiningSession(
            user_id=user_id,
            start_time=start,
            earnings=earnings,
            checkpoint_seq=0,
            open_slot=user_id
        )
        db.session.add(session)
        user = db.session.get(User, user_id)
        user.is_node_active = flag
        user.node_start_time = start if flag else None
        db.session.commit()
        return session
    return _open_session


@pytest.fixture
def failing_commit(app, monkeypatch):
    """enable() 之后 commit 抛 OperationalError，restore() 恢复"""
    session_cls = type(db.session())
    original = session_cls.commit

    class _FailingCommit:
        calls = 0

        def enable(self):
            def _commit(session_self):
                _FailingCommit.calls += 1
                raise OperationalError("COMMIT", {}, Exception("database is unavailable"))
            monkeypatch.setattr(session_cls, 'commit', _commit)

        def restore(self):
            monkeypatch.setattr(session_cls, 'commit', original)

    return _FailingCommit()
