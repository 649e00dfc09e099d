import threading
import time
from decimal import Decimal

import pytest
from apscheduler.schedulers.background import BackgroundScheduler

from app import create_app
from extensions import db
from models import MiningSession, ReferralEarningsLog, User
from utils.errors import ConflictError, NotFoundError, TransientStorageError
from utils.mining_node import MiningNode, NodeState
from utils.user_service import create_user


def _tick(node, times):
    for _ in range(times):
        node.tick()


def _job_ids(engine, user_id):
    return [job_id for job_id in engine._job_ids(user_id) if engine.scheduler.get_job(job_id)]


@pytest.fixture
def six_per_minute(engine):
    # 倍率 1.0 的用户每分钟 6
    engine.base_rate = Decimal('6')
    return engine


def test_node_accumulates_in_rate_seconds():
    node = MiningNode('n1')
    node.activate('s1', None, Decimal('6'))
    _tick(node, 10)

    assert node.unflushed_earnings() == Decimal('1')
    checkpoints = node.take_checkpoints()
    assert [(cp.seq, cp.amount) for cp in checkpoints] == [(1, Decimal('1.00000000'))]
    assert node.take_checkpoints() == []


def test_idle_node_does_not_tick():
    node = MiningNode('n2')
    assert node.tick() is False
    assert node.unflushed_earnings() == Decimal('0')


def test_remainder_stays_in_accumulator():
    node = MiningNode('n3')
    node.activate('s1', None, Decimal('0.0000001'))
    node.tick()

    # 0.0000001 / 60 不足 1e-8，留在累加器里
    assert node.take_checkpoints() == []
    _tick(node, 599)
    checkpoints = node.take_checkpoints()
    assert checkpoints[0].amount == Decimal('0.00000100')


def test_drain_rounds_down_and_never_overdraws():
    node = MiningNode('n4')
    node.activate('s1', None, Decimal('0.0000009'))
    node.tick()

    # 0.0000009 / 60 = 0.000000015，只取 0.00000001
    checkpoints = node.take_checkpoints()
    assert [cp.amount for cp in checkpoints] == [Decimal('0.00000001')]
    assert node.unflushed_earnings() >= 0
    assert node.unflushed_earnings() + checkpoints[0].amount == Decimal('0.0000009') / 60


def test_start_session_writes_session_and_flag(six_per_minute, make_user):
    make_user('m1')
    node = six_per_minute.start_session('m1')

    assert node.state is NodeState.ACTIVE
    assert node.rate == Decimal('6')
    user = db.session.get(User, 'm1')
    assert user.is_node_active
    assert user.node_start_time is not None

    session = db.session.get(MiningSession, node.session_id)
    assert session.is_open
    assert session.open_slot == 'm1'
    assert len(_job_ids(six_per_minute, 'm1')) == 3


def test_second_start_conflicts(six_per_minute, make_user):
    make_user('m2')
    six_per_minute.start_session('m2')

    with pytest.raises(ConflictError):
        six_per_minute.start_session('m2')
    assert MiningSession.query.filter_by(user_id='m2').count() == 1


def test_start_conflicts_with_open_session_in_storage(engine, make_user, open_session):
    make_user('m3')
    open_session('m3')

    with pytest.raises(ConflictError):
        engine.start_session('m3')
    assert engine.get_node('m3') is None


def test_start_unknown_user(engine):
    with pytest.raises(NotFoundError):
        engine.start_session('ghost')
    assert engine.get_node('ghost') is None


def test_checkpoint_flushes_exact_amount_once(six_per_minute, make_user):
    make_user('m4')
    before = db.session.get(User, 'm4').current_balance
    node = six_per_minute.start_session('m4')

    _tick(node, 10)
    results = six_per_minute.checkpoint('m4')

    assert [r.amount for r in results] == [Decimal('1.00000000')]
    session = db.session.get(MiningSession, node.session_id)
    assert session.earnings == Decimal('1')
    assert session.checkpoint_seq == 1
    assert db.session.get(User, 'm4').current_balance == before + Decimal('1')

    # 没有新的 tick，再次 checkpoint 不写库
    assert six_per_minute.checkpoint('m4') == []
    assert db.session.get(MiningSession, node.session_id).checkpoint_seq == 1


def test_multiplier_two_for_one_minute(engine, make_user):
    make_user('m5', account_age=3)  # 倍率 2.0，基础 0.5/分钟
    node = engine.start_session('m5')
    assert node.rate == Decimal('1')

    _tick(node, 60)
    engine.checkpoint('m5')

    assert db.session.get(MiningSession, node.session_id).earnings == Decimal('1')


def test_mining_cascades_to_referrer(six_per_minute, make_user):
    make_user('boss')
    make_user('worker', referred_by='boss')
    node = six_per_minute.start_session('worker')

    _tick(node, 100)  # 10
    six_per_minute.checkpoint('worker')

    assert db.session.get(User, 'boss').referral_earnings == Decimal('1')
    assert ReferralEarningsLog.query.filter_by(earning_type='mining').count() == 1


def test_stop_flushes_remaining_and_cancels_timers(six_per_minute, make_user):
    make_user('m6')
    before = db.session.get(User, 'm6').current_balance
    node = six_per_minute.start_session('m6')

    _tick(node, 10)
    six_per_minute.checkpoint('m6')
    _tick(node, 5)
    result = six_per_minute.stop_session('m6')

    assert result['earnings'] == Decimal('1.5')
    assert result['sessionId'] == node.session_id
    assert _job_ids(six_per_minute, 'm6') == []
    assert six_per_minute.get_node('m6') is None
    assert node.state is NodeState.IDLE

    user = db.session.get(User, 'm6')
    assert not user.is_node_active
    assert user.node_start_time is None
    assert user.current_balance == before + Decimal('1.5')

    session = db.session.get(MiningSession, node.session_id)
    assert session.end_time is not None
    assert session.open_slot is None

    # 停止后的 tick 不再累加
    assert node.tick() is False


def test_stop_without_session(engine, make_user):
    make_user('m7')
    with pytest.raises(NotFoundError):
        engine.stop_session('m7')


def test_stop_without_node_closes_from_storage(engine, make_user, open_session):
    make_user('m8')
    session = open_session('m8', earnings=Decimal('3'))
    before = db.session.get(User, 'm8').current_balance

    result = engine.stop_session('m8')

    assert result['sessionId'] == session.id
    assert result['earnings'] == Decimal('3')
    assert db.session.get(User, 'm8').current_balance == before
    assert not db.session.get(User, 'm8').is_node_active


def test_retry_policy_keeps_failed_checkpoint(six_per_minute, make_user, failing_commit):
    make_user('r1')
    before = db.session.get(User, 'r1').current_balance
    node = six_per_minute.start_session('r1')

    _tick(node, 10)
    failing_commit.enable()
    assert six_per_minute.checkpoint('r1') == []
    failing_commit.restore()

    assert db.session.get(MiningSession, node.session_id).earnings == Decimal('0')
    assert node.unflushed_earnings() == Decimal('1')

    _tick(node, 10)
    results = six_per_minute.checkpoint('r1')

    assert [r.amount for r in results] == [Decimal('1'), Decimal('1')]
    session = db.session.get(MiningSession, node.session_id)
    assert session.earnings == Decimal('2')
    assert session.checkpoint_seq == 2
    assert db.session.get(User, 'r1').current_balance == before + Decimal('2')


def test_drop_policy_discards_failed_checkpoint(six_per_minute, make_user, failing_commit):
    six_per_minute.failure_policy = 'drop'
    make_user('r2')
    node = six_per_minute.start_session('r2')

    _tick(node, 10)
    failing_commit.enable()
    six_per_minute.checkpoint('r2')
    failing_commit.restore()
    assert node.unflushed_earnings() == Decimal('0')

    _tick(node, 10)
    six_per_minute.checkpoint('r2')

    assert db.session.get(MiningSession, node.session_id).earnings == Decimal('1')


def test_failed_stop_rearms_node(six_per_minute, make_user, failing_commit):
    make_user('r3')
    node = six_per_minute.start_session('r3')
    _tick(node, 10)

    failing_commit.enable()
    with pytest.raises(TransientStorageError):
        six_per_minute.stop_session('r3')
    failing_commit.restore()

    assert node.state is NodeState.ACTIVE
    assert len(_job_ids(six_per_minute, 'r3')) == 3
    assert db.session.get(User, 'r3').is_node_active

    result = six_per_minute.stop_session('r3')
    assert result['earnings'] == Decimal('1')


def test_checkpoint_after_external_close_discards_node(six_per_minute, make_user):
    make_user('r4')
    node = six_per_minute.start_session('r4')
    session = db.session.get(MiningSession, node.session_id)
    session.end_time = session.start_time
    session.open_slot = None
    db.session.commit()

    _tick(node, 10)
    assert six_per_minute.checkpoint('r4') == []
    assert six_per_minute.get_node('r4') is None
    assert _job_ids(six_per_minute, 'r4') == []


def test_display_state_includes_unflushed(six_per_minute, make_user):
    make_user('d1')
    node = six_per_minute.start_session('d1')
    _tick(node, 10)
    six_per_minute.checkpoint('d1')
    _tick(node, 30)

    state = six_per_minute.get_display_state('d1')

    assert state['isActive']
    assert state['sessionId'] == node.session_id
    assert Decimal(state['currentRate']) == Decimal('6')
    assert Decimal(state['unflushedEarnings']) == Decimal('3')
    assert Decimal(state['sessionEarnings']) == Decimal('4')
    assert state['penaltyLevel'] == 0


def test_display_state_idle_and_unknown(engine, make_user):
    make_user('d2')
    state = engine.get_display_state('d2')
    assert state['isActive'] is False
    assert state['sessionEarnings'] == '0'

    with pytest.raises(NotFoundError):
        engine.get_display_state('nobody')


def test_shutdown_flushes_and_leaves_session_open(six_per_minute, make_user):
    make_user('s1')
    node = six_per_minute.start_session('s1')
    _tick(node, 10)

    six_per_minute.shutdown()

    session = db.session.get(MiningSession, node.session_id)
    assert session.earnings == Decimal('1')
    assert session.is_open
    assert six_per_minute.get_node('s1') is None
    assert db.session.get(User, 's1').is_node_active


def test_concurrent_ticks_and_drains_lose_nothing():
    node = MiningNode('n5')
    node.activate('s1', None, Decimal('6'))
    drained = []
    done = threading.Event()

    def drain():
        while not done.is_set():
            drained.extend(cp.amount for cp in node.take_checkpoints())
        drained.extend(cp.amount for cp in node.take_checkpoints())

    tickers = [threading.Thread(target=_tick, args=(node, 500)) for _ in range(4)]
    drainer = threading.Thread(target=drain)
    drainer.start()
    for t in tickers:
        t.start()
    for t in tickers:
        t.join()
    done.set()
    drainer.join()

    # 2000 次 tick，每次 0.1
    assert node.ticks == 2000
    assert sum(drained, Decimal('0')) + node.unflushed_earnings() == Decimal('200')
    assert node.unflushed_earnings() == Decimal('0')


@pytest.fixture
def file_app(tmp_path):
    # 多线程各自开 app_context，内存库的单连接不适用，改用文件库
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///' + str(tmp_path / 'mining.db'),
        'BASE_MINING_RATE': '6',
        'CHECKPOINT_FAILURE_POLICY': 'retry',
        'ANTICHEAT_SERVICE_URL': None,
    }, scheduler=BackgroundScheduler())

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


def test_stop_racing_checkpoint_job_credits_every_tick(file_app):
    engine = file_app.extensions['mining_engine']
    engine.base_rate = Decimal('6')
    before = create_user('race', 'racer').current_balance
    node = engine.start_session('race')

    counted = []
    stop_ticking = threading.Event()
    stop_checkpoints = threading.Event()

    def ticker():
        n = 0
        while not stop_ticking.is_set():
            if node.tick():
                n += 1
        counted.append(n)

    def checkpointer():
        while not stop_checkpoints.is_set():
            engine._checkpoint_job('race')

    threads = [threading.Thread(target=ticker), threading.Thread(target=checkpointer)]
    for t in threads:
        t.start()

    deadline = time.monotonic() + 10
    while node.ticks < 300 and time.monotonic() < deadline:
        time.sleep(0.001)
    result = engine.stop_session('race')

    stop_ticking.set()
    stop_checkpoints.set()
    for t in threads:
        t.join()

    expected = counted[0] * Decimal('0.1')
    assert counted[0] >= 300
    assert result['earnings'] == expected
    assert engine.get_node('race') is None

    db.session.expire_all()
    session = db.session.get(MiningSession, node.session_id)
    assert session.end_time is not None
    assert session.earnings == expected
    assert db.session.get(User, 'race').current_balance == before + expected
