from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from extensions import db
from models import MiningSession, User
from scheduler import reconcile_on_startup
from utils.errors import TransientStorageError
from utils.reconciliation import (
    ALREADY_ACTIVE, IDLE, ORPHAN_FLAG_CLEARED, ORPHAN_SESSION_CLOSED, RESUMED,
    reconcile_all, reconcile_user
)


def test_orphan_flag_is_cleared_without_credit(engine, make_user):
    user = make_user('o1')
    balance = user.current_balance
    user.is_node_active = True
    db.session.commit()

    result = reconcile_user(engine, 'o1')

    assert result.status == ORPHAN_FLAG_CLEARED
    assert result.warning
    user = db.session.get(User, 'o1')
    assert not user.is_node_active
    assert user.node_start_time is None
    assert user.current_balance == balance
    assert engine.get_node('o1') is None


def test_resume_continues_from_persisted_earnings(engine, make_user, open_session):
    make_user('o2')
    session = open_session('o2', earnings=Decimal('5'))
    start = db.session.get(User, 'o2').node_start_time

    result = reconcile_user(engine, 'o2')

    assert result.status == RESUMED
    assert result.session_id == session.id
    node = engine.get_node('o2')
    assert node.start_time == start
    assert node.flushed_earnings == Decimal('5')
    assert Decimal(engine.get_display_state('o2')['sessionEarnings']) == Decimal('5')


def test_resume_twice_keeps_single_node(engine, make_user, open_session):
    make_user('o3')
    open_session('o3')

    first = reconcile_user(engine, 'o3')
    node = engine.get_node('o3')
    second = reconcile_user(engine, 'o3')

    assert first.status == RESUMED
    assert second.status == ALREADY_ACTIVE
    assert engine.get_node('o3') is node
    assert engine.active_user_ids() == ['o3']


def test_resumed_node_keeps_checkpoint_sequence(engine, make_user, open_session):
    make_user('o4')
    session = open_session('o4', earnings=Decimal('2'))
    session.checkpoint_seq = 7
    db.session.commit()

    reconcile_user(engine, 'o4')
    node = engine.get_node('o4')
    for _ in range(120):  # 0.5/分钟 * 2 分钟
        node.tick()
    engine.checkpoint('o4')

    session = db.session.get(MiningSession, session.id)
    assert session.checkpoint_seq == 8
    assert session.earnings == Decimal('3')


def test_open_session_for_inactive_node_is_closed(engine, make_user, open_session):
    make_user('o5')
    session = open_session('o5', earnings=Decimal('4'), flag=False)
    balance = db.session.get(User, 'o5').current_balance

    result = reconcile_user(engine, 'o5')

    assert result.status == ORPHAN_SESSION_CLOSED
    session = db.session.get(MiningSession, session.id)
    assert not session.is_open
    assert session.open_slot is None
    assert db.session.get(User, 'o5').current_balance == balance


def test_idle_user(engine, make_user):
    make_user('o6')
    assert reconcile_user(engine, 'o6').status == IDLE


def test_reconcile_all_covers_every_case(engine, make_user, open_session):
    for uid in ('p1', 'p2', 'p3', 'p4'):
        make_user(uid)
    open_session('p1')
    open_session('p2', flag=False)
    user = db.session.get(User, 'p3')
    user.is_node_active = True
    db.session.commit()

    results = {r.user_id: r.status for r in reconcile_all(engine)}

    assert results == {
        'p1': RESUMED,
        'p2': ORPHAN_SESSION_CLOSED,
        'p3': ORPHAN_FLAG_CLEARED,
    }


def test_reconcile_on_startup(app, engine, make_user, open_session):
    make_user('q1')
    open_session('q1')

    results = reconcile_on_startup(app)

    assert [r.status for r in results] == [RESUMED]
    assert engine.get_node('q1') is not None


def test_user_lookup_failure_is_transient(engine, make_user, monkeypatch):
    make_user('o9')

    def _get(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database is unavailable"))
    monkeypatch.setattr(db.session, 'get', _get)

    with pytest.raises(TransientStorageError):
        reconcile_user(engine, 'o9')
