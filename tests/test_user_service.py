from decimal import Decimal

import pytest

from extensions import db
from models import Task
from utils.errors import ConflictError, NotFoundError, ValidationError
from utils.task_service import DEFAULT_TASKS, list_tasks_with_progress, seed_tasks
from utils.settlement import complete_task
from utils.user_service import create_user, get_user, update_user_profile


def test_create_user_sets_multiplier_and_initial_balance(app):
    user = create_user('u1', 'alice', account_age=3)

    assert user.multiplier == Decimal('2.0')
    assert user.current_balance == Decimal('450')
    assert user.total_earned == user.current_balance
    assert user.referral_code
    assert not user.is_node_active


def test_create_user_twice(app):
    create_user('u2', 'bob')
    with pytest.raises(ConflictError):
        create_user('u2', 'bob-again')


def test_create_user_duplicate_username(app):
    create_user('u3', 'carol')
    with pytest.raises(ConflictError):
        create_user('u4', 'carol')


@pytest.mark.parametrize("kwargs", [
    {'user_id': '', 'username': 'x'},
    {'user_id': 'u5', 'username': ''},
    {'user_id': 'u5', 'username': 'x', 'account_age': -1},
    {'user_id': 'u5', 'username': 'x', 'account_age': 'old'},
    {'user_id': 'u5', 'username': 'x', 'account_age': 'NaN'},
    {'user_id': 'u5', 'username': 'x', 'account_age': 'Infinity'},
])
def test_create_user_validation(app, kwargs):
    with pytest.raises(ValidationError):
        create_user(**kwargs)


def test_get_unknown_user(app):
    with pytest.raises(NotFoundError):
        get_user('missing')


def test_update_profile_fields(make_user):
    make_user('p1')
    user = update_user_profile('p1', {'username': 'renamed', 'avatar': 'https://cdn/a.png'})

    assert user.username == 'renamed'
    assert user.avatar == 'https://cdn/a.png'


@pytest.mark.parametrize("payload", [
    {},
    {'current_balance': '1000000'},
    {'multiplier': 10},
    {'is_node_active': True},
    {'username': None},
    {'username': '   '},
    {'username': 42},
    {'discriminator': 'x' * 11},
])
def test_update_profile_rejects_invalid_payload(make_user, payload):
    user = make_user('p2')
    balance = user.current_balance

    with pytest.raises(ValidationError):
        update_user_profile('p2', payload)
    assert db.session.get(type(user), 'p2').current_balance == balance


def test_update_profile_username_taken(make_user):
    make_user('p3')
    make_user('p4')
    with pytest.raises(ConflictError):
        update_user_profile('p4', {'username': 'user-p3'})


def test_seed_tasks_is_idempotent(app):
    assert Task.query.count() == len(DEFAULT_TASKS)
    assert seed_tasks() == 0


def test_task_list_shows_progress_and_scaled_reward(make_user):
    make_user('t1', account_age=3)
    complete_task('t1', 'join-discord')

    tasks = {t['id']: t for t in list_tasks_with_progress('t1')}

    assert len(tasks) == len(DEFAULT_TASKS)
    assert tasks['join-discord']['completed']
    assert tasks['join-discord']['progress'] == 1
    assert Decimal(tasks['join-discord']['reward']) == Decimal('200')
    assert not tasks['follow-twitter']['completed']
    assert tasks['follow-twitter']['socialUrl'] == 'https://twitter.com/cordnode'
