import atexit
from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.exc import SQLAlchemyError
from extensions import db, logger
from models import User, UserTask, Task, TaskTypeEnum
from utils.clock import utcnow
from utils.reconciliation import reconcile_all

scheduler = BackgroundScheduler()


# 跨天重置每日签到和每日任务（last_login_time 在今天之前的用户）
def reset_daily_checkins(app):
    with app.app_context():
        try:
            now = utcnow()
            start_of_today = now.replace(hour=0, minute=0, second=0, microsecond=0)

            users_reset = User.query.filter(
                User.daily_checkin_claimed.is_(True),
                User.last_login_time < start_of_today
            ).update({User.daily_checkin_claimed: False}, synchronize_session=False)

            daily_task_ids = [t.id for t in Task.query.filter_by(type=TaskTypeEnum.daily).all()]
            tasks_reset = 0
            if daily_task_ids:
                tasks_reset = UserTask.query.filter(
                    UserTask.task_id.in_(daily_task_ids),
                    UserTask.completed.is_(True),
                    UserTask.claimed_at < start_of_today
                ).update({UserTask.completed: False, UserTask.progress: 0}, synchronize_session=False)

            db.session.commit()
            logger.info(f"[reset_daily_checkins] {users_reset} check-ins and {tasks_reset} daily tasks reset")
            return users_reset, tasks_reset

        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"[reset_daily_checkins] failed: {e}")
            return 0, 0


def reconcile_on_startup(app):
    with app.app_context():
        engine = app.extensions['mining_engine']
        try:
            return reconcile_all(engine)
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"[reconcile] startup reconciliation failed: {e}")
            return []


def start_scheduler(app):
    if not app.config.get('ENABLE_SCHEDULER', True):
        logger.info("Scheduler disabled by ENABLE_SCHEDULER")
        return

    engine = app.extensions['mining_engine']
    sched = engine.scheduler

    # 先恢复重启前未结束的会话，定时器在 scheduler 启动后开始运行
    reconcile_on_startup(app)

    # 每天凌晨0点（UTC）重置每日签到
    sched.add_job(lambda: reset_daily_checkins(app), 'cron', hour=0, minute=0, timezone='UTC',
                  id='reset-daily-checkins', replace_existing=True)

    sched.start()
    atexit.register(lambda: stop_scheduler(engine))
    logger.info(
        f"Scheduler started: tick every {engine.tick_seconds}s, "
        f"checkpoint every {engine.checkpoint_seconds}s, daily check-in reset at 00:00 UTC"
    )


def stop_scheduler(engine):
    engine.shutdown()
    if engine.scheduler.running:
        engine.scheduler.shutdown(wait=False)
