"""启动 / 恢复时的会话对账

数据库是唯一事实来源：
  - is_node_active=True 且有未结束会话 -> 恢复内存节点，收益从已落库 earnings 继续（不补离线时间）
  - is_node_active=True 但没有未结束会话 -> 清除标记，不补发任何收益，并返回警告
  - 有未结束会话但 is_node_active=False -> 关闭该会话，不补发收益
"""
from sqlalchemy.exc import SQLAlchemyError
from extensions import db, logger
from models import User, MiningSession
from utils.clock import utcnow
from utils.errors import NotFoundError, TransientStorageError

RESUMED = 'resumed'
ALREADY_ACTIVE = 'already_active'
ORPHAN_FLAG_CLEARED = 'orphan_flag_cleared'
ORPHAN_SESSION_CLOSED = 'orphan_session_closed'
IDLE = 'idle'


class ReconcileResult:

    def __init__(self, user_id, status, session_id=None, warning=None):
        self.user_id = user_id
        self.status = status
        self.session_id = session_id
        self.warning = warning

    def to_dict(self):
        return {
            'userId': self.user_id,
            'status': self.status,
            'sessionId': self.session_id,
            'warning': self.warning,
        }


def _clear_node_flag(user):
    user.is_node_active = False
    user.node_start_time = None


def reconcile_user(engine, user_id):
    try:
        user = db.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")

        session = MiningSession.query.filter_by(user_id=user_id, end_time=None)\
            .order_by(MiningSession.start_time.desc()).first()

        if user.is_node_active and session:
            node, resumed = engine.resume_session(user, session)
            return ReconcileResult(
                user_id,
                RESUMED if resumed else ALREADY_ACTIVE,
                session_id=node.session_id
            )

        if user.is_node_active:
            # 标记已置位但会话不存在（例如进程在两步写入之间崩溃）
            _clear_node_flag(user)
            db.session.commit()
            warning = "Mining was marked active but no open session exists; node has been reset without credit"
            logger.warning(f"[reconcile] user {user_id}: {warning}")
            return ReconcileResult(user_id, ORPHAN_FLAG_CLEARED, warning=warning)

        if session:
            if engine.get_node(user_id):
                return ReconcileResult(user_id, ALREADY_ACTIVE, session_id=session.id)
            session.end_time = utcnow()
            session.open_slot = None
            db.session.commit()
            warning = "Open mining session found for an inactive node; session closed without credit"
            logger.warning(f"[reconcile] user {user_id} session {session.id}: {warning}")
            return ReconcileResult(user_id, ORPHAN_SESSION_CLOSED, session_id=session.id, warning=warning)

    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"[reconcile] user {user_id} failed: {e}")
        raise TransientStorageError("Failed to reconcile mining state") from e

    return ReconcileResult(user_id, IDLE)


def reconcile_all(engine):
    """启动时对所有可能处于挖矿状态的用户执行对账"""
    active_ids = {uid for (uid,) in db.session.query(User.id).filter(User.is_node_active.is_(True)).all()}
    open_ids = {
        uid for (uid,) in
        db.session.query(MiningSession.user_id).filter(MiningSession.end_time.is_(None)).distinct().all()
    }

    results = []
    for user_id in sorted(active_ids | open_ids):
        try:
            results.append(reconcile_user(engine, user_id))
        except (NotFoundError, TransientStorageError) as e:
            logger.error(f"[reconcile] user {user_id} skipped: {e.message}")

    resumed = sum(1 for r in results if r.status == RESUMED)
    cleared = sum(1 for r in results if r.status in (ORPHAN_FLAG_CLEARED, ORPHAN_SESSION_CLOSED))
    logger.info(f"[reconcile] {len(results)} users checked, {resumed} resumed, {cleared} orphans cleared")
    return results
