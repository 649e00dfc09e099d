"""挖矿会话状态机 + checkpoint 调度

每个正在挖矿的用户对应一个 MiningNode（内存缓存），由 MiningEngine 管理：
  - 展示定时器每 MINING_TICK_SECONDS 调用 node.tick()，只改内存累加器
  - checkpoint 定时器每 CHECKPOINT_INTERVAL_SECONDS 取走累加器并交给结算服务
数据库是唯一事实来源，展示收益 = 已落库 earnings + 内存累加器。

定时器运行在 APScheduler 的线程池里，累加器读取并清零必须在锁内完成。
"""
import threading
from decimal import Decimal
from enum import Enum
from apscheduler.jobstores.base import JobLookupError
from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from extensions import db, logger
from models import User, MiningSession
from utils.anticheat import build_classifier, safe_classify, safe_track
from utils.clock import utcnow
from utils.errors import (
    MiningError, ConflictError, NotFoundError, TransientStorageError
)
from utils.mining_service import (
    BASE_MINING_RATE, SECONDS_PER_MINUTE,
    calculate_mining_rate, calculate_hash_rate, calculate_efficiency
)
from utils.settlement import apply_accrual, settle_accrual, floor_amount, complete_task

FAILURE_POLICY_RETRY = 'retry'
FAILURE_POLICY_DROP = 'drop'


class NodeState(Enum):
    IDLE = "idle"
    STARTING = "starting"  # 正在创建会话记录
    ACTIVE = "active"
    STOPPING = "stopping"  # 最后一次 flush 进行中


class PendingCheckpoint:

    def __init__(self, seq, amount):
        self.seq = seq
        self.amount = amount

    def __repr__(self):
        return f"<PendingCheckpoint seq={self.seq} amount={self.amount}>"


class MiningNode:

    def __init__(self, user_id, tick_seconds=1):
        self.user_id = user_id
        self.tick_seconds = Decimal(str(tick_seconds))
        self.state = NodeState.IDLE
        self.session_id = None
        self.start_time = None
        self.rate = Decimal('0')  # 每分钟
        self.anti_cheat_status = None
        self.flushed_earnings = Decimal('0')  # 最近一次确认落库的会话收益
        self.ticks = 0

        self._lock = threading.Lock()
        self.flush_lock = threading.Lock()  # checkpoint 与停止时的最终 flush 互斥
        self._rate_seconds = Decimal('0')  # 累加的 rate * 秒，除以 60 即收益
        self._pending = []  # 写库失败待重试的 checkpoint，按序号排列
        self._last_seq = 0

    def activate(self, session_id, start_time, rate, anti_cheat_status=None,
                 flushed_earnings=Decimal('0'), checkpoint_seq=0):
        with self._lock:
            self.session_id = session_id
            self.start_time = start_time
            self.rate = rate
            self.anti_cheat_status = anti_cheat_status
            self.flushed_earnings = Decimal(str(flushed_earnings or 0))
            self._last_seq = checkpoint_seq or 0
            self.state = NodeState.ACTIVE

    def tick(self):
        with self._lock:
            if self.state is not NodeState.ACTIVE:
                return False
            self._rate_seconds += self.rate * self.tick_seconds
            self.ticks += 1
            return True

    def set_rate(self, rate, anti_cheat_status=None):
        with self._lock:
            self.rate = rate
            self.anti_cheat_status = anti_cheat_status

    def take_checkpoints(self):
        """
        取出需要写库的 checkpoint：先是之前失败的，再是新累加的
        累加器按 8 位小数向下截取，余数（非负）留在累加器里
        """
        with self._lock:
            checkpoints = self._pending
            self._pending = []

            amount = floor_amount(self._rate_seconds / SECONDS_PER_MINUTE)
            if amount > 0:
                self._rate_seconds -= amount * SECONDS_PER_MINUTE
                self._last_seq += 1
                checkpoints.append(PendingCheckpoint(self._last_seq, amount))
        return checkpoints

    def hold(self, checkpoints):
        with self._lock:
            self._pending = list(checkpoints) + self._pending

    def mark_flushed(self, session_earnings):
        if session_earnings is not None:
            with self._lock:
                self.flushed_earnings = Decimal(str(session_earnings))

    def unflushed_earnings(self):
        with self._lock:
            pending = sum((cp.amount for cp in self._pending), Decimal('0'))
            return self._rate_seconds / SECONDS_PER_MINUTE + pending

    def uptime_seconds(self, now=None):
        if not self.start_time:
            return 0
        return max(0, int(((now or utcnow()) - self.start_time).total_seconds()))


class MiningEngine:
    """挖矿会话注册表，挂在 app.extensions['mining_engine'] 上"""

    def __init__(self, app, scheduler, classifier=None):
        self.app = app
        self.scheduler = scheduler
        self.classifier = classifier or build_classifier(app.config)

        self.tick_seconds = float(app.config.get('MINING_TICK_SECONDS', 1))
        self.checkpoint_seconds = float(app.config.get('CHECKPOINT_INTERVAL_SECONDS', 10))
        self.anticheat_refresh_seconds = float(app.config.get('ANTICHEAT_REFRESH_SECONDS', 1800))
        self.failure_policy = app.config.get('CHECKPOINT_FAILURE_POLICY', FAILURE_POLICY_RETRY)
        self.base_rate = Decimal(str(app.config.get('BASE_MINING_RATE', BASE_MINING_RATE)))

        self._nodes = {}
        self._registry_lock = threading.RLock()

        app.extensions['mining_engine'] = self

    # ----------------- 注册表 -----------------
    def get_node(self, user_id):
        with self._registry_lock:
            return self._nodes.get(user_id)

    def active_user_ids(self):
        with self._registry_lock:
            return [uid for uid, node in self._nodes.items() if node.state is NodeState.ACTIVE]

    def _reserve(self, user_id):
        """占位 STARTING，防止同一用户并发 start / resume"""
        with self._registry_lock:
            node = self._nodes.get(user_id)
            if node and node.state is not NodeState.IDLE:
                return node, False
            node = MiningNode(user_id, self.tick_seconds)
            node.state = NodeState.STARTING
            self._nodes[user_id] = node
            return node, True

    def _discard(self, node):
        with self._registry_lock:
            node.state = NodeState.IDLE
            if self._nodes.get(node.user_id) is node:
                del self._nodes[node.user_id]

    # ----------------- 定时器 -----------------
    def _job_ids(self, user_id):
        return (
            f"mining-tick:{user_id}",
            f"mining-checkpoint:{user_id}",
            f"mining-anticheat:{user_id}",
        )

    def _schedule(self, node):
        tick_id, checkpoint_id, anticheat_id = self._job_ids(node.user_id)
        self.scheduler.add_job(
            node.tick, 'interval', seconds=self.tick_seconds,
            id=tick_id, replace_existing=True, max_instances=1, coalesce=True
        )
        self.scheduler.add_job(
            self._checkpoint_job, 'interval', seconds=self.checkpoint_seconds, args=[node.user_id],
            id=checkpoint_id, replace_existing=True, max_instances=1, coalesce=True
        )
        self.scheduler.add_job(
            self._refresh_rate_job, 'interval', seconds=self.anticheat_refresh_seconds, args=[node.user_id],
            id=anticheat_id, replace_existing=True, max_instances=1, coalesce=True
        )

    def _cancel(self, user_id):
        for job_id in self._job_ids(user_id):
            try:
                self.scheduler.remove_job(job_id)
            except JobLookupError:
                pass

    def _checkpoint_job(self, user_id):
        with self.app.app_context():
            try:
                self.checkpoint(user_id)
            except MiningError as e:
                logger.error(f"[checkpoint] user {user_id} failed: {e.message}")
            finally:
                db.session.remove()

    def _refresh_rate_job(self, user_id):
        with self.app.app_context():
            try:
                node = self.get_node(user_id)
                if not node or node.state is not NodeState.ACTIVE:
                    return
                user = db.session.get(User, user_id)
                if not user:
                    return
                status = safe_classify(self.classifier, user_id)
                node.set_rate(calculate_mining_rate(user, status, self.base_rate), status)
            except MiningError as e:
                logger.error(f"[anticheat] refresh for {user_id} failed: {e.message}")
            finally:
                db.session.remove()

    # ----------------- 速率 -----------------
    def _rate_for(self, user, ip_address=None):
        status = safe_classify(self.classifier, user.id, ip_address)
        return calculate_mining_rate(user, status, self.base_rate), status

    # ----------------- 会话生命周期 -----------------
    def start_session(self, user_id, ip_address=None, user_agent=None):
        """
        开始挖矿：数据库中已有未结束会话时抛 ConflictError
        会话记录与 is_node_active / node_start_time 在同一事务里写入
        """
        node, reserved = self._reserve(user_id)
        if not reserved:
            raise ConflictError("Mining session already active")

        try:
            user = db.session.get(User, user_id)
            if not user:
                raise NotFoundError("User not found")

            safe_track(self.classifier, user_id, ip_address, user_agent)
            rate, status = self._rate_for(user, ip_address)

            if MiningSession.query.filter_by(user_id=user_id, end_time=None).first():
                raise ConflictError("Mining session already active")

            user = User.query.filter_by(id=user_id).with_for_update().populate_existing().first()
            now = utcnow()
            session = MiningSession(
                user_id=user_id,
                start_time=now,
                earnings=Decimal('0'),
                hash_rate=calculate_hash_rate(user.account_age),
                efficiency=calculate_efficiency(),
                checkpoint_seq=0,
                open_slot=user_id
            )
            db.session.add(session)
            user.is_node_active = True
            user.node_start_time = now
            db.session.commit()

        except MiningError:
            db.session.rollback()
            self._discard(node)
            raise
        except IntegrityError as e:
            # open_slot 唯一约束：另一个进程已经打开了会话
            db.session.rollback()
            self._discard(node)
            raise ConflictError("Mining session already active") from e
        except SQLAlchemyError as e:
            db.session.rollback()
            self._discard(node)
            logger.error(f"[start_session] user {user_id} failed: {e}")
            raise TransientStorageError("Failed to start mining session") from e

        node.activate(session.id, now, rate, status)
        self._schedule(node)
        logger.info(f"[start_session] user {user_id} session {session.id} started, rate {rate}/min")
        return node

    def resume_session(self, user, session):
        """
        对账时恢复会话：起始时间取 node_start_time，收益从已落库 earnings 继续
        内存中已有活跃节点时直接返回，不重复创建
        """
        node, reserved = self._reserve(user.id)
        if not reserved:
            return node, False

        try:
            rate, status = self._rate_for(user)
        except MiningError:
            self._discard(node)
            raise

        node.activate(
            session.id,
            user.node_start_time or session.start_time,
            rate,
            status,
            flushed_earnings=session.earnings,
            checkpoint_seq=session.checkpoint_seq
        )
        self._schedule(node)
        logger.info(f"[resume_session] user {user.id} session {session.id} resumed at {session.earnings}")
        return node, True

    def checkpoint(self, user_id):
        """取走累加器并写库，返回本次成功的 SettlementResult 列表"""
        node = self.get_node(user_id)
        if not node or node.state is not NodeState.ACTIVE:
            return []
        with node.flush_lock:
            if node.state is not NodeState.ACTIVE:
                return []
            return self._flush(node)

    def _flush(self, node):
        results = []
        checkpoints = node.take_checkpoints()
        for i, cp in enumerate(checkpoints):
            try:
                result = settle_accrual(node.user_id, node.session_id, cp.amount, cp.seq)
            except TransientStorageError:
                remaining = checkpoints[i:]
                if self.failure_policy == FAILURE_POLICY_DROP:
                    lost = sum((c.amount for c in remaining), Decimal('0'))
                    logger.error(f"[checkpoint] user {node.user_id} dropped {lost} after storage failure")
                else:
                    node.hold(remaining)
                    logger.error(
                        f"[checkpoint] user {node.user_id} storage failure, "
                        f"{len(remaining)} checkpoint(s) held for retry"
                    )
                break
            except (NotFoundError, ConflictError) as e:
                # 会话已在别处关闭，以数据库为准，本地节点作废
                logger.warning(f"[checkpoint] user {node.user_id} session {node.session_id} gone: {e.message}")
                self._cancel(node.user_id)
                self._discard(node)
                break
            node.mark_flushed(result.session_earnings)
            results.append(result)
        return results

    def stop_session(self, user_id):
        """
        停止挖矿：先取消定时器，再做最后一次 flush 并关闭会话（同一事务）
        最后一次写库失败时节点回到 ACTIVE 并重新挂定时器，调用方可重试
        """
        with self._registry_lock:
            node = self._nodes.get(user_id)
            if node and node.state in (NodeState.STARTING, NodeState.STOPPING):
                raise ConflictError("Mining session is busy, try again")
            if node and node.state is NodeState.ACTIVE:
                node.state = NodeState.STOPPING

        self._cancel(user_id)

        if not node or node.state is not NodeState.STOPPING:
            return self._close_from_storage(user_id)

        with node.flush_lock:
            checkpoints = node.take_checkpoints()
            try:
                session = MiningSession.query.filter_by(id=node.session_id)\
                    .with_for_update().populate_existing().first()
                if not session or not session.is_open:
                    raise NotFoundError("No active mining session found")

                for cp in checkpoints:
                    apply_accrual(user_id, session.id, cp.amount, cp.seq)

                self._close(session)
                db.session.commit()

            except NotFoundError:
                db.session.rollback()
                lost = sum((c.amount for c in checkpoints), Decimal('0'))
                logger.warning(f"[stop_session] user {user_id} session already closed, discarded {lost}")
                self._discard(node)
                raise
            except MiningError:
                db.session.rollback()
                self._rearm(node, checkpoints)
                raise
            except SQLAlchemyError as e:
                db.session.rollback()
                self._rearm(node, checkpoints)
                logger.error(f"[stop_session] user {user_id} final flush failed: {e}")
                raise TransientStorageError("Failed to stop mining session") from e

            self._discard(node)

        logger.info(f"[stop_session] user {user_id} session {session.id} stopped with {session.earnings}")
        return self._stop_result(session)

    def _rearm(self, node, checkpoints):
        node.hold(checkpoints)
        with self._registry_lock:
            node.state = NodeState.ACTIVE
        self._schedule(node)

    def _close(self, session):
        now = utcnow()
        session.end_time = now
        session.open_slot = None

        user = User.query.filter_by(id=session.user_id).with_for_update().populate_existing().first()
        if user:
            user.is_node_active = False
            user.node_start_time = None

    def _close_from_storage(self, user_id):
        """没有内存节点（例如进程重启后）时，按数据库关闭会话，不追加收益"""
        try:
            session = MiningSession.query.filter_by(user_id=user_id, end_time=None)\
                .with_for_update().populate_existing().first()
            if not session:
                raise NotFoundError("No active mining session found")
            self._close(session)
            db.session.commit()
        except MiningError:
            db.session.rollback()
            raise
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"[stop_session] user {user_id} close failed: {e}")
            raise TransientStorageError("Failed to stop mining session") from e

        logger.info(f"[stop_session] user {user_id} session {session.id} closed from storage")
        return self._stop_result(session)

    def _stop_result(self, session):
        duration = (session.end_time - session.start_time).total_seconds()
        return {
            'sessionId': session.id,
            'earnings': session.earnings,
            'durationSeconds': int(duration)
        }

    def shutdown(self):
        """进程退出：取消所有定时器并 flush，会话保持打开，重启后由对账恢复"""
        with self._registry_lock:
            nodes = list(self._nodes.values())
        for node in nodes:
            self._cancel(node.user_id)
            with self.app.app_context():
                try:
                    self.checkpoint(node.user_id)
                except MiningError as e:
                    logger.error(f"[shutdown] user {node.user_id} final checkpoint failed: {e.message}")
                finally:
                    db.session.remove()
            self._discard(node)

    # ----------------- 对外查询 -----------------
    def get_display_state(self, user_id):
        node = self.get_node(user_id)
        if node and node.state in (NodeState.ACTIVE, NodeState.STOPPING):
            unflushed = node.unflushed_earnings()
            status = node.anti_cheat_status
            return {
                'isActive': True,
                'sessionId': node.session_id,
                'startTime': node.start_time.isoformat() if node.start_time else None,
                'uptimeSeconds': node.uptime_seconds(),
                'currentRate': str(node.rate),
                'unflushedEarnings': str(unflushed),
                'sessionEarnings': str(node.flushed_earnings + unflushed),
                'penaltyLevel': status.penalty_level if status else 0,
                'efficiencyMultiplier': status.efficiency_multiplier if status else 1.0,
            }

        if not db.session.get(User, user_id):
            raise NotFoundError("User not found")

        session = MiningSession.query.filter_by(user_id=user_id, end_time=None).first()
        if session:
            # 有打开的会话但本进程未恢复，只展示已落库的部分
            return {
                'isActive': True,
                'sessionId': session.id,
                'startTime': session.start_time.isoformat(),
                'uptimeSeconds': max(0, int((utcnow() - session.start_time).total_seconds())),
                'currentRate': '0',
                'unflushedEarnings': '0',
                'sessionEarnings': str(session.earnings),
                'penaltyLevel': 0,
                'efficiencyMultiplier': 1.0,
            }

        return {
            'isActive': False,
            'sessionId': None,
            'startTime': None,
            'uptimeSeconds': 0,
            'currentRate': '0',
            'unflushedEarnings': '0',
            'sessionEarnings': '0',
            'penaltyLevel': 0,
            'efficiencyMultiplier': 1.0,
        }

    def complete_task(self, user_id, task_id):
        return complete_task(user_id, task_id)


def get_engine():
    return current_app.extensions['mining_engine']
