from flask import Flask, jsonify
from flask_cors import CORS
from flask_migrate import Migrate
from extensions import db
from dotenv import load_dotenv
import os

# 提前导入模型注册函数（明确显示依赖关系）
from models import register_models

from blueprints.mining import mining_bp
from blueprints.tasks import tasks_bp
from blueprints.referrals import referrals_bp
from blueprints.users import users_bp
from utils.errors import MiningError
from utils.mining_node import MiningEngine

load_dotenv()


def create_app(test_config=None, scheduler=None):
    app = Flask(__name__)

    # CORS 允许前端携带 Cookie
    CORS(app, supports_credentials=True)

    # ===== 配置 =====
    app.config.update(
        SECRET_KEY=os.getenv('SECRET_KEY'),
        SQLALCHEMY_DATABASE_URI=os.getenv('DB_URI', 'sqlite:///mining.db'),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        MINING_TICK_SECONDS=float(os.getenv('MINING_TICK_SECONDS', '1')),
        CHECKPOINT_INTERVAL_SECONDS=float(os.getenv('CHECKPOINT_INTERVAL_SECONDS', '10')),
        CHECKPOINT_FAILURE_POLICY=os.getenv('CHECKPOINT_FAILURE_POLICY', 'retry'),
        ANTICHEAT_REFRESH_SECONDS=float(os.getenv('ANTICHEAT_REFRESH_SECONDS', '1800')),
        ANTICHEAT_SERVICE_URL=os.getenv('ANTICHEAT_SERVICE_URL'),
        ANTICHEAT_TIMEOUT_SECONDS=float(os.getenv('ANTICHEAT_TIMEOUT_SECONDS', '3')),
        REFERRAL_RATE=os.getenv('REFERRAL_RATE', '0.10'),
        BASE_MINING_RATE=os.getenv('BASE_MINING_RATE', '0.5'),
        SEED_TASKS=os.getenv('SEED_TASKS', 'True') == 'True',
        ENABLE_SCHEDULER=os.getenv('ENABLE_SCHEDULER', 'True') == 'True',
    )
    if test_config:
        app.config.update(test_config)

    if app.config['CHECKPOINT_FAILURE_POLICY'] not in ('retry', 'drop'):
        raise ValueError("CHECKPOINT_FAILURE_POLICY must be 'retry' or 'drop'")

    # ===== 初始化扩展 =====
    db.init_app(app)
    Migrate(app, db)

    with app.app_context():
        register_models()  # 确保在应用上下文中注册

    # ===== 挖矿引擎（定时器由 scheduler 驱动） =====
    if scheduler is None:
        from scheduler import scheduler as default_scheduler  # 延迟导入
        scheduler = default_scheduler
    MiningEngine(app, scheduler)

    # ===== 注册蓝图 =====
    blueprints = [
        mining_bp,
        tasks_bp,
        referrals_bp,
        users_bp
    ]
    for bp in blueprints:
        app.register_blueprint(bp)

    @app.errorhandler(MiningError)
    def handle_mining_error(e):
        if e.retryable:
            app.logger.warning(f"Retryable error: {e.message}")
        return jsonify(e.to_dict()), e.status_code

    # 健康检查
    @app.route('/')
    def health_check():
        return jsonify({'status': 'healthy'})

    return app


def init_database(app):
    from utils.task_service import seed_tasks
    with app.app_context():
        db.create_all()
        if app.config.get('SEED_TASKS'):
            seed_tasks()


if __name__ == '__main__':
    from scheduler import start_scheduler  # 延迟导入
    app = create_app()
    init_database(app)
    start_scheduler(app)
    app.run(host='0.0.0.0', port=5000, use_reloader=False)
