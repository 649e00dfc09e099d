# extensions.py
from flask_sqlalchemy import SQLAlchemy
from dotenv import load_dotenv
import logging

db = SQLAlchemy()

load_dotenv()

# ----------------- 日志配置 -----------------
# 后台线程（定时器、对账）没有请求上下文，统一使用 "mining" logger
logger = logging.getLogger("mining")
logger.setLevel(logging.INFO)

if not logger.handlers:
    console_handler = logging.StreamHandler()
    console_formatter = logging.Formatter('[%(asctime)s] %(levelname)s: %(message)s')
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)
