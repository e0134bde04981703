"""数据库会话管理
根据配置显式创建 Engine，由调用方持有并注入各 Repository
"""
import os
from pathlib import Path
from typing import Optional
from sqlalchemy import create_engine, Engine
from sqlalchemy.pool import StaticPool

from config import DatabaseSettings
from model import metadata
from utils.logger import logger


def get_database_url(db_settings: Optional[DatabaseSettings] = None) -> str:
    """根据配置返回数据库 URL"""
    db_settings = db_settings or DatabaseSettings()

    if db_settings.url:
        return db_settings.url

    db_type = db_settings.type

    if db_type == "sqlite":
        db_path = db_settings.path
        if db_path == ":memory:":
            return "sqlite://"
        # 确保目录存在
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        # SQLite URL 格式
        return f"sqlite:///{os.path.abspath(db_path)}"
    else:
        raise ValueError(f"Unsupported database type: {db_type}（非 sqlite 请直接配置 database.url）")


def create_database_engine(db_settings: Optional[DatabaseSettings] = None) -> Engine:
    """
    创建数据库引擎

    不会自动创建表，需要显式调用 init_database()。

    Returns:
        Engine: SQLAlchemy 引擎实例
    """
    db_url = get_database_url(db_settings)

    if db_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}, "echo": False}
        # 内存库需要所有连接共享同一个底层连接
        if db_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(db_url, **kwargs)

    return create_engine(db_url, echo=False, pool_pre_ping=True)


def init_database(engine: Engine) -> Engine:
    """
    初始化数据库：创建表（如果不存在）

    此函数是幂等的，已存在的表会被跳过。
    """
    metadata.create_all(engine)
    logger.info(f"数据库初始化成功: {engine.url}")
    return engine


def close_engine(engine: Optional[Engine]) -> None:
    """
    关闭数据库连接（用于测试或程序退出时清理）
    """
    if engine is not None:
        engine.dispose()
