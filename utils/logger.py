import sys
import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Optional, Union

# 日志目录
LOG_DIR = Path("logs")
LOGGER_NAME = "silver_tracker"

# 采集线程并发写日志，需要线程名区分数据源
LOG_FORMAT = '[%(asctime)s] [%(levelname)s] [%(name)s] [%(threadName)s] %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def _file_handler(log_dir: Path, name: str, formatter: logging.Formatter) -> TimedRotatingFileHandler:
    """按天轮转，保留 30 天"""
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = TimedRotatingFileHandler(
        filename=log_dir / f"{name}.log",
        when='midnight',
        interval=1,
        backupCount=30,
        encoding='utf-8'
    )
    handler.setFormatter(formatter)
    handler.setLevel(logging.INFO)
    return handler


def get_logger(name: str = LOGGER_NAME, log_dir: Optional[Path] = None) -> logging.Logger:
    """
    获取配置好的 logger

    控制台输出到 stdout，同时写入 logs/<name>.log
    """
    logger = logging.getLogger(name)

    # 如果已经配置过 handlers，直接返回（避免重复日志）
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    logger.propagate = False
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logging.INFO)
    logger.addHandler(console_handler)

    try:
        logger.addHandler(_file_handler(log_dir or LOG_DIR, name, formatter))
    except OSError as e:
        logger.warning(f"日志文件不可写，仅输出到控制台: {e}")

    return logger


def set_console_level(level: Union[int, str], name: str = LOGGER_NAME) -> None:
    """调整控制台输出级别（文件日志保持 INFO）"""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    for handler in logging.getLogger(name).handlers:
        if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler):
            handler.setLevel(level)


# 默认导出
logger = get_logger()
