# 应用托管发布控制器 - 日志配置
"""structlog 输出配置，调度器和 API 共用"""

import logging
import logging.handlers
import sys
from typing import Any, Dict, List, Optional
import structlog

# 本模块安装到根 logger 上的 handler 标记，重复调用时先移除
_HANDLER_TAG = "_apphosting_handler"

# 日志文件轮转
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024  # 10MB
LOG_FILE_BACKUP_COUNT = 5

_NOISY_LOGGERS = ("uvicorn.access", "httpx", "asyncio")


def add_service(service: str, version: str):
    """为每条日志附加服务名和版本"""

    def processor(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", service)
        event_dict.setdefault("version", version)
        return event_dict

    return processor


def _processors(json_format: bool, service: Optional[str], version: str) -> List[Any]:
    chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if service:
        chain.append(add_service(service, version))

    if json_format:
        chain += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ]
    else:
        chain.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return chain


def _install_handler(root: logging.Logger, handler: logging.Handler):
    handler.setFormatter(logging.Formatter("%(message)s"))
    setattr(handler, _HANDLER_TAG, True)
    root.addHandler(handler)


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: Optional[str] = None,
    service: Optional[str] = None,
    version: str = ""
):
    """
    配置结构化日志

    Args:
        level: 日志级别
        json_format: True 输出 JSON，False 输出控制台格式
        log_file: 额外写入的轮转日志文件
        service: 服务名，设置后每条日志带 service/version 字段
        version: 服务版本
    """
    structlog.configure(
        processors=_processors(json_format, service, version),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_TAG, False):
            root.removeHandler(handler)
            handler.close()

    _install_handler(root, logging.StreamHandler(sys.stdout))
    if log_file:
        _install_handler(root, logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUP_COUNT,
            encoding="utf-8"
        ))
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: Optional[str] = None, **initial_values) -> structlog.stdlib.BoundLogger:
    """获取 logger，可预先绑定字段"""
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger
