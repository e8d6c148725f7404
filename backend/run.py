#!/usr/bin/env python3
"""
kubeforge backend server
启动 FastAPI 服务器（.env 由 pydantic-settings 读取）
"""

import uvicorn

from kubeforge.config import get_settings
from kubeforge.core.logging import setup_logging

settings = get_settings()

# 使用应用自身的统一日志配置，避免 uvicorn 默认 log_config 覆盖
setup_logging(settings)

if __name__ == "__main__":
    uvicorn.run(
        "kubeforge.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.is_debug,
        log_level=settings.log_level.lower(),
        log_config=None,
    )
