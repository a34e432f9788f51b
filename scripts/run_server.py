#!/usr/bin/env python
"""
启动 DediGPU 调度服务

使用方式:
    python scripts/run_server.py
    python scripts/run_server.py --host 0.0.0.0 --port 8000 --mock-gpu

调度器是进程内状态，只能以单进程运行。
"""
import argparse
import os

import uvicorn

from core.config import get_settings
from logging_config import setup_logging


def main():
    parser = argparse.ArgumentParser(description="启动 DediGPU 调度服务")
    parser.add_argument("--host", default=None, help="监听地址")
    parser.add_argument("--port", type=int, default=None, help="监听端口")
    parser.add_argument("--reload", action="store_true", help="开启热重载")
    parser.add_argument("--mock-gpu", action="store_true", help="使用模拟 GPU")

    args = parser.parse_args()
    if args.mock_gpu:
        os.environ["MONITOR_MOCK_MODE"] = "true"
        get_settings.cache_clear()

    settings = get_settings()
    setup_logging()

    uvicorn.run(
        "api.main:app",
        host=args.host or settings.api_host,
        port=args.port or settings.api_port,
        reload=args.reload or settings.debug,
        workers=1,
        log_level=settings.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
