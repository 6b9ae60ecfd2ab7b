"""
描述: Door Relay 启动脚本
主要功能:
    - 读取 .env 与配置
    - 使用 uvicorn 启动 ASGI 服务
"""

from __future__ import annotations

import uvicorn
from dotenv import load_dotenv

from door_relay.config import get_settings


def main() -> None:
    load_dotenv()
    settings = get_settings()
    print(f"Starting Door Relay on http://{settings.server.host}:{settings.server.port}")
    uvicorn.run(
        "door_relay.main:build_default_app",
        factory=True,
        host=settings.server.host,
        port=settings.server.port,
        reload=settings.server.debug,
    )


if __name__ == "__main__":
    main()
