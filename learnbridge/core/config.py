"""
learnbridge.core.config
~~~~~~~~~~~~~~~~~~~~~~~

实时会话服务的配置，基于 pydantic-settings。

与 REST 服务共用同一套 ``.env`` 约定（``MONGO_URI``、``JWT_SECRET`` 必须与 REST 层一致，
否则 REST 签发的令牌在这里无法通过校验）。按 ``ENVIRONMENT`` 额外加载 ``.env.{env}``。
"""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# 读取当前环境标识（在 Settings 类定义之前，用于决定加载哪个 .env 文件）
_CURRENT_ENV: str = os.getenv("ENVIRONMENT", "dev")


class Settings(BaseSettings):
    """全局配置对象，字段值按如下优先级加载：环境变量 > .env.{env} > .env > 默认值。"""

    # ── 基础 ──────────────────────────────────────────────────────────
    PROJECT_NAME: str = Field(default="Learn Bridge Realtime", description="项目名称")
    VERSION: str = Field(default="0.1.0", description="版本号")
    ENVIRONMENT: Literal["dev", "test", "prod"] = Field(
        default="dev",
        description="运行环境：dev / test / prod",
    )

    # ── 服务 ──────────────────────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0", description="服务监听地址")
    PORT: int = Field(default=5000, description="服务监听端口")
    LOG_LEVEL: str = Field(default="INFO", description="日志级别（可被环境属性覆盖）")
    CORS_ORIGINS: list[str] = Field(
        default=["http://localhost:5173"],
        description="prod 环境允许的前端来源",
    )

    # ── MongoDB ───────────────────────────────────────────────────────
    MONGO_URI: str = Field(
        default="mongodb://localhost:27017",
        description="MongoDB 连接串",
    )
    MONGO_DB_NAME: str = Field(default="learn-bridge", description="数据库名称")

    # ── 认证 ──────────────────────────────────────────────────────────
    JWT_SECRET: str = Field(default="learn_bridge_secret", description="JWT 签名密钥")
    JWT_ALGORITHM: str = Field(default="HS256", description="JWT 签名算法")

    # ── WebSocket ─────────────────────────────────────────────────────
    WS_AUTH_TIMEOUT: float = Field(
        default=10.0,
        description="握手阶段等待凭证的最长秒数，超时关闭连接",
    )
    WS_QUEUE_SIZE: int = Field(
        default=100,
        description="单连接待处理事件队列上限",
    )
    WS_MESSAGE_INTERVAL: float = Field(
        default=0.0,
        description="同一连接两次发消息的最小间隔（秒），0 表示不限流",
    )
    TYPING_DEBOUNCE_SECONDS: float = Field(
        default=1.0,
        description="同一连接对同一接收者 typing 事件的去抖间隔（秒）",
    )
    MESSAGE_MAX_LENGTH: int = Field(default=2000, description="单条消息最大字符数")
    SESSION_JOIN_REQUIRES_PARTICIPANT: bool = Field(
        default=False,
        description="加入 session 房间 / 广播 session 状态时是否校验参与者身份",
    )
    PRESENCE_PER_USER: bool = Field(
        default=False,
        description="上下线是否按用户合并：开启后只在第一条连接上线、最后一条连接断开时广播",
    )

    # ── Pydantic Settings ─────────────────────────────────────────────
    # 先加载 .env.{env} 再加载 .env，前者优先级更高
    model_config = SettingsConfigDict(
        env_file=(f".env.{_CURRENT_ENV}", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── 环境判断 ──────────────────────────────────────────────────────

    @property
    def is_prod(self) -> bool:
        """当前是否为生产环境。"""
        return self.ENVIRONMENT == "prod"

    @property
    def is_dev(self) -> bool:
        """当前是否为开发环境。"""
        return self.ENVIRONMENT == "dev"

    # ── 环境差异化行为 ────────────────────────────────────────────────

    @property
    def debug(self) -> bool:
        """是否开启 debug 模式。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def reload(self) -> bool:
        """是否开启热重载。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def effective_log_level(self) -> str:
        """显式设置的 ``LOG_LEVEL`` 环境变量优先，否则 test 用 DEBUG、prod 用 WARNING。"""
        env_log = os.getenv("LOG_LEVEL")
        if env_log:
            return env_log
        return {
            "dev": "INFO",
            "test": "DEBUG",
            "prod": "WARNING",
        }.get(self.ENVIRONMENT, "INFO")

    @property
    def allow_cors_all_origins(self) -> bool:
        """是否允许所有 CORS 来源。非 prod 环境允许，方便本地调试。"""
        return not self.is_prod


@lru_cache
def get_settings() -> Settings:
    """获取全局 Settings 单例（带缓存，避免重复解析 .env）。"""
    return Settings()


settings: Settings = get_settings()
