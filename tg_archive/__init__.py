"""TG Archive — Telegram 消息归档与同步引擎"""

__version__ = "0.1.0"
