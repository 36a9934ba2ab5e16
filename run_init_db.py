import asyncio
import logging

from tongai.core.database import async_session_maker, init_db
from tongai.models import AppConfig, Level, Subject
from tongai.services.store import create_store

# 配置日志
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DEFAULT_SUBJECTS = [
    {"code": "math", "label": "数学", "color": "indigo", "icon": "calculator",
     "background_chars": "∑∫π√∞≈±÷×", "sort_order": 1},
    {"code": "chinese", "label": "语文", "color": "rose", "icon": "book",
     "background_chars": "文言诗词赋曲", "sort_order": 2},
    {"code": "english", "label": "英语", "color": "emerald", "icon": "languages",
     "background_chars": "ABCDEFGabcdefg", "sort_order": 3},
]

GRADE_NAMES = ["一", "二", "三", "四", "五", "六", "七", "八", "九"]

DEFAULT_CONFIG = {
    "app_title": "TongAI",
    "ai_mode": "solver",
    "show_usage_to_user": "false",
    "follow_up_context_limit": "5",
}


async def seed() -> None:
    """写入默认学科、年级和系统配置，已存在的记录不覆盖"""
    async with async_session_maker() as db:
        store = create_store(db)

        for data in DEFAULT_SUBJECTS:
            if await db.get(Subject, data["code"]) is None:
                fields = {k: v for k, v in data.items() if k not in ("code", "label")}
                await store.create_subject(data["code"], data["label"], **fields)
                logger.info(f"Subject {data['code']} created")

        for index, name in enumerate(GRADE_NAMES, start=1):
            code = str(index)
            if await db.get(Level, code) is None:
                await store.create_level(code, f"{name}年级", sort_order=index)
                logger.info(f"Level {code} created")

        for key, value in DEFAULT_CONFIG.items():
            if await db.get(AppConfig, key) is None:
                await store.update_config_value(key, value)
                logger.info(f"Config {key} initialized")


async def main():
    logger.info("Initializing database tables...")
    try:
        await init_db()
        await seed()
        logger.info("Database initialized successfully.")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


if __name__ == "__main__":
    asyncio.run(main())
