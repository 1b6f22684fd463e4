from __future__ import annotations

import asyncio
import logging
import sys

from chat_engine.contracts import TurnInput
from chat_engine.core.logging import configure_logging
from chat_engine.core.settings import get_settings
from chat_engine.dependency_injection import build_container
from chat_engine.services.chat_engine import ChatEngine
from chat_engine.state import Role

settings = get_settings()
configure_logging(settings.effective_log_level)
logger = logging.getLogger(__name__)


async def main(prompt: str) -> int:
    logger.info("starting chat engine", extra={"app_env": settings.app_env, "chat_url": settings.chat_url})

    container = build_container(settings)
    engine = container.resolve(ChatEngine)
    session = engine.open_session()

    try:
        await session.start_turn(engine.auth_from_settings(), TurnInput(prompt=prompt))
        await session.wait_until_drained()
    finally:
        await session.close()

    for message in session.messages:
        if message.role is Role.QUESTION:
            continue
        print(message.text)

    if session.state.interruption:
        logger.warning("turn interrupted", extra={"reason": session.state.interruption, "offset": session.resume_cursor})
        return 1
    return 0


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("usage: python -m chat_engine.main <prompt>", file=sys.stderr)
        raise SystemExit(2)
    raise SystemExit(asyncio.run(main(" ".join(sys.argv[1:]))))
