import asyncio
import json
import logging
import logging.config
import os
from pathlib import Path

from peerdrop.avails import const

_DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-7s %(name)s: %(message)s"


async def initiate(exit_stack=None, level=None):
    """Configure logging from ``PATH_LOG_CONFIG``

    queue handlers named under ``queue_handlers`` get their listeners started,
    and stopped again through ``exit_stack`` when it is given.
    Without a config file this falls back to ``basicConfig``.
    """
    log_config = {}

    def _loader():
        nonlocal log_config
        with open(const.PATH_LOG_CONFIG) as fp:
            log_config = json.load(fp)
        os.makedirs(const.PATH_LOG, exist_ok=True)

    def _log_exit():
        logging.getLogger().info("closing logging")
        for queue_handler in queue_handlers:
            q_listener = getattr(queue_handler, 'listener')
            q_listener.stop()
            for hand in q_listener.handlers:
                hand.close()

    try:
        await asyncio.to_thread(_loader)
    except FileNotFoundError:
        logging.basicConfig(level=level or (logging.DEBUG if const.debug else logging.INFO), format=_DEFAULT_FORMAT)
        logging.getLogger(__name__).info(f"no log config at {const.PATH_LOG_CONFIG}, using basicConfig")
        return

    for handler in log_config["handlers"]:
        if "filename" in log_config["handlers"][handler]:
            log_config["handlers"][handler]["filename"] = str(
                Path(const.PATH_LOG, log_config["handlers"][handler]["filename"]))

    if level is not None:
        log_config.setdefault("root", {})["level"] = logging.getLevelName(level)

    logging.config.dictConfig(log_config)

    queue_handlers = []

    for q_handler in log_config.get("queue_handlers", ()):
        queue_handlers.append(logging.getHandlerByName(q_handler))

    if not any(queue_handlers):
        return

    for q_handler in queue_handlers:
        queue_listener = getattr(q_handler, 'listener')
        queue_listener.start()

    if exit_stack is not None:
        exit_stack.callback(_log_exit)
