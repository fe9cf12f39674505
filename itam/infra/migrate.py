from __future__ import annotations

import logging

from alembic import command
from alembic.config import Config

logger = logging.getLogger("itam.migrate")


def run_upgrade_head(config_path: str = "alembic.ini") -> None:
    config = Config(config_path)
    logger.info("upgrading schema to head using %s", config_path)
    command.upgrade(config, "head")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_upgrade_head()
