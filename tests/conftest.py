import logging

import pytest


@pytest.fixture(autouse=True)
def _restore_logger_state():
    # Alembic's env.py calls logging.config.fileConfig() in-process, which
    # disables every logger that already exists; undo that between tests.
    root = logging.getLogger()
    root_state = (list(root.handlers), root.level)
    yield
    for logger in list(logging.root.manager.loggerDict.values()):
        if isinstance(logger, logging.Logger):
            logger.disabled = False
    root.handlers, level = root_state[0], root_state[1]
    root.setLevel(level)
