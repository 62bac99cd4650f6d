import logging
import shutil
from pathlib import Path

import pytest

TEMPLATE = Path(__file__).resolve().parent.parent / "minder_resilience" / "config.ini.template"


@pytest.fixture(autouse=True)
def restore_root_logger():
    """The CLI reconfigures the root logger; put it back after every test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def config_file(tmp_path):
    """A config.ini copied from the template into an empty directory."""
    path = tmp_path / "config.ini"
    shutil.copy2(TEMPLATE, path)
    return path
