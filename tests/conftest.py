from pathlib import Path

import pytest

from wafvisits.observability.log import configure_logging


@pytest.fixture(autouse=True, scope="session")
def _logging():
    configure_logging(Path("config/logging.yaml"))
