import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from factories import make_secrets, make_settings, make_workflow  # noqa: E402


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def workflow_parts(settings):
    """(workflow, broker, directory) wired against in-memory collaborators."""
    return make_workflow(settings)


@pytest.fixture
def secrets(settings):
    return make_secrets(settings)
