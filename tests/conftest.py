from unittest.mock import Mock

import pytest


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()
