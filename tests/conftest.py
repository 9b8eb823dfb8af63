"""
Shared test fixtures and configuration for pytest
"""
import os

import pytest

from mailfetch.core.models.mailbox import EncryptionMode
from mailfetch.utils.config import FetchConfig

from .test_helpers import CredentialsTestHelper, MessageTestHelper


@pytest.fixture
def fast_config():
    """Fetch configuration with timeouts short enough for local mock servers"""
    return FetchConfig(
        fetch_timeout=5.0,
        test_timeout=5.0,
        idle_timeout=2.0,
        quit_timeout=0.2,
    )


@pytest.fixture
def credentials_factory():
    """Build credentials pointing at a local mock server"""
    def _build(port, encryption=EncryptionMode.NONE, **kwargs):
        return CredentialsTestHelper.create_credentials(
            port=port, encryption=encryption, **kwargs
        )
    return _build


@pytest.fixture
def sample_messages():
    """Two plain-text messages, oldest first"""
    return [
        MessageTestHelper.build_message(
            subject="First message",
            sender="Alice Example <alice@example.com>",
            body="Hello from the first message.",
            date="Mon, 06 Oct 2025 09:00:00 +0000",
        ),
        MessageTestHelper.build_message(
            subject="Second message",
            sender="bob@example.com",
            body="Line one\r\n.leading dot line\r\nLine three",
            date="Tue, 07 Oct 2025 10:30:00 +0200",
        ),
    ]


@pytest.fixture(autouse=True)
def clear_env_vars():
    """Clear test environment variables before each test"""
    env_vars = ['MAILFETCH_PASSWORD']
    original = {}
    for var in env_vars:
        original[var] = os.environ.get(var)
        if var in os.environ:
            del os.environ[var]

    yield

    # Restore original environment
    for var, value in original.items():
        if value is not None:
            os.environ[var] = value
        elif var in os.environ:
            del os.environ[var]
