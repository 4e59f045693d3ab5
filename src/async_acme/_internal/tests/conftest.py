from unittest import mock

import pytest


@pytest.fixture(autouse=True)
def mock_sleep():
    with mock.patch("async_acme.retry.sleep", new_callable=mock.AsyncMock) as mocked:
        yield mocked
