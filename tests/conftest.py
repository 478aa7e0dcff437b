"""Shared fixtures for ipnow tests."""

import pytest
from flask.testing import FlaskClient

from ipnow.app import app as flask_app

BROWSER_HEADERS = {
    "User-Agent": "Mozilla/5.0 (X11; Linux x86_64) Gecko/20100101 Firefox/131.0",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
}


@pytest.fixture
def client() -> FlaskClient:
    flask_app.config.update(TESTING=True)
    return flask_app.test_client()


@pytest.fixture
def browser_headers() -> dict[str, str]:
    return dict(BROWSER_HEADERS)
