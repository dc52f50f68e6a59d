"""
Shared fixtures for the HTTP route tests.

The application lifespan builds a real bridge around /dev/ttyUSB0; the
``client`` fixture swaps it for a ``LinkManager`` driving FakeLinks so the
routes can be exercised without hardware.
"""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from fake_link import FakeLink
from robobridge.config import settings
from robobridge.link.manager import LinkConfig, LinkManager
from robobridge.main import app


class FakeLinkFactory:
    def __init__(self) -> None:
        self.created: list[FakeLink] = []
        self.next_open_errors: list[Exception | None] = []

    def __call__(self, config: LinkConfig) -> FakeLink:
        link = FakeLink(config.path, open_errors=list(self.next_open_errors))
        self.created.append(link)
        return link


@pytest.fixture
def links() -> FakeLinkFactory:
    return FakeLinkFactory()


@pytest.fixture
def client(links: FakeLinkFactory):
    with (
        patch.object(settings, "auto_reconnect_enabled", False),
        patch.object(settings, "api_token", ""),
        TestClient(app) as test_client,
    ):
        bridge = LinkManager(
            LinkConfig(
                path="/dev/fake",
                open_retry_delay=0,
                settle_delay=0,
                drain_throttle=0,
            ),
            app.state.bridge.sink,
            link_factory=links,
        )
        app.state.bridge = bridge
        yield test_client
