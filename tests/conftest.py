"""Pytest configuration shared by every test package."""

import asyncio
import logging

import pytest


@pytest.fixture
def event_loop_policy():
    """Run async tests on the default asyncio loop."""
    return asyncio.DefaultEventLoopPolicy()


@pytest.fixture(autouse=True)
def feed_logs(caplog):
    """Capture dashfeed logs down to DEBUG so every log call is formatted."""
    caplog.set_level(logging.DEBUG, logger="dashfeed")
    return caplog
