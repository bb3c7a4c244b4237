"""Shared fixtures for the bodytap tests."""

import asyncio

import pytest


class RecordingInspector:
    """Inspector that remembers every exchange it was handed."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.called = asyncio.Event()

    def __call__(self, request_body, response_body, metadata, options):
        self.calls.append((request_body, response_body, metadata, options))
        self.called.set()

    async def wait(self, timeout: float = 2.0) -> None:
        await asyncio.wait_for(self.called.wait(), timeout)


@pytest.fixture
def inspector() -> RecordingInspector:
    return RecordingInspector()


@pytest.fixture
def log_templates(capfire):
    """Message templates of everything logged through logfire during the test."""

    def templates() -> list[str]:
        return [
            span["attributes"].get("logfire.msg_template")
            for span in capfire.exporter.exported_spans_as_dict()
        ]

    return templates
