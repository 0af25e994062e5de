# conftest.py
from __future__ import annotations

import textwrap

import pytest

from flowci.backends import LocalBackend
from flowci.loader import parse_pipeline, parse_yaml
from flowci.orchestrator import Orchestrator
from flowci.settings import Settings
from flowci.storage import MemoryBlobStore
from flowci.ui.console import CaptureSink


@pytest.fixture
def settings() -> Settings:
    # fast knobs: no default quiet period, no provisioning retries
    return Settings(
        max_concurrency=2,
        quiet_period=0,
        job_timeout=60,
        provision_retries=0,
        provision_backoff=0.01,
        cancel_grace=1.0,
    )


@pytest.fixture
def load():
    """Parse an indented YAML description into a validated Pipeline."""

    def _load(text: str):
        return parse_pipeline(parse_yaml(textwrap.dedent(text)))

    return _load


@pytest.fixture
def make_orchestrator(settings, load):
    """Orchestrator on the local backend with in-memory storage and a capturing sink."""

    def _make(text_or_pipeline, *, store=None, **overrides):
        pipeline = load(text_or_pipeline) if isinstance(text_or_pipeline, str) else text_or_pipeline
        s = settings.with_overrides(**overrides)
        sink = CaptureSink()
        orch = Orchestrator(
            pipeline,
            s,
            backend=LocalBackend(machine_slots=s.machine_slots, grace=s.cancel_grace),
            store=store if store is not None else MemoryBlobStore(),
            sink=sink,
        )
        return orch, sink

    return _make
