import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import asyncio
import io
import json
import weakref
from types import SimpleNamespace

import openpyxl
import pytest
from openpyxl.drawing.image import Image as XLImage
from PIL import Image as PILImage


def _png_bytes(color='red', size=(12, 8)) -> bytes:
    buf = io.BytesIO()
    PILImage.new('RGB', size, color).save(buf, format='PNG')
    return buf.getvalue()


def _workbook_bytes(rows, images=None) -> bytes:
    """rows: list of row value lists (sheet row 1 first); images: {cell_ref: png_bytes}"""
    wb = openpyxl.Workbook()
    ws = wb.active
    for values in rows:
        ws.append(list(values))
    for cell_ref, data in (images or {}).items():
        img = XLImage(io.BytesIO(data))
        ws.add_image(img, cell_ref)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


@pytest.fixture
def png_bytes():
    return _png_bytes


@pytest.fixture
def workbook_bytes():
    return _workbook_bytes


@pytest.fixture
def no_sleep():
    """Async sleep replacement that records the requested delays."""
    delays = []

    async def _sleep(seconds):
        delays.append(seconds)

    _sleep.delays = delays
    return _sleep


class FakeGenAIClient:
    """
    Stands in for genai.Client. Like the real async transport it only works
    on the event loop that first used it.
    """

    def __init__(self, outcomes, api_key=None):
        self.outcomes = outcomes
        self.loop = None
        self.requests = []
        self.aio = SimpleNamespace(models=self)

    async def generate_content(self, model, contents, config):
        loop = asyncio.get_running_loop()
        if self.loop is None:
            self.loop = loop
        elif self.loop is not loop:
            raise RuntimeError("Event loop is closed")
        self.requests.append((model, contents, config))
        outcome = self.outcomes.pop(0) if self.outcomes else _default_answer()
        if isinstance(outcome, Exception):
            raise outcome
        return SimpleNamespace(text=outcome)


def _default_answer() -> str:
    return json.dumps({'productName': "Alternator", 'model': "Sedan X", 'generalOE': "ZZZ999,WWW111"})


@pytest.fixture
def fake_genai(monkeypatch):
    """
    Replaces genai.Client with FakeGenAIClient and empties the client cache.
    Queue errors or JSON payloads on `.outcomes`; created clients land in `.clients`.
    """
    import ai_search

    state = SimpleNamespace(outcomes=[], clients=[])

    def _client(api_key=None):
        client = FakeGenAIClient(state.outcomes, api_key=api_key)
        state.clients.append(client)
        return client

    monkeypatch.setattr(ai_search.genai, "Client", _client)
    monkeypatch.setattr(ai_search, "_clients", weakref.WeakKeyDictionary())
    monkeypatch.setattr(ai_search, "DEFAULT_INITIAL_DELAY", 0)
    monkeypatch.setattr(ai_search, "DEFAULT_JITTER", 0)
    return state
