import asyncio

from kiosk.services.hub import TerminalHub
from kiosk.services.terminal import TerminalState
from kiosk.tests.helpers import VectorExtractor, at, make_branch, make_device


class Ticker:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _hub(ticker: Ticker, ttl: float = 60) -> TerminalHub:
    return TerminalHub(
        extractor_factory=VectorExtractor,
        monotonic=ticker,
        idle_ttl_seconds=ttl,
        clock=lambda: at(8, 0),
        error_display_seconds=0,
    )


def test_lookup_does_not_attach():
    hub = _hub(Ticker())

    assert hub.find("X") is None
    snapshot = hub.snapshot("X")

    assert snapshot["attached"] is False
    assert snapshot["state"] == "idle"
    assert hub.terminals == {}


def test_idle_unauthorized_terminal_is_evicted():
    ticker = Ticker()
    hub = _hub(ticker)
    hub.get("X")

    ticker.now = 59
    hub.get("Y")
    assert set(hub.terminals) == {"X", "Y"}

    ticker.now = 119
    hub.get("Y")
    assert set(hub.terminals) == {"Y"}
    assert "X" not in hub.last_seen


def test_lookup_keeps_terminal_alive():
    ticker = Ticker()
    hub = _hub(ticker)
    hub.get("X")

    ticker.now = 50
    assert hub.find("X") is not None

    ticker.now = 100
    hub.get("Y")
    assert "X" in hub.terminals


def test_unregistered_device_is_evicted(store):
    ticker = Ticker()
    hub = _hub(ticker)
    terminal = hub.get("stranger")

    asyncio.run(terminal.check_authorization())
    assert terminal.state == TerminalState.AWAITING_REGISTRATION

    ticker.now = 60
    assert hub.evict_idle() == ["stranger"]
    assert hub.terminals == {}


def test_authorized_terminal_is_kept(store):
    b1 = make_branch("B1")
    make_device(b1["id"], "X")
    ticker = Ticker()
    hub = _hub(ticker)
    terminal = hub.get("X")

    asyncio.run(terminal.check_authorization())

    ticker.now = 10_000
    assert hub.evict_idle() == []
    assert hub.get("X") is terminal
