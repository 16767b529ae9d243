"""Shared test fixtures for the caption_sync test suite.

WHY: Most test modules need the same small caption streams: a noisy event
list that sanitizes down to one cue, a manual track split mid-sentence, and
word-level ASR responses with and without punctuation. Centralizing them
keeps expected values in one place.

HOW: Plain module-level data plus pytest fixtures that return fresh copies,
a make_cue() helper for hand-built cues, and a FakeScheduler that records
call_later() requests so debounce behavior can be driven by hand.

RULES:
- Event dicts use the json3 wire names (tStartMs, dDurationMs, aAppend, segs)
- Fixtures return new lists so tests may mutate them freely
- Session settings are explicit; tests never depend on the environment
"""

from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from caption_sync.config import SessionSettings
from caption_sync.core.ir import Cue, CueSource
from caption_sync.session import CaptionSession


# ---------------------------------------------------------------------------
# Event streams
# ---------------------------------------------------------------------------

NOISY_EVENTS: List[Dict[str, Any]] = [
    {"tStartMs": 0, "dDurationMs": 600, "segs": [{"utf8": "hello world"}]},
    {"tStartMs": 700, "segs": [{"utf8": "no duration"}]},
    {"tStartMs": 1200, "dDurationMs": 500, "aAppend": 1, "segs": [{"utf8": "appended"}]},
    {"tStartMs": 1800, "dDurationMs": 500, "segs": []},
]

MANUAL_EVENTS: List[Dict[str, Any]] = [
    {"tStartMs": 0,    "dDurationMs": 1000, "segs": [{"utf8": "This is"}]},
    {"tStartMs": 1100, "dDurationMs": 1000, "segs": [{"utf8": "a simple test"}]},
    {"tStartMs": 2150, "dDurationMs": 300,  "segs": [{"utf8": "."}]},
    {"tStartMs": 5000, "dDurationMs": 2000, "segs": [{"utf8": "Next sentence starts."}]},
]

# Two unpunctuated word-level ASR events separated by a 2.1 s pause.
ASR_WORD_EVENTS: List[Dict[str, Any]] = [
    {
        "tStartMs": 0,
        "dDurationMs": 900,
        "segs": [
            {"utf8": "we"},
            {"utf8": " went", "tOffsetMs": 300},
            {"utf8": " home", "tOffsetMs": 600},
        ],
    },
    {
        "tStartMs": 3000,
        "dDurationMs": 800,
        "segs": [
            {"utf8": " then"},
            {"utf8": " slept", "tOffsetMs": 300},
        ],
    },
]


def _punctuated_events(count: int = 12) -> List[Dict[str, Any]]:
    return [
        {
            "tStartMs": i * 1000,
            "dDurationMs": 900,
            "segs": [{"utf8": "hello"}, {"utf8": " there.", "tOffsetMs": 400}],
        }
        for i in range(count)
    ]


@pytest.fixture
def noisy_events():
    """Four events of which only the first survives sanitizing."""
    return [dict(e) for e in NOISY_EVENTS]


@pytest.fixture
def manual_events():
    """A manual track that splits one sentence over three lines."""
    return [dict(e) for e in MANUAL_EVENTS]


@pytest.fixture
def asr_word_events():
    return [dict(e) for e in ASR_WORD_EVENTS]


@pytest.fixture
def asr_punctuated_events():
    """Twelve punctuated events, enough to take the punctuation route."""
    return _punctuated_events()


# ---------------------------------------------------------------------------
# Cues
# ---------------------------------------------------------------------------


def make_cue(
    start_ms: int,
    end_ms: int,
    text: str = "sample caption text",
    track_key: str = "en::asr::",
    source: CueSource = CueSource.HOOK,
) -> Cue:
    """Build a cue through Cue.create() so ids and confidence are real."""
    return Cue.create(track_key, start_ms, end_ms, text, source)


@pytest.fixture
def two_cues():
    """Cue a at 1000-2000 and cue b at 2200-3200."""
    return [
        make_cue(1000, 2000, "first caption line", track_key="t"),
        make_cue(2200, 3200, "second caption line", track_key="t"),
    ]


# ---------------------------------------------------------------------------
# Session helpers
# ---------------------------------------------------------------------------


class FakeHandle:
    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Records call_later() requests; run_all() fires the live ones."""

    def __init__(self) -> None:
        self.calls: List[Tuple[float, Callable[[], None], FakeHandle]] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> FakeHandle:
        handle = FakeHandle()
        self.calls.append((delay, callback, handle))
        return handle

    def run_all(self) -> None:
        for _, callback, handle in list(self.calls):
            if not handle.cancelled:
                callback()


@pytest.fixture
def settings():
    return SessionSettings(
        hold_ms=900,
        render_interval_ms=10,
        build_debounce_ms=300,
        flush_interval_ms=10,
        hook_timeout_ms=2500,
        dedupe_ttl_ms=60_000,
        batch_size=20,
        prune_behind_ms=45_000,
        max_cues_per_track=300,
        parse_error_threshold=3,
    )


@pytest.fixture
def session(settings):
    """A started session with immediate rebuilds and a fixed clock of 0."""
    s = CaptionSession(settings=settings, clock=lambda: 0)
    s.start(now=0)
    return s


def bridge_payload(
    events: List[Dict[str, Any]],
    is_asr: bool = False,
    lang: str = "en",
    signature: str = "sig",
    response_hash: str = "h1",
    url: str = "https://video.example/api/timedtext?v=abc",
    received_at: Optional[int] = None,
) -> Dict[str, Any]:
    """Build a timedtext bridge message with wire (camelCase) keys."""
    message: Dict[str, Any] = {
        "url": url,
        "trackLang": lang,
        "isAsr": is_asr,
        "trackSignature": signature,
        "events": events,
        "responseHash": response_hash,
    }
    if received_at is not None:
        message["receivedAt"] = received_at
    return message
