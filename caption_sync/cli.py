"""Command-line interface for offline caption replay.

WHY: Tuning the stabilizer and merger against real captures needs a way to
run them outside a live player: feed a saved timedtext response (or a log
of bridge messages), see exactly which cues come out, and optionally push
them through the translation proxy.

HOW: Uses argparse with one subcommand, ``replay``. The input file is either
a json3 timedtext body ({"events": [...]}) or JSON lines of bridge
messages. A json3 body goes straight to the stabilizer (or the manual
merger with --manual); bridge messages are replayed through a
CaptionSession so dedupe, merging, and track keys behave as they do live.
Cues print as text lines, or as JSON validated against CUES_SCHEMA with
jsonschema. --translate sends the cues to the proxy via asyncio.run().

RULES:
- Status output goes to stderr (not stdout), so --json can be piped
- Exit code 1 when the input cannot be read or decoded, or the proxy
  is not configured / fails
- JSON output is validated before printing; invalid output raises
- Python 3.9 compatible — no match/case, no X | Y unions
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import httpx
import jsonschema

from caption_sync.api.client import ProxyTranslationClient, TranslationError
from caption_sync.config import DEFAULT_TARGET_LANG
from caption_sync.core.ir import Cue
from caption_sync.core.merger import ManualCaptionSentenceMerger
from caption_sync.core.stabilizer import AsrStabilizer, is_low_confidence_asr_window
from caption_sync.session import CaptionSession

logger = logging.getLogger(__name__)

Tracks = List[Tuple[str, List[Cue]]]

CUES_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["tracks"],
    "properties": {
        "tracks": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["track_key", "low_confidence", "cues"],
                "properties": {
                    "track_key": {"type": "string"},
                    "low_confidence": {"type": "boolean"},
                    "cues": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "required": [
                                "cue_id", "track_key", "start_ms", "end_ms",
                                "text", "source", "confidence",
                            ],
                            "properties": {
                                "cue_id": {"type": "string", "pattern": "^yt:"},
                                "track_key": {"type": "string"},
                                "start_ms": {"type": "integer", "minimum": 0},
                                "end_ms": {"type": "integer", "minimum": 0},
                                "text": {"type": "string", "minLength": 1},
                                "source": {"enum": ["hook", "dom"]},
                                "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                                "window_id": {"type": "string"},
                                "translation": {"type": "string"},
                            },
                        },
                    },
                },
            },
        },
    },
}


class InputError(Exception):
    """Raised when a replay input file cannot be read or decoded."""


def _status(msg: str) -> None:
    """Print a status message to stderr, flushed."""
    print(msg, file=sys.stderr, flush=True)


def _format_ms(ms: int) -> str:
    minutes, rest = divmod(max(0, int(ms)), 60_000)
    seconds, millis = divmod(rest, 1000)
    return "{:02d}:{:02d}.{:03d}".format(minutes, seconds, millis)


# ---------------------------------------------------------------------------
# Input loading
# ---------------------------------------------------------------------------


def load_replay_input(path: Path) -> Tuple[str, Any]:
    """Read a replay file and classify it.

    Returns ("json3", body_dict) for a timedtext body, or
    ("messages", [dict, ...]) for JSON lines.

    Raises:
        InputError: If the file is missing, unreadable, or not JSON.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise InputError("Cannot read {}: {}".format(path, exc)) from exc

    stripped = raw.strip()
    if not stripped:
        raise InputError("{} is empty".format(path))

    try:
        body = json.loads(stripped)
    except json.JSONDecodeError:
        body = None
    if isinstance(body, dict) and "events" in body and "trackLang" not in body:
        return "json3", body
    if isinstance(body, dict):
        return "messages", [body]
    if isinstance(body, list):
        return "messages", body

    messages: List[Any] = []
    for lineno, line in enumerate(stripped.splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            messages.append(json.loads(line))
        except json.JSONDecodeError as exc:
            raise InputError("{}:{}: invalid JSON ({})".format(path, lineno, exc.msg)) from exc
    return "messages", messages


# ---------------------------------------------------------------------------
# Replay
# ---------------------------------------------------------------------------


def replay_json3(body: Dict[str, Any], lang: str, track_key: Optional[str], manual: bool) -> Tracks:
    events = body.get("events") or []
    if manual:
        key = track_key or "{}::track::".format(lang or "auto")
        return [(key, ManualCaptionSentenceMerger().build_cues(events, key))]
    key = track_key or "{}::asr::".format(lang or "auto")
    return [(key, AsrStabilizer().build_cues(events, lang, key))]


def replay_messages(messages: List[Any]) -> Tracks:
    """Feed bridge messages through a session and collect every track."""
    session = CaptionSession()
    session.start(now=0)
    accepted = 0
    for index, message in enumerate(messages):
        received_at = message.get("receivedAt") if isinstance(message, dict) else None
        now = received_at if isinstance(received_at, int) and received_at > 0 else index + 1
        if session.handle_message(message, now=now):
            accepted += 1
    _status("Replayed {} of {} message(s)".format(accepted, len(messages)))
    return [(key, list(track.cues)) for key, track in session.tracks.items()]


async def translate_tracks(tracks: Tracks, target_lang: str) -> Dict[str, str]:
    """Translate every cue through the proxy, in cue order."""
    items = [{"id": cue.cue_id, "text": cue.text} for _, cues in tracks for cue in cues]
    if not items:
        return {}
    async with ProxyTranslationClient(target_lang=target_lang) as client:
        return await client.translate(items)


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def build_output(tracks: Tracks, translations: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Build the JSON document and validate it against CUES_SCHEMA.

    Raises:
        jsonschema.ValidationError: If the document does not match.
    """
    translations = translations or {}
    out_tracks = []
    for key, cues in tracks:
        cue_dicts = []
        for cue in cues:
            data = cue.to_dict()
            if cue.cue_id in translations:
                data["translation"] = translations[cue.cue_id]
            cue_dicts.append(data)
        out_tracks.append({
            "track_key": key,
            "low_confidence": is_low_confidence_asr_window(cues),
            "cues": cue_dicts,
        })
    output = {"tracks": out_tracks}
    jsonschema.validate(instance=output, schema=CUES_SCHEMA)
    return output


def render_text(tracks: Tracks, translations: Optional[Dict[str, str]] = None) -> str:
    translations = translations or {}
    lines: List[str] = []
    for key, cues in tracks:
        lines.append("# {} ({} cues)".format(key, len(cues)))
        for cue in cues:
            lines.append("[{} -> {}] {}".format(_format_ms(cue.start_ms), _format_ms(cue.end_ms), cue.text))
            if cue.cue_id in translations:
                lines.append("    {}".format(translations[cue.cue_id]))
    return "\n".join(lines)


def run_replay(args: argparse.Namespace) -> int:
    """Execute the replay subcommand. Returns the process exit code."""
    path = Path(args.input_file)
    try:
        kind, data = load_replay_input(path)
    except InputError as e:
        print("Error: {}".format(e), file=sys.stderr)
        return 1

    if kind == "json3":
        _status("Replaying timedtext body with {} event(s)".format(len(data.get("events") or [])))
        tracks = replay_json3(data, args.lang, args.track_key, args.manual)
    else:
        tracks = replay_messages(data)

    total = sum(len(cues) for _, cues in tracks)
    _status("Built {} cue(s) on {} track(s)".format(total, len(tracks)))

    translations: Dict[str, str] = {}
    if args.translate:
        try:
            translations = asyncio.run(translate_tracks(tracks, args.target_lang))
        except ValueError as e:
            # Missing proxy URL
            print("Error: {}".format(e), file=sys.stderr)
            return 1
        except (TranslationError, httpx.HTTPError) as e:
            print("Error: translation failed: {}".format(e), file=sys.stderr)
            return 1
        _status("Translated {} cue(s)".format(len(translations)))

    if args.json:
        print(json.dumps(build_output(tracks, translations), indent=2, ensure_ascii=False))
    else:
        print(render_text(tracks, translations))
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the CLI.

    WHY: Separating parser construction from main() makes the CLI
    testable — tests can inspect the parser without running anything.
    """
    parser = argparse.ArgumentParser(
        prog="caption_sync",
        description="Replay captured caption payloads through the cue builders.",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level for diagnostics on stderr (default: %(default)s).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    replay = sub.add_parser("replay", help="Build cues from a saved payload file.")
    replay.add_argument(
        "input_file",
        help="json3 timedtext body, or JSON lines of bridge messages.",
    )
    replay.add_argument(
        "--lang",
        default="en",
        help="Track language for a json3 body (default: %(default)s).",
    )
    replay.add_argument(
        "--track-key",
        default=None,
        help="Track key for a json3 body (default: derived from --lang).",
    )
    replay.add_argument(
        "--manual",
        action="store_true",
        help="Treat a json3 body as a manual track (sentence merger, not ASR stabilizer).",
    )
    replay.add_argument(
        "--json",
        action="store_true",
        help="Print cues as schema-validated JSON instead of text lines.",
    )
    replay.add_argument(
        "--translate",
        action="store_true",
        help="Translate cues through the proxy at CAPTION_SYNC_PROXY_URL.",
    )
    replay.add_argument(
        "--target-lang",
        default=DEFAULT_TARGET_LANG,
        help="Target language for --translate (default: %(default)s).",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for ``python -m caption_sync``.

    RULES:
    - argv=None means use sys.argv (normal CLI invocation)
    - Explicit argv is for testing; the exit code is returned
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    if args.command == "replay":
        return run_replay(args)
    parser.error("unknown command {!r}".format(args.command))
    return 2


if __name__ == "__main__":
    sys.exit(main())
