"""Command line front end for Emotive Melody.

The analysis is given either field by field or as the JSON record returned by
the classification service::

    emotive-melody --primary anger --secondary fear --intensity 9 \\
        --temperature cold --movement chaotic --duration 20

    emotive-melody --analysis result.json --describe

``--describe`` prints the display summary (tempo, gradient, fingerprint and
labels) as JSON without opening the audio device. ``--duration`` plays for a
fixed number of seconds. Without either flag an interactive prompt accepts
``p`` (play/pause), ``r`` (regenerate), ``e`` (export placeholder), ``s``
(stop) and ``q`` (quit).

Exit status is ``1`` for invalid input and ``2`` when no audio output could
be opened.
"""

from __future__ import annotations

import argparse
import json
import logging
import random
import sys
import time
from pathlib import Path
from typing import Iterable, List, Optional

from .backends import BACKENDS, load_backend
from .controls import MelodyControls, summarize
from .errors import AudioUnavailable, SessionCancelled
from .mapping import EMOTIONS, MOVEMENTS, TEMPERATURES, EmotionAnalysis
from .playback import PlaybackEngine
from .sequencer import build_session_plan
from .settings import default_backend_options, load_settings, save_settings

__all__ = ["build_parser", "run_cli", "main"]

logger = logging.getLogger(__name__)

EXIT_INVALID = 1
EXIT_AUDIO = 2

_PROMPT_HELP = "[p]lay/pause  [r]egenerate  [e]xport  [s]top  [q]uit"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="emotive-melody",
        description="Play a generative melody and harmony pad for an emotion analysis.",
    )
    parser.add_argument("--analysis", type=str, help="JSON file holding the analysis record")
    parser.add_argument("--primary", type=str, help=f"Primary emotion ({', '.join(EMOTIONS)})")
    parser.add_argument("--secondary", type=str, help="Secondary emotion (defaults to the primary one)")
    parser.add_argument("--intensity", type=int, help="Intensity from 1 to 10")
    parser.add_argument("--temperature", choices=TEMPERATURES, default="warm", help="Voice temperature (default: warm)")
    parser.add_argument("--movement", choices=MOVEMENTS, default="stable", help="Rhythmic movement (default: stable)")
    parser.add_argument("--describe", action="store_true", help="Print the display summary as JSON and exit")
    parser.add_argument("--duration", type=float, help="Play for this many seconds, then stop")
    parser.add_argument("--backend", choices=sorted(BACKENDS), help="Audio backend (default: synth or EMOTIVE_AUDIO_BACKEND)")
    parser.add_argument("--soundfont", type=str, help="SoundFont (.sf2) for the fluidsynth backend")
    parser.add_argument("--seed", type=int, help="Random seed for reproducible melodies")
    parser.add_argument("--export-dir", type=str, default=".", help="Directory for the export placeholder (default: .)")
    parser.add_argument("--settings-file", type=str, help="Path to the JSON settings file")
    parser.add_argument("--save-settings", action="store_true", help="Remember --backend and --soundfont for later runs")
    return parser


def _load_analysis(args: argparse.Namespace) -> EmotionAnalysis:
    """Build the analysis from ``--analysis`` or the individual flags.

    Raises
    ------
    ValueError
        If the input is incomplete or invalid.
    """

    if args.analysis:
        try:
            with open(args.analysis, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except OSError as exc:
            raise ValueError(f"Could not read analysis file: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise ValueError(f"Analysis file is not valid JSON: {exc}") from exc
        return EmotionAnalysis.from_dict(data)

    if not args.primary or args.intensity is None:
        raise ValueError("Provide --analysis or at least --primary and --intensity")
    return EmotionAnalysis.from_dict(
        {
            "primary_emotion": args.primary,
            "secondary_emotion": args.secondary or args.primary,
            "intensity": args.intensity,
            "temperature": args.temperature,
            "movement": args.movement,
        }
    )


def _write_export(controls: MelodyControls, directory: str) -> Path:
    payload = controls.export()
    target = Path(directory).expanduser()
    target.mkdir(parents=True, exist_ok=True)
    path = target / payload.filename
    path.write_bytes(payload.data)
    return path


def _interactive(controls: MelodyControls, commands: Iterable[str], export_dir: str) -> None:
    print(controls.summary.caption)
    print(_PROMPT_HELP)
    for raw in commands:
        command = raw.strip().lower()
        if not command:
            continue
        if command in ("q", "quit"):
            break
        if command in ("p", "play"):
            playing = controls.play()
            print("Playing" if playing else "Paused")
        elif command in ("r", "regenerate"):
            summary = controls.regenerate()
            print(summary.caption)
        elif command in ("e", "export"):
            print(f"Wrote {_write_export(controls, export_dir)}")
        elif command in ("s", "stop"):
            controls.stop()
            print("Stopped")
        else:
            print(_PROMPT_HELP)


def run_cli(argv: Optional[List[str]] = None, commands: Optional[Iterable[str]] = None) -> int:
    """Parse ``argv`` and run. Returns the process exit status.

    ``commands`` replaces standard input for the interactive prompt.
    """

    args = build_parser().parse_args(argv)

    if args.duration is not None and args.duration <= 0:
        logger.error("Duration must be a positive number of seconds.")
        return EXIT_INVALID

    try:
        analysis = _load_analysis(args)
    except ValueError as exc:
        logger.error("%s", exc)
        return EXIT_INVALID

    rng = random.Random(args.seed) if args.seed is not None else None

    if args.describe:
        plan = build_session_plan(analysis, rng)
        print(json.dumps(summarize(plan).to_dict(), indent=2, ensure_ascii=False))
        return 0

    settings_path = Path(args.settings_file).expanduser() if args.settings_file else None
    settings = load_settings(settings_path)
    backend_name = args.backend or settings.get("backend")
    soundfont = args.soundfont or settings.get("soundfont")
    name, options = default_backend_options(backend_name)
    if name == "fluidsynth" and soundfont:
        options["soundfont"] = soundfont
    try:
        backend = load_backend(name, **options)
    except ValueError as exc:
        logger.error("%s", exc)
        return EXIT_INVALID

    if args.save_settings:
        settings.update({"backend": name, "soundfont": soundfont})
        save_settings(settings, settings_path)

    engine = PlaybackEngine(backend, rng=rng)
    controls = MelodyControls(analysis, engine, rng)
    try:
        if args.duration is not None:
            controls.play()
            print(controls.summary.caption)
            time.sleep(args.duration)
        else:
            _interactive(controls, commands if commands is not None else sys.stdin, args.export_dir)
    except AudioUnavailable as exc:
        logger.error("%s", exc)
        return EXIT_AUDIO
    except SessionCancelled:
        logger.info("Playback cancelled")
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        engine.close()
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    """Console script entry point."""

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    sys.exit(run_cli(argv))
