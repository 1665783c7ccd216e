"""Command-line entrypoint — inspect the catalogue or simulate a session."""

from __future__ import annotations

import argparse
import json
import random
import sys
import time

from biofeedback_engine.config import get_settings
from biofeedback_engine.logger import setup_logging
from biofeedback_engine.models import BREATHING_PATTERNS, HRVMetrics, SignalQuality, VitalSigns


def _print_patterns() -> None:
    for pattern in BREATHING_PATTERNS.values():
        timings = "-".join(f"{pattern.timings[p]:g}" for p in pattern.timings)
        print(
            f"{pattern.id:<12} {pattern.label:<14} tier {pattern.tier}  "
            f"{timings:<12} {pattern.breaths_per_minute:5.2f} bpm  {pattern.category.value}"
        )


def _synthetic_vitals(rng: random.Random, progress: float, breaths_per_minute: float) -> VitalSigns:
    """A user who settles over the session: HR drifts down, breathing locks on."""
    heart_rate = 78.0 - 12.0 * progress + rng.gauss(0.0, 1.5)
    respiration = breaths_per_minute + (1.0 - progress) * 4.0 + rng.gauss(0.0, 0.5)
    return VitalSigns(
        heart_rate=heart_rate,
        respiration_rate=max(0.0, respiration),
        hrv=HRVMetrics(rmssd=30.0 + 20.0 * progress, sdnn=40.0, stress_index=220.0 - 120.0 * progress),
        confidence=0.8,
        signal_quality=SignalQuality.EXCELLENT,
        snr=12.0,
    )


def _simulate(pattern_id: str, seconds: float, fps: float, seed: int) -> int:
    from biofeedback_engine.kernel import BiofeedbackKernel, CommandBridge, KernelStatus
    from biofeedback_engine.runtime import ControlLoop
    from biofeedback_engine.storage import InMemoryEventRepository

    settings = get_settings()
    repository = InMemoryEventRepository(retention_sec=settings.retention_sec)
    clock_now = [time.time()]

    def clock() -> float:
        return clock_now[0]

    kernel = BiofeedbackKernel(settings=settings, repository=repository, clock=clock)
    bridge = CommandBridge(kernel)
    result = bridge.handle("switch_pattern", {"patternId": pattern_id, "reason": "simulation"})
    if result["status"] != "switched":
        print(f"Could not start pattern {pattern_id!r}: {result}", file=sys.stderr)
        return 1

    loop = ControlLoop(kernel, settings=settings, clock=clock)
    pattern = kernel.get_state().pattern
    rng = random.Random(seed)
    frame_dt = 1.0 / fps
    frames = int(seconds * fps)
    for i in range(frames):
        clock_now[0] += frame_dt
        vitals = _synthetic_vitals(rng, i / max(1, frames - 1), pattern.breaths_per_minute)
        loop.advance(frame_dt, vitals)
        if kernel.get_state().status is not KernelStatus.RUNNING:
            break

    state = kernel.get_state()
    summary = {
        "pattern": pattern_id,
        "status": state.status.value,
        "cycles": state.cycle_count,
        "session_duration_sec": round(state.session_duration, 2),
        "tempo_scale": round(state.tempo_scale, 4),
        "belief": state.belief.model_dump(include={"arousal", "attention", "rhythm_alignment", "valence",
                                                   "prediction_error", "confidence"}),
        "persisted_events": len(repository.get_session_log()),
    }
    print(json.dumps(summary, indent=2, default=str))
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="biofeedback-engine",
        description="Closed-loop breathing biofeedback engine.",
    )
    parser.add_argument("--log-json", action="store_true", help="Force JSON log lines on stderr.")
    sub = parser.add_subparsers(dest="command")

    # ── patterns ──────────────────────────────────────────────
    sub.add_parser("patterns", help="List the breathing pattern catalogue.")

    # ── simulate ──────────────────────────────────────────────
    sim_parser = sub.add_parser("simulate", help="Run a synthetic closed-loop session.")
    sim_parser.add_argument("--pattern", default="coherence", choices=sorted(BREATHING_PATTERNS))
    sim_parser.add_argument("--seconds", type=float, default=120.0)
    sim_parser.add_argument("--fps", type=float, default=30.0)
    sim_parser.add_argument("--seed", type=int, default=7)

    args = parser.parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level, json_output=True if args.log_json else None)

    if args.command == "patterns":
        _print_patterns()
    elif args.command == "simulate":
        sys.exit(_simulate(args.pattern, args.seconds, args.fps, args.seed))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
