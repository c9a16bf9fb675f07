#!/usr/bin/env python3
"""
PPG Consensus – headless entry point.

Usage
-----
    python main.py [OPTIONS]

Options
-------
    --source SRC         Camera index or path to a video file (default: 0)
    --resolution WxH     Camera resolution (default: 640x480)
    --fps INT            Target frame rate  (default: 30)
    --window FLOAT       Analysis window in seconds (default: 8)
    --channels INT       Number of virtual channels (default: 6)
    --roi-fraction FLOAT Central ROI size relative to the shorter side
    --threaded           Run the ensemble on a worker thread
    --log-level LEVEL    Logging level (default: INFO)

Place a fingertip over the lens (torch on) and watch the log for the
heart-rate estimate.  Ctrl+C quits.
"""

from __future__ import annotations

import argparse
import logging
import sys
import time

from ppg_consensus.camera import FrameSource, parse_source
from ppg_consensus.ensemble import ChannelEnsemble, MultiChannelResult
from ppg_consensus.frame_metrics import FrameAnalyzer, center_roi
from ppg_consensus.fusion import SampleFuser
from ppg_consensus.worker import EnsembleWorker

logger = logging.getLogger("ppg_consensus")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Fingertip PPG heart-rate monitor (multi-channel consensus)",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--source", default="0",
                        help="Camera index or video file path")
    parser.add_argument("--resolution", default="640x480",
                        help="Camera resolution, e.g. 640x480")
    parser.add_argument("--fps", type=int, default=30,
                        help="Target capture frame rate")
    parser.add_argument("--window", type=float, default=8.0,
                        help="Analysis window in seconds")
    parser.add_argument("--channels", type=int, default=6,
                        help="Number of virtual channels")
    parser.add_argument("--roi-fraction", type=float, default=0.35,
                        help="Central ROI side as a fraction of the shorter frame side")
    parser.add_argument("--threaded", action="store_true",
                        help="Analyse on a worker thread; drop samples when it falls behind")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging verbosity")
    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

def _report(result: MultiChannelResult) -> None:
    active = sum(1 for c in result.channels if c.is_finger_detected)
    ts = time.strftime("%H:%M:%S")
    if result.finger_detected and result.aggregated_bpm is not None:
        print(f"[{ts}] BPM={result.aggregated_bpm:.0f}  quality={result.aggregated_quality}"
              f"  channels={active}/{len(result.channels)}  phase={result.phase.name}")
    else:
        print(f"[{ts}] Waiting for signal…  finger={result.finger_detected}"
              f"  channels={active}/{len(result.channels)}")


def run(args: argparse.Namespace) -> int:
    try:
        res_w, res_h = (int(v) for v in args.resolution.lower().split("x"))
    except ValueError:
        logger.error("Invalid --resolution format.  Use WxH, e.g. 640x480.")
        return 1

    source = FrameSource(parse_source(args.source), resolution=(res_w, res_h), fps=args.fps)
    ensemble = ChannelEnsemble(n_channels=args.channels, window_seconds=args.window)
    metrics = FrameAnalyzer()
    fuser = SampleFuser()
    worker = EnsembleWorker(ensemble) if args.threaded else None

    report_every_ms = 1000.0
    last_report = None
    result: MultiChannelResult | None = None

    try:
        with source:
            if worker is not None:
                worker.start()
            for ts_ms, frame in source.frames():
                sample = metrics.measure(center_roi(frame, args.roi_fraction), ts_ms)
                fused = fuser.fuse(sample)
                if fused is None:
                    continue

                if worker is not None:
                    worker.submit(fused.value, fused.timestamp_ms,
                                  fused.coverage_ratio, fused.motion_metric)
                    result = worker.latest_result
                else:
                    ensemble.push_sample(fused.value, fused.timestamp_ms)
                    result = ensemble.analyze_all(fused.coverage_ratio, fused.motion_metric)

                if result is not None and (last_report is None or ts_ms - last_report >= report_every_ms):
                    _report(result)
                    last_report = ts_ms
    except RuntimeError as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted.")
    finally:
        if worker is not None:
            worker.stop()

    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s – %(message)s",
        datefmt="%H:%M:%S",
    )
    return run(args)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    sys.exit(main())
