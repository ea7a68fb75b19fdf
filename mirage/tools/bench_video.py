"""CLI: benchmark the MIRAGE pipeline on one or more videos.

This tool is print-oriented (human-readable) and also writes a per-iteration
CSV and a JSON report suitable for regression tracking.
"""

from __future__ import annotations

import argparse
import json
import logging
import threading
from pathlib import Path
from typing import Any

from mirage.core.config.presets import PRESET_LABELS, preset_patch
from mirage.core.config.settings import MirageSettings, load_settings, settings_to_dict
from mirage.core.pipeline import build_scheduler
from mirage.core.telemetry.benchmark import BenchmarkCollector
from mirage.core.video_sources import FileSource


def _merge_settings(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    out = dict(base)
    out.update(patch)
    return out


def _iter_inputs(input_path: str) -> list[str]:
    """Expand an input path (file or directory) into a list of video file paths."""

    p = Path(input_path)
    if p.is_dir():
        vids = []
        for ext in ("*.mp4", "*.avi", "*.mov", "*.mkv"):
            vids.extend(sorted(str(x) for x in p.glob(ext)))
        if not vids:
            raise SystemExit(f"No video files found under: {p}")
        return vids
    if not p.exists():
        raise SystemExit(f"Cannot open video: {p}")
    return [str(p)]


def run_once(
    video_path: str,
    settings: MirageSettings,
    *,
    duration_s: float,
    warmup_frames: int,
    max_frames: int,
    csv_path: Path | None = None,
) -> dict[str, Any]:
    """Run a single benchmark pass over one video with the given settings."""

    try:
        source = FileSource(video_path, loop=False)
    except RuntimeError as exc:
        raise SystemExit(str(exc)) from None

    collector = BenchmarkCollector()
    scheduler = build_scheduler(settings, collector=collector)
    collector.set_rate_provider(scheduler.update_rates)
    try:
        if warmup_frames > 0:
            scheduler.run(source, max_iterations=warmup_frames)
        stop = threading.Event()

        def _check(_frame: Any, _composite: Any) -> None:
            if not collector.is_benchmarking:
                stop.set()

        collector.start(duration_s)
        scheduler.run(source, stop, max_iterations=max_frames or None, on_iteration=_check)
        if collector.is_benchmarking:
            collector.stop()
    finally:
        source.close()
        scheduler.close()

    if csv_path is not None:
        collector.write_csv(csv_path)

    result = collector.to_dict()
    result["video"] = video_path
    result["settings"] = settings_to_dict(settings)
    result["stage_errors"] = dict(scheduler.stage_errors)
    result["report"] = collector.report()
    return result


def main() -> None:
    """CLI entrypoint."""

    parser = argparse.ArgumentParser(description="Benchmark the MIRAGE pipeline on video files")
    parser.add_argument("--input", default="testdata/videos", help="Video file or directory of videos")
    parser.add_argument("--mode", choices=["parallel", "sequential"], default=None)
    parser.add_argument("--device", default=None)
    parser.add_argument("--duration", type=float, default=60.0, help="Benchmark duration (seconds)")
    parser.add_argument("--warmup-frames", type=int, default=10)
    parser.add_argument("--max-frames", type=int, default=0, help="0 runs until the video or duration ends")
    parser.add_argument(
        "--preset",
        action="append",
        default=[],
        help="Run using a preset id: quality | balanced | fps_max (can be repeated)",
    )
    parser.add_argument("--csv-dir", default=None, help="Directory for per-iteration CSV files")
    parser.add_argument("--out", default="benchmark_mirage_results.json", help="Where to write JSON results")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    inputs = _iter_inputs(args.input)
    base = settings_to_dict(load_settings())
    if args.mode:
        base["execution_mode"] = args.mode
    if args.device:
        base["device"] = args.device

    runs: list[tuple[str, dict[str, Any]]] = []
    if args.preset:
        for preset_id in args.preset:
            try:
                patch = preset_patch(preset_id)
            except KeyError:
                raise SystemExit(f"Unknown preset: {preset_id}") from None
            runs.append((preset_id, _merge_settings(base, patch)))
    else:
        runs.append(("custom", base))

    all_results: list[dict[str, Any]] = []
    for preset_id, data in runs:
        settings = MirageSettings(**data)
        label = PRESET_LABELS.get(preset_id, preset_id)
        print("\n" + "=" * 70)
        print(f"Preset: {label} ({preset_id})")
        print(f"Mode: {settings.execution_mode}  depth={settings.depth_enabled}  inpainting={settings.inpainting_enabled}")

        for vp in inputs:
            print("\n" + "-" * 70)
            print(f"Video: {vp}")
            csv_path = None
            if args.csv_dir:
                csv_path = Path(args.csv_dir) / f"{Path(vp).stem}_{preset_id}.csv"
            res = run_once(
                vp,
                settings,
                duration_s=args.duration,
                warmup_frames=args.warmup_frames,
                max_frames=args.max_frames,
                csv_path=csv_path,
            )
            res["preset"] = preset_id
            print(res["report"])
            if csv_path is not None:
                print(f"CSV: {csv_path}")
            all_results.append(res)

    out_path = Path(args.out)
    out_path.write_text(json.dumps({"results": all_results}, indent=2), encoding="utf-8")
    print(f"\nWrote {out_path}")


if __name__ == "__main__":
    main()
