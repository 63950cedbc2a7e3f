"""
Report generation for nlfdenoise runs.

Produces:
- report.json: Machine-readable record (model, fit, frames, events, config)
- report.md: Human-readable Markdown summary

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from enum import Enum
from pathlib import Path
from typing import Any

import numpy as np

from .config import PipelineResult
from .events import PipelineEvent
from .utils import get_platform_info, get_timestamp_iso, get_version

logger = logging.getLogger(__name__)


def _to_native(obj: Any) -> Any:
    """Convert numpy types and enums to native Python types for JSON serialization."""
    if isinstance(obj, np.floating):
        return float(obj)
    elif isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, np.ndarray):
        return obj.tolist()
    elif isinstance(obj, Enum):
        return obj.value
    elif isinstance(obj, dict):
        return {k: _to_native(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_to_native(v) for v in obj]
    return obj


def _serialize_events(events: list[PipelineEvent]) -> list[dict[str, Any]]:
    return [
        {"kind": e.kind.value, "stage": e.stage, "message": e.message, "data": e.data}
        for e in events
    ]


def _count_events(events: list[PipelineEvent]) -> dict[str, int]:
    """Count events by kind."""
    counts: dict[str, int] = {}
    for e in events:
        counts[e.kind.value] = counts.get(e.kind.value, 0) + 1
    return counts


def build_report(result: PipelineResult) -> dict[str, Any]:
    """Assemble the JSON report content of a run."""
    model = result.noise_model
    report = {
        "nlfdenoise_version": result.version or get_version(),
        "timestamp": result.timestamp or get_timestamp_iso(),
        "platform": result.platform or get_platform_info(),
        "mode": result.mode,
        "noise_model": model.to_dict() if model is not None else None,
        "fit_status": result.fit_status.value,
        "frames": {
            "inputs": len(result.inputs),
            "fused": result.frame_count,
        },
        "inputs": result.inputs,
        "outputs": {k: str(v) for k, v in result.outputs.items()},
        "statistics": result.stats,
        "event_counts": _count_events(result.events),
        "events": _serialize_events(result.events),
        "config": {
            "noise": asdict(result.noise_config) if result.noise_config else None,
            "denoise": asdict(result.denoise_config) if result.denoise_config else None,
            "fusion": asdict(result.fusion_config) if result.fusion_config else None,
        },
    }
    return _to_native(report)


def write_report_json(result: PipelineResult, output_dir: Path) -> Path:
    """
    Write the run report as JSON.

    Parameters
    ----------
    result : PipelineResult
        Pipeline result.
    output_dir : Path
        Output directory.

    Returns
    -------
    Path
        Path to written report file.
    """
    report_path = output_dir / "report.json"
    with open(report_path, "w") as f:
        json.dump(build_report(result), f, indent=2)

    logger.info("Wrote report: %s", report_path)
    return report_path


def write_report_markdown(result: PipelineResult, output_dir: Path) -> Path:
    """
    Write human-readable Markdown report.

    Parameters
    ----------
    result : PipelineResult
        Pipeline result.
    output_dir : Path
        Output directory.

    Returns
    -------
    Path
        Path to written report file.
    """
    title = "Burst Fusion Report" if result.mode == "fuse" else "Denoise Report"
    lines = [
        f"# {title}",
        "",
        f"**Generated:** {result.timestamp or get_timestamp_iso()}",
        f"**nlfdenoise version:** {result.version or get_version()}",
        f"**Platform:** {result.platform or get_platform_info()}",
        "",
        "## Summary",
        "",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Inputs | {len(result.inputs)} |",
        f"| Frames fused | {result.frame_count} |",
        f"| Fit status | {result.fit_status.value} |",
        "",
    ]

    if result.noise_model is not None:
        lines.extend([
            "## Noise Model",
            "",
            "variance = A + B * mean",
            "",
            "| Channel | A | B |",
            "|---------|---|---|",
        ])
        for c, (a, b) in enumerate(zip(result.noise_model.a, result.noise_model.b)):
            lines.append(f"| {c} | {a:.4e} | {b:.4e} |")
        lines.append("")

    if result.stats:
        lines.extend([
            "## Statistics",
            "",
            "| Metric | Value |",
            "|--------|-------|",
        ])
        for key, value in result.stats.items():
            if isinstance(value, float):
                lines.append(f"| {key} | {value:.4g} |")
            else:
                lines.append(f"| {key} | {value} |")
        lines.append("")

    event_counts = _count_events(result.events)
    if event_counts:
        lines.extend([
            "## Events",
            "",
            "| Kind | Count |",
            "|------|-------|",
        ])
        for kind, count in sorted(event_counts.items()):
            lines.append(f"| {kind} | {count} |")
        lines.append("")

        warnings = [e for e in result.events if e.kind.value in (
            "degenerate_fit", "singular_model", "prior_model_used",
            "pyramid_clamped", "misaligned_frame", "insufficient_samples",
        )]
        if warnings:
            lines.extend(["### Warnings", ""])
            for e in warnings:
                lines.append(f"- `{e.stage}` {e.kind.value}: {e.message}")
            lines.append("")

    if result.outputs:
        lines.extend([
            "## Outputs",
            "",
        ])
        for name, path in result.outputs.items():
            lines.append(f"- **{name}:** `{path}`")
        lines.append("")

    report_path = output_dir / "report.md"
    with open(report_path, "w") as f:
        f.write("\n".join(lines))

    logger.info("Wrote Markdown report: %s", report_path)
    return report_path


def write_all_reports(result: PipelineResult, output_dir: Path) -> dict[str, Path]:
    """
    Write all report files.

    Returns
    -------
    dict[str, Path]
        Map of report type to path.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    return {
        "json": write_report_json(result, output_dir),
        "markdown": write_report_markdown(result, output_dir),
    }
