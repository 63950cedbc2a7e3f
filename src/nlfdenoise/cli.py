"""
Command-line interface for nlfdenoise.

Usage:
    python -m nlfdenoise estimate <image> [options]
    nlfdenoise denoise <image> --out <path> [options]
    nlfdenoise fuse <frame> <frame> ... --out <path> [options]

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import argparse
import logging
import time
from pathlib import Path

from .backend import TileScheduler, get_backend_summary
from .cli_output import (
    StageProgress,
    print_banner,
    print_error,
    print_header,
    print_info,
    print_metric,
    print_noise_model,
    print_outputs,
    print_path,
    print_success,
    print_summary_box,
    setup_terminal,
)
from .config import DenoiseConfig, FusionConfig, NoiseConfig
from .io import (
    list_frames,
    load_homographies,
    load_noise_model,
    read_image,
    save_noise_model,
    write_image,
)
from .nlf import InsufficientSamplesError, NoiseModel, estimate_noise_model
from .pipeline import denoise_image, fuse_burst
from .report import write_all_reports
from .utils import as_channels, format_duration, get_version

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Configure logging for CLI."""
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%H:%M:%S",
    )


def _noise_config(args: argparse.Namespace) -> NoiseConfig:
    return NoiseConfig(
        window=args.window,
        min_value=args.min_value,
        max_value=args.max_value,
        variance_max=args.variance_max,
        fitter=args.fitter,
        statistics=args.statistics,
        bayer_pattern=args.bayer_pattern,
    )


def _denoise_config(args: argparse.Namespace) -> DenoiseConfig:
    return DenoiseConfig(
        levels=args.levels,
        method=args.method,
        luma_boost=args.luma_boost,
        chroma_boost=args.chroma_boost,
        detail_weights=tuple(args.detail_weights) if args.detail_weights else None,
        level_nlf=args.level_nlf,
        guide=args.guide,
        despeckle=args.despeckle,
        despeckle_threshold=args.despeckle_threshold,
    )


def _prior(args: argparse.Namespace, n_channels: int) -> NoiseModel | None:
    if args.prior is None:
        return None
    return NoiseModel.constant(args.prior[0], args.prior[1], n_channels)


def cmd_estimate(args: argparse.Namespace) -> int:
    """Estimate and print (optionally save) the noise model of an image."""
    image = read_image(args.image)
    config = _noise_config(args)
    n_channels = 4 if config.statistics == "raw" else as_channels(image).shape[2]
    scheduler = TileScheduler(workers=args.workers)

    t0 = time.perf_counter()
    try:
        report = estimate_noise_model(
            image, config,
            exposure_multiplier=args.exposure,
            prior=_prior(args, n_channels),
            scheduler=scheduler,
        )
    except InsufficientSamplesError as e:
        print_error(f"Noise estimation failed: {e}")
        return 1

    if not args.quiet:
        print_header(f"Noise model: {Path(args.image).name}")
        print_info(f"{config.statistics} statistics, {config.window}x{config.window} window")
        print_noise_model(report.model, report.status, report.fitter)
        print_metric("Duration", format_duration(time.perf_counter() - t0))

    if args.save_model:
        path = save_noise_model(
            args.save_model, report.model,
            fit_status=report.status.value,
            source=str(args.image),
            exposure_multiplier=args.exposure,
        )
        if not args.quiet:
            print_path("Model", str(path))
    return 0


def cmd_denoise(args: argparse.Namespace) -> int:
    """Denoise one image."""
    image = read_image(args.image)
    model = load_noise_model(args.model) if args.model else None
    scheduler = TileScheduler(workers=args.workers)

    try:
        result = denoise_image(
            image,
            model=model,
            noise_config=_noise_config(args),
            denoise_config=_denoise_config(args),
            prior=_prior(args, 4 if args.statistics == "raw" else as_channels(image).shape[2]),
            scheduler=scheduler,
        )
    except InsufficientSamplesError as e:
        print_error(f"Noise estimation failed: {e} (use --model or --prior)")
        return 1

    result.inputs = [str(args.image)]
    result.outputs["image"] = str(write_image(args.out, result.image))
    if args.report:
        result.outputs.update({k: str(v) for k, v in write_all_reports(result, Path(args.report)).items()})

    if not args.quiet:
        print_header("Denoise")
        print_noise_model(result.noise_model, result.fit_status)
        print_summary_box([
            f"Input: {Path(args.image).name}",
            f"Output: {args.out}",
            f"Levels: {args.levels} ({args.method})",
            f"Duration: {format_duration(result.stats['duration_s'])}",
        ])
        print_outputs(result.outputs)
        print_success("Done")
    return 0


def _collect_frame_paths(inputs: list[str]) -> list[Path]:
    if len(inputs) == 1 and Path(inputs[0]).is_dir():
        return list_frames(inputs[0])
    return [Path(p) for p in inputs]


def cmd_fuse(args: argparse.Namespace) -> int:
    """Fuse a burst of frames."""
    paths = _collect_frame_paths(args.frames)
    if not paths:
        print_error("No frames found")
        return 1

    progress = StageProgress(["Load frames", "Fuse", "Write outputs"], quiet=args.quiet)
    progress.start()
    frames = [read_image(p) for p in paths]
    homographies, multipliers = None, None
    if args.transforms:
        homographies, multipliers = load_homographies(args.transforms)
        if len(homographies) != len(frames):
            print_error(f"{args.transforms} has {len(homographies)} entries for {len(frames)} frames")
            return 1
    progress.done(f"{len(frames)} frames")

    progress.start()
    model = load_noise_model(args.model) if args.model else None
    try:
        result = fuse_burst(
            frames,
            homographies=homographies,
            exposure_multipliers=multipliers,
            model=model,
            noise_config=_noise_config(args),
            fusion_config=FusionConfig(
                t_low=args.t_low,
                t_high=args.t_high,
                min_weight=args.min_weight,
                use_gpu=args.use_gpu,
                denoise_after=not args.no_denoise,
            ),
            denoise_config=_denoise_config(args),
            prior=_prior(args, as_channels(frames[0]).shape[2]),
            scheduler=TileScheduler(workers=args.workers),
            progress=not args.quiet,
        )
    except InsufficientSamplesError as e:
        progress.warn(str(e))
        print_error("Noise estimation failed on the reference frame (use --model or --prior)")
        return 1
    misaligned = int(result.stats["misaligned_frames"])
    if misaligned:
        progress.warn(f"{misaligned} frame(s) down-weighted as misaligned")
    progress.done(f"estimated variance {result.stats['estimated_variance']:.3e}")

    progress.start()
    result.inputs = [str(p) for p in paths]
    result.outputs["image"] = str(write_image(args.out, result.image))
    if args.report:
        result.outputs.update({k: str(v) for k, v in write_all_reports(result, Path(args.report)).items()})
    progress.done()

    if not args.quiet:
        print_noise_model(result.noise_model, result.fit_status)
        print_summary_box([
            f"Frames: {result.frame_count}",
            f"Misaligned: {misaligned}",
            f"Mean weight: {result.stats['mean_weight']:.3f}",
            f"Output: {args.out}",
            f"Duration: {format_duration(result.stats['duration_s'])}",
        ])
        print_outputs(result.outputs)
        print_success("Done")
    return 0


def _add_noise_arguments(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("noise model")
    group.add_argument("--window", type=int, default=9, help="Statistics window side (default: 9)")
    group.add_argument("--min-value", type=float, default=0.001, help="Lowest usable mean (default: 0.001)")
    group.add_argument("--max-value", type=float, default=0.5, help="Highest usable mean (default: 0.5)")
    group.add_argument("--variance-max", type=float, default=0.001, help="Sample variance ceiling (default: 0.001)")
    group.add_argument(
        "--fitter", choices=["two_pass", "lmeds"], default="two_pass",
        help="Fitting strategy (default: two_pass)",
    )
    group.add_argument(
        "--statistics", choices=["channel", "luma", "raw"], default="channel",
        help="Sample layout: per channel, luma abscissa, or raw Bayer blocks (default: channel)",
    )
    group.add_argument(
        "--bayer-pattern", choices=["RGGB", "BGGR", "GRBG", "GBRG"], default="RGGB",
        help="CFA pattern for --statistics raw (default: RGGB)",
    )
    group.add_argument(
        "--prior", type=float, nargs=2, metavar=("A", "B"), default=None,
        help="Fallback noise model when the image has no usable samples",
    )


def _add_denoise_arguments(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("denoiser")
    group.add_argument("--levels", type=int, default=3, help="Pyramid levels (default: 3)")
    group.add_argument(
        "--method", choices=["bilateral", "guided"], default="bilateral",
        help="Level denoiser kernel (default: bilateral)",
    )
    group.add_argument("--luma-boost", type=float, default=1.0, help="Channel 0 strength (default: 1.0)")
    group.add_argument("--chroma-boost", type=float, default=1.0, help="Other channels strength (default: 1.0)")
    group.add_argument(
        "--detail-weights", type=float, nargs="+", default=None, metavar="W",
        help="Detail gain per level except the coarsest (default: all 1.0)",
    )
    group.add_argument(
        "--level-nlf", choices=["scaled", "measured"], default="scaled",
        help="Per-level noise model source (default: scaled)",
    )
    group.add_argument(
        "--guide", choices=["luma_first", "rgb"], default="luma_first",
        help="Guide image: channel 0 or BT.601 luma of an RGB image (default: luma_first)",
    )
    group.add_argument("--despeckle", action="store_true", help="Remove impulse outliers before smoothing")
    group.add_argument(
        "--despeckle-threshold", type=float, default=3.0,
        help="Speckle deviation from the 3x3 median, in noise sigmas (default: 3.0)",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI."""
    def add_common(p: argparse.ArgumentParser, default) -> None:
        p.add_argument("-v", "--verbose", action="store_true", default=default(False), help="Enable verbose output")
        p.add_argument(
            "-q", "--quiet", action="store_true", default=default(False),
            help="Suppress colored output (use logging only)",
        )
        p.add_argument(
            "--workers", type=int, default=default(None),
            help="Number of worker threads (default: auto = CPU count - 1)",
        )

    # Subcommands only set these when given, so global flags are not overwritten
    common = argparse.ArgumentParser(add_help=False)
    add_common(common, lambda value: argparse.SUPPRESS)

    parser = argparse.ArgumentParser(
        prog="nlfdenoise",
        description="Noise model estimation, multiscale denoising and burst fusion",
    )
    add_common(parser, lambda value: value)
    parser.add_argument(
        "--version",
        action="version",
        version=f"nlfdenoise {get_version()}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    estimate_parser = subparsers.add_parser(
        "estimate", parents=[common], help="Estimate the noise model of an image",
    )
    estimate_parser.add_argument("image", type=str, help="Input image (FITS, PNG, TIFF)")
    estimate_parser.add_argument(
        "--exposure", type=float, default=1.0,
        help="Exposure multiplier relative to the reference (default: 1.0)",
    )
    estimate_parser.add_argument(
        "--save-model", type=str, default=None, metavar="FILE",
        help="Save the fitted model as JSON",
    )
    _add_noise_arguments(estimate_parser)

    denoise_parser = subparsers.add_parser(
        "denoise", parents=[common], help="Denoise a single image",
    )
    denoise_parser.add_argument("image", type=str, help="Input image")
    denoise_parser.add_argument("--out", type=str, required=True, help="Output image path")
    denoise_parser.add_argument(
        "--model", type=str, default=None, metavar="FILE",
        help="Noise model JSON (default: estimate from the image)",
    )
    denoise_parser.add_argument(
        "--report", type=str, default=None, metavar="DIR",
        help="Write report.json and report.md to this directory",
    )
    _add_noise_arguments(denoise_parser)
    _add_denoise_arguments(denoise_parser)

    fuse_parser = subparsers.add_parser(
        "fuse", parents=[common], help="Fuse a registered burst",
    )
    fuse_parser.add_argument(
        "frames", type=str, nargs="+",
        help="Frames (the first is the reference) or a single directory",
    )
    fuse_parser.add_argument("--out", type=str, required=True, help="Output image path")
    fuse_parser.add_argument(
        "--transforms", type=str, default=None, metavar="JSON",
        help="Homographies and exposure multipliers per frame (default: aligned, same exposure)",
    )
    fuse_parser.add_argument(
        "--model", type=str, default=None, metavar="FILE",
        help="Noise model JSON of the reference (default: estimate from frame 0)",
    )
    fuse_parser.add_argument("--t-low", type=float, default=2.0, help="Full-weight threshold (default: 2.0)")
    fuse_parser.add_argument("--t-high", type=float, default=4.0, help="Min-weight threshold (default: 4.0)")
    fuse_parser.add_argument("--min-weight", type=float, default=0.05, help="Ghost weight floor (default: 0.05)")
    fuse_parser.add_argument("--no-denoise", action="store_true", help="Skip denoising of the fused image")
    fuse_parser.add_argument("--use-gpu", action="store_true", help="Blend on GPU (CuPy) if available")
    fuse_parser.add_argument(
        "--report", type=str, default=None, metavar="DIR",
        help="Write report.json and report.md to this directory",
    )
    _add_noise_arguments(fuse_parser)
    _add_denoise_arguments(fuse_parser)

    return parser


COMMANDS = {
    "estimate": cmd_estimate,
    "denoise": cmd_denoise,
    "fuse": cmd_fuse,
}


def main(argv: list[str] | None = None) -> int:
    """Main entry point for CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.verbose, args.quiet)
    if not args.quiet:
        setup_terminal()
        print_banner(get_version())
        logger.debug("Backend: %s", get_backend_summary())

    try:
        return COMMANDS[args.command](args)
    except (ValueError, FileNotFoundError) as e:
        print_error(f"{args.command} failed: {e}")
        logger.debug("%s failed", args.command, exc_info=True)
        return 1
    except Exception as e:
        print_error(f"{args.command} failed: {e}")
        logger.exception("%s failed: %s", args.command, e)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
