"""
Terminal rendering for the nlfdenoise CLI.

Noise model tables, stage tracking for burst fusion, the run summary box
and frame progress bars. Colors come from colorama, progress from tqdm.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import os
import sys
import time
from typing import Mapping, Sequence

import numpy as np
from colorama import Fore, Style, init as colorama_init
from tqdm import tqdm

from .config import FitStatus
from .nlf import NoiseModel
from .utils import format_duration

colorama_init(autoreset=True)

# Intensities at which the model sigma is shown
SIGMA_LEVELS = (0.05, 0.25)


class Palette:
    """Colors used by the CLI."""

    TITLE = Fore.CYAN + Style.BRIGHT
    STAGE = Fore.BLUE + Style.BRIGHT
    DETAIL = Fore.BLUE
    OK = Fore.GREEN + Style.BRIGHT
    WARN = Fore.YELLOW
    FAIL = Fore.RED + Style.BRIGHT
    LABEL = Fore.MAGENTA
    VALUE = Fore.YELLOW + Style.BRIGHT
    PATH = Fore.CYAN
    RESET = Style.RESET_ALL


class Glyphs:
    """Status glyphs, with ASCII fallbacks for non-UTF terminals."""

    OK = "✔"
    FAIL = "✘"
    ARROW = "→"
    BULLET = "•"
    RULE = "═"

    @classmethod
    def use_ascii(cls) -> None:
        cls.OK, cls.FAIL, cls.ARROW, cls.BULLET, cls.RULE = "[OK]", "[X]", "->", "*", "="


_STATUS_COLORS = {
    FitStatus.OK: Palette.OK,
    FitStatus.DEGRADED_FIT: Palette.WARN,
    FitStatus.SINGULAR_MODEL: Palette.WARN,
    FitStatus.PRIOR: Palette.WARN,
}


def setup_terminal() -> bool:
    """
    Pick glyphs for the current terminal.

    Returns
    -------
    bool
        True when unicode glyphs are kept.
    """
    encoding = (getattr(sys.stdout, "encoding", None) or "").lower()
    unicode_ok = "utf" in encoding or "utf" in os.environ.get("LANG", "").lower()
    if os.environ.get("TERM") == "dumb":
        unicode_ok = False
    if not unicode_ok:
        Glyphs.use_ascii()
    return unicode_ok


def print_banner(version: str) -> None:
    """One-line startup banner."""
    print(f"{Palette.TITLE}nlfdenoise {version}{Palette.RESET} | noise model, multiscale denoise, burst fusion")


def print_header(text: str, width: int = 60) -> None:
    rule = Glyphs.RULE * width
    print(f"\n{Palette.TITLE}{rule}\n  {text}\n{rule}{Palette.RESET}")


def print_substage(text: str) -> None:
    print(f"  {Palette.DETAIL}{Glyphs.ARROW} {text}{Palette.RESET}")


def print_success(text: str) -> None:
    print(f"{Palette.OK}{Glyphs.OK} {text}{Palette.RESET}")


def print_warning(text: str) -> None:
    print(f"{Palette.WARN}! {text}{Palette.RESET}")


def print_error(text: str) -> None:
    print(f"{Palette.FAIL}{Glyphs.FAIL} {text}{Palette.RESET}", file=sys.stderr)


def print_info(text: str) -> None:
    print(f"{Glyphs.BULLET} {text}")


def print_metric(name: str, value: str | int | float) -> None:
    print(f"  {Palette.LABEL}{name}: {Palette.VALUE}{value}{Palette.RESET}")


def print_path(label: str, path: str) -> None:
    print(f"  {label}: {Palette.PATH}{path}{Palette.RESET}")


def print_noise_model(model: NoiseModel, status: FitStatus, fitter: str | None = None) -> None:
    """
    Print a fitted noise model as one row per channel.

    Each row gives A, B and the predicted sigma at the SIGMA_LEVELS
    intensities. A warning follows when a parameter sits at the floor.
    """
    color = _STATUS_COLORS.get(status, Palette.VALUE)
    label = status.value if fitter is None else f"{status.value} ({fitter})"
    print(f"  {Palette.LABEL}Fit: {color}{label}{Palette.RESET}")

    columns = "  ".join(f"sigma@{p:g}" for p in SIGMA_LEVELS)
    print(f"  {Palette.LABEL}{'ch':>3}  {'A':>10}  {'B':>10}  {columns}{Palette.RESET}")
    for c in range(model.n_channels):
        sigmas = "  ".join(
            f"{np.sqrt(model.a[c] + model.b[c] * p):>{len(f'sigma@{p:g}')}.4f}" for p in SIGMA_LEVELS
        )
        print(f"  {c:>3}  {model.a[c]:>10.3e}  {model.b[c]:>10.3e}  {sigmas}")

    if np.any(model.is_floor_pinned()):
        print_warning("Some parameters sit at the 1e-8 floor: the input may be unsuitable")


def print_outputs(outputs: Mapping[str, str]) -> None:
    """List written files, one per line."""
    for name, path in outputs.items():
        print_substage(f"{name}: {Palette.PATH}{path}")


def print_summary_box(lines: Sequence[str], title: str = "Summary") -> None:
    """Framed block of summary lines."""
    inner = max([len(title)] + [len(line) for line in lines]) + 2
    print(f"\n{Palette.OK}+{'-' * inner}+")
    print(f"|{title:^{inner}}|")
    print(f"+{'-' * inner}+")
    for line in lines:
        print(f"| {line:<{inner - 1}}|")
    print(f"+{'-' * inner}+{Palette.RESET}")


def create_progress_bar(total: int, desc: str, unit: str = "frame", disable: bool = False) -> tqdm:
    """tqdm bar for per-frame loops."""
    return tqdm(
        total=total,
        desc=desc,
        unit=unit,
        bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}]",
        ncols=80,
        colour="green",
        disable=disable,
    )


class StageProgress:
    """
    Numbered stage tracker for the fuse command.

    Examples
    --------
    >>> stages = StageProgress(["Load frames", "Fuse", "Write outputs"])
    >>> stages.start()
    >>> stages.done("12 frames")
    """

    def __init__(self, names: Sequence[str], quiet: bool = False):
        self.names = list(names)
        self.quiet = quiet
        self.index = -1
        self._t0: float | None = None

    def start(self) -> None:
        """Announce the next stage."""
        self.index += 1
        self._t0 = time.perf_counter()
        if not self.quiet:
            name = self.names[self.index]
            print(f"\n{Palette.STAGE}[{self.index + 1}/{len(self.names)}] {name}{Palette.RESET}")

    def done(self, message: str = "") -> None:
        """Close the current stage with its duration."""
        if self.quiet:
            return
        elapsed = format_duration(time.perf_counter() - self._t0) if self._t0 is not None else ""
        text = message or "done"
        print(f"   {Palette.OK}{Glyphs.OK} {text}{f' ({elapsed})' if elapsed else ''}{Palette.RESET}")

    def warn(self, message: str) -> None:
        if not self.quiet:
            print(f"   {Palette.WARN}! {message}{Palette.RESET}")
