"""
Camino command wrappers for streamline tractography.

Provides a Python wrapper around Camino's ``track`` command that implements
the TractographyEngine interface. Inputs are written to a scratch directory,
raw streamlines are read back from the Bfloat output and the raw file is
deleted as soon as it has been read.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path

from structconn.core.exceptions import TractographyError
from structconn.core.streamlines import StreamlineSet
from structconn.core.volume import VolumeGrid, save_volume
from structconn.io.camino import read_bfloat
from structconn.tractography.base import TrackingParameters, TractographyEngine
from structconn.utils.workspace import discard

logger = logging.getLogger(__name__)


class CaminoError(TractographyError):
    """Raised when Camino commands fail or are not available."""

    pass


def check_camino_available(commands: tuple[str, ...] = ("track",)) -> bool:
    """
    Check if Camino commands are available in the system PATH.

    Returns
    -------
    bool
        True if all required commands are available

    Raises
    ------
    CaminoError
        If Camino is not installed or commands are not in PATH
    """
    missing_commands = [cmd for cmd in commands if shutil.which(cmd) is None]

    if missing_commands:
        raise CaminoError(
            f"Camino commands not found in PATH: {', '.join(missing_commands)}\n"
            f"Please install Camino: http://camino.cs.ucl.ac.uk/"
        )

    return True


def run_camino_command(command: list[str], verbose: bool = False) -> subprocess.CompletedProcess:
    """
    Execute a Camino command with proper error handling.

    Parameters
    ----------
    command : list of str
        Command and arguments to execute
    verbose : bool, default=False
        If True, logs the command line at INFO level instead of DEBUG

    Returns
    -------
    subprocess.CompletedProcess
        Result of command execution

    Raises
    ------
    CaminoError
        If command execution fails
    """
    log = logger.info if verbose else logger.debug
    log(f"Executing: {' '.join(command)}")

    try:
        return subprocess.run(
            command, check=True, capture_output=True, text=True, encoding="utf-8"
        )
    except FileNotFoundError as e:
        raise CaminoError(
            f"Camino command '{command[0]}' not found. "
            f"Please install Camino: http://camino.cs.ucl.ac.uk/"
        ) from e
    except subprocess.CalledProcessError as e:
        raise CaminoError(f"Camino command failed: {' '.join(command)}\n{e.stderr}") from e


class CaminoTrackEngine(TractographyEngine):
    """
    Deterministic tensor tractography with Camino ``track``.

    Parameters
    ----------
    work_dir : str or Path
        Directory for the files exchanged with Camino. Must be private to
        the run.
    verbose : bool, default=False
        Log the Camino command lines at INFO level.

    Examples
    --------
    >>> engine = CaminoTrackEngine(work_dir=workspace)
    >>> raw = engine.track(dt, seeds, TrackingParameters(curvature_threshold=80))
    """

    name = "camino-track"

    def __init__(self, work_dir: str | Path, verbose: bool = False):
        self.work_dir = Path(work_dir)
        self.verbose = verbose

    def build_command(
        self,
        tensor_path: Path,
        seed_path: Path,
        output_path: Path,
        parameters: TrackingParameters,
        anisotropy_path: Path | None = None,
    ) -> list[str]:
        """Command line for one ``track`` run."""
        command = [
            "track",
            "-inputmodel",
            "dt",
            "-inputfile",
            str(tensor_path),
        ]
        if anisotropy_path is not None:
            command += [
                "-anisfile",
                str(anisotropy_path),
                "-anisthresh",
                str(parameters.anisotropy_threshold),
            ]
        command += [
            "-curvethresh",
            str(parameters.curvature_threshold),
            "-seedfile",
            str(seed_path),
            "-tracker",
            parameters.tracker,
            "-interpolator",
            parameters.interpolator,
            "-stepsize",
            str(parameters.step_size),
            "-outputfile",
            str(output_path),
            "-silent",
        ]
        return command

    def track(
        self,
        tensor: VolumeGrid,
        seed_mask: VolumeGrid,
        parameters: TrackingParameters,
        anisotropy_image: VolumeGrid | None = None,
    ) -> StreamlineSet:
        check_camino_available()
        self.work_dir.mkdir(parents=True, exist_ok=True)

        tensor_path = save_volume(tensor, self.work_dir / "dt.nii.gz")
        seed_path = save_volume(seed_mask, self.work_dir / "seedMask.nii.gz")
        anisotropy_path = None
        if anisotropy_image is not None:
            anisotropy_path = save_volume(anisotropy_image, self.work_dir / "anis.nii.gz")
        output_path = self.work_dir / "rawTracts.Bfloat"

        command = self.build_command(
            tensor_path, seed_path, output_path, parameters, anisotropy_path
        )
        run_camino_command(command, verbose=self.verbose)

        if not output_path.exists():
            raise CaminoError(f"Camino track produced no output file {output_path}")

        streamlines = read_bfloat(output_path, tensor, space="diffusion")
        discard(output_path)

        if len(streamlines) == 0:
            raise TractographyError("Tractography produced no streamlines")
        return streamlines
