"""
Failure cleanup: removes the artifacts of a job that will not be retried.

Cleanup is idempotent and best effort. Anything already gone counts as
removed; any other error is logged and recorded in the report, never raised,
so a cleanup problem cannot mask the original failure.
"""

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from api.common import is_path_within, validate_video_id
from api.errors import CleanupError
from config import HLS_OUTPUT_DIR

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass
class CleanupReport:
    input_removed: bool = False
    package_removed: bool = False
    errors: List[CleanupError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def _remove_input(input_path: PathLike, report: CleanupReport) -> None:
    try:
        os.unlink(input_path)
        logger.info(f"Removed input file {input_path}")
    except FileNotFoundError:
        pass
    except OSError as e:
        error = CleanupError(f"Failed to remove input file {input_path}: {e}")
        logger.error(str(error))
        report.errors.append(error)
        return
    report.input_removed = True


def _check_package_dir(package_dir: Path, output_root: Optional[PathLike]) -> Optional[CleanupError]:
    """Refuse to delete anything that is not a video package directory."""
    if not validate_video_id(package_dir.name):
        return CleanupError(f"Refusing to remove {package_dir}: not a video package directory")
    if output_root is not None:
        root = Path(output_root)
        if not is_path_within(package_dir, root) or os.path.realpath(package_dir) == os.path.realpath(root):
            return CleanupError(f"Refusing to remove {package_dir}: outside output root {root}")
    return None


def _remove_package(package_dir: PathLike, output_root: Optional[PathLike], report: CleanupReport) -> None:
    package_dir = Path(package_dir)
    refused = _check_package_dir(package_dir, output_root)
    if refused is not None:
        logger.error(str(refused))
        report.errors.append(refused)
        return

    try:
        shutil.rmtree(package_dir)
        logger.info(f"Removed package directory {package_dir}")
    except FileNotFoundError:
        pass
    except OSError as e:
        error = CleanupError(f"Failed to remove package directory {package_dir}: {e}")
        logger.error(str(error))
        report.errors.append(error)
        return
    report.package_removed = True


def cleanup_failed_job(
    input_path: PathLike,
    package_dir: PathLike,
    output_root: Optional[PathLike] = HLS_OUTPUT_DIR,
) -> CleanupReport:
    """
    Remove the input file and the package directory of a terminally failed job.

    Args:
        input_path: Raw upload
        package_dir: {output_dir}/{video_id}
        output_root: Directory package_dir must live under (None disables the check)

    Returns:
        CleanupReport (never raises)
    """
    report = CleanupReport()
    _remove_input(input_path, report)
    _remove_package(package_dir, output_root, report)
    return report


def cleanup_partial_output(
    package_dir: PathLike,
    output_root: Optional[PathLike] = HLS_OUTPUT_DIR,
) -> CleanupReport:
    """Remove a failed attempt's package directory, keeping the input for the retry."""
    report = CleanupReport()
    _remove_package(package_dir, output_root, report)
    return report
