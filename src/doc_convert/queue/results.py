"""Result artefact storage and input-file ownership hand-off.

Results are written to ``<results_dir>/<job_id>/<filename>`` through a temp
file and ``os.replace``, so a re-executed attempt (at-least-once execution)
simply overwrites the same artefact.
"""

import logging
import mimetypes
import os
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional, Union

from ..errors import ConversionError, InvalidStateError

if TYPE_CHECKING:
    from ..dispatcher import ConversionOutput

logger = logging.getLogger(__name__)


def _safe_name(name: Optional[str], fallback: str) -> str:
    candidate = Path(name).name if name else ""
    return candidate or fallback


class ResultStore:
    """Filesystem-backed, idempotent result storage."""

    def __init__(self, results_dir: str):
        self.results_dir = Path(results_dir)
        self.results_dir.mkdir(parents=True, exist_ok=True)

    def job_dir(self, job_id: str) -> Path:
        return self.results_dir / job_id

    def save(self, job_id: str, output: "ConversionOutput") -> Dict[str, Any]:
        """Persist a converter output and return the job's result payload.

        Args:
            job_id: Job identifier
            output: Converter output carrying bytes or a produced file

        Returns:
            Result dict stored on the completed job
        """
        filename = _safe_name(output.filename, f"{job_id}.out")
        target_dir = self.job_dir(job_id)
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / filename

        if output.output_bytes is not None:
            fd, tmp_path = tempfile.mkstemp(dir=str(target_dir), prefix=".partial-")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(output.output_bytes)
                os.replace(tmp_path, target)
            except BaseException:
                Path(tmp_path).unlink(missing_ok=True)
                raise
        elif output.output_ref is not None:
            source = Path(output.output_ref)
            if source.resolve() != target.resolve():
                shutil.move(str(source), str(target))
        else:
            raise ConversionError("Converter output has neither bytes nor an output reference")

        content_type = output.content_type or (
            mimetypes.guess_type(filename)[0] or "application/octet-stream"
        )
        return {
            "outputRef": str(target),
            "filename": filename,
            "contentType": content_type,
            "size": target.stat().st_size,
            "metadata": dict(output.metadata),
        }

    def load(self, result: Dict[str, Any]) -> bytes:
        path = Path(result.get("outputRef", ""))
        if not path.is_file():
            raise InvalidStateError(f"Result artefact is no longer available: {path.name}")
        return path.read_bytes()

    def delete(self, job_id: str) -> None:
        shutil.rmtree(self.job_dir(job_id), ignore_errors=True)


def is_within(path: Union[str, Path], root: Union[str, Path]) -> bool:
    """True when ``path`` resolves to a location inside ``root``."""
    return Path(path).resolve().is_relative_to(Path(root).resolve())


class InputCleanup:
    """Takes ownership of a job's input file once the job is finished.

    Only files under ``root`` (the uploads directory) are ever deleted; with no
    root nothing is.
    """

    def __init__(self, root: Optional[str] = None, delete_inputs: bool = True):
        self.root = Path(root) if root else None
        self.delete_inputs = delete_inputs

    def release(self, input_ref: str) -> bool:
        """Delete the input file. Returns True if a file was removed."""
        if not self.delete_inputs or self.root is None:
            return False
        path = Path(input_ref)
        if not is_within(path, self.root):
            logger.warning("Refusing to delete %s: outside %s", path, self.root)
            return False
        try:
            if path.is_file():
                path.unlink()
                logger.debug("Released input %s", path)
                return True
        except OSError as e:
            logger.warning("Could not delete input %s: %s", path, e)
        return False
