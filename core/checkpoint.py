"""
On-disk storage of paused extraction runs.
"""
import os
import re
from pathlib import Path
from typing import Union

from pydantic import ValidationError

from core.exceptions import DataNotFoundError, PersistenceError
from core.logger import setup_logger
from core.schema import ResumeState

logger = setup_logger(__name__)

_JOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class CheckpointStore:
    """
    One JSON file per paused job.

    A checkpoint is written atomically and can be consumed once: loading it
    for a resume removes it, so the same snapshot is never applied twice.
    """

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, job_id: str) -> Path:
        if not _JOB_ID_PATTERN.match(job_id):
            raise ValueError(f"Invalid job id: {job_id!r}")
        return self.directory / f"{job_id}.json"

    def exists(self, job_id: str) -> bool:
        return self._path(job_id).exists()

    def save(self, job_id: str, state: ResumeState) -> Path:
        """
        Persist a resume state, replacing any earlier one for the job.

        Raises:
            PersistenceError: If the file cannot be written
        """
        path = self._path(job_id)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(state.model_dump_json(), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            logger.error(f"Failed to save checkpoint for {job_id}: {e}")
            raise PersistenceError(
                f"Failed to save checkpoint for job {job_id}",
                details={"path": str(path), "error": str(e)},
            )

        logger.info(
            f"Saved checkpoint for {job_id}: next batch {state.next_index + 1}/{len(state.batches)}, "
            f"{len(state.collected_transactions)} transactions collected"
        )
        return path

    def consume(self, job_id: str) -> ResumeState:
        """
        Load and remove the checkpoint of a job.

        Raises:
            DataNotFoundError: If the job has no checkpoint
            PersistenceError: If the checkpoint is unreadable
        """
        path = self._path(job_id)
        if not path.exists():
            raise DataNotFoundError(f"No checkpoint for job {job_id}", details={"job_id": job_id})

        try:
            state = ResumeState.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.error(f"Checkpoint for {job_id} is unreadable: {e}")
            raise PersistenceError(
                f"Checkpoint for job {job_id} is unreadable",
                details={"path": str(path), "error": str(e)},
            )

        path.unlink()
        logger.info(f"Consumed checkpoint for {job_id}")
        return state

    def discard(self, job_id: str) -> bool:
        """Delete a checkpoint; returns whether one existed."""
        path = self._path(job_id)
        if not path.exists():
            return False
        path.unlink()
        logger.info(f"Discarded checkpoint for {job_id}")
        return True
