"""
FastAPI routes for statement upload, import jobs, pausing and resuming.
"""
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from fastapi import BackgroundTasks, FastAPI, File, HTTPException, UploadFile
from fastapi.responses import FileResponse

from core.catalog import load_cascade_config, load_categories, load_user_rules
from core.checkpoint import CheckpointStore
from core.config import get_settings
from core.db import get_db
from core.exceptions import BankImportException, ImportPaused, ParsingError
from core.exporters import create_output_filename, export_report_to_excel
from core.logger import setup_logger
from core.parsing import detect_file_type
from core.schema import BatchProgress, ResumeState
from llm.classify import LLMClassifierService
from llm.extract import LLMExtractionService
from services.executor import CancellationToken
from services.import_service import BankImportService, ImportResult

logger = setup_logger(__name__)
settings = get_settings()

app = FastAPI(
    title="Bank Statement Import",
    description="Extract and categorize bank statement transactions",
    version="1.0.0"
)

# In-memory job storage (use Redis/DB in production)
jobs: Dict[str, Dict[str, Any]] = {}

checkpoints = CheckpointStore(settings.checkpoint_path)


def default_service_factory(on_progress: Callable[[BatchProgress], None]) -> BankImportService:
    """Build an import service wired to the LLM gateway and the SQLite store."""
    return BankImportService(
        extraction_service=LLMExtractionService(),
        classifier_service=LLMClassifierService(),
        cascade_config=load_cascade_config(settings.cascade_rules_path),
        persistence=get_db(),
        on_progress=on_progress,
    )


# Replaced in tests
service_factory: Callable[[Callable[[BatchProgress], None]], BankImportService] = default_service_factory


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "bank_import",
        "version": "1.0.0"
    }


def _progress_callback(job_id: str) -> Callable[[BatchProgress], None]:
    def update(snapshot: BatchProgress) -> None:
        jobs[job_id]["progress"] = snapshot.model_dump()
    return update


def _summarize(result: ImportResult) -> Dict[str, Any]:
    report = result.report
    return {
        "total_transactions": report.total_transactions,
        "total_batches": report.total_batches,
        "successful_batches": report.successful_batches,
        "retried_batches": report.retried_batches,
        "failed_batches": [f.model_dump() for f in report.failed_batches],
        "categorized_by_cascade": report.categorized_by_cascade,
        "categorized_by_classifier": report.categorized_by_classifier,
        "uncategorized": len(report.uncategorized),
        "low_confidence": report.low_confidence_count,
        "source_counts": report.source_counts,
    }


async def run_import_background(job_id: str, state: Optional[ResumeState] = None) -> None:
    """
    Background task running or resuming an import job.

    Args:
        job_id: Unique job identifier
        state: Checkpoint to resume from; a fresh run reads the uploaded file
    """
    job = jobs[job_id]
    upload_path = Path(job["upload_path"])
    job["status"] = "processing"
    job["message"] = "Resuming import..." if state else "Importing statement..."

    try:
        service = service_factory(_progress_callback(job_id))
        token = job["cancel_token"]

        if state is None:
            result = await service.process_file(str(upload_path), session_id=job_id, cancel_token=token)
        else:
            result = await service.resume(
                state,
                load_categories(settings.categories_path),
                load_user_rules(settings.user_rules_path),
                file_name=job["file_name"],
                file_type=job["file_type"],
                session_id=job_id,
                cancel_token=token,
            )

        output_path = create_output_filename(job["file_name"], settings.storage_path)
        export_report_to_excel(result.transactions, result.report, output_path)

        job["status"] = "completed"
        job["message"] = "Import completed"
        job["output_path"] = output_path
        job["result"] = _summarize(result)
        logger.info(f"Job {job_id} completed successfully")

    except ImportPaused as paused:
        checkpoints.save(job_id, paused.resume_state)
        job["status"] = "paused"
        job["message"] = str(paused)
        logger.info(f"Job {job_id} paused")

    except BankImportException as e:
        logger.error(f"Job {job_id} failed: {e.message}")
        job["status"] = "failed"
        job["message"] = f"Import failed: {e.message}"
        job["error"] = e.message
        job["error_details"] = e.details

    except Exception as e:
        logger.error(f"Job {job_id} failed with unexpected error: {e}", exc_info=True)
        job["status"] = "failed"
        job["message"] = f"Import failed: {str(e)}"
        job["error"] = str(e)

    finally:
        # The checkpoint carries the batches, the upload is no longer needed
        if job["status"] != "processing" and upload_path.exists():
            upload_path.unlink()
            logger.debug(f"Cleaned up: {upload_path}")


def _get_job(job_id: str) -> Dict[str, Any]:
    if job_id not in jobs:
        raise HTTPException(status_code=404, detail="Job not found")
    return jobs[job_id]


@app.post("/imports", status_code=202)
async def create_import(background_tasks: BackgroundTasks, file: UploadFile = File(...)):
    """
    Accept a statement file and start a background import.

    Returns:
        202 Accepted with job_id for status polling
    """
    logger.info(f"Received statement: {file.filename}")

    try:
        file_type = detect_file_type(file.filename or "")
    except ParsingError as e:
        raise HTTPException(status_code=400, detail=e.message)

    job_id = str(uuid.uuid4())
    upload_path = Path(settings.storage_path) / f"{job_id}_{Path(file.filename).name}"
    upload_path.parent.mkdir(parents=True, exist_ok=True)
    upload_path.write_bytes(await file.read())

    jobs[job_id] = {
        "job_id": job_id,
        "status": "queued",
        "message": "File uploaded, starting import...",
        "created_at": datetime.now(timezone.utc).isoformat(),
        "file_name": Path(file.filename).name,
        "file_type": file_type,
        "upload_path": str(upload_path),
        "cancel_token": CancellationToken(),
        "progress": None,
    }

    background_tasks.add_task(run_import_background, job_id)
    logger.info(f"Job {job_id} queued for import")

    return {
        "job_id": job_id,
        "status": "accepted",
        "message": "Import started. Use job_id to check status."
    }


@app.get("/imports/{job_id}")
async def get_import_status(job_id: str):
    """Status, latest progress snapshot and, once finished, the report summary."""
    job = _get_job(job_id)

    response = {
        "job_id": job_id,
        "status": job["status"],
        "message": job["message"],
        "created_at": job.get("created_at"),
        "progress": job.get("progress"),
        "has_checkpoint": checkpoints.exists(job_id),
    }
    if job["status"] == "completed":
        response["result"] = job.get("result")
    if job["status"] == "failed":
        response["error"] = job.get("error")
        if "error_details" in job:
            response["error_details"] = job["error_details"]
    return response


@app.post("/imports/{job_id}/pause", status_code=202)
async def pause_import(job_id: str):
    """Ask a running import to stop at the next batch group boundary."""
    job = _get_job(job_id)
    if job["status"] not in ("queued", "processing"):
        raise HTTPException(status_code=409, detail=f"Job is {job['status']}, nothing to pause")

    job["cancel_token"].cancel()
    logger.info(f"Pause requested for job {job_id}")
    return {"job_id": job_id, "status": "pause_requested"}


@app.post("/imports/{job_id}/resume", status_code=202)
async def resume_import(job_id: str, background_tasks: BackgroundTasks):
    """Continue a paused import from its checkpoint."""
    job = _get_job(job_id)
    if job["status"] != "paused":
        raise HTTPException(status_code=409, detail=f"Job is {job['status']}, not paused")

    try:
        state = checkpoints.consume(job_id)
    except BankImportException as e:
        raise HTTPException(status_code=404, detail=e.message)

    job["cancel_token"].reset()
    job["status"] = "queued"
    job["message"] = "Resume queued"
    background_tasks.add_task(run_import_background, job_id, state)
    return {"job_id": job_id, "status": "accepted"}


@app.delete("/imports/{job_id}/checkpoint")
async def discard_checkpoint(job_id: str):
    """Drop the checkpoint of a paused import; the job cannot be resumed afterwards."""
    job = _get_job(job_id)
    if not checkpoints.discard(job_id):
        raise HTTPException(status_code=404, detail="No checkpoint for job")

    job["status"] = "discarded"
    job["message"] = "Checkpoint discarded"
    return {"job_id": job_id, "status": "discarded"}


@app.get("/imports/{job_id}/download")
async def download_result(job_id: str):
    """Download the categorized workbook of a completed import."""
    job = _get_job(job_id)
    output_path = job.get("output_path")
    if job["status"] != "completed" or not output_path or not Path(output_path).exists():
        raise HTTPException(status_code=404, detail="Result not available")

    return FileResponse(
        path=output_path,
        filename=Path(output_path).name,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    )
